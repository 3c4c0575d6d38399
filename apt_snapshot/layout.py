# SPDX-License-Identifer: GPL-3.0-or-later

import json
import os
import re
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .download import FileDescriptor
from .errors import NotFoundError, ParseError

MIRROR_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def validate_mirror_id(mirror_id: str) -> str:
    if not MIRROR_ID_PATTERN.match(mirror_id):
        raise ValueError(
            f"Invalid mirror ID `{mirror_id}`: only lowercase letters, digits and"
            " hyphens are allowed"
        )

    return mirror_id


def fsync_directory(path: Path):
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_atomic(path: Path, data: bytes):
    """Replace `path` so that readers see either the old or the new content"""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())

        os.replace(name, path)
    except BaseException:
        Path(name).unlink(missing_ok=True)
        raise

    fsync_directory(path.parent)


@dataclass
class MirrorLayout:
    """Paths of a mirror below `<mirror_path>/<mirror id>`"""

    root: Path
    mirror_id: str

    @classmethod
    def for_mirror(cls, mirror_path: Path, mirror_id: str) -> "MirrorLayout":
        return cls(mirror_path / validate_mirror_id(mirror_id), mirror_id)

    @property
    def store_path(self) -> Path:
        return self.root / "store"

    @property
    def snapshots_path(self) -> Path:
        return self.root / "snapshots"

    @property
    def sync_manifest_path(self) -> Path:
        return self.root / "sync.json"

    def snapshot_path(self, name: str) -> Path:
        return self.snapshots_path / name

    def pointer_path(self, slot: str) -> Path:
        return self.snapshots_path / slot


class SyncManifest:
    """File set of the last complete sync of a mirror"""

    VERSION = 1

    def __init__(self, layout: MirrorLayout) -> None:
        self._layout = layout

    def exists(self) -> bool:
        return self._layout.sync_manifest_path.is_file()

    def save(self, files: Iterable[FileDescriptor]):
        data = {
            "version": self.VERSION,
            "mirror": self._layout.mirror_id,
            "files": [
                file.to_dict() for file in sorted(files, key=lambda f: str(f.path))
            ],
        }

        write_atomic(
            self._layout.sync_manifest_path,
            json.dumps(data, indent=1).encode("utf-8"),
        )

    def load(self) -> list[FileDescriptor]:
        path = self._layout.sync_manifest_path

        try:
            with open(path, "rt", encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError as ex:
            raise NotFoundError(
                f"Mirror {self._layout.mirror_id} has no completed sync"
            ) from ex
        except json.JSONDecodeError as ex:
            raise ParseError(f"Sync record {path} is corrupted: {ex}") from ex

        if data.get("version") != self.VERSION:
            raise ParseError(
                f"Unsupported sync record version {data.get('version')} in {path}"
            )

        try:
            return [FileDescriptor.from_dict(file) for file in data["files"]]
        except (KeyError, TypeError, ValueError) as ex:
            raise ParseError(f"Sync record {path} is corrupted: {ex}") from ex
