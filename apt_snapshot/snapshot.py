# SPDX-License-Identifer: GPL-3.0-or-later

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .download import FileDescriptor
from .errors import (
    AlreadyExistsError,
    IncompleteContentError,
    InUseError,
    NotFoundError,
    ParseError,
)
from .layout import MirrorLayout, SyncManifest, fsync_directory, write_atomic
from .logs import LoggerFactory
from .publish import SNAPSHOT_METADATA_FILE, PublishController, PublishState, Slot
from .store import ContentStore

DEFAULT_NAME_FORMAT = "%Y-%m-%dT%H-%M-%SZ"
SNAPSHOT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

DURATION_PATTERN = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h|d|w)")
DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse durations like `36h`, `1h30m`, `30d` or `2w`"""
    value = value.strip()
    if value == "0":
        return timedelta()

    position = 0
    result = timedelta()

    for match in DURATION_PATTERN.finditer(value):
        if match.start() != position:
            break

        result += DURATION_UNITS[match.group(2)] * float(match.group(1))
        position = match.end()

    if not value or position != len(value):
        raise ValueError(f"Invalid duration: {value}")

    return result


def validate_snapshot_name(name: str) -> str:
    if not SNAPSHOT_NAME_PATTERN.match(name) or name in {
        slot.value for slot in Slot
    }:
        raise ValueError(f"Invalid snapshot name: {name}")

    return name


class SnapshotStatus(Enum):
    UNREFERENCED = "unreferenced"
    STAGED = "staged"
    PUBLISHED = "published"


@dataclass
class RetentionPolicy:
    keep_last: int | None = None
    keep_within: timedelta | None = None

    def __post_init__(self):
        if self.keep_last is not None and self.keep_last < 0:
            raise ValueError(f"keep_last must not be negative: {self.keep_last}")

    def override(self, other: "RetentionPolicy") -> "RetentionPolicy":
        """Return a policy with the clauses set in `other` replacing ours"""
        return replace(
            self,
            keep_last=self.keep_last if other.keep_last is None else other.keep_last,
            keep_within=(
                self.keep_within if other.keep_within is None else other.keep_within
            ),
        )

    def retains(self, index: int, created_at: datetime, now: datetime) -> bool:
        if self.keep_last is not None and index < self.keep_last:
            return True

        return self.keep_within is not None and created_at >= now - self.keep_within

    def __str__(self) -> str:
        return f"keep_last={self.keep_last}, keep_within={self.keep_within}"


@dataclass
class Snapshot:
    mirror_id: str
    name: str
    path: Path
    created_at: datetime
    size: int
    file_count: int
    staged: bool = field(default=False, compare=False)
    published: bool = field(default=False, compare=False)

    @property
    def status(self) -> SnapshotStatus:
        if self.published:
            return SnapshotStatus.PUBLISHED

        if self.staged:
            return SnapshotStatus.STAGED

        return SnapshotStatus.UNREFERENCED

    def to_dict(self) -> dict[str, Any]:
        return {
            "mirror": self.mirror_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "size": self.size,
            "file_count": self.file_count,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], path: Path, state: PublishState
    ) -> "Snapshot":
        name = data["name"]

        return cls(
            mirror_id=data["mirror"],
            name=name,
            path=path,
            created_at=datetime.fromisoformat(data["created_at"]),
            size=int(data["size"]),
            file_count=int(data["file_count"]),
            staged=state.staging == name,
            published=state.production == name,
        )


class SnapshotManager:
    """Builds, lists, deletes and prunes the snapshots of mirrors.

    A snapshot is a symbolic link `<mirror>/snapshots/<name>` to a hidden
    tree holding copies of the repository metadata and hard links to the
    content store for every other file of the last completed sync. Trees are
    built completely before the link is created, and a forced replacement
    renames a new link over the old one, so the name always resolves to a
    complete tree.
    """

    def __init__(
        self,
        mirror_path: Path,
        publisher: PublishController | None = None,
        logger_id: Any | None = None,
    ) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._mirror_path = mirror_path
        self._publisher = publisher or PublishController(
            mirror_path, logger_id=logger_id
        )

    @property
    def publisher(self) -> PublishController:
        return self._publisher

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)

    def layout(self, mirror_id: str) -> MirrorLayout:
        return MirrorLayout.for_mirror(self._mirror_path, mirror_id)

    def create(
        self,
        mirror_id: str,
        name: str | None = None,
        force: bool = False,
        name_format: str | None = None,
    ) -> Snapshot:
        layout = self.layout(mirror_id)
        created_at = self.now()

        if not name:
            name = created_at.strftime(name_format or DEFAULT_NAME_FORMAT)

        validate_snapshot_name(name)

        path = layout.snapshot_path(name)
        if (path.exists() or path.is_symlink()) and not force:
            raise AlreadyExistsError(
                f"Snapshot {name} of mirror {mirror_id} already exists"
            )

        store = ContentStore(layout.store_path, logger_id=mirror_id)
        files = self._complete_file_set(layout, store)

        layout.snapshots_path.mkdir(parents=True, exist_ok=True)
        tree_path = Path(
            tempfile.mkdtemp(
                prefix=f".{name}.", suffix=".tree", dir=layout.snapshots_path
            )
        )

        try:
            for file in files:
                for file_path in file.all_paths():
                    if file.metadata:
                        store.copy(file.sha256, tree_path / file_path)
                    else:
                        store.alias(file.sha256, tree_path / file_path)

            snapshot = Snapshot(
                mirror_id=mirror_id,
                name=name,
                path=path,
                created_at=created_at,
                size=sum(file.size for file in files),
                file_count=len(files),
            )

            write_atomic(
                tree_path / SNAPSHOT_METADATA_FILE,
                json.dumps(snapshot.to_dict(), indent=1).encode("utf-8"),
            )
            os.chmod(tree_path, 0o755)

            old_tree = self._link_into_place(layout, tree_path, path, force)
        except BaseException:
            shutil.rmtree(tree_path, ignore_errors=True)
            raise

        if old_tree:
            shutil.rmtree(old_tree)
            self._log.info(f"Replaced snapshot {name} of mirror {mirror_id}")

        self._log.info(
            f"Created snapshot {name} of mirror {mirror_id}: {snapshot.file_count}"
            " files"
        )

        state = self._publisher.state(mirror_id)
        snapshot.staged = state.staging == name
        snapshot.published = state.production == name

        return snapshot

    def list(self, mirror_id: str) -> list[Snapshot]:
        layout = self.layout(mirror_id)
        if not layout.snapshots_path.is_dir():
            return []

        state = self._publisher.state(mirror_id)
        snapshots: list[Snapshot] = []

        for path in layout.snapshots_path.iterdir():
            if not self._is_snapshot_link(path):
                continue

            try:
                snapshots.append(self._read(path, state))
            except NotFoundError:
                self._log.debug(f"Skipping non-snapshot directory {path}")
            except ParseError as ex:
                self._log.warning(str(ex))

        return sorted(snapshots, key=lambda s: (s.created_at, s.name))

    def get(self, mirror_id: str, name: str) -> Snapshot:
        layout = self.layout(mirror_id)
        path = layout.snapshot_path(validate_snapshot_name(name))

        if not self._is_snapshot_link(path):
            raise NotFoundError(f"Snapshot {name} of mirror {mirror_id} doesn't exist")

        return self._read(path, self._publisher.state(mirror_id))

    def delete(self, mirror_id: str, name: str, force: bool = False):
        snapshot = self.get(mirror_id, name)
        slots = self._publisher.state(mirror_id).slots_of(name)

        if slots and not force:
            raise InUseError(
                f"Snapshot {name} of mirror {mirror_id} is"
                f" {snapshot.status.value}; use force to delete it anyway"
            )

        for slot in slots:
            self._publisher.clear(mirror_id, slot)

        self._remove(self.layout(mirror_id), snapshot.path)

        self._log.info(f"Deleted snapshot {name} of mirror {mirror_id}")

    def prune(
        self, mirror_id: str, policy: RetentionPolicy, dry_run: bool = False
    ) -> list[str]:
        """Delete unreferenced snapshots that fail every retention clause.

        Returns the names of the removed snapshots, or of the snapshots that
        would be removed when `dry_run` is set.
        """
        now = self.now()
        candidates = [
            snapshot
            for snapshot in reversed(self.list(mirror_id))
            if snapshot.status == SnapshotStatus.UNREFERENCED
        ]

        removed = [
            snapshot
            for index, snapshot in enumerate(candidates)
            if not policy.retains(index, snapshot.created_at, now)
        ]

        if dry_run:
            for snapshot in removed:
                self._log.info(
                    f"Would prune snapshot {snapshot.name} of mirror {mirror_id}"
                )
        else:
            layout = self.layout(mirror_id)

            for snapshot in removed:
                self._remove(layout, snapshot.path)
                self._log.info(f"Pruned snapshot {snapshot.name} of mirror {mirror_id}")

        return [snapshot.name for snapshot in removed]

    @staticmethod
    def _complete_file_set(
        layout: MirrorLayout, store: ContentStore
    ) -> list[FileDescriptor]:
        try:
            files = SyncManifest(layout).load()
        except NotFoundError as ex:
            raise IncompleteContentError(
                f"Mirror {layout.mirror_id} has no completed sync to snapshot"
            ) from ex

        missing = [file for file in files if not store.has(file.sha256)]
        if missing:
            raise IncompleteContentError(
                f"Content store of mirror {layout.mirror_id} misses"
                f" {len(missing)} file(s), e.g. {missing[0].path}"
                f" ({missing[0].sha256}). Run a sync first."
            )

        return files

    @staticmethod
    def _is_snapshot_link(path: Path) -> bool:
        return (
            not path.name.startswith(".")
            and path.name not in {slot.value for slot in Slot}
            and path.is_symlink()
            and path.is_dir()
        )

    @staticmethod
    def _read(path: Path, state: PublishState) -> Snapshot:
        metadata_path = path / SNAPSHOT_METADATA_FILE

        try:
            with open(metadata_path, "rt", encoding="utf-8") as fp:
                data = json.load(fp)
        except FileNotFoundError as ex:
            raise NotFoundError(f"{path} is not a snapshot") from ex
        except json.JSONDecodeError as ex:
            raise ParseError(f"Snapshot metadata {metadata_path} is corrupted") from ex

        try:
            return Snapshot.from_dict(data, path, state)
        except (KeyError, TypeError, ValueError) as ex:
            raise ParseError(
                f"Snapshot metadata {metadata_path} is corrupted: {ex}"
            ) from ex

    @staticmethod
    def _tree_of(layout: MirrorLayout, path: Path) -> Path | None:
        """Hidden directory the snapshot link `path` points to"""
        try:
            target = os.readlink(path)
        except OSError:
            return None

        if not target.startswith(".") or os.sep in target:
            return None

        return layout.snapshots_path / target

    def _link_into_place(
        self, layout: MirrorLayout, tree_path: Path, path: Path, force: bool
    ) -> Path | None:
        """Point the snapshot link `path` to `tree_path`.

        Returns the tree the link pointed to before, if it was replaced.
        """
        if not force:
            try:
                path.symlink_to(tree_path.name, target_is_directory=True)
            except FileExistsError as ex:
                raise AlreadyExistsError(
                    f"Snapshot {path.name} of mirror {layout.mirror_id} already"
                    " exists"
                ) from ex

            fsync_directory(layout.snapshots_path)
            return None

        old_tree = self._tree_of(layout, path)
        temp_link = path.with_name(f".{path.name}.link.{os.getpid()}")

        temp_link.unlink(missing_ok=True)
        try:
            temp_link.symlink_to(tree_path.name, target_is_directory=True)
            os.replace(temp_link, path)
        except BaseException:
            temp_link.unlink(missing_ok=True)
            raise

        fsync_directory(layout.snapshots_path)

        return old_tree

    def _remove(self, layout: MirrorLayout, path: Path):
        tree_path = self._tree_of(layout, path)

        path.unlink()
        fsync_directory(layout.snapshots_path)

        if tree_path:
            shutil.rmtree(tree_path)
