# SPDX-License-Identifer: GPL-3.0-or-later

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import NotFoundError, NothingStagedError
from .layout import MirrorLayout, fsync_directory
from .logs import LoggerFactory

SNAPSHOT_METADATA_FILE = ".snapshot.json"


class Slot(Enum):
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class PublishState:
    staging: str | None = None
    production: str | None = None

    def slots_of(self, name: str) -> list[Slot]:
        return [
            slot
            for slot, value in (
                (Slot.STAGING, self.staging),
                (Slot.PRODUCTION, self.production),
            )
            if value == name
        ]


class PublishController:
    """Switches the `staging` and `production` pointers of a mirror.

    Pointers are relative symbolic links inside the snapshots directory. A
    new link is created under a temporary name and renamed over the old one,
    so clients resolving a pointer always get a complete snapshot tree.
    """

    def __init__(self, mirror_path: Path, logger_id: Any | None = None) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._mirror_path = mirror_path

    def layout(self, mirror_id: str) -> MirrorLayout:
        return MirrorLayout.for_mirror(self._mirror_path, mirror_id)

    def state(self, mirror_id: str) -> PublishState:
        layout = self.layout(mirror_id)

        return PublishState(
            staging=self._read_pointer(layout, Slot.STAGING),
            production=self._read_pointer(layout, Slot.PRODUCTION),
        )

    def publish(self, mirror_id: str, name: str):
        self._point(mirror_id, Slot.PRODUCTION, name)

    def stage(self, mirror_id: str, name: str):
        self._point(mirror_id, Slot.STAGING, name)

    def promote(self, mirror_id: str) -> str:
        staged = self.state(mirror_id).staging
        if not staged:
            raise NothingStagedError(f"Mirror {mirror_id} has no staged snapshot")

        self._point(mirror_id, Slot.PRODUCTION, staged)

        return staged

    def clear(self, mirror_id: str, slot: Slot):
        layout = self.layout(mirror_id)
        pointer = layout.pointer_path(slot.value)

        if not pointer.is_symlink():
            return

        pointer.unlink()
        fsync_directory(pointer.parent)

        self._log.info(f"Cleared {slot.value} pointer of mirror {mirror_id}")

    @staticmethod
    def snapshot_exists(layout: MirrorLayout, name: str) -> bool:
        if name.startswith(".") or name in {slot.value for slot in Slot}:
            return False

        return (layout.snapshot_path(name) / SNAPSHOT_METADATA_FILE).is_file()

    @staticmethod
    def _read_pointer(layout: MirrorLayout, slot: Slot) -> str | None:
        pointer = layout.pointer_path(slot.value)

        try:
            target = os.readlink(pointer)
        except OSError:
            return None

        return Path(target).name or None

    def _point(self, mirror_id: str, slot: Slot, name: str):
        layout = self.layout(mirror_id)

        if not self.snapshot_exists(layout, name):
            raise NotFoundError(f"Snapshot {name} of mirror {mirror_id} doesn't exist")

        pointer = layout.pointer_path(slot.value)
        temp_pointer = pointer.with_name(f".{slot.value}.{os.getpid()}")

        temp_pointer.unlink(missing_ok=True)
        try:
            temp_pointer.symlink_to(name, target_is_directory=True)
            os.replace(temp_pointer, pointer)
        except BaseException:
            temp_pointer.unlink(missing_ok=True)
            raise

        fsync_directory(pointer.parent)

        self._log.info(f"Mirror {mirror_id}: {slot.value} -> {name}")
