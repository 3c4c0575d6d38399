# SPDX-License-Identifer: GPL-3.0-or-later

import bz2
import gzip
import hashlib
import lzma
import string
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any


class HashType(Enum):
    SHA512 = "SHA512"
    SHA256 = "SHA256"
    SHA1 = "SHA1"
    MD5 = "MD5Sum"

    @property
    def hashlib_name(self) -> str:
        return "md5" if self == HashType.MD5 else self.value.lower()

    def new(self):
        return hashlib.new(self.hashlib_name)

    def is_valid(self, value: str) -> bool:
        """Whether `value` is a hex digest of this hash type"""
        return len(value) == self.new().digest_size * 2 and all(
            c in string.hexdigits for c in value
        )


class FileCompression(Enum):
    XZ = "xz"
    GZ = "gz"
    BZ2 = "bz2"
    NONE = None

    @staticmethod
    def all_compressed() -> Iterable["FileCompression"]:
        return (
            compression
            for compression in FileCompression
            if compression != FileCompression.NONE
        )

    @staticmethod
    def for_path(path: Path) -> "FileCompression":
        for compression in FileCompression.all_compressed():
            if path.suffix == compression.file_extension:
                return compression

        return FileCompression.NONE

    @property
    def file_extension(self) -> str:
        if self.value:
            return f".{self.value}"

        return ""

    @property
    def open_function(self) -> Callable[..., IO[bytes]]:
        match self:
            case FileCompression.XZ:
                return lzma.open
            case FileCompression.GZ:
                return gzip.open
            case FileCompression.BZ2:
                return bz2.open
            case _:
                return open


@dataclass
class FileDescriptor:
    """A file of the repository tree: its path, size and checksums.

    `metadata` files (release files and indices) are copied into snapshots,
    other files are hard linked from the content store. `by_hash` files are
    also exposed under `by-hash/<hash type>/<hash>` next to the file.
    """

    path: Path
    size: int
    hashes: dict[HashType, str] = field(default_factory=dict)
    metadata: bool = False
    by_hash: bool = False
    package: str | None = None
    version: str | None = None

    @property
    def sha256(self) -> str:
        return self.hashes[HashType.SHA256]

    def by_hash_paths(self) -> list[Path]:
        if not self.by_hash:
            return []

        return [
            self.path.parent / "by-hash" / hash_type.value / hash_sum
            for hash_type, hash_sum in self.hashes.items()
        ]

    def all_paths(self) -> list[Path]:
        return [self.path] + self.by_hash_paths()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": str(self.path),
            "size": self.size,
            "hashes": {
                hash_type.value: hash_sum for hash_type, hash_sum in self.hashes.items()
            },
        }

        if self.metadata:
            data["metadata"] = True

        if self.by_hash:
            data["by_hash"] = True

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileDescriptor":
        return cls(
            path=Path(data["path"]),
            size=int(data["size"]),
            hashes={HashType(k): v for k, v in data["hashes"].items()},
            metadata=bool(data.get("metadata", False)),
            by_hash=bool(data.get("by_hash", False)),
        )

    def __str__(self) -> str:
        return str(self.path)
