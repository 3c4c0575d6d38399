# SPDX-License-Identifer: GPL-3.0-or-later

import hashlib
import os
import re
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any

from .aiofile import (
    AsyncIOFileFactory,
    AsyncSupportsWrite,
    BaseAsyncIOFileWriterFactory,
)
from .download import HashType
from .errors import IntegrityError, NotFoundError
from .logs import LoggerFactory

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class BlobHasher:
    """Accumulates size and checksums of data written to a blob"""

    def __init__(
        self,
        checksum: str,
        expected_size: int,
        hashes: dict[HashType, str],
    ) -> None:
        self.checksum = checksum
        self.expected_size = expected_size
        self.size = 0

        self._expected_hashes = {HashType.SHA256: checksum}
        self._expected_hashes.update(
            (hash_type, value.lower())
            for hash_type, value in hashes.items()
            if hash_type != HashType.SHA256
        )
        self._hashers = {
            hash_type: hash_type.new() for hash_type in self._expected_hashes
        }

    async def write(self, data: bytes):
        for hasher in self._hashers.values():
            hasher.update(data)

        self.size += len(data)

    def verify(self):
        if self.expected_size >= 0 and self.size != self.expected_size:
            raise IntegrityError(
                f"Size mismatch for blob {self.checksum}: expected"
                f" {self.expected_size}, received {self.size}"
            )

        for hash_type, expected in self._expected_hashes.items():
            actual = self._hashers[hash_type].hexdigest()
            if actual != expected:
                raise IntegrityError(
                    f"{hash_type.value} mismatch for blob {self.checksum}: expected"
                    f" {expected}, received {actual}"
                )


class MemoryBlob(BlobHasher):
    def __init__(
        self,
        checksum: str,
        expected_size: int,
        hashes: dict[HashType, str],
    ) -> None:
        super().__init__(checksum, expected_size, hashes)
        self._chunks: list[bytes] = []

    async def write(self, data: bytes):
        await super().write(data)
        self._chunks.append(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


class BlobWriter(BlobHasher):
    """Scoped write handle of the content store.

    Hashes everything written so that the store can verify the content
    before it becomes visible under its checksum.
    """

    def __init__(
        self,
        checksum: str,
        expected_size: int,
        hashes: dict[HashType, str],
        temp_path: Path,
    ) -> None:
        super().__init__(checksum, expected_size, hashes)
        self.temp_path = temp_path
        self.committed = False

        self._stack = AsyncExitStack()
        self._fp: AsyncSupportsWrite | None = None

    async def open(self, aiofile_factory: BaseAsyncIOFileWriterFactory):
        self._fp = await self._stack.enter_async_context(
            aiofile_factory.open(self.temp_path)
        )

    async def write(self, data: bytes):
        if self._fp is None:
            raise RuntimeError(f"Blob {self.checksum} is not open for writing")

        await super().write(data)
        await self._fp.write(data)

    async def close(self):
        self._fp = None
        await self._stack.aclose()


class ContentStore:
    """Checksum addressed blob storage shared by every snapshot of a mirror.

    Blobs live in `sha256/<first two hex digits>/<sha256>` and are never
    rewritten once committed. Writers stage data in `.tmp` and publish it
    with a hard link, so concurrent writers of the same checksum can't
    corrupt each other: the first link wins, the others are no-ops.

    A store built without an aiofile factory is read-only: it can look up
    and alias blobs but not receive downloads. Use `create()` for writing.
    """

    TEMP_DIRECTORY = ".tmp"
    BLOB_DIRECTORY = "sha256"

    @classmethod
    async def create(cls, root: Path, logger_id: Any | None = None) -> "ContentStore":
        temp_path = root / cls.TEMP_DIRECTORY
        temp_path.mkdir(parents=True, exist_ok=True)

        aiofile_factory = await AsyncIOFileFactory.create(
            temp_path / ".apt_snapshot_aio"
        )

        return cls(root, aiofile_factory, logger_id=logger_id)

    def __init__(
        self,
        root: Path,
        aiofile_factory: BaseAsyncIOFileWriterFactory | None = None,
        logger_id: Any | None = None,
    ) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._root = root
        self._aiofile_factory = aiofile_factory

    @property
    def root(self) -> Path:
        return self._root

    def _blob_path(self, checksum: str) -> Path:
        if not SHA256_PATTERN.match(checksum):
            raise ValueError(f"Not a SHA256 checksum: {checksum}")

        return self._root / self.BLOB_DIRECTORY / checksum[:2] / checksum

    def has(self, checksum: str) -> bool:
        return self._blob_path(checksum).is_file()

    def path_of(self, checksum: str) -> Path:
        path = self._blob_path(checksum)
        if not path.is_file():
            raise NotFoundError(f"Blob {checksum} is not present in {self._root}")

        return path

    def _temp_file(self, checksum: str) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=f"{checksum[:16]}.", dir=self._root / self.TEMP_DIRECTORY
        )
        os.close(fd)

        return Path(name)

    @asynccontextmanager
    async def open_for_write(
        self,
        checksum: str,
        expected_size: int = -1,
        hashes: dict[HashType, str] | None = None,
    ) -> AsyncIterator[BlobWriter]:
        """Open a temporary file for `checksum`.

        The data becomes visible only through `commit()`. A writer left
        uncommitted (exception, cancellation) is discarded on exit.
        """
        self._blob_path(checksum)

        if self._aiofile_factory is None:
            raise RuntimeError(f"Content store {self._root} is read-only")

        blob = BlobWriter(
            checksum, expected_size, hashes or {}, self._temp_file(checksum)
        )
        try:
            await blob.open(self._aiofile_factory)
            yield blob
        finally:
            await blob.close()
            blob.temp_path.unlink(missing_ok=True)

    async def commit(self, blob: BlobWriter) -> Path:
        await blob.close()

        try:
            blob.verify()
        except IntegrityError:
            blob.temp_path.unlink(missing_ok=True)
            raise

        path = self._link(blob.temp_path, blob.checksum)
        blob.committed = True

        return path

    def _link(self, temp_path: Path, checksum: str) -> Path:
        path = self._blob_path(checksum)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            os.link(temp_path, path)
        except FileExistsError:
            self._log.debug(f"Blob {checksum} was committed by another writer")
        finally:
            temp_path.unlink(missing_ok=True)

        return path

    def put(self, data: bytes) -> str:
        """Store a small in-memory file and return its checksum"""
        checksum = hashlib.sha256(data).hexdigest()
        if self.has(checksum):
            return checksum

        temp_path = self._temp_file(checksum)
        try:
            temp_path.write_bytes(data)
            self._link(temp_path, checksum)
        finally:
            temp_path.unlink(missing_ok=True)

        return checksum

    def alias(self, checksum: str, destination: Path):
        """Expose a blob at `destination` without copying it when possible"""
        source = self.path_of(checksum)

        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.unlink(missing_ok=True)

        try:
            destination.hardlink_to(source)
        except OSError:
            shutil.copy2(source, destination)

    def copy(self, checksum: str, destination: Path):
        source = self.path_of(checksum)

        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.unlink(missing_ok=True)
        shutil.copyfile(source, destination)

    def clean_temporary_files(self):
        """Remove files left behind by writers of an interrupted process"""
        for path in (self._root / self.TEMP_DIRECTORY).iterdir():
            if path.is_file():
                path.unlink(missing_ok=True)
