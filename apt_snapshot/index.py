# SPDX-License-Identifer: GPL-3.0-or-later

import io
import itertools
import lzma
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Any

from .download import FileCompression, FileDescriptor, HashType
from .errors import ParseError
from .logs import LoggerFactory
from .release import is_safe_path


class IndexFileParser(ABC):
    """Turns the stanzas of an index file into pool file descriptors.

    Unknown fields are ignored. Stanzas without a file path, a size or a
    SHA256 checksum are rejected with `ParseError`.
    """

    KIND = ""

    def __init__(self, logger_id: Any | None = None) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._files: list[FileDescriptor] = []

    @staticmethod
    def for_kind(kind: str, logger_id: Any | None = None) -> "IndexFileParser":
        for cls in (PackagesParser, SourcesParser):
            if cls.KIND == kind:
                return cls(logger_id=logger_id)

        raise ValueError(f"Unknown index kind: {kind}")

    def parse_file(
        self, path: Path, compression: FileCompression, source: str
    ) -> list[FileDescriptor]:
        with open(path, "rb") as fp:
            return self._parse_compressed(fp, compression, source)

    def parse_bytes(
        self, data: bytes, compression: FileCompression, source: str
    ) -> list[FileDescriptor]:
        return self._parse_compressed(io.BytesIO(data), compression, source)

    def _parse_compressed(
        self, fp: IO[bytes], compression: FileCompression, source: str
    ) -> list[FileDescriptor]:
        try:
            if compression == FileCompression.NONE:
                return self.parse(fp, source)

            with compression.open_function(fp, "rb") as decompressed_fp:
                return self.parse(decompressed_fp, source)
        except (lzma.LZMAError, zlib.error, EOFError, OSError) as ex:
            raise ParseError(f"Unable to decompress index {source}: {ex}") from ex

    def parse(self, fp: IO[bytes], source: str) -> list[FileDescriptor]:
        self._files = []
        self._reset_block_parser()

        for line_number, bytes_line in enumerate(
            itertools.chain(iter(fp.readline, b""), (b"\n",)), start=1
        ):
            try:
                line = bytes_line.decode("utf-8").rstrip("\r\n")
            except UnicodeDecodeError as ex:
                raise ParseError(
                    f"{source}:{line_number}: line is not valid UTF-8"
                ) from ex

            if not line.strip():
                if self._block_started:
                    self._finish_block(source, line_number)

                self._reset_block_parser()
                continue

            self._block_started = True

            if line[0] in (" ", "\t"):
                self._parse_continuation(line.strip(), source, line_number)
                continue

            field, sep, value = line.partition(":")
            if not sep:
                raise ParseError(f"{source}:{line_number}: malformed field: {line}")

            self._field = field.strip().lower()
            self._parse_field(self._field, value.strip(), source, line_number)

        return self._files

    def _reset_block_parser(self):
        self._block_started = False
        self._field: str | None = None

    def _parse_continuation(self, value: str, source: str, line_number: int):
        pass

    def _safe_path(self, value: str) -> Path | None:
        path = Path(value)
        if not is_safe_path(path):
            self._log.warning(f"Skipping unsafe path: {path}")
            return None

        return path

    @staticmethod
    def _parse_size(value: str, source: str, line_number: int) -> int:
        try:
            size = int(value)
        except ValueError as ex:
            raise ParseError(f"{source}:{line_number}: invalid size: {value}") from ex

        if size < 0:
            raise ParseError(f"{source}:{line_number}: negative size: {value}")

        return size

    @staticmethod
    def _parse_hash(
        hash_type: HashType, value: str, source: str, line_number: int
    ) -> str:
        if not hash_type.is_valid(value):
            raise ParseError(
                f"{source}:{line_number}: invalid {hash_type.value} checksum: {value}"
            )

        return value.lower()

    @abstractmethod
    def _parse_field(self, field: str, value: str, source: str, line_number: int): ...

    @abstractmethod
    def _finish_block(self, source: str, line_number: int): ...


# https://github.com/pylint-dev/pylint/issues/5214
# pylint: disable=W0201
class PackagesParser(IndexFileParser):
    KIND = "Packages"

    HASH_FIELDS = {
        "sha512": HashType.SHA512,
        "sha256": HashType.SHA256,
        "sha1": HashType.SHA1,
        "md5sum": HashType.MD5,
    }

    def _reset_block_parser(self):
        super()._reset_block_parser()
        self._package: str | None = None
        self._version: str | None = None
        self._file_path: Path | None = None
        self._unsafe = False
        self._size: int | None = None
        self._hashes: dict[HashType, str] = {}

    def _parse_field(self, field: str, value: str, source: str, line_number: int):
        match field:
            case "package":
                self._package = value
            case "version":
                self._version = value
            case "filename":
                self._file_path = self._safe_path(value)
                self._unsafe = self._file_path is None
            case "size":
                self._size = self._parse_size(value, source, line_number)
            case name if name in self.HASH_FIELDS:
                hash_type = self.HASH_FIELDS[name]
                self._hashes[hash_type] = self._parse_hash(
                    hash_type, value, source, line_number
                )

    def _finish_block(self, source: str, line_number: int):
        if self._unsafe:
            return

        if self._file_path is None or self._size is None:
            raise ParseError(
                f"{source}: stanza ending at line {line_number} (package"
                f" {self._package}) has no Filename or Size"
            )

        if HashType.SHA256 not in self._hashes:
            raise ParseError(
                f"{source}: package {self._package} ({self._file_path}) has no"
                " SHA256 checksum"
            )

        self._files.append(
            FileDescriptor(
                path=self._file_path,
                size=self._size,
                hashes=self._hashes,
                package=self._package,
                version=self._version,
            )
        )


class SourcesParser(IndexFileParser):
    KIND = "Sources"

    HASH_FIELDS = {
        "checksums-sha512": HashType.SHA512,
        "checksums-sha256": HashType.SHA256,
        "checksums-sha1": HashType.SHA1,
        "files": HashType.MD5,
    }

    def _reset_block_parser(self):
        super()._reset_block_parser()
        self._package: str | None = None
        self._version: str | None = None
        self._directory: Path | None = None
        self._unsafe = False
        self._package_files: dict[str, tuple[int, dict[HashType, str]]] = {}

    def _parse_field(self, field: str, value: str, source: str, line_number: int):
        match field:
            case "package":
                self._package = value
            case "version":
                self._version = value
            case "directory":
                self._directory = self._safe_path(value)
                self._unsafe = self._directory is None

    def _parse_continuation(self, value: str, source: str, line_number: int):
        hash_type = self.HASH_FIELDS.get(self._field or "")
        if not hash_type:
            return

        try:
            hash_sum, size_value, filename = value.split()
        except ValueError as ex:
            raise ParseError(
                f"{source}:{line_number}: malformed checksum line: {value}"
            ) from ex

        size = self._parse_size(size_value, source, line_number)
        known_size, hashes = self._package_files.setdefault(filename, (size, {}))
        if known_size != size:
            raise ParseError(
                f"{source}:{line_number}: conflicting sizes for {filename} of"
                f" source package {self._package}"
            )

        hashes[hash_type] = self._parse_hash(hash_type, hash_sum, source, line_number)

    def _finish_block(self, source: str, line_number: int):
        if self._unsafe:
            return

        if self._directory is None or not self._package_files:
            raise ParseError(
                f"{source}: stanza ending at line {line_number} (source package"
                f" {self._package}) has no Directory or files"
            )

        for filename, (size, hashes) in self._package_files.items():
            file_path = self._safe_path(f"{self._directory}/{filename}")
            if file_path is None:
                continue

            if HashType.SHA256 not in hashes:
                raise ParseError(
                    f"{source}: file {file_path} of source package {self._package}"
                    " has no SHA256 checksum"
                )

            self._files.append(
                FileDescriptor(
                    path=file_path,
                    size=size,
                    hashes=hashes,
                    package=self._package,
                    version=self._version,
                )
            )


# pylint: enable=W0201
