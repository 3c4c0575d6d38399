# SPDX-License-Identifer: GPL-3.0-or-later

import asyncio
import base64
import hashlib
import itertools
import os
import shutil
import subprocess
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

from debian.deb822 import GPGV_EXECUTABLE, GpgInfo, Release

from .download import Downloader, FileCompression, FileDescriptor, HashType
from .errors import (
    AuthenticationError,
    MissingUpstreamFileError,
    ParseError,
    TransportError,
)
from .logs import LoggerFactory
from .transfer import ConnectionLimiter, RetryPolicy

RELEASE_FILES = ("InRelease", "Release", "Release.gpg")

# Index preference when several compression variants are available
COMPRESSION_ORDER = (
    FileCompression.XZ,
    FileCompression.GZ,
    FileCompression.BZ2,
    FileCompression.NONE,
)


def is_safe_path(path: Path) -> bool:
    return not path.is_absolute() and ".." not in path.parts


class DetachedGpgInfo(GpgInfo):
    """GpgInfo of a detached signature, which python-debian only checks for
    signed files"""

    @classmethod
    def from_files(cls, signature: str, data: str, keyrings: Sequence[str]) -> GpgInfo:
        process_args = [GPGV_EXECUTABLE, "--status-fd", "1"]
        for keyring in keyrings:
            process_args.extend(["--keyring", keyring])

        process_args.extend([signature, data])

        result = subprocess.run(process_args, capture_output=True, check=False)

        return cls.from_output(
            result.stdout.decode("utf-8"), result.stderr.decode("utf-8")
        )


@dataclass
class Keyring:
    """Trusted keys of a mirror: `sign-by` files or the system APT keyrings"""

    sign_by: list[Path] | None
    etc_trusted: Path
    etc_trusted_parts: Path

    def key_files(self) -> Generator[Path, Any, None]:
        if self.sign_by:
            yield from self.sign_by
            return

        for file in itertools.chain(
            [self.etc_trusted],
            (
                sorted(self.etc_trusted_parts.iterdir())
                if self.etc_trusted_parts.is_dir()
                else []
            ),
        ):
            if not file.is_file() or not os.access(file, os.R_OK):
                continue

            yield file

    @contextmanager
    def merged(self) -> Generator[str, Any, None]:
        """Merge every key into one temporary keyring usable by gpgv"""
        # Mimic apt behavior
        # https://salsa.debian.org/apt-team/apt/-/blob/63919b628a9bf386136f708f06c1a8a7d4f09fca/apt-pkg/contrib/gpgv.cc#L311
        with NamedTemporaryFile(prefix="apt-snapshot.", suffix=".gpg") as keyring:
            for file in self.key_files():
                try:
                    if file.suffix == ".asc":
                        self._write_armored_key(file, keyring)
                    else:
                        self._write_binary_key(file, keyring)
                except OSError as ex:
                    raise AuthenticationError(
                        f"Unable to read trusted key {file}: {ex}"
                    ) from ex

            if keyring.tell() == 0:
                raise AuthenticationError(
                    "No trusted keys are available to verify release files"
                )

            keyring.flush()
            yield keyring.name

    @staticmethod
    def _write_armored_key(file: Path, keyring):
        with open(file, "rt", encoding="ascii") as fp:
            if not next(fp, "").startswith("-----BEGIN PGP PUBLIC KEY BLOCK-----"):
                return

            base64_data = ""
            for line in fp:
                line = line.strip()

                if line.startswith("-----END"):
                    if base64_data:
                        keyring.write(base64.b64decode(base64_data))

                    break

                # Skip armor headers, blank lines and the CRC line
                if not line or line[0] in ("=", "-") or ": " in line:
                    continue

                base64_data += line

    @staticmethod
    def _write_binary_key(file: Path, keyring):
        with open(file, "rb") as fp:
            header = fp.read(1)

            # OpenPGP public key packets
            # https://salsa.debian.org/apt-team/apt/-/blob/63919b628a9bf386136f708f06c1a8a7d4f09fca/apt-pkg/contrib/gpgv.cc#L352
            if not header or header[0] not in (0x98, 0x99, 0xC6):
                return

            keyring.write(header)
            shutil.copyfileobj(fp, keyring)


@dataclass
class IndexReference:
    """An index file listed in a release manifest"""

    # Path relative to the repository root
    path: Path
    # Path relative to the suite directory
    name: Path
    size: int
    hashes: dict[HashType, str] = field(default_factory=dict)

    @property
    def compression(self) -> FileCompression:
        return FileCompression.for_path(self.name)

    @property
    def uncompressed_name(self) -> Path:
        if self.compression == FileCompression.NONE:
            return self.name

        return self.name.with_suffix("")

    def to_descriptor(self, by_hash: bool) -> FileDescriptor:
        return FileDescriptor(
            path=self.path,
            size=self.size,
            hashes=dict(self.hashes),
            metadata=True,
            by_hash=by_hash,
        )


@dataclass
class IndexSelection:
    """Every variant of one (component, architecture) index"""

    component: str
    architecture: str
    # Packages or Sources
    kind: str
    variants: list[IndexReference]
    extras: list[IndexReference]

    def __str__(self) -> str:
        return f"{self.component}/{self.architecture}"


@dataclass
class ReleaseManifest:
    suite: str
    files: dict[Path, IndexReference]
    acquire_by_hash: bool
    release_files: dict[str, bytes]
    signed_by: str | None = None

    @classmethod
    def parse(
        cls,
        suite: str,
        content: bytes,
        release_files: dict[str, bytes] | None = None,
        signed_by: str | None = None,
    ) -> "ReleaseManifest":
        try:
            release = Release(content.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as ex:
            raise ParseError(
                f"Unable to parse release file of suite {suite}: {ex}"
            ) from ex

        if not release.get(HashType.SHA256.value):
            raise ParseError(f"Release file of suite {suite} has no SHA256 entries")

        suite_path = Path("dists") / suite
        files: dict[Path, IndexReference] = {}

        for hash_type in HashType:
            entries = release.get(hash_type.value, [])
            if not isinstance(entries, list):
                raise ParseError(
                    f"Malformed {hash_type.value} section in release file of suite"
                    f" {suite}"
                )

            for entry in entries:
                try:
                    name = Path(entry["name"])
                    hash_sum = entry[hash_type.value].lower()
                    size = int(entry["size"])
                except (KeyError, ValueError) as ex:
                    raise ParseError(
                        f"Malformed {hash_type.value} entry in release file of suite"
                        f" {suite}: {dict(entry)}"
                    ) from ex

                if not hash_type.is_valid(hash_sum):
                    raise ParseError(
                        f"Invalid {hash_type.value} checksum of {name} in release"
                        f" file of suite {suite}: {hash_sum}"
                    )

                if not is_safe_path(name):
                    LoggerFactory.get_logger(cls).warning(
                        f"Skipping unsafe path: {name}"
                    )
                    continue

                reference = files.setdefault(
                    name, IndexReference(path=suite_path / name, name=name, size=size)
                )
                if reference.size != size:
                    raise ParseError(
                        f"Release file of suite {suite} lists different sizes for"
                        f" {name}"
                    )

                reference.hashes[hash_type] = hash_sum

        return cls(
            suite=suite,
            files={
                name: reference
                for name, reference in files.items()
                if HashType.SHA256 in reference.hashes
            },
            acquire_by_hash=release.get("Acquire-By-Hash", "no").lower() == "yes",
            release_files=release_files or {},
            signed_by=signed_by,
        )

    def release_descriptors(self) -> list[FileDescriptor]:
        return [
            FileDescriptor(
                path=Path("dists") / self.suite / name,
                size=len(data),
                hashes={HashType.SHA256: hashlib.sha256(data).hexdigest()},
                metadata=True,
            )
            for name, data in self.release_files.items()
        ]

    def _variants(self, directory: Path, kind: str) -> list[IndexReference]:
        variants = [
            reference
            for reference in self.files.values()
            if reference.name.parent == directory
            and reference.uncompressed_name.name == kind
        ]

        return sorted(variants, key=lambda r: COMPRESSION_ORDER.index(r.compression))

    def select(
        self,
        components: Sequence[str],
        architectures: Sequence[str],
        source: bool,
    ) -> list[IndexSelection]:
        selections: list[IndexSelection] = []

        for component in components:
            targets = [
                (arch, Path(component) / f"binary-{arch}", "Packages")
                for arch in ["all", *(a for a in architectures if a != "all")]
            ]
            if source:
                targets.append(("source", Path(component) / "source", "Sources"))

            for architecture, directory, kind in targets:
                variants = self._variants(directory, kind)
                if not variants:
                    if architecture != "all":
                        LoggerFactory.get_logger(self).warning(
                            f"No {kind} index for {component}/{architecture} in"
                            f" suite {self.suite}"
                        )
                    continue

                release = self.files.get(directory / "Release")

                selections.append(
                    IndexSelection(
                        component=component,
                        architecture=architecture,
                        kind=kind,
                        variants=variants,
                        extras=[release] if release else [],
                    )
                )

        return selections


class IndexFetcher:
    """Downloads and authenticates the release manifest of a suite"""

    def __init__(
        self,
        downloader: Downloader,
        keyring: Keyring | None,
        verify_signature: bool = True,
        limiter: ConnectionLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        logger_id: Any | None = None,
    ) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._downloader = downloader
        self._keyring = keyring
        self._verify_signature = verify_signature
        self._limiter = limiter or ConnectionLimiter(1)
        self._retry_policy = retry_policy or RetryPolicy()

    async def fetch(self, suite: str) -> ReleaseManifest:
        suite_path = Path("dists") / suite

        release_files: dict[str, bytes] = {}
        for name in RELEASE_FILES:
            content = await self._read(suite_path / name)
            if content is not None:
                release_files[name] = content

        if "InRelease" not in release_files and "Release" not in release_files:
            raise MissingUpstreamFileError(
                f"Neither InRelease nor Release file exists for suite {suite} at"
                f" {self._downloader.url}"
            )

        signed_by = None
        if self._verify_signature:
            gpg_info = await asyncio.get_running_loop().run_in_executor(
                None, self._check_signature, suite, release_files
            )
            signed_by = next(iter(gpg_info.get("VALIDSIG", [])), None)
            self._log.info(f"Release files of suite {suite} signed by {signed_by}")
        else:
            self._log.warning(f"Signature verification is disabled for suite {suite}")

        content = release_files.get("InRelease") or release_files["Release"]

        return ReleaseManifest.parse(suite, content, release_files, signed_by)

    async def _read(self, path: Path) -> bytes | None:
        tries = self._retry_policy.retries
        attempt = 0

        while True:
            try:
                async with self._limiter.connection(
                    self._downloader.url.connection_key
                ):
                    result = await self._downloader.read(path)

                if isinstance(result, bytes):
                    return result

                if result.missing:
                    return None

                error = result.error
            except TransportError as ex:
                error = str(ex)

            tries -= 1
            if tries < 0:
                raise TransportError(f"Unable to download {path}: {error}")

            self._log.warning(f"Error `{error}` while downloading {path}. Retrying...")

            attempt += 1
            await asyncio.sleep(self._retry_policy.delay(attempt))

    def _check_signature(self, suite: str, release_files: dict[str, bytes]) -> GpgInfo:
        if self._keyring is None:
            raise AuthenticationError(
                f"No trusted keyring is configured to verify suite {suite}"
            )

        if "InRelease" not in release_files and "Release.gpg" not in release_files:
            raise AuthenticationError(f"Release files of suite {suite} are not signed")

        try:
            with self._keyring.merged() as keyring:
                if "InRelease" in release_files:
                    gpg_info = GpgInfo.from_sequence(
                        release_files["InRelease"], keyrings=[keyring]
                    )
                else:
                    gpg_info = self._check_detached_signature(
                        release_files["Release"], release_files["Release.gpg"], keyring
                    )
        except OSError as ex:
            raise AuthenticationError(
                f"Unable to run gpgv for suite {suite}: {ex}"
            ) from ex

        if not gpg_info.valid():
            raise AuthenticationError(
                f"Unable to verify release file signature of suite {suite}",
                "\n".join(gpg_info.err) if gpg_info.err else None,
            )

        return gpg_info

    @staticmethod
    def _check_detached_signature(
        release: bytes, signature: bytes, keyring: str
    ) -> GpgInfo:
        with (
            NamedTemporaryFile(prefix="apt-snapshot.", suffix=".gpg") as signature_fp,
            NamedTemporaryFile(prefix="apt-snapshot.") as release_fp,
        ):
            signature_fp.write(signature)
            signature_fp.flush()
            release_fp.write(release)
            release_fp.flush()

            return DetachedGpgInfo.from_files(
                signature_fp.name, release_fp.name, [keyring]
            )
