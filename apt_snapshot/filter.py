# SPDX-License-Identifer: GPL-3.0-or-later

from collections.abc import Iterable
from fnmatch import fnmatchcase
from functools import cmp_to_key

from debian.debian_support import version_compare

from .download import FileDescriptor


class PackageFilter:
    def __init__(self) -> None:
        self.exclude_patterns: set[str] = set()
        self.keep_versions: int = 0

    def __bool__(self) -> bool:
        return bool(self.exclude_patterns) or self.keep_versions > 0

    def package_allowed(self, package_name: str, version: str | None = None) -> bool:
        candidates = [package_name]
        if version:
            candidates += [version, f"{package_name}_{version}"]

        return not any(
            fnmatchcase(candidate, pattern)
            for pattern in self.exclude_patterns
            for candidate in candidates
        )

    def apply(self, files: Iterable[FileDescriptor]) -> list[FileDescriptor]:
        """Drop excluded packages and versions older than the `keep_versions`
        newest ones. Files not belonging to a package are kept."""
        allowed = [
            file
            for file in files
            if not file.package or self.package_allowed(file.package, file.version)
        ]

        if self.keep_versions < 1:
            return allowed

        versions: dict[str, set[str]] = {}
        for file in allowed:
            if file.package and file.version:
                versions.setdefault(file.package, set()).add(file.version)

        kept_versions = {
            package: set(
                sorted(
                    package_versions,
                    key=cmp_to_key(version_compare),
                    reverse=True,
                )[: self.keep_versions]
            )
            for package, package_versions in versions.items()
        }

        return [
            file
            for file in allowed
            if not file.package
            or not file.version
            or file.version in kept_versions[file.package]
        ]
