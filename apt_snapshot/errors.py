# SPDX-License-Identifer: GPL-3.0-or-later

from collections.abc import Mapping


class MirrorError(Exception):
    """Base class for every error raised by mirror and snapshot operations"""


class TransportError(MirrorError):
    """Network or server side failure. Retryable."""


class AuthenticationError(MirrorError):
    def __init__(self, message: str, error: str | None = None) -> None:
        if error:
            message += f"\nGPG error output:\n{error}"

        super().__init__(message)


class IntegrityError(MirrorError):
    """Downloaded content doesn't match the declared size or checksum"""


class ParseError(MirrorError):
    pass


class MissingUpstreamFileError(MirrorError):
    pass


class StoreError(MirrorError):
    """Content store I/O failure, e.g. a full disk"""


class NotFoundError(MirrorError):
    pass


class SnapshotError(MirrorError):
    pass


class AlreadyExistsError(SnapshotError):
    pass


class InUseError(SnapshotError):
    pass


class IncompleteContentError(SnapshotError):
    pass


class NothingStagedError(SnapshotError):
    pass


class MirrorSyncError(MirrorError):
    def __init__(self, mirror_id: str, failures: Mapping[str, Exception]) -> None:
        self.mirror_id = mirror_id
        self.failures = dict(failures)

        lines = [f"Sync of mirror {mirror_id} failed: {len(self.failures)} error(s)"]
        lines.extend(f"  {key}: {error}" for key, error in self.failures.items())

        super().__init__("\n".join(lines))
