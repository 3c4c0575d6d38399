# SPDX-License-Identifer: GPL-3.0-or-later

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass


@dataclass
class DownloadResponse:
    _stream: Callable[[], AsyncIterator[bytes]] | None
    # Permanent failure: the server says the file doesn't exist or is forbidden
    missing: bool = False
    # Transient failure worth a retry
    error: str | None = None
    status: int | None = None
    size: int | None = None

    def stream(self) -> AsyncIterator[bytes]:
        if not self._stream:
            raise RuntimeError("_stream property was not defined")

        return self._stream()
