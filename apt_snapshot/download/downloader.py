# SPDX-License-Identifer: GPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..logs import LoggerFactory
from .proxy import Proxy
from .response import DownloadResponse
from .tls import TLSPolicy
from .url import URL


@dataclass
class DownloaderSettings:
    url: URL
    user_agent: str
    tls: TLSPolicy = field(default_factory=TLSPolicy)
    proxy: Proxy = field(default_factory=Proxy)
    http2_disable: bool = False
    # Replaces the network transport of the underlying client
    transport: Any | None = None


class Downloader(ABC):
    """Protocol specific access to files below one repository URL.

    Downloaders know nothing about retries, checksums or storage: they map a
    repository relative path to a `DownloadResponse`.
    """

    BUFFER_SIZE = 1024 * 1024

    def __init__(self, *, settings: DownloaderSettings, logger_id: Any | None = None):
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)
        self._settings = settings

        self.__post_init__()

    def __post_init__(self):  # noqa: B027
        pass

    @property
    def url(self) -> URL:
        return self._settings.url

    async def close(self):  # noqa: B027
        pass

    async def read(self, source_path: Path) -> DownloadResponse | bytes:
        """Read a whole (small) file into memory.

        Returns the failed response instead of content when the file can't be
        read.
        """
        async with self.stream(source_path) as response:
            if response.missing or response.error:
                return response

            return b"".join([chunk async for chunk in response.stream()])

    @asynccontextmanager
    @abstractmethod
    async def stream(self, source_path: Path) -> AsyncGenerator[DownloadResponse, None]:
        yield  # type: ignore
