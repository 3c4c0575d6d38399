# SPDX-License-Identifer: GPL-3.0-or-later

from typing import Any

from .downloader import Downloader, DownloaderSettings
from .protocols.http import HTTPDownloader


class UnsupportedURLException(ValueError):
    pass


class DownloaderFactory:
    @staticmethod
    def for_settings(
        *, settings: DownloaderSettings, logger_id: Any | None = None
    ) -> Downloader:
        if settings.url.scheme in ("http", "https"):
            return HTTPDownloader(settings=settings, logger_id=logger_id)

        raise UnsupportedURLException(f"Unsupported URL scheme: {settings.url.scheme}")
