# SPDX-License-Identifer: GPL-3.0-or-later

from .descriptor import FileCompression, FileDescriptor, HashType
from .downloader import Downloader, DownloaderSettings
from .factory import DownloaderFactory, UnsupportedURLException
from .proxy import Proxy
from .response import DownloadResponse
from .tls import TLSPolicy
from .url import URL

__all__ = [
    "Downloader",
    "DownloaderFactory",
    "DownloaderSettings",
    "DownloadResponse",
    "FileCompression",
    "FileDescriptor",
    "HashType",
    "Proxy",
    "TLSPolicy",
    "UnsupportedURLException",
    "URL",
]
