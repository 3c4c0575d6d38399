# SPDX-License-Identifer: GPL-3.0-or-later

import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

from aiofile import async_open as aiofile_open
from caio import (
    AsyncioContext,
    linux_aio_asyncio,
    python_aio_asyncio,
    thread_aio_asyncio,
)

from .logs import LoggerFactory


class AsyncSupportsWrite(Protocol):
    async def write(self, data: bytes) -> int: ...


class BaseAsyncIOFileWriterFactory(ABC):
    MODE = "wb"

    def __init__(self) -> None:
        self._log = LoggerFactory.get_logger(self)

    @classmethod
    async def create(cls, *test_paths: Path) -> "BaseAsyncIOFileWriterFactory":
        clazz = cls()
        await clazz.test_storage(*test_paths)

        return clazz

    @abstractmethod
    async def test_storage(self, *test_paths: Path): ...

    @asynccontextmanager
    @abstractmethod
    async def open(self, path: Path) -> AsyncIterator[AsyncSupportsWrite]:
        yield  # type: ignore


class AsyncIOFileFactory(BaseAsyncIOFileWriterFactory):
    """Writes files through caio: Linux AIO where the storage supports it,
    otherwise the threaded or pure Python implementation."""

    def __init__(self) -> None:
        super().__init__()
        self._context = self._get_supported_context()

    def _get_supported_context(self, fallback_context: bool = False) -> AsyncioContext:
        if linux_aio_asyncio and not fallback_context:
            return linux_aio_asyncio.AsyncioContext()

        if thread_aio_asyncio:
            if not fallback_context:
                self._log.warning(
                    "Native Linux AIO isn't supported on this system. "
                    "Falling back to threaded AIO implementation."
                )
            return thread_aio_asyncio.AsyncioContext()

        if not fallback_context:
            self._log.warning(
                "Neither native Linux AIO nor threaded AIO are supported on this"
                " system. Falling back to pure Python implementation."
            )
        return python_aio_asyncio.AsyncioContext()

    async def test_storage(self, *test_paths: Path) -> None:
        for path in test_paths:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                async with self.open(path) as fp:
                    await fp.write(b" ")
            except SystemError as e:
                if "not supported" not in str(e):
                    raise

                self._context = self._get_supported_context(fallback_context=True)
                self._log.warning(
                    f"Linux AIO check failed for path {path}. Falling back to"
                    " non-AIO IO implementation."
                )
                break
            finally:
                with contextlib.suppress(OSError):
                    path.unlink(missing_ok=True)

    @asynccontextmanager
    async def open(self, path: Path) -> AsyncIterator[AsyncSupportsWrite]:
        async with aiofile_open(path, mode=self.MODE, context=self._context) as fp:
            yield fp
