# SPDX-License-Identifer: GPL-3.0-or-later

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from aiolimiter import AsyncLimiter

from .download import Downloader, FileDescriptor
from .download.format import format_size
from .errors import (
    IntegrityError,
    MirrorError,
    MissingUpstreamFileError,
    StoreError,
    TransportError,
)
from .logs import LoggerFactory
from .store import BlobHasher, ContentStore, MemoryBlob


@dataclass
class RetryPolicy:
    retries: int = 5
    integrity_retries: int = 3
    backoff: float = 1.0
    backoff_max: float = 60.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff * 2 ** (attempt - 1), self.backoff_max)


class ConnectionLimiter:
    """Caps concurrent connections per upstream host and, optionally, in total.

    One limiter is shared by every mirror of a sync invocation.
    """

    def __init__(self, per_host: int, total: int | None = None) -> None:
        if per_host < 1:
            raise ValueError(f"Connection limit must be positive: {per_host}")

        self._per_host = per_host
        self._hosts: dict[str, asyncio.Semaphore] = {}
        self._total = asyncio.Semaphore(total) if total else None

    @property
    def per_host(self) -> int:
        return self._per_host

    @asynccontextmanager
    async def connection(self, host: str) -> AsyncIterator[None]:
        semaphore = self._hosts.setdefault(host, asyncio.Semaphore(self._per_host))

        async with contextlib.AsyncExitStack() as stack:
            await stack.enter_async_context(semaphore)

            if self._total:
                await stack.enter_async_context(self._total)

            yield


@dataclass
class TransferReport:
    downloaded_count: int = 0
    downloaded_size: int = 0
    reused_count: int = 0
    reused_size: int = 0
    failures: dict[Path, MirrorError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class TransferManager:
    """Makes sure every checksum of a file list is present in the content store.

    Downloads run as tasks bounded by the connection limiter; the number of
    queued tasks is bounded too, so huge file lists don't spawn huge task
    sets. Failures are recorded per file and never cancel sibling transfers.

    Statistics properties accumulate over every batch of the manager, the
    returned `TransferReport` covers one batch.
    """

    PROGRESS_INTERVAL = 10

    def __init__(
        self,
        downloader: Downloader,
        store: ContentStore,
        limiter: ConnectionLimiter,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: AsyncLimiter | None = None,
        logger_id: Any | None = None,
    ) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=logger_id)

        self._downloader = downloader
        self._store = store
        self._limiter = limiter
        self._retry_policy = retry_policy or RetryPolicy()
        self._rate_limiter = rate_limiter

        self._transfer_start = datetime.now()
        self._queue: list[FileDescriptor] = []
        self.reset_stats()

    def reset_stats(self):
        self._downloaded_count = 0
        self._downloaded_size = 0
        self._unmodified_count = 0
        self._unmodified_size = 0
        self._missing_count = 0
        self._missing_size = 0
        self._error_count = 0
        self._error_size = 0

    @property
    def queue_files_count(self) -> int:
        return len(self._queue)

    @property
    def queue_files_size(self) -> int:
        return sum(file.size for file in self._queue)

    @property
    def downloaded_files_count(self) -> int:
        return self._downloaded_count

    @property
    def downloaded_files_size(self) -> int:
        return self._downloaded_size

    @property
    def error_files_count(self) -> int:
        return self._error_count

    @property
    def error_files_size(self) -> int:
        return self._error_size

    @property
    def missing_files_count(self) -> int:
        return self._missing_count

    @property
    def missing_files_size(self) -> int:
        return self._missing_size

    @property
    def unmodified_files_count(self) -> int:
        return self._unmodified_count

    @property
    def unmodified_files_size(self) -> int:
        return self._unmodified_size

    @staticmethod
    def unique(files: Iterable[FileDescriptor]) -> list[FileDescriptor]:
        checksums: set[str] = set()
        result: list[FileDescriptor] = []

        for file in files:
            if file.sha256 in checksums:
                continue

            checksums.add(file.sha256)
            result.append(file)

        return result

    def plan(self, files: Iterable[FileDescriptor]) -> tuple[int, int]:
        """Count and total size of the files missing from the store.

        No network or disk writes are performed.
        """
        missing = [f for f in self.unique(files) if not self._store.has(f.sha256)]
        return len(missing), sum(f.size for f in missing)

    async def transfer(self, files: Iterable[FileDescriptor]) -> TransferReport:
        async def remove_finished_tasks(tasks: set[asyncio.Task[Any]]):
            done_tasks, _ = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )

            tasks.difference_update(done_tasks)

            for task in done_tasks:
                # Per-file errors are recorded in the report
                task.result()

        report = TransferReport()
        self._queue = self.unique(files)
        self._queue.reverse()

        tasks: set[asyncio.Task[Any]] = set()
        progress_task = asyncio.create_task(self.progress_logger())
        max_tasks = self._limiter.per_host * 4

        try:
            while self._queue:
                file = self._queue.pop()

                if self._store.has(file.sha256):
                    self._count_reused(file, report)
                    continue

                tasks.add(asyncio.create_task(self._transfer_file(file, report)))

                if len(tasks) >= max_tasks:
                    await remove_finished_tasks(tasks)

            while tasks:
                await remove_finished_tasks(tasks)
        except BaseException:
            for task in tasks:
                task.cancel()

            await asyncio.gather(*tasks, return_exceptions=True)
            self._queue = []
            raise
        finally:
            progress_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await progress_task

        self.log_status("Transfer finished")

        return report

    async def fetch(self, file: FileDescriptor) -> bytes:
        """Download a verified copy of a file into memory"""
        blobs: list[MemoryBlob] = []

        async def receive(response_stream: AsyncIterator[bytes]):
            blob = MemoryBlob(file.sha256, file.size, file.hashes)
            await self._receive(blob, response_stream)
            blob.verify()
            blobs.append(blob)

        await self._with_retries(file, receive)

        return blobs[-1].getvalue()

    async def progress_logger(self):
        while True:
            try:
                await asyncio.sleep(self.PROGRESS_INTERVAL)
            except asyncio.CancelledError:
                return

            self.log_status("Transfer progress")

    def log_status(self, message: str):
        elapsed = max(
            datetime.now().timestamp() - self._transfer_start.timestamp(), 0.001
        )
        download_rate = format_size(self._downloaded_size / elapsed, suffix="B/sec")

        self._log.info(
            message
            + f": {self._downloaded_count} ({format_size(self._downloaded_size)},"
            f" {download_rate});"
            " reused:"
            f" {self._unmodified_count} ({format_size(self._unmodified_size)});"
            f" missing: {self._missing_count} ({format_size(self._missing_size)});"
            f" errors: {self._error_count} ({format_size(self._error_size)})"
        )

    def _count_reused(self, file: FileDescriptor, report: TransferReport):
        self._unmodified_count += 1
        self._unmodified_size += file.size
        report.reused_count += 1
        report.reused_size += file.size

    async def _transfer_file(self, file: FileDescriptor, report: TransferReport):
        async def receive(response_stream: AsyncIterator[bytes]):
            async with self._store.open_for_write(
                file.sha256, file.size, file.hashes
            ) as blob:
                await self._receive(blob, response_stream)
                await self._store.commit(blob)

        try:
            if await self._with_retries(file, receive, check_store=True):
                self._downloaded_count += 1
                self._downloaded_size += file.size
                report.downloaded_count += 1
                report.downloaded_size += file.size
            else:
                self._count_reused(file, report)
        except MissingUpstreamFileError as ex:
            self._missing_count += 1
            self._missing_size += file.size
            report.failures[file.path] = ex
            self._log.warning(str(ex))
        except MirrorError as ex:
            self._record_error(file, report, ex)
        except OSError as ex:
            error = StoreError(f"Unable to store {file.path}: {ex}")
            error.__cause__ = ex
            self._record_error(file, report, error)
        except Exception as ex:  # pylint: disable=W0718
            error = MirrorError(
                f"Unexpected error `{ex.__class__.__qualname__}: {ex}` while"
                f" transferring {file.path}"
            )
            error.__cause__ = ex
            self._record_error(file, report, error)

    def _record_error(
        self, file: FileDescriptor, report: TransferReport, error: MirrorError
    ):
        self._error_count += 1
        self._error_size += file.size
        report.failures[file.path] = error
        self._log.error(f"Unable to download {file.path}: {error}")

    async def _receive(self, blob: BlobHasher, response_stream: AsyncIterator[bytes]):
        async for chunk in response_stream:
            if self._rate_limiter:
                await self._rate_limiter.acquire(
                    min(len(chunk), self._rate_limiter.max_rate)
                )

            await blob.write(chunk)

    async def _with_retries(
        self,
        file: FileDescriptor,
        receive: Callable[[AsyncIterator[bytes]], Awaitable[None]],
        check_store: bool = False,
    ) -> bool:
        """Feed the response stream of `file` to `receive` until it succeeds.

        Returns False when `check_store` is set and the checksum was committed
        by another writer in the meantime.
        """
        transport_tries = self._retry_policy.retries
        integrity_tries = self._retry_policy.integrity_retries
        attempt = 0

        while True:
            try:
                return await self._attempt(file, receive, check_store)
            except TransportError as ex:
                transport_tries -= 1
                if transport_tries < 0:
                    raise TransportError(
                        f"Unable to download {file.path}: no more tries. Last"
                        f" error: {ex}"
                    ) from ex

                self._log.warning(
                    f"Error `{ex}` while downloading {file.path}. Retrying..."
                )
            except IntegrityError as ex:
                integrity_tries -= 1
                if integrity_tries < 0:
                    raise

                self._log.warning(f"{file.path}: {ex}. Retrying...")

            attempt += 1
            await asyncio.sleep(self._retry_policy.delay(attempt))

    async def _attempt(
        self,
        file: FileDescriptor,
        receive: Callable[[AsyncIterator[bytes]], Awaitable[None]],
        check_store: bool,
    ) -> bool:
        async with self._limiter.connection(self._downloader.url.connection_key):
            # Another mirror sharing the store may have committed the blob
            if check_store and self._store.has(file.sha256):
                return False

            async with self._downloader.stream(file.path) as response:
                if response.missing:
                    raise MissingUpstreamFileError(
                        f"File {file.path} is missing on server"
                        f" {self._downloader.url} (HTTP/{response.status})"
                    )

                if response.error:
                    raise TransportError(response.error)

                if response.size is not None and response.size != file.size:
                    raise IntegrityError(
                        f"Server reported size {response.size} differs from"
                        f" expected size {file.size}"
                    )

                await receive(response.stream())

        return True
