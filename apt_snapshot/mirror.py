# SPDX-License-Identifer: GPL-3.0-or-later

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from aiolimiter import AsyncLimiter

from .config import Config, MirrorConfig
from .download import Downloader, DownloaderFactory, FileDescriptor
from .download.format import format_size
from .errors import MirrorError, MirrorSyncError, MissingUpstreamFileError
from .index import IndexFileParser
from .layout import MirrorLayout, SyncManifest
from .logs import LoggerFactory
from .prometheus import BaseTransferCollector
from .publish import PublishController
from .release import IndexFetcher, IndexReference, IndexSelection, ReleaseManifest
from .snapshot import Snapshot, SnapshotManager
from .store import ContentStore
from .transfer import ConnectionLimiter, TransferManager, TransferReport


@dataclass
class SyncOptions:
    verify_signatures: bool = True
    dry_run: bool = False
    quiet: bool = False
    force: bool = False


@dataclass
class SyncResult:
    mirror_id: str
    file_count: int = 0
    total_size: int = 0
    # Planned transfers in dry-run mode
    downloaded_count: int = 0
    downloaded_size: int = 0
    reused_count: int = 0
    reused_size: int = 0
    dry_run: bool = False
    snapshot: Snapshot | None = None


class RepositoryMirror:
    """Synchronizes one mirror: release files, indices and pool files.

    Every suite is fetched and parsed before pool files are transferred, so
    the complete file set is known up front. The sync record is written only
    when every required file is in the content store.
    """

    @classmethod
    async def create(
        cls,
        mirror: MirrorConfig,
        config: Config,
        options: SyncOptions,
        limiter: ConnectionLimiter,
        rate_limiter: AsyncLimiter | None = None,
        metrics_collector: BaseTransferCollector | None = None,
        downloader: Downloader | None = None,
    ) -> "RepositoryMirror":
        layout = MirrorLayout.for_mirror(config.mirror_path, mirror.mirror_id)

        if options.dry_run:
            store = ContentStore(layout.store_path, logger_id=mirror.mirror_id)
        else:
            store = await ContentStore.create(
                layout.store_path, logger_id=mirror.mirror_id
            )
            store.clean_temporary_files()

        if downloader is None:
            downloader = DownloaderFactory.for_settings(
                settings=config.downloader_settings(mirror),
                logger_id=mirror.mirror_id,
            )

        return cls(
            mirror,
            config,
            options,
            layout,
            store,
            downloader,
            limiter,
            rate_limiter,
            metrics_collector,
        )

    def __init__(
        self,
        mirror: MirrorConfig,
        config: Config,
        options: SyncOptions,
        layout: MirrorLayout,
        store: ContentStore,
        downloader: Downloader,
        limiter: ConnectionLimiter,
        rate_limiter: AsyncLimiter | None,
        metrics_collector: BaseTransferCollector | None,
    ) -> None:
        self._log = LoggerFactory.get_logger(self, logger_id=mirror.mirror_id)

        self._mirror = mirror
        self._config = config
        self._options = options
        self._layout = layout
        self._store = store
        self._downloader = downloader

        retry_policy = config.retry_policy

        self._transfer = TransferManager(
            downloader,
            store,
            limiter,
            retry_policy=retry_policy,
            rate_limiter=rate_limiter,
            logger_id=mirror.mirror_id,
        )
        self._fetcher = IndexFetcher(
            downloader,
            config.keyring(mirror),
            verify_signature=options.verify_signatures and mirror.gpg_verify,
            limiter=limiter,
            retry_policy=retry_policy,
            logger_id=mirror.mirror_id,
        )

        if metrics_collector:
            metrics_collector.add_transfer_manager(mirror.mirror_id, self._transfer)

        self._result = SyncResult(mirror.mirror_id, dry_run=options.dry_run)

    @property
    def mirror_id(self) -> str:
        return self._mirror.mirror_id

    async def sync(self) -> SyncResult:
        """Run the sync.

        Raises `MirrorSyncError` listing every failed suite, index and file.
        """
        self._log.info(f"Syncing mirror {self.mirror_id} from {self._mirror.url}")

        try:
            return await self._sync()
        finally:
            await self._downloader.close()

    async def _sync(self) -> SyncResult:
        failures: dict[str, Exception] = {}
        files: dict[Path, FileDescriptor] = {}

        for suite in self._mirror.suites:
            try:
                manifest = await self._fetcher.fetch(suite)
            except MirrorError as ex:
                self._log.error(
                    f"Unable to fetch release files of suite {suite}: {ex}"
                )
                failures[f"suite {suite}"] = ex
                continue

            for file in await self._suite_files(manifest, failures):
                files.setdefault(file.path, file)

        pool_files = [file for file in files.values() if not file.metadata]

        self._result.file_count = len(files)
        self._result.total_size = sum(file.size for file in files.values())

        if self._options.dry_run:
            count, size = self._transfer.plan(files.values())
            self._result.downloaded_count = count
            self._result.downloaded_size = size

            self._log.info(
                f"Dry run of mirror {self.mirror_id}: {len(files)} files"
                f" ({format_size(self._result.total_size)}), {count} files"
                f" ({format_size(size)}) would be downloaded"
            )
        else:
            self._log.info(
                f"Transferring {len(pool_files)} pool files of mirror"
                f" {self.mirror_id}. Total size is"
                f" {format_size(sum(file.size for file in pool_files))}"
            )

            report = await self._transfer.transfer(pool_files)
            self._add_report(report)

            failures.update(
                (str(path), error) for path, error in report.failures.items()
            )

        if failures:
            raise MirrorSyncError(self.mirror_id, failures)

        if self._options.dry_run:
            return self._result

        SyncManifest(self._layout).save(files.values())
        self._log.info(f"Mirror {self.mirror_id} sync complete")

        if self._mirror.publish_to_staging:
            self._result.snapshot = self._publish_to_staging()

        return self._result

    async def _suite_files(
        self, manifest: ReleaseManifest, failures: dict[str, Exception]
    ) -> list[FileDescriptor]:
        files = manifest.release_descriptors()

        if not self._options.dry_run:
            for data in manifest.release_files.values():
                self._store.put(data)

        selections = manifest.select(
            self._mirror.components, self._mirror.arches, self._mirror.source
        )

        for selection in selections:
            key = f"{manifest.suite}/{selection}"

            try:
                index_files, package_files = await self._process_index(
                    manifest, selection
                )
            except MirrorError as ex:
                self._log.error(f"Unable to process {selection.kind} of {key}: {ex}")
                failures[key] = ex
                continue

            files.extend(index_files)
            files.extend(self._mirror.package_filter.apply(package_files))

        return files

    async def _process_index(
        self, manifest: ReleaseManifest, selection: IndexSelection
    ) -> tuple[list[FileDescriptor], list[FileDescriptor]]:
        """Transfer every variant of an index and parse one of them.

        Returns descriptors of the available index files and of the files
        they list.
        """
        by_hash = manifest.acquire_by_hash
        variants = [
            (reference, reference.to_descriptor(by_hash))
            for reference in selection.variants
        ]
        extras = [reference.to_descriptor(by_hash) for reference in selection.extras]
        parser = IndexFileParser.for_kind(selection.kind, logger_id=self.mirror_id)

        if self._options.dry_run:
            return await self._process_index_in_memory(selection, variants, parser)

        report = await self._transfer.transfer(
            [descriptor for _, descriptor in variants] + extras
        )
        self._add_report(report)

        for error in report.failures.values():
            if not isinstance(error, MissingUpstreamFileError):
                raise error

        available = [
            (reference, descriptor)
            for reference, descriptor in variants
            if descriptor.path not in report.failures
        ]

        if not available:
            raise MissingUpstreamFileError(
                f"No variant of {selection.kind} index {selection} is available"
                f" upstream for suite {manifest.suite}"
            )

        reference, descriptor = available[0]
        with ThreadPoolExecutor(max_workers=1) as executor:
            package_files = await asyncio.get_running_loop().run_in_executor(
                executor,
                parser.parse_file,
                self._store.path_of(descriptor.sha256),
                reference.compression,
                str(descriptor.path),
            )

        index_files = [descriptor for _, descriptor in available] + [
            extra for extra in extras if extra.path not in report.failures
        ]

        return index_files, package_files

    async def _process_index_in_memory(
        self,
        selection: IndexSelection,
        variants: list[tuple[IndexReference, FileDescriptor]],
        parser: IndexFileParser,
    ) -> tuple[list[FileDescriptor], list[FileDescriptor]]:
        for reference, descriptor in variants:
            try:
                data = await self._transfer.fetch(descriptor)
            except MissingUpstreamFileError:
                continue

            return [descriptor], parser.parse_bytes(
                data, reference.compression, str(descriptor.path)
            )

        raise MissingUpstreamFileError(
            f"No variant of {selection.kind} index {selection} is available upstream"
        )

    def _add_report(self, report: TransferReport):
        self._result.downloaded_count += report.downloaded_count
        self._result.downloaded_size += report.downloaded_size
        self._result.reused_count += report.reused_count
        self._result.reused_size += report.reused_size

    def _publish_to_staging(self) -> Snapshot:
        publisher = PublishController(
            self._config.mirror_path, logger_id=self.mirror_id
        )
        snapshots = SnapshotManager(
            self._config.mirror_path, publisher, logger_id=self.mirror_id
        )

        snapshot = snapshots.create(
            self.mirror_id,
            force=self._options.force,
            name_format=self._mirror.snapshot_name_format,
        )
        publisher.stage(self.mirror_id, snapshot.name)
        snapshot.staged = True

        return snapshot
