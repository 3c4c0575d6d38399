# SPDX-License-Identifer: GPL-3.0-or-later

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from errno import EWOULDBLOCK
from fcntl import LOCK_EX, LOCK_NB, flock
from pathlib import Path

from aiolimiter import AsyncLimiter

from .config import Config, ConfigException, MirrorConfig
from .download.format import format_size, format_timestamp
from .errors import MirrorError
from .layout import MirrorLayout
from .logs import LoggerFactory
from .mirror import RepositoryMirror, SyncOptions, SyncResult
from .prometheus import (
    BaseTransferCollector,
    DummyTransferCollector,
    TransferCollector,
)
from .publish import PublishController
from .snapshot import RetentionPolicy, Snapshot, SnapshotManager, parse_duration
from .transfer import ConnectionLimiter
from .uvloop import UVLOOP_AVAILABLE
from .uvloop import run as uvloop_run
from .version import __version__

LOG = LoggerFactory.get_logger(__package__)


class APTSnapshot:
    LOCK_FILE = "apt-snapshot.lock"

    def __init__(self, config: Config, verbose_errors: bool = False) -> None:
        self.stopped = False

        self._log = LoggerFactory.get_logger(self)
        self._config = config
        self._verbose_errors = verbose_errors

        self._publisher = PublishController(config.mirror_path)
        self._snapshots = SnapshotManager(config.mirror_path, self._publisher)

    def mirrors(self, mirror_ids: Sequence[str] | None = None) -> list[MirrorConfig]:
        mirrors = self._config.mirrors
        if not mirror_ids:
            return list(mirrors.values())

        unknown = [mirror_id for mirror_id in mirror_ids if mirror_id not in mirrors]
        if unknown:
            raise ConfigException(f"Unknown mirror(s): {', '.join(unknown)}")

        return [mirrors[mirror_id] for mirror_id in mirror_ids]

    def log_error(self, message: str, ex: BaseException):
        if self._verbose_errors:
            self._log.error(f"{message}: {ex}", exc_info=ex)
        else:
            self._log.error(f"{message}: {ex}")

    # Sync

    async def sync(self, mirror_ids: Sequence[str], options: SyncOptions) -> int:
        self._log.info(f"apt-snapshot version {__version__}")

        mirrors = self.mirrors(mirror_ids)
        if not mirrors:
            self._log.error("No mirrors are found in the configuration")
            return 2

        if options.quiet:
            LoggerFactory.set_level(logging.ERROR)

        with self.lock():
            metrics_collector = self._create_metrics_collector()
            try:
                return await self._sync(mirrors, options, metrics_collector)
            finally:
                metrics_collector.shutdown()

    async def _sync(
        self,
        mirrors: list[MirrorConfig],
        options: SyncOptions,
        metrics_collector: BaseTransferCollector,
    ) -> int:
        limiter = ConnectionLimiter(
            self._config.max_conns, self._config.max_total_conns
        )

        rate_limiter = None
        if self._config.limit_rate:
            rate_limiter = AsyncLimiter(self._config.limit_rate * 60, 60)

        repository_mirrors = [
            await RepositoryMirror.create(
                mirror,
                self._config,
                options,
                limiter,
                rate_limiter=rate_limiter,
                metrics_collector=metrics_collector,
            )
            for mirror in mirrors
        ]

        loop = asyncio.get_running_loop()
        current_task = asyncio.current_task()
        signals = (signal.SIGINT, signal.SIGTERM)

        def on_stop():
            self.stopped = True
            if current_task:
                current_task.cancel()

        for signal_number in signals:
            loop.add_signal_handler(signal_number, on_stop)

        try:
            results = await asyncio.wait_for(
                asyncio.gather(
                    *(mirror.sync() for mirror in repository_mirrors),
                    return_exceptions=True,
                ),
                timeout=self._config.sync_timeout,
            )
        except asyncio.TimeoutError:
            self._log.error(
                f"Sync timed out after {self._config.sync_timeout} seconds."
                " Nothing was published."
            )
            return 1
        except asyncio.CancelledError:
            if not self.stopped:
                raise

            self._log.error("Sync was interrupted. Nothing was published.")
            return 1
        finally:
            for signal_number in signals:
                loop.remove_signal_handler(signal_number)

        error = False
        for mirror, result in zip(repository_mirrors, results):
            if isinstance(result, BaseException):
                self.log_error(f"Mirror {mirror.mirror_id} failed", result)
                error = True
                continue

            self._log_result(result)

        return 1 if error else 0

    def _log_result(self, result: SyncResult):
        action = "would download" if result.dry_run else "downloaded"

        self._log.info(
            f"Mirror {result.mirror_id}: {result.file_count} files"
            f" ({format_size(result.total_size)}); {action}"
            f" {result.downloaded_count} ({format_size(result.downloaded_size)});"
            f" reused {result.reused_count} ({format_size(result.reused_size)})"
        )

        if result.snapshot:
            self._log.info(
                f"Mirror {result.mirror_id}: snapshot {result.snapshot.name} is"
                " staged"
            )

    def _create_metrics_collector(self) -> BaseTransferCollector:
        if not self._config.prometheus_enable:
            return DummyTransferCollector(
                self._config.prometheus_host, self._config.prometheus_port
            )

        collector = TransferCollector(
            self._config.prometheus_host, self._config.prometheus_port
        )
        if not collector.prometheus_available():
            self._log.warning("Prometheus python client is not available")

        return collector

    def die(self, message: str, code: int = 1):
        self._log.error(message)
        sys.exit(code)

    def get_lock_file(self):
        return self._config.var_path / self.LOCK_FILE

    @contextmanager
    def lock(self):
        lock_file = self.get_lock_file()
        with open(lock_file, "wb") as fp:
            try:
                flock(fp, LOCK_EX | LOCK_NB)
            except OSError as ex:
                if ex.errno == EWOULDBLOCK:
                    self.die("apt-snapshot is already running, exiting")

                strerror = os.strerror(ex.errno) if ex.errno else "unknown error"
                self.die(
                    f"Unable to obtain lock on {lock_file}: error {ex.errno}:"
                    f" {strerror}"
                )

            yield

        lock_file.unlink(missing_ok=True)

    # Snapshots

    def create_snapshot(
        self,
        mirror_id: str,
        name: str | None = None,
        force: bool = False,
        stage: bool = False,
    ) -> Snapshot:
        (mirror,) = self.mirrors([mirror_id])

        snapshot = self._snapshots.create(
            mirror_id,
            name=name,
            force=force,
            name_format=mirror.snapshot_name_format,
        )

        if stage:
            self._publisher.stage(mirror_id, snapshot.name)
            snapshot.staged = True

        return snapshot

    def list_snapshots(self, mirror_ids: Sequence[str]) -> list[Snapshot]:
        return [
            snapshot
            for mirror in self.mirrors(mirror_ids)
            for snapshot in self._snapshots.list(mirror.mirror_id)
        ]

    def publish(self, mirror_id: str, name: str):
        self.mirrors([mirror_id])
        self._publisher.publish(mirror_id, name)

    def stage(self, mirror_id: str, name: str):
        self.mirrors([mirror_id])
        self._publisher.stage(mirror_id, name)

    def promote(self, mirror_id: str) -> str:
        self.mirrors([mirror_id])
        return self._publisher.promote(mirror_id)

    def delete(self, mirror_id: str, names: Sequence[str], force: bool = False):
        self.mirrors([mirror_id])

        for name in names:
            self._snapshots.delete(mirror_id, name, force=force)

    def prune(
        self,
        mirror_ids: Sequence[str],
        policy: RetentionPolicy,
        dry_run: bool = False,
    ) -> dict[str, list[str]]:
        return {
            mirror.mirror_id: self._snapshots.prune(
                mirror.mirror_id, mirror.retention.override(policy), dry_run=dry_run
            )
            for mirror in self.mirrors(mirror_ids)
        }

    def status(self, mirror_ids: Sequence[str]) -> list[str]:
        lines = []

        for mirror in self.mirrors(mirror_ids):
            layout = MirrorLayout.for_mirror(self._config.mirror_path, mirror.mirror_id)
            state = self._publisher.state(mirror.mirror_id)
            snapshots = self._snapshots.list(mirror.mirror_id)

            if layout.sync_manifest_path.is_file():
                last_sync = format_timestamp(
                    datetime.fromtimestamp(
                        layout.sync_manifest_path.stat().st_mtime, timezone.utc
                    )
                )
            else:
                last_sync = "never"

            lines.append(
                f"{mirror.mirror_id}: url {mirror.url.without_auth()}; last sync"
                f" {last_sync}; snapshots {len(snapshots)}; staging"
                f" {state.staging or '-'}; production {state.production or '-'}"
            )

        return lines


def format_snapshots(snapshots: Sequence[Snapshot]) -> list[str]:
    rows = [("MIRROR", "NAME", "CREATED", "SIZE", "FILES", "STATUS")]
    rows.extend(
        (
            snapshot.mirror_id,
            snapshot.name,
            format_timestamp(snapshot.created_at),
            format_size(snapshot.size),
            str(snapshot.file_count),
            snapshot.status.value,
        )
        for snapshot in snapshots
    )

    widths = [max(len(row[column]) for row in rows) for column in range(len(rows[0]))]

    return [
        "  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip()
        for row in rows
    ]


def get_parser() -> argparse.ArgumentParser:
    def get_prog() -> str | None:
        if Path(sys.argv[0]).name == "__main__.py":
            return f"{Path(sys.executable).name} -m apt_snapshot"

        return None

    parser = argparse.ArgumentParser(
        prog=get_prog(),
        description="APT mirror with atomically published snapshots",
    )
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument(
        "-c",
        "--config",
        help=f"Path to config file. Default {Config.DEFAULT_CONFIGFILE}",
        default=Config.DEFAULT_CONFIGFILE,
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Report errors only",
    )
    parser.add_argument(
        "-v",
        "--verbose-errors",
        action="store_true",
        help="Log tracebacks and causes of errors",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    sync = commands.add_parser("sync", help="Sync mirrors")
    sync.add_argument("mirror_ids", nargs="*", metavar="ID")
    sync.add_argument(
        "--dry-run",
        action="store_true",
        help="Only compute the amount of data to download",
    )
    sync.add_argument(
        "--no-pgp-check",
        action="store_true",
        help="Skip signature verification of release files",
    )
    sync.add_argument(
        "--force",
        action="store_true",
        help="Replace a snapshot with the same name when publishing to staging",
    )

    snapshot = commands.add_parser("snapshot", help="Manage snapshots")
    snapshot_commands = snapshot.add_subparsers(
        dest="snapshot_command", metavar="COMMAND", required=True
    )

    create = snapshot_commands.add_parser("create", help="Create a snapshot")
    create.add_argument("mirror_id", metavar="ID")
    create.add_argument("name", nargs="?", metavar="NAME")
    create.add_argument(
        "--force", action="store_true", help="Replace an existing snapshot"
    )
    create.add_argument(
        "--stage", action="store_true", help="Stage the new snapshot"
    )

    list_parser = snapshot_commands.add_parser("list", help="List snapshots")
    list_parser.add_argument("mirror_ids", nargs="*", metavar="ID")

    for command, help_text in (
        ("publish", "Point production to a snapshot"),
        ("stage", "Point staging to a snapshot"),
    ):
        command_parser = snapshot_commands.add_parser(command, help=help_text)
        command_parser.add_argument("mirror_id", metavar="ID")
        command_parser.add_argument("name", metavar="NAME")

    promote = snapshot_commands.add_parser(
        "promote", help="Point production to the staged snapshot"
    )
    promote.add_argument("mirror_id", metavar="ID")

    delete = snapshot_commands.add_parser("delete", help="Delete snapshots")
    delete.add_argument("mirror_id", metavar="ID")
    delete.add_argument("names", nargs="+", metavar="NAME")
    delete.add_argument(
        "--force",
        action="store_true",
        help="Delete staged or published snapshots and clear their pointers",
    )

    prune = snapshot_commands.add_parser(
        "prune", help="Delete snapshots outside of the retention policy"
    )
    prune.add_argument("mirror_ids", nargs="*", metavar="ID")
    prune.add_argument("--keep-last", type=int, metavar="N")
    prune.add_argument("--keep-within", type=parse_duration, metavar="DURATION")
    prune.add_argument("--dry-run", action="store_true")

    status = commands.add_parser("status", help="Show mirror status")
    status.add_argument("mirror_ids", nargs="*", metavar="ID")

    return parser


def run_snapshot_command(apt_snapshot: APTSnapshot, args: argparse.Namespace) -> int:
    match args.snapshot_command:
        case "create":
            snapshot = apt_snapshot.create_snapshot(
                args.mirror_id, args.name, force=args.force, stage=args.stage
            )
            print(snapshot.name)
        case "list":
            for line in format_snapshots(apt_snapshot.list_snapshots(args.mirror_ids)):
                print(line)
        case "publish":
            apt_snapshot.publish(args.mirror_id, args.name)
        case "stage":
            apt_snapshot.stage(args.mirror_id, args.name)
        case "promote":
            print(apt_snapshot.promote(args.mirror_id))
        case "delete":
            apt_snapshot.delete(args.mirror_id, args.names, force=args.force)
        case "prune":
            removed = apt_snapshot.prune(
                args.mirror_ids,
                RetentionPolicy(keep_last=args.keep_last, keep_within=args.keep_within),
                dry_run=args.dry_run,
            )
            for mirror_id, names in removed.items():
                for name in names:
                    print(f"{mirror_id} {name}")

    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = get_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if not args.command:
        parser.print_usage(sys.stderr)
        return 2

    if args.quiet:
        LoggerFactory.set_level(logging.ERROR)

    config_file = Path(args.config)
    if not config_file.is_file():
        LOG.error(f"invalid config file specified: {config_file}")
        return 2

    try:
        config = Config(config_file)

        # We should create working directories before using file logs
        config.create_working_directories()
        if args.command == "sync":
            config.init_log_files()

        apt_snapshot = APTSnapshot(config, verbose_errors=args.verbose_errors)

        match args.command:
            case "sync":
                options = SyncOptions(
                    verify_signatures=not args.no_pgp_check,
                    dry_run=args.dry_run,
                    quiet=args.quiet,
                    force=args.force,
                )

                try:
                    if config.use_uvloop:
                        if not UVLOOP_AVAILABLE:
                            LOG.warning("uvloop is enabled but not available")

                        return uvloop_run(apt_snapshot.sync(args.mirror_ids, options))

                    return asyncio.run(apt_snapshot.sync(args.mirror_ids, options))
                finally:
                    LoggerFactory.close_log_files()
            case "snapshot":
                return run_snapshot_command(apt_snapshot, args)
            case "status":
                for line in apt_snapshot.status(args.mirror_ids):
                    print(line)
    except (ConfigException, ValueError) as ex:
        LOG.error(str(ex), exc_info=ex if args.verbose_errors else None)
        return 2
    except MirrorError as ex:
        LOG.error(str(ex), exc_info=ex if args.verbose_errors else None)
        return 1

    return 0
