import errno
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import IsolatedAsyncioTestCase
from unittest.mock import patch

from apt_snapshot.apt_snapshot import APTSnapshot
from apt_snapshot.config import Config
from apt_snapshot.download import DownloaderFactory
from apt_snapshot.errors import (
    AlreadyExistsError,
    MirrorSyncError,
    ParseError,
    StoreError,
)
from apt_snapshot.layout import MirrorLayout, SyncManifest
from apt_snapshot.mirror import RepositoryMirror, SyncOptions
from apt_snapshot.publish import PublishController
from apt_snapshot.snapshot import SnapshotManager
from apt_snapshot.store import BlobWriter, ContentStore
from apt_snapshot.transfer import ConnectionLimiter
from tests.base import FakeDownloader, FakePackage, build_repository, sha256

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

PACKAGES = [
    FakePackage("hello", "2.10-3", b"hello binary"),
    FakePackage("world", "1:1.0", b"world binary"),
]


class InvalidChecksumPackage(FakePackage):
    def stanza(self) -> str:
        return super().stanza().replace(sha256(self.content), "not-a-checksum")


class TestRepositoryMirror(IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.base_path = Path(self._tmp.name)
        self.config = self.write_config(
            "deb [id=ubuntu arch=amd64] http://archive.example.org/ubuntu noble main\n"
            "publish_to_staging ubuntu\n"
        )
        self.layout = MirrorLayout.for_mirror(self.config.mirror_path, "ubuntu")
        self.repository = build_repository(PACKAGES)

    def tearDown(self):
        self._tmp.cleanup()

    def write_config(self, mirrors: str) -> Config:
        config_file = self.base_path / "snapshot.list"
        config_file.write_text(
            f"set base_path {self.base_path}\nset retry_backoff 0\n{mirrors}"
        )

        return Config(config_file)

    async def sync(
        self,
        files: dict[str, bytes] | None = None,
        created_at: datetime = NOW,
        **options,
    ):
        downloader = FakeDownloader(self.repository if files is None else files)
        mirror = await RepositoryMirror.create(
            self.config.mirrors["ubuntu"],
            self.config,
            SyncOptions(verify_signatures=False, **options),
            ConnectionLimiter(4),
            downloader=downloader,
        )

        with patch.object(SnapshotManager, "now", return_value=created_at):
            try:
                return await mirror.sync()
            finally:
                self.assertTrue(downloader.closed)

    async def test_sync(self):
        result = await self.sync()

        self.assertFalse(result.dry_run)
        # Release, both Packages variants, the per-directory Release and 2 debs
        self.assertEqual(result.file_count, 6)
        self.assertEqual(result.downloaded_count, 5)
        self.assertEqual(result.reused_count, 0)

        snapshot = result.snapshot
        self.assertIsNotNone(snapshot)
        self.assertEqual(snapshot.name, "2024-05-01T12-00-00Z")  # type: ignore
        self.assertTrue(snapshot.staged)  # type: ignore

        state = PublishController(self.config.mirror_path).state("ubuntu")
        self.assertEqual(state.staging, snapshot.name)  # type: ignore
        self.assertIsNone(state.production)

        staging = self.layout.pointer_path("staging")
        for package in PACKAGES:
            self.assertEqual(
                (staging / package.filename).read_bytes(), package.content
            )

        self.assertEqual(
            (staging / "dists/noble/main/binary-amd64/Packages.gz").read_bytes(),
            self.repository["dists/noble/main/binary-amd64/Packages.gz"],
        )

        store = ContentStore(self.layout.store_path)
        hello = PACKAGES[0]
        self.assertEqual(
            (staging / hello.filename).stat().st_ino,
            store.path_of(sha256(hello.content)).stat().st_ino,
        )

        paths = {str(file.path) for file in SyncManifest(self.layout).load()}
        self.assertEqual(paths, set(self.repository))

    async def test_resync_reuses_content(self):
        await self.sync()
        result = await self.sync(created_at=NOW + timedelta(days=1))

        self.assertEqual(result.downloaded_count, 0)
        self.assertEqual(result.reused_count, 5)
        self.assertEqual(
            [s.name for s in SnapshotManager(self.config.mirror_path).list("ubuntu")],
            ["2024-05-01T12-00-00Z", "2024-05-02T12-00-00Z"],
        )

    async def test_resync_force_replaces_snapshot(self):
        first = await self.sync()

        with self.assertRaises(AlreadyExistsError):
            await self.sync()

        second = await self.sync(force=True)

        self.assertEqual(first.snapshot.name, second.snapshot.name)  # type: ignore
        snapshots = SnapshotManager(self.config.mirror_path).list("ubuntu")
        self.assertEqual(len(snapshots), 1)

    async def test_new_package_version(self):
        await self.sync()

        self.repository = build_repository(
            [PACKAGES[0], FakePackage("world", "1:1.1", b"world binary 1.1")]
        )
        result = await self.sync(created_at=NOW + timedelta(days=1))

        # Packages, Packages.gz and world 1.1
        self.assertEqual(result.downloaded_count, 3)
        self.assertEqual(result.reused_count, 2)

        old, new = SnapshotManager(self.config.mirror_path).list("ubuntu")
        self.assertTrue((old.path / "pool/main/w/world/world_1.0_amd64.deb").exists())
        self.assertFalse((new.path / "pool/main/w/world/world_1.0_amd64.deb").exists())
        self.assertEqual(
            (new.path / "pool/main/w/world/world_1.1_amd64.deb").read_bytes(),
            b"world binary 1.1",
        )

    async def test_missing_pool_file(self):
        files = dict(self.repository)
        del files[PACKAGES[1].filename]

        with self.assertRaises(MirrorSyncError) as context:
            await self.sync(files)

        self.assertIn(PACKAGES[1].filename, context.exception.failures)
        self.assertFalse(self.layout.sync_manifest_path.exists())
        self.assertFalse(self.layout.snapshots_path.exists())

    async def test_store_errors_fail_the_sync(self):
        debs = {sha256(package.content) for package in PACKAGES}
        write = BlobWriter.write

        async def write_or_fail(blob: BlobWriter, data: bytes):
            if blob.checksum in debs:
                raise OSError(errno.ENOSPC, "No space left on device")

            await write(blob, data)

        with patch.object(BlobWriter, "write", write_or_fail):
            with self.assertRaises(MirrorSyncError) as context:
                await self.sync()

        for package in PACKAGES:
            self.assertIsInstance(
                context.exception.failures[package.filename], StoreError
            )

        self.assertFalse(self.layout.sync_manifest_path.exists())
        self.assertFalse(self.layout.snapshots_path.exists())

    async def test_invalid_index_checksum(self):
        self.repository = build_repository(
            [PACKAGES[0], InvalidChecksumPackage("world", "1:1.0", b"world binary")]
        )

        with self.assertRaises(MirrorSyncError) as context:
            await self.sync()

        errors = list(context.exception.failures.values())
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], ParseError)
        self.assertIn("not-a-checksum", str(errors[0]))
        self.assertFalse(self.layout.sync_manifest_path.exists())

    async def test_failed_sync_keeps_previous_record(self):
        await self.sync()
        record = self.layout.sync_manifest_path.read_bytes()

        self.repository = build_repository(
            [PACKAGES[0], FakePackage("world", "1:1.1", b"world binary 1.1")]
        )
        files = dict(self.repository)
        files["pool/main/w/world/world_1.1_amd64.deb"] = b"corrupted"

        with self.assertRaises(MirrorSyncError):
            await self.sync(files, created_at=NOW + timedelta(days=1))

        self.assertEqual(self.layout.sync_manifest_path.read_bytes(), record)
        self.assertEqual(
            len(SnapshotManager(self.config.mirror_path).list("ubuntu")), 1
        )

    async def test_missing_release(self):
        files = {
            path: data
            for path, data in self.repository.items()
            if path != "dists/noble/Release"
        }

        with self.assertRaises(MirrorSyncError) as context:
            await self.sync(files)

        self.assertEqual(list(context.exception.failures), ["suite noble"])

    async def test_dry_run(self):
        result = await self.sync(dry_run=True)

        self.assertTrue(result.dry_run)
        # Release, the preferred Packages variant and 2 debs
        self.assertEqual(result.file_count, 4)
        self.assertEqual(result.downloaded_count, 4)
        self.assertIsNone(result.snapshot)
        self.assertFalse(self.layout.store_path.exists())
        self.assertFalse(self.layout.sync_manifest_path.exists())

    async def test_package_filter(self):
        self.config = self.write_config(
            "deb [id=ubuntu arch=amd64] http://archive.example.org/ubuntu noble main\n"
            "exclude_packages ubuntu world\n"
        )

        result = await self.sync()

        self.assertIsNone(result.snapshot)
        paths = {str(file.path) for file in SyncManifest(self.layout).load()}
        self.assertIn(PACKAGES[0].filename, paths)
        self.assertNotIn(PACKAGES[1].filename, paths)


class TestAPTSnapshotSync(IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        base_path = Path(self._tmp.name)

        config_file = base_path / "snapshot.list"
        config_file.write_text(
            f"set base_path {base_path}\n"
            "set retry_backoff 0\n"
            "deb [id=ubuntu arch=amd64] http://archive.example.org/ubuntu noble main\n"
            "deb [id=debian arch=amd64] http://deb.example.org/debian noble main\n"
            "publish_to_staging ubuntu debian\n"
        )

        self.config = Config(config_file)
        self.config.create_working_directories()

        self.repository = build_repository(PACKAGES)
        self.downloaders: dict[str, FakeDownloader] = {}

    def tearDown(self):
        self._tmp.cleanup()

    def downloader(self, files: dict[str, bytes]):
        def for_settings(*, settings, logger_id=None):
            downloader = FakeDownloader(files.get(logger_id, self.repository))
            self.downloaders[logger_id] = downloader
            return downloader

        return patch.object(DownloaderFactory, "for_settings", side_effect=for_settings)

    async def test_mirrors_are_isolated(self):
        broken = dict(self.repository)
        del broken[PACKAGES[0].filename]

        with self.downloader({"debian": broken}):
            code = await APTSnapshot(self.config).sync(
                [], SyncOptions(verify_signatures=False)
            )

        self.assertEqual(code, 1)
        self.assertCountEqual(self.downloaders, ["ubuntu", "debian"])

        publisher = PublishController(self.config.mirror_path)
        self.assertIsNotNone(publisher.state("ubuntu").staging)
        self.assertIsNone(publisher.state("debian").staging)

        ubuntu = MirrorLayout.for_mirror(self.config.mirror_path, "ubuntu")
        debian = MirrorLayout.for_mirror(self.config.mirror_path, "debian")
        self.assertTrue(ubuntu.sync_manifest_path.is_file())
        self.assertFalse(debian.sync_manifest_path.exists())

        # Stores are per mirror
        self.assertNotEqual(
            os.path.realpath(ubuntu.store_path), os.path.realpath(debian.store_path)
        )
        self.assertTrue(
            ContentStore(debian.store_path).has(sha256(PACKAGES[1].content))
        )

        self.assertFalse(APTSnapshot(self.config).get_lock_file().exists())

    async def test_selected_mirrors(self):
        with self.downloader({}):
            code = await APTSnapshot(self.config).sync(
                ["debian"], SyncOptions(verify_signatures=False)
            )

        self.assertEqual(code, 0)
        self.assertEqual(list(self.downloaders), ["debian"])

    async def test_signature_required(self):
        with self.downloader({}):
            code = await APTSnapshot(self.config).sync(["ubuntu"], SyncOptions())

        self.assertEqual(code, 1)
        self.assertFalse(
            MirrorLayout.for_mirror(self.config.mirror_path, "ubuntu")
            .sync_manifest_path.exists()
        )
