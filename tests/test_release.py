import subprocess
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import IsolatedAsyncioTestCase
from unittest.mock import MagicMock, patch

from debian.deb822 import GpgInfo

from apt_snapshot.download import FileCompression, HashType
from apt_snapshot.errors import (
    AuthenticationError,
    MissingUpstreamFileError,
    ParseError,
)
from apt_snapshot.release import (
    DetachedGpgInfo,
    IndexFetcher,
    Keyring,
    ReleaseManifest,
)
from apt_snapshot.transfer import RetryPolicy
from tests.base import (
    BaseTest,
    FakeDownloader,
    FakePackage,
    build_repository,
    release_file,
    sha256,
)


class TestReleaseManifest(BaseTest):
    def get_manifest(self, by_hash: bool = False) -> tuple[ReleaseManifest, dict]:
        files = build_repository(
            [
                FakePackage("hello", "1.0", b"hello"),
                FakePackage("hello", "1.0", b"hello i386", architecture="i386"),
                FakePackage("extra", "1.0", b"extra", component="universe"),
            ],
            by_hash=by_hash,
        )

        return ReleaseManifest.parse("noble", files["dists/noble/Release"]), files

    def test_parse(self):
        manifest, files = self.get_manifest(by_hash=True)

        self.assertTrue(manifest.acquire_by_hash)

        reference = manifest.files[Path("main/binary-amd64/Packages.gz")]
        data = files["dists/noble/main/binary-amd64/Packages.gz"]

        self.assertEqual(
            reference.path, Path("dists/noble/main/binary-amd64/Packages.gz")
        )
        self.assertEqual(reference.size, len(data))
        self.assertEqual(reference.hashes[HashType.SHA256], sha256(data))
        self.assertIn(HashType.MD5, reference.hashes)
        self.assertEqual(reference.compression, FileCompression.GZ)

        descriptor = reference.to_descriptor(manifest.acquire_by_hash)
        self.assertTrue(descriptor.metadata)
        self.assertIn(
            Path("dists/noble/main/binary-amd64/by-hash/SHA256") / sha256(data),
            descriptor.by_hash_paths(),
        )

    def test_select(self):
        manifest, _ = self.get_manifest()

        selections = manifest.select(["main", "universe"], ["amd64"], source=False)

        self.assertEqual([str(s) for s in selections], ["main/amd64", "universe/amd64"])

        main = selections[0]
        self.assertEqual(main.kind, "Packages")
        self.assertEqual(
            [reference.name for reference in main.variants],
            [
                Path("main/binary-amd64/Packages.gz"),
                Path("main/binary-amd64/Packages"),
            ],
        )
        self.assertEqual(
            [reference.name for reference in main.extras],
            [Path("main/binary-amd64/Release")],
        )

    def test_select_missing_architecture(self):
        manifest, _ = self.get_manifest()

        selections = manifest.select(["main"], ["arm64"], source=True)

        self.assertEqual(selections, [])

    def test_no_sha256(self):
        content = b"Suite: noble\nMD5Sum:\n d41d8cd98f00b204e9800998ecf8427e 0 main/a\n"

        with self.assertRaises(ParseError):
            ReleaseManifest.parse("noble", content)

    def test_invalid_checksum(self):
        content = b"Suite: noble\nSHA256:\n not-a-checksum 0 main/a\n"

        with self.assertRaises(ParseError) as context:
            ReleaseManifest.parse("noble", content)

        self.assertIn("not-a-checksum", str(context.exception))

    def test_size_conflict(self):
        content = (
            b"Suite: noble\n"
            b"MD5Sum:\n d41d8cd98f00b204e9800998ecf8427e 1 main/a\n"
            b"SHA256:\n"
            b" e3b0c44298fc1c149afbf4c8996fb924"
            b"27ae41e4649b934ca495991b7852b855 0 main/a\n"
        )

        with self.assertRaises(ParseError):
            ReleaseManifest.parse("noble", content)

    def test_unsafe_path_is_skipped(self):
        content = release_file(
            "noble", {"../../etc/passwd": b"root", "main/binary-amd64/Packages": b""}
        )

        manifest = ReleaseManifest.parse("noble", content)

        self.assertEqual(list(manifest.files), [Path("main/binary-amd64/Packages")])

    def test_release_descriptors(self):
        manifest = ReleaseManifest.parse(
            "noble",
            release_file("noble", {"main/binary-amd64/Packages": b""}),
            release_files={"Release": b"release", "Release.gpg": b"signature"},
        )

        descriptors = manifest.release_descriptors()

        self.assertEqual(
            [d.path for d in descriptors],
            [Path("dists/noble/Release"), Path("dists/noble/Release.gpg")],
        )
        self.assertTrue(all(d.metadata for d in descriptors))
        self.assertEqual(descriptors[1].sha256, sha256(b"signature"))


class TestIndexFetcher(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = TemporaryDirectory()

        self.key_file = Path(self._tmp.name) / "archive.gpg"
        self.key_file.write_bytes(b"\x99\x00\x0dtest key data")
        self.keyring = Keyring(
            sign_by=[self.key_file],
            etc_trusted=Path("/nonexistent/trusted.gpg"),
            etc_trusted_parts=Path("/nonexistent/trusted.gpg.d"),
        )

        self.files = build_repository([FakePackage("hello", "1.0", b"hello")])

    async def asyncTearDown(self):
        self._tmp.cleanup()

    def get_fetcher(self, files: dict, keyring: Keyring | None, verify: bool = True):
        return IndexFetcher(
            FakeDownloader(files),
            keyring,
            verify_signature=verify,
            retry_policy=RetryPolicy(backoff=0),
        )

    def gpg_info(self, valid: bool):
        gpg_info = MagicMock()
        gpg_info.valid.return_value = valid
        gpg_info.get.return_value = ["0123456789ABCDEF"]
        gpg_info.err = [] if valid else ["[GNUPG:] BADSIG 0123456789ABCDEF"]

        return gpg_info

    async def test_unverified(self):
        manifest = await self.get_fetcher(self.files, None, verify=False).fetch("noble")

        self.assertEqual(manifest.suite, "noble")
        self.assertEqual(list(manifest.release_files), ["Release"])
        self.assertIsNone(manifest.signed_by)
        self.assertIn(Path("main/binary-amd64/Packages.gz"), manifest.files)

    async def test_no_release_file(self):
        with self.assertRaises(MissingUpstreamFileError):
            await self.get_fetcher({}, None, verify=False).fetch("noble")

    async def test_no_keyring(self):
        with self.assertRaises(AuthenticationError):
            await self.get_fetcher(self.files, None).fetch("noble")

    async def test_unsigned(self):
        with self.assertRaises(AuthenticationError):
            await self.get_fetcher(self.files, self.keyring).fetch("noble")

    async def test_signed(self):
        files = dict(self.files)
        files["dists/noble/InRelease"] = files.pop("dists/noble/Release")

        with patch.object(
            GpgInfo, "from_sequence", return_value=self.gpg_info(True)
        ) as from_sequence:
            manifest = await self.get_fetcher(files, self.keyring).fetch("noble")

        from_sequence.assert_called_once()
        self.assertEqual(manifest.signed_by, "0123456789ABCDEF")
        self.assertEqual(list(manifest.release_files), ["InRelease"])

    async def test_detached_signature(self):
        files = dict(self.files)
        files["dists/noble/Release.gpg"] = b"signature"

        with patch.object(
            DetachedGpgInfo, "from_files", return_value=self.gpg_info(True)
        ) as from_files:
            manifest = await self.get_fetcher(files, self.keyring).fetch("noble")

        from_files.assert_called_once()
        self.assertEqual(manifest.signed_by, "0123456789ABCDEF")
        self.assertEqual(list(manifest.release_files), ["Release", "Release.gpg"])

    async def test_bad_signature(self):
        files = dict(self.files)
        files["dists/noble/InRelease"] = files["dists/noble/Release"]

        with (
            patch.object(
                GpgInfo, "from_sequence", return_value=self.gpg_info(False)
            ),
            self.assertRaises(AuthenticationError) as context,
        ):
            await self.get_fetcher(files, self.keyring).fetch("noble")

        self.assertIn("BADSIG", str(context.exception))

    async def test_no_trusted_keys(self):
        keyring = Keyring(
            sign_by=None,
            etc_trusted=Path("/nonexistent/trusted.gpg"),
            etc_trusted_parts=Path("/nonexistent/trusted.gpg.d"),
        )
        files = dict(self.files)
        files["dists/noble/InRelease"] = files["dists/noble/Release"]

        with self.assertRaises(AuthenticationError):
            await self.get_fetcher(files, keyring).fetch("noble")


class TestDetachedGpgInfo(BaseTest):
    FINGERPRINT = "0123456789ABCDEF0123456789ABCDEF01234567"

    def test_from_files(self):
        output = (
            "[GNUPG:] GOODSIG 0123456789ABCDEF Test Archive\n"
            f"[GNUPG:] VALIDSIG {self.FINGERPRINT} 2024-05-01 1714564800\n"
        )
        completed = subprocess.CompletedProcess(
            [], 0, stdout=output.encode(), stderr=b""
        )

        with patch.object(subprocess, "run", return_value=completed) as run:
            gpg_info = DetachedGpgInfo.from_files(
                "Release.gpg", "Release", ["/tmp/keyring.gpg"]
            )

        args = run.call_args.args[0]
        self.assertEqual(args[1:3], ["--status-fd", "1"])
        self.assertEqual(args[3:5], ["--keyring", "/tmp/keyring.gpg"])
        self.assertEqual(args[-2:], ["Release.gpg", "Release"])

        self.assertTrue(gpg_info.valid())
        self.assertEqual(gpg_info["VALIDSIG"][0], self.FINGERPRINT)

    def test_bad_signature(self):
        completed = subprocess.CompletedProcess(
            [], 1, stdout=b"[GNUPG:] BADSIG 0123456789ABCDEF Test\n", stderr=b"bad"
        )

        with patch.object(subprocess, "run", return_value=completed):
            gpg_info = DetachedGpgInfo.from_files("Release.gpg", "Release", [])

        self.assertFalse(gpg_info.valid())
        self.assertEqual(gpg_info.err, ["bad"])
