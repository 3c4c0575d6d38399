import io
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from apt_snapshot.apt_snapshot import main
from apt_snapshot.layout import MirrorLayout
from apt_snapshot.publish import PublishController
from apt_snapshot.snapshot import SnapshotManager
from apt_snapshot.version import __version__
from tests.base import BaseTest

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestMain(BaseTest):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.base_path = Path(self._tmp.name)
        self.mirror_path = self.base_path / "mirrors"

        self.config_file = self.base_path / "snapshot.list"
        self.config_file.write_text(
            f"set base_path {self.base_path}\n"
            "deb [id=ubuntu arch=amd64] http://archive.example.org/ubuntu noble main\n"
            "deb [id=debian arch=amd64] http://deb.example.org/debian bookworm main\n"
        )

    def tearDown(self):
        self._tmp.cleanup()

    def run_main(self, *argv: str, now: datetime = NOW) -> tuple[int, str]:
        stdout = io.StringIO()

        with (
            patch.object(SnapshotManager, "now", return_value=now),
            redirect_stdout(stdout),
        ):
            code = main(["-c", str(self.config_file), *argv])

        return code, stdout.getvalue()

    def test_version(self):
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            self.assertEqual(main(["--version"]), 0)

        self.assertEqual(stdout.getvalue().strip(), __version__)

    def test_no_command(self):
        with redirect_stderr(io.StringIO()):
            self.assertEqual(main(["-c", str(self.config_file)]), 2)

    def test_missing_config(self):
        self.assertEqual(main(["-c", str(self.base_path / "missing"), "status"]), 2)

    def test_invalid_config(self):
        self.config_file.write_text(
            "deb http://archive.example.org/ubuntu noble main\n"
        )

        self.assertEqual(self.run_main("status")[0], 2)

    def test_snapshot_commands(self):
        self.make_synced_mirror(self.mirror_path)
        publisher = PublishController(self.mirror_path)

        self.assertEqual(
            self.run_main("snapshot", "create", "ubuntu", "first"), (0, "first\n")
        )
        self.assertEqual(
            self.run_main("snapshot", "create", "ubuntu", "--stage"),
            (0, "2024-05-01T12-00-00Z\n"),
        )
        self.assertEqual(publisher.state("ubuntu").staging, "2024-05-01T12-00-00Z")

        self.assertEqual(self.run_main("snapshot", "publish", "ubuntu", "first")[0], 0)
        self.assertEqual(publisher.state("ubuntu").production, "first")

        code, output = self.run_main("snapshot", "list", "ubuntu")
        self.assertEqual(code, 0)
        lines = output.splitlines()
        self.assertEqual(
            lines[0].split(), ["MIRROR", "NAME", "CREATED", "SIZE", "FILES", "STATUS"]
        )
        self.assertEqual(
            [(line.split()[1], line.split()[-1]) for line in lines[1:]],
            [("2024-05-01T12-00-00Z", "staged"), ("first", "published")],
        )

        self.assertEqual(
            self.run_main("snapshot", "promote", "ubuntu"),
            (0, "2024-05-01T12-00-00Z\n"),
        )
        self.assertEqual(publisher.state("ubuntu").production, "2024-05-01T12-00-00Z")

        code, output = self.run_main("status")
        self.assertEqual(code, 0)
        ubuntu, debian = output.splitlines()
        self.assertTrue(
            ubuntu.startswith("ubuntu: url http://archive.example.org/ubuntu;")
        )
        self.assertIn("snapshots 2", ubuntu)
        self.assertIn("production 2024-05-01T12-00-00Z", ubuntu)
        self.assertEqual(
            debian,
            "debian: url http://deb.example.org/debian; last sync never; snapshots 0;"
            " staging -; production -",
        )

        self.assertEqual(
            self.run_main("snapshot", "delete", "ubuntu", "2024-05-01T12-00-00Z")[0],
            1,
        )
        self.assertEqual(
            self.run_main(
                "snapshot", "delete", "ubuntu", "2024-05-01T12-00-00Z", "--force"
            )[0],
            0,
        )
        self.assertEqual(publisher.state("ubuntu").production, None)

        later = NOW + timedelta(days=1)
        prune = ("snapshot", "prune", "--keep-last", "0")
        first_path = MirrorLayout.for_mirror(self.mirror_path, "ubuntu").snapshot_path(
            "first"
        )

        self.assertEqual(
            self.run_main(*prune, "--keep-within", "1h", "--dry-run", now=later),
            (0, "ubuntu first\n"),
        )
        self.assertTrue(first_path.is_dir())

        # Mirror retention keeps snapshots of the last 30 days
        self.assertEqual(self.run_main(*prune, "ubuntu", now=later), (0, ""))

        self.assertEqual(
            self.run_main(*prune, "ubuntu", "--keep-within", "1h", now=later),
            (0, "ubuntu first\n"),
        )
        self.assertFalse(first_path.exists())
        self.assertEqual(self.run_main("snapshot", "list")[1].count("\n"), 1)

    def test_snapshot_errors(self):
        self.assertEqual(self.run_main("snapshot", "create", "ubuntu")[0], 1)
        self.assertEqual(self.run_main("snapshot", "create", "unknown")[0], 2)
        self.assertEqual(self.run_main("snapshot", "promote", "ubuntu")[0], 1)
        self.assertEqual(self.run_main("snapshot", "stage", "ubuntu", "missing")[0], 1)
        self.assertEqual(
            self.run_main("snapshot", "create", "ubuntu", "production")[0], 2
        )
