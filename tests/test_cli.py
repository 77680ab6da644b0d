import contextlib
import io
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pget import cli
from pget.s3 import S3Config, S3DirectoryClient


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.remote = self.root / "remote"
        self.remote.mkdir()
        for i in range(6):
            (self.remote / f"part-{i:05d}").write_bytes(f"line {i}\n".encode("utf-8"))

    def _run(self, *argv: str) -> int:
        return cli.main(["--no-progress", *argv])

    def _run_capturing_stderr(self, *argv: str) -> tuple:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            code = self._run(*argv)
        return code, stderr.getvalue()

    def test_plain_mode_copies_files(self):
        out_dir = self.root / "out"
        out_dir.mkdir()

        self.assertEqual(self._run("-p", "3", str(self.remote), str(out_dir)), 0)

        self.assertEqual(sorted(p.name for p in out_dir.iterdir()), [f"part-{i:05d}" for i in range(6)])

    def test_merge_mode_writes_single_file(self):
        output = self.root / "merged.txt"

        self.assertEqual(self._run("-m", "-p", "4", str(self.remote), str(output)), 0)

        self.assertEqual(output.read_text(encoding="utf-8"), "".join(f"line {i}\n" for i in range(6)))

    def test_merge_mode_output_honours_umask(self):
        previous = os.umask(0o022)
        self.addCleanup(os.umask, previous)
        output = self.root / "merged.txt"

        self.assertEqual(self._run("-m", str(self.remote), str(output)), 0)

        self.assertEqual(stat.S_IMODE(output.stat().st_mode), 0o644)

    def test_merge_mode_refuses_existing_output(self):
        output = self.root / "merged.txt"
        output.write_text("old", encoding="utf-8")

        code, stderr = self._run_capturing_stderr("--merge", str(self.remote), str(output))

        self.assertEqual(code, 1)
        self.assertIn(f"pget: precondition failed: Target file {output} already exists", stderr)
        self.assertEqual(output.read_text(encoding="utf-8"), "old")

    def test_plain_mode_refuses_missing_output_directory(self):
        code, stderr = self._run_capturing_stderr(str(self.remote), str(self.root / "missing"))
        self.assertEqual(code, 1)
        self.assertIn("pget: precondition failed: ", stderr)

    def test_missing_input_reports_list_stage(self):
        out_dir = self.root / "out"
        out_dir.mkdir()
        code, stderr = self._run_capturing_stderr(str(self.root / "nope"), str(out_dir))
        self.assertEqual(code, 1)
        self.assertIn("pget: list failed: ", stderr)

    def test_unusable_temp_location_reports_merge_stage(self):
        output = self.root / "merged.txt"
        with mock.patch.object(tempfile, "tempdir", str(self.root / "no-such-tmp")):
            code, stderr = self._run_capturing_stderr("-m", str(self.remote), str(output))

        self.assertEqual(code, 1)
        self.assertIn("pget: merge failed: Failed to create scratch directory", stderr)
        self.assertFalse(output.exists())

    def test_wrong_argument_count_exits_with_usage(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                self._run(str(self.remote))
        self.assertEqual(ctx.exception.code, 2)

    def test_rejects_non_positive_parallelism(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                self._run("-p", "0", str(self.remote), str(self.root))
        self.assertEqual(ctx.exception.code, 2)

    def test_defaults(self):
        args = cli.build_parser().parse_args(["in", "out"])
        self.assertEqual(args.parallel, 10)
        self.assertFalse(args.merge)

    def test_s3_input_uses_s3_client(self):
        args = cli.build_parser().parse_args(
            ["-p", "40", "--region", "us-east-2", "--endpoint-url", "http://minio:9000", "s3://bucket/data", "out"]
        )
        cfg = S3Config(region="eu-west-1")
        with mock.patch.object(cli, "load_s3_config", return_value=cfg) as load:
            with mock.patch.object(cli, "create_s3_client") as create:
                client = cli.open_client(args)

        self.assertIsInstance(client, S3DirectoryClient)
        load.assert_called_once_with(None)
        self.assertEqual(cfg.endpoint_url, "http://minio:9000")
        create.assert_called_once_with(cfg, "us-east-2", max_pool_connections=40)

    def test_missing_properties_file_reports_config_stage(self):
        code, stderr = self._run_capturing_stderr(
            "--properties", str(self.root / "absent.properties"), "s3://bucket/data", str(self.root)
        )
        self.assertEqual(code, 1)
        self.assertIn("pget: config failed: ", stderr)


if __name__ == "__main__":
    unittest.main()
