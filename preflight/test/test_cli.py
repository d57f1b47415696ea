#!/usr/bin/env python3

"""Verify the command-line driver and worker modes."""

import contextlib
import json
import os
import unittest
from io import StringIO
from tempfile import TemporaryDirectory
from unittest.mock import patch

from preflight import cli
from preflight.check import GenericCheck, HelpText, Metadata
from preflight.results import Result, Results


def stub(name):
    return GenericCheck(name, lambda target: True, Metadata(description=name),
                        HelpText(message="help", suggestion=f"fix {name}"))


class TestBase(unittest.TestCase):

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmpdir = self._tmp.name
        # Leave the test runner's logging alone.
        patcher = patch("preflight.cli.configure_logging")
        self.configure_logging = patcher.start()
        self.addCleanup(patcher.stop)
        self.stdout = StringIO()

    def run_cli(self, argv, env=None):
        env = env if env is not None else {}
        with patch.dict(os.environ, env, clear=True):
            return cli.CLI(argv, stdout=self.stdout)()


class TestArgs(TestBase):

    def test_missing_image(self):
        with contextlib.redirect_stderr(StringIO()):
            self.assertRaises(SystemExit, cli.CLI, ["check", "container"])

    def test_unknown_policy(self):
        with contextlib.redirect_stderr(StringIO()):
            self.assertRaises(SystemExit, cli.CLI, ["check", "bogus", "quay.io/foo/bar:1"])

    def test_run_hidden(self):
        help_text = StringIO()
        with contextlib.redirect_stdout(help_text):
            self.assertRaises(SystemExit, cli.CLI, ["check", "--help"])
        self.assertIn("{container,operator,root,scratch}", help_text.getvalue())
        self.assertNotIn("scratch,run", help_text.getvalue())

    def test_exit_codes(self):
        check = stub("x")
        self.assertEqual(cli.exit_code(Results("i", True, passed=(Result(check, 0.1),))), 0)
        self.assertEqual(cli.exit_code(Results("i", failed=(Result(check, 0.1),))), 10)
        self.assertEqual(cli.exit_code(Results("i", failed=(Result(check, 0.1),),
                                               errors=(Result(check, 0.1, "e"),))), 20)


class TestListChecks(TestBase):

    def test_one_policy(self):
        self.assertEqual(self.run_cli(["list-checks", "operator"]), 0)
        self.assertEqual(self.stdout.getvalue(), "operator:\n  BundleHasRequiredAnnotations\n")

    def test_all(self):
        self.run_cli(["list-checks"])
        output = self.stdout.getvalue()
        for policy in ("container:", "root:", "scratch:", "operator:"):
            self.assertIn(policy, output)


class TestDriver(TestBase):

    def test_driver(self):
        """Verify per-check lines, the results artifact and the exit code."""
        results = Results("quay.io/foo/bar:1", False,
                          passed=(Result(stub("good"), 0.1),),
                          failed=(Result(stub("bad"), 0.2),))
        env = {"PFLT_ARTIFACTS": os.path.join(self.tmpdir, "artifacts"),
               "PFLT_LOGFILE": os.path.join(self.tmpdir, "preflight.log")}
        with patch("preflight.cli.CheckEngine.new_for_policy") as new_for_policy:
            new_for_policy.return_value.results.return_value = results
            code = self.run_cli(["check", "container", "quay.io/foo/bar:1"], env)
        self.assertEqual(code, 10)
        new_for_policy.return_value.execute_checks.assert_called_once_with()
        args, kwargs = new_for_policy.call_args
        self.assertEqual(args[2], "quay.io/foo/bar:1")
        self.assertIn("RunAsNonRoot", args[1])
        self.assertFalse(kwargs["mounted"])
        self.assertEqual(self.stdout.getvalue(), "PASS  good\nFAIL  bad  # fix bad\n")
        with open(os.path.join(self.tmpdir, "artifacts", "results.json")) as results_file:
            self.assertEqual(json.load(results_file), results.to_dict())
        self.configure_logging.assert_called_once_with("info", env["PFLT_LOGFILE"])

    def test_unwritable_logfile(self):
        self.configure_logging.side_effect = PermissionError("denied")
        env = {"PFLT_ARTIFACTS": os.path.join(self.tmpdir, "artifacts"),
               "PFLT_LOGFILE": "/nonexistent/preflight.log"}
        with patch("preflight.cli.CheckEngine.new_for_policy") as new_for_policy:
            code = self.run_cli(["check", "container", "quay.io/foo/bar:1"], env)
        self.assertEqual(code, cli.EXIT_FATAL)
        new_for_policy.assert_not_called()

    def test_unwritable_artifacts(self):
        """Verify an artifacts path that is a regular file is fatal."""
        blocker = os.path.join(self.tmpdir, "artifacts")
        with open(blocker, "w") as blocker_file:
            blocker_file.write("not a directory")
        results = Results("quay.io/foo/bar:1", True, passed=(Result(stub("good"), 0.1),))
        env = {"PFLT_ARTIFACTS": blocker,
               "PFLT_LOGFILE": os.path.join(self.tmpdir, "preflight.log")}
        with patch("preflight.cli.CheckEngine.new_for_policy") as new_for_policy:
            new_for_policy.return_value.results.return_value = results
            code = self.run_cli(["check", "container", "quay.io/foo/bar:1"], env)
        self.assertEqual(code, cli.EXIT_FATAL)
        self.assertEqual(self.stdout.getvalue(), "PASS  good\n")

    def test_bad_loglevel(self):
        with contextlib.redirect_stderr(StringIO()):
            self.assertRaises(SystemExit, self.run_cli,
                              ["check", "container", "quay.io/foo/bar:1"],
                              {"PFLT_LOGLEVEL": "chatty"})


class TestWorker(TestBase):

    def worker_env(self, **extra):
        env = {"PREFLIGHT_EXEC_RUN": "1",
               "PREFLIGHT_EXEC_CHECK": "HasLicense",
               "PREFLIGHT_EXEC_IMAGE": self.tmpdir,
               "PREFLIGHT_EXEC_MOUNTED": "true",
               "PFLT_LOGFILE": os.path.join(self.tmpdir, "preflight-unshare.log")}
        env.update(extra)
        return env

    def test_worker(self):
        """Verify a worker writes only the results document to stdout."""
        os.makedirs(os.path.join(self.tmpdir, "licenses"))
        with open(os.path.join(self.tmpdir, "licenses", "LICENSE"), "w") as license_file:
            license_file.write("MIT\n")
        self.assertEqual(self.run_cli(["check", "run"], self.worker_env()), 0)
        doc = json.loads(self.stdout.getvalue())
        self.assertTrue(doc["passed"])
        self.assertEqual(doc["image"], self.tmpdir)
        self.assertEqual([entry["name"] for entry in doc["results"]["passed"]], ["HasLicense"])

    def test_worker_failing_check(self):
        self.assertEqual(self.run_cli(["check", "run"], self.worker_env()), 0)
        doc = json.loads(self.stdout.getvalue())
        self.assertFalse(doc["passed"])
        self.assertEqual([entry["name"] for entry in doc["results"]["failed"]], ["HasLicense"])

    def test_worker_fatal(self):
        """Verify missing inputs log FATAL and exit non-zero with nothing on stdout."""
        cases = ({}, self.worker_env(PREFLIGHT_EXEC_CHECK="doesnotexist"))
        env = self.worker_env()
        del env["PREFLIGHT_EXEC_IMAGE"]
        cases += (env,)
        for env in cases:
            with self.subTest(env=env):
                with self.assertLogs("preflight.cli", level="CRITICAL") as logs:
                    self.assertEqual(self.run_cli(["check", "run"], env), 1)
                self.assertIn("FATAL", logs.output[0])
                self.assertEqual(self.stdout.getvalue(), "")


if __name__ == "__main__":
    unittest.main()
