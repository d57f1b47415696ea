"""
Certify container images and operator bundles against a policy.

'preflight check <policy> <image>' runs every check of the policy and prints
one PASS/FAIL/ERROR line per check.  Checks which need the image filesystem
mounted re-execute preflight inside 'podman unshare' ('check run'), those
children read everything they need from their environment.

Exit codes: 0 all passed, 10 some failed, 20 some could not be run.
"""

import argparse
import logging
import sys

from preflight import checks
from preflight.artifacts import sink_from_config
from preflight.config import Config
from preflight.engine import CheckEngine
from preflight.errors import MissingSandboxEnvError, PreflightError
from preflight.log import configure_logging
from preflight.podman import PodmanEngine
from preflight.unshare import EXEC_RUN_VAR, SandboxEnvelope, UnshareBridge, in_sandbox

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 10
EXIT_ERRORS = 20
# Tooling failure, no verdict
EXIT_FATAL = 1

RUN_TARGET = "run"
POLICIES = (checks.CONTAINER_POLICY, checks.OPERATOR_POLICY,
            checks.ROOT_POLICY, checks.SCRATCH_POLICY)

RESULTS_ARTIFACT = "results.json"


def exit_code(results):
    """Map a Results snapshot onto the process exit code."""
    if results.errors:
        return EXIT_ERRORS
    if results.failed:
        return EXIT_FAILED
    return EXIT_PASSED


class CLI:
    """Represent command-line-interface runtime state and behaviors."""

    # An argparse parser instance
    parser = None

    # When valid, namespace instance from parser
    args = None

    # Runtime settings from $PFLT_*
    cfg = None

    def __init__(self, argv=None, stdout=None) -> None:
        """Initialize runtime context based on command-line options and parameters."""
        self.parser = self.args_parser()
        self.args = self.parser.parse_args(argv)
        self.stdout = stdout if stdout is not None else sys.stdout
        if self.args.command is None:
            self.parser.print_help()
            self.parser.exit(2)
        if self.args.command == "check" and self.args.target != RUN_TARGET and not self.args.image:
            self.parser.error(f"check {self.args.target} requires an <image>")

    def __call__(self) -> int:
        """Execute requested command-line actions, return the exit code."""
        if self.args.command == "list-checks":
            return self.list_checks()
        if self.args.target == RUN_TARGET:
            return self.worker()
        return self.driver()

    def args_parser(self) -> argparse.ArgumentParser:
        """Parse command-line options and arguments."""
        parser = argparse.ArgumentParser(prog="preflight", description=__doc__,
                                         formatter_class=argparse.RawDescriptionHelpFormatter)
        subparsers = parser.add_subparsers(dest="command")

        check = subparsers.add_parser("check", help="Run the checks of a policy against an image")
        # 'run' is the hidden worker mode
        check.add_argument("target", choices=POLICIES + (RUN_TARGET,),
                           metavar="{" + ",".join(POLICIES) + "}",
                           help="Policy to check against")
        check.add_argument("image", nargs="?", metavar="<image>",
                           help="Image reference, or a local directory with --mounted")
        check.add_argument("--mounted", action="store_true",
                           help="Treat <image> as an already mounted/extracted filesystem")

        list_checks = subparsers.add_parser("list-checks", help="List checks, by policy")
        list_checks.add_argument("policy", nargs="?", choices=POLICIES,
                                 help="Only list checks of this policy")
        return parser

    def _write(self, line):
        self.stdout.write(f"{line}\n")

    def list_checks(self) -> int:
        registry = checks.build_registry()
        policies = [self.args.policy] if self.args.policy else registry.policies()
        for policy in policies:
            self._write(f"{policy}:")
            for name in registry.list_by_policy(policy):
                self._write(f"  {name}")
        return EXIT_PASSED

    def driver(self) -> int:
        """Run a whole policy, delegating mount-needing checks to sandboxed workers."""
        try:
            self.cfg = Config.from_env()
        except PreflightError as xcpt:
            self.parser.error(str(xcpt))
        try:
            configure_logging(self.cfg.log_level, self.cfg.log_file)
        except OSError as xcpt:
            logger.critical("unable to open log file %s: %s", self.cfg.log_file, xcpt)
            return EXIT_FATAL
        sink = sink_from_config(self.cfg)
        podman = PodmanEngine(self.cfg.podman)
        bridge = UnshareBridge(podman, sink=sink, log_level=self.cfg.log_level)
        registry = checks.build_registry()

        try:
            engine = CheckEngine.new_for_policy(registry,
                                                registry.list_by_policy(self.args.target),
                                                self.args.image,
                                                mounted=self.args.mounted,
                                                podman=podman,
                                                bridge=bridge)
        except PreflightError as xcpt:
            logger.critical("%s", xcpt)
            return EXIT_FATAL

        engine.execute_checks()
        results = engine.results()
        for result in results.passed:
            self._write(f"PASS  {result.name}")
        for result in results.failed:
            self._write(f"FAIL  {result.name}  # {result.check.help().suggestion}")
        for result in results.errors:
            self._write(f"ERROR {result.name}  # {result.error}")
        try:
            dest = sink.write(RESULTS_ARTIFACT, results.to_json())
        except OSError as xcpt:
            logger.critical("unable to write %s: %s", RESULTS_ARTIFACT, xcpt)
            return EXIT_FATAL
        logger.info("results written to %s", dest)
        return exit_code(results)

    def worker(self) -> int:
        """
        Run exactly one check inside 'podman unshare'.

        Only the results document may reach stdout.  Anything preventing a
        verdict is logged at FATAL level and exits non-zero, that line is
        what the parent looks for on stderr.
        """
        configure_logging("info")
        try:
            if not in_sandbox():
                raise MissingSandboxEnvError(EXEC_RUN_VAR)
            self.cfg = Config.from_env()
            configure_logging(self.cfg.log_level, self.cfg.log_file)
            envelope = SandboxEnvelope.from_environ()
            registry = checks.build_registry()
            engine = CheckEngine.new_for_policy(registry, [envelope.check], envelope.image,
                                                mounted=envelope.mounted,
                                                in_sandbox=True,
                                                podman=PodmanEngine(self.cfg.podman))
        except (PreflightError, OSError) as xcpt:
            logger.critical("%s", xcpt)
            return EXIT_FATAL

        engine.execute_checks()
        self._write(engine.results().to_json())
        return EXIT_PASSED


def main(argv=None) -> int:
    cli = CLI(argv)
    return cli()


if __name__ == "__main__":
    sys.exit(main())
