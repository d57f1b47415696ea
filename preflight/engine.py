"""Run an ordered set of checks against one image and bucket the outcomes."""

import logging
import time
from contextlib import ExitStack

from preflight.check import ImageReference
from preflight.errors import (CheckNotFoundError, DuplicateCheckNameError, NoChecksEnabledError,
                              PreflightError, SandboxPayloadError)
from preflight.podman import PodmanEngine
from preflight.results import Result, Results
from preflight.unshare import UnshareBridge

logger = logging.getLogger(__name__)

PASSED = "PASSED"
FAILED = "FAILED"
ERROR = "ERROR"


class CheckEngine:
    """
    Execute checks in order and accumulate a Results.

    The engine runs in one of three situations:

    * driver: the default.  Checks that need a mounted filesystem are handed
      to the UnshareBridge, everything else validates against the image
      archive which is pulled, saved and extracted at most once per run.
    * mounted: image is already a local directory, every check validates
      against it directly.
    * worker (in_sandbox): running inside 'podman unshare', mount-needing
      checks mount the image themselves.
    """

    def __init__(self, checks, image, *, mounted=False, in_sandbox=False,
                 podman=None, bridge=None):
        self.checks = list(checks)
        self.image = image
        self.mounted = mounted
        self.in_sandbox = in_sandbox
        self.podman = podman if podman is not None else PodmanEngine()
        self.bridge = bridge if bridge is not None else UnshareBridge(self.podman)
        self._passed = []
        self._failed = []
        self._errors = []
        self._passed_overall = False
        # Per-run acquisition state, see _archive_path()
        self._archive = None
        self._archive_error = None
        self._pulled = False

    @classmethod
    def new_for_policy(cls, registry, check_names, image, **kwargs):
        """
        Return an engine for the named checks, looked up in registry.

        Raises NoChecksEnabledError for an empty list, CheckNotFoundError
        for the first unknown name and DuplicateCheckNameError for the first
        name listed twice.
        """
        if not check_names:
            raise NoChecksEnabledError()
        checks = []
        seen = set()
        for name in check_names:
            check = registry.lookup(name)
            if check is None:
                raise CheckNotFoundError(name)
            if name in seen:
                raise DuplicateCheckNameError(name)
            seen.add(name)
            checks.append(check)
        return cls(checks, image, **kwargs)

    def results(self):
        """Return a frozen snapshot of the results so far."""
        return Results(tested_image=self.image,
                       passed_overall=self._passed_overall,
                       passed=tuple(self._passed),
                       failed=tuple(self._failed),
                       errors=tuple(self._errors))

    def _archive_path(self, stack):
        """Acquire the extracted image once, remember a failure for the rest of the run."""
        if self._archive is None and self._archive_error is None:
            try:
                self._archive = stack.enter_context(self.podman.acquired_image(self.image))
            except PreflightError as xcpt:
                logger.error("unable to acquire image %s: %s", self.image, xcpt)
                self._archive_error = xcpt
        if self._archive_error is not None:
            raise self._archive_error
        return self._archive

    def _validate_mounted(self, check):
        if not self._pulled:
            self.podman.pull(self.image)
            self._pulled = True
        with self.podman.mounted_image(self.image) as mountpoint:
            return check.validate(ImageReference(self.image, mountpoint))

    def _via_bridge(self, check):
        """
        Run check in a sandboxed worker and return its verdict.

        The report must hold exactly one entry for check, in the bucket its
        overall verdict agrees with.
        """
        # Only reached when the image isn't already mounted.
        report = self.bridge.run_check(check.name, self.image, mounted=False)
        buckets = [bucket for bucket, entries in ((PASSED, report.passed),
                                                  (FAILED, report.failed),
                                                  (ERROR, report.errors))
                   for entry in entries if entry.name == check.name]
        if len(buckets) != 1:
            raise SandboxPayloadError(
                f"sandbox report holds {len(buckets)} verdicts for {check.name}, expecting 1")
        if report.errors:
            raise PreflightError("; ".join(entry.error or f"{entry.name} errored"
                                           for entry in report.errors))
        if report.passed_overall != (buckets[0] == PASSED):
            raise SandboxPayloadError(
                f"sandbox report verdict for {check.name} contradicts its overall result")
        return report.passed_overall

    def _run_one(self, check, stack):
        if check.needs_mount and not self.mounted and not self.in_sandbox:
            return self._via_bridge(check)
        if self.mounted:
            return check.validate(ImageReference(self.image, self.image))
        if check.needs_mount:
            return self._validate_mounted(check)
        return check.validate(ImageReference(self.image, self._archive_path(stack)))

    def _record(self, check, elapsed, outcome, error=None):
        result = Result(check=check, elapsed_time=max(elapsed, 0.0), error=error)
        if outcome == PASSED:
            self._passed.append(result)
        elif outcome == FAILED:
            self._failed.append(result)
        else:
            self._errors.append(result)
        logger.info("check completed: %s result=%s", check.name, outcome)

    def execute_checks(self):
        """Run every check once, in order."""
        logger.info("target image: %s", self.image)
        with ExitStack() as stack:
            for check in self.checks:
                if check.metadata().level == "optional":
                    logger.info("check %s is optional and currently not enforced", check.name)
                logger.debug("running check: %s", check.name)
                start = time.monotonic()
                try:
                    passed = self._run_one(check, stack)
                except Exception as xcpt:
                    logger.debug("check %s raised: %r", check.name, xcpt)
                    self._record(check, time.monotonic() - start, ERROR, str(xcpt))
                    continue
                self._record(check, time.monotonic() - start, PASSED if passed else FAILED)
        self._passed_overall = not self._failed and not self._errors
