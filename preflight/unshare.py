"""
Run a single check inside 'podman unshare'.

Mounting an image filesystem needs privileges an ordinary user only has
inside a user namespace.  Instead of requiring root, preflight re-executes
itself through 'podman unshare' in worker mode ('check run'), with the
check and image handed over in environment variables.  The worker writes
one Results JSON document to stdout, which is all the parent reads back.
"""

import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# Ref: https://github.com/rconradharris/envparse
from envparse import ConfigurationError as EnvConfigurationError
from envparse import env

from preflight.config import DEFAULT_LOGLEVEL, LOGFILE_VAR, LOGLEVEL_VAR
from preflight.errors import (MissingSandboxEnvError, SandboxFatalError, SandboxPayloadError,
                              SandboxRecursionError)
from preflight.log import FATAL_LOG_MARKER

logger = logging.getLogger(__name__)

# Presence means "already inside the sandbox"
EXEC_RUN_VAR = "PREFLIGHT_EXEC_RUN"
EXEC_RUN_SENTINEL = "1"
EXEC_CHECK_VAR = "PREFLIGHT_EXEC_CHECK"
EXEC_IMAGE_VAR = "PREFLIGHT_EXEC_IMAGE"
EXEC_MOUNTED_VAR = "PREFLIGHT_EXEC_MOUNTED"

# Name of the artifact the sandboxed worker logs into
UNSHARE_LOGFILE = "preflight-unshare.log"

WORKER_ARGS = ("check", "run")


def default_self_command():
    """Return the command line that re-enters this program."""
    return [sys.executable, "-m", "preflight"]


def in_sandbox(environ=None):
    """Return True when the idempotency marker is present in environ (default os.environ)."""
    return EXEC_RUN_VAR in (os.environ if environ is None else environ)


@dataclass(frozen=True)
class SandboxEnvelope:
    """Everything the worker process needs, carried in its environment."""

    check: str
    image: str
    mounted: bool = False
    path: str = ""
    log_file: str = UNSHARE_LOGFILE
    log_level: str = DEFAULT_LOGLEVEL
    extra: Dict[str, str] = field(default_factory=dict)

    def to_environ(self):
        """Return the complete child environment."""
        environ = {
            "PATH": self.path,
            EXEC_RUN_VAR: EXEC_RUN_SENTINEL,
            EXEC_CHECK_VAR: self.check,
            EXEC_IMAGE_VAR: self.image,
        }
        if self.mounted:
            environ[EXEC_MOUNTED_VAR] = "true"
        environ.update(self.extra)
        # Logging destination is fixed, callers can't redirect it.
        environ[LOGFILE_VAR] = self.log_file
        environ[LOGLEVEL_VAR] = self.log_level
        return environ

    @classmethod
    def from_environ(cls):
        """
        Read the envelope back inside the worker, from os.environ.

        The check and image variables are required, anything other than the
        exact string 'true' for the mounted variable means not mounted.
        """
        values = {}
        for var in (EXEC_CHECK_VAR, EXEC_IMAGE_VAR):
            try:
                values[var] = env.str(var)
            except EnvConfigurationError as xcpt:
                raise MissingSandboxEnvError(var) from xcpt
            if not values[var]:
                raise MissingSandboxEnvError(var)
        return cls(check=values[EXEC_CHECK_VAR],
                   image=values[EXEC_IMAGE_VAR],
                   mounted=env.str(EXEC_MOUNTED_VAR, default="false") == "true",
                   path=env.str("PATH", default=""),
                   log_file=env.str(LOGFILE_VAR, default=UNSHARE_LOGFILE),
                   log_level=env.str(LOGLEVEL_VAR, default=DEFAULT_LOGLEVEL))


@dataclass(frozen=True)
class ReportEntry:
    """One check entry in a decoded sandbox report."""

    name: str
    elapsed_time: float = 0.0
    error: str = ""


@dataclass(frozen=True)
class SandboxReport:
    """Typed form of the Results document a worker writes to stdout."""

    image: str
    passed_overall: bool
    passed: Tuple[ReportEntry, ...] = ()
    failed: Tuple[ReportEntry, ...] = ()
    errors: Tuple[ReportEntry, ...] = ()
    stdout: str = ""
    stderr: str = ""


def _entries(results, bucket, report):
    if bucket not in results:
        raise SandboxPayloadError(f"results document lacks a '{bucket}' list", report)
    items = results[bucket]
    if not isinstance(items, list):
        raise SandboxPayloadError(f"results '{bucket}' is not a list", report)
    entries = []
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise SandboxPayloadError(f"malformed '{bucket}' entry {item!r}", report)
        elapsed = item.get("elapsed_time", 0.0)
        if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
            raise SandboxPayloadError(f"malformed elapsed_time in {item!r}", report)
        entries.append(ReportEntry(name=item["name"],
                                   elapsed_time=float(elapsed),
                                   error=str(item.get("error") or "")))
    return tuple(entries)


def parse_report(report):
    """
    Decode a worker's stdout into a SandboxReport.

    Anything that isn't exactly a Results document is refused, partial
    data is never guessed at.
    """
    try:
        doc = json.loads(report.stdout)
    except (json.JSONDecodeError, TypeError) as xcpt:
        raise SandboxPayloadError(f"could not read results from stdout: {xcpt}", report) from xcpt

    if not isinstance(doc, dict):
        raise SandboxPayloadError("results document is not a JSON object", report)
    passed_overall = doc.get("passed")
    if not isinstance(passed_overall, bool):
        raise SandboxPayloadError("results document lacks a boolean 'passed'", report)
    results = doc.get("results")
    if not isinstance(results, dict):
        raise SandboxPayloadError("results document 'results' is not an object", report)

    return SandboxReport(image=str(doc.get("image", "")),
                         passed_overall=passed_overall,
                         passed=_entries(results, "passed", report),
                         failed=_entries(results, "failed", report),
                         errors=_entries(results, "errors", report),
                         stdout=report.stdout,
                         stderr=report.stderr)


def is_fatal(report):
    """
    Return True when the child failed because the tooling itself broke.

    Only a non-zero exit with a fatal log line on stderr counts.  A non-zero
    exit with empty or other stderr means the worker ran to completion and
    its stdout holds the verdict.
    """
    # TODO: Replace this log-text match with a dedicated exit code once
    # every worker release reports fatal errors that way.
    return (report.returncode != 0
            and bool(report.stderr.strip())
            and FATAL_LOG_MARKER in report.stderr.lower())


class UnshareBridge:
    """Drive the worker-mode re-execution of preflight inside 'podman unshare'."""

    def __init__(self, podman, sink=None, log_level=DEFAULT_LOGLEVEL,
                 self_command=None, timeout: Optional[float] = None):
        self.podman = podman
        self.sink = sink
        self.log_level = log_level
        self.self_command = list(self_command or default_self_command())
        self.timeout = timeout

    def _log_file(self):
        if self.sink is None:
            return UNSHARE_LOGFILE
        return self.sink.path(UNSHARE_LOGFILE)

    def run_check(self, check_name, image, mounted=False, extra_env=None):
        """
        Run check_name against image in a sandboxed worker, return a SandboxReport.

        Raises SandboxRecursionError when already inside a sandbox (nothing is
        spawned), SandboxFatalError when the worker or its tooling failed and
        SandboxPayloadError when its stdout can't be decoded.
        """
        if in_sandbox():
            raise SandboxRecursionError()

        envelope = SandboxEnvelope(check=check_name,
                                   image=image,
                                   mounted=mounted,
                                   path=os.environ.get("PATH", ""),
                                   log_file=self._log_file(),
                                   log_level=self.log_level,
                                   extra=dict(extra_env or {}))
        command = self.self_command + list(WORKER_ARGS)
        logger.debug("running check %s in podman unshare", check_name)
        try:
            report = self.podman.unshare(envelope.to_environ(), *command, timeout=self.timeout)
        except subprocess.TimeoutExpired as xcpt:
            raise SandboxFatalError(
                f"check {check_name} did not finish within {self.timeout}s in podman unshare"
            ) from xcpt

        if is_fatal(report):
            logger.debug("Stdout: %s", report.stdout)
            logger.debug("Stderr: %s", report.stderr)
            raise SandboxFatalError(
                f"could not run check {check_name} in podman unshare: {report.stderr.strip()}",
                report)
        if report.returncode != 0:
            logger.debug("podman unshare exited %d without a fatal error, reading results",
                         report.returncode)
        return parse_report(report)
