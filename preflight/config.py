"""Runtime configuration, read from the process environment."""

from dataclasses import dataclass

# Ref: https://github.com/rconradharris/envparse
from envparse import env

from preflight.errors import ConfigurationError

# Verbosity of both the driver and any sandboxed child.
LOGLEVEL_VAR = "PFLT_LOGLEVEL"
LOGFILE_VAR = "PFLT_LOGFILE"
ARTIFACTS_VAR = "PFLT_ARTIFACTS"
PODMAN_VAR = "PFLT_PODMAN"

DEFAULT_LOGLEVEL = "info"
DEFAULT_LOGFILE = "preflight.log"
DEFAULT_ARTIFACTS = "artifacts"
DEFAULT_PODMAN = "podman"

LOG_LEVELS = ("trace", "debug", "info", "warning", "warn", "error", "fatal")


@dataclass(frozen=True)
class Config:
    """Settings shared by the driver and worker modes."""

    log_level: str = DEFAULT_LOGLEVEL
    log_file: str = DEFAULT_LOGFILE
    artifacts: str = DEFAULT_ARTIFACTS
    podman: str = DEFAULT_PODMAN

    @classmethod
    def from_env(cls):
        """Return a Config from $PFLT_* values, falling back to defaults."""
        log_level = env.str(LOGLEVEL_VAR, default=DEFAULT_LOGLEVEL).strip().lower()
        if not log_level:
            log_level = DEFAULT_LOGLEVEL
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Unsupported ${LOGLEVEL_VAR} value '{log_level}',"
                                     f" expecting one of {', '.join(LOG_LEVELS)}")
        return cls(log_level=log_level,
                   log_file=env.str(LOGFILE_VAR, default=DEFAULT_LOGFILE),
                   artifacts=env.str(ARTIFACTS_VAR, default=DEFAULT_ARTIFACTS),
                   podman=env.str(PODMAN_VAR, default=DEFAULT_PODMAN))
