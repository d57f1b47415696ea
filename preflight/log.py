"""Logging setup for the driver and the sandboxed worker."""

import logging
import sys

# Records at or above CRITICAL render as 'level=FATAL', the sandbox parent
# looks for this text on the child's stderr.
FATAL_LOG_MARKER = "level=fatal"

LOG_FORMAT = 'level={levelname} msg="{message}"'
FILE_LOG_FORMAT = 'time="{asctime}" level={levelname} name={name} msg="{message}"'

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

logging.addLevelName(logging.CRITICAL, "FATAL")


def level_from_name(name: str) -> int:
    """Map a $PFLT_LOGLEVEL style name to a logging level, default INFO."""
    return _LEVELS.get(str(name).strip().lower(), logging.INFO)


def configure_logging(level: str = "info", logfile: str = None, stream=None) -> None:
    """
    (Re)configure the root logger.

    Messages go to stream (default stderr), never stdout: the sandboxed
    worker reserves stdout for its results document.  When logfile is
    given, everything at DEBUG and above is also appended there.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(stream if stream is not None else sys.stderr)
    console.setLevel(level_from_name(level))
    console.setFormatter(logging.Formatter(LOG_FORMAT, style='{'))
    root.addHandler(console)

    if logfile:
        to_file = logging.FileHandler(logfile)
        to_file.setLevel(logging.DEBUG)
        to_file.setFormatter(logging.Formatter(FILE_LOG_FORMAT, style='{'))
        root.addHandler(to_file)
