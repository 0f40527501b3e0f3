"""Logging setup for the notegraph command line.

Library modules only create loggers (`log = logging.getLogger(__name__)`)
and never attach handlers; the `notegraph` entry point calls
`configure_logging()` once.

NOTEGRAPH_LOG_LEVEL picks the level (a name such as DEBUG, or a number):
    - DEBUG: per-delta bookkeeping, watcher batches
    - INFO: rebuilds, renames, watcher start/stop (default)
    - WARNING: skipped notes, rewrite failures, superseded rebuilds
    - ERROR: deltas that forced a recovery rebuild
"""

import logging
import os
import sys

LOG_LEVEL_ENV = "NOTEGRAPH_LOG_LEVEL"
LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def _parse_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    value = value.strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a stderr handler to the `notegraph` logger.

    An explicit level wins over the environment. Calling this again only
    adjusts the level of the handler installed the first time.
    """
    package_logger = logging.getLogger("notegraph")
    resolved = _parse_level(level if level is not None else os.environ.get(LOG_LEVEL_ENV))

    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
        # Records stop here so an embedding app's root handler doesn't repeat them
        package_logger.propagate = False

    package_logger.setLevel(resolved)
    for handler in package_logger.handlers:
        handler.setLevel(resolved)
    return package_logger
