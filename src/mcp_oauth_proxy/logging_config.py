"""Logging configuration for the MCP OAuth proxy.

stdout carries the stdio protocol, so every handler writes to stderr.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn", "uvicorn.error", "uvicorn.access")


def resolve_log_level(level: str | None, debug: bool = False, quiet: bool = False) -> int:
    """Debug wins over quiet, quiet wins over the named level."""
    if debug:
        return logging.DEBUG
    if quiet:
        return logging.ERROR
    return LOG_LEVELS.get((level or "info").lower(), logging.INFO)


def configure_logging(level: str | None = "info", debug: bool = False, quiet: bool = False) -> None:
    """Configure root logging for the process."""
    resolved = resolve_log_level(level, debug=debug, quiet=quiet)
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else max(resolved, logging.WARNING))

    if debug:
        logging.getLogger(__name__).debug("Debug mode enabled")
