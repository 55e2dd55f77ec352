"""Logging setup for the ``wiggumize`` process.

File selection, convergence analysis and diff application never print.
They log through module-level loggers and the CLI decides, through
:func:`setup_logging`, how much of that reaches the terminal.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

QUIET_LOGGERS = ("urllib3", "requests")

# Marks handlers installed here so a second call replaces only those.
_OWNED_ATTR = "_wiggumizer_owned"


def _console_level(verbose: bool, quiet: bool) -> int:
    if quiet:
        return logging.ERROR
    if verbose:
        return logging.DEBUG
    return logging.INFO


def _owned(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _OWNED_ATTR, True)
    return handler


def _build_handlers(level: int, log_file: Optional[Path]) -> List[logging.Handler]:
    # stderr keeps stdout clean for --format json
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    handlers: List[logging.Handler] = [_owned(console)]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(log_file, encoding="utf-8")
        to_file.setLevel(logging.DEBUG)
        to_file.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(_owned(to_file))
    return handlers


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    quiet: bool = False,
) -> logging.Logger:
    """Route wiggumizer's log records to stderr and, optionally, a file.

    Args:
        verbose: Show DEBUG records on the console
        log_file: Also write every record (DEBUG and up) to this file
        quiet: Show only errors on the console; wins over ``verbose``

    Returns:
        The root logger
    """
    level = _console_level(verbose, quiet)
    root = logging.getLogger()

    for handler in [h for h in root.handlers if getattr(h, _OWNED_ATTR, False)]:
        root.removeHandler(handler)
        handler.close()

    for handler in _build_handlers(level, log_file):
        root.addHandler(handler)
    # The file handler wants DEBUG even when the console is quieter.
    root.setLevel(logging.DEBUG if log_file is not None else level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
