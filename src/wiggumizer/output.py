"""Verbosity and format control for CLI output.

Core modules log; only the CLI prints, and it prints through here so that
``--quiet`` and ``--format json`` behave the same for every command.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Optional

VERBOSITY_LEVELS = ("quiet", "normal", "verbose")
FORMATS = ("text", "json")


@dataclass
class OutputConfig:
    verbosity: str = "normal"  # quiet|normal|verbose
    format: str = "text"  # text|json


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    """Current output configuration, falling back to environment variables."""
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("WIGGUMIZER_VERBOSITY", "normal")
    format_type = os.environ.get("WIGGUMIZER_FORMAT", "text")
    if verbosity not in VERBOSITY_LEVELS:
        verbosity = "normal"
    if format_type not in FORMATS:
        format_type = "text"
    return OutputConfig(verbosity=verbosity, format=format_type)


def set_output_config(config: Optional[OutputConfig]) -> None:
    global _output_config
    _output_config = config


def print_output(message: str, level: str = "normal", file: Any = None, end: str = "\n") -> None:
    """Print ``message`` if the current verbosity allows ``level``.

    Levels: "error" always prints (to stderr), "quiet" prints in every
    mode, "normal" is hidden by quiet, "verbose" needs verbose. JSON mode
    suppresses all text except errors.
    """
    config = get_output_config()

    if level == "error":
        print(message, file=file or sys.stderr, end=end)
        return
    if config.format == "json":
        return

    if level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if should_print:
        print(message, file=file or sys.stdout, end=end)


def format_json_output(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False)


def print_json_output(data: Dict[str, Any]) -> None:
    """Print ``data`` as JSON, only in JSON mode."""
    if get_output_config().format == "json":
        print(format_json_output(data))
