"""Atomic file writes for edits and session logs.

Writes go to a sibling temp file which is then renamed over the target,
so a reader (or the next iteration's file walk) never sees a half-written
file.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Dict


def _temp_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.wiggumizer-tmp")


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write content to file atomically using temp file + rename.

    Args:
        path: Target file path
        content: Text content to write
        encoding: File encoding (default: utf-8)

    Raises:
        OSError: If write or rename fails
    """
    temp_path = _temp_path(path)
    try:
        # newline="" keeps the caller's line endings byte-for-byte
        with open(temp_path, "w", encoding=encoding, newline="") as fh:
            fh.write(content)
        if path.exists():
            # Existing permissions carry over to the new content.
            shutil.copymode(path, temp_path)
        temp_path.replace(path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Write JSON data to file atomically.

    Raises:
        TypeError: If data is not JSON-serializable
        OSError: If write or rename fails
    """
    content = json.dumps(data, indent=indent, separators=(",", ": ")) + "\n"
    atomic_write_text(path, content)
