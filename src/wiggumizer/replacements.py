"""Whole-file replacement responses.

The alternative to unified diffs: the model restates every file it
changes in full::

    ## File: src/app.py
    ```python
    <complete file contents>
    ```

Each block is validated before it is written (JSON must parse, Python
must compile, anything else must be non-empty); invalid blocks are
skipped. If a write fails, every file already written in the same batch
is restored from its backup.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .atomic_file import atomic_write_text

logger = logging.getLogger(__name__)

_FILE_HEADER_RE = re.compile(r"^##\s*File:\s*(.+?)\s*$")


@dataclass(frozen=True)
class FileReplacement:
    path: str
    content: str


@dataclass
class ReplacementResult:
    files_modified: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rolled_back: bool = False


def parse_replacements(response_text: str) -> List[FileReplacement]:
    """Extract ``## File:`` blocks from a response, in order."""
    replacements: List[FileReplacement] = []
    pending_path: Optional[str] = None
    body: Optional[List[str]] = None

    for line in response_text.split("\n"):
        if body is not None:
            if line.strip() == "```":
                content = "\n".join(body) + "\n" if body else ""
                replacements.append(FileReplacement(path=pending_path or "", content=content))
                pending_path, body = None, None
            else:
                body.append(line)
            continue

        header = _FILE_HEADER_RE.match(line)
        if header:
            pending_path = header.group(1).strip("`")
            continue

        if pending_path is not None:
            if line.startswith("```"):
                body = []
            elif line.strip():
                # Prose between header and fence: the header had no block.
                pending_path = None

    return replacements


def validate_content(path: str, content: str) -> Tuple[bool, str]:
    """Cheap sanity check before overwriting a file.

    Returns:
        (valid, detail)
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        try:
            json.loads(content)
        except json.JSONDecodeError as e:
            return False, f"Invalid JSON: {e}"
        return True, ""
    if suffix == ".py":
        try:
            ast.parse(content, filename=path)
        except SyntaxError as e:
            return False, f"Syntax error: {e.msg} (line {e.lineno})"
        return True, ""
    if not content.strip():
        return False, "Empty file"
    return True, ""


def apply_replacements(
    response_text: str, root: Path, dry_run: bool = False
) -> ReplacementResult:
    """Write every valid ``## File:`` block of a response under ``root``."""
    result = ReplacementResult()
    backups: Dict[Path, Optional[str]] = {}
    root_resolved = root.resolve()

    for replacement in parse_replacements(response_text):
        rel_path = replacement.path
        full_path = (root_resolved / rel_path).resolve()
        if not rel_path or not full_path.is_relative_to(root_resolved):
            result.errors.append(f"Refusing to write outside workspace: {rel_path!r}")
            continue

        valid, detail = validate_content(rel_path, replacement.content)
        if not valid:
            message = f"Validation failed for {rel_path}: {detail}"
            result.errors.append(message)
            logger.warning("%s; skipping this file", message)
            continue

        if dry_run:
            result.files_modified.append(rel_path)
            continue

        try:
            if full_path not in backups:
                backups[full_path] = (
                    full_path.read_text(encoding="utf-8") if full_path.exists() else None
                )
            full_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_text(full_path, replacement.content)
        except (OSError, UnicodeDecodeError) as e:
            result.errors.append(f"Failed to write {rel_path}: {e}")
            logger.error("Failed to write %s: %s; rolling back batch", rel_path, e)
            _restore(backups)
            result.files_modified = []
            result.rolled_back = True
            break

        result.files_modified.append(rel_path)
        logger.info("Replaced: %s", rel_path)

    if not result.files_modified and not result.errors:
        logger.info("No file blocks found in response")
    return result


def _restore(backups: Dict[Path, Optional[str]]) -> None:
    for path, content in backups.items():
        try:
            if content is None:
                path.unlink(missing_ok=True)
            else:
                atomic_write_text(path, content)
        except OSError as e:
            logger.error("Rollback failed for %s: %s", path, e)
