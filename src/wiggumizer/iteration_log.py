"""Per-session iteration logs under ``.wiggumizer/iterations/<session>/``.

One ``iteration-N.json`` per iteration plus a ``summary.json`` when the
run ends, and a plain-text journal at ``.wiggumizer/iteration-journal.txt``
that stands in for ``git log`` in projects without git. Logging failures
are reported and swallowed: a full disk must not stop the loop.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .atomic_file import atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

LOG_DIR = Path(".wiggumizer") / "iterations"
JOURNAL_PATH = Path(".wiggumizer") / "iteration-journal.txt"
JOURNAL_SEPARATOR = "---"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_session_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class IterationLogger:
    def __init__(self, project_root: Path, session_id: Optional[str] = None) -> None:
        self.session_id = session_id or new_session_id()
        self.session_dir = project_root / LOG_DIR / self.session_id

    def _write(self, name: str, payload: Dict[str, Any]) -> Optional[Path]:
        path = self.session_dir / name
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, payload)
        except (OSError, TypeError) as e:
            logger.warning("Failed to write %s: %s", path, e)
            return None
        return path

    def log_iteration(self, iteration: int, data: Dict[str, Any]) -> Optional[Path]:
        payload = {"iteration": iteration, "timestamp": utc_now_iso(), **data}
        return self._write(f"iteration-{iteration}.json", payload)

    def log_summary(self, data: Dict[str, Any]) -> Optional[Path]:
        payload = {"session_id": self.session_id, "timestamp": utc_now_iso(), **data}
        return self._write("summary.json", payload)


def list_sessions(project_root: Path) -> List[str]:
    base = project_root / LOG_DIR
    if not base.is_dir():
        return []
    return sorted(p.name for p in base.iterdir() if p.is_dir())


def load_summary(project_root: Path, session_id: str) -> Optional[Dict[str, Any]]:
    path = project_root / LOG_DIR / session_id / "summary.json"
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("No readable summary for %s: %s", session_id, e)
        return None


# -------------------------
# Iteration journal
# -------------------------
#
# Plain-text history for projects without git, newest entry first:
#
#   Iteration 5 - 2025-01-19 14:32:15
#   Files: src/auth.py, src/config.py
#   Summary: Added token validation
#   ---


def append_journal(
    project_root: Path, iteration: int, files: List[str], summary: str
) -> bool:
    """Prepend one entry to the journal. Returns False if it could not be written."""
    path = project_root / JOURNAL_PATH
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    entry = "\n".join(
        [
            f"Iteration {iteration} - {stamp}",
            f"Files: {', '.join(files) if files else '(none)'}",
            f"Summary: {summary or 'No summary available'}",
            JOURNAL_SEPARATOR,
            "",
        ]
    )
    try:
        existing = path.read_text(encoding="utf-8") if path.is_file() else ""
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, entry + existing)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to update %s: %s", path, e)
        return False
    return True


def read_journal(project_root: Path, limit: int = 10) -> str:
    """The ``limit`` most recent journal entries, or "" when there are none."""
    path = project_root / JOURNAL_PATH
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("Journal unreadable: %s", e)
        return ""

    entries = []
    for block in content.split(f"\n{JOURNAL_SEPARATOR}\n"):
        block = block.strip()
        if block.startswith(JOURNAL_SEPARATOR):
            block = block[len(JOURNAL_SEPARATOR):].strip()
        if block:
            entries.append(block)
        if len(entries) >= limit:
            break
    return "\n\n".join(entries)
