"""Thin git wrapper used by the loop for safety checks and auto-commits."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .subprocess_helper import check_command_available, run_subprocess

logger = logging.getLogger(__name__)


def _git(project_root: Path, *args: str):
    return run_subprocess(["git", *args], cwd=project_root)


def is_git_repo(project_root: Path) -> bool:
    if not check_command_available("git"):
        return False
    try:
        return _git(project_root, "rev-parse", "--git-dir").success
    except RuntimeError:
        return False


def has_uncommitted_changes(project_root: Path) -> bool:
    try:
        result = _git(project_root, "status", "--porcelain")
    except RuntimeError:
        return False
    return result.success and bool(result.stdout.strip())


def current_commit(project_root: Path) -> Optional[str]:
    try:
        result = _git(project_root, "rev-parse", "HEAD")
    except RuntimeError:
        return None
    return result.stdout.strip() if result.success else None


def warn_if_dirty(project_root: Path) -> None:
    if not is_git_repo(project_root):
        logger.warning("Not a git repository; consider running: git init")
        return
    if has_uncommitted_changes(project_root):
        logger.warning(
            "Uncommitted changes detected; consider committing before running wiggumize"
        )


def commit_iteration(project_root: Path, iteration: int) -> bool:
    """Stage everything and commit it as a backup of one iteration.

    Returns:
        True if a commit was created
    """
    try:
        add = _git(project_root, "add", "-A")
        if add.failed:
            logger.warning("git add failed: %s", add.stderr.strip())
            return False
        commit = _git(
            project_root, "commit", "-m", f"Wiggumizer iteration {iteration} - auto backup"
        )
    except RuntimeError as e:
        logger.warning("Auto-commit failed: %s", e)
        return False
    if commit.failed:
        logger.debug("Nothing committed for iteration %d: %s", iteration, commit.stdout.strip())
        return False
    logger.info("Auto-committed iteration %d", iteration)
    return True


def recent_log(project_root: Path, limit: int = 10) -> str:
    """One line per recent commit, newest first; empty when there is no history."""
    try:
        result = _git(project_root, "log", "--oneline", "-n", str(limit))
    except RuntimeError as e:
        logger.debug("git log unavailable: %s", e)
        return ""
    return result.stdout.strip() if result.success else ""
