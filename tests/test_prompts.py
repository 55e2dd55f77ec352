from __future__ import annotations

import pytest

from wiggumizer.prompts import (
    build_system_prompt,
    build_user_message,
    detect_no_changes,
    extract_summary,
)


def test_system_prompt_per_style() -> None:
    assert "```diff" in build_system_prompt("diff")
    assert "## File:" in build_system_prompt("whole_file")
    assert "## File:" not in build_system_prompt("diff")


def test_user_message_includes_goal_and_files() -> None:
    message = build_user_message(
        "Add type hints", [{"path": "a.py", "content": "x = 1"}], iteration=3
    )
    assert "# Iteration 3" in message
    assert "Add type hints" in message
    assert "## File: a.py" in message
    assert "x = 1" in message


def test_user_message_without_history_has_no_history_section() -> None:
    message = build_user_message("Goal", [], iteration=1)
    assert "Work History" not in message


def test_user_message_git_history() -> None:
    message = build_user_message(
        "Goal", [], iteration=2, history="abc123 Wiggumizer iteration 1 - auto backup"
    )
    assert "# Your Work History (git log):" in message
    assert "abc123 Wiggumizer iteration 1" in message
    assert message.index("Work History") < message.index("# Current Codebase:")


def test_user_message_journal_history() -> None:
    entry = "Iteration 1 - 2025-01-19 14:32:15\nFiles: a.py\nSummary: Added hints"
    message = build_user_message("Goal", [], iteration=2, history=entry, history_source="journal")
    assert "# Your Work History (previous iterations):" in message
    assert "Summary: Added hints" in message
    assert "(git log)" not in message


@pytest.mark.parametrize(
    "text",
    [
        "NO CHANGES NEEDED",
        "After review: no changes needed.",
        "The code already satisfies the goal.",
        "No improvements needed here",
        "  no changes needed\n```diff\n--- a/x\n+++ b/x\n```",
    ],
)
def test_detect_no_changes(text: str) -> None:
    assert detect_no_changes(text)


@pytest.mark.parametrize(
    "text",
    [
        "Renamed helper\n```diff\n...\n```",
        "The code is already mostly fine, but x is wrong.\n```diff\n--- a/a.py\n+++ b/a.py\n```",
        "The code already satisfies most of the goal.\n\n## File: a.py\n```python\nx = 2\n```",
    ],
)
def test_detect_no_changes_ignores_prose_when_edits_present(text: str) -> None:
    assert not detect_no_changes(text)


def test_extract_summary() -> None:
    assert extract_summary("  Renamed foo to bar\nmore text") == "Renamed foo to bar"
    assert extract_summary("") == ""
    long = "x" * 150
    assert extract_summary(long) == "x" * 100 + "..."
