"""Prompt construction and response inspection for one iteration."""

from __future__ import annotations

import re
from typing import Iterable, Mapping

NO_CHANGES_SENTINEL = "NO CHANGES NEEDED"

_NO_CHANGE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"no changes needed",
        r"no modifications needed",
        r"already satisfies",
        r"code is already",
        r"no improvements needed",
    )
]

_LEADING_SENTINEL_RE = re.compile(r"^\s*NO\s+CHANGES\s+NEEDED", re.IGNORECASE)
_EDIT_MARKER_RE = re.compile(r"```diff|^##\s*File:", re.MULTILINE)

SUMMARY_MAX_CHARS = 100

_PREAMBLE = """You are an expert code refactoring assistant in an iterative improvement loop.

Your role:
- Read the goal prompt describing the desired changes
- Examine the current codebase
- Make incremental improvements toward the goal
- If the code already satisfies the prompt, respond with "NO CHANGES NEEDED"

Guidelines:
- Make focused, incremental changes; do not try to do everything at once
- Preserve existing functionality unless explicitly asked to change it
- Follow the existing code style and patterns
"""

_DIFF_FORMAT = """
Output format (follow exactly):
1. Start with a one-line summary of what you are changing
2. Put every change in a fenced ```diff block using unified diff format:

```diff
--- a/path/to/file.py
+++ b/path/to/file.py
@@ -10,3 +10,3 @@
 unchanged line
-old line
+new line
```

3. Use --- /dev/null for new files and +++ /dev/null for deleted files
4. Include at least one unchanged context line around each change
5. If no changes are needed, respond with only "NO CHANGES NEEDED"
"""

_WHOLE_FILE_FORMAT = """
Output format (follow exactly):
1. Start with a one-line summary of what you are changing
2. For each file you modify, use this exact format:

## File: path/to/file.py
```python
complete file contents here
```

3. Include the COMPLETE file contents, not just the changes
4. If no changes are needed, respond with only "NO CHANGES NEEDED"
"""


def build_system_prompt(response_style: str = "diff") -> str:
    fmt = _WHOLE_FILE_FORMAT if response_style == "whole_file" else _DIFF_FORMAT
    return _PREAMBLE + fmt


def build_user_message(
    goal: str,
    files: Iterable[Mapping[str, str]],
    iteration: int,
    history: str = "",
    history_source: str = "git",
) -> str:
    """Assemble the per-iteration message.

    ``history`` is either recent ``git log --oneline`` output
    (``history_source="git"``) or journal entries (``"journal"``).
    """
    parts = [
        f"# Iteration {iteration}\n",
        f"# Goal:\n{goal}\n",
    ]
    if history.strip():
        label = "git log" if history_source == "git" else "previous iterations"
        parts.append(
            f"# Your Work History ({label}):\n"
            "You can see what you've done in previous iterations:\n\n"
            f"```\n{history.strip()}\n```\n"
        )
    parts.append("# Current Codebase:\n")
    for f in files:
        parts.append(f"## File: {f['path']}\n```\n{f['content']}\n```\n")
    parts.append("Please make incremental improvements based on the goal above.")
    return "\n".join(parts)


def detect_no_changes(response_text: str) -> bool:
    """True if the model says the goal is already met.

    A response that opens with the sentinel always counts. Otherwise a
    response carrying edits (a ```diff fence or a ``## File:`` header)
    never counts, whatever its prose says.
    """
    if _LEADING_SENTINEL_RE.match(response_text):
        return True
    if _EDIT_MARKER_RE.search(response_text):
        return False
    return any(p.search(response_text) for p in _NO_CHANGE_PATTERNS)


def extract_summary(response_text: str) -> str:
    """First line of the response, truncated for display."""
    first = response_text.strip().split("\n", 1)[0] if response_text.strip() else ""
    if len(first) > SUMMARY_MAX_CHARS:
        return first[:SUMMARY_MAX_CHARS] + "..."
    return first
