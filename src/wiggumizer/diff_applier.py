"""Parse and apply unified diffs proposed by the model.

Only text inside ```diff fences of a response is considered. The fenced
text is parsed by a small line-oriented state machine into
:class:`FileDiff` objects, which are then applied one file at a time:

- a failure in one file never stops the rest of the batch;
- within a file, hunks are applied in order and a failing hunk aborts the
  remaining hunks, while hunks already applied to that file are kept;
- a hunk whose body does not add up to its header counts is rejected
  before it touches anything;
- context lines that are not where the hunk header says are searched for
  in a small window around the expected position (``fuzz_window``);
  removed lines must match exactly.

Errors are reported as strings in :class:`DiffApplyResult`, never raised
past :func:`apply_diffs`.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

from .atomic_file import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_FUZZ_WINDOW = 3

DEV_NULL = "/dev/null"
OLD_FILE_MARKER = "--- "
NEW_FILE_MARKER = "+++ "
HUNK_MARKER = "@@"

_HUNK_HEADER_RE = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@")


class DiffApplyError(ValueError):
    """A file diff could not be applied."""


class HunkApplyError(DiffApplyError):
    """A hunk did not match the file it targets.

    Attributes:
        partial_lines: File lines with every earlier hunk of the same file
            applied, or None when the failing hunk was the first one
        hunks_applied: Number of hunks applied before the failure
    """

    def __init__(
        self,
        message: str,
        partial_lines: Optional[List[str]] = None,
        hunks_applied: int = 0,
    ) -> None:
        super().__init__(message)
        self.partial_lines = partial_lines
        self.hunks_applied = hunks_applied


class LineKind(enum.Enum):
    CONTEXT = " "
    ADD = "+"
    REMOVE = "-"


@dataclass(frozen=True)
class HunkLine:
    kind: LineKind
    text: str


@dataclass
class Hunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: List[HunkLine] = field(default_factory=list)


@dataclass
class FileDiff:
    old_path: Optional[str] = None
    new_path: Optional[str] = None
    hunks: List[Hunk] = field(default_factory=list)
    is_new: bool = False
    is_deleted: bool = False

    @property
    def path(self) -> Optional[str]:
        return self.new_path or self.old_path


@dataclass
class DiffApplyResult:
    files_modified: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


# -------------------------
# Parsing
# -------------------------


class _State(enum.Enum):
    SCANNING = "scanning"
    IN_HEADER = "in-header"
    IN_HUNK = "in-hunk"


def _header_path(raw: str, prefix: str) -> Optional[str]:
    """Extract the path from a ``---``/``+++`` line body.

    Returns None for /dev/null. Strips the a/ or b/ prefix and any
    tab-separated timestamp.
    """
    value = raw.split("\t", 1)[0].strip()
    if value == DEV_NULL:
        return None
    if value.startswith(prefix):
        value = value[len(prefix):]
    return value


def parse_hunk_header(line: str) -> Optional[Hunk]:
    """Parse ``@@ -a[,b] +c[,d] @@``; a missing count defaults to 1."""
    m = _HUNK_HEADER_RE.match(line)
    if not m:
        return None
    return Hunk(
        old_start=int(m.group(1)),
        old_lines=int(m.group(2)) if m.group(2) is not None else 1,
        new_start=int(m.group(3)),
        new_lines=int(m.group(4)) if m.group(4) is not None else 1,
    )


class DiffParser:
    """Single-pass parser for multi-file unified diff text.

    States: scanning -> in-header (after ``---``) -> scanning (after
    ``+++``) -> in-hunk (after ``@@``). Unrecognized lines are skipped.
    """

    def __init__(self) -> None:
        self.files: List[FileDiff] = []
        self._file: Optional[FileDiff] = None
        self._hunk: Optional[Hunk] = None
        self.state = _State.SCANNING

    def _flush_hunk(self) -> None:
        if self._hunk is not None and self._file is not None:
            self._file.hunks.append(self._hunk)
        self._hunk = None

    def _flush_file(self) -> None:
        self._flush_hunk()
        if self._file is not None:
            if self._file.hunks:
                self.files.append(self._file)
            else:
                logger.debug("Dropping diff for %s with no hunks", self._file.path)
        self._file = None

    def feed(self, line: str) -> None:
        if line.startswith(OLD_FILE_MARKER):
            self._flush_file()
            old_path = _header_path(line[len(OLD_FILE_MARKER):], "a/")
            self._file = FileDiff(old_path=old_path, is_new=old_path is None)
            self.state = _State.IN_HEADER
            return

        if line.startswith(NEW_FILE_MARKER):
            if self._file is None:
                logger.warning("Found +++ without preceding ---; skipping")
                return
            self._flush_hunk()
            new_path = _header_path(line[len(NEW_FILE_MARKER):], "b/")
            self._file.new_path = new_path
            self._file.is_deleted = new_path is None
            self.state = _State.SCANNING
            return

        if line.startswith(HUNK_MARKER):
            hunk = parse_hunk_header(line)
            if hunk is None:
                logger.warning("Unrecognized hunk header: %r", line)
                return
            if self._file is None:
                logger.warning("Found @@ without file header; skipping")
                return
            self._flush_hunk()
            self._hunk = hunk
            self.state = _State.IN_HUNK
            return

        if self.state is _State.IN_HUNK and self._hunk is not None:
            if line[:1] in (" ", "+", "-"):
                self._hunk.lines.append(HunkLine(LineKind(line[0]), line[1:]))
            else:
                # Any other line ends this hunk's content.
                self._flush_hunk()
                self.state = _State.SCANNING

    def close(self) -> List[FileDiff]:
        self._flush_file()
        self.state = _State.SCANNING
        return self.files


def parse_diff(diff_text: str) -> List[FileDiff]:
    """Parse unified diff text into file diffs (files with no hunks are dropped)."""
    parser = DiffParser()
    for line in diff_text.split("\n"):
        parser.feed(line)
    return parser.close()


# -------------------------
# Application
# -------------------------


def _find_nearby(lines: List[str], text: str, pos: int, window: int) -> Optional[int]:
    """Nearest index within ``window`` of ``pos`` holding ``text``."""
    for distance in range(1, window + 1):
        for candidate in (pos - distance, pos + distance):
            if 0 <= candidate < len(lines) and lines[candidate] == text:
                return candidate
    return None


def check_hunk_counts(hunk: Hunk) -> None:
    """Raise HunkApplyError if the body disagrees with the header counts.

    A body shorter than its header usually means the hunk was cut off,
    e.g. by a blank line the model wrote in place of a blank context line.
    """
    old = sum(1 for hl in hunk.lines if hl.kind is not LineKind.ADD)
    new = sum(1 for hl in hunk.lines if hl.kind is not LineKind.REMOVE)
    if (old, new) != (hunk.old_lines, hunk.new_lines):
        raise HunkApplyError(
            f"Hunk body does not match its header: expected "
            f"-{hunk.old_lines}/+{hunk.new_lines} lines, got -{old}/+{new}"
        )


def apply_hunk(
    file_lines: List[str],
    hunk: Hunk,
    fuzz_window: int = DEFAULT_FUZZ_WINDOW,
    offset: int = 0,
) -> List[str]:
    """Apply one hunk to a copy of ``file_lines``.

    ``offset`` is the net line count added by earlier hunks of the same
    file, since hunk headers refer to the original numbering.

    Raises:
        HunkApplyError: On a body that disagrees with the header counts, a
            context line not found within the window, or a removed line
            that does not match exactly
    """
    check_hunk_counts(hunk)
    result = list(file_lines)
    pos = max(0, hunk.old_start - 1 + offset)

    for hl in hunk.lines:
        current = result[pos] if pos < len(result) else None

        if hl.kind is LineKind.CONTEXT:
            if current != hl.text:
                found = _find_nearby(result, hl.text, pos, fuzz_window)
                if found is None:
                    raise HunkApplyError(
                        f"Context mismatch at line {pos + 1}. "
                        f"Expected: {hl.text!r}, got: {current!r}"
                    )
                logger.debug("Context for %r found at line %d (expected %d)", hl.text, found + 1, pos + 1)
                pos = found
            pos += 1

        elif hl.kind is LineKind.REMOVE:
            if current != hl.text:
                raise HunkApplyError(
                    f"Cannot remove line {pos + 1}. "
                    f"Expected: {hl.text!r}, got: {current!r}"
                )
            del result[pos]

        else:
            result.insert(pos, hl.text)
            pos += 1

    return result


def new_file_content(file_diff: FileDiff) -> str:
    return "\n".join(
        hl.text for hunk in file_diff.hunks for hl in hunk.lines if hl.kind is LineKind.ADD
    )


def apply_file_diff(
    root: Path, file_diff: FileDiff, fuzz_window: int = DEFAULT_FUZZ_WINDOW
) -> Optional[str]:
    """Compute the new content for one file diff without writing it.

    Returns:
        The new file content, or None when the file is to be deleted

    Raises:
        DiffApplyError: If the target of a modification does not exist
        HunkApplyError: If a hunk does not apply (carries partial progress)
    """
    if file_diff.is_new:
        return new_file_content(file_diff)
    if file_diff.is_deleted:
        return None

    target = root / (file_diff.path or "")
    if not target.is_file():
        raise DiffApplyError(f"File not found: {file_diff.path}")

    lines = target.read_text(encoding="utf-8").split("\n")
    return "\n".join(apply_hunks(lines, file_diff.hunks, fuzz_window))


def apply_hunks(
    file_lines: List[str], hunks: List[Hunk], fuzz_window: int = DEFAULT_FUZZ_WINDOW
) -> List[str]:
    """Apply hunks in order.

    Raises:
        HunkApplyError: Prefixed with the hunk number; carries the lines
            with every earlier hunk applied
    """
    lines = list(file_lines)
    offset = 0
    for index, hunk in enumerate(hunks):
        try:
            updated = apply_hunk(lines, hunk, fuzz_window, offset)
        except HunkApplyError as e:
            raise HunkApplyError(
                f"hunk {index + 1}/{len(hunks)}: {e}",
                partial_lines=lines if index > 0 else None,
                hunks_applied=index,
            ) from e
        offset += len(updated) - len(lines)
        lines = updated
    return lines


def iter_diff_blocks(response_text: str) -> Iterator[str]:
    """Yield the bodies of ```diff fenced blocks, ignoring surrounding prose."""
    inside = False
    body: List[str] = []
    for line in response_text.split("\n"):
        stripped = line.strip()
        if not inside:
            if stripped.startswith("```diff"):
                inside = True
                body = []
            continue
        if stripped.startswith("```"):
            inside = False
            yield "\n".join(body)
            continue
        body.append(line)
    if inside and body:
        logger.debug("Unterminated diff fence; ignoring %d trailing line(s)", len(body))


def extract_diff_blocks(response_text: str) -> List[str]:
    return list(iter_diff_blocks(response_text))


def extract_diff_text(response_text: str) -> str:
    return "".join(block + "\n" for block in iter_diff_blocks(response_text))


def _resolve_inside(root: Path, rel_path: str) -> Path:
    root_resolved = root.resolve()
    full = (root_resolved / rel_path).resolve()
    if not full.is_relative_to(root_resolved):
        raise DiffApplyError(f"Refusing to touch path outside workspace: {rel_path}")
    return full


def apply_diffs(
    response_text: str,
    root: Path,
    fuzz_window: int = DEFAULT_FUZZ_WINDOW,
    dry_run: bool = False,
) -> DiffApplyResult:
    """Extract, parse and apply every diff in a model response.

    Args:
        response_text: Full model response
        root: Workspace root the diff paths are relative to
        fuzz_window: Context search window for hunk application
        dry_run: Compute results without touching the filesystem

    Returns:
        DiffApplyResult listing modified paths and per-file error messages
    """
    result = DiffApplyResult()

    diff_text = extract_diff_text(response_text)
    if not diff_text.strip():
        logger.info("No diff blocks found in response")
        return result

    file_diffs = parse_diff(diff_text)
    if not file_diffs:
        logger.info("No valid diffs parsed from response")
        return result

    for file_diff in file_diffs:
        rel_path = file_diff.path
        if not rel_path:
            result.errors.append("Diff missing file path")
            continue

        try:
            full_path = _resolve_inside(root, rel_path)

            if file_diff.is_deleted:
                if full_path.exists():
                    if not dry_run:
                        full_path.unlink()
                    result.files_modified.append(rel_path)
                    logger.info("Deleted: %s", rel_path)
                continue

            content = apply_file_diff(root, file_diff, fuzz_window)
            if not dry_run:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                atomic_write_text(full_path, content or "")
            result.files_modified.append(rel_path)
            logger.info("%s: %s", "Created" if file_diff.is_new else "Modified", rel_path)

        except HunkApplyError as e:
            if e.partial_lines is not None:
                # Earlier hunks of this file stay applied.
                if not dry_run:
                    atomic_write_text(full_path, "\n".join(e.partial_lines))
                result.files_modified.append(rel_path)
            message = f"Failed to apply diff to {rel_path}: {e}"
            result.errors.append(message)
            logger.warning(message)
        except (DiffApplyError, OSError, UnicodeDecodeError) as e:
            message = f"Failed to apply diff to {rel_path}: {e}"
            result.errors.append(message)
            logger.warning(message)

    return result
