"""Context-budgeted file selection.

Walks a project tree, filters it with ignore/include/exclude rules, scores
every surviving file and keeps a greedy prefix of the ranked list that
fits both the file-count budget and the byte budget.

Scoring table (higher = more important, modifiers are additive):

    base                          100
    size      < 10 KB             +20
              < 50 KB             +10
              > 200 KB            -30
    age       < 1 day             +30
              < 7 days            +20
              < 30 days           +10
    type      source code         +25
              json / yaml config  +10
              markdown            +5
    directory src/                +20   (first matching prefix only)
              lib/                +15
              test/, tests/       -10
    filename  manifest            +40   (package.json, pyproject.toml)
              root README.md      +15
              root PROMPT.md      = 300 (absolute override)

Selection stops at the first file that would break a budget, so a small
file ranked after a large one that does not fit is dropped as well.
"""

from __future__ import annotations

import fnmatch
import logging
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import pathspec

from .config import DEFAULT_EXCLUDE, WILDCARD_INCLUDE

logger = logging.getLogger(__name__)

KB = 1000
DAY_SECONDS = 24 * 60 * 60

BASE_SCORE = 100
INSTRUCTION_FILE_SCORE = 300

SOURCE_EXTENSIONS = frozenset({".js", ".ts", ".py", ".jsx", ".tsx"})
MARKUP_EXTENSIONS = frozenset({".md"})
CONFIG_EXTENSIONS = frozenset({".json", ".yml", ".yaml"})

# Used instead of include patterns when include is the wildcard sentinel.
DEFAULT_EXTENSIONS = SOURCE_EXTENSIONS | MARKUP_EXTENSIONS | CONFIG_EXTENSIONS

# (prefix, modifier); first match wins
DIRECTORY_MODIFIERS = (
    ("src/", 20),
    ("lib/", 15),
    ("test/", -10),
    ("tests/", -10),
)

MANIFEST_FILES = frozenset({"package.json", "pyproject.toml"})
MANIFEST_BONUS = 40
README_FILE = "README.md"
README_BONUS = 15

VCS_DIR = ".git"


@dataclass(frozen=True)
class SelectedFile:
    """One ranked file of a selection.

    Attributes:
        path: POSIX path relative to the selection root
        size: Size in bytes
        modified_at: Modification time (epoch seconds)
        priority: Score from :func:`calculate_priority`
    """

    path: str
    size: int
    modified_at: float
    priority: int


@dataclass(frozen=True)
class SelectorOptions:
    """Inputs of a selection run."""

    root: Path
    include: Sequence[str] = (WILDCARD_INCLUDE,)
    exclude: Sequence[str] = DEFAULT_EXCLUDE
    respect_gitignore: bool = True
    max_context_bytes: int = 100_000
    max_files: int = 50
    instruction_file: str = "PROMPT.md"


@dataclass
class SelectionStats:
    file_count: int = 0
    total_size: int = 0
    average_size: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "file_count": self.file_count,
            "total_size": self.total_size,
            "average_size": self.average_size,
        }


# -------------------------
# Matching helpers
# -------------------------


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Return True if a relative POSIX path matches any glob pattern.

    ``**/`` segments also match zero directories, so ``**/*.py`` matches
    both ``a.py`` and ``pkg/a.py``.
    """
    name = PurePosixPath(path).name
    for pattern in patterns:
        if "**" in pattern:
            simple_pattern = pattern.replace("**/", "")
            if (
                fnmatch.fnmatchcase(path, pattern)
                or fnmatch.fnmatchcase(path, simple_pattern)
                or fnmatch.fnmatchcase(name, simple_pattern)
            ):
                return True
        elif fnmatch.fnmatchcase(path, pattern):
            return True
    return False


def build_ignore_spec(root: Path, respect_gitignore: bool = True) -> pathspec.PathSpec:
    """Build the ignore ruleset for a tree.

    The VCS metadata directory is always ignored; ``.gitignore`` rules are
    added on top when ``respect_gitignore`` is set and the file is readable.
    """
    lines: List[str] = [VCS_DIR, f"{VCS_DIR}/**"]
    if respect_gitignore:
        gitignore = root / ".gitignore"
        if gitignore.is_file():
            try:
                lines.extend(gitignore.read_text(encoding="utf-8").splitlines())
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Failed to load .gitignore: %s", e)
    return pathspec.GitIgnoreSpec.from_lines(lines)


# -------------------------
# Scoring
# -------------------------


def _size_modifier(size: int) -> int:
    if size < 10 * KB:
        return 20
    if size < 50 * KB:
        return 10
    if size > 200 * KB:
        return -30
    return 0


def _recency_modifier(modified_at: float, now: float) -> int:
    days_old = (now - modified_at) / DAY_SECONDS
    if days_old < 1:
        return 30
    if days_old < 7:
        return 20
    if days_old < 30:
        return 10
    return 0


def _type_modifier(suffix: str) -> int:
    if suffix in SOURCE_EXTENSIONS:
        return 25
    if suffix in CONFIG_EXTENSIONS:
        return 10
    if suffix in MARKUP_EXTENSIONS:
        return 5
    return 0


def _directory_modifier(path: str) -> int:
    for prefix, modifier in DIRECTORY_MODIFIERS:
        if path.startswith(prefix):
            return modifier
    return 0


def calculate_priority(
    path: str,
    size: int,
    modified_at: float,
    now: Optional[float] = None,
    instruction_file: str = "PROMPT.md",
) -> int:
    """Score a file for context selection (see module docstring)."""
    if now is None:
        now = time.time()

    rel = PurePosixPath(path)
    at_root = len(rel.parts) == 1

    if at_root and rel.name == instruction_file:
        return INSTRUCTION_FILE_SCORE

    score = BASE_SCORE
    score += _size_modifier(size)
    score += _recency_modifier(modified_at, now)
    score += _type_modifier(rel.suffix.lower())
    score += _directory_modifier(path)

    if rel.name in MANIFEST_FILES:
        score += MANIFEST_BONUS
    elif at_root and rel.name == README_FILE:
        score += README_BONUS

    return score


def apply_limits(
    files: Sequence[SelectedFile], max_files: int, max_context_bytes: int
) -> List[SelectedFile]:
    """Keep the longest prefix of ``files`` that fits both budgets."""
    selected: List[SelectedFile] = []
    total_size = 0

    for f in files:
        if len(selected) >= max_files:
            logger.debug("Reached max file limit (%d); skipping remaining files", max_files)
            break
        if total_size + f.size > max_context_bytes:
            logger.debug(
                "Reached max context size (%d bytes) at %s; skipping remaining files",
                max_context_bytes,
                f.path,
            )
            break
        selected.append(f)
        total_size += f.size

    return selected


# -------------------------
# Selector
# -------------------------


class FileSelector:
    """Rank and truncate a project tree into a context-sized file set."""

    def __init__(
        self,
        options: SelectorOptions,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = options
        self.root = Path(options.root)
        self._clock = clock
        self._ignore = build_ignore_spec(self.root, options.respect_gitignore)

    def _ignored(self, rel_path: str, is_dir: bool) -> bool:
        if is_dir:
            return self._ignore.match_file(rel_path + "/") or self._ignore.match_file(rel_path)
        return self._ignore.match_file(rel_path)

    def walk(self) -> Iterator[str]:
        """Yield relative POSIX paths of regular files in a stable order."""
        yield from self._walk_dir(self.root, "")

    def _walk_dir(self, directory: Path, base: str) -> Iterator[str]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.debug("Cannot read directory %s: %s", directory, e)
            return

        for entry in entries:
            rel = f"{base}{entry.name}"
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = not is_dir and entry.is_file()
            except OSError:
                continue

            if self._ignored(rel, is_dir):
                continue
            if is_dir:
                yield from self._walk_dir(Path(entry.path), rel + "/")
            elif is_file:
                yield rel

    def filter(self, paths: Iterable[str]) -> List[str]:
        """Apply exclude patterns, then include patterns or the extension allow-list."""
        include = list(self.options.include)
        exclude = list(self.options.exclude)
        wildcard = not include or include[0] == WILDCARD_INCLUDE

        kept: List[str] = []
        for p in paths:
            if exclude and matches_any(p, exclude):
                continue
            if wildcard:
                if PurePosixPath(p).suffix.lower() not in DEFAULT_EXTENSIONS:
                    continue
            elif not matches_any(p, include):
                continue
            kept.append(p)
        return kept

    def rank(self, paths: Iterable[str]) -> List[SelectedFile]:
        """Score paths and sort them by descending priority (stable)."""
        now = self._clock()
        ranked: List[SelectedFile] = []
        for p in paths:
            try:
                st = (self.root / p).stat()
            except OSError as e:
                logger.debug("Skipping %s: %s", p, e)
                continue
            ranked.append(
                SelectedFile(
                    path=p,
                    size=st.st_size,
                    modified_at=st.st_mtime,
                    priority=calculate_priority(
                        p,
                        st.st_size,
                        st.st_mtime,
                        now=now,
                        instruction_file=self.options.instruction_file,
                    ),
                )
            )
        # list.sort is stable: ties keep walk order
        ranked.sort(key=lambda f: f.priority, reverse=True)
        return ranked

    def select(self) -> List[SelectedFile]:
        """Return the ranked, budget-limited file set."""
        ranked = self.rank(self.filter(self.walk()))
        selected = apply_limits(
            ranked, self.options.max_files, self.options.max_context_bytes
        )
        logger.debug(
            "Selected %d of %d candidate files under %s",
            len(selected),
            len(ranked),
            self.root,
        )
        return selected

    def select_with_content(self) -> List[Dict[str, str]]:
        """Return ``[{"path", "content"}]`` for the selection.

        A file that cannot be read gets an error marker as its content
        instead of failing the whole selection.
        """
        out: List[Dict[str, str]] = []
        for f in self.select():
            try:
                content = (self.root / f.path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.warning("Failed to read %s: %s", f.path, e)
                content = f"[Error reading file: {e}]"
            out.append({"path": f.path, "content": content})
        return out

    def stats(self) -> SelectionStats:
        files = self.select()
        total = sum(f.size for f in files)
        count = len(files)
        average = int(math.floor(total / count + 0.5)) if count else 0
        return SelectionStats(file_count=count, total_size=total, average_size=average)


def selector_from_config(root: Path, cfg) -> FileSelector:
    """Build a selector from a loaded :class:`~wiggumizer.config.Config`."""
    return FileSelector(
        SelectorOptions(
            root=root,
            include=tuple(cfg.files.include),
            exclude=tuple(cfg.files.exclude),
            respect_gitignore=cfg.files.respect_gitignore,
            max_context_bytes=cfg.context.max_context_bytes,
            max_files=cfg.context.max_files,
            instruction_file=cfg.files.prompt,
        )
    )
