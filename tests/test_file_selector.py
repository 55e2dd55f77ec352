"""Tests for context-budgeted file selection."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from wiggumizer import file_selector
from wiggumizer.file_selector import (
    DAY_SECONDS,
    FileSelector,
    SelectedFile,
    SelectorOptions,
    apply_limits,
    calculate_priority,
    matches_any,
)

NOW = 1_700_000_000.0
OLD = NOW - 90 * DAY_SECONDS


def _files(*sizes: int) -> List[SelectedFile]:
    return [
        SelectedFile(path=f"f{i}.py", size=s, modified_at=NOW, priority=200 - i)
        for i, s in enumerate(sizes)
    ]


def _selector(root: Path, **overrides) -> FileSelector:
    return FileSelector(SelectorOptions(root=root, **overrides), clock=lambda: NOW)


def _age_all(root: Path, mtime: float = OLD) -> None:
    for dirpath, _dirs, names in os.walk(root):
        for name in names:
            os.utime(Path(dirpath) / name, (mtime, mtime))


class TestApplyLimits:
    def test_truncation_keeps_first_two_of_three(self) -> None:
        selected = apply_limits(_files(2000, 2000, 2000), max_files=50, max_context_bytes=5000)
        assert [f.path for f in selected] == ["f0.py", "f1.py"]
        assert sum(f.size for f in selected) == 4000

    def test_greedy_prefix_drops_small_file_after_breach(self) -> None:
        selected = apply_limits(_files(3000, 3000, 100), max_files=50, max_context_bytes=5000)
        assert [f.path for f in selected] == ["f0.py"]

    def test_file_count_budget(self) -> None:
        selected = apply_limits(_files(1, 1, 1, 1), max_files=2, max_context_bytes=10_000)
        assert len(selected) == 2

    def test_exact_fit_is_kept(self) -> None:
        selected = apply_limits(_files(2500, 2500), max_files=50, max_context_bytes=5000)
        assert len(selected) == 2

    def test_empty(self) -> None:
        assert apply_limits([], max_files=5, max_context_bytes=5) == []


class TestCalculatePriority:
    def test_root_instruction_file_is_absolute(self) -> None:
        assert calculate_priority("PROMPT.md", 500_000, OLD, now=NOW) == 300
        assert calculate_priority("PROMPT.md", 10, NOW, now=NOW) == 300

    def test_nested_instruction_file_is_plain_markup(self) -> None:
        # base + small + old + markup
        assert calculate_priority("docs/PROMPT.md", 100, OLD, now=NOW) == 100 + 20 + 0 + 5

    def test_custom_instruction_file_name(self) -> None:
        assert calculate_priority("GOAL.md", 100, OLD, now=NOW, instruction_file="GOAL.md") == 300
        assert calculate_priority("PROMPT.md", 100, OLD, now=NOW, instruction_file="GOAL.md") == 125

    def test_type_tiers(self) -> None:
        source = calculate_priority("a.py", 100, OLD, now=NOW)
        markup = calculate_priority("a.md", 100, OLD, now=NOW)
        other = calculate_priority("a.toml", 100, OLD, now=NOW)
        structured = calculate_priority("a.json", 100, OLD, now=NOW)
        assert source > markup > other
        assert source > structured > markup

    @pytest.mark.parametrize(
        "size,expected",
        [(0, 20), (9_999, 20), (10_000, 10), (49_999, 10), (50_000, 0), (200_000, 0), (200_001, -30)],
    )
    def test_size_bands(self, size: int, expected: int) -> None:
        assert calculate_priority("x.txt", size, OLD, now=NOW) == 100 + expected

    @pytest.mark.parametrize(
        "age_days,expected",
        [(0, 30), (0.99, 30), (1, 20), (6.9, 20), (7, 10), (29, 10), (30, 0), (365, 0)],
    )
    def test_recency_bands(self, age_days: float, expected: int) -> None:
        mtime = NOW - age_days * DAY_SECONDS
        assert calculate_priority("x.txt", 60_000, mtime, now=NOW) == 100 + expected

    def test_directory_modifier_first_match_only(self) -> None:
        base = calculate_priority("x.txt", 60_000, OLD, now=NOW)
        assert calculate_priority("src/x.txt", 60_000, OLD, now=NOW) == base + 20
        assert calculate_priority("lib/x.txt", 60_000, OLD, now=NOW) == base + 15
        assert calculate_priority("test/x.txt", 60_000, OLD, now=NOW) == base - 10
        assert calculate_priority("tests/x.txt", 60_000, OLD, now=NOW) == base - 10
        assert calculate_priority("src/tests/x.txt", 60_000, OLD, now=NOW) == base + 20

    def test_manifest_bonus(self) -> None:
        # base + small + fresh + json + manifest
        assert calculate_priority("package.json", 500, NOW, now=NOW) == 100 + 20 + 30 + 10 + 40
        assert calculate_priority("pyproject.toml", 500, NOW, now=NOW) == 100 + 20 + 30 + 40

    def test_readme_bonus_only_at_root(self) -> None:
        root = calculate_priority("README.md", 500, OLD, now=NOW)
        nested = calculate_priority("docs/README.md", 500, OLD, now=NOW)
        assert root == nested + 15


class TestMatchesAny:
    def test_double_star_matches_root_and_nested(self) -> None:
        assert matches_any("a.py", ["**/*.py"])
        assert matches_any("pkg/a.py", ["**/*.py"])
        assert not matches_any("pkg/a.js", ["**/*.py"])

    def test_directory_glob(self) -> None:
        assert matches_any("node_modules/x/y.js", ["node_modules/**"])
        assert not matches_any("src/node.js", ["node_modules/**"])

    def test_basename_glob(self) -> None:
        assert matches_any("dist/app.min.js", ["*.min.js"])


class TestFileSelector:
    def test_empty_tree(self, tmp_path: Path) -> None:
        assert _selector(tmp_path).select() == []

    def test_vcs_dir_always_ignored(self, make_tree) -> None:
        root = make_tree({".git/config.json": "{}", "a.py": "x"})
        assert list(_selector(root, respect_gitignore=False, exclude=()).walk()) == ["a.py"]

    def test_gitignore_respected(self, make_tree) -> None:
        root = make_tree(
            {".gitignore": "build/\n*.log.md\n", "build/out.py": "x", "a.py": "x", "b.log.md": "x"}
        )
        paths = list(_selector(root, exclude=()).walk())
        assert "build/out.py" not in paths
        assert "b.log.md" not in paths
        assert "a.py" in paths

    def test_gitignore_can_be_disabled(self, make_tree) -> None:
        root = make_tree({".gitignore": "build/\n", "build/out.py": "x"})
        paths = list(_selector(root, respect_gitignore=False, exclude=()).walk())
        assert "build/out.py" in paths

    def test_wildcard_include_uses_extension_allow_list(self, make_tree) -> None:
        root = make_tree({"a.py": "x", "notes.txt": "x", "data.csv": "x", "c.yaml": "x"})
        selected = {f.path for f in _selector(root).select()}
        assert selected == {"a.py", "c.yaml"}

    def test_extension_allow_list_ignores_case(self, make_tree) -> None:
        root = make_tree({"Main.PY": "x", "README.MD": "x", "notes.TXT": "x"})
        selected = {f.path for f in _selector(root).select()}
        assert selected == {"Main.PY", "README.MD"}

    def test_explicit_include(self, make_tree) -> None:
        root = make_tree({"a.py": "x", "notes.txt": "x"})
        selected = {f.path for f in _selector(root, include=("**/*.txt",)).select()}
        assert selected == {"notes.txt"}

    def test_exclude_wins_over_include(self, make_tree) -> None:
        root = make_tree({"src/a.py": "x", "node_modules/m/index.js": "x"})
        selected = {
            f.path
            for f in _selector(root, include=("**/*",), exclude=("node_modules/**",)).select()
        }
        assert selected == {"src/a.py"}

    def test_ranking_and_instruction_file_first(self, make_tree) -> None:
        root = make_tree(
            {"PROMPT.md": "goal", "docs/guide.md": "x", "src/main.py": "x", "tests/test_a.py": "x"}
        )
        _age_all(root)
        selected = [f.path for f in _selector(root).select()]
        assert selected == ["PROMPT.md", "src/main.py", "tests/test_a.py", "docs/guide.md"]

    def test_ties_keep_walk_order(self, make_tree) -> None:
        root = make_tree({"b.py": "x", "a.py": "x", "c.py": "x"})
        _age_all(root)
        assert [f.path for f in _selector(root).select()] == ["a.py", "b.py", "c.py"]

    def test_budget_applied(self, make_tree) -> None:
        root = make_tree({"a.py": "x" * 2000, "b.py": "x" * 2000, "c.py": "x" * 2000})
        _age_all(root)
        selected = _selector(root, max_context_bytes=5000).select()
        assert [f.path for f in selected] == ["a.py", "b.py"]

    def test_select_with_content(self, make_tree) -> None:
        root = make_tree({"a.py": "print('hi')\n"})
        assert _selector(root).select_with_content() == [
            {"path": "a.py", "content": "print('hi')\n"}
        ]

    def test_unreadable_file_gets_sentinel(self, make_tree, monkeypatch) -> None:
        root = make_tree({"a.py": "ok", "b.py": "secret"})
        real_read_text = Path.read_text

        def fake_read_text(self: Path, *args, **kwargs) -> str:
            if self.name == "b.py":
                raise PermissionError("denied")
            return real_read_text(self, *args, **kwargs)

        monkeypatch.setattr(Path, "read_text", fake_read_text)
        by_path = {f["path"]: f["content"] for f in _selector(root).select_with_content()}
        assert by_path["a.py"] == "ok"
        assert by_path["b.py"].startswith("[Error reading file:")

    def test_unreadable_directory_is_skipped(self, make_tree, monkeypatch) -> None:
        root = make_tree({"a.py": "x", "locked/b.py": "x"})
        real_scandir = os.scandir

        def fake_scandir(path):
            if Path(path).name == "locked":
                raise PermissionError("denied")
            return real_scandir(path)

        monkeypatch.setattr(file_selector.os, "scandir", fake_scandir)
        assert list(_selector(root).walk()) == ["a.py"]

    def test_stats_rounds_average(self, make_tree) -> None:
        root = make_tree({"a.py": "x", "b.py": "xx"})
        stats = _selector(root).stats()
        assert stats.to_dict() == {"file_count": 2, "total_size": 3, "average_size": 2}

    def test_stats_empty(self, tmp_path: Path) -> None:
        assert _selector(tmp_path).stats().to_dict() == {
            "file_count": 0,
            "total_size": 0,
            "average_size": 0,
        }


@st.composite
def ranked_files(draw: st.DrawFn) -> List[SelectedFile]:
    sizes = draw(st.lists(st.integers(min_value=0, max_value=20_000), max_size=40))
    priorities = sorted(
        draw(st.lists(st.integers(min_value=0, max_value=400), min_size=len(sizes), max_size=len(sizes))),
        reverse=True,
    )
    return [
        SelectedFile(path=f"f{i}", size=s, modified_at=NOW, priority=p)
        for i, (s, p) in enumerate(zip(sizes, priorities))
    ]


@given(
    ranked_files(),
    st.integers(min_value=0, max_value=60),
    st.integers(min_value=0, max_value=200_000),
)
@settings(max_examples=100)
def test_budget_and_order_invariants(
    files: List[SelectedFile], max_files: int, max_bytes: int
) -> None:
    selected = apply_limits(files, max_files, max_bytes)
    assert len(selected) <= max_files
    assert sum(f.size for f in selected) <= max_bytes
    # greedy prefix of the input
    assert selected == files[: len(selected)]
    assert all(a.priority >= b.priority for a, b in zip(selected, selected[1:]))


@given(
    st.integers(min_value=0, max_value=1_000_000),
    st.floats(min_value=0, max_value=1000 * DAY_SECONDS, allow_nan=False),
)
@settings(max_examples=50)
def test_root_instruction_file_outranks_everything(size: int, age: float) -> None:
    best_other = calculate_priority("package.json", 0, NOW, now=NOW)
    assert calculate_priority("PROMPT.md", size, NOW - age, now=NOW) > best_other
