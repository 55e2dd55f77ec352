from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep a developer's ~/.wiggumizer.yml and env overrides out of tests."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("WIGGUMIZER_CONFIG", raising=False)
    monkeypatch.delenv("WIGGUMIZER_VERBOSITY", raising=False)
    monkeypatch.delenv("WIGGUMIZER_FORMAT", raising=False)
    return home


@pytest.fixture
def make_tree(tmp_path: Path):
    """Write ``{relative_path: content}`` under tmp_path and return the root."""

    def _make(files: dict, root: Path = tmp_path) -> Path:
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content, encoding="utf-8")
        return root

    return _make


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Initialise a repository with one commit and return its root."""
    for args in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(args, cwd=tmp_path, check=True, capture_output=True)
    (tmp_path / "README.md").write_text("# demo\n", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=tmp_path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"], cwd=tmp_path, check=True, capture_output=True
    )
    return tmp_path


@pytest.fixture(autouse=True)
def reset_output_config():
    from wiggumizer.output import set_output_config

    set_output_config(None)
    yield
    set_output_config(None)
