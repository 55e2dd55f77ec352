from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from wiggumizer import __version__
from wiggumizer.cli import EXIT_FATAL, EXIT_OK, main
from wiggumizer.iteration_log import IterationLogger


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _write_runner_config(root: Path, script: str) -> None:
    argv = json.dumps([sys.executable, "-c", script])
    (root / "wiggumizer.toml").write_text(
        f"[provider]\nargv = {argv}\n\n[retry]\nmax_retries = 0\n", encoding="utf-8"
    )


def test_version(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_unknown_command_is_usage_error(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["frobnicate"])
    assert excinfo.value.code == EXIT_FATAL


def test_init_creates_files(tmp_path: Path, capsys) -> None:
    assert main(["--root", str(tmp_path), "init"]) == EXIT_OK
    assert (tmp_path / "PROMPT.md").is_file()
    assert (tmp_path / "wiggumizer.toml").is_file()
    assert "Created PROMPT.md" in capsys.readouterr().out

    (tmp_path / "PROMPT.md").write_text("mine", encoding="utf-8")
    main(["--root", str(tmp_path), "init"])
    assert (tmp_path / "PROMPT.md").read_text() == "mine"

    main(["--root", str(tmp_path), "init", "--force"])
    assert (tmp_path / "PROMPT.md").read_text() != "mine"


def test_init_template_loads(tmp_path: Path) -> None:
    main(["--root", str(tmp_path), "init"])
    assert main(["--root", str(tmp_path), "files"]) == EXIT_OK


def test_files_json(make_tree, capsys) -> None:
    root = make_tree({"PROMPT.md": "goal", "src/app.py": "x = 1\n", "notes.txt": "hi", "data.json": "{}"})
    assert main(["--root", str(root), "--format", "json", "files"]) == EXIT_OK
    data = json.loads(capsys.readouterr().out)
    paths = [f["path"] for f in data["files"]]
    assert paths[0] == "PROMPT.md"
    assert set(paths) == {"PROMPT.md", "src/app.py", "data.json"}


def test_files_stats_json(make_tree, capsys) -> None:
    root = make_tree({"a.py": "1234", "b.py": "123456"})
    assert main(["--root", str(root), "--format", "json", "files", "--stats"]) == EXIT_OK
    stats = json.loads(capsys.readouterr().out)
    assert stats["file_count"] == 2
    assert stats["total_size"] == 10


def test_priority(make_tree, capsys) -> None:
    root = make_tree({"PROMPT.md": "goal"})
    assert main(["--root", str(root), "-q", "priority", "PROMPT.md"]) == EXIT_OK
    assert capsys.readouterr().out.strip() == "300"


def test_priority_missing_file(tmp_path: Path, capsys) -> None:
    assert main(["--root", str(tmp_path), "priority", "nope.py"]) != EXIT_OK
    assert "Error" in capsys.readouterr().err


def test_logs(tmp_path: Path, capsys) -> None:
    assert main(["--root", str(tmp_path), "logs"]) == EXIT_OK
    assert "No sessions" in capsys.readouterr().out

    IterationLogger(tmp_path, session_id="s1").log_summary({"converged": True})
    IterationLogger(tmp_path, session_id="s2").log_summary({"converged": False})

    assert main(["--root", str(tmp_path), "--format", "json", "logs"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["session_id"] == "s2"

    assert main(["--root", str(tmp_path), "--format", "json", "logs", "s1"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["converged"] is True

    assert main(["--root", str(tmp_path), "--format", "json", "logs", "--all"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["sessions"] == ["s1", "s2"]


def test_invalid_config_is_fatal(tmp_path: Path, capsys) -> None:
    (tmp_path / "wiggumizer.toml").write_text('[loop]\nresponse_style = "haiku"\n', encoding="utf-8")
    assert main(["--root", str(tmp_path), "files"]) == EXIT_FATAL
    assert "response_style" in capsys.readouterr().err


def test_run_without_prompt_is_fatal(tmp_path: Path, capsys) -> None:
    assert main(["--root", str(tmp_path), "run"]) == EXIT_FATAL
    assert "Prompt file not found" in capsys.readouterr().err


def test_run_end_to_end(make_tree, capsys) -> None:
    root = make_tree({"PROMPT.md": "Tidy up", "app.py": "x = 1\n"})
    _write_runner_config(root, "print('NO CHANGES NEEDED')")

    assert main(["--root", str(root), "--format", "json", "run"]) == EXIT_OK
    data = json.loads(capsys.readouterr().out)
    assert data["converged"] is True
    assert data["stop_reason"] == "no_changes_needed"
    assert data["total_iterations"] == 1
    assert len(data["iterations"]) == 1


def test_run_fatal_model_error(make_tree, capsys) -> None:
    root = make_tree({"PROMPT.md": "Tidy up"})
    _write_runner_config(root, "import sys; sys.stderr.write('invalid api key'); sys.exit(1)")

    assert main(["--root", str(root), "run", "--max-iterations", "2"]) == EXIT_FATAL
    assert "invalid api key" in capsys.readouterr().err


def test_run_dry_run_override(make_tree, capsys) -> None:
    root = make_tree({"PROMPT.md": "Tidy up", "app.py": "x = 1\n"})
    response = "## File: app.py\n```python\nx = 2\n```"
    _write_runner_config(root, f"print({response!r})")

    assert main(["--root", str(root), "run", "--dry-run", "--style", "whole_file"]) == EXIT_OK
    assert (root / "app.py").read_text() == "x = 1\n"
    assert "Dry run: would modify 1 file(s)" in capsys.readouterr().out
