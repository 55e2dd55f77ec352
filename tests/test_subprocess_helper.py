from __future__ import annotations

import sys
from pathlib import Path

import pytest

from wiggumizer.subprocess_helper import (
    check_command_available,
    run_subprocess,
    run_subprocess_live,
)


def test_captures_output(tmp_path: Path) -> None:
    result = run_subprocess(
        [sys.executable, "-c", "import os, sys; print(os.getcwd()); sys.stderr.write('warn')"],
        cwd=tmp_path,
    )
    assert result.success
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()
    assert result.stderr == "warn"


def test_input_text() -> None:
    result = run_subprocess(
        [sys.executable, "-c", "import sys; print(sys.stdin.read()[::-1])"], input_text="abc"
    )
    assert result.stdout.strip() == "cba"


def test_nonzero_exit_with_check() -> None:
    argv = [sys.executable, "-c", "import sys; sys.exit(3)"]
    assert run_subprocess(argv).returncode == 3
    with pytest.raises(RuntimeError, match="exit code 3"):
        run_subprocess(argv, check=True)


def test_timeout_raises() -> None:
    with pytest.raises(RuntimeError, match="timed out"):
        run_subprocess([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)


def test_missing_command_raises() -> None:
    with pytest.raises(RuntimeError, match="Command not found"):
        run_subprocess(["no-such-binary-for-wiggumizer"])


def test_shell_mode(tmp_path: Path) -> None:
    result = run_subprocess(["echo hello && exit 4"], cwd=tmp_path, shell=True)
    assert result.stdout.strip() == "hello"
    assert result.returncode == 4


def test_live_streams_lines() -> None:
    lines = []
    result = run_subprocess_live(
        [sys.executable, "-c", "import sys; [print(l.strip()) for l in sys.stdin]"],
        input_text="a\nb\n",
        forward_output=False,
        on_line=lines.append,
    )
    assert lines == ["a\n", "b\n"]
    assert result.stdout == "a\nb\n"


def test_live_timeout() -> None:
    with pytest.raises(RuntimeError, match="timed out"):
        run_subprocess_live(
            [sys.executable, "-c", "import time; time.sleep(5)"],
            timeout=0.2,
            forward_output=False,
        )


def test_check_command_available() -> None:
    assert check_command_available("sh")
    assert not check_command_available("no-such-binary-for-wiggumizer")
