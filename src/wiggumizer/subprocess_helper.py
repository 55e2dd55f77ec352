"""Subprocess execution shared by runners, validation commands and git.

All external processes (CLI model runners, validation commands, git) go
through this module so that timeouts and missing executables surface the
same way: as ``RuntimeError`` with a readable message. A timed-out call
never touches loop state; the caller simply sees the exception.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SubprocessResult:
    """Result of a subprocess execution.

    Attributes:
        returncode: The exit code of the process (0 = success)
        stdout: Captured standard output
        stderr: Captured standard error
        timed_out: True if the command exceeded the timeout
        cmd_str: String representation of the command (for logging)
    """

    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        return self.returncode != 0


def _coerce_output(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return str(raw)


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    check: bool = False,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    env: Optional[dict] = None,
    shell: bool = False,
) -> SubprocessResult:
    """Run a command to completion and capture its output.

    Args:
        argv: Command and arguments (a single-element list when shell=True)
        cwd: Working directory for the command
        check: If True, raise RuntimeError on non-zero exit
        timeout: Maximum seconds to wait
        input_text: Optional text passed to process stdin
        env: Environment variables to pass to the subprocess
        shell: Run ``argv[0]`` through the shell

    Returns:
        SubprocessResult with returncode, stdout, stderr

    Raises:
        RuntimeError: If the command times out, is not found, or check=True
            and it exits non-zero
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {"capture_output": True, "text": True}
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = env
    if input_text is not None:
        kwargs["input"] = input_text

    logger.debug("Running: %s", cmd_str)
    try:
        cp = subprocess.run(argv[0] if shell else argv, shell=shell, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(
            f"Command timed out after {timeout}s: {cmd_str}\n"
            f"Partial output:\n{_coerce_output(e.stderr)[:500]}"
        ) from e
    except FileNotFoundError:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        )

    result = SubprocessResult(
        returncode=cp.returncode,
        stdout=_coerce_output(cp.stdout),
        stderr=_coerce_output(cp.stderr),
        cmd_str=cmd_str,
    )

    if check and result.failed:
        raise RuntimeError(
            f"Command failed with exit code {result.returncode}: {cmd_str}\n"
            f"stderr: {result.stderr}"
        )

    return result


def run_subprocess_live(
    argv: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    forward_output: bool = True,
    on_line: Optional[Callable[[str], None]] = None,
    env: Optional[dict] = None,
) -> SubprocessResult:
    """Run a command while streaming its stdout line by line.

    Used for model runners whose response arrives progressively. Each
    stdout line is handed to ``on_line`` (the single consumer) and
    optionally echoed to the terminal; the full text is also returned.

    Raises:
        RuntimeError: On timeout or command not found
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {
        "stdin": subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE,
        "text": True,
    }
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if env is not None:
        kwargs["env"] = env

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    def _stream_reader(stream: IO[str], sink: list[str], is_stderr: bool) -> None:
        for line in iter(stream.readline, ""):
            if forward_output:
                print(line, end="", flush=True, file=sys.stderr if is_stderr else sys.stdout)
            if on_line is not None and not is_stderr:
                on_line(line)
            sink.append(line)

    logger.debug("Streaming: %s", cmd_str)
    try:
        with subprocess.Popen(argv, **kwargs) as proc:
            if input_text is not None and proc.stdin is not None:
                try:
                    proc.stdin.write(input_text)
                    proc.stdin.flush()
                except OSError:
                    # Process exited before reading stdin; returncode tells the story.
                    logger.debug("stdin closed early by %s", argv[0])
                finally:
                    proc.stdin.close()

            readers = [
                threading.Thread(
                    target=_stream_reader, args=(proc.stdout, stdout_lines, False), daemon=True
                ),
                threading.Thread(
                    target=_stream_reader, args=(proc.stderr, stderr_lines, True), daemon=True
                ),
            ]
            for reader in readers:
                reader.start()

            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                try:
                    proc.wait(timeout=1)
                except subprocess.TimeoutExpired:
                    pass
                for reader in readers:
                    reader.join(timeout=1.0)
                raise RuntimeError(
                    f"Command timed out after {timeout}s: {cmd_str}\n"
                    f"Partial stdout:\n{''.join(stdout_lines)[:500]}"
                ) from e

            for reader in readers:
                reader.join()

            return SubprocessResult(
                returncode=proc.returncode if proc.returncode is not None else -1,
                stdout="".join(stdout_lines),
                stderr="".join(stderr_lines),
                cmd_str=cmd_str,
            )

    except FileNotFoundError:
        raise RuntimeError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        )


def check_command_available(cmd: str) -> bool:
    """Check if a command is available in PATH."""
    return shutil.which(cmd) is not None
