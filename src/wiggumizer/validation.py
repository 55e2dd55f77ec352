"""Post-iteration validation commands (tests, builds, custom checks)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from .config import ValidationCommand
from .subprocess_helper import run_subprocess

logger = logging.getLogger(__name__)


class ValidationError(RuntimeError):
    """A required validation command failed."""


@dataclass
class CheckResult:
    name: str
    command: str
    passed: bool
    required: bool
    duration_seconds: float
    return_code: int = 0
    output: str = ""


@dataclass
class ValidationReport:
    results: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results if r.required)

    @property
    def failure_reason(self) -> str:
        for r in self.results:
            if r.required and not r.passed:
                return f"{r.name} failed"
        return ""


def _tail(text: str, max_lines: int = 20) -> str:
    lines = text.strip().splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(["...", *lines[-max_lines:]])


def run_check(check: ValidationCommand, cwd: Path) -> CheckResult:
    start = time.monotonic()
    try:
        result = run_subprocess(
            [check.command], cwd=cwd, timeout=check.timeout_seconds, shell=True
        )
        passed = result.success
        rc = result.returncode
        output = _tail(result.stdout + result.stderr)
    except RuntimeError as e:
        # Timeouts count as failures of the check, not of the loop.
        passed, rc, output = False, -1, str(e)

    duration = time.monotonic() - start
    if passed:
        logger.info("%s passed (%.1fs)", check.name, duration)
    else:
        logger.warning("%s failed (%.1fs, rc=%d)", check.name, duration, rc)
    return CheckResult(
        name=check.name,
        command=check.command,
        passed=passed,
        required=check.required,
        duration_seconds=round(duration, 3),
        return_code=rc,
        output=output,
    )


def run_validation(
    checks: Sequence[ValidationCommand], cwd: Path, raise_on_required: bool = True
) -> ValidationReport:
    """Run every configured check in order.

    Raises:
        ValidationError: If ``raise_on_required`` and a required check fails
    """
    report = ValidationReport()
    for check in checks:
        report.results.append(run_check(check, cwd))

    if raise_on_required and not report.passed:
        failed = next(r for r in report.results if r.required and not r.passed)
        raise ValidationError(
            f"Required validation '{failed.name}' failed "
            f"(rc={failed.return_code}): {failed.command}\n{failed.output}"
        )
    return report
