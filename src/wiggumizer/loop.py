"""Loop controller: select, ask the model, apply, check convergence, repeat."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config
from .convergence import ConvergenceAnalyzer, ConvergenceVerdict
from .diff_applier import apply_diffs
from .file_selector import FileSelector, selector_from_config
from .git_helper import (
    commit_iteration,
    current_commit,
    is_git_repo,
    recent_log,
    warn_if_dirty,
)
from .iteration_log import IterationLogger, append_journal, read_journal
from .prompts import (
    build_system_prompt,
    build_user_message,
    detect_no_changes,
    extract_summary,
)
from .providers import ModelClient, build_client
from .replacements import apply_replacements
from .retry import RetryPolicy
from .validation import ValidationReport, run_validation

logger = logging.getLogger(__name__)

STOP_CONVERGED = "converged"
STOP_NO_CHANGES_NEEDED = "no_changes_needed"
STOP_NO_CHANGE_LIMIT = "no_change_limit"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_INTERRUPTED = "stopped"

HISTORY_LIMIT = 10


@dataclass
class IterationResult:
    iteration: int
    summary: str
    files_modified: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    no_changes_needed: bool = False
    verdict: Optional[ConvergenceVerdict] = None
    validation: Optional[ValidationReport] = None
    committed: bool = False
    dry_run: bool = False
    duration_seconds: float = 0.0

    @property
    def files_modified_count(self) -> int:
        # A dry run reports what it would touch but records nothing.
        return 0 if self.dry_run else len(self.files_modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "summary": self.summary,
            "files_modified": self.files_modified_count,
            "files_list": list(self.files_modified),
            "errors": list(self.errors),
            "no_changes_needed": self.no_changes_needed,
            "convergence": self.verdict.to_dict() if self.verdict else None,
            "validation": (
                [asdict(r) for r in self.validation.results] if self.validation else []
            ),
            "committed": self.committed,
            "dry_run": self.dry_run,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class LoopResult:
    iterations: List[IterationResult] = field(default_factory=list)
    converged: bool = False
    stop_reason: str = STOP_MAX_ITERATIONS
    convergence_reason: str = ""
    session_id: Optional[str] = None
    start_commit: Optional[str] = None
    convergence_summary: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def total_files_modified(self) -> int:
        return sum(r.files_modified_count for r in self.iterations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_iterations": len(self.iterations),
            "converged": self.converged,
            "stop_reason": self.stop_reason,
            "convergence_reason": self.convergence_reason,
            "files_modified": self.total_files_modified,
            "duration_seconds": self.duration_seconds,
            "session_id": self.session_id,
            "start_commit": self.start_commit,
            "convergence_summary": self.convergence_summary,
        }


def read_goal(project_root: Path, cfg: Config) -> str:
    """Read the goal prompt file.

    Raises:
        FileNotFoundError: If the prompt file does not exist
    """
    path = project_root / cfg.files.prompt
    if not path.is_file():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8")


def work_history(project_root: Path, use_git: bool) -> Tuple[str, str]:
    """Recent history for the prompt, and where it came from ("git" or "journal")."""
    if use_git:
        log = recent_log(project_root, HISTORY_LIMIT)
        if log:
            return log, "git"
    return read_journal(project_root, HISTORY_LIMIT), "journal"


def run_iteration(
    iteration: int,
    *,
    project_root: Path,
    cfg: Config,
    goal: str,
    client: ModelClient,
    selector: FileSelector,
    analyzer: ConvergenceAnalyzer,
    retry_policy: RetryPolicy,
    system_prompt: str,
    use_git: bool = False,
) -> IterationResult:
    """Run a single iteration. Fatal external errors propagate.

    With ``use_git`` the model sees recent commits as its work history;
    otherwise it sees the iteration journal.
    """
    start = time.monotonic()
    dry_run = cfg.loop.dry_run

    files = selector.select_with_content()
    analyzer.update_tree_snapshot(files)

    history, source = work_history(project_root, use_git)
    user_message = build_user_message(goal, files, iteration, history, source)
    response = retry_policy.call(
        lambda: client.invoke(system_prompt, user_message),
        context=f"Model call for iteration {iteration}",
    )

    result = IterationResult(
        iteration=iteration, summary=extract_summary(response), dry_run=dry_run
    )

    if detect_no_changes(response):
        logger.info("Iteration %d: model reports no changes needed", iteration)
        result.no_changes_needed = True
        analyzer.record_iteration(iteration, 0, [], response)
        result.verdict = ConvergenceVerdict(
            converged=True, confidence=1.0, reason="Model reported no changes needed"
        )
        result.duration_seconds = round(time.monotonic() - start, 3)
        return result

    if cfg.loop.response_style == "whole_file":
        applied = apply_replacements(response, project_root, dry_run=dry_run)
    else:
        applied = apply_diffs(
            response,
            project_root,
            fuzz_window=cfg.convergence.fuzz_window,
            dry_run=dry_run,
        )
    result.files_modified = list(applied.files_modified)
    result.errors = list(applied.errors)

    analyzer.record_iteration(
        iteration,
        result.files_modified_count,
        [] if dry_run else result.files_modified,
        response,
    )

    if result.files_modified_count:
        if cfg.validation.commands:
            result.validation = run_validation(cfg.validation.commands, project_root)
        if cfg.loop.auto_commit and is_git_repo(project_root):
            result.committed = commit_iteration(project_root, iteration)

    result.verdict = analyzer.check_convergence()
    result.duration_seconds = round(time.monotonic() - start, 3)
    return result


def run_loop(
    project_root: Path,
    cfg: Config,
    client: Optional[ModelClient] = None,
    goal: Optional[str] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    on_iteration: Optional[Callable[[IterationResult], None]] = None,
    write_logs: bool = True,
) -> LoopResult:
    """Iterate until convergence, the zero-change limit, or max iterations.

    Args:
        project_root: Workspace the model edits
        cfg: Loaded configuration
        client: Model client; built from ``cfg.provider`` if omitted
        goal: Goal prompt text; read from ``cfg.files.prompt`` if omitted
        should_stop: Polled before each iteration
        retry_policy: Retry policy for model calls
        on_iteration: Called with each finished iteration
        write_logs: Write session logs under ``.wiggumizer/iterations`` and,
            outside git, the iteration journal

    Returns:
        LoopResult for the whole run

    Raises:
        ModelError: Model call failed fatally or exhausted its retries
        ValidationError: A required validation command failed
    """
    start = time.monotonic()
    project_root = project_root.resolve()
    if goal is None:
        goal = read_goal(project_root, cfg)
    if not cfg.loop.dry_run:
        warn_if_dirty(project_root)

    client = client or build_client(cfg.provider, cwd=project_root)
    retry_policy = retry_policy or RetryPolicy.from_config(cfg.retry)
    selector = selector_from_config(project_root, cfg)
    analyzer = ConvergenceAnalyzer(history_size=cfg.convergence.history_size)
    system_prompt = build_system_prompt(cfg.loop.response_style)
    iteration_log = IterationLogger(project_root) if write_logs else None

    result = LoopResult(session_id=iteration_log.session_id if iteration_log else None)
    use_git = is_git_repo(project_root)
    if use_git:
        result.start_commit = current_commit(project_root)
    no_change_streak = 0

    logger.info(
        "Starting loop in %s (max %d iterations, style=%s%s)",
        project_root,
        cfg.loop.max_iterations,
        cfg.loop.response_style,
        ", dry run" if cfg.loop.dry_run else "",
    )

    for iteration in range(1, cfg.loop.max_iterations + 1):
        if should_stop is not None and should_stop():
            logger.info("Stop requested before iteration %d", iteration)
            result.stop_reason = STOP_INTERRUPTED
            break

        try:
            it = run_iteration(
                iteration,
                project_root=project_root,
                cfg=cfg,
                goal=goal,
                client=client,
                selector=selector,
                analyzer=analyzer,
                retry_policy=retry_policy,
                system_prompt=system_prompt,
                use_git=use_git,
            )
        except Exception as e:
            if iteration_log is not None:
                iteration_log.log_iteration(iteration, {"files_modified": 0, "error": str(e)})
            raise

        result.iterations.append(it)
        if iteration_log is not None:
            iteration_log.log_iteration(iteration, it.to_dict())
            if not use_git and not it.dry_run:
                append_journal(project_root, iteration, it.files_modified, it.summary)
        if on_iteration is not None:
            on_iteration(it)

        for error in it.errors:
            logger.warning("Iteration %d: %s", iteration, error)

        if it.no_changes_needed:
            result.converged = True
            result.stop_reason = STOP_NO_CHANGES_NEEDED
            result.convergence_reason = it.verdict.reason if it.verdict else ""
            break

        if it.verdict is not None and it.verdict.converged:
            logger.info(
                "Converged after %d iteration(s): %s (confidence %.0f%%)",
                iteration,
                it.verdict.reason,
                it.verdict.confidence * 100,
            )
            result.converged = True
            result.stop_reason = STOP_CONVERGED
            result.convergence_reason = it.verdict.reason
            break

        if not it.dry_run:
            no_change_streak = 0 if it.files_modified_count else no_change_streak + 1
            if no_change_streak >= cfg.loop.no_change_limit:
                logger.info(
                    "Stopping after %d consecutive iteration(s) without changes",
                    no_change_streak,
                )
                result.stop_reason = STOP_NO_CHANGE_LIMIT
                break
    else:
        logger.warning("Max iterations reached without convergence")

    result.convergence_summary = analyzer.summary()
    result.duration_seconds = round(time.monotonic() - start, 3)
    if iteration_log is not None:
        iteration_log.log_summary(result.to_dict())
    return result
