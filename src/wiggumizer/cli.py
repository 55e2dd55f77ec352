from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .atomic_file import atomic_write_text
from .config import RESPONSE_STYLES, Config, load_config
from .file_selector import calculate_priority, selector_from_config
from .iteration_log import list_sessions, load_summary
from .logging_config import setup_logging
from .loop import STOP_MAX_ITERATIONS, IterationResult, run_loop
from .output import (
    OutputConfig,
    format_json_output,
    print_json_output,
    print_output,
    set_output_config,
)
from .providers import ModelError
from .retry import CircuitOpenError
from .validation import ValidationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130

PROMPT_TEMPLATE = """# Goal

Describe the change you want, in plain language. The loop sends this file
and the most relevant project files to the model on every iteration.

## Requirements

-

## Done when

-
"""

CONFIG_TEMPLATE = """[loop]
max_iterations = 20
response_style = "diff"  # diff | whole_file
auto_commit = false
no_change_limit = 2

[files]
include = ["**/*"]
respect_gitignore = true
prompt = "PROMPT.md"

[context]
max_context_bytes = 100000
max_files = 50

[provider]
kind = "cli"  # cli | http
argv = ["claude", "-p"]
timeout_seconds = 600

[retry]
max_retries = 3

# [[validation.commands]]
# name = "tests"
# command = "pytest -q"
# required = true
"""


class _WiggumArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(EXIT_FATAL, f"Error: {message}\n")


def _project_root(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "root", None) or ".").resolve()


def _apply_run_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    loop = cfg.loop
    changes = {}
    if getattr(args, "max_iterations", None) is not None:
        changes["max_iterations"] = args.max_iterations
    if getattr(args, "dry_run", False):
        changes["dry_run"] = True
    if getattr(args, "auto_commit", False):
        changes["auto_commit"] = True
    if getattr(args, "style", None):
        changes["response_style"] = args.style
    if changes:
        loop = dataclasses.replace(loop, **changes)

    files = cfg.files
    if getattr(args, "prompt", None):
        files = dataclasses.replace(files, prompt=args.prompt)
    return dataclasses.replace(cfg, loop=loop, files=files)


# -------------------------
# run
# -------------------------


def _print_iteration(it: IterationResult) -> None:
    print_output(f"Iteration {it.iteration}: {it.summary}")
    if it.no_changes_needed:
        print_output("  No changes needed")
    elif it.dry_run:
        print_output(f"  Dry run: would modify {len(it.files_modified)} file(s)")
    else:
        print_output(f"  Modified {it.files_modified_count} file(s)")
    for path in it.files_modified:
        print_output(f"    {path}", level="verbose")
    for error in it.errors:
        print_output(f"  ! {error}")
    if it.verdict is not None and it.verdict.oscillation is not None:
        print_output(f"  ! {it.verdict.oscillation.message}")
        print_output("    Consider refining the prompt to avoid flip-flopping")
    elif it.verdict is not None and it.verdict.confidence > 0:
        print_output(
            f"  Convergence confidence: {it.verdict.confidence * 100:.0f}%", level="verbose"
        )


def cmd_run(args: argparse.Namespace) -> int:
    root = _project_root(args)
    cfg = _apply_run_overrides(load_config(root), args)

    stop_requested = False

    def handle_sigint(sig: int, frame: object) -> None:
        nonlocal stop_requested
        if stop_requested:
            raise KeyboardInterrupt
        stop_requested = True
        print_output(
            "\nStopping after the current iteration (Ctrl+C again to abort)", level="error"
        )

    previous = signal.signal(signal.SIGINT, handle_sigint)
    try:
        result = run_loop(
            root,
            cfg,
            should_stop=lambda: stop_requested,
            on_iteration=_print_iteration,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    print_json_output(
        {**result.to_dict(), "iterations": [it.to_dict() for it in result.iterations]}
    )
    print_output("")
    if result.converged:
        print_output(f"Converged: {result.convergence_reason}", level="quiet")
    elif result.stop_reason == STOP_MAX_ITERATIONS:
        print_output(
            "Max iterations reached without convergence; consider refining the prompt",
            level="quiet",
        )
    else:
        print_output(f"Stopped: {result.stop_reason}", level="quiet")
    print_output(
        f"Iterations: {len(result.iterations)}  "
        f"Files modified: {result.total_files_modified}  "
        f"Duration: {result.duration_seconds:.0f}s"
    )
    if result.session_id:
        print_output(f"Session logs: .wiggumizer/iterations/{result.session_id}")
    return EXIT_OK


# -------------------------
# files
# -------------------------


def cmd_files(args: argparse.Namespace) -> int:
    root = _project_root(args)
    cfg = load_config(root)
    selector = selector_from_config(root, cfg)

    if args.stats:
        stats = selector.stats()
        print_json_output(stats.to_dict())
        print_output(f"Files: {stats.file_count}")
        print_output(f"Total size: {stats.total_size} bytes")
        print_output(f"Average size: {stats.average_size} bytes")
        return EXIT_OK

    selected = selector.select()
    print_json_output({"files": [dataclasses.asdict(f) for f in selected]})
    for f in selected:
        print_output(f"{f.priority:5d}  {f.size:8d}  {f.path}")
    return EXIT_OK


def cmd_priority(args: argparse.Namespace) -> int:
    root = _project_root(args)
    cfg = load_config(root)
    path = root / args.path
    try:
        st = path.stat()
    except OSError as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_FAILURE
    score = calculate_priority(
        args.path, st.st_size, st.st_mtime, instruction_file=cfg.files.prompt
    )
    print_json_output({"path": args.path, "priority": score})
    print_output(str(score), level="quiet")
    return EXIT_OK


# -------------------------
# init / logs
# -------------------------


def cmd_init(args: argparse.Namespace) -> int:
    root = _project_root(args)
    written: List[str] = []
    for name, content in (("PROMPT.md", PROMPT_TEMPLATE), ("wiggumizer.toml", CONFIG_TEMPLATE)):
        target = root / name
        if target.exists() and not args.force:
            print_output(f"Skipping existing {name} (use --force to overwrite)")
            continue
        atomic_write_text(target, content)
        written.append(name)

    print_json_output({"written": written})
    for name in written:
        print_output(f"Created {name}", level="quiet")
    return EXIT_OK


def cmd_logs(args: argparse.Namespace) -> int:
    root = _project_root(args)
    sessions = list_sessions(root)
    if not sessions:
        print_output("No sessions logged yet", level="quiet")
        return EXIT_OK

    if args.all:
        print_json_output({"sessions": sessions})
        for sid in sessions:
            print_output(sid, level="quiet")
        return EXIT_OK

    session_id = args.session or sessions[-1]
    summary = load_summary(root, session_id)
    if summary is None:
        print_output(f"No summary for session {session_id}", level="error")
        return EXIT_FAILURE

    print_json_output(summary)
    print_output(f"Session {session_id}")
    print_output(format_json_output(summary), level="normal")
    return EXIT_OK


# -------------------------
# parser
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    p = _WiggumArgumentParser(
        prog="wiggumize",
        description="wiggumizer: iterate a model over your code until it converges",
    )
    p.add_argument("--version", action="version", version=f"wiggumizer {__version__}")
    p.add_argument("--root", default=None, help="Project root (default: current directory)")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    p.add_argument("-q", "--quiet", action="store_true", help="Minimal output")
    p.add_argument("--format", choices=["text", "json"], default=None, help="Output format")
    p.add_argument("--log-file", default=None, help="Also write a DEBUG log to this file")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run the improvement loop")
    p_run.add_argument("--max-iterations", type=int, default=None)
    p_run.add_argument("--dry-run", action="store_true", help="Call the model but write nothing")
    p_run.add_argument("--auto-commit", action="store_true", help="Commit after each iteration")
    p_run.add_argument("--style", choices=list(RESPONSE_STYLES), default=None)
    p_run.add_argument("--prompt", default=None, help="Goal prompt file (default: PROMPT.md)")
    p_run.set_defaults(func=cmd_run)

    p_files = sub.add_parser("files", help="Show the files the loop would send")
    p_files.add_argument("--stats", action="store_true", help="Only print totals")
    p_files.set_defaults(func=cmd_files)

    p_prio = sub.add_parser("priority", help="Show the priority score of one file")
    p_prio.add_argument("path")
    p_prio.set_defaults(func=cmd_priority)

    p_init = sub.add_parser("init", help="Create PROMPT.md and wiggumizer.toml")
    p_init.add_argument("--force", action="store_true", help="Overwrite existing files")
    p_init.set_defaults(func=cmd_init)

    p_logs = sub.add_parser("logs", help="Show session logs")
    p_logs.add_argument("session", nargs="?", default=None)
    p_logs.add_argument("--all", action="store_true", help="List every session")
    p_logs.set_defaults(func=cmd_logs)

    return p


def _output_config(args: argparse.Namespace, cfg: Config) -> OutputConfig:
    verbosity = cfg.output.verbosity
    fmt = cfg.output.format
    if args.verbose:
        verbosity = "verbose"
    elif args.quiet:
        verbosity = "quiet"
    if args.format:
        fmt = args.format
    return OutputConfig(verbosity=verbosity, format=fmt)


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(_project_root(args))
    except ValueError as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_FATAL

    output_cfg = _output_config(args, cfg)
    set_output_config(output_cfg)
    setup_logging(
        verbose=output_cfg.verbosity == "verbose",
        log_file=Path(args.log_file) if args.log_file else None,
        quiet=output_cfg.verbosity == "quiet",
    )
    logger.debug("wiggumizer v%s starting: %s", __version__, args.cmd)

    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        print_output("\nInterrupted", level="error")
        return EXIT_INTERRUPTED
    except (ModelError, CircuitOpenError, ValidationError, FileNotFoundError, ValueError) as e:
        print_output(f"Error: {e}", level="error")
        return EXIT_FATAL
    except Exception as e:
        logger.error("%s", e)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
