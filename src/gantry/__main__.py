"""CLI entrypoint for `python -m gantry` / `gantry` command."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# ANSI colors
# ---------------------------------------------------------------------------

class _C:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    GRAY = "\033[90m"

    @staticmethod
    def supports_color() -> bool:
        """Check whether the terminal supports ANSI colors."""
        if os.getenv("NO_COLOR"):
            return False
        return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _color(text: str, color: str) -> str:
    """Wrap *text* with an ANSI color code if the terminal supports it."""
    if not _C.supports_color():
        return text
    return f"{color}{text}{_C.RESET}"


def _status_color(status: str) -> str:
    """Return a colorized status string."""
    s = status.lower()
    if s == "success":
        return _color(status, _C.GREEN)
    if s == "failure":
        return _color(status, _C.RED)
    if s in ("running", "pending", "ready"):
        return _color(status, _C.YELLOW)
    if s in ("skipped", "cancelled"):
        return _color(status, _C.GRAY)
    return status


# ---------------------------------------------------------------------------
# Simple table formatter
# ---------------------------------------------------------------------------

def _table(headers: list[str], rows: list[list[str]], *, max_col: int = 48) -> str:
    """Format a simple ASCII table with aligned columns.

    Values longer than *max_col* are truncated with an ellipsis.
    """
    if not rows:
        return "(no data)"

    def _trunc(val: str) -> str:
        if len(val) > max_col:
            return val[: max_col - 1] + "…"
        return val

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(_trunc(cell)))
    widths = [min(w, max_col) for w in widths]

    lines: list[str] = []
    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    lines.append(_color(header_line, _C.BOLD))
    lines.append("  ".join("-" * widths[i] for i in range(len(headers))))
    for row in rows:
        lines.append("  ".join(_trunc(cell).ljust(widths[i]) for i, cell in enumerate(row)))
    return "\n".join(lines)


def _fmt_time(val: Any) -> str:
    """Format a datetime value for display."""
    if val is None:
        return "-"
    if hasattr(val, "strftime"):
        return val.strftime("%Y-%m-%d %H:%M")
    return str(val)


def _fmt_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


# ---------------------------------------------------------------------------
# Input parsing helpers
# ---------------------------------------------------------------------------

def _parse_input_pairs(pairs: list[str] | None) -> dict[str, Any]:
    """Parse KEY=VALUE pairs into a dict.

    Values that look like JSON are parsed as JSON; everything else stays a
    string.
    """
    if not pairs:
        return {}
    result: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            print(f"Error: invalid input format '{pair}' - expected KEY=VALUE", file=sys.stderr)
            sys.exit(1)
        key, _, value = pair.partition("=")
        try:
            result[key] = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            result[key] = value
    return result


def _parse_secret_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Parse ``NAME=value`` or bare ``NAME`` (read from the environment)."""
    secrets: dict[str, str] = {}
    for pair in pairs or []:
        if "=" in pair:
            key, _, value = pair.partition("=")
        else:
            key, value = pair, os.environ.get(pair, "")
            if not value:
                print(f"Warning: secret '{pair}' not set in the environment", file=sys.stderr)
        secrets[key] = value
    return secrets


def _configure_logging(verbose: bool = False) -> None:
    from gantry.config import settings

    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def _load_workflow(path: str):
    from gantry.engine.dag import WorkflowValidationError, parse

    try:
        return parse(path)
    except FileNotFoundError:
        print(f"Error: workflow file not found: {path}", file=sys.stderr)
        sys.exit(1)
    except WorkflowValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def _print_run_result(result: Any) -> None:
    """Pretty-print a concluded run with per-instance details."""
    print()
    print(f"  {_color('Run', _C.BOLD)}:       {result.run_id}")
    print(f"  {_color('Workflow', _C.BOLD)}:  {result.workflow}")
    print(f"  {_color('Event', _C.BOLD)}:     {result.event}")
    print(f"  {_color('Status', _C.BOLD)}:    {_status_color(result.status)}")
    print(f"  {_color('Duration', _C.BOLD)}:  {result.duration_seconds:.1f}s")
    if result.error:
        print(f"  {_color('Error', _C.RED)}:     {result.error}")

    rows: list[list[str]] = []
    for job in result.jobs.values():
        for instance in job.instances:
            failed = [s.name for s in instance.steps if s.conclusion == "failure"]
            rows.append([
                instance.name,
                _status_color(instance.result),
                str(len(instance.steps)),
                failed[0] if failed else "",
            ])
    if rows:
        print()
        print(_table(["JOB", "RESULT", "STEPS", "FAILED STEP"], rows))

    if result.outputs:
        print()
        print(_color("  Outputs:", _C.BOLD))
        print(json.dumps(result.outputs, indent=2, default=str))
    print()


async def _run(args: argparse.Namespace) -> int:
    from gantry.engine.dag import WorkflowValidationError
    from gantry.engine.scheduler import WorkflowRun
    from gantry.engine.triggers import Event, TriggerError
    from gantry.models.db import init_db

    workflow = _load_workflow(args.workflow)
    ref = args.ref
    if not ref.startswith("refs/"):
        ref = f"refs/heads/{ref}"
    event = Event(
        name=args.event,
        ref=ref,
        sha=args.sha,
        actor=args.actor,
        changed_paths=args.changed_path,
        inputs=_parse_input_pairs(args.input),
        base_ref=args.base_ref,
        action=args.action,
    )
    if not args.no_history:
        await init_db()

    run = WorkflowRun(
        workflow,
        event,
        workspace=args.workspace,
        secrets=_parse_secret_pairs(args.secret),
        vars=_parse_input_pairs(args.var),
        record_history=not args.no_history,
    )
    try:
        result = await run.execute()
    except (WorkflowValidationError, TriggerError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _print_run_result(result)
    return 0 if result.status in ("success", "skipped") else 1


def _cmd_run(args: argparse.Namespace) -> None:
    """Run a workflow locally."""
    sys.exit(asyncio.run(_run(args)))


def _cmd_validate(args: argparse.Namespace) -> None:
    """Validate one or more workflow files."""
    from gantry.engine.dag import validate

    failed = False
    for path in args.workflows:
        workflow = _load_workflow(path)
        errors = validate(workflow)
        if errors:
            failed = True
            print(f"{_color('INVALID', _C.RED)}  {path}")
            for err in errors:
                print(f"  - {err}")
        else:
            print(f"{_color('OK', _C.GREEN)}       {path} ({len(workflow.jobs)} jobs)")
    sys.exit(1 if failed else 0)


def _cmd_plan(args: argparse.Namespace) -> None:
    """Print execution stages and static matrix expansion."""
    from gantry.engine.dag import WorkflowValidationError, build_plan, ensure_valid
    from gantry.engine.expressions import contains_expression
    from gantry.engine.matrix import MatrixError, expand, instance_name

    workflow = _load_workflow(args.workflow)
    try:
        ensure_valid(workflow)
    except WorkflowValidationError as exc:
        for err in exc.errors:
            print(f"Error: {err}", file=sys.stderr)
        sys.exit(1)

    plan = build_plan(workflow)
    print(_color(f"Workflow: {workflow.name}", _C.BOLD))
    for number, stage in enumerate(plan.stages, 1):
        print(f"\nStage {number}:")
        for job_id in stage:
            job = workflow.jobs[job_id]
            if job.uses:
                print(f"  {job_id}  -> {job.uses}")
                continue
            if job.strategy is not None and contains_expression(job.strategy.matrix):
                print(f"  {job_id}  (matrix resolved at run time)")
                continue
            try:
                combos = expand(job.strategy)
            except MatrixError as exc:
                print(f"  {job_id}  {_color(f'matrix error: {exc}', _C.RED)}")
                continue
            for combo in combos:
                print(f"  {instance_name(job_id, combo)}")


async def _cache(args: argparse.Namespace) -> None:
    from gantry.engine.cache import CacheStore
    from gantry.engine.storage import create_storage

    store = CacheStore(create_storage())
    if args.cache_action == "prune":
        evicted = await store.evict_stale()
        print(f"Evicted {len(evicted)} stale cache entr{'y' if len(evicted) == 1 else 'ies'}")
        return
    if args.cache_action == "rm":
        count = await store.delete(args.key, args.scope)
        print(f"Deleted {count} cache entr{'y' if count == 1 else 'ies'}")
        return

    entries = sorted(await store.entries(), key=lambda e: e.last_accessed_at, reverse=True)
    from datetime import datetime, timezone

    rows = [
        [
            e.key,
            e.scope,
            _fmt_size(e.size),
            _fmt_time(datetime.fromtimestamp(e.last_accessed_at, tz=timezone.utc)),
        ]
        for e in entries
    ]
    print(_table(["KEY", "SCOPE", "SIZE", "LAST USED"], rows))
    total = sum(e.size for e in entries)
    print(f"\n{len(entries)} entries, {_fmt_size(total)} of {_fmt_size(store.quota_bytes)}")


def _cmd_cache(args: argparse.Namespace) -> None:
    """Inspect or prune the dependency cache."""
    if args.cache_action is None:
        print("Usage: gantry cache {ls,prune,rm}", file=sys.stderr)
        sys.exit(1)
    asyncio.run(_cache(args))


async def _artifacts(args: argparse.Namespace) -> None:
    from datetime import datetime, timezone

    from gantry.engine.artifacts import list_all, purge_expired
    from gantry.engine.storage import create_storage

    storage = create_storage()
    if args.artifacts_action == "purge":
        purged = await purge_expired(storage)
        print(f"Purged {len(purged)} expired artifact(s)")
        return

    infos = await list_all(storage)
    if args.run:
        infos = [i for i in infos if i.run_id == args.run]
    rows = [
        [
            i.run_id,
            i.name,
            str(len(i.files)),
            _fmt_size(i.size),
            _fmt_time(datetime.fromtimestamp(i.expires_at, tz=timezone.utc)),
        ]
        for i in infos
    ]
    print(_table(["RUN", "NAME", "FILES", "SIZE", "EXPIRES"], rows))


def _cmd_artifacts(args: argparse.Namespace) -> None:
    """List or purge stored artifacts."""
    if args.artifacts_action is None:
        print("Usage: gantry artifacts {ls,purge}", file=sys.stderr)
        sys.exit(1)
    asyncio.run(_artifacts(args))


async def _runs(args: argparse.Namespace) -> None:
    from gantry.models.db import init_db, list_runs

    await init_db()
    runs = await list_runs(limit=args.limit, workflow=args.workflow)
    rows = [
        [
            r.id,
            r.workflow_name,
            r.event,
            _status_color(r.status.value),
            str(len(r.jobs)),
            f"{r.duration_seconds:.1f}",
            _fmt_time(r.started_at),
        ]
        for r in runs
    ]
    print(_table(["RUN", "WORKFLOW", "EVENT", "STATUS", "JOBS", "DURATION (s)", "STARTED"], rows))


def _cmd_runs(args: argparse.Namespace) -> None:
    """Show run history."""
    if args.runs_action != "ls":
        print("Usage: gantry runs ls", file=sys.stderr)
        sys.exit(1)
    asyncio.run(_runs(args))


async def _serve_schedules(args: argparse.Namespace) -> None:
    from gantry.models.db import init_db
    from gantry.queue.scheduler import (
        list_schedules,
        register_workflows,
        start_scheduler,
        stop_scheduler,
    )

    from gantry.config import settings

    if settings.is_local_mode:
        print("Local mode: run history in SQLite under the data directory.")
    await init_db()
    registered = register_workflows(args.dir, args.workspace)
    if not registered:
        print("No scheduled workflows found.")
        return
    await start_scheduler()
    rows = [[s["id"].rsplit("::", 1)[-1], Path(s["id"].rsplit("::", 1)[0]).name,
             s["next_run_time"] or "-"] for s in list_schedules()]
    print(_table(["CRON", "WORKFLOW", "NEXT RUN"], rows))
    try:
        await asyncio.Event().wait()
    finally:
        await stop_scheduler()


def _cmd_schedule(args: argparse.Namespace) -> None:
    """Run scheduled workflows until interrupted."""
    from gantry.config import settings

    if not settings.scheduler_enabled:
        print("Scheduler is disabled (SCHEDULER_ENABLED=false)", file=sys.stderr)
        sys.exit(1)
    try:
        asyncio.run(_serve_schedules(args))
    except KeyboardInterrupt:
        print("\nScheduler stopped.")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build the full CLI argument parser."""
    from gantry import __version__

    parser = argparse.ArgumentParser(
        prog="gantry",
        description="Gantry - run CI workflow definitions locally",
    )
    parser.add_argument("--version", action="version", version=f"gantry {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run a workflow")
    p_run.add_argument("workflow", help="Path to the workflow .yml file")
    p_run.add_argument("--event", "-e", default="push",
                       help="Activating event (default: push)")
    p_run.add_argument("--ref", default="main",
                       help="Git ref or branch name (default: main)")
    p_run.add_argument("--sha", default="0" * 40, help="Commit SHA")
    p_run.add_argument("--actor", default=os.getenv("USER", "gantry"), help="Triggering user")
    p_run.add_argument("--base-ref", default=None, help="Base branch for pull_request events")
    p_run.add_argument("--action", default=None,
                       help="Activity type for pull_request events (default: opened)")
    p_run.add_argument("--input", "-i", action="append", metavar="KEY=VALUE",
                       help="workflow_dispatch input (repeatable)")
    p_run.add_argument("--secret", "-s", action="append", metavar="NAME[=VALUE]",
                       help="Secret value; bare NAME reads the environment (repeatable)")
    p_run.add_argument("--var", action="append", metavar="KEY=VALUE",
                       help="Configuration variable for the vars context (repeatable)")
    p_run.add_argument("--changed-path", action="append", metavar="PATH",
                       help="Changed file for path filters (repeatable)")
    p_run.add_argument("--workspace", "-w", default=".",
                       help="Workspace directory (default: current directory)")
    p_run.add_argument("--no-history", action="store_true",
                       help="Do not record the run in the history database")

    # --- validate ---
    p_validate = subparsers.add_parser("validate", help="Validate workflow files")
    p_validate.add_argument("workflows", nargs="+", help="Workflow files")

    # --- plan ---
    p_plan = subparsers.add_parser("plan", help="Show execution stages and matrix instances")
    p_plan.add_argument("workflow", help="Path to the workflow .yml file")

    # --- cache ---
    p_cache = subparsers.add_parser("cache", help="Manage the dependency cache")
    cache_sub = p_cache.add_subparsers(dest="cache_action", help="Cache action")
    cache_sub.add_parser("ls", help="List cache entries")
    cache_sub.add_parser("prune", help="Evict entries unused beyond the retention window")
    p_cache_rm = cache_sub.add_parser("rm", help="Delete a cache entry")
    p_cache_rm.add_argument("key", help="Exact cache key")
    p_cache_rm.add_argument("--scope", default=None, help="Only delete in this ref scope")

    # --- artifacts ---
    p_art = subparsers.add_parser("artifacts", help="Manage stored artifacts")
    art_sub = p_art.add_subparsers(dest="artifacts_action", help="Artifacts action")
    p_art_ls = art_sub.add_parser("ls", help="List artifacts")
    p_art_ls.add_argument("--run", default=None, help="Only artifacts of this run")
    art_sub.add_parser("purge", help="Delete expired artifacts")

    # --- runs ---
    p_runs = subparsers.add_parser("runs", help="Run history")
    runs_sub = p_runs.add_subparsers(dest="runs_action", help="Runs action")
    p_runs_ls = runs_sub.add_parser("ls", help="List recent runs")
    p_runs_ls.add_argument("--limit", "-n", type=int, default=20,
                           help="Max number of results (default: 20)")
    p_runs_ls.add_argument("--workflow", default=None, help="Filter by workflow name")

    # --- schedule ---
    p_sched = subparsers.add_parser("schedule", help="Run scheduled workflows (cron)")
    p_sched.add_argument("--dir", default=None,
                         help="Workflows directory (default: WORKFLOWS_DIR setting)")
    p_sched.add_argument("--workspace", default=".", help="Workspace directory")

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """Route CLI commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    _configure_logging(args.verbose)

    dispatch: dict[str, Any] = {
        "run": _cmd_run,
        "validate": _cmd_validate,
        "plan": _cmd_plan,
        "cache": _cmd_cache,
        "artifacts": _cmd_artifacts,
        "runs": _cmd_runs,
        "schedule": _cmd_schedule,
    }
    dispatch[args.command](args)


if __name__ == "__main__":
    main()
