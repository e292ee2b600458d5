"""
cronrunner command line.

`run` is the entry point the scheduler and the API spawn; the remaining
commands inspect and manage jobs, runs and schedules from a terminal.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from cronrunner.config import Settings, load_settings
from cronrunner.cron import compile_calendar, describe_cron, expand_cron, next_fire_times
from cronrunner.errors import JobNotFoundError, JobRunningError, RunnerError
from cronrunner.jobs import JOB_NAME_RE, JobStore
from cronrunner.runner import EXIT_ERROR, EXIT_LOCKED, EXIT_OK, RunTerminated, kill_job, run_job
from cronrunner.schedule import sync_schedules
from cronrunner.state import RunStore

LOG_FILE = "cronrunner.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_RUNS_LIMIT = 20

logger = logging.getLogger("cronrunner")


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file is not None and not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def _become_group_leader() -> None:
    # kill signals the pgid recorded in the lock, which must cover this process and its children.
    if os.getpgrp() == os.getpid():
        return
    try:
        os.setpgid(0, 0)
    except OSError as exc:
        logger.debug("Could not start a new process group: %s", exc)


def command_run(
    settings: Settings,
    job_name: Optional[str],
    prompt: Optional[str],
    run_id: Optional[str],
    scheduled: bool,
) -> int:
    _become_group_leader()
    result = run_job(settings, job_name=job_name, prompt=prompt, run_id=run_id, scheduled=scheduled)
    if result is None:
        return EXIT_OK
    return EXIT_OK if result.success else EXIT_ERROR


def command_kill(settings: Settings, job_name: str) -> int:
    store = RunStore(settings.state_file, settings.max_runs)
    result = kill_job(settings, store, job_name)
    print(f"Killed {job_name} (signalled={result.signalled})")
    for run_id in result.killed_runs:
        print(f"- {run_id}: killed")
    return EXIT_OK


def command_sync(settings: Settings) -> int:
    report = sync_schedules(settings)
    for name in report.installed:
        print(f"  {name}: installed")
    for name in report.unchanged:
        print(f"  {name}: unchanged")
    for name in report.removed:
        print(f"  {name}: removed")
    for name, message in sorted(report.skipped.items()):
        print(f"  {name}: skipped ({message})")
    if not report.active:
        print("No jobs with schedules found.")
    else:
        print(f"Active schedules: {len(report.active)}")
    return EXIT_OK


def command_serve(settings: Settings, host: Optional[str], port: Optional[int]) -> int:
    import uvicorn

    from cronrunner.api import create_app

    settings.ensure_dirs()
    bind_host = host or settings.server_host
    bind_port = port or settings.server_port
    if not settings.auth_enabled:
        logger.warning("auth_token is empty or a placeholder; the API accepts unauthenticated requests.")
    logger.info("cronrunner server listening on http://%s:%s", bind_host, bind_port)
    uvicorn.run(create_app(settings), host=bind_host, port=bind_port, log_level="info")
    return EXIT_OK


def command_jobs(settings: Settings) -> int:
    jobs = JobStore(settings)
    names = jobs.names()
    if not names:
        print("No jobs defined.")
        return EXIT_OK
    for name in names:
        try:
            definition = jobs.get(name)
        except RunnerError as exc:
            print(f"- {name}: INVALID ({exc.message})")
            continue
        schedule = describe_cron(definition.schedule) if definition.schedule else "manual"
        flags = []
        if not definition.enabled:
            flags.append("paused")
        if jobs.is_running(name):
            flags.append("running")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"- {name}: {schedule}{suffix}")
    return EXIT_OK


def command_runs(settings: Settings, status: Optional[str], limit: int) -> int:
    store = RunStore(settings.state_file, settings.max_runs)
    runs, total = store.query(status=status, limit=limit)
    print(f"Showing {len(runs)} of {total} run(s)")
    for run in runs:
        attempts = f" attempts={run.attempts}" if run.attempts is not None else ""
        exit_code = f" exit={run.exit_code}" if run.exit_code is not None else ""
        print(f"- {run.run_id} {run.derived_status} started={run.started_at}{exit_code}{attempts}")
    return EXIT_OK


def command_compile(expr: str) -> int:
    instants = expand_cron(expr)
    print(f"{describe_cron(expr)}: {len(instants)} instant(s)")
    print(json.dumps(compile_calendar(expr), indent=2))
    return EXIT_OK


def command_preview(settings: Settings, target: str, count: int) -> int:
    expr = target
    if JOB_NAME_RE.match(target):
        jobs = JobStore(settings)
        try:
            definition = jobs.get(target)
        except JobNotFoundError:
            raise JobNotFoundError(f"Unknown job or cron expression: {target}") from None
        if not definition.schedule:
            print(f"Job: {definition.name} (manual trigger only)")
            return EXIT_OK
        print(f"Job: {definition.name} (enabled={definition.enabled})")
        expr = definition.schedule
    print(f"Schedule: {expr} ({describe_cron(expr)})")
    print(f"Next {count} run(s):")
    for fire_time in next_fire_times(expr, count):
        print(f"- {fire_time.isoformat()}")
    return EXIT_OK


def command_validate(settings: Settings) -> int:
    definitions, errors = JobStore(settings).load_all()
    print(f"Config home: {settings.home}")
    print(f"Valid jobs: {len(definitions)}")
    for definition in definitions:
        schedule = definition.schedule or "manual"
        print(f"- {definition.name}: {schedule}" + ("" if definition.enabled else " (paused)"))
    for name, message in sorted(errors.items()):
        print(f"- {name}: INVALID {message}")
    return EXIT_ERROR if errors else EXIT_OK


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cronrunner job scheduler and runner")
    parser.add_argument("--home", type=Path, help="Directory holding config.yaml and jobs/ (default: $CRONRUNNER_HOME or cwd)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a job or an ad-hoc prompt once")
    run_parser.add_argument("job", nargs="?", help="Job name")
    run_parser.add_argument("--prompt", help="Run an ad-hoc prompt instead of a job")
    run_parser.add_argument("--run-id", help="Run id chosen by the trigger")
    run_parser.add_argument("--scheduled", action="store_true", help="Triggered by the schedule; paused jobs are skipped")

    kill_parser = subparsers.add_parser("kill", help="Kill a running job")
    kill_parser.add_argument("job", help="Job name")

    subparsers.add_parser("sync", help="Install schedules for enabled jobs")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", help="Bind host (default: server_host)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: server_port)")

    subparsers.add_parser("jobs", help="List jobs")

    runs_parser = subparsers.add_parser("runs", help="List recent runs")
    runs_parser.add_argument("--status", help="Filter by status (success, failed, running, killed)")
    runs_parser.add_argument("--limit", type=int, default=DEFAULT_RUNS_LIMIT, help="Number of runs to show")

    compile_parser = subparsers.add_parser("compile", help="Show the calendar instants of a cron expression")
    compile_parser.add_argument("expr", help='Cron expression, e.g. "0 9 * * 1-5"')

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("target", help="Job name or cron expression")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    subparsers.add_parser("validate", help="Validate every job definition")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        if args.command == "compile":
            return command_compile(args.expr)

        settings = load_settings(args.home)
        if args.command in {"run", "serve", "kill"}:
            settings.ensure_dirs()
            setup_logging(settings.state_dir / LOG_FILE, verbose=args.verbose)

        if args.command == "run":
            if bool(args.job) == bool(args.prompt):
                raise RunnerError("run needs exactly one of <job> or --prompt")
            return command_run(settings, args.job, args.prompt, args.run_id, args.scheduled)
        if args.command == "kill":
            return command_kill(settings, args.job)
        if args.command == "sync":
            return command_sync(settings)
        if args.command == "serve":
            return command_serve(settings, args.host, args.port)
        if args.command == "jobs":
            return command_jobs(settings)
        if args.command == "runs":
            if args.limit <= 0:
                raise RunnerError("--limit must be >= 1")
            return command_runs(settings, args.status, args.limit)
        if args.command == "preview":
            if args.count <= 0:
                raise RunnerError("--count must be >= 1")
            return command_preview(settings, args.target, args.count)
        if args.command == "validate":
            return command_validate(settings)
        raise RunnerError(f"Unsupported command: {args.command}")
    except JobRunningError as exc:
        logger.warning(exc.message)
        return EXIT_LOCKED
    except RunnerError as exc:
        logger.error(exc.message)
        return EXIT_ERROR
    except RunTerminated as exc:
        return 128 + exc.signum
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
