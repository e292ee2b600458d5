"""
Run lifecycle.

The trigger path (`spawn_runner`) computes a run id and starts a detached
`python -m cronrunner run ...` process in its own session. That process runs
`run_job`: it takes the job's lock, records the run, executes the command
with retries and records the outcome; each attempt runs in its own process
group. `kill_job` signals the runner's process group, named by the lock, and
reconciles any run still marked running.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cronrunner.config import Settings
from cronrunner.errors import JobRunningError, RunNotFoundError
from cronrunner.jobs import ADHOC_JOB_NAME, JobDefinition, JobStore, adhoc_definition, validate_job_name
from cronrunner.locks import JobLock, ProcessGroupHandle
from cronrunner.notify import Notifier, RunOutcome
from cronrunner.state import (
    KILLED_EXIT_CODE,
    STATUS_KILLED,
    STATUS_RUNNING,
    RunRecord,
    RunStore,
)

logger = logging.getLogger(__name__)
UTC = timezone.utc

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 2
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILED_EXIT_CODE = 127
TERMINATE_GRACE_SECONDS = 5
RUN_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
RUN_LOG_DATEFMT = "%Y-%m-%dT%H:%M:%SZ"
HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)

Launcher = Callable[[List[str], Path], Any]


class RunTerminated(BaseException):
    """Raised inside the runner when it receives a termination signal."""

    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum


@dataclass
class RunResult:
    run_id: str
    job_name: str
    exit_code: int
    attempts: int
    status: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is None and self.exit_code == 0


@dataclass
class KillResult:
    job_name: str
    signalled: bool
    had_lock: bool
    killed_runs: List[str] = field(default_factory=list)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_run_id(job_name: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{job_name}-{now.strftime('%Y%m%d-%H%M%S')}-{now.microsecond // 1000:03d}"


def build_command(settings: Settings, prompt: str) -> List[str]:
    return [arg.replace("{prompt}", prompt) for arg in settings.command]


def build_env(
    settings: Settings,
    definition: JobDefinition,
    base: Optional[Dict[str, str]] = None,
) -> Tuple[Dict[str, str], List[str]]:
    """Process env plus each declared `env` entry that resolves in the config."""
    env = dict(os.environ if base is None else base)
    exported: List[str] = []
    for env_name, config_key in definition.env.items():
        value = settings.lookup(config_key)
        if value is None:
            continue
        env[env_name] = value
        exported.append(env_name)
    return env, exported


# -- trigger path -----------------------------------------------------------


def runner_argv(
    settings: Settings,
    run_id: str,
    job_name: Optional[str] = None,
    prompt: Optional[str] = None,
) -> List[str]:
    argv = [settings.python, "-m", "cronrunner", "--home", str(settings.home), "run"]
    if prompt is not None:
        argv.extend(["--prompt", prompt])
    else:
        argv.append(str(job_name))
    argv.extend(["--run-id", run_id])
    return argv


def _launch_detached(argv: List[str], cwd: Path) -> subprocess.Popen:
    return subprocess.Popen(
        argv,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )


def spawn_runner(
    settings: Settings,
    job_name: Optional[str] = None,
    prompt: Optional[str] = None,
    launcher: Optional[Launcher] = None,
) -> str:
    """Start a detached runner process and return its run id without waiting."""
    if (job_name is None) == (prompt is None):
        raise ValueError("spawn_runner needs exactly one of job_name or prompt")
    name = job_name if job_name is not None else ADHOC_JOB_NAME
    run_id = make_run_id(name)
    argv = runner_argv(settings, run_id, job_name=job_name, prompt=prompt)
    (launcher or _launch_detached)(argv, settings.home)
    logger.info("[%s] Spawned runner for %s", run_id, name)
    return run_id


# -- attempt sequence -------------------------------------------------------


@contextmanager
def _run_log(run_id: str, log_path: Path) -> Iterator[logging.Logger]:
    run_logger = logging.getLogger(f"{__name__}.{run_id}")
    run_logger.setLevel(logging.INFO)
    run_logger.propagate = False
    handler = logging.FileHandler(log_path, encoding="utf-8")
    formatter = logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT)
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)
    run_logger.addHandler(handler)
    try:
        yield run_logger
    finally:
        run_logger.removeHandler(handler)
        handler.close()


@contextmanager
def _termination_signals(enabled: bool) -> Iterator[None]:
    if not enabled or threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, _frame: Any) -> None:
        raise RunTerminated(signum)

    previous = {sig: signal.signal(sig, handler) for sig in HANDLED_SIGNALS}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _stop_attempt_group(proc: subprocess.Popen, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    """SIGTERM the attempt's process group, then SIGKILL whatever is left after `grace`."""
    group = ProcessGroupHandle(proc.pid)
    if grace > 0:
        group.terminate(signal.SIGTERM)
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            pass
    # Descendants can outlive the group leader.
    group.terminate(signal.SIGKILL)
    proc.wait()


def run_attempt(
    argv: List[str],
    workdir: Path,
    env: Dict[str, str],
    log_path: Path,
    timeout: Optional[int],
) -> int:
    with log_path.open("ab") as log_handle:
        try:
            # Own group per attempt, so a timeout or kill reaches every descendant.
            proc = subprocess.Popen(
                argv,
                cwd=str(workdir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            log_handle.write(f"Failed to start {argv[0]}: {exc}\n".encode("utf-8"))
            return SPAWN_FAILED_EXIT_CODE
        try:
            code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _stop_attempt_group(proc)
            return TIMEOUT_EXIT_CODE
        except BaseException:
            _stop_attempt_group(proc, grace=0)
            raise
    # Shell convention for children that died from a signal.
    return 128 - code if code < 0 else code


def run_job(
    settings: Settings,
    job_name: Optional[str] = None,
    prompt: Optional[str] = None,
    run_id: Optional[str] = None,
    scheduled: bool = False,
    store: Optional[RunStore] = None,
    notifier: Optional[Notifier] = None,
    sleep: Callable[[float], Any] = time.sleep,
    handle_signals: bool = True,
) -> Optional[RunResult]:
    """
    Run one attempt sequence to completion.

    Returns None when a scheduled trigger hits a paused job. Raises
    JobRunningError when another sequence holds the job's lock.
    """
    if prompt is not None:
        definition = adhoc_definition(settings, prompt)
    else:
        definition = JobStore(settings).get(str(job_name))

    if scheduled and not definition.enabled:
        logger.warning("Job %s is paused (enabled: false). Skipping scheduled run.", definition.name)
        return None

    settings.ensure_dirs()
    store = store or RunStore(settings.state_file, settings.max_runs)
    notifier = notifier or Notifier(settings)
    run_id = run_id or make_run_id(definition.name)
    name = definition.name

    lock = JobLock(settings.lock_dir, name)
    log_path = settings.log_dir / f"{run_id}.log"
    max_attempts = definition.retries + 1
    attempt = 0
    exit_code = EXIT_ERROR
    # Handlers are installed before the lock is taken so a signal cannot strand it.
    with _termination_signals(handle_signals):
        try:
            if not lock.acquire():
                logger.warning("Job %s is already running (lock %s exists).", name, lock.path)
                raise JobRunningError(f"Job {name} is already running.")
            with _run_log(run_id, log_path) as run_log:
                store.append(
                    RunRecord(
                        run_id=run_id,
                        job_name=name,
                        started_at=format_timestamp(utc_now()),
                        log_file=str(log_path),
                        status=STATUS_RUNNING,
                    )
                )
                try:
                    env, exported = build_env(settings, definition)
                    for env_name in exported:
                        run_log.info("Exported env var: %s", env_name)
                    argv = build_command(settings, definition.prompt)
                    workdir = definition.workdir or settings.default_workdir

                    run_log.info("Starting job %s (run: %s)", name, run_id)
                    run_log.info("Workdir: %s", workdir)
                    while attempt < max_attempts:
                        attempt += 1
                        run_log.info("Attempt %s/%s", attempt, max_attempts)
                        exit_code = run_attempt(argv, workdir, env, log_path, definition.timeout)
                        if exit_code == TIMEOUT_EXIT_CODE:
                            run_log.error("Attempt %s timed out after %ss", attempt, definition.timeout)
                        run_log.info("Command finished (exit %s)", exit_code)
                        if exit_code == 0:
                            run_log.info("Job %s completed successfully", name)
                            break
                        run_log.error("Job %s failed with exit code %s", name, exit_code)
                        if attempt < max_attempts:
                            run_log.info("Retrying in %s seconds...", settings.retry_delay_seconds)
                            if settings.retry_delay_seconds > 0:
                                sleep(settings.retry_delay_seconds)
                except RunTerminated as exc:
                    run_log.warning("Received signal %s; marking run killed", exc.signum)
                    store.update(
                        run_id,
                        status=STATUS_KILLED,
                        exit_code=KILLED_EXIT_CODE,
                        completed_at=format_timestamp(utc_now()),
                        attempts=max(attempt, 1),
                    )
                    return RunResult(run_id, name, KILLED_EXIT_CODE, max(attempt, 1), STATUS_KILLED)

                store.update(
                    run_id,
                    completed_at=format_timestamp(utc_now()),
                    exit_code=exit_code,
                    attempts=attempt,
                    status=None,
                )
                if definition.notify:
                    notifier.send(
                        RunOutcome(
                            job_name=name,
                            run_id=run_id,
                            exit_code=exit_code,
                            attempts=attempt,
                            max_attempts=max_attempts,
                            log_file=str(log_path),
                        )
                    )
                run_log.info("Done (exit code: %s)", exit_code)
        finally:
            lock.release()

    logger.info("[%s] Job %s finished with exit code %s after %s attempt(s)", run_id, name, exit_code, attempt)
    return RunResult(run_id, name, exit_code, attempt)


# -- kill -------------------------------------------------------------------


def kill_job(settings: Settings, store: RunStore, job_name: str) -> KillResult:
    validate_job_name(job_name)
    lock = JobLock(settings.lock_dir, job_name)
    had_lock = lock.exists()
    signalled = False
    handle = lock.handle()
    # Never signal our own group; a pgid file can be stale or hand-written.
    if handle is not None and handle.pgid != os.getpgrp():
        signalled = handle.terminate()
    if had_lock or lock.pid_file.exists():
        lock.remove()

    result = KillResult(job_name=job_name, signalled=signalled, had_lock=had_lock)
    result.killed_runs = store.mark_killed(job_name, format_timestamp(utc_now()))

    if not had_lock and not result.killed_runs:
        raise RunNotFoundError(f"No running process found for {job_name}")
    logger.info(
        "Killed %s (signalled=%s, runs marked killed: %s)",
        job_name,
        signalled,
        ", ".join(result.killed_runs) or "none",
    )
    return result
