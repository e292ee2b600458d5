"""HTTP API and live event stream."""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from cronrunner.config import Settings
from cronrunner.errors import (
    AuthError,
    ConfigError,
    JobRunningError,
    RunNotFoundError,
    RunnerError,
)
from cronrunner.events import RunEventStream, format_sse
from cronrunner.jobs import ADHOC_JOB_NAME, JobStore
from cronrunner.logs import read_log
from cronrunner.runner import Launcher, kill_job, spawn_runner
from cronrunner.schedule import LaunchdRegistry, sync_schedules
from cronrunner.state import RunRecord, RunStore

logger = logging.getLogger(__name__)

DASHBOARD_DIR = "web/dist"


class ErrorResponse(BaseModel):
    """Error envelope: {error_code, message, retryable}."""

    error_code: str
    message: str
    retryable: bool = False


class CreateJobRequest(BaseModel):
    name: str = Field(min_length=1)
    yaml: str = Field(min_length=1)


class UpdateJobRequest(BaseModel):
    yaml: str = Field(min_length=1)


class AdhocRequest(BaseModel):
    prompt: str = Field(min_length=1)


class DeleteBatchRequest(BaseModel):
    runIds: List[str] = Field(min_length=1)


def _error_response(status_code: int, code: str, message: str, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=code, message=message, retryable=retryable).model_dump(),
    )


async def runner_error_handler(request: Request, exc: RunnerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.retryable)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", []) if part != "body")
        issues.append(f"{location}: {error.get('msg', 'invalid')}" if location else error.get("msg", "invalid"))
    return _error_response(status.HTTP_400_BAD_REQUEST, ConfigError.code, "; ".join(issues) or "Invalid request")


def require_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
) -> None:
    """Bearer header or `?token=` (EventSource cannot set headers)."""
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return
    supplied = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            supplied = value.strip()
    if not supplied:
        supplied = token
    if not supplied or not hmac.compare_digest(supplied, settings.auth_token):
        raise AuthError("Unauthorized")


def _last_run_summary(record: Optional[RunRecord]) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    return {
        "runId": record.run_id,
        "status": record.derived_status,
        "startedAt": record.started_at,
        "completedAt": record.completed_at,
    }


def create_app(
    settings: Settings,
    launcher: Optional[Launcher] = None,
    registry: Optional[LaunchdRegistry] = None,
) -> FastAPI:
    registry = registry or LaunchdRegistry(settings)
    store = RunStore(settings.state_file, settings.max_runs)
    jobs = JobStore(settings)
    jobs.on_change = lambda: sync_schedules(settings, jobs, registry)

    app = FastAPI(title="cronrunner", version="0.1.0")
    app.state.settings = settings
    app.state.store = store
    app.state.jobs = jobs
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RunnerError, runner_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    protected = [Depends(require_token)]
    jobs_router = APIRouter(prefix="/api/jobs", tags=["jobs"], dependencies=protected)
    runs_router = APIRouter(prefix="/api/runs", tags=["runs"], dependencies=protected)
    misc_router = APIRouter(prefix="/api", dependencies=protected)

    # -- jobs --------------------------------------------------------------

    def job_summary(name: str, runs: List[RunRecord]) -> Dict[str, Any]:
        try:
            info = jobs.info(name)
        except ConfigError as exc:
            info = {
                "name": name,
                "schedule": None,
                "scheduleHuman": None,
                "workdir": None,
                "enabled": False,
                "isRunning": jobs.is_running(name),
                "error": exc.message,
            }
        last = next((run for run in reversed(runs) if run.job_name == name), None)
        info["lastRun"] = _last_run_summary(last)
        return info

    @jobs_router.get("")
    def list_jobs() -> Dict[str, Any]:
        runs = store.list_runs()
        return {"jobs": [job_summary(name, runs) for name in jobs.names()]}

    @jobs_router.get("/{name}")
    def get_job(name: str) -> Dict[str, Any]:
        text = jobs.get_yaml(name)
        info = job_summary(name, store.list_runs())
        info["yaml"] = text
        return info

    @jobs_router.post("", status_code=status.HTTP_201_CREATED)
    def create_job(body: CreateJobRequest) -> Dict[str, Any]:
        jobs.create(body.name, body.yaml)
        return {"name": body.name, "status": "created"}

    @jobs_router.put("/{name}")
    def update_job(name: str, body: UpdateJobRequest) -> Dict[str, Any]:
        jobs.update(name, body.yaml)
        return {"name": name, "status": "updated"}

    @jobs_router.patch("/{name}/toggle")
    def toggle_job(name: str) -> Dict[str, Any]:
        enabled = jobs.toggle(name)
        return {"name": name, "enabled": enabled}

    @jobs_router.delete("/{name}")
    def delete_job(name: str) -> Dict[str, Any]:
        jobs.delete(name)
        return {"name": name, "status": "deleted"}

    # -- runs --------------------------------------------------------------

    @runs_router.get("")
    def list_runs(
        limit: int = Query(30, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        status_filter: Optional[str] = Query(None, alias="status"),
    ) -> Dict[str, Any]:
        runs, total = store.query(status=status_filter, limit=limit, offset=offset)
        return {"runs": [run.to_payload() for run in runs], "total": total}

    @runs_router.get("/log/{run_id}")
    def get_run_log(run_id: str) -> Dict[str, Any]:
        run = store.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        payload = run.to_payload()
        payload["status"] = run.derived_status
        payload["content"] = read_log(run.log_file) if run.log_file else ""
        return payload

    @runs_router.post("/trigger/{job_name}")
    def trigger_job(job_name: str) -> Dict[str, Any]:
        jobs.get(job_name)
        if jobs.is_running(job_name):
            raise JobRunningError(f"Job {job_name} is already running.")
        run_id = spawn_runner(settings, job_name=job_name, launcher=launcher)
        return {"runId": run_id, "jobName": job_name, "status": "started"}

    @runs_router.post("/adhoc")
    def trigger_adhoc(body: AdhocRequest) -> Dict[str, Any]:
        if jobs.is_running(ADHOC_JOB_NAME):
            raise JobRunningError("An ad-hoc run is already in progress.")
        run_id = spawn_runner(settings, prompt=body.prompt, launcher=launcher)
        return {"runId": run_id, "jobName": ADHOC_JOB_NAME, "status": "started"}

    @runs_router.post("/kill/{job_name}")
    def kill_run(job_name: str) -> Dict[str, Any]:
        kill_job(settings, store, job_name)
        return {"jobName": job_name, "status": "killed"}

    @runs_router.post("/delete-batch")
    def delete_batch(body: DeleteBatchRequest) -> Dict[str, Any]:
        return {"deleted": store.delete_many(body.runIds)}

    @runs_router.delete("/{run_id}")
    def delete_run(run_id: str) -> Dict[str, Any]:
        run = store.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if run.is_running:
            raise JobRunningError("Cannot delete a running job. Kill it first.")
        store.delete(run_id)
        return {"runId": run_id, "status": "deleted"}

    @runs_router.delete("")
    def clear_runs(status_filter: Optional[str] = Query(None, alias="status")) -> Dict[str, Any]:
        return {"deleted": store.clear(status_filter)}

    # -- events and schedule -----------------------------------------------

    @misc_router.get("/events")
    async def events(request: Request) -> StreamingResponse:
        stream = RunEventStream(store)
        interval = settings.stream_interval_seconds

        async def generate() -> AsyncIterator[str]:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    batch = await asyncio.to_thread(stream.poll)
                except Exception as exc:
                    logger.warning("Event stream stopped: %s", exc)
                    break
                for event in batch:
                    yield format_sse(event)
                await asyncio.sleep(interval)

        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @misc_router.post("/schedule/sync")
    def schedule_sync() -> Dict[str, Any]:
        report = sync_schedules(settings, jobs, registry)
        return {
            "status": "synced",
            "installed": report.active,
            "removed": report.removed,
            "skipped": report.skipped,
        }

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return {"ok": True}

    app.include_router(jobs_router)
    app.include_router(runs_router)
    app.include_router(misc_router)

    dashboard = settings.home / DASHBOARD_DIR
    if dashboard.is_dir():
        app.mount("/", StaticFiles(directory=str(dashboard), html=True), name="dashboard")

    return app
