"""
Run state store.

A JSON array of run records in insertion (chronological) order, capped at the
newest `max_entries`. Every mutation takes an exclusive lock on a sidecar
file, reads the whole collection, modifies it and atomically replaces the
file, so readers never see a torn write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_KILLED = "killed"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
KILLED_EXIT_CODE = 137
DEFAULT_MAX_ENTRIES = 100

FIELD_NAMES = {
    "run_id": "runId",
    "job_name": "jobName",
    "started_at": "startedAt",
    "completed_at": "completedAt",
    "exit_code": "exitCode",
    "attempts": "attempts",
    "status": "status",
    "log_file": "logFile",
}


@dataclass
class RunRecord:
    run_id: str
    job_name: str
    started_at: str
    log_file: str
    completed_at: Optional[str] = None
    exit_code: Optional[int] = None
    attempts: Optional[int] = None
    status: Optional[str] = None

    @property
    def derived_status(self) -> str:
        if self.status:
            return self.status
        return STATUS_SUCCESS if self.exit_code == 0 else STATUS_FAILED

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "runId": self.run_id,
            "jobName": self.job_name,
            "startedAt": self.started_at,
        }
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        if self.exit_code is not None:
            payload["exitCode"] = self.exit_code
        if self.attempts is not None:
            payload["attempts"] = self.attempts
        if self.status is not None:
            payload["status"] = self.status
        payload["logFile"] = self.log_file
        return payload

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "RunRecord":
        return RunRecord(
            run_id=str(payload.get("runId", "")),
            job_name=str(payload.get("jobName", "")),
            started_at=str(payload.get("startedAt", "")),
            log_file=str(payload.get("logFile", "")),
            completed_at=payload.get("completedAt"),
            exit_code=payload.get("exitCode"),
            attempts=payload.get("attempts"),
            status=payload.get("status"),
        )


def _remove_log(record: RunRecord) -> None:
    if not record.log_file:
        return
    try:
        Path(record.log_file).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to delete log %s for run %s: %s", record.log_file, record.run_id, exc)


class RunStore:
    def __init__(self, state_file: Path, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.state_file = Path(state_file)
        self.lock_file = self.state_file.with_name(self.state_file.name + ".lock")
        self.max_entries = max_entries

    # -- reads -------------------------------------------------------------

    def _read(self) -> List[RunRecord]:
        try:
            payload = json.loads(self.state_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.state_file, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Ignoring state file %s: top level is not a list", self.state_file)
            return []
        return [RunRecord.from_payload(item) for item in payload if isinstance(item, dict)]

    def list_runs(self) -> List[RunRecord]:
        return self._read()

    def get(self, run_id: str) -> Optional[RunRecord]:
        return next((record for record in self._read() if record.run_id == run_id), None)

    def running_for(self, job_name: str) -> List[RunRecord]:
        return [r for r in self._read() if r.job_name == job_name and r.is_running]

    def last_run_for(self, job_name: str) -> Optional[RunRecord]:
        for record in reversed(self._read()):
            if record.job_name == job_name:
                return record
        return None

    def query(
        self,
        status: Optional[str] = None,
        limit: int = 30,
        offset: int = 0,
    ) -> Tuple[List[RunRecord], int]:
        """Newest first, optionally filtered by derived status."""
        runs = list(reversed(self._read()))
        if status:
            runs = [r for r in runs if _matches_status(r, status)]
        total = len(runs)
        return runs[offset : offset + limit], total

    # -- writes ------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _write(self, records: List[RunRecord]) -> None:
        payload = [record.to_payload() for record in records]
        fd, tmp_name = tempfile.mkstemp(
            prefix=self.state_file.name + ".", suffix=".tmp", dir=str(self.state_file.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.state_file)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _mutate(self, change: Callable[[List[RunRecord]], Tuple[List[RunRecord], Any]]) -> Any:
        with self._exclusive():
            records, result = change(self._read())
            self._write(records)
            return result

    def append(self, record: RunRecord) -> RunRecord:
        def change(records: List[RunRecord]) -> Tuple[List[RunRecord], RunRecord]:
            records.append(record)
            if len(records) > self.max_entries:
                records = records[-self.max_entries :]
            return records, record

        return self._mutate(change)

    def update(self, run_id: str, **fields: Any) -> Optional[RunRecord]:
        """Merge fields into a record; a None value removes that field."""
        unknown = set(fields) - set(FIELD_NAMES)
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")

        def change(records: List[RunRecord]) -> Tuple[List[RunRecord], Optional[RunRecord]]:
            for record in records:
                if record.run_id == run_id:
                    for name, value in fields.items():
                        setattr(record, name, value)
                    return records, record
            return records, None

        with self._exclusive():
            records = self._read()
            records, updated = change(records)
            if updated is None:
                return None
            self._write(records)
            return updated

    def mark_killed(self, job_name: str, completed_at: str) -> List[str]:
        """Move the job's records that are still running to killed; returns their ids."""

        def change(records: List[RunRecord]) -> Tuple[List[RunRecord], List[str]]:
            killed: List[str] = []
            for record in records:
                if record.job_name == job_name and record.is_running:
                    record.status = STATUS_KILLED
                    record.exit_code = KILLED_EXIT_CODE
                    record.completed_at = completed_at
                    killed.append(record.run_id)
            return records, killed

        return self._mutate(change)

    def _delete_where(self, predicate: Callable[[RunRecord], bool]) -> List[RunRecord]:
        def change(records: List[RunRecord]) -> Tuple[List[RunRecord], List[RunRecord]]:
            keep: List[RunRecord] = []
            removed: List[RunRecord] = []
            for record in records:
                if record.is_running or not predicate(record):
                    keep.append(record)
                else:
                    removed.append(record)
            return keep, removed

        removed = self._mutate(change)
        for record in removed:
            _remove_log(record)
        return removed

    def delete(self, run_id: str) -> bool:
        return bool(self._delete_where(lambda record: record.run_id == run_id))

    def delete_many(self, run_ids: Iterable[str]) -> int:
        wanted = set(run_ids)
        return len(self._delete_where(lambda record: record.run_id in wanted))

    def clear(self, status: Optional[str] = None) -> int:
        if status:
            return len(self._delete_where(lambda record: record.derived_status == status))
        return len(self._delete_where(lambda record: True))


def _matches_status(record: RunRecord, status: str) -> bool:
    if status == STATUS_SUCCESS:
        return record.status is None and record.exit_code == 0
    if status == STATUS_FAILED:
        return record.status is None and record.exit_code is not None and record.exit_code != 0
    return record.status == status
