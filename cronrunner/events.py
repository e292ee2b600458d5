"""
Polling change stream over the run store.

One `RunEventStream` belongs to one subscriber connection. Each `poll()`
compares the store against what that subscriber has already been sent and
returns the events to push. Log offsets are tracked per stream, so a new
connection starts every running log from offset 0.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Set

from cronrunner.logs import read_log_from
from cronrunner.state import RunRecord, RunStore

STATUS_EVENT = "status"
LOG_EVENT = "log"
SNAPSHOT_SIZE = 50


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    data: Any


def fingerprint(runs: List[RunRecord]) -> str:
    parts = []
    for run in runs:
        marker = run.status if run.status else run.exit_code
        parts.append(f"{run.run_id}:{marker}")
    return json.dumps(parts)


def format_sse(event: StreamEvent) -> str:
    return f"event: {event.kind}\ndata: {json.dumps(event.data)}\n\n"


class RunEventStream:
    def __init__(self, store: RunStore) -> None:
        self.store = store
        self.last_fingerprint = ""
        self.offsets: Dict[str, int] = {}
        self.previously_running: Set[str] = set()

    def _tail(self, run: RunRecord, final: bool = False) -> List[StreamEvent]:
        offset = self.offsets.get(run.run_id, 0)
        result = read_log_from(run.log_file, offset, final=final) if run.log_file else None
        if result is None:
            return []
        content, new_offset = result
        self.offsets[run.run_id] = new_offset
        return [
            StreamEvent(
                LOG_EVENT,
                {
                    "runId": run.run_id,
                    "jobName": run.job_name,
                    "content": content,
                    "offset": offset,
                },
            )
        ]

    def poll(self) -> List[StreamEvent]:
        runs = self.store.list_runs()
        by_id = {run.run_id: run for run in runs}
        currently_running = [run for run in runs if run.is_running]
        running_ids = {run.run_id for run in currently_running}
        events: List[StreamEvent] = []

        # Final flush for runs that left `running` since the last tick.
        for run_id in sorted(self.previously_running - running_ids):
            run = by_id.get(run_id)
            if run is not None:
                events.extend(self._tail(run, final=True))
            self.offsets.pop(run_id, None)

        current = fingerprint(runs)
        if current != self.last_fingerprint:
            self.last_fingerprint = current
            snapshot = [run.to_payload() for run in reversed(runs)][:SNAPSHOT_SIZE]
            events.append(StreamEvent(STATUS_EVENT, snapshot))

        for run in currently_running:
            events.extend(self._tail(run))

        self.previously_running = running_ids
        return events
