from __future__ import annotations

import json
from pathlib import Path

from cronrunner.events import RunEventStream, StreamEvent, format_sse
from cronrunner.state import RunRecord, RunStore


def _store(tmp_path: Path) -> RunStore:
    return RunStore(tmp_path / "state.json")


def _append_log(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def test_first_poll_sends_snapshot_then_quiet(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.append(RunRecord("done-1", "done", "2026-01-01T00:00:00Z", "", exit_code=0))
    stream = RunEventStream(store)

    events = stream.poll()
    assert [event.kind for event in events] == ["status"]
    assert events[0].data[0]["runId"] == "done-1"
    assert stream.poll() == []


def test_running_log_is_tailed_incrementally(tmp_path: Path) -> None:
    store = _store(tmp_path)
    log = tmp_path / "live.log"
    log.write_text("line 1\n", encoding="utf-8")
    store.append(RunRecord("live-1", "live", "2026-01-01T00:00:00Z", str(log), status="running"))
    stream = RunEventStream(store)

    events = stream.poll()
    assert [event.kind for event in events] == ["status", "log"]
    assert events[1].data == {"runId": "live-1", "jobName": "live", "content": "line 1\n", "offset": 0}

    _append_log(log, "line 2\n")
    events = stream.poll()
    assert [event.kind for event in events] == ["log"]
    assert events[0].data["content"] == "line 2\n"
    assert events[0].data["offset"] == len("line 1\n")

    assert stream.poll() == []


def test_final_flush_when_run_completes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    log = tmp_path / "live.log"
    log.write_text("start\n", encoding="utf-8")
    store.append(RunRecord("live-1", "live", "2026-01-01T00:00:00Z", str(log), status="running"))
    stream = RunEventStream(store)
    stream.poll()

    _append_log(log, "finished\n")
    store.update("live-1", status=None, exit_code=0, attempts=1, completed_at="2026-01-01T00:01:00Z")
    events = stream.poll()

    assert [event.kind for event in events] == ["log", "status"]
    assert events[0].data["content"] == "finished\n"
    assert events[0].data["offset"] == len("start\n")
    assert events[1].data[0]["exitCode"] == 0
    assert "live-1" not in stream.offsets

    _append_log(log, "late write\n")
    assert stream.poll() == []


def test_new_stream_starts_from_offset_zero(tmp_path: Path) -> None:
    store = _store(tmp_path)
    log = tmp_path / "live.log"
    log.write_text("abc\n", encoding="utf-8")
    store.append(RunRecord("live-1", "live", "2026-01-01T00:00:00Z", str(log), status="running"))
    RunEventStream(store).poll()

    events = RunEventStream(store).poll()
    assert events[1].data["offset"] == 0
    assert events[1].data["content"] == "abc\n"


def test_snapshot_is_newest_fifty(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for idx in range(60):
        store.append(RunRecord(f"run-{idx}", "job", "2026-01-01T00:00:00Z", "", exit_code=0))
    events = RunEventStream(store).poll()
    snapshot = events[0].data
    assert len(snapshot) == 50
    assert snapshot[0]["runId"] == "run-59"
    assert snapshot[-1]["runId"] == "run-10"


def test_status_resent_when_fingerprint_changes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    stream = RunEventStream(store)
    assert [event.kind for event in stream.poll()] == ["status"]
    store.append(RunRecord("a-1", "a", "2026-01-01T00:00:00Z", "", exit_code=1))
    events = stream.poll()
    assert [event.kind for event in events] == ["status"]
    assert events[0].data[0]["runId"] == "a-1"


def test_format_sse() -> None:
    text = format_sse(StreamEvent("log", {"runId": "a", "offset": 0}))
    assert text.startswith("event: log\ndata: ")
    assert text.endswith("\n\n")
    assert json.loads(text.split("data: ", 1)[1]) == {"runId": "a", "offset": 0}


def test_character_split_across_polls_is_reassembled(tmp_path: Path) -> None:
    store = _store(tmp_path)
    log = tmp_path / "live.log"
    head = "héllo ".encode("utf-8")
    check = "✓".encode("utf-8")
    log.write_bytes(head + check[:1])
    store.append(RunRecord("live-1", "live", "2026-01-01T00:00:00Z", str(log), status="running"))
    stream = RunEventStream(store)

    events = stream.poll()
    assert events[1].data["content"] == "héllo "
    assert events[1].data["offset"] == 0

    with log.open("ab") as handle:
        handle.write(check[1:])
    events = stream.poll()
    assert [event.kind for event in events] == ["log"]
    assert events[0].data["content"] == "✓"
    assert events[0].data["offset"] == len(head)
    assert "héllo " + events[0].data["content"] == "héllo ✓"


def test_final_flush_sends_truncated_tail(tmp_path: Path) -> None:
    store = _store(tmp_path)
    log = tmp_path / "live.log"
    log.write_bytes(b"ok " + "✓".encode("utf-8")[:2])
    store.append(RunRecord("live-1", "live", "2026-01-01T00:00:00Z", str(log), status="running"))
    stream = RunEventStream(store)
    assert stream.poll()[1].data["content"] == "ok "

    store.update("live-1", status=None, exit_code=1, completed_at="2026-01-01T00:01:00Z")
    events = stream.poll()
    assert events[0].kind == "log"
    assert events[0].data["offset"] == 3
    assert events[0].data["content"] == "\ufffd"
