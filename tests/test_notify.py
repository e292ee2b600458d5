from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, List

import pytest

from cronrunner.notify import Notifier, RunOutcome, build_message


def _outcome(exit_code: int) -> RunOutcome:
    return RunOutcome(
        job_name="nightly",
        run_id="nightly-1",
        exit_code=exit_code,
        attempts=2,
        max_attempts=3,
        log_file="/tmp/nightly-1.log",
    )


def test_success_message() -> None:
    headers, body = build_message(_outcome(0))
    assert headers == {
        "Title": "cronrunner: nightly succeeded",
        "Priority": "default",
        "Tags": "white_check_mark",
    }
    assert body == "Run: nightly-1\nExit: 0\nAttempts: 2/3\nLog: /tmp/nightly-1.log"


def test_failure_message() -> None:
    headers, _ = build_message(_outcome(124))
    assert headers["Title"] == "cronrunner: nightly failed"
    assert headers["Priority"] == "high"
    assert headers["Tags"] == "x"


def test_disabled_without_topic(settings) -> None:
    notifier = Notifier(settings)
    assert notifier.enabled is False
    assert notifier.send(_outcome(0)) is False


def test_unreachable_server_is_not_an_error(make_settings) -> None:
    settings = make_settings(ntfy_server="http://127.0.0.1:9", ntfy_topic="runs", notify_timeout_ms=200)
    notifier = Notifier(settings)
    assert notifier.url() == "http://127.0.0.1:9/runs"
    assert notifier.send(_outcome(1)) is False


@pytest.fixture
def ntfy_server():
    received: List[Dict[str, object]] = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:
            length = int(self.headers.get("Content-Length", 0))
            received.append(
                {"path": self.path, "title": self.headers.get("Title"), "body": self.rfile.read(length).decode()}
            )
            self.send_response(200)
            self.end_headers()

        def log_message(self, format: str, *args: object) -> None:
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}", received
    server.shutdown()
    server.server_close()


def test_posts_to_topic(make_settings, ntfy_server) -> None:
    url, received = ntfy_server
    settings = make_settings(ntfy_server=url + "/", ntfy_topic="runs")
    assert Notifier(settings).send(_outcome(0)) is True
    assert received == [
        {
            "path": "/runs",
            "title": "cronrunner: nightly succeeded",
            "body": "Run: nightly-1\nExit: 0\nAttempts: 2/3\nLog: /tmp/nightly-1.log",
        }
    ]
