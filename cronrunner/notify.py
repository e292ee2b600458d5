"""Best-effort push notifications to an ntfy-compatible server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib import error as urllib_error
from urllib import request as urllib_request

from cronrunner.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOutcome:
    job_name: str
    run_id: str
    exit_code: int
    attempts: int
    max_attempts: int
    log_file: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def build_message(outcome: RunOutcome) -> Tuple[Dict[str, str], str]:
    if outcome.success:
        headers = {
            "Title": f"cronrunner: {outcome.job_name} succeeded",
            "Priority": "default",
            "Tags": "white_check_mark",
        }
    else:
        headers = {
            "Title": f"cronrunner: {outcome.job_name} failed",
            "Priority": "high",
            "Tags": "x",
        }
    body = (
        f"Run: {outcome.run_id}\n"
        f"Exit: {outcome.exit_code}\n"
        f"Attempts: {outcome.attempts}/{outcome.max_attempts}\n"
        f"Log: {outcome.log_file}"
    )
    return headers, body


class Notifier:
    def __init__(self, settings: Settings) -> None:
        self.server = settings.ntfy_server.rstrip("/")
        self.topic = settings.ntfy_topic
        self.timeout_ms = settings.notify_timeout_ms

    @property
    def enabled(self) -> bool:
        return bool(self.topic)

    def url(self) -> Optional[str]:
        if not self.enabled:
            return None
        return f"{self.server}/{self.topic}"

    def send(self, outcome: RunOutcome) -> bool:
        """Deliver one notification. Never raises."""
        url = self.url()
        if url is None:
            return False
        headers, body = build_message(outcome)
        req = urllib_request.Request(url=url, data=body.encode("utf-8"), method="POST", headers=headers)
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                return 200 <= response.status < 300
        except urllib_error.URLError as exc:
            logger.warning("Notification for %s failed: %s", outcome.run_id, str(exc))
            return False
        except Exception as exc:  # pragma: no cover - defensive
            logger.warning("Notification for %s failed unexpectedly: %s", outcome.run_id, str(exc))
            return False
