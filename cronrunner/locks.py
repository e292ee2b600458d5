"""Per-job lock directories and process-group cancellation handles."""

from __future__ import annotations

import logging
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessGroupHandle:
    """Capability to terminate one attempt sequence and all of its descendants."""

    pgid: int

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        """Signal the whole group. Returns False when the group is already gone."""
        try:
            os.killpg(self.pgid, sig)
        except ProcessLookupError:
            return False
        return True


class JobLock:
    """mkdir-based mutual exclusion for one job name, plus a pgid file."""

    def __init__(self, lock_dir: Path, job_name: str) -> None:
        self.lock_dir = Path(lock_dir)
        self.job_name = job_name
        self.path = self.lock_dir / f"{job_name}.lock"
        self.pid_file = self.lock_dir / f"{job_name}.pid"
        self.owned = False
        self.pgid: Optional[int] = None

    def exists(self) -> bool:
        return self.path.exists()

    def acquire(self, pgid: Optional[int] = None) -> bool:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.path)
        except FileExistsError:
            return False
        self.owned = True
        self.pgid = pgid if pgid is not None else os.getpgrp()
        self.pid_file.write_text(str(self.pgid), encoding="utf-8")
        return True

    def read_pgid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def handle(self) -> Optional[ProcessGroupHandle]:
        pgid = self.read_pgid()
        if pgid is None or pgid <= 1:
            return None
        return ProcessGroupHandle(pgid)

    def remove(self) -> None:
        """Remove the lock artifacts whether or not this process owns them."""
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        shutil.rmtree(self.path, ignore_errors=True)

    def release(self) -> None:
        if not self.owned:
            return
        self.owned = False
        # A kill may already have removed the lock and a new run taken it over.
        if self.read_pgid() not in (None, self.pgid):
            return
        self.remove()
        logger.debug("Released lock for %s", self.job_name)
