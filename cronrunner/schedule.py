"""
Schedule sync.

Compiles every enabled, scheduled job into a launchd agent plist and removes
agents whose job is gone, paused or unscheduled. launchctl is only invoked
where it exists, so the plist side can be exercised on any platform.
"""

from __future__ import annotations

import logging
import os
import plistlib
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from cronrunner.config import Settings
from cronrunner.cron import Calendar, compile_calendar
from cronrunner.errors import ConfigError
from cronrunner.jobs import JobStore

logger = logging.getLogger(__name__)

LAUNCHD_PATH = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
LAUNCHCTL_TIMEOUT_SECONDS = 30


@dataclass
class SyncReport:
    installed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> List[str]:
        return sorted(self.installed + self.unchanged)


class LaunchdRegistry:
    def __init__(self, settings: Settings, launchctl: Optional[str] = None) -> None:
        self.settings = settings
        self.agents_dir = settings.agents_dir
        self.prefix = settings.plist_prefix
        self.launchctl = launchctl if launchctl is not None else shutil.which("launchctl")

    def label(self, name: str) -> str:
        return f"{self.prefix}.{name}"

    def plist_path(self, name: str) -> Path:
        return self.agents_dir / f"{self.label(name)}.plist"

    def build_plist(self, name: str, calendar: Calendar) -> Dict[str, Any]:
        settings = self.settings
        return {
            "Label": self.label(name),
            "ProgramArguments": [
                settings.python,
                "-m",
                "cronrunner",
                "--home",
                str(settings.home),
                "run",
                name,
                "--scheduled",
            ],
            "WorkingDirectory": str(settings.home),
            "EnvironmentVariables": {
                "PATH": LAUNCHD_PATH,
                "HOME": os.path.expanduser("~"),
            },
            "StartCalendarInterval": calendar,
            "StandardOutPath": str(settings.state_dir / f"launchd-job-{name}.stdout.log"),
            "StandardErrorPath": str(settings.state_dir / f"launchd-job-{name}.stderr.log"),
        }

    def installed(self) -> Dict[str, Calendar]:
        """Map of job name to the calendar currently registered for it."""
        found: Dict[str, Calendar] = {}
        if not self.agents_dir.is_dir():
            return found
        marker = f"{self.prefix}."
        for path in sorted(self.agents_dir.glob(f"{self.prefix}.*.plist")):
            name = path.name[len(marker) : -len(".plist")]
            try:
                with path.open("rb") as handle:
                    payload = plistlib.load(handle)
            except (OSError, plistlib.InvalidFileException, ValueError) as exc:
                logger.warning("Unreadable agent plist %s: %s", path, exc)
                continue
            found[name] = payload.get("StartCalendarInterval", {})
        return found

    def install(self, name: str, calendar: Calendar) -> bool:
        """Write and load the agent. Returns False when it was already up to date."""
        path = self.plist_path(name)
        data = plistlib.dumps(self.build_plist(name, calendar))
        if path.exists() and path.read_bytes() == data:
            return False
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self._launchctl("bootout", f"gui/{os.getuid()}/{self.label(name)}")
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        self._launchctl("bootstrap", f"gui/{os.getuid()}", str(path))
        return True

    def remove(self, name: str) -> None:
        self._launchctl("bootout", f"gui/{os.getuid()}/{self.label(name)}")
        try:
            self.plist_path(name).unlink()
        except FileNotFoundError:
            pass

    def _launchctl(self, *args: str) -> None:
        if not self.launchctl:
            return
        try:
            result = subprocess.run(
                [self.launchctl, *args],
                capture_output=True,
                text=True,
                timeout=LAUNCHCTL_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("launchctl %s failed: %s", " ".join(args), exc)
            return
        # bootout of an agent that is not loaded is expected to fail.
        if result.returncode != 0 and args[0] != "bootout":
            logger.warning(
                "launchctl %s exited %s: %s", " ".join(args), result.returncode, result.stderr.strip()
            )


def sync_schedules(
    settings: Settings,
    jobs: Optional[JobStore] = None,
    registry: Optional[LaunchdRegistry] = None,
) -> SyncReport:
    jobs = jobs or JobStore(settings)
    registry = registry or LaunchdRegistry(settings)
    report = SyncReport()

    wanted: Dict[str, Calendar] = {}
    expressions: Dict[str, str] = {}
    for name in jobs.names():
        try:
            definition = jobs.get(name)
        except ConfigError as exc:
            logger.warning("Skipping job %s during sync: %s", name, exc.message)
            report.skipped[name] = exc.message
            continue
        if not definition.enabled or not definition.schedule:
            continue
        wanted[name] = compile_calendar(definition.schedule)
        expressions[name] = definition.schedule

    for name, calendar in sorted(wanted.items()):
        if registry.install(name, calendar):
            logger.info("Installed schedule for %s (%s)", name, expressions[name])
            report.installed.append(name)
        else:
            report.unchanged.append(name)

    for name in sorted(registry.installed()):
        if name not in wanted:
            registry.remove(name)
            logger.info("Removed stale schedule for %s", name)
            report.removed.append(name)

    return report
