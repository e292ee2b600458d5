"""
Job definitions.

Each job is one YAML file named `<name>.yaml` in `jobs/` or `jobs.local/`.
A definition in `jobs.local/` shadows the shared one with the same name.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from cronrunner.config import Settings, ensure_bool, ensure_int, ensure_str, expand_home
from cronrunner.cron import describe_cron, expand_cron
from cronrunner.errors import ConfigError, JobExistsError, JobNotFoundError, JobRunningError
from cronrunner.locks import JobLock

logger = logging.getLogger(__name__)

JOB_NAME_RE = re.compile(r"^[a-z0-9-]+$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ADHOC_JOB_NAME = "adhoc"
JOB_SUFFIX = ".yaml"
KNOWN_JOB_KEYS = {"name", "prompt", "schedule", "retries", "timeout", "notify", "workdir", "enabled", "env"}


@dataclass(frozen=True)
class JobDefinition:
    name: str
    prompt: str
    schedule: Optional[str] = None
    retries: int = 0
    timeout: Optional[int] = None
    notify: bool = True
    workdir: Optional[Path] = None
    enabled: bool = True
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def validate_job_name(name: str) -> str:
    if not isinstance(name, str) or not JOB_NAME_RE.match(name):
        raise ConfigError(f'Error: Job name "{name}" must match [a-z0-9-]+.')
    return name


def _parse_env(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping of ENV_NAME to config key.")
    env: Dict[str, str] = {}
    for env_name, config_key in raw.items():
        if not isinstance(env_name, str) or not ENV_NAME_RE.match(env_name):
            raise ConfigError(f'Error: {field_path} has invalid variable name "{env_name}".')
        env[env_name] = ensure_str(config_key, f"{field_path}.{env_name}")
    return env


def _parse_workdir(raw: Any, field_path: str, base_dir: Path, default: Path) -> Path:
    if raw is None:
        return default
    path = expand_home(ensure_str(raw, field_path))
    if not path.is_absolute():
        path = base_dir / path
    return path


def parse_job_definition(
    name: str,
    payload: Any,
    settings: Settings,
    source: Optional[Path] = None,
) -> JobDefinition:
    validate_job_name(name)
    field_path = f"jobs.{name}"
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")

    unknown = sorted(set(payload) - KNOWN_JOB_KEYS)
    if unknown:
        logger.warning("Ignoring unknown keys in job %s: %s", name, ", ".join(map(str, unknown)))

    schedule = payload.get("schedule")
    if schedule is not None:
        schedule = ensure_str(schedule, f"{field_path}.schedule")
        expand_cron(schedule)

    timeout = payload.get("timeout")
    if timeout is not None:
        timeout = ensure_int(timeout, f"{field_path}.timeout", 0, 1)

    return JobDefinition(
        name=name,
        prompt=ensure_str(payload.get("prompt"), f"{field_path}.prompt"),
        schedule=schedule,
        retries=ensure_int(payload.get("retries"), f"{field_path}.retries", 0, 0),
        timeout=timeout,
        notify=ensure_bool(payload.get("notify"), f"{field_path}.notify", True),
        workdir=_parse_workdir(
            payload.get("workdir"), f"{field_path}.workdir", settings.home, settings.default_workdir
        ),
        enabled=ensure_bool(payload.get("enabled"), f"{field_path}.enabled", True),
        env=_parse_env(payload.get("env"), f"{field_path}.env"),
        source=source,
    )


def adhoc_definition(settings: Settings, prompt: str) -> JobDefinition:
    return JobDefinition(
        name=ADHOC_JOB_NAME,
        prompt=ensure_str(prompt, "prompt"),
        workdir=settings.default_workdir,
    )


def _load_yaml_text(text: str, field_path: str) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Invalid YAML for {field_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: {field_path} must be a YAML mapping.")
    return payload


class JobStore:
    """CRUD over the two job directories."""

    def __init__(self, settings: Settings, on_change: Optional[Callable[[], Any]] = None) -> None:
        self.settings = settings
        self.on_change = on_change

    def resolve_job_file(self, name: str) -> Optional[Path]:
        for directory in (self.settings.jobs_local_dir, self.settings.jobs_dir):
            candidate = directory / f"{name}{JOB_SUFFIX}"
            if candidate.is_file():
                return candidate
        return None

    def names(self) -> List[str]:
        found = set()
        for directory in (self.settings.jobs_dir, self.settings.jobs_local_dir):
            if not directory.is_dir():
                continue
            for path in directory.glob(f"*{JOB_SUFFIX}"):
                found.add(path.name[: -len(JOB_SUFFIX)])
        return sorted(found)

    def is_running(self, name: str) -> bool:
        return JobLock(self.settings.lock_dir, name).exists()

    def get_yaml(self, name: str) -> str:
        validate_job_name(name)
        path = self.resolve_job_file(name)
        if path is None:
            raise JobNotFoundError(f"Job not found: {name}")
        return path.read_text(encoding="utf-8")

    def get(self, name: str) -> JobDefinition:
        validate_job_name(name)
        path = self.resolve_job_file(name)
        if path is None:
            raise JobNotFoundError(f"Job not found: {name}")
        payload = _load_yaml_text(path.read_text(encoding="utf-8"), f"jobs.{name}")
        return parse_job_definition(name, payload, self.settings, source=path)

    def load_all(self) -> Tuple[List[JobDefinition], Dict[str, str]]:
        """Every effective definition, plus the error message of each one that failed to parse."""
        definitions: List[JobDefinition] = []
        errors: Dict[str, str] = {}
        for name in self.names():
            try:
                definitions.append(self.get(name))
            except ConfigError as exc:
                errors[name] = exc.message
        return definitions, errors

    def info(self, name: str) -> Dict[str, Any]:
        definition = self.get(name)
        return {
            "name": definition.name,
            "prompt": definition.prompt,
            "schedule": definition.schedule,
            "scheduleHuman": describe_cron(definition.schedule) if definition.schedule else None,
            "workdir": str(definition.workdir) if definition.workdir else None,
            "retries": definition.retries,
            "timeout": definition.timeout,
            "notify": definition.notify,
            "enabled": definition.enabled,
            "env": dict(definition.env),
            "isRunning": self.is_running(name),
            "local": definition.source is not None
            and definition.source.parent == self.settings.jobs_local_dir,
        }

    def create(self, name: str, text: str) -> JobDefinition:
        validate_job_name(name)
        if self.resolve_job_file(name) is not None:
            raise JobExistsError(f"Job already exists: {name}")
        payload = _load_yaml_text(text, f"jobs.{name}")
        target = self.settings.jobs_dir / f"{name}{JOB_SUFFIX}"
        definition = parse_job_definition(name, payload, self.settings, source=target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        logger.info("Created job %s at %s", name, target)
        self._changed()
        return definition

    def update(self, name: str, text: str) -> JobDefinition:
        validate_job_name(name)
        path = self.resolve_job_file(name)
        if path is None:
            raise JobNotFoundError(f"Job not found: {name}")
        payload = _load_yaml_text(text, f"jobs.{name}")
        definition = parse_job_definition(name, payload, self.settings, source=path)
        path.write_text(text, encoding="utf-8")
        logger.info("Updated job %s at %s", name, path)
        self._changed()
        return definition

    def delete(self, name: str) -> None:
        validate_job_name(name)
        path = self.resolve_job_file(name)
        if path is None:
            raise JobNotFoundError(f"Job not found: {name}")
        if self.is_running(name):
            raise JobRunningError(f"Job '{name}' is currently running. Kill it first.")
        path.unlink()
        logger.info("Deleted job %s (%s)", name, path)
        self._changed()

    def toggle(self, name: str) -> bool:
        """Pause writes `enabled: false`; resume drops the key. Returns the new state."""
        validate_job_name(name)
        path = self.resolve_job_file(name)
        if path is None:
            raise JobNotFoundError(f"Job not found: {name}")
        if self.is_running(name):
            raise JobRunningError(f"Job '{name}' is currently running. Kill it first.")
        payload = _load_yaml_text(path.read_text(encoding="utf-8"), f"jobs.{name}")
        was_enabled = payload.get("enabled") is not False
        if was_enabled:
            payload["enabled"] = False
        else:
            payload.pop("enabled", None)
        path.write_text(yaml.safe_dump(payload, sort_keys=False, width=10000), encoding="utf-8")
        logger.info("%s job %s", "Paused" if was_enabled else "Resumed", name)
        self._changed()
        return not was_enabled

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception as exc:
            logger.warning("Schedule sync after job change failed: %s", exc)
