"""
Global configuration.

config.yaml in the home directory is overridden key by key by
config.local.yaml. The merged result is frozen into a Settings object that
is passed to every component.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cronrunner.errors import ConfigError

CONFIG_FILE = "config.yaml"
CONFIG_LOCAL_FILE = "config.local.yaml"
JOBS_DIR = "jobs"
JOBS_LOCAL_DIR = "jobs.local"
HOME_ENV_VAR = "CRONRUNNER_HOME"

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 7429
DEFAULT_STATE_DIR = "~/.cronrunner"
DEFAULT_WORKDIR = "~"
DEFAULT_COMMAND = ["claude", "-p", "{prompt}", "--output-format", "text"]
DEFAULT_RETRY_DELAY_SECONDS = 5
DEFAULT_STREAM_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_RUNS = 100
DEFAULT_NTFY_SERVER = "https://ntfy.sh"
DEFAULT_NOTIFY_TIMEOUT_MS = 3000
DEFAULT_PLIST_PREFIX = "com.cronrunner.job"
DEFAULT_AGENTS_DIR = "~/Library/LaunchAgents"
PLACEHOLDER_TOKENS = {"", "changeme"}

KNOWN_KEYS = {
    "server_host",
    "server_port",
    "auth_token",
    "state_dir",
    "log_dir",
    "lock_dir",
    "state_file",
    "default_workdir",
    "command",
    "retry_delay_seconds",
    "stream_interval_seconds",
    "max_runs",
    "ntfy_server",
    "ntfy_topic",
    "notify_timeout_ms",
    "plist_prefix",
    "agents_dir",
    "python",
}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    home: Path
    server_host: str
    server_port: int
    auth_token: str
    state_dir: Path
    log_dir: Path
    lock_dir: Path
    state_file: Path
    default_workdir: Path
    command: List[str]
    retry_delay_seconds: float
    stream_interval_seconds: float
    max_runs: int
    ntfy_server: str
    ntfy_topic: str
    notify_timeout_ms: int
    plist_prefix: str
    agents_dir: Path
    python: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def jobs_dir(self) -> Path:
        return self.home / JOBS_DIR

    @property
    def jobs_local_dir(self) -> Path:
        return self.home / JOBS_LOCAL_DIR

    @property
    def auth_enabled(self) -> bool:
        return self.auth_token not in PLACEHOLDER_TOKENS

    def lookup(self, key: str) -> Optional[str]:
        """Resolve a job `env` reference against the merged config."""
        value = self.raw.get(key)
        if value is None:
            return None
        text = str(value)
        return text if text else None

    def ensure_dirs(self) -> None:
        for path in (self.state_dir, self.log_dir, self.lock_dir, self.state_file.parent):
            path.mkdir(parents=True, exist_ok=True)


def expand_home(value: str) -> Path:
    return Path(os.path.expanduser(value))


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _optional_str(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return str(value)


def _parse_command(value: Any) -> List[str]:
    if value is None:
        return list(DEFAULT_COMMAND)
    if isinstance(value, str):
        raise ConfigError("Error: command must be a list of arguments, not a string.")
    if not isinstance(value, list) or not value:
        raise ConfigError("Error: command must be a non-empty list.")
    args: List[str] = []
    for idx, arg in enumerate(value):
        if not isinstance(arg, (str, int, float)) or isinstance(arg, bool):
            raise ConfigError(f"Error: command[{idx}] must be a scalar value.")
        args.append(str(arg))
    if not any("{prompt}" in arg for arg in args):
        raise ConfigError('Error: command must contain a "{prompt}" placeholder.')
    return args


def load_yaml_mapping(path: Path, required: bool = True) -> Dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigError(f"Error: Config file not found: {path}")
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level of {path} must be a mapping.")
    return payload


def resolve_home(home: Optional[Path] = None) -> Path:
    if home is not None:
        return Path(home).expanduser().resolve()
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return expand_home(env_home).resolve()
    return Path.cwd().resolve()


def load_settings(home: Optional[Path] = None) -> Settings:
    root = resolve_home(home)
    base = load_yaml_mapping(root / CONFIG_FILE, required=False)
    local = load_yaml_mapping(root / CONFIG_LOCAL_FILE, required=False)
    merged = {**base, **local}
    return settings_from_mapping(root, merged)


def settings_from_mapping(home: Path, merged: Dict[str, Any]) -> Settings:
    state_dir = expand_home(_optional_str(merged.get("state_dir"), "state_dir", DEFAULT_STATE_DIR))
    log_dir_raw = merged.get("log_dir")
    lock_dir_raw = merged.get("lock_dir")
    state_file_raw = merged.get("state_file")

    unknown = {key for key in merged if key not in KNOWN_KEYS}
    if unknown:
        # Extra keys are legitimate: jobs reference them through `env`.
        logger.debug("Config keys available for env lookups: %s", sorted(unknown))

    return Settings(
        home=home,
        server_host=_optional_str(merged.get("server_host"), "server_host", DEFAULT_SERVER_HOST),
        server_port=ensure_int(merged.get("server_port"), "server_port", DEFAULT_SERVER_PORT, 1),
        auth_token=_optional_str(merged.get("auth_token"), "auth_token", ""),
        state_dir=state_dir,
        log_dir=expand_home(str(log_dir_raw)) if log_dir_raw else state_dir / "logs",
        lock_dir=expand_home(str(lock_dir_raw)) if lock_dir_raw else state_dir / "locks",
        state_file=expand_home(str(state_file_raw)) if state_file_raw else state_dir / "state.json",
        default_workdir=expand_home(
            _optional_str(merged.get("default_workdir"), "default_workdir", DEFAULT_WORKDIR)
        ),
        command=_parse_command(merged.get("command")),
        retry_delay_seconds=ensure_number(
            merged.get("retry_delay_seconds"), "retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS
        ),
        stream_interval_seconds=ensure_number(
            merged.get("stream_interval_seconds"),
            "stream_interval_seconds",
            DEFAULT_STREAM_INTERVAL_SECONDS,
            0.05,
        ),
        max_runs=ensure_int(merged.get("max_runs"), "max_runs", DEFAULT_MAX_RUNS, 1),
        ntfy_server=_optional_str(merged.get("ntfy_server"), "ntfy_server", DEFAULT_NTFY_SERVER),
        ntfy_topic=_optional_str(merged.get("ntfy_topic"), "ntfy_topic", ""),
        notify_timeout_ms=ensure_int(
            merged.get("notify_timeout_ms"), "notify_timeout_ms", DEFAULT_NOTIFY_TIMEOUT_MS, 1
        ),
        plist_prefix=_optional_str(merged.get("plist_prefix"), "plist_prefix", DEFAULT_PLIST_PREFIX),
        agents_dir=expand_home(
            _optional_str(merged.get("agents_dir"), "agents_dir", DEFAULT_AGENTS_DIR)
        ),
        python=_optional_str(merged.get("python"), "python", sys.executable),
        raw=dict(merged),
    )
