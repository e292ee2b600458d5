from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

from cronrunner.config import Settings, settings_from_mapping


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def factory(**overrides: Any) -> Settings:
        home = tmp_path / "home"
        home.mkdir(exist_ok=True)
        workdir = tmp_path / "work"
        workdir.mkdir(exist_ok=True)
        mapping: Dict[str, Any] = {
            "state_dir": str(tmp_path / "state"),
            "default_workdir": str(workdir),
            "command": [sys.executable, "-c", "{prompt}"],
            "retry_delay_seconds": 0,
            "agents_dir": str(tmp_path / "agents"),
            "auth_token": "",
        }
        mapping.update(overrides)
        return settings_from_mapping(home, mapping)

    return factory


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


@pytest.fixture
def write_job() -> Callable[..., Path]:
    def writer(settings: Settings, name: str, payload: Dict[str, Any], local: bool = False) -> Path:
        directory = settings.jobs_local_dir if local else settings.jobs_dir
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{name}.yaml"
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        return path

    return writer
