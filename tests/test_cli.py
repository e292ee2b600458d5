from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import pytest
import yaml

from cronrunner import cli
from cronrunner.config import load_settings
from cronrunner.errors import ConfigError, JobNotFoundError
from cronrunner.state import RunRecord, RunStore


def _write_home(tmp_path: Path, config: dict, local: Optional[dict] = None) -> Path:
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    (home / "config.yaml").write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    if local is not None:
        (home / "config.local.yaml").write_text(yaml.safe_dump(local, sort_keys=False), encoding="utf-8")
    return home


def test_local_config_overrides_shared_keys(tmp_path: Path) -> None:
    home = _write_home(
        tmp_path,
        {"state_dir": str(tmp_path / "state"), "auth_token": "changeme", "github_token": "shared"},
        {"auth_token": "real-token", "github_token": "local"},
    )
    settings = load_settings(home)
    assert settings.home == home.resolve()
    assert settings.auth_token == "real-token"
    assert settings.auth_enabled is True
    assert settings.lookup("github_token") == "local"
    assert settings.state_file == tmp_path / "state" / "state.json"
    assert settings.log_dir == tmp_path / "state" / "logs"


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path)
    assert settings.auth_enabled is False
    assert settings.retry_delay_seconds == 5.0
    assert settings.max_runs == 100
    assert "{prompt}" in settings.command


@pytest.mark.parametrize(
    "config, match",
    [
        ({"command": "claude -p {prompt}"}, "list of arguments"),
        ({"command": ["claude", "-p"]}, "placeholder"),
        ({"server_port": "http"}, "server_port must be an integer"),
        ({"retry_delay_seconds": -1}, "retry_delay_seconds must be >= 0"),
    ],
)
def test_invalid_config_rejected(tmp_path: Path, config: dict, match: str) -> None:
    home = _write_home(tmp_path, config)
    with pytest.raises(ConfigError, match=match):
        load_settings(home)


def test_config_must_be_a_mapping(tmp_path: Path) -> None:
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.yaml").write_text("- not\n- a mapping\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must be a mapping"):
        load_settings(home)


def test_compile_prints_calendar(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.command_compile("0 9 * * 1-5") == 0
    output = capsys.readouterr().out
    assert output.startswith("Weekdays at 09:00: 5 instant(s)")
    calendar = json.loads(output.split("\n", 1)[1])
    assert [entry["Weekday"] for entry in calendar] == [1, 2, 3, 4, 5]


def test_validate_reports_broken_jobs(settings, write_job, capsys: pytest.CaptureFixture[str]) -> None:
    write_job(settings, "good", {"prompt": "x", "schedule": "0 7 * * *"})
    assert cli.command_validate(settings) == 0
    assert "- good: 0 7 * * *" in capsys.readouterr().out

    write_job(settings, "bad", {"prompt": "x", "schedule": "0 7 * * 8"})
    assert cli.command_validate(settings) == 1
    assert "- bad: INVALID" in capsys.readouterr().out


def test_jobs_listing(settings, write_job, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.command_jobs(settings) == 0
    assert "No jobs defined." in capsys.readouterr().out

    write_job(settings, "morning", {"prompt": "x", "schedule": "0 7 * * *"})
    write_job(settings, "paused", {"prompt": "x", "enabled": False})
    assert cli.command_jobs(settings) == 0
    output = capsys.readouterr().out
    assert "- morning: Daily at 07:00" in output
    assert "- paused: manual [paused]" in output


def test_runs_listing(settings, capsys: pytest.CaptureFixture[str]) -> None:
    store = RunStore(settings.state_file, settings.max_runs)
    store.append(RunRecord("a-1", "a", "2026-01-01T00:00:00Z", "", exit_code=0, attempts=1))
    store.append(RunRecord("a-2", "a", "2026-01-01T01:00:00Z", "", exit_code=2, attempts=2))
    assert cli.command_runs(settings, "failed", 10) == 0
    output = capsys.readouterr().out
    assert "Showing 1 of 1 run(s)" in output
    assert "- a-2 failed" in output
    assert "exit=2 attempts=2" in output


def test_preview_job_and_expression(settings, write_job, capsys: pytest.CaptureFixture[str]) -> None:
    write_job(settings, "morning", {"prompt": "x", "schedule": "0 7 * * *"})
    assert cli.command_preview(settings, "morning", 2) == 0
    output = capsys.readouterr().out
    assert "Job: morning (enabled=True)" in output
    assert output.count("\n- ") == 2

    assert cli.command_preview(settings, "*/30 * * * *", 3) == 0
    assert "Every 30 min" in capsys.readouterr().out

    with pytest.raises(JobNotFoundError, match="Unknown job or cron expression"):
        cli.command_preview(settings, "ghost", 1)


def test_parse_args_run_variants() -> None:
    args = cli.parse_args(["--home", "/tmp/x", "run", "nightly", "--run-id", "nightly-1", "--scheduled"])
    assert args.command == "run"
    assert args.job == "nightly"
    assert args.run_id == "nightly-1"
    assert args.scheduled is True
    assert args.home == Path("/tmp/x")

    args = cli.parse_args(["run", "--prompt", "hello"])
    assert args.job is None
    assert args.prompt == "hello"
