"""Tests for environment-driven settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from tallybook.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        for name in ("DATA_DIR", "LOCK_TIMEOUT", "LOCK_RETRIES", "AUTO_CREATE_PROJECTS", "DEFAULT_PROJECT", "TASK_STATES"):
            monkeypatch.delenv(f"TALLY_{name}", raising=False)

        settings = Settings(_env_file=None)
        assert settings.lock_timeout == 5.0
        assert settings.lock_retries == 3
        assert settings.auto_create_projects is False
        assert settings.default_project is None
        assert settings.task_states == ["inbox", "todo", "blocked", "doing", "done"]

    def test_environment_overrides(self, monkeypatch) -> None:
        monkeypatch.setenv("TALLY_DATA_DIR", "~/timesheets")
        monkeypatch.setenv("TALLY_LOCK_TIMEOUT", "0.5")
        monkeypatch.setenv("TALLY_AUTO_CREATE_PROJECTS", "true")
        monkeypatch.setenv("TALLY_DEFAULT_PROJECT", "acme")

        settings = Settings(_env_file=None)
        assert settings.get_data_dir() == Path("~/timesheets").expanduser()
        assert settings.lock_timeout == 0.5
        assert settings.auto_create_projects is True
        assert settings.default_project == "acme"

    def test_task_states_from_json(self, monkeypatch) -> None:
        monkeypatch.setenv("TALLY_TASK_STATES", '["new", "wip", "closed"]')
        assert Settings(_env_file=None).task_states == ["new", "wip", "closed"]

    def test_env_file(self, monkeypatch, tmp_path) -> None:
        monkeypatch.delenv("TALLY_LOCK_RETRIES", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("TALLY_LOCK_RETRIES=7\n", encoding="utf-8")

        assert Settings(_env_file=env_file).lock_retries == 7

    def test_negative_timeout_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("TALLY_LOCK_TIMEOUT", "-1")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)
