"""Tests for settings loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from tenantbox.config import (
    ContainerConfig,
    ExecutionConfig,
    Settings,
    get_settings,
    reset_settings,
)

_FULL_RUNTIME = """
[runtime]
cli = "podman"
command_timeout = 10
pull_timeout = 100
max_retries = 2
base_retry_seconds = 0.25
"""


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("SECRETS__GH_TOKEN", "LOGGING__LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


class TestSettingsSources:
    def test_defaults_without_config_file(self, in_tmp):
        s = Settings()
        assert s.container.name_prefix == "session-"
        assert s.container.volume_suffix == "-data"
        assert s.assistant_auth.stage_timeout == 60.0
        assert s.device_flow.scopes == ["repo", "read:org", "gist"]

    def test_toml_section_is_loaded(self, in_tmp):
        (in_tmp / "config.toml").write_text(_FULL_RUNTIME)
        s = Settings()
        assert s.runtime.cli == "podman"
        assert s.runtime.max_retries == 2

    def test_partial_section_is_rejected(self, in_tmp):
        (in_tmp / "config.toml").write_text('[runtime]\ncli = "podman"\n')
        with pytest.raises(ValidationError, match="runtime: missing"):
            Settings()

    def test_optional_fields_need_not_be_spelled_out(self, in_tmp):
        (in_tmp / "config.toml").write_text("[credentials]\n")
        s = Settings()
        assert s.credentials.dir is None

    def test_unknown_key_is_rejected(self, in_tmp):
        (in_tmp / "config.toml").write_text(_FULL_RUNTIME + "colour = 'blue'\n")
        with pytest.raises(ValidationError):
            Settings()

    def test_secret_from_env(self, in_tmp, monkeypatch):
        monkeypatch.setenv("SECRETS__GH_TOKEN", "gho_from_env")
        s = Settings()
        assert s.secrets.gh_token is not None
        assert s.secrets.gh_token.get_secret_value() == "gho_from_env"
        assert "gho_from_env" not in repr(s.secrets)


class TestComputedPaths:
    def test_credentials_dir_defaults_under_data_dir(self, in_tmp):
        s = Settings()
        assert s.credentials_dir == (Path(in_tmp) / "data" / "credentials").resolve()

    def test_credentials_dir_override(self, in_tmp):
        (in_tmp / "config.toml").write_text(f'[credentials]\ndir = "{in_tmp / "creds"}"\n')
        s = Settings()
        assert s.credentials_dir == (in_tmp / "creds").resolve()


class TestValidators:
    def test_bad_prefix(self):
        with pytest.raises(ValidationError, match="Invalid container name prefix"):
            ContainerConfig(name_prefix="-bad prefix")

    def test_ready_attempts_clamped(self):
        assert ContainerConfig(ready_attempts=0).ready_attempts == 1

    def test_poll_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            ExecutionConfig(poll_interval=0)


class TestSingleton:
    def test_get_settings_is_cached(self, in_tmp):
        reset_settings()
        assert get_settings() is get_settings()

    def test_reset_settings_drops_cache(self, in_tmp):
        reset_settings()
        first = get_settings()
        reset_settings()
        assert get_settings() is not first
