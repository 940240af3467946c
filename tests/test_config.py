"""Tests for the configuration helpers."""

from __future__ import annotations

import importlib
import os
import sys
from datetime import time
from pathlib import Path

import pytest

MODULE_NAME = "energy_scheduler.integrations.config"


@pytest.fixture(autouse=True)
def isolated_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    # Values loaded from .env files must not leak into other tests.
    monkeypatch.setattr(os, "environ", os.environ.copy())


def _reload_config(
    monkeypatch: pytest.MonkeyPatch, env_file: Path, *, preserve_env: bool = False
) -> object:
    monkeypatch.setenv("ENERGY_SCHEDULER_ENV_FILE", str(env_file))
    if not preserve_env:
        for key in ("ESIOS_TOKEN", "DEVICE_CONTROL_URL", "ENERGY_SCHEDULER_WORKERS"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delitem(sys.modules, MODULE_NAME, raising=False)
    return importlib.import_module(MODULE_NAME)


def test_settings_loaded_from_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "ESIOS_TOKEN=test-token\nDEVICE_CONTROL_URL=http://bridge.local\n",
        encoding="utf-8",
    )

    config = _reload_config(monkeypatch, env_file)

    assert config.settings.esios_token == "test-token"
    assert config.settings.device_control_url == "http://bridge.local"
    assert config.settings.esios_base_url == "https://api.esios.ree.es"
    assert config.settings.generation_time == time(20, 30)
    assert config.settings.grace_minutes == 5
    assert config.settings.max_attempts == 5
    assert config.settings.workers == 4


def test_environment_variable_overrides_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "ESIOS_TOKEN=file-value\nENERGY_SCHEDULER_WORKERS=8\n",
        encoding="utf-8",
    )

    monkeypatch.setenv("ESIOS_TOKEN", "env-value")
    monkeypatch.setenv("ENERGY_SCHEDULER_GENERATION_TIME", "21:15")
    monkeypatch.delenv("ENERGY_SCHEDULER_WORKERS", raising=False)
    config = _reload_config(monkeypatch, env_file, preserve_env=True)

    assert config.settings.esios_token == "env-value"
    assert config.settings.generation_time == time(21, 15)
    assert config.settings.workers == 8


def test_missing_token_is_allowed(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("# empty on purpose\n", encoding="utf-8")

    config = _reload_config(monkeypatch, env_file)

    assert config.settings.esios_token is None
    assert config.settings.device_control_url is None


def test_invalid_number_raises_runtime_error(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("ENERGY_SCHEDULER_GRACE_MINUTES=soon\n", encoding="utf-8")
    monkeypatch.delenv("ENERGY_SCHEDULER_GRACE_MINUTES", raising=False)

    with pytest.raises(RuntimeError, match="Invalid scheduler configuration"):
        _reload_config(monkeypatch, env_file)
