"""Tests for configuration loading and validation."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import structlog

from botfleet.shell.config import PROJECT_ROOT, Config, _validate_config, load_config
from botfleet.utils.logging import setup_logging

SETTINGS = """
[general]
timezone = "Europe/London"
db_path = "var/test.db"

[leader]
mode = "lease"
lease_ttl_seconds = 20
renew_interval_seconds = 5

[timeouts]
backtester = 40

[promotion]
best_cell_max_age_days = 14

[telegram]
allowed_user_ids = [111, 222]

[api]
enabled = true
port = 9090
"""


@pytest.fixture
def clean_env(monkeypatch):
    for key in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "API_KEY",
                "BOTFLEET_NODE_ID", "BOTFLEET_PAPER_ACCOUNT_ID"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_load_settings_and_env(tmp_path: Path, clean_env):
    settings = tmp_path / "settings.toml"
    settings.write_text(SETTINGS)
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "tok")
    clean_env.setenv("API_KEY", "secret")
    clean_env.setenv("BOTFLEET_NODE_ID", "node-a")
    clean_env.setenv("BOTFLEET_PAPER_ACCOUNT_ID", "paper-1")

    config = load_config(settings)
    assert config.timezone == "Europe/London"
    assert config.db_path == str(PROJECT_ROOT / "var/test.db")
    assert config.leader.mode == "lease"
    assert config.leader.node_id == "node-a"
    assert config.timeouts.backtester == 40
    assert config.timeouts.matrix_run == 60
    assert config.promotion.best_cell_max_age_days == 14
    assert config.telegram.allowed_user_ids == [111, 222]
    assert config.telegram.bot_token == "tok"
    assert config.api.enabled
    assert config.api.port == 9090
    assert config.api.api_key == "secret"
    assert config.supervisor.paper_account_id == "paper-1"


def test_missing_settings_uses_defaults(tmp_path: Path, clean_env):
    config = load_config(tmp_path / "absent.toml")
    assert config.leader.mode == "single"
    assert config.leader.node_id
    assert config.db_path == str(PROJECT_ROOT / "data" / "fleet.db")
    assert config.promotion.best_cell_max_age_days == 0


def test_shipped_settings_are_valid(clean_env):
    config = load_config()
    assert config.workers.autonomy_interval == 300
    assert config.supervisor.runner_stale_minutes == 3


def test_validation_collects_errors():
    config = Config()
    config.leader.mode = "cluster"
    config.timeouts.backtester = 0
    config.governor.heavy_min = 5
    config.promotion.revert_decline_pct = 1.5
    config.timezone = "Mars/Olympus"
    with pytest.raises(ValueError, match="Config validation failed") as exc:
        _validate_config(config)
    message = str(exc.value)
    assert "leader.mode" in message
    assert "timeouts.backtester" in message
    assert "governor.heavy_min" in message
    assert "revert_decline_pct" in message
    assert "Invalid timezone" in message


def test_lease_renewal_must_beat_ttl():
    config = Config()
    config.leader.mode = "lease"
    config.leader.renew_interval_seconds = 30
    with pytest.raises(ValueError, match="renew_interval_seconds"):
        _validate_config(config)


def test_setup_logging_binds_node_and_quiets_libraries():
    setup_logging("DEBUG", node_id="node-a")
    try:
        assert structlog.contextvars.get_contextvars() == {"node_id": "node-a"}
        assert logging.getLogger("apscheduler").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging("ERROR")
        assert structlog.contextvars.get_contextvars() == {}
        assert logging.getLogger("telegram").level == logging.ERROR
    finally:
        structlog.contextvars.clear_contextvars()
