"""Tests for configuration."""

import pytest
from pydantic import ValidationError

from talkgate.config import TalkgateConfig


def test_config_defaults(monkeypatch):
    """Test default configuration values."""
    monkeypatch.delenv("TALKGATE_CONFIDENCE_THRESHOLD", raising=False)
    config = TalkgateConfig()

    assert config.nats_url == "nats://localhost:4222"
    assert config.confidence_threshold == 0.5
    assert config.min_command_interval_ms == 500
    assert config.min_command_interval_s == 0.5
    assert config.confirmation_timeout_s == 10.0
    assert config.selection_timeout_s <= 10.0
    assert config.ipc_max_message_bytes == 4096
    assert config.bus_enabled is False


def test_config_directories(monkeypatch, tmp_path):
    """Test that config creates its directory under XDG_CONFIG_HOME."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    config = TalkgateConfig()

    assert config.config_dir == tmp_path / "talkgate"
    assert config.config_dir.is_dir()
    assert config.audit_path == tmp_path / "talkgate" / "audit.log"


def test_explicit_audit_path(tmp_path):
    config = TalkgateConfig(audit_log_path=tmp_path / "audit.jsonl")
    assert config.audit_path == tmp_path / "audit.jsonl"


def test_environment_overrides(monkeypatch):
    """Settings are read from TALKGATE_* variables."""
    monkeypatch.setenv("TALKGATE_CONFIDENCE_THRESHOLD", "0.8")
    monkeypatch.setenv("TALKGATE_HIGH_RISK_COMMANDS", '["format_disk"]')
    config = TalkgateConfig()

    assert config.confidence_threshold == 0.8
    assert config.is_high_risk("format_disk")
    assert not config.is_high_risk("self_destruct")


def test_high_risk_defaults():
    config = TalkgateConfig()
    for name in ("self_destruct", "eject", "abandon_ship", "purge"):
        assert config.is_high_risk(name)
    assert not config.is_high_risk("lights_off")


def test_selection_timeout_is_bounded():
    """Selection windows longer than ten seconds are refused."""
    with pytest.raises(ValidationError):
        TalkgateConfig(selection_timeout_s=30)
    with pytest.raises(ValidationError):
        TalkgateConfig(selection_timeout_s=0)


def test_confidence_threshold_range():
    with pytest.raises(ValidationError):
        TalkgateConfig(confidence_threshold=1.5)
