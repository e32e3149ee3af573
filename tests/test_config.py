"""Tests for certbind_ctl/config.py."""

from __future__ import annotations

import pytest

from certbind_ctl.config import load_config

ENV_VARS = (
    "PROVIDER",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
    "AWS_PROFILE",
    "CERTIFICATE_REGION",
    "STATE_PATH",
    "VALIDATION_TIMEOUT",
    "VALIDATION_POLL_INTERVAL",
    "VALIDATION_CHECK_PROPAGATION",
    "VALIDATION_RECORD_TTL",
    "MAX_WORKERS",
    "RETRY_ATTEMPTS",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_DELAY",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults(tmp_path):
    config = load_config()
    assert config.provider == "aws"
    assert config.validation_timeout == 300
    assert config.validation_poll_interval == 10
    assert config.validation_check_propagation is False
    assert config.max_workers == 4
    assert config.retry.attempts == 5
    assert config.state_path == (tmp_path / ".certbind" / "state.json").resolve()


def test_overrides(monkeypatch):
    monkeypatch.setenv("PROVIDER", "Memory")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
    monkeypatch.setenv("VALIDATION_TIMEOUT", "0")
    monkeypatch.setenv("VALIDATION_CHECK_PROPAGATION", "yes")
    monkeypatch.setenv("MAX_WORKERS", "8")
    monkeypatch.setenv("RETRY_BASE_DELAY", "0.25")
    config = load_config()
    assert config.provider == "memory"
    assert config.aws_region == "eu-west-1"
    assert config.certificate_region == "eu-west-1"
    assert config.validation_timeout == 0
    assert config.validation_check_propagation is True
    assert config.max_workers == 8
    assert config.retry.base_delay == 0.25


def test_certificate_region_override(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "eu-west-1")
    monkeypatch.setenv("CERTIFICATE_REGION", "us-east-1")
    config = load_config()
    assert config.aws_region == "eu-west-1"
    assert config.certificate_region == "us-east-1"


@pytest.mark.parametrize(
    "name, value",
    [
        ("PROVIDER", "gcp"),
        ("VALIDATION_TIMEOUT", "-1"),
        ("VALIDATION_TIMEOUT", "soon"),
        ("VALIDATION_POLL_INTERVAL", "0"),
        ("MAX_WORKERS", "0"),
        ("RETRY_ATTEMPTS", "0"),
    ],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        load_config()
