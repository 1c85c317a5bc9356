"""Tests for CloudControllerSettings."""

from __future__ import annotations

import dataclasses

import pytest

from cloud_controller.app.settings import CloudControllerSettings


def test_defaults_are_valid():
    settings = CloudControllerSettings()

    assert settings.validate() == []
    assert settings.broker_client_timeout_seconds == 60.0
    assert settings.broker_client_default_async_poll_interval_seconds == 60.0
    assert settings.broker_client_max_async_poll_duration_minutes == 10080
    assert settings.default_accepts_incomplete is False


def test_settings_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        CloudControllerSettings().broker_api_version = '2.16'


def test_validate_reports_every_problem():
    errors = CloudControllerSettings(
        broker_client_timeout_seconds=0,
        broker_client_poll_backoff='linear',
        orphan_mitigation_max_attempts=0,
    ).validate()

    assert len(errors) == 3
    assert any('broker_client_poll_backoff' in e for e in errors)


def test_from_env_reads_overrides():
    settings = CloudControllerSettings.from_env({
        'BROKER_CLIENT_TIMEOUT_SECONDS': '15',
        'BROKER_CLIENT_POLL_BACKOFF': 'exponential',
        'DEFAULT_ACCEPTS_INCOMPLETE': 'true',
        'ORPHAN_MITIGATION_MAX_ATTEMPTS': '2',
        'LOG_FORMAT': 'console',
    })

    assert settings.broker_client_timeout_seconds == 15.0
    assert settings.broker_client_poll_backoff == 'exponential'
    assert settings.default_accepts_incomplete is True
    assert settings.orphan_mitigation_max_attempts == 2
    assert settings.log_format == 'console'


def test_from_env_empty_uses_defaults():
    assert CloudControllerSettings.from_env({}) == CloudControllerSettings()
