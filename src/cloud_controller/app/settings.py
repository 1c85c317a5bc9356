"""Cloud controller configuration settings.

CloudControllerSettings is the single configuration object shared by the
broker client, the deletion/provisioning actions and the async poller.
It is intentionally a plain dataclass (not env-coupled) so tests can inject
config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

POLL_BACKOFF_STRATEGIES = frozenset({"fixed", "exponential"})

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class CloudControllerSettings:
    """Configuration for broker calls and async last-operation polling.

    All fields have sensible defaults for local development.
    """

    # ── Broker client ──────────────────────────────────────────────
    broker_client_timeout_seconds: float = 60.0
    """Per-call timeout bounding every broker request."""

    broker_api_version: str = "2.15"
    """Value sent in the X-Broker-API-Version header."""

    broker_client_max_retries: int = 3
    """Retries for 429 responses. Timeouts are never retried."""

    # ── Async polling ──────────────────────────────────────────────
    broker_client_default_async_poll_interval_seconds: float = 60.0
    """Base interval between last-operation polls."""

    broker_client_max_async_poll_interval_seconds: float = 86400.0
    """Upper bound for backoff and broker Retry-After hints."""

    broker_client_max_async_poll_duration_minutes: int = 10080
    """Polling gives up (operation failed) after this long."""

    broker_client_poll_backoff: str = "fixed"
    """One of: fixed, exponential."""

    # ── Deletion ───────────────────────────────────────────────────
    default_accepts_incomplete: bool = False
    """accepts_incomplete used when the caller does not pass one."""

    # ── Orphan mitigation ──────────────────────────────────────────
    orphan_mitigation_max_attempts: int = 5
    orphan_mitigation_base_delay_seconds: float = 30.0

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.broker_client_timeout_seconds <= 0:
            errors.append("broker_client_timeout_seconds must be > 0")
        if self.broker_client_default_async_poll_interval_seconds <= 0:
            errors.append(
                "broker_client_default_async_poll_interval_seconds must be > 0"
            )
        if (
            self.broker_client_max_async_poll_interval_seconds
            < self.broker_client_default_async_poll_interval_seconds
        ):
            errors.append(
                "broker_client_max_async_poll_interval_seconds must be >= "
                "the default poll interval"
            )
        if self.broker_client_max_async_poll_duration_minutes <= 0:
            errors.append("broker_client_max_async_poll_duration_minutes must be > 0")
        if self.broker_client_poll_backoff not in POLL_BACKOFF_STRATEGIES:
            errors.append(
                f"broker_client_poll_backoff must be one of "
                f"{sorted(POLL_BACKOFF_STRATEGIES)}, got "
                f"{self.broker_client_poll_backoff!r}"
            )
        if self.broker_client_max_retries < 0:
            errors.append("broker_client_max_retries must be >= 0")
        if self.orphan_mitigation_max_attempts < 1:
            errors.append("orphan_mitigation_max_attempts must be >= 1")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> CloudControllerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct CloudControllerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        return cls(
            broker_client_timeout_seconds=float(
                env.get("BROKER_CLIENT_TIMEOUT_SECONDS", defaults.broker_client_timeout_seconds)
            ),
            broker_api_version=env.get("BROKER_API_VERSION", defaults.broker_api_version),
            broker_client_max_retries=int(
                env.get("BROKER_CLIENT_MAX_RETRIES", defaults.broker_client_max_retries)
            ),
            broker_client_default_async_poll_interval_seconds=float(
                env.get(
                    "BROKER_CLIENT_DEFAULT_ASYNC_POLL_INTERVAL_SECONDS",
                    defaults.broker_client_default_async_poll_interval_seconds,
                )
            ),
            broker_client_max_async_poll_interval_seconds=float(
                env.get(
                    "BROKER_CLIENT_MAX_ASYNC_POLL_INTERVAL_SECONDS",
                    defaults.broker_client_max_async_poll_interval_seconds,
                )
            ),
            broker_client_max_async_poll_duration_minutes=int(
                env.get(
                    "BROKER_CLIENT_MAX_ASYNC_POLL_DURATION_MINUTES",
                    defaults.broker_client_max_async_poll_duration_minutes,
                )
            ),
            broker_client_poll_backoff=env.get(
                "BROKER_CLIENT_POLL_BACKOFF", defaults.broker_client_poll_backoff
            ),
            default_accepts_incomplete=(
                env.get("DEFAULT_ACCEPTS_INCOMPLETE", "false").strip().lower()
                in _TRUE_VALUES
            ),
            orphan_mitigation_max_attempts=int(
                env.get(
                    "ORPHAN_MITIGATION_MAX_ATTEMPTS",
                    defaults.orphan_mitigation_max_attempts,
                )
            ),
            orphan_mitigation_base_delay_seconds=float(
                env.get(
                    "ORPHAN_MITIGATION_BASE_DELAY_SECONDS",
                    defaults.orphan_mitigation_base_delay_seconds,
                )
            ),
            log_level=env.get("LOG_LEVEL", defaults.log_level),
            log_format=env.get("LOG_FORMAT", defaults.log_format),
        )
