"""
Outbox Configuration

Relay, retention and runner settings from environment variables.
Database settings live in txoutbox.database.adapter.DatabaseConfig.
"""

import os
from datetime import timedelta
from typing import List, Optional

# Retry intervals for exponential backoff (in seconds)
DEFAULT_RETRY_INTERVALS = [5, 15, 60, 300, 900]  # 5s, 15s, 1m, 5m, 15m


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _parse_intervals(raw: Optional[str]) -> List[float]:
    if not raw:
        return list(DEFAULT_RETRY_INTERVALS)
    return [float(part) for part in raw.split(",") if part.strip()]


class OutboxConfig:
    """
    Outbox settings.

    Environment Variables:
        OUTBOX_POLL_INTERVAL: Relay polling interval in seconds (default: 1.0)
        OUTBOX_BATCH_SIZE: Rows claimed per batch (default: 100)
        OUTBOX_MAX_ATTEMPTS: Default max delivery attempts per event (default: 5)
        OUTBOX_LEASE_TIMEOUT: Seconds before a processing row is reclaimable (default: 300)
        OUTBOX_PUBLISH_TIMEOUT: Seconds allowed for one sink publish (default: 30)
        OUTBOX_RETRY_INTERVALS: Comma-separated backoff schedule in seconds
        OUTBOX_PUBLISHED_RETENTION_DAYS: Age before published rows are deleted (default: 7)
        OUTBOX_DEAD_LETTER_RETENTION_DAYS: Age before dead letters are deleted (default: 28)
        OUTBOX_JANITOR_INTERVAL: Seconds between retention sweeps (default: 3600)
        OUTBOX_SINK_URL: Webhook URL for the HTTP sink (runner only)
    """

    def __init__(self):
        self.poll_interval = float(os.getenv("OUTBOX_POLL_INTERVAL", "1.0"))
        self.batch_size = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
        self.max_attempts = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
        self.lease_timeout = timedelta(seconds=float(os.getenv("OUTBOX_LEASE_TIMEOUT", "300")))
        self.publish_timeout = float(os.getenv("OUTBOX_PUBLISH_TIMEOUT", "30"))
        self.retry_intervals = _parse_intervals(os.getenv("OUTBOX_RETRY_INTERVALS"))
        self.published_retention = timedelta(
            days=float(os.getenv("OUTBOX_PUBLISHED_RETENTION_DAYS", "7"))
        )
        self.dead_letter_retention = timedelta(
            days=float(os.getenv("OUTBOX_DEAD_LETTER_RETENTION_DAYS", "28"))
        )
        self.janitor_interval = float(os.getenv("OUTBOX_JANITOR_INTERVAL", "3600"))
        self.sink_url = os.getenv("OUTBOX_SINK_URL")

    def __repr__(self) -> str:
        return (
            f"OutboxConfig(batch_size={self.batch_size}, max_attempts={self.max_attempts}, "
            f"lease_timeout={self.lease_timeout}, poll_interval={self.poll_interval})"
        )


def is_auth_required() -> bool:
    """Authorization checks are bypassed when AUTH_REQUIRED=false (dev mode)."""
    return _env_bool("AUTH_REQUIRED", "true")
