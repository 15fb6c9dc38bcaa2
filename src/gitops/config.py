"""Reconciler configuration loaded from environment variables.

Environment Variables:
    RECONCILE_WORKERS: Worker tasks processing the queue (default: 4)
    REFRESH_INTERVAL_SECONDS: Seconds between source polls (default: 180)
    DRIFT_INTERVAL_SECONDS: Seconds between drift checks (default: 60)
    RETRY_INITIAL_DELAY_SECONDS: First apply retry delay (default: 1.0)
    RETRY_BACKOFF_FACTOR: Apply retry delay multiplier (default: 2.0)
    RETRY_MAX_DELAY_SECONDS: Apply retry delay cap (default: 60.0)
    DEFAULT_RETRY_LIMIT: Retry limit for Applications registered without one (default: 5)
    IGNORE_PATHS: Comma-separated global ignore rules, "/ptr" or "Kind:/ptr"
    DESTINATION_FAILURE_THRESHOLD: Failures before a destination's breaker opens (default: 3)
    DESTINATION_RESET_SECONDS: Seconds a breaker stays open (default: 120)
    DATABASE_URL: PostgreSQL URL; unset keeps state in memory
    PROVIDER_FACTORY: "module:callable" returning (source, live, backend)
    HEALTH_CHECK_PORT: Controller health check port (default: 8080, 0 to disable)
"""

import os
from typing import Optional

from dotenv import load_dotenv

from .common.exceptions import ConfigurationError
from .reconcile.domain.normalize import IgnoreRule

load_dotenv()


def _int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def parse_ignore_paths(raw: str) -> list[IgnoreRule]:
    rules = []
    for item in (p.strip() for p in raw.split(",")):
        if not item:
            continue
        try:
            rules.append(IgnoreRule.parse(item))
        except ValueError as e:
            raise ConfigurationError(f"IGNORE_PATHS: {e}")
    return rules


class ReconcilerConfig:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.workers = _int("RECONCILE_WORKERS", 4, minimum=1)
        self.refresh_interval = _float("REFRESH_INTERVAL_SECONDS", 180.0, minimum=1.0)
        self.drift_interval = _float("DRIFT_INTERVAL_SECONDS", 60.0, minimum=1.0)
        self.retry_initial_delay = _float("RETRY_INITIAL_DELAY_SECONDS", 1.0)
        self.retry_backoff_factor = _float("RETRY_BACKOFF_FACTOR", 2.0, minimum=1.0)
        self.retry_max_delay = _float("RETRY_MAX_DELAY_SECONDS", 60.0)
        self.default_retry_limit = _int("DEFAULT_RETRY_LIMIT", 5)
        self.ignore_rules = parse_ignore_paths(os.getenv("IGNORE_PATHS", ""))
        self.destination_failure_threshold = _int("DESTINATION_FAILURE_THRESHOLD", 3, minimum=1)
        self.destination_reset_seconds = _float("DESTINATION_RESET_SECONDS", 120.0)
        self.database_url: Optional[str] = os.getenv("DATABASE_URL") or None
        self.provider_factory: Optional[str] = os.getenv("PROVIDER_FACTORY") or None
        self.health_check_port = _int("HEALTH_CHECK_PORT", 8080)

        if self.provider_factory and ":" not in self.provider_factory:
            raise ConfigurationError(
                f"PROVIDER_FACTORY must look like 'module:callable', got {self.provider_factory!r}"
            )

    def __repr__(self):
        return (
            f"ReconcilerConfig("
            f"workers={self.workers}, "
            f"refresh={self.refresh_interval}s, "
            f"drift={self.drift_interval}s, "
            f"retry_limit={self.default_retry_limit}, "
            f"ignore={[str(r) for r in self.ignore_rules]}, "
            f"database={'postgres' if self.database_url else 'memory'}, "
            f"health_port={self.health_check_port})"
        )
