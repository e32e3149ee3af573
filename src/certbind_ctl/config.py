"""Environment-driven configuration loader."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

PROVIDERS = {"aws", "memory"}


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for transient provider errors."""

    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0


@dataclass(frozen=True)
class AppConfig:
    """Application-wide configuration values."""

    provider: str = "memory"
    aws_region: str | None = None
    aws_profile: str | None = None
    certificate_region: str | None = None
    state_path: Path | None = None
    validation_timeout: float = 300.0
    validation_poll_interval: float = 10.0
    validation_check_propagation: bool = False
    validation_record_ttl: int = 300
    max_workers: int = 4
    retry: RetryPolicy = RetryPolicy()
    log_level: str = "INFO"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Return a boolean parsed from a string."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _positive_float(name: str, default: str, allow_zero: bool = True) -> float:
    """Read a non-negative float from the environment."""
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got '{raw}'.") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{name} must be {'non-negative' if allow_zero else 'positive'}.")
    return value


def load_config() -> AppConfig:
    """Load configuration values from the environment (and .env)."""
    load_dotenv()
    provider = os.getenv("PROVIDER", "aws").lower()
    if provider not in PROVIDERS:
        raise ValueError(f"PROVIDER must be one of {sorted(PROVIDERS)}.")

    state_path = os.getenv("STATE_PATH", ".certbind/state.json")
    aws_region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")

    max_workers = int(os.getenv("MAX_WORKERS", "4"))
    if max_workers < 1:
        raise ValueError("MAX_WORKERS must be at least 1.")
    attempts = int(os.getenv("RETRY_ATTEMPTS", "5"))
    if attempts < 1:
        raise ValueError("RETRY_ATTEMPTS must be at least 1.")

    return AppConfig(
        provider=provider,
        aws_region=aws_region,
        aws_profile=os.getenv("AWS_PROFILE") or None,
        certificate_region=os.getenv("CERTIFICATE_REGION") or aws_region,
        state_path=Path(state_path).resolve() if state_path else None,
        validation_timeout=_positive_float("VALIDATION_TIMEOUT", "300"),
        validation_poll_interval=_positive_float("VALIDATION_POLL_INTERVAL", "10", allow_zero=False),
        validation_check_propagation=_parse_bool(os.getenv("VALIDATION_CHECK_PROPAGATION"), False),
        validation_record_ttl=int(os.getenv("VALIDATION_RECORD_TTL", "300")),
        max_workers=max_workers,
        retry=RetryPolicy(
            attempts=attempts,
            base_delay=_positive_float("RETRY_BASE_DELAY", "0.5"),
            max_delay=_positive_float("RETRY_MAX_DELAY", "8"),
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
