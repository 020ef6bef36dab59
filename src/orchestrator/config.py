"""Configuration management with validation.

Limits are enforced at configuration load time so that a misconfigured
run fails before any provider call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_PATH = "orchestrator-state.json"

DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0

DEFAULT_POLL_INITIAL_SECONDS = 5.0
DEFAULT_POLL_CEILING_SECONDS = 60.0
DEFAULT_POLL_MULTIPLIER = 2.0
DEFAULT_READINESS_TIMEOUT_SECONDS = 1800.0
MAX_READINESS_TIMEOUT_SECONDS = 4 * 3600.0

DEFAULT_CALL_TIMEOUT_SECONDS = 300.0

# Security constraints - enforced limits to prevent abuse
MAX_DESIRED_STATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max desired-state file
MAX_STATE_FILE_SIZE_BYTES = 50 * 1024 * 1024  # 50MB max state file
MAX_RESOURCES_PER_RUN = 500

# Input validation patterns
VALID_NAME_PATTERN = r"^[a-z][a-z0-9_-]{0,62}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class RetryConfig:
    """Transient-error retry policy for provider calls."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS


@dataclass(frozen=True)
class PollConfig:
    """Readiness polling schedule."""

    initial_seconds: float = DEFAULT_POLL_INITIAL_SECONDS
    ceiling_seconds: float = DEFAULT_POLL_CEILING_SECONDS
    multiplier: float = DEFAULT_POLL_MULTIPLIER
    readiness_timeout_seconds: float = DEFAULT_READINESS_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Scheduling
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS
    retry: RetryConfig = field(default_factory=RetryConfig)
    poll: PollConfig = field(default_factory=PollConfig)

    # Drift handling
    recreate_missing: bool = False
    overwrite_drift: bool = False

    # Azure Resource Manager binding (only needed for ARM-backed types)
    subscription_id: str | None = None
    resource_group_name: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"ORCHESTRATOR_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}: {self.max_concurrency}"
            )

        if not (1 <= self.retry.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"ORCHESTRATOR_MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}: "
                f"{self.retry.max_attempts}"
            )
        if self.retry.backoff_seconds < 0:
            errors.append("ORCHESTRATOR_RETRY_BACKOFF_SECONDS cannot be negative")

        if self.poll.initial_seconds <= 0:
            errors.append("ORCHESTRATOR_POLL_INITIAL_SECONDS must be positive")
        if self.poll.ceiling_seconds < self.poll.initial_seconds:
            errors.append(
                "ORCHESTRATOR_POLL_CEILING_SECONDS must be at least "
                "ORCHESTRATOR_POLL_INITIAL_SECONDS"
            )
        if self.poll.multiplier < 1:
            errors.append("poll multiplier must be at least 1")
        if not (0 < self.poll.readiness_timeout_seconds <= MAX_READINESS_TIMEOUT_SECONDS):
            errors.append(
                f"ORCHESTRATOR_READINESS_TIMEOUT_SECONDS must be between 0 and "
                f"{MAX_READINESS_TIMEOUT_SECONDS:.0f}"
            )

        if self.call_timeout_seconds <= 0:
            errors.append("ORCHESTRATOR_CALL_TIMEOUT_SECONDS must be positive")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"State path is a directory: {self.state_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            ORCHESTRATOR_STATE_PATH: State file (default: ./orchestrator-state.json)
            ORCHESTRATOR_MAX_CONCURRENCY: Concurrent provider calls (default: 4)
            ORCHESTRATOR_MAX_ATTEMPTS: Attempts for transient errors (default: 3)
            ORCHESTRATOR_RETRY_BACKOFF_SECONDS: Retry backoff base (default: 2)
            ORCHESTRATOR_POLL_INITIAL_SECONDS: First readiness poll delay (default: 5)
            ORCHESTRATOR_POLL_CEILING_SECONDS: Readiness backoff ceiling (default: 60)
            ORCHESTRATOR_READINESS_TIMEOUT_SECONDS: Readiness deadline (default: 1800)
            ORCHESTRATOR_CALL_TIMEOUT_SECONDS: Timeout per provider call (default: 300)
            ORCHESTRATOR_RECREATE_MISSING: Re-create resources deleted out-of-band
            ORCHESTRATOR_OVERWRITE_DRIFT: Overwrite attribute drift on update

        Azure Variables:
            AZURE_SUBSCRIPTION_ID: Subscription for ARM-backed resource types
            AZURE_RESOURCE_GROUP: Resource group for ARM-backed resource types
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            state_path=Path(os.environ.get("ORCHESTRATOR_STATE_PATH", DEFAULT_STATE_PATH)),
            max_concurrency=get_int("ORCHESTRATOR_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            call_timeout_seconds=get_float(
                "ORCHESTRATOR_CALL_TIMEOUT_SECONDS", DEFAULT_CALL_TIMEOUT_SECONDS
            ),
            retry=RetryConfig(
                max_attempts=get_int("ORCHESTRATOR_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_seconds=get_float(
                    "ORCHESTRATOR_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
                ),
            ),
            poll=PollConfig(
                initial_seconds=get_float(
                    "ORCHESTRATOR_POLL_INITIAL_SECONDS", DEFAULT_POLL_INITIAL_SECONDS
                ),
                ceiling_seconds=get_float(
                    "ORCHESTRATOR_POLL_CEILING_SECONDS", DEFAULT_POLL_CEILING_SECONDS
                ),
                readiness_timeout_seconds=get_float(
                    "ORCHESTRATOR_READINESS_TIMEOUT_SECONDS", DEFAULT_READINESS_TIMEOUT_SECONDS
                ),
            ),
            recreate_missing=get_bool("ORCHESTRATOR_RECREATE_MISSING", False),
            overwrite_drift=get_bool("ORCHESTRATOR_OVERWRITE_DRIFT", False),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            resource_group_name=os.environ.get("AZURE_RESOURCE_GROUP") or None,
        )
