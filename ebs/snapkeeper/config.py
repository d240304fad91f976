"""
Configuration management for SnapKeeper.

All configuration is done via environment variables, read once by the entry
points in main.py. The backup and cleanup services receive their section
explicitly and never look at the environment.

Invariants:
    - All settings have defaults matching the documented tag policy
    - Secrets are never logged or exposed in error messages
    - Resource selection is tag-driven; no setting widens which volumes are
      backed up or which snapshots are swept

How to change safely:
    - Add new settings with defaults that keep the current behaviour
    - Never let a setting change which tags mark a volume or snapshot
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .ec2.base import DEFAULT_RATE_LIMIT_CODE, SnapKeeperError

logger = logging.getLogger(__name__)


class ConfigurationError(SnapKeeperError, ValueError):
    """Invalid configuration value."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")


@dataclass(frozen=True)
class Ec2Config:
    """EC2 client configuration.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack testing)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        page_size: MaxResults per describe call (None lets EC2 decide)
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    page_size: int | None = None

    @classmethod
    def from_env(cls) -> Ec2Config:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("EC2_ENDPOINT_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            page_size=_env_int("EC2_PAGE_SIZE", "0") or None,
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup pass configuration.

    Attributes:
        max_attempts: Snapshot creation attempts before giving up on a volume
        retry_delay_seconds: Wait after a rate-limited attempt
        rate_limit_code: EC2 error code signalling throttled creation
    """

    max_attempts: int = 5
    retry_delay_seconds: float = 5.0
    rate_limit_code: str = DEFAULT_RATE_LIMIT_CODE

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=_env_int("BACKUP_MAX_ATTEMPTS", "5"),
            retry_delay_seconds=_env_float("BACKUP_RETRY_DELAY_SECONDS", "5"),
            rate_limit_code=os.getenv("BACKUP_RATE_LIMIT_CODE", DEFAULT_RATE_LIMIT_CODE),
        )


@dataclass(frozen=True)
class CleanupConfig:
    """Cleanup pass configuration.

    Attributes:
        max_concurrent: Maximum concurrent deletions within one page
        dry_run: Log deletions instead of issuing them
    """

    max_concurrent: int = 10
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> CleanupConfig:
        """Load configuration from environment variables."""
        return cls(
            max_concurrent=_env_int("CLEANUP_MAX_CONCURRENT", "10"),
            dry_run=_env_bool("CLEANUP_DRY_RUN", "false"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class SnapKeeperConfig:
    """Complete configuration.

    Attributes:
        ec2: EC2 client configuration
        backup: Backup pass configuration
        cleanup: Cleanup pass configuration
        observability: Logging configuration
    """

    ec2: Ec2Config = field(default_factory=Ec2Config)
    backup: BackupConfig = field(default_factory=BackupConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SnapKeeperConfig:
        """Load complete configuration from environment variables.

        Raises:
            ConfigurationError: If a value is missing or invalid.
        """
        config = cls(
            ec2=Ec2Config.from_env(),
            backup=BackupConfig.from_env(),
            cleanup=CleanupConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.ec2.region:
            raise ConfigurationError("AWS_REGION must not be empty")
        if self.ec2.page_size is not None and self.ec2.page_size < 5:
            raise ConfigurationError("EC2_PAGE_SIZE must be at least 5")
        if self.ec2.access_key_id and not self.ec2.secret_access_key:
            raise ConfigurationError(
                "AWS_SECRET_ACCESS_KEY is required when AWS_ACCESS_KEY_ID is set"
            )

        if self.backup.max_attempts < 1:
            raise ConfigurationError("BACKUP_MAX_ATTEMPTS must be at least 1")
        if self.backup.retry_delay_seconds < 0:
            raise ConfigurationError("BACKUP_RETRY_DELAY_SECONDS must not be negative")

        if self.cleanup.max_concurrent < 1:
            raise ConfigurationError("CLEANUP_MAX_CONCURRENT must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "SnapKeeper configuration loaded",
            extra={
                "region": self.ec2.region,
                "endpoint": self.ec2.endpoint_url or "AWS",
                "static_credentials": bool(self.ec2.access_key_id),
                "page_size": self.ec2.page_size,
                "backup_max_attempts": self.backup.max_attempts,
                "cleanup_dry_run": self.cleanup.dry_run,
                "log_level": self.observability.log_level,
            },
        )
