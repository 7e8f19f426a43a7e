# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation. It is built once
at process start from the project's .env file and passed explicitly into
every orchestrator.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List
import re

import structlog

logger = structlog.get_logger()

# Service names as declared in docker-compose.yml
APP_SERVICE = "n8n"
DB_SERVICE = "postgres"

# Minimum recommended encryption key length
RECOMMENDED_KEY_LENGTH = 32


class WebProtocol(str, Enum):
    """Protocol the application is served on."""

    HTTP = "http"
    HTTPS = "https"


def _validate_prefix(prefix: str) -> bool:
    """Archive prefixes end up in file names and glob patterns."""
    return bool(prefix) and re.match(r"^[A-Za-z0-9_-]+$", prefix) is not None


@dataclass(frozen=True)
class DatabaseCredentials:
    """Credentials for the managed database."""

    name: str
    user: str
    password: str

    def __repr__(self) -> str:
        return f"DatabaseCredentials(name={self.name!r}, user={self.user!r}, password='***')"


@dataclass(frozen=True)
class VersionSpec:
    """
    Target versions for an update request.

    Each field is independently optional; None means "leave unchanged".
    """

    app_version: str | None = None
    db_version: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.app_version and not self.db_version


@dataclass(frozen=True)
class OpsConfig:
    """
    Immutable configuration for backup, restore and update runs.

    Paths are absolute; relative values from the .env file are resolved
    against project_dir before this object is created.
    """

    # Directory holding .env and docker-compose.yml
    project_dir: Path

    # Image tags
    app_version: str
    db_version: str = "14.17-alpine"

    # Application settings
    host: str = "localhost"
    protocol: WebProtocol = WebProtocol.HTTP
    encryption_key: str = field(default="", repr=False)
    timezone: str = "UTC"

    # Database credentials
    database: DatabaseCredentials = field(
        default_factory=lambda: DatabaseCredentials("n8n", "n8n", "")
    )

    # Backups
    retention_days: int = 7
    backup_prefix: str = "n8n_backup"
    backup_dir: Path | None = None

    # Local state directories copied into archives when present
    app_data_dir: Path | None = None
    secondary_data_dir: Path | None = None

    # Tool directories
    log_dir: Path | None = None
    state_dir: Path | None = None
    compose_file: Path | None = None

    # Readiness probing
    health_url: str = "http://localhost:5678/healthz"
    ready_attempts: int = 30
    ready_interval: float = 2.0

    # Path inside the application container holding its state
    app_container_state_path: str = "/home/node/.n8n"

    def __post_init__(self) -> None:
        """Fill derived paths and validate configuration after creation."""
        project_dir = Path(self.project_dir)
        object.__setattr__(self, "project_dir", project_dir)
        if self.backup_dir is None:
            object.__setattr__(self, "backup_dir", project_dir / "backups")
        if self.log_dir is None:
            object.__setattr__(self, "log_dir", project_dir / "logs")
        if self.state_dir is None:
            object.__setattr__(self, "state_dir", project_dir / ".n8nops")
        if self.compose_file is None:
            object.__setattr__(self, "compose_file", project_dir / "docker-compose.yml")
        if isinstance(self.protocol, str) and not isinstance(self.protocol, WebProtocol):
            object.__setattr__(self, "protocol", WebProtocol(self.protocol))

        errors: List[str] = []

        if not self.app_version:
            errors.append("app_version must not be empty")

        if not self.db_version:
            errors.append("db_version must not be empty")

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if not _validate_prefix(self.backup_prefix):
            errors.append(f"Invalid backup_prefix: {self.backup_prefix!r}")

        if self.ready_attempts < 1:
            errors.append(f"ready_attempts must be >= 1, got {self.ready_attempts}")

        if self.ready_interval < 0:
            errors.append(f"ready_interval must be >= 0, got {self.ready_interval}")

        if not self.database.name or not self.database.user:
            errors.append("database name and user are required")

        # Raise all errors at once
        if errors:
            from n8nops.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

        if len(self.encryption_key) < RECOMMENDED_KEY_LENGTH:
            logger.warning(
                "encryption_key_short",
                length=len(self.encryption_key),
                recommended=RECOMMENDED_KEY_LENGTH,
            )

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def journal_path(self) -> Path:
        return self.state_dir / "runs.db"

    def with_updates(self, **kwargs) -> "OpsConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)

    def redacted(self) -> dict:
        """Configuration summary with credentials and keys removed."""
        return {
            "project_dir": str(self.project_dir),
            "app_version": self.app_version,
            "db_version": self.db_version,
            "host": self.host,
            "protocol": self.protocol.value,
            "timezone": self.timezone,
            "database": self.database.name,
            "database_user": self.database.user,
            "retention_days": self.retention_days,
            "backup_prefix": self.backup_prefix,
            "backup_dir": str(self.backup_dir),
            "health_url": self.health_url,
            "ready_attempts": self.ready_attempts,
            "ready_interval": self.ready_interval,
        }
