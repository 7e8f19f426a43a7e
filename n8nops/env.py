# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
.env-based configuration helpers.

The project's .env file is the single persisted configuration source. It
is shared with Docker Compose, so it stays a plain KEY=value file. These
helpers:

- Parse the file and build an OpsConfig from it
- Rotate placeholder secrets into a NEW config (never mutating in place)
- Rewrite stored image versions for the update flow
"""

from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Dict, Mapping

import structlog

from n8nops.config import DatabaseCredentials, OpsConfig, WebProtocol
from n8nops.errors import (
    explain_invalid_integer,
    explain_invalid_protocol,
    explain_invalid_retention_days,
    explain_missing_env_file,
    explain_missing_keys,
)
from n8nops.exceptions import ConfigurationError

logger = structlog.get_logger()

REQUIRED_KEYS = (
    "N8N_VERSION",
    "N8N_PROTOCOL",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "N8N_ENCRYPTION_KEY",
    "TIMEZONE",
)

# Placeholder values shipped in the example .env
DEFAULT_PASSWORD_PLACEHOLDER = "change_me_in_production"
DEFAULT_KEY_PLACEHOLDER = "change_me_in_production_with_32+_characters"

_VAR_RE = re.compile(
    r"""
    ^\s*
    (?:export\s+)?
    (?P<key>[A-Za-z_]\w*)
    \s*=\s*
    (?P<value>.*)
    $
    """,
    re.VERBOSE,
)


def parse_env_text(text: str) -> Dict[str, str]:
    """
    Parse .env content into a {key: value} mapping.

    Handles blank/comment lines, ``export KEY=value``, quoted values and
    inline `` #`` comments outside of quotes. Later keys win.
    """
    result: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _VAR_RE.match(line)
        if match is None:
            continue
        key = match.group("key")
        value = match.group("value").strip()

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        elif " #" in value:
            value = value[: value.index(" #")].rstrip()

        result[key] = value
    return result


def read_env_file(env_path: Path) -> Dict[str, str]:
    """Read and parse an .env file, raising ConfigurationError if absent."""
    if not env_path.is_file():
        raise ConfigurationError(
            explain_missing_env_file(env_path),
            details={"env_path": str(env_path)},
        )
    return parse_env_text(env_path.read_text(encoding="utf-8"))


def _parse_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_integer(key, raw)) from exc


def _parse_retention_days(value: str | None) -> int:
    if not value:
        return 7
    try:
        days = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_retention_days(value)) from exc
    if days < 0:
        raise ConfigurationError(explain_invalid_retention_days(value))
    return days


def _parse_float(values: Mapping[str, str], key: str, default: float) -> float:
    raw = values.get(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_integer(key, raw)) from exc


def _parse_protocol(value: str) -> WebProtocol:
    try:
        return WebProtocol(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_protocol(value)) from exc


def _resolve_path(project_dir: Path, value: str | None) -> Path | None:
    if not value:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else project_dir / path


def config_from_values(values: Mapping[str, str], project_dir: Path) -> OpsConfig:
    """
    Build an OpsConfig from parsed .env values.

    Required:
        N8N_VERSION, N8N_PROTOCOL, POSTGRES_DB, POSTGRES_USER,
        POSTGRES_PASSWORD, N8N_ENCRYPTION_KEY, TIMEZONE

    Optional:
        N8N_HOST, POSTGRES_VERSION, BACKUP_RETENTION_DAYS and the
        N8N_OPS_* tool settings (directories, health URL, probe bounds)
    """
    missing = [key for key in REQUIRED_KEYS if not values.get(key)]
    if missing:
        raise ConfigurationError(
            explain_missing_keys(missing),
            details={"missing": sorted(missing)},
        )

    project_dir = project_dir.resolve()
    secondary = _resolve_path(project_dir, values.get("N8N_OPS_SECONDARY_DATA_DIR"))

    return OpsConfig(
        project_dir=project_dir,
        app_version=values["N8N_VERSION"],
        db_version=values.get("POSTGRES_VERSION") or "14.17-alpine",
        host=values.get("N8N_HOST") or "localhost",
        protocol=_parse_protocol(values["N8N_PROTOCOL"]),
        encryption_key=values["N8N_ENCRYPTION_KEY"],
        timezone=values["TIMEZONE"],
        database=DatabaseCredentials(
            name=values["POSTGRES_DB"],
            user=values["POSTGRES_USER"],
            password=values["POSTGRES_PASSWORD"],
        ),
        retention_days=_parse_retention_days(values.get("BACKUP_RETENTION_DAYS")),
        backup_prefix=values.get("N8N_OPS_BACKUP_PREFIX") or "n8n_backup",
        backup_dir=_resolve_path(project_dir, values.get("N8N_OPS_BACKUP_DIR")),
        app_data_dir=_resolve_path(project_dir, values.get("N8N_OPS_APP_DATA_DIR")),
        secondary_data_dir=secondary or project_dir / "data" / "pgadmin",
        log_dir=_resolve_path(project_dir, values.get("N8N_OPS_LOG_DIR")),
        state_dir=_resolve_path(project_dir, values.get("N8N_OPS_STATE_DIR")),
        compose_file=_resolve_path(project_dir, values.get("N8N_OPS_COMPOSE_FILE")),
        health_url=values.get("N8N_OPS_HEALTH_URL") or "http://localhost:5678/healthz",
        ready_attempts=_parse_int(values, "N8N_OPS_READY_ATTEMPTS", 30),
        ready_interval=_parse_float(values, "N8N_OPS_READY_INTERVAL", 2.0),
    )


def load_config(env_path: Path, project_dir: Path | None = None) -> OpsConfig:
    """
    Load the .env file once and return a validated OpsConfig.

    Args:
        env_path: Path to the .env file
        project_dir: Project directory (default: the .env file's directory)
    """
    values = read_env_file(env_path)
    return config_from_values(values, project_dir or env_path.parent)


# ============================================================================
# Rewriting the .env file
# ============================================================================

def _format_value(value: str) -> str:
    if any(ch in value for ch in (" ", "#", '"', "'")):
        return '"' + value.replace('"', '\\"') + '"'
    return value


def rewrite_env_values(env_path: Path, updates: Mapping[str, str]) -> None:
    """
    Set keys in an .env file, preserving every other line.

    Keys not present are appended. The new content is written to a
    temporary sibling and moved into place in one step.
    """
    lines = env_path.read_text(encoding="utf-8").splitlines()
    pending = dict(updates)
    output = []

    for line in lines:
        match = _VAR_RE.match(line)
        if match and match.group("key") in pending:
            key = match.group("key")
            output.append(f"{key}={_format_value(pending.pop(key))}")
        else:
            output.append(line)

    for key, value in pending.items():
        output.append(f"{key}={_format_value(value)}")

    mode = env_path.stat().st_mode & 0o777
    fd, temp_name = tempfile.mkstemp(dir=env_path.parent, prefix=".env.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(output) + "\n")
        os.chmod(temp_name, mode)
        os.replace(temp_name, env_path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise

    logger.debug("env_file_rewritten", env_path=str(env_path), keys=sorted(updates))


def migrate_default_secrets(config: OpsConfig, env_path: Path) -> OpsConfig:
    """
    Replace placeholder secrets with generated ones.

    Produces a NEW validated config; the given config is left untouched.
    If no placeholder is present, the same config is returned and the
    file is not written.
    """
    updates: Dict[str, str] = {}

    if config.database.password == DEFAULT_PASSWORD_PLACEHOLDER:
        logger.warning("default_database_password_detected")
        updates["POSTGRES_PASSWORD"] = secrets.token_urlsafe(24)

    if config.encryption_key == DEFAULT_KEY_PLACEHOLDER:
        logger.warning("default_encryption_key_detected")
        updates["N8N_ENCRYPTION_KEY"] = secrets.token_urlsafe(32)

    if not updates:
        return config

    rewrite_env_values(env_path, updates)

    new_config = load_config(env_path, config.project_dir)
    logger.info("secrets_rotated", keys=sorted(updates))
    return new_config


def write_versions(
    config: OpsConfig,
    env_path: Path,
    app_version: str | None = None,
    db_version: str | None = None,
) -> OpsConfig:
    """
    Persist new image versions and return the matching config.

    Only versions that differ from the stored ones are rewritten.
    """
    updates: Dict[str, str] = {}
    if app_version and app_version != config.app_version:
        updates["N8N_VERSION"] = app_version
    if db_version and db_version != config.db_version:
        updates["POSTGRES_VERSION"] = db_version

    if not updates:
        return config

    rewrite_env_values(env_path, updates)
    logger.info("versions_written", **{k.lower(): v for k, v in updates.items()})

    return config.with_updates(
        app_version=updates.get("N8N_VERSION", config.app_version),
        db_version=updates.get("POSTGRES_VERSION", config.db_version),
    )
