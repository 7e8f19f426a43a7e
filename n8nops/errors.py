# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for n8n-ops.

These helpers centralize wording for common configuration and request
errors so that the CLI and the admin API present the same actionable text.
"""

from pathlib import Path
from typing import Iterable


def explain_missing_env_file(env_path: Path) -> str:
    """
    Explain that the .env file could not be found.
    """

    return (
        f".env file not found at {env_path}. "
        "Copy the provided example, fill in the required values and run 'n8nops setup'."
    )


def explain_missing_keys(keys: Iterable[str]) -> str:
    """
    Explain which required keys are absent from the .env file.
    """

    names = ", ".join(sorted(keys))
    return (
        f"Required configuration keys are missing or empty: {names}. "
        "Set them in the .env file before running any command."
    )


def explain_invalid_retention_days(value: str | None) -> str:
    """
    Explain that BACKUP_RETENTION_DAYS is invalid.
    """

    return (
        f"Invalid BACKUP_RETENTION_DAYS value: {value!r}. "
        "It must be a non-negative integer number of days."
    )


def explain_invalid_integer(key: str, value: str | None) -> str:
    """
    Explain that a numeric setting could not be parsed.
    """

    return f"Invalid {key} value: {value!r}. Expected a number."


def explain_invalid_protocol(value: str | None) -> str:
    """
    Explain that N8N_PROTOCOL is invalid.
    """

    return f"Invalid N8N_PROTOCOL value: {value!r}. Expected 'http' or 'https'."


def explain_missing_update_versions() -> str:
    """
    Explain that an update needs at least one target version.
    """

    return (
        "No version parameters provided. "
        "Pass --app-version and/or --db-version to choose what to update."
    )


def explain_bad_artifact_path(path: Path) -> str:
    """
    Explain that a restore target is not a usable archive path.
    """

    if not path.exists():
        return f"Backup file not found: {path}"
    return f"Backup file must be a .tar.gz file: {path}"
