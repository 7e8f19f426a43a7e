# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops Exceptions - Custom exceptions for the n8nops package.

Orchestrators attach ``details["step"]`` to every fatal error so the CLI
can name the step that failed.
"""


class OpsError(Exception):
    """Base exception for all n8n-ops errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    @property
    def step(self) -> str | None:
        return self.details.get("step")

    @property
    def services_stopped(self) -> bool | None:
        return self.details.get("services_stopped")

    def at_step(self, step: str, **details) -> "OpsError":
        """Record the step that failed (and extra context), returning self."""
        self.details.setdefault("step", step)
        self.details.update(details)
        return self


class ConfigurationError(OpsError):
    """Raised when persisted configuration is missing or invalid."""

    pass


class InvalidRequest(OpsError):
    """Raised when caller input is malformed, before any side effect."""

    pass


class PreconditionFailed(OpsError):
    """Raised when a required service is not in the expected state."""

    pass


class DumpFailed(OpsError):
    """Raised when the database dump facility fails."""

    pass


class RestoreFailed(OpsError):
    """Raised when dropping, recreating or restoring the database fails."""

    pass


class CorruptArchive(OpsError):
    """Raised when a backup archive is structurally invalid."""

    pass


class ReadinessTimeout(OpsError):
    """Raised when a caller treats a timed-out readiness probe as fatal."""

    pass


class ArtifactIOError(OpsError):
    """Raised when the artifact store cannot write or read on disk."""

    pass


class ComposeError(OpsError):
    """Raised when the orchestration boundary cannot carry out an action."""

    pass


class LockHeldError(OpsError):
    """Raised when another run of the same kind holds the lock."""

    pass


class JournalError(OpsError):
    """Raised when the run journal cannot be read or written."""

    pass
