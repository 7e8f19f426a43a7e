# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Archive store, backup and restore orchestration.
"""

from n8nops.backup.store import (
    ArtifactRef,
    ArtifactStore,
    RetentionResult,
    StagingArea,
)

from n8nops.backup.orchestrator import (
    BackupResult,
    run_backup,
)

from n8nops.backup.restore import (
    RestoreMachine,
    RestoreResult,
    RestoreStage,
    run_restore,
    validate_artifact_path,
)

__all__ = [
    # Store
    "ArtifactRef",
    "ArtifactStore",
    "RetentionResult",
    "StagingArea",
    # Backup
    "BackupResult",
    "run_backup",
    # Restore
    "RestoreMachine",
    "RestoreResult",
    "RestoreStage",
    "run_restore",
    "validate_artifact_path",
]
