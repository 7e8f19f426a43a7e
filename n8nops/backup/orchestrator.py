# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Orchestrator - One consistent backup of the database and the
application state.

Steps, in order:
1. Check the database service is running (fatal)
2. Check the application service (database-only backup when stopped)
3. Dump the database into the staging area (fatal)
4. Copy the application state (best-effort)
5. Copy the secondary application state (best-effort)
6. Commit the staging area to an archive (fatal)
7. Apply retention
"""

import shutil
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import List

import structlog

from n8nops.backup.store import (
    APP_STATE_DIRNAME,
    DUMP_FILENAME,
    SECONDARY_STATE_DIRNAME,
    ArtifactRef,
    ArtifactStore,
    StagingArea,
    calculate_dump_hash,
)
from n8nops.config import APP_SERVICE, DB_SERVICE, OpsConfig
from n8nops.core import KIND_BACKUP, operation_scope
from n8nops.exceptions import ArtifactIOError, ComposeError, OpsError, PreconditionFailed
from n8nops.services import SECONDARY_SERVICE, CopyDirection, ServiceController

logger = structlog.get_logger()

MANIFEST_FORMAT_VERSION = 1

# Step names reported in errors
STEP_CHECK_DATABASE = "check_database"
STEP_DUMP_DATABASE = "dump_database"
STEP_COMMIT_ARCHIVE = "commit_archive"


@dataclass
class BackupResult:
    """Result of a backup run."""

    run_id: str
    artifact: ArtifactRef
    size_bytes: int
    database_only: bool
    app_state_included: bool
    secondary_state_included: bool
    retention_removed: int
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


async def run_backup(
    config: OpsConfig,
    controller: ServiceController,
    store: ArtifactStore | None = None,
    now: datetime | None = None,
) -> BackupResult:
    """
    Produce one backup archive and prune archives past the retention age.

    Args:
        config: n8n-ops configuration
        controller: Service controller for the managed services
        store: Artifact store (default: the configured backup directory)
        now: Archive timestamp (default: current local time)

    Returns:
        BackupResult describing the new archive

    Raises:
        PreconditionFailed: If the database service is not running
        DumpFailed: If the database dump fails
        ArtifactIOError: If the archive cannot be written
    """
    store = store or ArtifactStore.from_config(config)
    start_time = datetime.now(UTC)
    timestamp = now or datetime.now()
    warnings: List[str] = []

    async with operation_scope(config, KIND_BACKUP) as run:
        logger.info("backup_started", backup_dir=str(store.backup_dir))

        # 1-2. Service checks
        try:
            running = await controller.running_services()
        except ComposeError as e:
            raise e.at_step(STEP_CHECK_DATABASE)

        if DB_SERVICE not in running:
            raise PreconditionFailed(
                "PostgreSQL container is not running",
                details={"step": STEP_CHECK_DATABASE, "service": DB_SERVICE},
            )

        app_running = APP_SERVICE in running
        if not app_running:
            logger.warning("application_not_running_database_only", service=APP_SERVICE)
            warnings.append("n8n is not running, only the database was backed up")

        async with store.staging(timestamp) as area:
            # 3. Database dump
            try:
                dump_size = await controller.exec_dump(area.dump_path)
                dump_sha256 = await calculate_dump_hash(area.dump_path)
            except OpsError as e:
                raise e.at_step(STEP_DUMP_DATABASE)
            except OSError as e:
                raise ArtifactIOError(
                    f"Failed to write database dump: {e}",
                    details={"step": STEP_DUMP_DATABASE},
                ) from e

            # 4. Application state
            app_included = False
            if app_running:
                app_included = await _copy_best_effort(
                    controller,
                    area,
                    APP_SERVICE,
                    APP_STATE_DIRNAME,
                    "application_state_backup_failed",
                    warnings,
                )

            # 5. Secondary application state, only when present on disk
            secondary_included = False
            secondary_dir = config.secondary_data_dir
            if secondary_dir is not None and secondary_dir.is_dir():
                secondary_included = await _copy_best_effort(
                    controller,
                    area,
                    SECONDARY_SERVICE,
                    SECONDARY_STATE_DIRNAME,
                    "secondary_state_backup_failed",
                    warnings,
                )

            # 6. Manifest and commit
            manifest = build_manifest(
                config,
                store,
                timestamp,
                dump_sha256,
                dump_size,
                app_included,
                secondary_included,
            )
            try:
                await area.write_manifest(manifest)
            except OSError as e:
                raise ArtifactIOError(
                    f"Failed to write archive manifest: {e}",
                    details={"step": STEP_COMMIT_ARCHIVE},
                ) from e

            try:
                artifact = await store.commit(area)
            except OpsError as e:
                raise e.at_step(STEP_COMMIT_ARCHIVE)

        run.artifact_path = str(artifact.path)

        # 7. Retention
        removed = 0
        try:
            removed = len(store.apply_retention(config.retention_days).deleted)
        except OSError as e:
            logger.warning("retention_sweep_failed", error=str(e))
            warnings.append(f"Retention sweep failed: {e}")

        size = artifact.size_bytes()
        run.details.update(
            {
                "size_bytes": size,
                "database_only": not app_included,
                "retention_removed": removed,
            }
        )

        duration = (datetime.now(UTC) - start_time).total_seconds()

        logger.info(
            "backup_completed",
            artifact=str(artifact.path),
            size=size,
            app_state=app_included,
            secondary_state=secondary_included,
            retention_removed=removed,
            duration=duration,
        )

        return BackupResult(
            run_id=run.run_id,
            artifact=artifact,
            size_bytes=size,
            database_only=not app_included,
            app_state_included=app_included,
            secondary_state_included=secondary_included,
            retention_removed=removed,
            warnings=warnings,
            duration_seconds=duration,
        )


async def _copy_best_effort(
    controller: ServiceController,
    area: StagingArea,
    service: str,
    dirname: str,
    failure_event: str,
    warnings: List[str],
) -> bool:
    """Copy a service's state into the staging area, logging failures."""
    target = area.path / dirname
    try:
        await controller.copy_state(service, CopyDirection.OUTBOUND, target)
        return True
    except (ComposeError, OSError) as e:
        logger.warning(failure_event, service=service, error=str(e))
        warnings.append(f"{service} data could not be backed up: {e}")
        # A half-copied directory must not look like valid state in the archive
        shutil.rmtree(target, ignore_errors=True)
        return False


def build_manifest(
    config: OpsConfig,
    store: ArtifactStore,
    timestamp: datetime,
    dump_sha256: str,
    dump_size: int,
    app_included: bool,
    secondary_included: bool,
) -> dict:
    """Describe an archive's contents, including the dump checksum."""
    contents = [DUMP_FILENAME]
    if app_included:
        contents.append(APP_STATE_DIRNAME)
    if secondary_included:
        contents.append(SECONDARY_STATE_DIRNAME)

    return {
        "format_version": MANIFEST_FORMAT_VERSION,
        "created_at": timestamp.isoformat(),
        "prefix": store.prefix,
        "app_version": config.app_version,
        "db_version": config.db_version,
        "database": config.database.name,
        "dump_sha256": dump_sha256,
        "dump_size": dump_size,
        "contents": contents,
    }
