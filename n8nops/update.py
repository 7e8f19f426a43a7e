# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Update Orchestrator - Move the application and/or database to new image
versions behind a fresh backup.

Steps, in order:
1. Reject requests without any target version (no side effects)
2. Resolve target versions against the configured ones
3. Back up (abort without touching versions if this fails)
4. Persist the new versions
5. Ask the operator to confirm a database major version change
6. Pull images and restart all services
7. Verify both services are ready

A failed update is never rolled back automatically; the error names the
backup taken in step 3 so the operator can restore it.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Dict, List

import structlog

from n8nops.backup.orchestrator import BackupResult, run_backup
from n8nops.backup.store import ArtifactStore
from n8nops.config import APP_SERVICE, DB_SERVICE, OpsConfig, VersionSpec
from n8nops.core import KIND_UPDATE, operation_scope
from n8nops.env import write_versions
from n8nops.errors import explain_missing_update_versions
from n8nops.exceptions import ArtifactIOError, InvalidRequest, OpsError, ReadinessTimeout
from n8nops.health import HealthProber, ProbeOutcome
from n8nops.services import ServiceController

logger = structlog.get_logger()

# Operator confirmation for breaking changes; receives the prompt text
Confirm = Callable[[str], bool]

_MAJOR_RE = re.compile(r"^\s*v?(\d+)")


@dataclass
class UpdateResult:
    """Result of an update run."""

    run_id: str
    previous: VersionSpec
    target: VersionSpec
    backup: BackupResult
    config: OpsConfig
    breaking_change: bool = False
    aborted: bool = False
    running_versions: Dict[str, str | None] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def validate_update_request(request: VersionSpec) -> None:
    """
    Reject an update request that names no target version.

    Raises:
        InvalidRequest: If both versions are unset
    """
    if request.is_empty:
        raise InvalidRequest(
            explain_missing_update_versions(),
            details={"step": "validate_request"},
        )


def resolve_target_versions(config: OpsConfig, request: VersionSpec) -> VersionSpec:
    """Explicit versions win over the configured ones."""
    return VersionSpec(
        app_version=request.app_version or config.app_version,
        db_version=request.db_version or config.db_version,
    )


def major_version(version: str | None) -> str | None:
    """Leading major number of a version or image tag ("14.17-alpine" -> "14")."""
    if not version:
        return None
    match = _MAJOR_RE.match(version)
    return match.group(1) if match else None


def is_breaking_change(current_db_version: str | None, target_db_version: str) -> bool:
    """
    True when the database major version changes.

    An unknown current version is not treated as breaking.
    """
    current = major_version(current_db_version)
    target = major_version(target_db_version)
    if current is None or target is None:
        return False
    return current != target


async def run_update(
    config: OpsConfig,
    controller: ServiceController,
    prober: HealthProber,
    request: VersionSpec,
    env_path: Path,
    confirm: Confirm | None = None,
    store: ArtifactStore | None = None,
) -> UpdateResult:
    """
    Update the managed services to new versions.

    Args:
        config: n8n-ops configuration
        controller: Service controller for the managed services
        prober: Health prober for post-update verification
        request: Requested versions (unset fields stay unchanged)
        env_path: .env file holding the stored versions
        confirm: Asked once before a database major version change;
            without it such updates are aborted
        store: Artifact store for the pre-update backup

    Returns:
        UpdateResult; aborted is True when the operator declined

    Raises:
        InvalidRequest: If no target version is given
        ReadinessTimeout: If a service is not ready after the restart
    """
    # 1. Validation happens before anything else, including the lock
    validate_update_request(request)

    start_time = datetime.now(UTC)
    warnings: List[str] = []

    async with operation_scope(config, KIND_UPDATE) as run:
        # 2. Versions
        target = resolve_target_versions(config, request)
        previous = VersionSpec(app_version=config.app_version, db_version=config.db_version)

        current_app = await controller.running_version(APP_SERVICE)
        current_db = await controller.running_version(DB_SERVICE)

        logger.info(
            "update_started",
            current_app_version=current_app or "unknown",
            current_db_version=current_db or "unknown",
            target_app_version=target.app_version,
            target_db_version=target.db_version,
        )

        if current_db is None:
            logger.warning("current_database_version_unknown")
            warnings.append("Current PostgreSQL version is unknown, major version check skipped")

        run.details.update(
            {
                "target_app_version": target.app_version,
                "target_db_version": target.db_version,
            }
        )

        # 3. Pre-update backup
        try:
            backup = await run_backup(config, controller, store)
        except OpsError as e:
            e.details["backup_step"] = e.details.get("step")
            e.details["step"] = "pre_update_backup"
            e.details["services_stopped"] = False
            raise
        run.artifact_path = str(backup.artifact.path)
        backup_hint = {"backup_artifact": str(backup.artifact.path)}

        # 4. Persist versions
        try:
            updated = write_versions(
                config,
                env_path,
                app_version=target.app_version,
                db_version=target.db_version,
            )
        except OSError as e:
            raise ArtifactIOError(
                f"Failed to write new versions to {env_path}: {e}",
                details={"step": "write_versions", "services_stopped": False, **backup_hint},
            ) from e

        # 5. Breaking change gate
        breaking = is_breaking_change(current_db, target.db_version)
        if breaking:
            logger.warning(
                "database_major_version_change",
                current=major_version(current_db),
                target=major_version(target.db_version),
            )
            prompt = (
                f"Major PostgreSQL version upgrade detected "
                f"({major_version(current_db)} -> {major_version(target.db_version)}). "
                "This may not be compatible with your data. Continue with the update?"
            )
            accepted = confirm(prompt) if confirm is not None else False
            if not accepted:
                logger.info("update_aborted_by_operator", backup=str(backup.artifact.path))
                run.details["aborted"] = True
                return UpdateResult(
                    run_id=run.run_id,
                    previous=previous,
                    target=target,
                    backup=backup,
                    config=updated,
                    breaking_change=True,
                    aborted=True,
                    warnings=warnings + backup.warnings,
                    duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
                )

        # 6. Pull and restart
        try:
            await controller.pull_images()
        except OpsError as e:
            raise e.at_step("pull_images", services_stopped=False, **backup_hint)

        stopped = False
        try:
            await controller.stop()
            stopped = True
            await controller.start()
            stopped = False
        except OpsError as e:
            raise e.at_step("restart_services", services_stopped=stopped, **backup_hint)

        # 7. Verify
        for service in (APP_SERVICE, DB_SERVICE):
            outcome = await prober.wait_ready(service)
            if outcome != ProbeOutcome.READY:
                raise ReadinessTimeout(
                    f"{service} did not start properly after update. "
                    f"Check the logs with: docker compose logs {service}. "
                    f"Consider reverting to the previous version or restoring "
                    f"from backup {backup.artifact.path}",
                    details={
                        "step": "verify_health",
                        "service": service,
                        "services_stopped": False,
                        **backup_hint,
                    },
                )

        running_versions = {
            APP_SERVICE: await controller.running_version(APP_SERVICE),
            DB_SERVICE: await controller.running_version(DB_SERVICE),
        }
        duration = (datetime.now(UTC) - start_time).total_seconds()

        logger.info(
            "update_completed",
            app_version=running_versions[APP_SERVICE] or "unknown",
            db_version=running_versions[DB_SERVICE] or "unknown",
            duration=duration,
        )

        return UpdateResult(
            run_id=run.run_id,
            previous=previous,
            target=target,
            backup=backup,
            config=updated,
            breaking_change=breaking,
            running_versions=running_versions,
            warnings=warnings + backup.warnings,
            duration_seconds=duration,
        )
