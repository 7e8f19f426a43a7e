# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore Orchestrator - Bring the database and application state back
from a backup archive.

The restore is a strictly ordered state machine:

    RUNNING_OLD -> STOPPED -> DB_ONLY_RUNNING -> DB_RESTORED -> DB_STOPPED
        -> APP_ONLY_RUNNING -> APP_RESTORED -> APP_STOPPED     (state present)
        -> RUNNING_RESTORED -> HEALTH_VERIFIED

Archives without application state go from DB_STOPPED straight to
RUNNING_RESTORED. A failure after services were stopped leaves them
stopped; a failed final health check leaves them running for inspection.
Nothing is rolled back automatically.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List

import structlog

from n8nops.backup.store import ARCHIVE_SUFFIX, ArtifactRef, ArtifactStore, StagingArea
from n8nops.config import APP_SERVICE, DB_SERVICE, OpsConfig
from n8nops.core import KIND_RESTORE, operation_scope
from n8nops.errors import explain_bad_artifact_path
from n8nops.exceptions import InvalidRequest, OpsError, ReadinessTimeout
from n8nops.health import HealthProber, ProbeOutcome
from n8nops.services import CopyDirection, ServiceController

logger = structlog.get_logger()


class RestoreStage(str, Enum):
    """Named states of a restore run."""

    RUNNING_OLD = "running_old"
    STOPPED = "stopped"
    DB_ONLY_RUNNING = "db_only_running"
    DB_RESTORED = "db_restored"
    DB_STOPPED = "db_stopped"
    APP_ONLY_RUNNING = "app_only_running"
    APP_RESTORED = "app_restored"
    APP_STOPPED = "app_stopped"
    RUNNING_RESTORED = "running_restored"
    HEALTH_VERIFIED = "health_verified"


TRANSITIONS: Dict[RestoreStage, FrozenSet[RestoreStage]] = {
    RestoreStage.RUNNING_OLD: frozenset({RestoreStage.STOPPED}),
    RestoreStage.STOPPED: frozenset({RestoreStage.DB_ONLY_RUNNING}),
    RestoreStage.DB_ONLY_RUNNING: frozenset({RestoreStage.DB_RESTORED}),
    RestoreStage.DB_RESTORED: frozenset({RestoreStage.DB_STOPPED}),
    RestoreStage.DB_STOPPED: frozenset(
        {RestoreStage.APP_ONLY_RUNNING, RestoreStage.RUNNING_RESTORED}
    ),
    RestoreStage.APP_ONLY_RUNNING: frozenset({RestoreStage.APP_RESTORED}),
    RestoreStage.APP_RESTORED: frozenset({RestoreStage.APP_STOPPED}),
    RestoreStage.APP_STOPPED: frozenset({RestoreStage.RUNNING_RESTORED}),
    RestoreStage.RUNNING_RESTORED: frozenset({RestoreStage.HEALTH_VERIFIED}),
    RestoreStage.HEALTH_VERIFIED: frozenset(),
}

# Stages in which the managed services are (at least partly) shut down
_STOPPED_STAGES = frozenset(
    {
        RestoreStage.STOPPED,
        RestoreStage.DB_ONLY_RUNNING,
        RestoreStage.DB_RESTORED,
        RestoreStage.DB_STOPPED,
        RestoreStage.APP_ONLY_RUNNING,
        RestoreStage.APP_RESTORED,
        RestoreStage.APP_STOPPED,
    }
)


@dataclass
class RestoreResult:
    """Result of a restore run."""

    run_id: str
    artifact: ArtifactRef
    database_restored: bool
    app_state_restored: bool
    stages: List[RestoreStage]
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def validate_artifact_path(path: Path) -> Path:
    """
    Check a restore target before anything is touched.

    Raises:
        InvalidRequest: If the file does not exist or is not a .tar.gz
    """
    if not path.is_file() or not path.name.endswith(ARCHIVE_SUFFIX):
        raise InvalidRequest(
            explain_bad_artifact_path(path),
            details={"step": "validate_request", "path": str(path)},
        )
    return path


class RestoreMachine:
    """
    Drives one restore through its stages.

    Each transition method performs exactly one service action and then
    advances the stage; illegal transitions raise RuntimeError.
    """

    def __init__(
        self,
        controller: ServiceController,
        prober: HealthProber,
    ) -> None:
        self.controller = controller
        self.prober = prober
        self.stage = RestoreStage.RUNNING_OLD
        self.history: List[RestoreStage] = [RestoreStage.RUNNING_OLD]

    def advance(self, target: RestoreStage) -> None:
        if target not in TRANSITIONS[self.stage]:
            raise RuntimeError(f"Illegal restore transition {self.stage.value} -> {target.value}")
        logger.debug("restore_stage", previous=self.stage.value, stage=target.value)
        self.stage = target
        self.history.append(target)

    @property
    def services_stopped(self) -> bool:
        return self.stage in _STOPPED_STAGES

    async def stop_all(self) -> None:
        await self.controller.stop()
        self.advance(RestoreStage.STOPPED)

    async def start_database_only(self) -> None:
        await self.controller.start([DB_SERVICE])
        outcome = await self.prober.wait_ready(DB_SERVICE)
        if outcome != ProbeOutcome.READY:
            raise ReadinessTimeout(
                "PostgreSQL did not become ready",
                details={"service": DB_SERVICE},
            )
        self.advance(RestoreStage.DB_ONLY_RUNNING)

    async def restore_database(self, area: StagingArea) -> None:
        await self.controller.exec_restore(area.dump_path)
        self.advance(RestoreStage.DB_RESTORED)

    async def stop_database(self) -> None:
        await self.controller.stop([DB_SERVICE])
        self.advance(RestoreStage.DB_STOPPED)

    async def start_application_only(self) -> None:
        await self.controller.start([APP_SERVICE])
        outcome = await self.prober.wait_running(APP_SERVICE)
        if outcome != ProbeOutcome.READY:
            raise ReadinessTimeout(
                "n8n container did not start",
                details={"service": APP_SERVICE},
            )
        self.advance(RestoreStage.APP_ONLY_RUNNING)

    async def restore_application_state(self, area: StagingArea) -> None:
        await self.controller.copy_state(APP_SERVICE, CopyDirection.INBOUND, area.app_state_path)
        self.advance(RestoreStage.APP_RESTORED)

    async def stop_application(self) -> None:
        await self.controller.stop([APP_SERVICE])
        self.advance(RestoreStage.APP_STOPPED)

    async def start_all(self) -> None:
        await self.controller.start()
        self.advance(RestoreStage.RUNNING_RESTORED)

    async def verify_health(self) -> None:
        outcome = await self.prober.wait_ready(APP_SERVICE)
        if outcome != ProbeOutcome.READY:
            raise ReadinessTimeout(
                "n8n did not become ready after restore. "
                "Check the logs with: docker compose logs n8n",
                details={"service": APP_SERVICE},
            )
        self.advance(RestoreStage.HEALTH_VERIFIED)

    async def leave_stopped(self) -> bool:
        """Stop everything after a failure; False if that failed too."""
        try:
            await self.controller.stop()
        except OpsError as e:
            logger.error("restore_cleanup_stop_failed", error=e.message)
            return False
        return True


async def run_restore(
    config: OpsConfig,
    controller: ServiceController,
    prober: HealthProber,
    artifact: Path | ArtifactRef,
    store: ArtifactStore | None = None,
) -> RestoreResult:
    """
    Restore the database and application state from an archive.

    Args:
        config: n8n-ops configuration
        controller: Service controller for the managed services
        prober: Health prober for readiness checks
        artifact: Archive path or reference
        store: Artifact store used to extract the archive

    Returns:
        RestoreResult with the stages walked through

    Raises:
        InvalidRequest: If the archive path is not a .tar.gz file
        CorruptArchive: If the archive cannot be extracted or has no dump
        RestoreFailed: If the database restore fails
        ReadinessTimeout: If a service does not become ready
    """
    store = store or ArtifactStore.from_config(config)
    if isinstance(artifact, Path):
        ref = store.ref_for(validate_artifact_path(artifact))
    else:
        ref = artifact

    start_time = datetime.now(UTC)
    warnings: List[str] = []

    async with operation_scope(config, KIND_RESTORE, {"artifact": str(ref.path)}) as run:
        run.artifact_path = str(ref.path)
        logger.info("restore_started", artifact=str(ref.path))

        # 1. Open the archive before any service is touched
        try:
            area = await store.open(ref)
        except OpsError as e:
            raise e.at_step("open_archive", services_stopped=False)

        machine = RestoreMachine(controller, prober)

        try:
            has_app_state = area.has_app_state()
            if not has_app_state:
                logger.warning("archive_without_application_state", artifact=str(ref.path))
                warnings.append("n8n data directory not found in archive, only the database was restored")

            steps = [
                ("stop_services", machine.stop_all),
                ("start_database", machine.start_database_only),
                ("restore_database", lambda: machine.restore_database(area)),
                ("stop_database", machine.stop_database),
            ]
            if has_app_state:
                steps += [
                    ("start_application", machine.start_application_only),
                    ("restore_application_state", lambda: machine.restore_application_state(area)),
                    ("stop_application", machine.stop_application),
                ]
            steps += [
                ("start_services", machine.start_all),
                ("verify_health", machine.verify_health),
            ]

            for step, action in steps:
                try:
                    await action()
                except OpsError as e:
                    services_stopped = False
                    if machine.services_stopped:
                        services_stopped = await machine.leave_stopped()
                    raise e.at_step(
                        step,
                        services_stopped=services_stopped,
                        stage=machine.stage.value,
                    )
        finally:
            area.discard()

        duration = (datetime.now(UTC) - start_time).total_seconds()
        run.details.update({"app_state_restored": has_app_state})

        logger.info(
            "restore_completed",
            artifact=str(ref.path),
            app_state=has_app_state,
            duration=duration,
        )

        return RestoreResult(
            run_id=run.run_id,
            artifact=ref,
            database_restored=True,
            app_state_restored=has_app_state,
            stages=list(machine.history),
            warnings=warnings,
            duration_seconds=duration,
        )
