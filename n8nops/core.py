# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops Core - Runtime wiring and the scope every orchestrator runs in.

This module builds the components the orchestrators share (orchestration
boundary, service controller, health prober, artifact store) and provides
operation_scope, which serializes runs of one kind and journals them.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, TypedDict

import aiosqlite
import structlog
from ulid import ULID

from n8nops.compose import ComposeBoundary, DockerCompose
from n8nops.config import OpsConfig
from n8nops.exceptions import JournalError, OpsError
from n8nops.health import HealthProber
from n8nops.journal import init_journal_db, record_run_finished, record_run_started
from n8nops.locking import RunLock
from n8nops.services import ServiceController

if TYPE_CHECKING:
    from n8nops.backup.store import ArtifactStore

logger = structlog.get_logger()

# Run kinds, one lock each
KIND_BACKUP = "backup"
KIND_RESTORE = "restore"
KIND_UPDATE = "update"


class OpsState(TypedDict):
    """Components shared by the orchestrators for one process."""

    config: OpsConfig
    compose: ComposeBoundary
    controller: ServiceController
    prober: HealthProber
    store: "ArtifactStore"


def initialize_ops_state(
    config: OpsConfig,
    compose: ComposeBoundary | None = None,
    sleep=asyncio.sleep,
    http_check=None,
) -> OpsState:
    """
    Build the runtime components for a configuration.

    Args:
        config: n8n-ops configuration
        compose: Orchestration boundary (default: docker compose CLI)
        sleep: Sleep used between readiness probes
        http_check: Application health check (default: HTTP GET)
    """
    from n8nops.backup.store import ArtifactStore

    if compose is None:
        compose = DockerCompose(config.compose_file, config.project_dir)

    controller = ServiceController(compose, config)

    return OpsState(
        config=config,
        compose=compose,
        controller=controller,
        prober=HealthProber(controller, sleep=sleep, http_check=http_check),
        store=ArtifactStore.from_config(config),
    )


@dataclass
class RunContext:
    """Mutable record of an in-flight run, journaled when it ends."""

    run_id: str
    kind: str
    artifact_path: str | None = None
    details: dict = field(default_factory=dict)


@asynccontextmanager
async def operation_scope(
    config: OpsConfig,
    kind: str,
    details: dict | None = None,
) -> AsyncIterator[RunContext]:
    """
    Hold the run lock for kind and journal the run.

    The run is recorded as started on entry and as succeeded or failed
    on exit; the lock is released on every exit path.

    Raises:
        LockHeldError: If another run of the same kind is in progress
    """
    async with RunLock(config.lock_dir, kind):
        await init_journal_db(config.journal_path)

        async with aiosqlite.connect(config.journal_path) as db:
            run = RunContext(run_id=str(ULID()), kind=kind, details=dict(details or {}))
            await record_run_started(db, run.run_id, kind, run.details)

            with structlog.contextvars.bound_contextvars(run_id=run.run_id, kind=kind):
                logger.info("run_started")
                try:
                    yield run
                except BaseException as e:
                    if isinstance(e, OpsError):
                        message = e.message
                        run.details.update(e.details)
                    else:
                        message = str(e) or type(e).__name__

                    try:
                        await record_run_finished(
                            db,
                            run.run_id,
                            artifact_path=run.artifact_path,
                            error=message,
                            details=run.details,
                        )
                    except JournalError as journal_error:
                        logger.warning("run_journal_write_failed", error=journal_error.message)

                    logger.error("run_failed", error=message, step=run.details.get("step"))
                    raise

                await record_run_finished(
                    db,
                    run.run_id,
                    artifact_path=run.artifact_path,
                    details=run.details,
                )
                logger.info("run_succeeded", artifact=run.artifact_path)
