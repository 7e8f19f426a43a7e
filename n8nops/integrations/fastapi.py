# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops FastAPI Integration - Admin endpoints for a FastAPI application.

This module exposes read-only status and an on-demand backup over HTTP:
- Service health and backup directory checks
- Archive and run history listings, single run lookup
- Triggering a backup
- Configuration with credentials redacted

Restore and update stay on the command line; they need an operator.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import List

import aiosqlite
import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from n8nops.backup.orchestrator import run_backup
from n8nops.compose import ComposeBoundary
from n8nops.config import APP_SERVICE, DB_SERVICE, OpsConfig
from n8nops.core import OpsState, initialize_ops_state
from n8nops.exceptions import LockHeldError, OpsError, PreconditionFailed
from n8nops.health import ServiceState
from n8nops.journal import get_run, init_journal_db, latest_successful_backup, list_runs

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


class ArtifactInfo(BaseModel):
    name: str
    path: str
    timestamp: datetime
    size_bytes: int


class BackupResponse(BaseModel):
    run_id: str
    artifact: ArtifactInfo
    database_only: bool
    app_state_included: bool
    secondary_state_included: bool
    retention_removed: int
    warnings: List[str]
    duration_seconds: float


class HealthResponse(BaseModel):
    status: str
    services: dict
    backup_dir_writable: bool
    last_backup: str | None
    last_backup_at: str | None
    timestamp: datetime


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the N8N_OPS_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("N8N_OPS_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="N8N_OPS_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _backup_dir_writable(config: OpsConfig) -> bool:
    directory = config.backup_dir
    if directory.is_dir():
        return os.access(directory, os.W_OK)
    return os.access(directory.parent, os.W_OK)


def register_ops_routes(
    app: FastAPI,
    state: OpsState,
    prefix: str = "/admin/n8nops",
) -> None:
    """
    Register n8n-ops admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        state: Runtime components from initialize_ops_state
        prefix: URL prefix for endpoints (default: /admin/n8nops)
    """
    config = state["config"]

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Reports each managed service's state, whether backups can be
        written, and the most recent successful backup.
        """
        services = {}
        for service in (APP_SERVICE, DB_SERVICE):
            try:
                services[service] = (await state["prober"].observe(service)).value
            except OpsError as e:
                logger.warning("service_observe_failed", service=service, error=e.message)
                services[service] = ServiceState.UNHEALTHY.value

        writable = _backup_dir_writable(config)
        ready = all(value == ServiceState.READY.value for value in services.values())

        status = "healthy"
        if not ready or not writable:
            status = "degraded"
        if services[DB_SERVICE] == ServiceState.STOPPED.value:
            status = "unhealthy"

        await init_journal_db(config.journal_path)
        async with aiosqlite.connect(config.journal_path) as db:
            last = await latest_successful_backup(db)

        return HealthResponse(
            status=status,
            services=services,
            backup_dir_writable=writable,
            last_backup=last["artifact_path"] if last else None,
            last_backup_at=last["completed_at"] if last else None,
            timestamp=datetime.now(UTC),
        )

    @app.get(f"{prefix}/artifacts", dependencies=[Depends(verify_api_key)])
    async def list_artifacts() -> List[ArtifactInfo]:
        """
        List backup archives, newest first.
        """
        return [
            ArtifactInfo(
                name=ref.name,
                path=str(ref.path),
                timestamp=ref.timestamp,
                size_bytes=ref.size_bytes(),
            )
            for ref in state["store"].list_artifacts()
        ]

    @app.get(f"{prefix}/runs", dependencies=[Depends(verify_api_key)])
    async def list_ops_runs(
        limit: int = 50,
        offset: int = 0,
        kind: str | None = None,
    ) -> list:
        """
        List backup, restore and update runs with pagination.

        Args:
            limit: Maximum number of runs to return
            offset: Number of runs to skip
            kind: Filter by kind (backup, restore, update)
        """
        await init_journal_db(config.journal_path)
        async with aiosqlite.connect(config.journal_path) as db:
            return await list_runs(db, limit, offset, kind)

    @app.get(f"{prefix}/runs/{{run_id}}", dependencies=[Depends(verify_api_key)])
    async def get_ops_run(run_id: str) -> dict:
        """
        Get one run by id.

        Raises:
            HTTPException: 404 if no run has this id
        """
        await init_journal_db(config.journal_path)
        async with aiosqlite.connect(config.journal_path) as db:
            record = await get_run(db, run_id)

        if record is None:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        return record

    @app.post(f"{prefix}/backup", dependencies=[Depends(verify_api_key)])
    async def trigger_backup() -> BackupResponse:
        """
        Run a backup now.

        Returns the new archive and the retention outcome.
        """
        try:
            result = await run_backup(config, state["controller"], state["store"])
        except (LockHeldError, PreconditionFailed) as e:
            raise HTTPException(
                status_code=409,
                detail={"step": e.step, "message": e.message},
            ) from e
        except OpsError as e:
            logger.error("admin_backup_failed", step=e.step, error=e.message)
            raise HTTPException(
                status_code=500,
                detail={"step": e.step, "message": e.message},
            ) from e

        return BackupResponse(
            run_id=result.run_id,
            artifact=ArtifactInfo(
                name=result.artifact.name,
                path=str(result.artifact.path),
                timestamp=result.artifact.timestamp,
                size_bytes=result.size_bytes,
            ),
            database_only=result.database_only,
            app_state_included=result.app_state_included,
            secondary_state_included=result.secondary_state_included,
            retention_removed=result.retention_removed,
            warnings=result.warnings,
            duration_seconds=result.duration_seconds,
        )

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return config.redacted()


@asynccontextmanager
async def ops_lifespan(
    app: FastAPI,
    config: OpsConfig,
    compose: ComposeBoundary | None = None,
    prefix: str = "/admin/n8nops",
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: ops_lifespan(app, config))

    Args:
        app: FastAPI application
        config: n8n-ops configuration
        compose: Orchestration boundary (default: docker compose CLI)
        prefix: URL prefix for admin endpoints
    """
    logger.info("ops_lifespan_starting", project_dir=str(config.project_dir))

    state = initialize_ops_state(config, compose)
    await init_journal_db(config.journal_path)
    app.state.n8nops_state = state

    register_ops_routes(app, state, prefix)

    logger.info("ops_lifespan_started")
    try:
        yield
    finally:
        app.state.n8nops_state = None
        logger.info("ops_lifespan_stopped")


def get_ops_state(app: FastAPI) -> OpsState:
    """
    Get n8n-ops state from a FastAPI app.

    Raises:
        RuntimeError: If the lifespan has not run
    """
    state = getattr(app.state, "n8nops_state", None)
    if not state:
        raise RuntimeError("n8n-ops not initialized. Use ops_lifespan first.")
    return state
