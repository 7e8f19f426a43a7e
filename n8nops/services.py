# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Service Controller - Start, stop, query and operate on the managed
services through the orchestration boundary.

Start and stop are idempotent. Database dump and restore go through the
database service's own tools in PostgreSQL custom format so restores can
be selective and order-independent.
"""

import asyncio
import shutil
from enum import Enum
from pathlib import Path
from typing import Dict, NamedTuple, Sequence, Set

import structlog

from n8nops.compose import ComposeBoundary, ContainerStatus
from n8nops.config import APP_SERVICE, DB_SERVICE, DatabaseCredentials, OpsConfig
from n8nops.exceptions import ComposeError, DumpFailed, RestoreFailed

logger = structlog.get_logger()

# Secondary application whose state is archived when present on disk
SECONDARY_SERVICE = "pgadmin"


class CopyDirection(str, Enum):
    """Direction of a state copy."""

    OUTBOUND = "outbound"  # service -> local path (backup)
    INBOUND = "inbound"  # local path -> service (restore)


class StateLocation(NamedTuple):
    """Where a service keeps its persistent state."""

    container_path: str | None
    local_dir: Path | None


class ServiceController:
    """Operations on the application and database services."""

    def __init__(self, compose: ComposeBoundary, config: OpsConfig) -> None:
        self.compose = compose
        self.config = config
        self.state_locations: Dict[str, StateLocation] = {
            APP_SERVICE: StateLocation(config.app_container_state_path, config.app_data_dir),
            SECONDARY_SERVICE: StateLocation(None, config.secondary_data_dir),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, services: Sequence[str] | None = None) -> None:
        """Start the named services, or all of them when None."""
        await self.compose.up(list(services) if services else None)
        logger.info("services_started", services=list(services) if services else "all")

    async def stop(self, services: Sequence[str] | None = None) -> None:
        """
        Stop the named services, or all of them when None.

        Stopping services that are already stopped is a no-op.
        """
        if services is None:
            await self.compose.down()
            logger.info("services_stopped", services="all")
            return

        running = await self.running_services()
        targets = [name for name in services if name in running]
        if not targets:
            logger.debug("services_already_stopped", services=list(services))
            return

        await self.compose.stop(targets)
        logger.info("services_stopped", services=targets)

    async def statuses(self) -> Dict[str, ContainerStatus]:
        return await self.compose.ps()

    async def running_services(self) -> Set[str]:
        statuses = await self.compose.ps()
        return {name for name, status in statuses.items() if status.running}

    async def is_running(self, service: str) -> bool:
        return service in await self.running_services()

    async def pull_images(self) -> None:
        await self.compose.pull()
        logger.info("images_pulled")

    # ------------------------------------------------------------------
    # Database operations
    # ------------------------------------------------------------------

    def _credentials(self, credentials: DatabaseCredentials | None) -> DatabaseCredentials:
        return credentials or self.config.database

    async def database_ready(self, credentials: DatabaseCredentials | None = None) -> bool:
        """Connection-readiness check of the database service."""
        creds = self._credentials(credentials)
        try:
            result = await self.compose.exec(
                DB_SERVICE, ["pg_isready", "-U", creds.user, "-d", creds.name]
            )
        except ComposeError:
            return False
        return result.ok

    async def exec_dump(
        self,
        target: Path,
        service: str = DB_SERVICE,
        credentials: DatabaseCredentials | None = None,
    ) -> int:
        """
        Dump the database in custom (compressed) format into target.

        The dump streams from the service straight into the file.

        Returns:
            Size of the dump in bytes

        Raises:
            DumpFailed: If the dump command fails or produces no output
        """
        creds = self._credentials(credentials)
        command = ["pg_dump", "-U", creds.user, "-d", creds.name, "-F", "c"]

        try:
            result = await self.compose.exec(service, command, stdout_path=target)
        except ComposeError as e:
            raise DumpFailed(f"Failed to run pg_dump: {e.message}", details={"service": service}) from e

        size = target.stat().st_size if target.is_file() else 0
        if not result.ok or size == 0:
            raise DumpFailed(
                "Failed to backup PostgreSQL database",
                details={
                    "service": service,
                    "returncode": result.returncode,
                    "stderr": result.stderr_text(),
                },
            )

        logger.info("database_dumped", database=creds.name, size=size)
        return size

    async def exec_restore(
        self,
        dump_path: Path,
        service: str = DB_SERVICE,
        credentials: DatabaseCredentials | None = None,
    ) -> None:
        """
        Drop, recreate and restore the database from a custom-format dump file.

        The dump streams from the file into pg_restore. Ownership and
        privilege metadata in the dump are ignored.

        Raises:
            RestoreFailed: If any of the three steps fails
        """
        creds = self._credentials(credentials)
        steps = [
            ("drop", ["dropdb", "-U", creds.user, "--if-exists", creds.name], None),
            ("create", ["createdb", "-U", creds.user, creds.name], None),
            (
                "pg_restore",
                [
                    "pg_restore",
                    "-U",
                    creds.user,
                    "-d",
                    creds.name,
                    "--no-owner",
                    "--no-privileges",
                ],
                dump_path,
            ),
        ]

        for name, command, stdin_path in steps:
            try:
                result = await self.compose.exec(service, command, stdin_path=stdin_path)
            except ComposeError as e:
                raise RestoreFailed(
                    f"Database {name} could not be run: {e.message}",
                    details={"service": service, "command": name},
                ) from e

            if not result.ok:
                raise RestoreFailed(
                    f"Database {name} failed",
                    details={
                        "service": service,
                        "command": name,
                        "returncode": result.returncode,
                        "stderr": result.stderr_text(),
                    },
                )
            logger.debug("database_restore_step_done", command=name)

        logger.info("database_restored", database=creds.name, dump=str(dump_path))

    # ------------------------------------------------------------------
    # State copies
    # ------------------------------------------------------------------

    async def copy_state(
        self,
        service: str,
        direction: CopyDirection,
        local_path: Path,
    ) -> None:
        """
        Copy a service's persistent state directory to or from local_path.

        Outbound copies prefer a local data directory when one is configured
        and exists, falling back to the service container. Inbound copies
        always go into the container.

        Raises:
            ComposeError: If the copy fails
        """
        location = self.state_locations.get(service)
        if location is None:
            raise ComposeError(f"No state location known for service {service}")

        if direction == CopyDirection.OUTBOUND:
            await self._copy_out(service, location, local_path)
        else:
            await self._copy_in(service, location, local_path)

    async def _copy_out(self, service: str, location: StateLocation, local_path: Path) -> None:
        local_path.mkdir(parents=True, exist_ok=True)

        if location.local_dir is not None and location.local_dir.is_dir():
            try:
                await asyncio.to_thread(
                    shutil.copytree, location.local_dir, local_path, dirs_exist_ok=True
                )
                logger.info("state_copied_from_disk", service=service, source=str(location.local_dir))
                return
            except OSError as e:
                if location.container_path is None:
                    raise ComposeError(
                        f"Failed to copy {service} data directory: {e}",
                        details={"service": service},
                    ) from e
                logger.warning(
                    "state_disk_copy_failed_trying_container",
                    service=service,
                    error=str(e),
                )

        if location.container_path is None:
            raise ComposeError(
                f"{service} data directory not found",
                details={"service": service, "local_dir": str(location.local_dir)},
            )

        result = await self.compose.copy(f"{service}:{location.container_path}/.", str(local_path))
        if not result.ok:
            raise ComposeError(
                f"Failed to copy {service} data from container: {result.stderr_text()}",
                details={"service": service},
            )
        logger.info("state_copied_from_container", service=service)

    async def _copy_in(self, service: str, location: StateLocation, local_path: Path) -> None:
        if location.container_path is None:
            raise ComposeError(f"{service} has no container state path", details={"service": service})

        result = await self.compose.copy(f"{local_path}/.", f"{service}:{location.container_path}/")
        if not result.ok:
            raise ComposeError(
                f"Failed to copy {service} data into container: {result.stderr_text()}",
                details={"service": service},
            )
        logger.info("state_copied_into_container", service=service)

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def running_version(self, service: str) -> str | None:
        """Version reported by a running service, or None if unknown."""
        if service == DB_SERVICE:
            command = ["postgres", "--version"]
        elif service == APP_SERVICE:
            command = ["n8n", "--version"]
        else:
            return None

        try:
            result = await self.compose.exec(service, command)
        except ComposeError:
            return None
        if not result.ok:
            return None

        output = result.stdout.decode("utf-8", errors="replace").strip()
        if not output:
            return None
        if service == DB_SERVICE:
            # "postgres (PostgreSQL) 14.17"
            parts = output.split()
            return parts[2] if len(parts) >= 3 else None
        return output.splitlines()[-1].strip()
