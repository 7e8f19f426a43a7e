# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Orchestration boundary - The narrow contract n8n-ops needs from a
container engine, and its Docker Compose implementation.

The rest of the package depends only on ComposeBoundary: start/stop of
named services, the running-service list, command execution inside a
service, file copy between host and service, and image pull.
"""

import asyncio
import json
import shutil
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Protocol, Sequence

import structlog

from n8nops.exceptions import ComposeError

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Outcome of a command run through the boundary."""

    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_text(self, limit: int = 500) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()[-limit:]


@dataclass
class ContainerStatus:
    """Point-in-time state of one service's container."""

    service: str
    state: str  # running, exited, created, restarting, ...
    health: str = ""  # healthy, unhealthy, starting, or "" without healthcheck

    @property
    def running(self) -> bool:
        return self.state == "running"


class ComposeBoundary(Protocol):
    """Contract for the external service-management interface."""

    async def up(self, services: Sequence[str] | None = None) -> None:
        """Start services in the background (all when None)."""
        ...

    async def down(self) -> None:
        """Stop and remove all service containers."""
        ...

    async def stop(self, services: Sequence[str]) -> None:
        """Stop the named services."""
        ...

    async def ps(self) -> Dict[str, ContainerStatus]:
        """Report containers by service name."""
        ...

    async def exec(
        self,
        service: str,
        command: Sequence[str],
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        """
        Run a command inside a running service.

        When stdin_path is given the command reads that file as its input.
        When stdout_path is given its output is written to that file and
        ``CommandResult.stdout`` is empty.
        """
        ...

    async def copy(self, source: str, destination: str) -> CommandResult:
        """Copy files between host and service (``service:/path`` syntax)."""
        ...

    async def pull(self) -> None:
        """Pull images for every service."""
        ...


def parse_ps_output(raw: str) -> Dict[str, ContainerStatus]:
    """
    Parse ``docker compose ps --format json`` output.

    Older Compose releases print one JSON array, newer ones print one
    JSON object per line.
    """
    raw = raw.strip()
    if not raw:
        return {}

    if raw.startswith("["):
        entries = json.loads(raw)
    else:
        entries = [json.loads(line) for line in raw.splitlines() if line.strip()]

    statuses: Dict[str, ContainerStatus] = {}
    for entry in entries:
        service = entry.get("Service") or entry.get("Name", "")
        statuses[service] = ContainerStatus(
            service=service,
            state=(entry.get("State") or "").lower(),
            health=(entry.get("Health") or "").lower(),
        )
    return statuses


class DockerCompose:
    """
    ComposeBoundary backed by the ``docker compose`` CLI.

    Every call is synchronous from the caller's point of view: it returns
    only once the CLI has exited.
    """

    def __init__(
        self,
        compose_file: Path,
        project_dir: Path,
        executable: str = "docker",
    ) -> None:
        self.compose_file = compose_file
        self.project_dir = project_dir
        self.executable = executable

    def _base_args(self) -> List[str]:
        return [
            self.executable,
            "compose",
            "-f",
            str(self.compose_file),
            "--project-directory",
            str(self.project_dir),
        ]

    async def _run(
        self,
        args: Sequence[str],
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        argv = [*self._base_args(), *args]
        logger.debug("compose_command", args=list(args))

        # Redirected streams go straight between the file and the child
        with ExitStack() as files:
            try:
                stdin = asyncio.subprocess.DEVNULL
                if stdin_path is not None:
                    stdin = files.enter_context(open(stdin_path, "rb"))
                stdout = asyncio.subprocess.PIPE
                if stdout_path is not None:
                    stdout = files.enter_context(open(stdout_path, "wb"))

                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(self.project_dir),
                )
            except OSError as e:
                raise ComposeError(
                    f"Failed to invoke {self.executable} compose: {e}",
                    details={"args": list(args)},
                ) from e

            output, stderr = await process.communicate()

        return CommandResult(process.returncode or 0, output or b"", stderr or b"")

    async def _run_checked(self, args: Sequence[str], action: str) -> CommandResult:
        result = await self._run(args)
        if not result.ok:
            raise ComposeError(
                f"docker compose {action} failed: {result.stderr_text()}",
                details={"args": list(args), "returncode": result.returncode},
            )
        return result

    async def up(self, services: Sequence[str] | None = None) -> None:
        # Named services start alone, without their dependencies
        extra = ["--no-deps", *services] if services else []
        await self._run_checked(["up", "-d", *extra], "up")

    async def down(self) -> None:
        await self._run_checked(["down"], "down")

    async def stop(self, services: Sequence[str]) -> None:
        await self._run_checked(["stop", *services], "stop")

    async def ps(self) -> Dict[str, ContainerStatus]:
        result = await self._run_checked(["ps", "--all", "--format", "json"], "ps")
        try:
            return parse_ps_output(result.stdout.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ComposeError(f"Unreadable docker compose ps output: {e}") from e

    async def exec(
        self,
        service: str,
        command: Sequence[str],
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        return await self._run(["exec", "-T", service, *command], stdin_path, stdout_path)

    async def copy(self, source: str, destination: str) -> CommandResult:
        return await self._run(["cp", source, destination])

    async def pull(self) -> None:
        await self._run_checked(["pull"], "pull")


async def compose_available(executable: str = "docker") -> bool:
    """Check that the container engine and its compose plugin respond."""
    if shutil.which(executable) is None:
        return False
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            "compose",
            "version",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    return await process.wait() == 0
