# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for n8n-ops tests.

Provides an in-memory orchestration boundary, configuration helpers and
a ready-made runtime state.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Sequence

import pytest
import structlog

from n8nops.compose import CommandResult, ContainerStatus
from n8nops.config import DatabaseCredentials, OpsConfig

# Set test environment variables
os.environ["N8N_OPS_ADMIN_API_KEY"] = "test-api-key-12345"

ALL_SERVICES = ("n8n", "postgres")

ENV_TEMPLATE = """\
# n8n deployment settings
N8N_VERSION=1.0.0
N8N_HOST=localhost
N8N_PROTOCOL=http
N8N_ENCRYPTION_KEY={key}

POSTGRES_VERSION=14.17-alpine
POSTGRES_DB=n8n
POSTGRES_USER=n8n
POSTGRES_PASSWORD={password}

TIMEZONE=UTC
BACKUP_RETENTION_DAYS=7
N8N_OPS_READY_ATTEMPTS=3
N8N_OPS_READY_INTERVAL=0
"""


class FakeCompose:
    """
    In-memory orchestration boundary.

    Services are members of ``running``; the database is a byte string
    that pg_dump writes to its output file and pg_restore replaces
    wholesale from its input file; each container's state directory
    is a real directory under ``root`` so copies can be inspected.
    Every call is appended to ``calls``.
    """

    def __init__(self, root: Path) -> None:
        self.running = set(ALL_SERVICES)
        self.database = b"PGDMP-initial-database"
        self.db_version = "14.17"
        self.app_version = "1.0.0"
        self.health: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, CommandResult] = {}
        self.container_dirs = {"n8n": root / "containers" / "n8n"}
        for directory in self.container_dirs.values():
            directory.mkdir(parents=True, exist_ok=True)
        (self.container_dirs["n8n"] / "config").write_text('{"encryptionKey": "abc"}')

    def record(self, *call) -> None:
        self.calls.append(call)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def up(self, services: Sequence[str] | None = None) -> None:
        self.record("up", tuple(services or ()))
        self.running |= set(services or ALL_SERVICES)

    async def down(self) -> None:
        self.record("down")
        self.running.clear()

    async def stop(self, services: Sequence[str]) -> None:
        self.record("stop", tuple(services))
        self.running -= set(services)

    async def ps(self) -> Dict[str, ContainerStatus]:
        self.record("ps")
        return {
            name: ContainerStatus(
                service=name,
                state="running" if name in self.running else "exited",
                health=self.health.get(name, ""),
            )
            for name in ALL_SERVICES
        }

    async def exec(
        self,
        service: str,
        command: Sequence[str],
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
    ) -> CommandResult:
        tool = command[0]
        self.record("exec", service, tool)

        if service not in self.running:
            return CommandResult(1, b"", f"service {service} is not running".encode())
        if tool in self.failures:
            return self.failures[tool]

        if tool == "pg_isready":
            return CommandResult(0, b"accepting connections")
        if tool == "pg_dump":
            stdout_path.write_bytes(self.database)
            return CommandResult(0)
        if tool == "dropdb":
            self.database = b""
            return CommandResult(0)
        if tool == "createdb":
            return CommandResult(0)
        if tool == "pg_restore":
            self.database = stdin_path.read_bytes()
            return CommandResult(0)
        if tool == "postgres":
            return CommandResult(0, f"postgres (PostgreSQL) {self.db_version}\n".encode())
        if tool == "n8n":
            return CommandResult(0, f"{self.app_version}\n".encode())
        return CommandResult(127, b"", b"command not found")

    async def copy(self, source: str, destination: str) -> CommandResult:
        self.record("copy", source, destination)
        if "copy" in self.failures:
            return self.failures["copy"]

        if ":" in source and source.split(":", 1)[0] in self.container_dirs:
            service = source.split(":", 1)[0]
            src, dst = self.container_dirs[service], Path(destination)
        else:
            service = destination.split(":", 1)[0]
            src = Path(source[:-2] if source.endswith("/.") else source)
            dst = self.container_dirs[service]

        if service not in self.running:
            return CommandResult(1, b"", b"no such container")
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return CommandResult(0)

    async def pull(self) -> None:
        self.record("pull")


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Undo logging configured by CLI commands."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    structlog.reset_defaults()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_compose(temp_dir: Path) -> FakeCompose:
    return FakeCompose(temp_dir)


@pytest.fixture
def test_config(temp_dir: Path) -> OpsConfig:
    """Create a test configuration."""
    return OpsConfig(
        project_dir=temp_dir,
        app_version="1.0.0",
        db_version="14.17-alpine",
        encryption_key="k" * 40,
        database=DatabaseCredentials("n8n", "n8n", "secret"),
        retention_days=7,
        ready_attempts=3,
        ready_interval=0,
    )


@pytest.fixture
def env_file(temp_dir: Path) -> Path:
    """Write a complete .env file into the project directory."""
    path = temp_dir / ".env"
    path.write_text(ENV_TEMPLATE.format(key="k" * 40, password="secret"))
    return path


@pytest.fixture
def app_health() -> Dict[str, bool]:
    """Mutable switch for the application's HTTP health endpoint."""
    return {"ready": True}


@pytest.fixture
def ops_state(test_config: OpsConfig, fake_compose: FakeCompose, app_health):
    """Runtime state wired to the fake boundary, with no real sleeping or HTTP."""
    from n8nops.core import initialize_ops_state

    async def http_check(url: str) -> bool:
        return app_health["ready"] and "n8n" in fake_compose.running

    return initialize_ops_state(
        test_config,
        compose=fake_compose,
        sleep=no_sleep,
        http_check=http_check,
    )
