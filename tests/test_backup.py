# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Orchestrator Tests.

These tests run the whole backup flow against the in-memory boundary:
- Archive creation and contents
- Degraded (database-only) backups
- Fatal precondition and dump failures
- Retention and journaling
"""

import hashlib
import os
import tarfile
from datetime import datetime, timedelta, UTC
from pathlib import Path

import aiosqlite
import pytest
from structlog.testing import capture_logs

from n8nops.backup import run_backup
from n8nops.backup.store import StagingArea
from n8nops.compose import CommandResult
from n8nops.exceptions import ArtifactIOError, DumpFailed, LockHeldError, PreconditionFailed
from n8nops.journal import get_run, list_runs
from n8nops.locking import RunLock


def archive_names(path: Path) -> set:
    with tarfile.open(path, "r:gz") as tar:
        return set(tar.getnames())


@pytest.mark.asyncio
async def test_backup_creates_one_valid_archive(ops_state, test_config):
    result = await run_backup(test_config, ops_state["controller"], ops_state["store"])

    archives = list(ops_state["store"].list_artifacts())
    assert len(archives) == 1
    assert archives[0].path == result.artifact.path
    assert result.size_bytes == result.artifact.path.stat().st_size
    assert not result.database_only
    assert result.app_state_included

    async with ops_state["store"].opened(result.artifact) as area:
        assert area.dump_path.read_bytes() == b"PGDMP-initial-database"
        assert (area.app_state_path / "config").is_file()
        manifest = await area.read_manifest()
        assert manifest["app_version"] == "1.0.0"
        assert manifest["contents"] == ["database.dump", "n8n_data"]
        assert manifest["dump_sha256"] == hashlib.sha256(b"PGDMP-initial-database").hexdigest()
        assert manifest["dump_size"] == len(b"PGDMP-initial-database")


@pytest.mark.asyncio
async def test_backup_with_application_stopped_is_database_only(
    ops_state, test_config, fake_compose
):
    fake_compose.running.discard("n8n")

    with capture_logs() as logs:
        result = await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert result.database_only
    assert result.warnings
    assert "n8n_data" not in archive_names(result.artifact.path)
    assert any(
        entry["event"] == "application_not_running_database_only"
        and entry["log_level"] == "warning"
        for entry in logs
    )


@pytest.mark.asyncio
async def test_backup_requires_running_database(ops_state, test_config, fake_compose):
    fake_compose.running.discard("postgres")

    with pytest.raises(PreconditionFailed) as exc_info:
        await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert exc_info.value.step == "check_database"
    assert list(ops_state["store"].list_artifacts()) == []
    assert not any(c[0] == "exec" for c in fake_compose.calls)


@pytest.mark.asyncio
async def test_dump_failure_commits_nothing(ops_state, test_config, fake_compose):
    fake_compose.failures["pg_dump"] = CommandResult(1, b"", b"connection refused")

    with pytest.raises(DumpFailed) as exc_info:
        await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert exc_info.value.step == "dump_database"
    assert list(ops_state["store"].list_artifacts()) == []
    staging = test_config.state_dir / "staging"
    assert not staging.exists() or list(staging.iterdir()) == []


@pytest.mark.asyncio
async def test_application_copy_failure_is_not_fatal(ops_state, test_config, fake_compose):
    fake_compose.failures["copy"] = CommandResult(1, b"", b"no such file")

    with capture_logs() as logs:
        result = await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert not result.app_state_included
    assert "n8n_data" not in archive_names(result.artifact.path)
    assert any(entry["event"] == "application_state_backup_failed" for entry in logs)


@pytest.mark.asyncio
async def test_application_state_read_from_local_directory(
    ops_state, test_config, fake_compose, temp_dir
):
    local = temp_dir / "n8n_local"
    local.mkdir()
    (local / "database.sqlite").write_text("local state")
    config = test_config.with_updates(app_data_dir=local)
    ops_state["controller"].state_locations["n8n"] = ops_state["controller"].state_locations[
        "n8n"
    ]._replace(local_dir=local)

    result = await run_backup(config, ops_state["controller"], ops_state["store"])

    assert "n8n_data/database.sqlite" in archive_names(result.artifact.path)
    assert not any(c[0] == "copy" for c in fake_compose.calls)


@pytest.mark.asyncio
async def test_secondary_state_included_when_present(ops_state, test_config, temp_dir):
    secondary = temp_dir / "data" / "pgadmin"
    secondary.mkdir(parents=True)
    (secondary / "pgadmin4.db").write_text("servers")
    config = test_config.with_updates(secondary_data_dir=secondary)
    ops_state["controller"].state_locations["pgadmin"] = ops_state[
        "controller"
    ].state_locations["pgadmin"]._replace(local_dir=secondary)

    result = await run_backup(config, ops_state["controller"], ops_state["store"])

    assert result.secondary_state_included
    assert "pgadmin_data/pgadmin4.db" in archive_names(result.artifact.path)


@pytest.mark.asyncio
async def test_backup_applies_retention(ops_state, test_config):
    store = ops_state["store"]
    store.backup_dir.mkdir(parents=True)
    old = store.backup_dir / "n8n_backup_20200101_000000.tar.gz"
    old.write_bytes(b"old")
    stamp = (datetime.now(UTC) - timedelta(days=30)).timestamp()
    os.utime(old, (stamp, stamp))

    result = await run_backup(test_config, ops_state["controller"], store)

    assert result.retention_removed == 1
    assert not old.exists()
    assert result.artifact.path.exists()


@pytest.mark.asyncio
async def test_backup_is_journaled(ops_state, test_config):
    result = await run_backup(test_config, ops_state["controller"], ops_state["store"])

    async with aiosqlite.connect(test_config.journal_path) as db:
        record = await get_run(db, result.run_id)

    assert record["kind"] == "backup"
    assert record["status"] == "succeeded"
    assert record["artifact_path"] == str(result.artifact.path)


@pytest.mark.asyncio
async def test_concurrent_backup_is_rejected(ops_state, test_config, fake_compose):
    async with RunLock(test_config.lock_dir, "backup"):
        with pytest.raises(LockHeldError):
            await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert fake_compose.calls == []


@pytest.mark.asyncio
async def test_manifest_write_failure_is_a_commit_error(
    ops_state, test_config, monkeypatch
):
    async def disk_full(self, manifest: dict) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(StagingArea, "write_manifest", disk_full)

    with pytest.raises(ArtifactIOError) as exc_info:
        await run_backup(test_config, ops_state["controller"], ops_state["store"])

    assert exc_info.value.step == "commit_archive"
    assert "No space left" in exc_info.value.message
    assert list(ops_state["store"].list_artifacts()) == []

    async with aiosqlite.connect(test_config.journal_path) as db:
        [record] = await list_runs(db, kind="backup")
    assert record["status"] == "failed"
    assert record["details"]["step"] == "commit_archive"


@pytest.mark.asyncio
async def test_backup_sweeps_interrupted_archives(ops_state, test_config):
    store = ops_state["store"]
    store.backup_dir.mkdir(parents=True)
    leftover = store.backup_dir / "n8n_backup_20200101_000000.tar.gz.partial"
    leftover.write_bytes(b"half an archive")
    stamp = (datetime.now(UTC) - timedelta(days=2)).timestamp()
    os.utime(leftover, (stamp, stamp))

    await run_backup(test_config, ops_state["controller"], store)

    assert not leftover.exists()
