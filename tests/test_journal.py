# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Run Journal and Run Lock Tests.
"""

from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from n8nops.core import operation_scope
from n8nops.exceptions import DumpFailed, JournalError, LockHeldError
from n8nops.journal import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    get_run,
    init_journal_db,
    latest_successful_backup,
    list_runs,
    record_run_finished,
    record_run_started,
)
from n8nops.locking import RunLock


@pytest_asyncio.fixture
async def journal_db(temp_dir: Path):
    db_path = temp_dir / "runs.db"
    await init_journal_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        yield db


# ============================================================================
# Journal
# ============================================================================

@pytest.mark.asyncio
async def test_init_is_idempotent(temp_dir: Path):
    db_path = temp_dir / "nested" / "runs.db"
    await init_journal_db(db_path)
    await init_journal_db(db_path)
    assert db_path.exists()


@pytest.mark.asyncio
async def test_record_lifecycle(journal_db):
    await record_run_started(journal_db, "01RUN", "backup", {"trigger": "cli"})

    record = await get_run(journal_db, "01RUN")
    assert record["status"] == STATUS_RUNNING
    assert record["completed_at"] is None
    assert record["details"] == {"trigger": "cli"}

    await record_run_finished(journal_db, "01RUN", artifact_path="/backups/a.tar.gz")

    record = await get_run(journal_db, "01RUN")
    assert record["status"] == STATUS_SUCCEEDED
    assert record["artifact_path"] == "/backups/a.tar.gz"
    assert record["completed_at"] is not None


@pytest.mark.asyncio
async def test_failed_run_keeps_error(journal_db):
    await record_run_started(journal_db, "01FAIL", "restore")
    await record_run_finished(journal_db, "01FAIL", error="dump unreadable", details={"step": "open_archive"})

    record = await get_run(journal_db, "01FAIL")
    assert record["status"] == STATUS_FAILED
    assert record["error"] == "dump unreadable"
    assert record["details"]["step"] == "open_archive"


@pytest.mark.asyncio
async def test_get_unknown_run(journal_db):
    assert await get_run(journal_db, "missing") is None


@pytest.mark.asyncio
async def test_journal_write_errors_are_ops_errors(temp_dir: Path):
    async with aiosqlite.connect(temp_dir / "uninitialized.db") as db:
        with pytest.raises(JournalError) as exc_info:
            await record_run_started(db, "01RUN", "backup")
        assert exc_info.value.details["kind"] == "backup"

        with pytest.raises(JournalError):
            await record_run_finished(db, "01RUN", error="boom")


@pytest.mark.asyncio
async def test_list_and_filter_runs(journal_db):
    for run_id, kind in [("01A", "backup"), ("01B", "update"), ("01C", "backup")]:
        await record_run_started(journal_db, run_id, kind)

    assert len(await list_runs(journal_db)) == 3
    backups = await list_runs(journal_db, kind="backup")
    assert {record["id"] for record in backups} == {"01A", "01C"}
    assert len(await list_runs(journal_db, limit=1)) == 1


@pytest.mark.asyncio
async def test_latest_successful_backup(journal_db):
    assert await latest_successful_backup(journal_db) is None

    await record_run_started(journal_db, "01A", "backup")
    await record_run_finished(journal_db, "01A", artifact_path="/backups/a.tar.gz")
    await record_run_started(journal_db, "01B", "backup")
    await record_run_finished(journal_db, "01B", error="dump failed")

    latest = await latest_successful_backup(journal_db)
    assert latest["id"] == "01A"


# ============================================================================
# Locks and operation scope
# ============================================================================

@pytest.mark.asyncio
async def test_same_kind_is_exclusive(temp_dir: Path):
    async with RunLock(temp_dir, "backup") as lock:
        assert lock.held
        with pytest.raises(LockHeldError) as exc_info:
            async with RunLock(temp_dir, "backup"):
                pass
        assert exc_info.value.details["kind"] == "backup"

    # Released on exit
    async with RunLock(temp_dir, "backup") as again:
        assert again.held
    assert not again.held


@pytest.mark.asyncio
async def test_different_kinds_do_not_block(temp_dir: Path):
    async with RunLock(temp_dir, "backup"):
        async with RunLock(temp_dir, "restore") as other:
            assert other.held


@pytest.mark.asyncio
async def test_operation_scope_journals_success(test_config):
    async with operation_scope(test_config, "backup") as run:
        run.artifact_path = "/backups/a.tar.gz"

    async with aiosqlite.connect(test_config.journal_path) as db:
        record = await get_run(db, run.run_id)

    assert record["status"] == STATUS_SUCCEEDED
    assert record["artifact_path"] == "/backups/a.tar.gz"


@pytest.mark.asyncio
async def test_operation_scope_journals_failure_and_releases_lock(test_config):
    with pytest.raises(DumpFailed):
        async with operation_scope(test_config, "backup") as run:
            raise DumpFailed("pg_dump exited 1").at_step("dump_database")

    async with aiosqlite.connect(test_config.journal_path) as db:
        record = await get_run(db, run.run_id)

    assert record["status"] == STATUS_FAILED
    assert record["error"] == "pg_dump exited 1"
    assert record["details"]["step"] == "dump_database"

    async with RunLock(test_config.lock_dir, "backup") as lock:
        assert lock.held
