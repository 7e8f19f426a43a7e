# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
n8n-ops Run Journal - Append-only history of orchestrator runs.

Every backup, restore and update is recorded when it starts and updated
once when it finishes. Records are never deleted.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from n8nops.exceptions import JournalError

logger = structlog.get_logger()

STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


class RunRecord(TypedDict):
    """Record of one orchestrator run."""

    id: str  # ULID
    kind: str  # backup, restore, update
    started_at: str  # ISO 8601
    completed_at: str | None  # ISO 8601 or None while running
    status: str  # running, succeeded, failed
    artifact_path: str | None
    error: str | None
    details: dict


_SELECT = """
    SELECT id, kind, started_at, completed_at, status, artifact_path, error, details
    FROM runs
"""


def _row_to_record(row) -> RunRecord:
    return RunRecord(
        id=row[0],
        kind=row[1],
        started_at=row[2],
        completed_at=row[3],
        status=row[4],
        artifact_path=row[5],
        error=row[6],
        details=json.loads(row[7]) if row[7] else {},
    )


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal database schema.

    Creates the table if it doesn't exist. This is idempotent.
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    status TEXT NOT NULL,
                    artifact_path TEXT,
                    error TEXT,
                    details TEXT NOT NULL DEFAULT '{}'
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_kind_started
                ON runs(kind, started_at)
            """)

            await db.commit()

        logger.debug("journal_db_initialized", db_path=str(db_path))

    except (OSError, aiosqlite.Error) as e:
        raise JournalError(
            f"Failed to initialize run journal: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_run_started(
    db: aiosqlite.Connection,
    run_id: str,
    kind: str,
    details: dict | None = None,
) -> None:
    """
    Record the start of a run.

    Raises:
        JournalError: If the record cannot be written
    """
    now = datetime.now(UTC).isoformat()

    try:
        await db.execute(
            """
            INSERT INTO runs (id, kind, started_at, status, details)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, kind, now, STATUS_RUNNING, json.dumps(details or {}, default=str)),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record run start: {e}",
            details={"run_id": run_id, "kind": kind},
        ) from e

    logger.debug("run_recorded", run_id=run_id, kind=kind)


async def record_run_finished(
    db: aiosqlite.Connection,
    run_id: str,
    artifact_path: str | None = None,
    error: str | None = None,
    details: dict | None = None,
) -> None:
    """
    Mark a run as finished.

    The run succeeded when error is None.

    Raises:
        JournalError: If the record cannot be written
    """
    now = datetime.now(UTC).isoformat()
    status = STATUS_FAILED if error else STATUS_SUCCEEDED

    try:
        await db.execute(
            """
            UPDATE runs
            SET completed_at = ?, status = ?, artifact_path = ?, error = ?, details = ?
            WHERE id = ?
            """,
            (now, status, artifact_path, error, json.dumps(details or {}, default=str), run_id),
        )
        await db.commit()
    except aiosqlite.Error as e:
        raise JournalError(
            f"Failed to record run result: {e}",
            details={"run_id": run_id},
        ) from e

    logger.debug("run_finished_recorded", run_id=run_id, status=status)


async def get_run(db: aiosqlite.Connection, run_id: str) -> RunRecord | None:
    """Look up a run by id."""
    async with db.execute(_SELECT + " WHERE id = ?", (run_id,)) as cursor:
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None


async def list_runs(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
    kind: str | None = None,
) -> List[RunRecord]:
    """
    List runs, newest first.

    Args:
        db: SQLite database connection
        limit: Maximum number of records
        offset: Number of records to skip
        kind: Only runs of this kind
    """
    query = _SELECT
    params: list = []

    if kind:
        query += " WHERE kind = ?"
        params.append(kind)

    query += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[RunRecord] = []
    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_row_to_record(row))
    return records


async def latest_successful_backup(db: aiosqlite.Connection) -> RunRecord | None:
    """Most recent backup run that produced an artifact."""
    async with db.execute(
        _SELECT
        + """
        WHERE kind = 'backup' AND status = ? AND artifact_path IS NOT NULL
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """,
        (STATUS_SUCCEEDED,),
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None
