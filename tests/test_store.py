# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact Store Tests.

Covers archive naming, atomic commit, listing, retention and extraction.
"""

import hashlib
import io
import json
import os
import tarfile
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from n8nops.backup import store as store_module
from n8nops.backup.store import ArtifactStore, calculate_dump_hash
from n8nops.exceptions import ArtifactIOError, CorruptArchive


def make_store(temp_dir: Path, name: str = "backups") -> ArtifactStore:
    return ArtifactStore(temp_dir / name, staging_root=temp_dir / "staging")


async def commit_sample(store: ArtifactStore, timestamp: datetime, dump: bytes = b"PGDMP-data"):
    area = store.create(timestamp)
    area.dump_path.write_bytes(dump)
    area.app_state_path.mkdir()
    (area.app_state_path / "config").write_text("app-config")
    await area.write_manifest({"dump_sha256": await calculate_dump_hash(area.dump_path)})
    return await store.commit(area)


def staging_leftovers(temp_dir: Path) -> list:
    staging = temp_dir / "staging"
    return list(staging.iterdir()) if staging.exists() else []


# ============================================================================
# Naming
# ============================================================================

def test_artifact_name_follows_convention(temp_dir: Path):
    store = make_store(temp_dir)
    name = store.artifact_name(datetime(2026, 3, 4, 5, 6, 7))
    assert name == "n8n_backup_20260304_050607.tar.gz"


def test_parse_artifact_name_rejects_other_files(temp_dir: Path):
    store = make_store(temp_dir)
    assert store.parse_artifact_name("n8n_backup_20260304_050607.tar.gz") == datetime(
        2026, 3, 4, 5, 6, 7
    )
    assert store.parse_artifact_name("n8n_backup_latest.tar.gz") is None
    assert store.parse_artifact_name("other_20260304_050607.tar.gz") is None
    assert store.parse_artifact_name("n8n_backup_20260304_050607.tar.gz.partial") is None
    assert store.parse_artifact_name("n8n_backup_20261399_050607.tar.gz") is None


# ============================================================================
# Commit
# ============================================================================

@pytest.mark.asyncio
async def test_commit_writes_archive_and_discards_staging(temp_dir: Path):
    store = make_store(temp_dir)
    ref = await commit_sample(store, datetime(2026, 1, 1, 2, 0, 0))

    assert ref.path == temp_dir / "backups" / "n8n_backup_20260101_020000.tar.gz"
    assert ref.path.is_file()
    assert tarfile.is_tarfile(ref.path)
    assert staging_leftovers(temp_dir) == []

    with tarfile.open(ref.path, "r:gz") as tar:
        names = set(tar.getnames())
    assert {"database.dump", "n8n_data", "n8n_data/config", "manifest.json"} <= names


@pytest.mark.asyncio
async def test_commit_refuses_to_overwrite_existing_archive(temp_dir: Path):
    store = make_store(temp_dir)
    timestamp = datetime(2026, 1, 1, 2, 0, 0)
    first = await commit_sample(store, timestamp)
    original = first.path.read_bytes()

    with pytest.raises(ArtifactIOError):
        await commit_sample(store, timestamp, dump=b"other")

    assert first.path.read_bytes() == original
    assert staging_leftovers(temp_dir) == []


@pytest.mark.asyncio
async def test_commit_failure_leaves_no_partial_archive(temp_dir: Path, monkeypatch):
    store = make_store(temp_dir)

    def failing_write(source_dir: Path, tarball_path: Path) -> None:
        tarball_path.write_bytes(b"half an archive")
        raise OSError("No space left on device")

    monkeypatch.setattr(store_module, "_write_tarball", failing_write)

    with pytest.raises(ArtifactIOError) as exc_info:
        await commit_sample(store, datetime(2026, 1, 1, 2, 0, 0))

    assert "No space left" in exc_info.value.message
    assert list((temp_dir / "backups").iterdir()) == []
    assert staging_leftovers(temp_dir) == []


@pytest.mark.asyncio
async def test_staging_context_removes_area_on_error(temp_dir: Path):
    store = make_store(temp_dir)

    with pytest.raises(RuntimeError):
        async with store.staging(datetime(2026, 1, 1)) as area:
            area.dump_path.write_bytes(b"data")
            raise RuntimeError("boom")

    assert not area.path.exists()


# ============================================================================
# Listing and retention
# ============================================================================

def _touch_archive(directory: Path, name: str, age_days: float, now: datetime) -> Path:
    path = directory / name
    path.write_bytes(b"archive")
    mtime = (now - timedelta(days=age_days)).timestamp()
    os.utime(path, (mtime, mtime))
    return path


def test_list_artifacts_newest_first_and_filtered(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    now = datetime.now(UTC)

    _touch_archive(store.backup_dir, "n8n_backup_20260101_000000.tar.gz", 3, now)
    _touch_archive(store.backup_dir, "n8n_backup_20260301_000000.tar.gz", 1, now)
    _touch_archive(store.backup_dir, "n8n_backup_20260201_000000.tar.gz", 2, now)
    (store.backup_dir / "notes.txt").write_text("keep me")

    names = [ref.name for ref in store.list_artifacts()]
    assert names == [
        "n8n_backup_20260301_000000.tar.gz",
        "n8n_backup_20260201_000000.tar.gz",
        "n8n_backup_20260101_000000.tar.gz",
    ]


def test_list_artifacts_missing_directory(temp_dir: Path):
    store = make_store(temp_dir)
    assert list(store.list_artifacts()) == []


def test_retention_keeps_only_recent_archives(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    now = datetime.now(UTC)

    ages = {0: "20260110_000000", 5: "20260105_000000", 8: "20260102_000000", 10: "20260101_000000"}
    for age, stamp in ages.items():
        _touch_archive(store.backup_dir, f"n8n_backup_{stamp}.tar.gz", age, now)
    unrelated = _touch_archive(store.backup_dir, "database.sql", 30, now)

    result = store.apply_retention(7, now=now)

    remaining = sorted(ref.name for ref in store.list_artifacts())
    assert remaining == [
        "n8n_backup_20260105_000000.tar.gz",
        "n8n_backup_20260110_000000.tar.gz",
    ]
    assert len(result.deleted) == 2
    assert result.failed == []
    assert unrelated.exists()


def test_retention_continues_after_delete_failure(temp_dir: Path, monkeypatch):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    now = datetime.now(UTC)

    stuck = _touch_archive(store.backup_dir, "n8n_backup_20260101_000000.tar.gz", 20, now)
    gone = _touch_archive(store.backup_dir, "n8n_backup_20260102_000000.tar.gz", 19, now)

    original_unlink = Path.unlink

    def flaky_unlink(self, *args, **kwargs):
        if self.name == stuck.name:
            raise PermissionError("Permission denied")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    result = store.apply_retention(7, now=now)

    assert result.failed == [stuck]
    assert result.deleted == [gone]
    assert stuck.exists()
    assert not gone.exists()


# ============================================================================
# Open
# ============================================================================

@pytest.mark.asyncio
async def test_open_then_recommit_reproduces_contents(temp_dir: Path):
    source = make_store(temp_dir, "backups")
    ref = await commit_sample(source, datetime(2026, 1, 1, 2, 0, 0), dump=b"PGDMP-roundtrip")

    area = await source.open(ref)
    copy_store = make_store(temp_dir, "copies")
    copy_ref = await copy_store.commit(area)

    async with copy_store.opened(copy_ref) as reopened:
        assert reopened.dump_path.read_bytes() == b"PGDMP-roundtrip"
        assert (reopened.app_state_path / "config").read_text() == "app-config"
        manifest = await reopened.read_manifest()
        assert manifest["dump_sha256"] == hashlib.sha256(b"PGDMP-roundtrip").hexdigest()

    assert not area.path.exists()
    assert not reopened.path.exists()


@pytest.mark.asyncio
async def test_open_rejects_garbage_file(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    path = store.backup_dir / "n8n_backup_20260101_000000.tar.gz"
    path.write_bytes(b"this is not gzip")

    with pytest.raises(CorruptArchive):
        await store.open(store.ref_for(path))

    assert staging_leftovers(temp_dir) == []


def _write_tar(path: Path, members: dict) -> None:
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


@pytest.mark.asyncio
async def test_open_requires_database_dump(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    path = store.backup_dir / "n8n_backup_20260101_000000.tar.gz"
    _write_tar(path, {"n8n_data/config": b"x"})

    with pytest.raises(CorruptArchive) as exc_info:
        await store.open(store.ref_for(path))

    assert "Database backup not found" in exc_info.value.message


@pytest.mark.asyncio
async def test_open_rejects_path_traversal(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    path = store.backup_dir / "n8n_backup_20260101_000000.tar.gz"
    _write_tar(path, {"database.dump": b"PGDMP", "../escape.txt": b"evil"})

    with pytest.raises(CorruptArchive):
        await store.open(store.ref_for(path))

    assert not (temp_dir / "escape.txt").exists()


@pytest.mark.asyncio
async def test_open_detects_checksum_mismatch(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    path = store.backup_dir / "n8n_backup_20260101_000000.tar.gz"
    manifest = json.dumps({"dump_sha256": hashlib.sha256(b"original").hexdigest()}).encode()
    _write_tar(path, {"database.dump": b"tampered", "manifest.json": manifest})

    with pytest.raises(CorruptArchive) as exc_info:
        await store.open(store.ref_for(path))

    assert "checksum" in exc_info.value.message


@pytest.mark.asyncio
async def test_open_accepts_archive_without_manifest(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    path = store.backup_dir / "n8n_backup_20260101_000000.tar.gz"
    _write_tar(path, {"./database.dump": b"PGDMP-legacy"})

    async with store.opened(store.ref_for(path)) as area:
        assert area.dump_path.read_bytes() == b"PGDMP-legacy"
        assert not area.has_app_state()


@pytest.mark.asyncio
async def test_open_reports_unreadable_dump(temp_dir: Path, monkeypatch):
    store = make_store(temp_dir)
    ref = await commit_sample(store, datetime(2026, 1, 1, 2, 0, 0))

    async def unreadable(path: Path) -> str:
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(store_module, "calculate_dump_hash", unreadable)

    with pytest.raises(CorruptArchive) as exc_info:
        await store.open(ref)

    assert "could not be read" in exc_info.value.message
    assert staging_leftovers(temp_dir) == []


# ============================================================================
# Dump hashing and stale work
# ============================================================================

@pytest.mark.asyncio
async def test_dump_hash_spans_multiple_chunks(temp_dir: Path):
    data = os.urandom(store_module.HASH_CHUNK_SIZE * 2 + 17)
    path = temp_dir / "database.dump"
    path.write_bytes(data)

    assert await calculate_dump_hash(path) == hashlib.sha256(data).hexdigest()


def _age(path: Path, days: float, now: datetime) -> Path:
    mtime = (now - timedelta(days=days)).timestamp()
    os.utime(path, (mtime, mtime))
    return path


def test_retention_sweeps_interrupted_work(temp_dir: Path):
    store = make_store(temp_dir)
    store.backup_dir.mkdir()
    (temp_dir / "staging").mkdir()
    now = datetime.now(UTC)

    old_partial = store.backup_dir / "n8n_backup_20260101_000000.tar.gz.partial"
    old_partial.write_bytes(b"half")
    _age(old_partial, 2, now)
    fresh_partial = store.backup_dir / "n8n_backup_20260102_000000.tar.gz.partial"
    fresh_partial.write_bytes(b"in progress")
    foreign = store.backup_dir / "notes.partial"
    foreign.write_bytes(b"not ours")
    _age(foreign, 30, now)

    old_area = temp_dir / "staging" / "n8n_backup_20260101_000000_abc"
    (old_area / "n8n_data").mkdir(parents=True)
    _age(old_area, 2, now)
    fresh_area = store.create(datetime(2026, 1, 2))

    result = store.apply_retention(7, now=now)

    assert set(result.stale_removed) == {old_partial, old_area}
    assert not old_partial.exists()
    assert not old_area.exists()
    assert fresh_partial.exists()
    assert fresh_area.path.exists()
    assert foreign.exists()
    assert result.deleted == []
