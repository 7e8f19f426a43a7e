# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact Store - Backup archive lifecycle management.

This module handles staging areas, compressing them into archives named
``<prefix>_<YYYYMMDD_HHMMSS>.tar.gz``, listing archives, pruning old ones
and extracting them again for restore.

An archive is either fully written at its final path or not there at
all: archives are written to a ``.partial`` sibling and renamed into
place only once complete.
"""

import asyncio
import hashlib
import json
import os
import re
import shutil
import tarfile
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import AsyncIterator, Iterator, List

import aiofiles
import structlog

from n8nops.config import OpsConfig
from n8nops.exceptions import ArtifactIOError, CorruptArchive

logger = structlog.get_logger()

ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Archive layout
DUMP_FILENAME = "database.dump"
APP_STATE_DIRNAME = "n8n_data"
SECONDARY_STATE_DIRNAME = "pgadmin_data"
MANIFEST_FILENAME = "manifest.json"

PARTIAL_SUFFIX = ".partial"
HASH_CHUNK_SIZE = 1024 * 1024

# Interrupted archives and staging areas older than this are swept
STALE_WORK_AGE = timedelta(days=1)


@dataclass(frozen=True)
class ArtifactRef:
    """A committed backup archive."""

    path: Path
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.path.name

    def size_bytes(self) -> int:
        return self.path.stat().st_size

    def age_days(self, now: datetime | None = None) -> float:
        mtime = datetime.fromtimestamp(self.path.stat().st_mtime, UTC)
        return ((now or datetime.now(UTC)) - mtime).total_seconds() / 86400


@dataclass
class StagingArea:
    """
    Temporary working directory for one backup or restore.

    Owned by exactly one in-flight operation and removed when it ends.
    """

    path: Path
    timestamp: datetime

    @property
    def dump_path(self) -> Path:
        return self.path / DUMP_FILENAME

    @property
    def app_state_path(self) -> Path:
        return self.path / APP_STATE_DIRNAME

    @property
    def secondary_state_path(self) -> Path:
        return self.path / SECONDARY_STATE_DIRNAME

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_FILENAME

    def has_app_state(self) -> bool:
        return self.app_state_path.is_dir()

    def has_secondary_state(self) -> bool:
        return self.secondary_state_path.is_dir()

    async def write_manifest(self, manifest: dict) -> None:
        async with aiofiles.open(self.manifest_path, "w") as f:
            await f.write(json.dumps(manifest, indent=2, sort_keys=True))

    async def read_manifest(self) -> dict | None:
        if not self.manifest_path.is_file():
            return None
        async with aiofiles.open(self.manifest_path, "r") as f:
            return json.loads(await f.read())

    def discard(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.debug("staging_area_removed", path=str(self.path))


@dataclass
class RetentionResult:
    """Outcome of a retention sweep."""

    deleted: List[Path] = field(default_factory=list)
    failed: List[Path] = field(default_factory=list)
    stale_removed: List[Path] = field(default_factory=list)
    bytes_freed: int = 0


async def calculate_dump_hash(path: Path) -> str:
    """SHA-256 of a database dump file, hex encoded, read in chunks."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(HASH_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore:
    """Backup archives in one directory, identified by timestamp."""

    def __init__(
        self,
        backup_dir: Path,
        prefix: str = "n8n_backup",
        staging_root: Path | None = None,
    ) -> None:
        self.backup_dir = backup_dir
        self.prefix = prefix
        self.staging_root = staging_root
        self._name_re = re.compile(rf"^{re.escape(prefix)}_(\d{{8}}_\d{{6}}){re.escape(ARCHIVE_SUFFIX)}$")

    @classmethod
    def from_config(cls, config: OpsConfig) -> "ArtifactStore":
        """Store in the configured backup directory, staging under the state dir."""
        return cls(
            backup_dir=config.backup_dir,
            prefix=config.backup_prefix,
            staging_root=config.state_dir / "staging",
        )

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def artifact_name(self, timestamp: datetime) -> str:
        return f"{self.prefix}_{timestamp.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"

    def parse_artifact_name(self, name: str) -> datetime | None:
        """Timestamp encoded in an archive name, or None if it does not match."""
        match = self._name_re.match(name)
        if match is None:
            return None
        try:
            return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
        except ValueError:
            return None

    def ref_for(self, path: Path) -> ArtifactRef:
        """ArtifactRef for an archive path, falling back to its mtime."""
        timestamp = self.parse_artifact_name(path.name)
        if timestamp is None:
            timestamp = datetime.fromtimestamp(path.stat().st_mtime)
        return ArtifactRef(path=path, timestamp=timestamp)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def create(self, timestamp: datetime) -> StagingArea:
        """Allocate an isolated staging directory for a new archive."""
        try:
            if self.staging_root is not None:
                self.staging_root.mkdir(parents=True, exist_ok=True)
            path = tempfile.mkdtemp(
                prefix=f"{self.prefix}_{timestamp.strftime(TIMESTAMP_FORMAT)}_",
                dir=self.staging_root,
            )
        except OSError as e:
            raise ArtifactIOError(f"Failed to create staging area: {e}") from e

        logger.debug("staging_area_created", path=path)
        return StagingArea(path=Path(path), timestamp=timestamp)

    @asynccontextmanager
    async def staging(self, timestamp: datetime) -> AsyncIterator[StagingArea]:
        """Staging area that is removed on every exit path."""
        area = self.create(timestamp)
        try:
            yield area
        finally:
            area.discard()

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def commit(self, area: StagingArea) -> ArtifactRef:
        """
        Compress a staging area into its final archive.

        The staging area is discarded whether or not the commit succeeds.

        Raises:
            ArtifactIOError: If disk space is short, the destination is not
                writable, or an archive with the same name already exists
        """
        final_path = self.backup_dir / self.artifact_name(area.timestamp)
        partial_path = final_path.with_name(final_path.name + PARTIAL_SUFFIX)

        try:
            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ArtifactIOError(
                    f"Backup directory is not writable: {e}",
                    details={"backup_dir": str(self.backup_dir)},
                ) from e

            if final_path.exists():
                raise ArtifactIOError(
                    f"Archive already exists: {final_path}",
                    details={"path": str(final_path)},
                )

            needed = _directory_size(area.path)
            free = shutil.disk_usage(self.backup_dir).free
            if free < needed:
                raise ArtifactIOError(
                    "Insufficient disk space for backup archive",
                    details={"needed_bytes": needed, "free_bytes": free},
                )

            try:
                await asyncio.to_thread(_write_tarball, area.path, partial_path)
                os.replace(partial_path, final_path)
            except (OSError, tarfile.TarError) as e:
                partial_path.unlink(missing_ok=True)
                raise ArtifactIOError(
                    f"Failed to create compressed backup archive: {e}",
                    details={"path": str(final_path)},
                ) from e
        finally:
            area.discard()

        logger.info(
            "archive_committed",
            path=str(final_path),
            size=final_path.stat().st_size,
        )
        return ArtifactRef(path=final_path, timestamp=area.timestamp)

    # ------------------------------------------------------------------
    # Listing and retention
    # ------------------------------------------------------------------

    def list_artifacts(self) -> Iterator[ArtifactRef]:
        """
        Archives in the store, newest first.

        Only files matching the naming convention are considered.
        """
        if not self.backup_dir.is_dir():
            return

        refs = []
        for entry in os.scandir(self.backup_dir):
            if not entry.is_file():
                continue
            timestamp = self.parse_artifact_name(entry.name)
            if timestamp is not None:
                refs.append(ArtifactRef(path=Path(entry.path), timestamp=timestamp))

        refs.sort(key=lambda ref: ref.timestamp, reverse=True)
        yield from refs

    def latest(self) -> ArtifactRef | None:
        return next(self.list_artifacts(), None)

    def apply_retention(
        self,
        max_age_days: int,
        now: datetime | None = None,
    ) -> RetentionResult:
        """
        Delete archives whose modification time is older than max_age_days.

        Each deletion is independent: a failure is logged and the sweep
        carries on with the next archive. Leftovers of interrupted runs
        (``.partial`` archives, staging areas) are swept as well once they
        are older than STALE_WORK_AGE.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=max_age_days)
        result = RetentionResult()

        self._sweep_stale_work(now - STALE_WORK_AGE, result)

        for ref in self.list_artifacts():
            try:
                stat = ref.path.stat()
                mtime = datetime.fromtimestamp(stat.st_mtime, UTC)
                if mtime >= cutoff:
                    continue

                ref.path.unlink()
                result.deleted.append(ref.path)
                result.bytes_freed += stat.st_size

                logger.debug(
                    "archive_pruned",
                    path=str(ref.path),
                    age_days=(now - mtime).days,
                )

            except OSError as e:
                result.failed.append(ref.path)
                logger.warning(
                    "retention_delete_failed",
                    path=str(ref.path),
                    error=str(e),
                )

        logger.info(
            "retention_sweep_complete",
            retention_days=max_age_days,
            files_deleted=len(result.deleted),
            stale_removed=len(result.stale_removed),
            bytes_freed=result.bytes_freed,
            failures=len(result.failed),
        )
        return result

    def _stale_candidates(self) -> Iterator[Path]:
        if self.backup_dir.is_dir():
            for entry in os.scandir(self.backup_dir):
                name = entry.name
                if (
                    entry.is_file()
                    and name.endswith(PARTIAL_SUFFIX)
                    and self.parse_artifact_name(name[: -len(PARTIAL_SUFFIX)]) is not None
                ):
                    yield Path(entry.path)

        # Only a dedicated staging root is swept, never the system temp dir
        if self.staging_root is not None and self.staging_root.is_dir():
            for entry in os.scandir(self.staging_root):
                if entry.is_dir() and entry.name.startswith(f"{self.prefix}_"):
                    yield Path(entry.path)

    def _sweep_stale_work(self, cutoff: datetime, result: RetentionResult) -> None:
        for path in list(self._stale_candidates()):
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, UTC)
                if mtime >= cutoff:
                    continue
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                result.stale_removed.append(path)
                logger.info("stale_work_removed", path=str(path))
            except OSError as e:
                result.failed.append(path)
                logger.warning("stale_work_delete_failed", path=str(path), error=str(e))

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open(self, ref: ArtifactRef) -> StagingArea:
        """
        Extract an archive into a fresh staging area.

        Raises:
            CorruptArchive: If extraction fails, a member path is unsafe,
                the database dump is missing, or the manifest checksum does
                not match the dump
        """
        area = self.create(ref.timestamp)
        try:
            try:
                await asyncio.to_thread(_extract_tarball, ref.path, area.path)
            except CorruptArchive:
                raise
            except (OSError, tarfile.TarError, EOFError) as e:
                raise CorruptArchive(
                    f"Failed to extract backup archive: {e}",
                    details={"path": str(ref.path)},
                ) from e

            if not area.dump_path.is_file():
                raise CorruptArchive(
                    "Database backup not found in archive",
                    details={"path": str(ref.path), "expected": DUMP_FILENAME},
                )

            await _verify_manifest(area, ref)

        except BaseException:
            area.discard()
            raise

        logger.info(
            "archive_opened",
            path=str(ref.path),
            has_app_state=area.has_app_state(),
        )
        return area

    @asynccontextmanager
    async def opened(self, ref: ArtifactRef) -> AsyncIterator[StagingArea]:
        """Extracted staging area that is removed on every exit path."""
        area = await self.open(ref)
        try:
            yield area
        finally:
            area.discard()


def _directory_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


def _write_tarball(source_dir: Path, tarball_path: Path) -> None:
    with tarfile.open(tarball_path, "w:gz") as tar:
        for child in sorted(source_dir.iterdir()):
            tar.add(child, arcname=child.name)


def _extract_tarball(tarball_path: Path, extract_to: Path) -> None:
    with tarfile.open(tarball_path, "r:gz") as tar:
        # Security: Check for path traversal
        for member in tar.getmembers():
            if member.name.startswith("/") or ".." in Path(member.name).parts:
                raise CorruptArchive(
                    f"Unsafe path in archive: {member.name}",
                    details={"path": str(tarball_path)},
                )
        tar.extractall(extract_to, filter="data")


async def _verify_manifest(area: StagingArea, ref: ArtifactRef) -> None:
    try:
        manifest = await area.read_manifest()
    except (OSError, ValueError) as e:
        raise CorruptArchive(
            f"Unreadable archive manifest: {e}",
            details={"path": str(ref.path)},
        ) from e

    if not manifest or not manifest.get("dump_sha256"):
        return

    try:
        actual = await calculate_dump_hash(area.dump_path)
    except OSError as e:
        raise CorruptArchive(
            f"Database dump could not be read: {e}",
            details={"path": str(ref.path)},
        ) from e

    if actual != manifest["dump_sha256"]:
        raise CorruptArchive(
            "Database dump checksum does not match the archive manifest",
            details={
                "path": str(ref.path),
                "expected": manifest["dump_sha256"],
                "actual": actual,
            },
        )
