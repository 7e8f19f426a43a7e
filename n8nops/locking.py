# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Per-kind run locks.

Only one backup, one restore and one update may run at a time. Each kind
has its own lock file under ``<state_dir>/locks``; a second run of the
same kind fails fast instead of waiting.
"""

import asyncio
import fcntl
from pathlib import Path
from typing import IO

import structlog

from n8nops.exceptions import LockHeldError

logger = structlog.get_logger()


class RunLock:
    """
    Async context manager holding an exclusive flock for one run kind.

    Example:
        async with RunLock(config.lock_dir, "backup"):
            ...
    """

    def __init__(self, lock_dir: Path, kind: str) -> None:
        self.kind = kind
        self.path = lock_dir / f"{kind}.lock"
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def _acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        handle = self.path.open("w", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            handle.close()
            raise LockHeldError(
                f"Another {self.kind} run is already in progress",
                details={"kind": self.kind, "lock_file": str(self.path)},
            ) from e
        except OSError as e:
            handle.close()
            raise LockHeldError(
                f"Failed to acquire {self.kind} lock: {e}",
                details={"kind": self.kind, "lock_file": str(self.path)},
            ) from e

        self._handle = handle

    async def __aenter__(self) -> "RunLock":
        await asyncio.to_thread(self._acquire)
        logger.debug("run_lock_acquired", kind=self.kind)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._handle is not None:
            # Closing the descriptor releases the flock
            self._handle.close()
            self._handle = None
            logger.debug("run_lock_released", kind=self.kind)
