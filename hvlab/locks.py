"""Per-lab run locks.

At most one deploy or removal may run against a lab at a time. Runs are
started from request handlers and finish in background tasks, so the lock
is taken in the handler (to answer 409 immediately) and released by the
task when the run ends.
"""

from __future__ import annotations

import asyncio
import logging
import time

from hvlab.errors import LockAcquisitionTimeout

logger = logging.getLogger(__name__)


class LabLockManager:
    """Manages in-process asyncio locks keyed by lab name (case-insensitive)."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._acquired_at: dict[str, float] = {}

    @staticmethod
    def _key(lab_name: str) -> str:
        return lab_name.strip().lower()

    def _get_lock(self, lab_name: str) -> asyncio.Lock:
        key = self._key(lab_name)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def acquire(self, lab_name: str, timeout: float = 0.0) -> None:
        """Take the lab's lock.

        Args:
            lab_name: Lab name
            timeout: Seconds to wait for a busy lab; 0 fails immediately

        Raises:
            LockAcquisitionTimeout: If the lab stays busy past timeout
        """
        lock = self._get_lock(lab_name)
        if lock.locked() and timeout <= 0:
            raise LockAcquisitionTimeout(lab_name, timeout)

        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout if timeout > 0 else None)
        except asyncio.TimeoutError:
            logger.warning(f"Lock acquisition timeout for lab {lab_name} after {timeout}s")
            raise LockAcquisitionTimeout(lab_name, timeout)

        self._acquired_at[self._key(lab_name)] = time.monotonic()
        logger.info(f"Acquired run lock for lab {lab_name}")

    def release(self, lab_name: str) -> None:
        key = self._key(lab_name)
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            logger.warning(f"Release of lab {lab_name} lock that is not held")
            return
        lock.release()
        self._acquired_at.pop(key, None)
        logger.info(f"Released run lock for lab {lab_name}")

    def is_locked(self, lab_name: str) -> bool:
        lock = self._locks.get(self._key(lab_name))
        return lock is not None and lock.locked()

    def get_all_locks(self) -> list[dict]:
        """Status of every held lock, for the info endpoint."""
        now = time.monotonic()
        return [
            {"lab": key, "held": True, "age_seconds": round(now - self._acquired_at.get(key, now), 1)}
            for key, lock in self._locks.items()
            if lock.locked()
        ]
