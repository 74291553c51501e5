"""Tests for per-lab run locks."""

import asyncio

import pytest

from hvlab.errors import LockAcquisitionTimeout
from hvlab.locks import LabLockManager


@pytest.mark.asyncio
async def test_second_acquire_fails_immediately():
    locks = LabLockManager()
    await locks.acquire("MyLab")

    with pytest.raises(LockAcquisitionTimeout) as exc_info:
        await locks.acquire("mylab")

    assert "already in progress" in str(exc_info.value)
    assert locks.is_locked("MYLAB")


@pytest.mark.asyncio
async def test_release_allows_next_run():
    locks = LabLockManager()
    await locks.acquire("MyLab")
    locks.release("MyLab")

    await locks.acquire("MyLab")
    assert locks.is_locked("MyLab")


@pytest.mark.asyncio
async def test_waits_up_to_timeout():
    locks = LabLockManager()
    await locks.acquire("MyLab")

    async def release_soon():
        await asyncio.sleep(0.05)
        locks.release("MyLab")

    releaser = asyncio.create_task(release_soon())
    await locks.acquire("MyLab", timeout=2.0)
    await releaser

    assert locks.is_locked("MyLab")


@pytest.mark.asyncio
async def test_timeout_expires():
    locks = LabLockManager()
    await locks.acquire("MyLab")

    with pytest.raises(LockAcquisitionTimeout):
        await locks.acquire("MyLab", timeout=0.05)


@pytest.mark.asyncio
async def test_independent_labs_and_status():
    locks = LabLockManager()
    await locks.acquire("LabA")
    await locks.acquire("LabB")

    held = {entry["lab"] for entry in locks.get_all_locks()}
    assert held == {"laba", "labb"}


def test_release_unheld_is_harmless():
    LabLockManager().release("Nothing")
