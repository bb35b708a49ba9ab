from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from digestcron.core.errors import BlobStoreError
from digestcron.persistence.blob_store import InMemoryBlobStore
from digestcron.services.scheduler.lock import LOCK_FILE_NAME, LeaseLock, new_holder_token


NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
LEASE_MS = 240_000


@pytest.mark.asyncio
async def test_live_lease_blocks_other_holders(store, folder_id) -> None:
    lock = LeaseLock(store, folder_id=folder_id)
    first = await lock.try_acquire("tick-a", lease_ms=LEASE_MS, now=NOW)
    assert first.acquired is True
    assert first.lock is not None and first.lock.lease_until == NOW + timedelta(minutes=4)

    second = await lock.try_acquire("tick-b", lease_ms=LEASE_MS, now=NOW + timedelta(minutes=1))
    assert second.acquired is False
    assert second.reason == "locked"
    assert second.lock is not None and second.lock.holder == "tick-a"


@pytest.mark.asyncio
async def test_concurrent_acquire_against_live_lease_admits_only_holder(store, folder_id) -> None:
    lock = LeaseLock(store, folder_id=folder_id)
    await lock.try_acquire("tick-a", lease_ms=LEASE_MS, now=NOW)

    results = await asyncio.gather(
        lock.try_acquire("tick-a", lease_ms=LEASE_MS, now=NOW + timedelta(seconds=10)),
        lock.try_acquire("tick-b", lease_ms=LEASE_MS, now=NOW + timedelta(seconds=10)),
    )
    assert [result.acquired for result in results] == [True, False]


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(store, folder_id) -> None:
    lock = LeaseLock(store, folder_id=folder_id)
    await lock.try_acquire("crashed", lease_ms=LEASE_MS, now=NOW)
    takeover = await lock.try_acquire("tick-b", lease_ms=LEASE_MS, now=NOW + timedelta(minutes=5))
    assert takeover.acquired is True
    assert (await lock.read()).holder == "tick-b"


@pytest.mark.asyncio
async def test_release_expires_only_own_lease(store, folder_id) -> None:
    lock = LeaseLock(store, folder_id=folder_id)
    await lock.try_acquire("tick-a", lease_ms=LEASE_MS, now=NOW)

    assert await lock.release("tick-b", now=NOW + timedelta(seconds=30)) is False
    assert (await lock.read()).lease_until == NOW + timedelta(minutes=4)

    assert await lock.release("tick-a", now=NOW + timedelta(seconds=30)) is True
    released = await lock.read()
    assert released.holder == "tick-a"
    assert released.lease_until == NOW + timedelta(seconds=29)

    reacquired = await lock.try_acquire("tick-b", lease_ms=LEASE_MS, now=NOW + timedelta(seconds=31))
    assert reacquired.acquired is True


@pytest.mark.parametrize("stored", ['{"version": 1}', '{"holder": "tick-a", "leaseUntilISO": "soon"}', "{not json"])
@pytest.mark.asyncio
async def test_unreadable_lock_document_is_taken_over(store, folder_id, stored) -> None:
    await store.upsert_text(parent=folder_id, name=LOCK_FILE_NAME, text=stored)
    lock = LeaseLock(store, folder_id=folder_id)
    assert await lock.read() is None

    first = await lock.try_acquire("tick-a", lease_ms=LEASE_MS, now=NOW)
    second = await lock.try_acquire("tick-b", lease_ms=LEASE_MS, now=NOW + timedelta(seconds=5))

    assert first.acquired is True
    assert (second.acquired, second.reason) == (False, "locked")
    assert (await lock.read()).holder == "tick-a"


class BrokenStore(InMemoryBlobStore):
    async def list(self, *, parent, name=None, prefix=None):
        raise BlobStoreError("store offline")


@pytest.mark.asyncio
async def test_store_failure_is_not_acquired() -> None:
    lock = LeaseLock(BrokenStore(), folder_id="folder")
    result = await lock.try_acquire(new_holder_token(), lease_ms=LEASE_MS, now=NOW)
    assert result.acquired is False
    assert result.reason == "error"
    assert await lock.release("anyone", now=NOW) is False


def test_holder_tokens_are_unique() -> None:
    assert new_holder_token() != new_holder_token()
