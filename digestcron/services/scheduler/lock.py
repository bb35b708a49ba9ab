from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import ValidationError

from digestcron.core.config import get_settings
from digestcron.domain.documents import CronLock
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "cron_lock.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_holder_token() -> str:
    # Random per-tick identity; ownership is proven by this token alone.
    return f"tick-{uuid4().hex}"


@dataclass(frozen=True)
class LockAcquisition:
    acquired: bool
    lock: CronLock | None = None
    reason: str | None = None


class LeaseLock:
    """Single-document lease guarding the whole scheduler tick.

    Release rewrites the lease into the past instead of deleting the document,
    so readers only ever see "a lock" and never a missing file.
    """

    def __init__(self, store: BlobStore, *, folder_id: str) -> None:
        self._store = store
        self._folder_id = folder_id

    async def read(self) -> CronLock | None:
        """Return the stored lease, or None when absent or unreadable.

        A partial or foreign document carries no usable lease, so it is
        treated like an expired one and the next acquire overwrites it.
        Store failures still propagate.
        """
        try:
            payload = await self._store.read_json(parent=self._folder_id, name=LOCK_FILE_NAME)
            if payload is None:
                return None
            return CronLock.model_validate(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError):
            logger.warning("cron_lock_unreadable folder=%s", self._folder_id, exc_info=True)
            return None

    async def try_acquire(
        self,
        holder: str,
        *,
        lease_ms: int | None = None,
        now: datetime | None = None,
    ) -> LockAcquisition:
        # Any failure while proving exclusivity counts as not acquired.
        now = now or _utc_now()
        lease_ms = lease_ms if lease_ms is not None else get_settings().cron_lock_lease_ms
        try:
            current = await self.read()
            if current is not None and current.holder != holder and current.lease_until > now:
                increment_counter("cron_lock_contended_total")
                logger.info("cron_lock_contended holder=%s lease_until=%s", current.holder, current.lease_until)
                return LockAcquisition(acquired=False, lock=current, reason="locked")
            lock = CronLock(
                holder=holder,
                acquired_at=now,
                lease_until=now + timedelta(milliseconds=lease_ms),
            )
            await self._store.upsert_text(
                parent=self._folder_id,
                name=LOCK_FILE_NAME,
                text=json.dumps(lock.to_json_dict(), indent=2),
            )
            return LockAcquisition(acquired=True, lock=lock)
        except Exception:  # noqa: BLE001 - an unprovable lock must skip the tick
            logger.exception("cron_lock_acquire_failed holder=%s", holder)
            return LockAcquisition(acquired=False, reason="error")

    async def release(self, holder: str, *, now: datetime | None = None) -> bool:
        # Expire only our own lease; a newer holder is left untouched.
        now = now or _utc_now()
        try:
            current = await self.read()
            if current is None or current.holder != holder:
                return False
            expired = current.model_copy(update={"lease_until": now - timedelta(seconds=1)})
            await self._store.upsert_text(
                parent=self._folder_id,
                name=LOCK_FILE_NAME,
                text=json.dumps(expired.to_json_dict(), indent=2),
            )
            return True
        except Exception:  # noqa: BLE001 - release is best-effort; the lease expires on its own
            logger.exception("cron_lock_release_failed holder=%s", holder)
            return False
