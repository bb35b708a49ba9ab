from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from digestcron.core.errors import BlobStoreError
from digestcron.domain.documents import DeliveryMarker, ReportMarker
from digestcron.persistence.blob_store import BlobRef, BlobStore


logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")
SLUG_MAX = 180
BROADCAST_RECIPIENT = "broadcast"


def slugify(value: str, *, limit: int = SLUG_MAX) -> str:
    return _UNSAFE.sub("_", value)[:limit]


def delivery_marker_name(channel: str, run_key: str, recipient_key: str, target_key: str | None = None) -> str:
    # Deterministic names turn the existence check into a point lookup.
    key = f"{run_key}__{recipient_key}"
    if channel == "email":
        return f"email_sent_{slugify(key)}.json"
    slug = slugify(f"{key}__{target_key or ''}")
    return f"{channel}_sent_{slug}.json"


def legacy_broadcast_marker_name(run_key: str) -> str:
    return f"email_sent_{slugify(run_key)}.json"


def report_marker_name(run_key: str, profile_id: str) -> str:
    return f"report_saved_{slugify(f'{run_key}__{profile_id}')}.json"


class DeliveryMarkerStore:
    """Write-once markers recording that a (run, recipient, channel, target) send happened.

    ``exists`` followed by ``write`` is not atomic; the tick lease lock is what
    keeps two ticks from racing through the same pair.
    """

    def __init__(self, store: BlobStore, *, folder_id: str) -> None:
        self._store = store
        self._folder_id = folder_id

    async def exists(
        self,
        channel: str,
        run_key: str,
        recipient_key: str,
        target_key: str | None = None,
    ) -> bool:
        name = delivery_marker_name(channel, run_key, recipient_key, target_key)
        if await self._store.find_by_name(parent=self._folder_id, name=name) is not None:
            return True
        if channel == "email" and recipient_key == BROADCAST_RECIPIENT:
            # Older broadcast markers were keyed by run only.
            legacy = legacy_broadcast_marker_name(run_key)
            return await self._store.find_by_name(parent=self._folder_id, name=legacy) is not None
        return False

    async def write(
        self,
        channel: str,
        run_key: str,
        recipient_key: str,
        target_key: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> BlobRef:
        marker = DeliveryMarker(
            channel=channel,
            run_key=run_key,
            recipient_key=recipient_key,
            target_key=target_key,
            sent_at=now or datetime.now(timezone.utc),
            message_id=message_id,
            details=details or None,
        )
        return await self._store.create(
            name=delivery_marker_name(channel, run_key, recipient_key, target_key),
            parent=self._folder_id,
            body=json.dumps(marker.to_json_dict(), indent=2).encode("utf-8"),
        )


class ReportMarkerStore:
    def __init__(self, store: BlobStore, *, folder_id: str) -> None:
        self._store = store
        self._folder_id = folder_id

    async def read(self, run_key: str, profile_id: str) -> ReportMarker | None:
        ref = await self._store.find_by_name(parent=self._folder_id, name=report_marker_name(run_key, profile_id))
        if ref is None:
            return None
        try:
            raw = await self._store.get(ref.id)
            return ReportMarker.model_validate(json.loads(raw.decode("utf-8")))
        except (BlobStoreError, UnicodeDecodeError, json.JSONDecodeError, ValidationError):
            logger.warning("report_marker_unreadable run_key=%s profile=%s", run_key, profile_id, exc_info=True)
            return None

    async def write(self, marker: ReportMarker) -> BlobRef:
        return await self._store.upsert_json(
            parent=self._folder_id,
            name=report_marker_name(marker.run_key, marker.profile_id),
            payload=marker.to_json_dict(),
        )
