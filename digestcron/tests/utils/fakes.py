from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from digestcron.core.errors import BlobStoreError
from digestcron.domain.schedule import RecipientProfile
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.content.source import CONTENT_INDEX_NAME
from digestcron.services.notifications.channels import ChannelSenders, OutgoingEmail, SendReceipt
from digestcron.services.notifications.digest import Digest, DigestStats, DigestTop, TopRisk
from digestcron.services.scheduler.jobs import NotifyInput
from digestcron.services.scheduler.markers import DeliveryMarkerStore
from digestcron.services.scheduler.schedule_store import SCHEDULE_CONFIG_NAME


MONDAY_9AM = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class RecordingEmailSender:
    # Capture outgoing mail; optionally raise to simulate a provider failure.
    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.sent: list[OutgoingEmail] = []
        self.fail_with = fail_with

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)
        return SendReceipt(attempts=1, id=f"msg-{len(self.sent)}")


class RecordingPoster:
    # Shared fake for chat and webhook posts; failures can be keyed by URL.
    def __init__(self, *, fail_with: Exception | None = None, fail_urls: set[str] | None = None) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail_with = fail_with
        self.fail_urls = fail_urls

    async def post(self, url: str, body: Any) -> SendReceipt:
        if self.fail_with is not None and (self.fail_urls is None or url in self.fail_urls):
            raise self.fail_with
        self.calls.append((url, body))
        return SendReceipt(attempts=1)


def recording_senders(
    *,
    email: RecordingEmailSender | None = None,
    slack: RecordingPoster | None = None,
    webhook: RecordingPoster | None = None,
) -> ChannelSenders:
    return ChannelSenders(
        email=email or RecordingEmailSender(),
        slack=slack or RecordingPoster(),
        webhook=webhook or RecordingPoster(),
    )


class FlakyMarkerStore(DeliveryMarkerStore):
    # Marker store whose lookups fail for chosen recipients, or whose writes always fail.
    def __init__(
        self,
        store: BlobStore,
        *,
        folder_id: str,
        fail_exists_for: set[str] | None = None,
        fail_writes: bool = False,
    ) -> None:
        super().__init__(store, folder_id=folder_id)
        self.fail_exists_for = fail_exists_for or set()
        self.fail_writes = fail_writes

    async def exists(self, channel, run_key, recipient_key, target_key=None) -> bool:
        if recipient_key in self.fail_exists_for:
            raise BlobStoreError("store hiccup")
        return await super().exists(channel, run_key, recipient_key, target_key)

    async def write(self, channel, run_key, recipient_key, target_key=None, **kwargs):
        if self.fail_writes:
            raise BlobStoreError("quota exceeded")
        return await super().write(channel, run_key, recipient_key, target_key, **kwargs)


def make_digest(profile: RecipientProfile, *, empty: bool = False) -> Digest:
    if empty:
        return Digest(subject=f"Week in Review • {profile.label}", body="No updates in your scope this run.", empty=True)
    risk = TopRisk(text="Vendor contract expires", severity="high")
    return Digest(
        subject=f"Week in Review • {profile.label}",
        body="# Week in Review\n\nRisks\n- [high] Vendor contract expires",
        empty=False,
        stats=DigestStats(risks=1),
        top=DigestTop(risks=[risk]),
    )


class StaticDigestBuilder:
    """Digest builder returning canned digests; profile ids listed in ``fail`` raise."""

    def __init__(self, *, empty_for: set[str] | None = None, fail: set[str] | None = None) -> None:
        self.empty_for = empty_for or set()
        self.fail = fail or set()
        self.calls: list[str] = []

    async def build_digest(
        self,
        job_type: str,
        profile: RecipientProfile,
        notify_input: NotifyInput,
        *,
        report_file_id: str | None = None,
    ) -> Digest:
        self.calls.append(profile.id)
        if profile.id in self.fail:
            raise RuntimeError(f"digest failed for {profile.id}")
        return make_digest(profile, empty=profile.id in self.empty_for)


def make_notify_input(
    *,
    job_id: str = "weekly",
    job_type: str = "week_in_review",
    totals: dict[str, int] | None = None,
    now: datetime = MONDAY_9AM,
) -> NotifyInput:
    window_start = now - timedelta(days=7)
    return NotifyInput(
        job_id=job_id,
        job_type=job_type,
        job_name="Weekly digest",
        run_key=f"{job_id}:2025-12-29T09:00:00.000Z:2026-01-05T09:00:00.000Z",
        window_start=window_start,
        window_end=now,
        totals=totals if totals is not None else {"artifacts": 2, "decisions": 1, "open_loops": 1, "high_risks": 1},
    )


def sample_content_index() -> dict[str, Any]:
    return {
        "version": 1,
        "artifacts": [
            {
                "id": "art-1",
                "kind": "summary",
                "title": "Vendor sync",
                "contentDateISO": "2026-01-02T15:00:00Z",
                "tags": ["Procurement"],
                "participants": ["dana@example.com"],
                "entities": [{"name": "Acme Inc."}],
                "risks": [{"text": "Vendor contract expires", "severity": "high"}],
                "openLoops": [{"text": "Send renewal terms", "dueDateISO": "2026-01-08T00:00:00Z"}],
                "decisions": [{"text": "Keep Acme as primary vendor"}],
            },
            {
                "id": "art-2",
                "kind": "synthesis",
                "title": "Weekly synthesis",
                "contentDateISO": "2026-01-04T10:00:00Z",
                "entities": [{"name": "Globex"}],
                "risks": [{"text": "Hiring freeze", "severity": "low"}],
            },
        ],
    }


async def seed_folder(
    store: BlobStore,
    folder_id: str,
    *,
    schedule: dict[str, Any] | None = None,
    content_index: dict[str, Any] | None = None,
) -> None:
    if schedule is not None:
        await store.upsert_text(parent=folder_id, name=SCHEDULE_CONFIG_NAME, text=json.dumps(schedule))
    if content_index is not None:
        await store.upsert_text(parent=folder_id, name=CONTENT_INDEX_NAME, text=json.dumps(content_index))
