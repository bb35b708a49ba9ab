from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from digestcron.domain.documents import ReportMarker
from digestcron.services.scheduler.markers import (
    BROADCAST_RECIPIENT,
    DeliveryMarkerStore,
    ReportMarkerStore,
    delivery_marker_name,
    legacy_broadcast_marker_name,
    report_marker_name,
    slugify,
)


RUN_KEY = "weekly:2025-12-29T09:00:00.000Z:2026-01-05T09:00:00.000Z"
NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_marker_names_are_deterministic_and_filesystem_safe() -> None:
    name = delivery_marker_name("email", RUN_KEY, "alice")
    assert name == delivery_marker_name("email", RUN_KEY, "alice")
    assert name.startswith("email_sent_weekly_2025-12-29T09_00_00.000Z")
    assert ":" not in name
    assert delivery_marker_name("slack", RUN_KEY, "alice", "OPS").endswith("__alice__OPS.json")
    assert delivery_marker_name("slack", RUN_KEY, "alice", "OPS") != delivery_marker_name("webhook", RUN_KEY, "alice", "OPS")
    assert report_marker_name(RUN_KEY, "alice").startswith("report_saved_")


def test_marker_name_without_target_keeps_trailing_separator() -> None:
    assert delivery_marker_name("slack", "run", "alice") == "slack_sent_run__alice__.json"
    assert delivery_marker_name("email", "run", "alice", "ignored") == "email_sent_run__alice.json"


def test_slugify_truncates() -> None:
    assert len(slugify("a" * 500)) == 180
    assert slugify("a b/c") == "a_b_c"


@pytest.mark.asyncio
async def test_exists_after_write_and_marker_contents(store, folder_id) -> None:
    markers = DeliveryMarkerStore(store, folder_id=folder_id)
    assert await markers.exists("webhook", RUN_KEY, "alice", "OPS") is False

    await markers.write("webhook", RUN_KEY, "alice", "OPS", details={"attempts": 2}, now=NOW)

    assert await markers.exists("webhook", RUN_KEY, "alice", "OPS") is True
    assert await markers.exists("webhook", RUN_KEY, "alice", "OTHER") is False
    assert await markers.exists("slack", RUN_KEY, "alice", "OPS") is False
    payload = await store.read_json(parent=folder_id, name=delivery_marker_name("webhook", RUN_KEY, "alice", "OPS"))
    assert payload["runKey"] == RUN_KEY
    assert payload["targetKey"] == "OPS"
    assert payload["sentAtISO"].startswith("2026-01-05T09:00:00")
    assert payload["details"] == {"attempts": 2}


@pytest.mark.asyncio
async def test_legacy_broadcast_marker_counts_as_sent(store, folder_id) -> None:
    await store.create(
        name=legacy_broadcast_marker_name(RUN_KEY),
        parent=folder_id,
        body=json.dumps({"runKey": RUN_KEY}).encode("utf-8"),
    )
    markers = DeliveryMarkerStore(store, folder_id=folder_id)
    assert await markers.exists("email", RUN_KEY, BROADCAST_RECIPIENT) is True
    assert await markers.exists("email", RUN_KEY, "alice") is False


@pytest.mark.asyncio
async def test_report_marker_round_trip(store, folder_id) -> None:
    markers = ReportMarkerStore(store, folder_id=folder_id)
    assert await markers.read(RUN_KEY, "alice") is None
    await markers.write(
        ReportMarker(
            run_key=RUN_KEY,
            profile_id="alice",
            report_file_id="file-1",
            report_file_name="report.md",
            saved_at=NOW,
        )
    )
    marker = await markers.read(RUN_KEY, "alice")
    assert marker is not None
    assert marker.report_file_id == "file-1"
