from __future__ import annotations

import pytest

from digestcron.domain.schedule import Notify, ProfileFilters, ProfileFiltersOverride, RecipientProfile
from digestcron.services.content.entities import (
    ENTITY_ALIASES_NAME,
    canonicalize_entity,
    load_entity_aliases,
    normalize_entity_name,
)
from digestcron.services.content.source import IndexedContentSource, StructuredQuery
from digestcron.services.notifications.digest import (
    ContentDigestBuilder,
    attach_report,
    merge_filters,
    normalize_profile_filters,
)
from digestcron.services.notifications.formatting import (
    WebhookRecipient,
    compose_alerts_email,
    compose_week_in_review_email,
    format_digest,
    job_ref_for,
)
from digestcron.tests.utils.fakes import make_digest, make_notify_input, sample_content_index, seed_folder


def test_entity_names_normalize_company_suffixes() -> None:
    assert normalize_entity_name("Acme Inc.") == "acme"
    assert normalize_entity_name("  ACME   Holdings, LLC ") == "acme holdings"
    assert canonicalize_entity("Acme Corp", {"acme": "acme group"}) == "acme group"


@pytest.mark.asyncio
async def test_entity_aliases_load_and_degrade(store, folder_id) -> None:
    assert await load_entity_aliases(store, folder_id=folder_id) == {}
    await store.upsert_json(
        parent=folder_id,
        name=ENTITY_ALIASES_NAME,
        payload={"version": 1, "aliases": [{"alias": "Acme Inc", "canonical": "Acme Group"}]},
    )
    assert await load_entity_aliases(store, folder_id=folder_id) == {"acme": "acme group"}
    await store.upsert_text(parent=folder_id, name=ENTITY_ALIASES_NAME, text="[broken")
    assert await load_entity_aliases(store, folder_id=folder_id) == {}


def test_profile_filters_are_normalized_and_overridable() -> None:
    filters = ProfileFilters(entities=["Acme Inc.", "acme"], tags=["Ops", "ops", " "], participants=["Dana@Example.com"])
    normalized = normalize_profile_filters(filters)
    assert normalized.entities == ["acme"]
    assert normalized.tags == ["ops"]
    assert normalized.participants == ["dana@example.com"]

    merged = merge_filters(filters, ProfileFiltersOverride(tags=["finance"], include_actions=False))
    assert merged.tags == ["finance"]
    assert merged.entities == filters.entities
    assert merged.include_actions is False


@pytest.mark.asyncio
async def test_indexed_source_filters_by_window_entity_and_tags(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    source = IndexedContentSource(store, folder_id=folder_id)
    notify_input = make_notify_input()
    window = {"date_from": notify_input.window_start, "date_to": notify_input.window_end}

    everything = await source.query(StructuredQuery(**window))
    assert [artifact.id for artifact in everything.artifacts] == ["art-2", "art-1"]

    acme = await source.query(StructuredQuery(entity="ACME, Inc.", **window))
    assert [artifact.id for artifact in acme.artifacts] == ["art-1"]

    tagged = await source.query(StructuredQuery(tags=["procurement"], **window))
    assert [artifact.id for artifact in tagged.artifacts] == ["art-1"]

    decisions_only = await source.query(StructuredQuery(require_any=["decisions"], **window))
    assert [artifact.id for artifact in decisions_only.artifacts] == ["art-1"]


@pytest.mark.asyncio
async def test_digest_is_personalized_to_profile_scope(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    builder = ContentDigestBuilder(IndexedContentSource(store, folder_id=folder_id))
    profile = RecipientProfile(id="ops", name="Ops", to=["ops@example.com"], filters=ProfileFilters(entities=["Acme"]))

    digest = await builder.build_digest("week_in_review", profile, make_notify_input())

    assert digest.empty is False
    assert digest.subject == "Week in Review • Ops"
    assert (digest.stats.risks, digest.stats.open_loops, digest.stats.decisions) == (1, 1, 1)
    assert digest.stats.top_entities == ["acme (1)"]
    assert digest.top.risks[0].text == "Vendor contract expires"
    assert digest.links.drilldown_url == "https://app.example/timeline?entity=acme"
    assert "Your scope: entities=acme" in digest.body


@pytest.mark.asyncio
async def test_risk_severity_floor_can_empty_a_digest(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    builder = ContentDigestBuilder(IndexedContentSource(store, folder_id=folder_id))
    profile = RecipientProfile(
        id="people",
        filters=ProfileFilters(
            entities=["Globex"],
            risk_severity_min="high",
            include_open_loops=False,
            include_decisions=False,
            include_actions=False,
        ),
    )
    digest = await builder.build_digest("alerts", profile, make_notify_input(job_type="alerts"))
    assert digest.empty is True
    assert digest.subject == "Timeline Alerts • people"
    assert "No updates in your scope this run." in digest.body


def test_attach_report_adds_link() -> None:
    profile = RecipientProfile(id="ops")
    digest = attach_report(make_digest(profile), "file-9")
    assert digest.links.report_url == "https://files.example/file-9"
    assert digest.body.endswith("- Report: https://files.example/file-9")


def test_format_digest_caps_items_and_builds_versioned_payload() -> None:
    notify_input = make_notify_input()
    digest = make_digest(RecipientProfile(id="ops", name="Ops"))
    digest = digest.model_copy(update={"top": digest.top.model_copy(update={"risks": digest.top.risks * 4})})

    formatted = format_digest(
        digest,
        job=job_ref_for(notify_input),
        recipient=WebhookRecipient(key="ops", profile_name="Ops"),
        max_items=2,
    )
    payload = formatted.webhook_payload.to_json_dict()
    assert payload["version"] == 1
    assert payload["job"] == {
        "id": "weekly",
        "type": "week_in_review",
        "runKey": notify_input.run_key,
        "dateFromISO": "2025-12-29T09:00:00.000Z",
        "dateToISO": "2026-01-05T09:00:00.000Z",
    }
    assert payload["recipient"] == {"key": "ops", "profileName": "Ops"}
    assert len(payload["top"]["risks"]) == 2
    assert "openLoops" not in payload["top"]
    assert payload["links"]["dashboardUrl"] == "https://app.example/timeline/dashboard"
    assert formatted.slack_text.startswith("Week in Review • Ops")
    assert formatted.slack_text.count("• Risk:") == 2


def test_broadcast_emails_carry_totals_and_prefix() -> None:
    notify = Notify(enabled=True, to=["team@example.com"], subject_prefix="[Timeline]")
    weekly = compose_week_in_review_email(make_notify_input(), notify)
    assert weekly.subject == "[Timeline] Week in Review • 2025-12-29 → 2026-01-05"
    assert "- High risks: 1" in weekly.body
    assert "- Dashboard: https://app.example/timeline/dashboard" in weekly.body

    alerts = compose_alerts_email(
        make_notify_input(job_id="alerts", job_type="alerts", totals={"new_decisions": 2}),
        Notify(enabled=True, include_links=False),
    )
    assert alerts.subject == "Timeline Alerts • 2026-01-05"
    assert "- New decisions: 2" in alerts.body
    assert "Links" not in alerts.body
