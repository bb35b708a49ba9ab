from __future__ import annotations

import pytest

from digestcron.core.errors import JobComputationError
from digestcron.domain.documents import ReportCounts
from digestcron.domain.schedule import AlertsJob, Notify, RecipientProfile, WeekInReviewJob
from digestcron.services.content.source import IndexedContentSource, QueryResult, StructuredQuery
from digestcron.services.scheduler.jobs import run_alerts, run_job, run_week_in_review, to_iso
from digestcron.services.scheduler.markers import ReportMarkerStore
from digestcron.services.scheduler.reports import (
    ReportBudget,
    maybe_generate_route_report,
    render_report_title,
    report_file_name,
    tally_report,
)
from digestcron.tests.utils.fakes import MONDAY_9AM, sample_content_index, seed_folder


def _weekly(**params) -> WeekInReviewJob:
    return WeekInReviewJob.model_validate(
        {"id": "weekly", "type": "week_in_review", "schedule": {"cron": "0 9 * * MON"}, "params": params}
    )


def _alerts(**params) -> AlertsJob:
    return AlertsJob.model_validate({"id": "alerts", "type": "alerts", "schedule": {"cron": "0 9 * * *"}, "params": params})


def test_iso_timestamps_use_millisecond_z_format() -> None:
    assert to_iso(MONDAY_9AM) == "2026-01-05T09:00:00.000Z"


@pytest.mark.asyncio
async def test_week_in_review_totals_report_and_run_key(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    source = IndexedContentSource(store, folder_id=folder_id)

    notify_input = await run_week_in_review(_weekly(), now=MONDAY_9AM, source=source, store=store, folder_id=folder_id)

    assert notify_input.run_key == "weekly:2025-12-29T09:00:00.000Z:2026-01-05T09:00:00.000Z"
    assert notify_input.totals == {"artifacts": 2, "decisions": 1, "open_loops": 1, "high_risks": 1}
    assert notify_input.synthesis_artifact_id == "art-2"
    assert notify_input.report_file_id is not None
    report_name = "report_20260105_weekly_Week_in_Review_2025-12-29_to_2026-01-05.md"
    assert report_name in store.names(folder_id)
    markdown = await store.read_text(parent=folder_id, name=report_name)
    assert "- [high] Vendor contract expires" in markdown
    assert "## Sources" in markdown


@pytest.mark.asyncio
async def test_week_in_review_can_skip_report_export(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    source = IndexedContentSource(store, folder_id=folder_id)
    notify_input = await run_week_in_review(
        _weekly(exportReport=False, tags=["Procurement"]),
        now=MONDAY_9AM,
        source=source,
        store=store,
        folder_id=folder_id,
    )
    assert notify_input.report_file_id is None
    assert notify_input.totals["artifacts"] == 1


@pytest.mark.asyncio
async def test_alerts_count_by_threshold_and_save_notice(store, folder_id) -> None:
    await seed_folder(store, folder_id, content_index=sample_content_index())
    source = IndexedContentSource(store, folder_id=folder_id)

    quiet = await run_alerts(_alerts(), now=MONDAY_9AM, source=source, store=store, folder_id=folder_id)
    assert quiet.totals == {"new_high_risks": 0, "new_open_loops_due_7d": 0, "new_decisions": 0}
    assert quiet.empty is True
    assert quiet.notice_file_id is not None
    assert "notice_20260105_alerts.md" in store.names(folder_id)

    week = await run_alerts(
        _alerts(lookbackDays=7, riskSeverity="low"), now=MONDAY_9AM, source=source, store=store, folder_id=folder_id
    )
    assert week.totals == {"new_high_risks": 2, "new_open_loops_due_7d": 1, "new_decisions": 1}
    assert week.run_key == "alerts:2025-12-29T09:00:00.000Z:2026-01-05T09:00:00.000Z"


class ExplodingSource:
    async def query(self, query: StructuredQuery) -> QueryResult:
        raise RuntimeError("index offline")


@pytest.mark.asyncio
async def test_job_failures_surface_as_computation_error(store, folder_id) -> None:
    with pytest.raises(JobComputationError, match="index offline"):
        await run_job(_weekly(), now=MONDAY_9AM, source=ExplodingSource(), store=store, folder_id=folder_id)


def test_report_budget_honours_default_and_hard_cap() -> None:
    assert ReportBudget.for_notify("run", Notify()).cap == 5
    assert ReportBudget.for_notify("run", Notify(max_per_route_reports_per_run=50)).cap == 25
    budget = ReportBudget(run_key="run", cap=1)
    assert budget.try_reserve() is True
    assert budget.try_reserve() is False
    assert budget.used == 1


def test_report_titles_render_tokens_or_fall_back() -> None:
    profile = RecipientProfile(id="ops", name="Ops Team")
    window = {"window_start": MONDAY_9AM.replace(day=1), "window_end": MONDAY_9AM}
    assert (
        render_report_title("{jobName} for {profileName} ({dateFrom}..{dateTo})", job_type="alerts", job_name="Daily", profile=profile, **window)
        == "Daily for Ops Team (2026-01-01..2026-01-05)"
    )
    assert (
        render_report_title("  ", job_type="week_in_review", job_name="Weekly", profile=profile, **window)
        == "Week in Review - Ops Team - 2026-01-01 2026-01-05"
    )
    assert report_file_name(day=MONDAY_9AM, job_id="weekly", profile_id="ops", title="Q1 / review").startswith(
        "report_20260105_weekly_ops_Q1___review"
    )


@pytest.mark.asyncio
async def test_route_reports_are_capped_and_reused(store, folder_id) -> None:
    markers = ReportMarkerStore(store, folder_id=folder_id)
    notify = Notify(generate_per_route_report=True, max_per_route_reports_per_run=1)
    budget = ReportBudget.for_notify("weekly:run", notify)
    counts = ReportCounts()

    async def generate(profile_id: str):
        result = await maybe_generate_route_report(
            store=store,
            folder_id=folder_id,
            markers=markers,
            budget=budget,
            notify=notify,
            job_id="weekly",
            job_type="week_in_review",
            job_name="Weekly",
            profile=RecipientProfile(id=profile_id),
            window_start=MONDAY_9AM.replace(day=1),
            window_end=MONDAY_9AM,
            markdown_body="Risks\n- one",
            now=MONDAY_9AM,
        )
        tally_report(counts, result)
        return result

    first = await generate("ops")
    assert first.status == "saved"
    assert (await markers.read("weekly:run", "ops")).report_file_id == first.file_id

    again = await generate("ops")
    assert again.status == "reused"
    assert again.file_id == first.file_id

    capped = await generate("finance")
    assert capped.status == "skipped"
    assert capped.reason == "cap_reached"
    assert (counts.generated, counts.reused, counts.skipped) == (1, 1, 1)


@pytest.mark.asyncio
async def test_route_reports_disabled_by_default(store, folder_id) -> None:
    result = await maybe_generate_route_report(
        store=store,
        folder_id=folder_id,
        markers=ReportMarkerStore(store, folder_id=folder_id),
        budget=ReportBudget(run_key="run", cap=5),
        notify=Notify(),
        job_id="weekly",
        job_type="week_in_review",
        job_name="Weekly",
        profile=RecipientProfile(id="ops"),
        window_start=MONDAY_9AM,
        window_end=MONDAY_9AM,
        markdown_body="",
        now=MONDAY_9AM,
    )
    assert result.status == "skipped"
    assert result.reason == "disabled"
