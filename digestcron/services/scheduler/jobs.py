from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from digestcron.core.errors import JobComputationError
from digestcron.domain.schedule import AlertsJob, WeekInReviewJob
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.content.source import Artifact, ContentSource, StructuredQuery
from digestcron.services.scheduler.markers import slugify
from digestcron.services.scheduler.reports import render_markdown_report, report_file_name, save_report_file


logger = logging.getLogger(__name__)

_SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3}


def to_iso(moment: datetime) -> str:
    # Millisecond UTC timestamps with a Z suffix; run keys embed these verbatim.
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class NotifyInput:
    """What the fan-out needs from a finished job, whatever its type."""

    job_id: str
    job_type: str
    job_name: str
    run_key: str
    window_start: datetime
    window_end: datetime
    totals: dict[str, int] = field(default_factory=dict)
    report_file_id: str | None = None
    notice_file_id: str | None = None
    synthesis_artifact_id: str | None = None

    @property
    def empty(self) -> bool:
        return not any(self.totals.values())


def _parse_due(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


async def run_week_in_review(
    job: WeekInReviewJob,
    *,
    now: datetime,
    source: ContentSource,
    store: BlobStore,
    folder_id: str,
) -> NotifyInput:
    window_start = now - timedelta(days=7)
    result = await source.query(
        StructuredQuery(
            date_from=window_start,
            date_to=now,
            tags=[tag.lower() for tag in job.params.tags],
            participants=[person.lower() for person in job.params.participants],
            limit_artifacts=100,
        )
    )
    artifacts = result.artifacts
    totals = {
        "artifacts": len(artifacts),
        "decisions": sum(len(item.decisions) for item in artifacts),
        "open_loops": sum(len(item.open_loops) for item in artifacts),
        "high_risks": sum(1 for item in artifacts for risk in item.risks if risk.severity == "high"),
    }
    synthesis = next((item for item in artifacts if item.kind == "synthesis"), None)
    report_file_id = None
    if job.params.export_report:
        title = job.params.report_title or f"Week in Review {window_start.date().isoformat()} to {now.date().isoformat()}"
        markdown = render_markdown_report(title=title, window_start=window_start, window_end=now, artifacts=artifacts)
        ref = await save_report_file(
            store,
            folder_id=folder_id,
            name=report_file_name(day=now, job_id=job.id, title=title),
            markdown=markdown,
        )
        report_file_id = ref.id
    return NotifyInput(
        job_id=job.id,
        job_type=job.type,
        job_name=job.label,
        run_key=f"{job.id}:{to_iso(window_start)}:{to_iso(now)}",
        window_start=window_start,
        window_end=now,
        totals=totals,
        report_file_id=report_file_id,
        synthesis_artifact_id=synthesis.id if synthesis else None,
    )


def _alert_counts(job: AlertsJob, artifacts: list[Artifact], now: datetime) -> dict[str, int]:
    threshold = _SEVERITY_RANK[job.params.risk_severity]
    due_limit = now + timedelta(days=job.params.due_in_days)
    counts: dict[str, int] = {}
    for alert_type in job.params.alert_types:
        if alert_type == "new_high_risks":
            counts[alert_type] = sum(
                1 for item in artifacts for risk in item.risks if _SEVERITY_RANK.get(risk.severity, 1) >= threshold
            )
        elif alert_type == "new_open_loops_due_7d":
            due_dates = [_parse_due(loop.due_date) for item in artifacts for loop in item.open_loops]
            counts[alert_type] = sum(1 for due in due_dates if due is not None and now <= due <= due_limit)
        elif alert_type == "new_decisions":
            counts[alert_type] = sum(len(item.decisions) for item in artifacts)
    return counts


def _render_notice(job: AlertsJob, counts: dict[str, int], window_start: datetime, now: datetime) -> str:
    lines = [f"# Alerts: {job.label}", "", f"Window: {to_iso(window_start)} to {to_iso(now)}", ""]
    lines += [f"- {alert_type}: {count}" for alert_type, count in counts.items()]
    return "\n".join(lines) + "\n"


async def run_alerts(
    job: AlertsJob,
    *,
    now: datetime,
    source: ContentSource,
    store: BlobStore,
    folder_id: str,
) -> NotifyInput:
    window_start = now - timedelta(days=job.params.lookback_days)
    result = await source.query(StructuredQuery(date_from=window_start, date_to=now, limit_artifacts=100))
    counts = _alert_counts(job, result.artifacts, now)
    notice = await save_report_file(
        store,
        folder_id=folder_id,
        name=f"notice_{now.strftime('%Y%m%d')}_{slugify(job.id, limit=60)}.md",
        markdown=_render_notice(job, counts, window_start, now),
    )
    return NotifyInput(
        job_id=job.id,
        job_type=job.type,
        job_name=job.label,
        run_key=f"{job.id}:{to_iso(window_start)}:{to_iso(now)}",
        window_start=window_start,
        window_end=now,
        totals=counts,
        notice_file_id=notice.id,
    )


async def run_job(
    job: WeekInReviewJob | AlertsJob,
    *,
    now: datetime,
    source: ContentSource,
    store: BlobStore,
    folder_id: str,
) -> NotifyInput:
    # Any failure here fails the job as a whole; fan-out never starts.
    try:
        if isinstance(job, WeekInReviewJob):
            return await run_week_in_review(job, now=now, source=source, store=store, folder_id=folder_id)
        return await run_alerts(job, now=now, source=source, store=store, folder_id=folder_id)
    except JobComputationError:
        raise
    except Exception as exc:  # noqa: BLE001 - wrapped so the orchestrator sees one error type
        logger.exception("job_computation_failed job=%s", job.id)
        raise JobComputationError(str(exc) or exc.__class__.__name__) from exc
