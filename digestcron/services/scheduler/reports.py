from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from digestcron.core.config import get_settings
from digestcron.core.errors import BlobStoreError
from digestcron.domain.documents import ReportCounts, ReportMarker
from digestcron.domain.schedule import Notify, RecipientProfile
from digestcron.persistence.blob_store import BlobRef, BlobStore
from digestcron.services.content.source import Artifact
from digestcron.services.scheduler.markers import ReportMarkerStore, slugify


logger = logging.getLogger(__name__)

REPORT_NAME_MAX = 180
_TEMPLATE_TOKEN = re.compile(r"\{(jobName|profileName|profileId|dateFrom|dateTo)\}")


def report_file_name(
    *,
    day: datetime,
    job_id: str,
    title: str,
    profile_id: str | None = None,
) -> str:
    parts = ["report", day.strftime("%Y%m%d"), slugify(job_id, limit=40)]
    if profile_id:
        parts.append(slugify(profile_id, limit=40))
    parts.append(slugify(title, limit=50))
    return ("_".join(parts) + ".md")[:REPORT_NAME_MAX]


def render_markdown_report(
    *,
    title: str,
    window_start: datetime,
    window_end: datetime,
    artifacts: list[Artifact],
    scope: str | None = None,
) -> str:
    """Render a plain markdown digest of the matched artifacts.

    Sections only appear when they have items, so an empty window still yields
    a short, valid document.
    """
    lines = [
        f"# {title}",
        "",
        f"Window: {window_start.date().isoformat()} to {window_end.date().isoformat()}",
    ]
    if scope:
        lines.append(f"Scope: {scope}")
    lines += ["", f"Artifacts reviewed: {len(artifacts)}", ""]
    risks = [f"- [{risk.severity}] {risk.text}" for item in artifacts for risk in item.risks]
    loops = [
        f"- {loop.text}" + (f" (due {loop.due_date[:10]})" if loop.due_date else "")
        for item in artifacts
        for loop in item.open_loops
    ]
    decisions = [f"- {decision.text}" for item in artifacts for decision in item.decisions]
    actions = [f"- {action.text}" for item in artifacts for action in item.actions]
    for heading, rows in (("Risks", risks), ("Open loops", loops), ("Decisions", decisions), ("Actions", actions)):
        if rows:
            lines += [f"## {heading}", *rows, ""]
    if artifacts:
        lines.append("## Sources")
        for item in artifacts:
            stamp = item.content_date.date().isoformat() if item.content_date else "undated"
            lines.append(f"- {stamp} {item.title or item.id}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


async def save_report_file(store: BlobStore, *, folder_id: str, name: str, markdown: str) -> BlobRef:
    # Re-running the same window overwrites the same file name.
    return await store.upsert_text(parent=folder_id, name=name, text=markdown)


def report_link(file_id: str | None) -> str | None:
    if not file_id:
        return None
    return get_settings().report_link_template.format(file_id=file_id)


@dataclass
class ReportBudget:
    """Per-run allowance of per-route reports.

    One instance is created per job run and passed down the fan-out, so two
    runs never share a count.
    """

    run_key: str
    cap: int
    used: int = 0

    @classmethod
    def for_notify(cls, run_key: str, notify: Notify) -> "ReportBudget":
        settings = get_settings()
        requested = notify.max_per_route_reports_per_run or settings.report_default_max_per_run
        return cls(run_key=run_key, cap=max(0, min(requested, settings.report_hard_cap_per_run)))

    def try_reserve(self) -> bool:
        if self.used >= self.cap:
            return False
        self.used += 1
        return True


@dataclass
class RouteReportResult:
    status: Literal["saved", "reused", "skipped", "failed"]
    file_id: str | None = None
    file_name: str | None = None
    reason: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def render_report_title(
    template: str | None,
    *,
    job_type: str,
    job_name: str,
    profile: RecipientProfile,
    window_start: datetime,
    window_end: datetime,
) -> str:
    values = {
        "jobName": job_name,
        "profileName": profile.name or profile.id,
        "profileId": profile.id,
        "dateFrom": window_start.date().isoformat(),
        "dateTo": window_end.date().isoformat(),
    }
    if template and template.strip():
        rendered = _TEMPLATE_TOKEN.sub(lambda match: values[match.group(1)], template.strip())
        if rendered.strip():
            return rendered.strip()
    base = "Week in Review" if job_type == "week_in_review" else "Alerts"
    return f"{base} - {profile.name or profile.id} - {values['dateFrom']} {values['dateTo']}"


async def maybe_generate_route_report(
    *,
    store: BlobStore,
    folder_id: str,
    markers: ReportMarkerStore,
    budget: ReportBudget,
    notify: Notify,
    job_id: str,
    job_type: str,
    job_name: str,
    profile: RecipientProfile,
    window_start: datetime,
    window_end: datetime,
    markdown_body: str,
    now: datetime,
) -> RouteReportResult:
    # One report per (run, profile); an existing marker is reused without touching the budget.
    if not notify.generate_per_route_report:
        return RouteReportResult(status="skipped", reason="disabled")
    try:
        existing = await markers.read(budget.run_key, profile.id)
    except BlobStoreError as exc:
        return RouteReportResult(status="failed", error=str(exc)[:200])
    if existing is not None:
        return RouteReportResult(status="reused", file_id=existing.report_file_id, file_name=existing.report_file_name)
    if not budget.try_reserve():
        return RouteReportResult(status="skipped", reason="cap_reached")
    title = render_report_title(
        notify.report_title_template,
        job_type=job_type,
        job_name=job_name,
        profile=profile,
        window_start=window_start,
        window_end=window_end,
    )
    name = report_file_name(day=now, job_id=job_id, profile_id=profile.id, title=title)
    try:
        ref = await save_report_file(store, folder_id=folder_id, name=name, markdown=f"# {title}\n\n{markdown_body}")
    except BlobStoreError as exc:
        logger.warning("route_report_save_failed job=%s profile=%s", job_id, profile.id, exc_info=True)
        return RouteReportResult(status="failed", error=str(exc)[:200])
    result = RouteReportResult(status="saved", file_id=ref.id, file_name=name)
    try:
        await markers.write(
            ReportMarker(
                run_key=budget.run_key,
                profile_id=profile.id,
                report_file_id=ref.id,
                report_file_name=name,
                saved_at=now,
            )
        )
    except BlobStoreError as exc:
        logger.warning("route_report_marker_failed job=%s profile=%s", job_id, profile.id, exc_info=True)
        result.warnings.append(f"report marker write failed: {str(exc)[:160]}")
    return result


def tally_report(counts: ReportCounts, result: RouteReportResult) -> None:
    if result.status == "saved":
        counts.generated += 1
    elif result.status == "reused":
        counts.reused += 1
    elif result.status == "skipped":
        counts.skipped += 1
    else:
        counts.failed += 1
