from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from digestcron.core.config import get_settings
from digestcron.domain.schedule import Notify
from digestcron.services.notifications.digest import Digest, TopAction, TopDecision, TopOpenLoop, TopRisk, synthesis_link
from digestcron.services.scheduler.jobs import NotifyInput, to_iso
from digestcron.services.scheduler.reports import report_link


SLACK_ITEM_MAX = 180


@dataclass(frozen=True)
class ComposedEmail:
    subject: str
    body: str


def _with_prefix(prefix: str | None, subject: str) -> str:
    prefix = (prefix or "").strip()
    return f"{prefix} {subject}" if prefix else subject


def _dashboard_url() -> str:
    settings = get_settings()
    return f"{settings.app_base_url}{settings.dashboard_path}"


def compose_week_in_review_email(notify_input: NotifyInput, notify: Notify) -> ComposedEmail:
    subject = _with_prefix(
        notify.subject_prefix,
        f"Week in Review • {to_iso(notify_input.window_start)[:10]} → {to_iso(notify_input.window_end)[:10]}",
    )
    totals = notify_input.totals
    body = [
        "# Timeline Week in Review",
        "",
        f"Window: {to_iso(notify_input.window_start)} to {to_iso(notify_input.window_end)}",
        "",
        "Highlights",
        f"- Artifacts reviewed: {totals.get('artifacts', 0)}",
        f"- Decisions: {totals.get('decisions', 0)}",
        f"- Open loops: {totals.get('open_loops', 0)}",
        f"- High risks: {totals.get('high_risks', 0)}",
        "",
    ]
    if notify.include_links:
        body += ["Links", f"- Dashboard: {_dashboard_url()}"]
        report_url = report_link(notify_input.report_file_id)
        if report_url:
            body.append(f"- Report: {report_url}")
        synthesis_url = synthesis_link(notify_input.synthesis_artifact_id)
        if synthesis_url:
            body.append(f"- Synthesis: {synthesis_url}")
        body.append("")
    body.append(f"Job ID: {notify_input.job_id}")
    return ComposedEmail(subject=subject, body="\n".join(body))


def compose_alerts_email(notify_input: NotifyInput, notify: Notify) -> ComposedEmail:
    subject = _with_prefix(notify.subject_prefix, f"Timeline Alerts • {to_iso(notify_input.window_end)[:10]}")
    totals = notify_input.totals
    body = [
        "# Timeline Alerts",
        "",
        f"Window: {to_iso(notify_input.window_start)} to {to_iso(notify_input.window_end)}",
        "",
        "Top items",
        f"- New high risks: {totals.get('new_high_risks', 0)}",
        f"- Open loops due soon: {totals.get('new_open_loops_due_7d', 0)}",
        f"- New decisions: {totals.get('new_decisions', 0)}",
        "",
    ]
    if notify.include_links:
        body += ["Links", f"- Dashboard: {_dashboard_url()}"]
        notice_url = report_link(notify_input.notice_file_id)
        if notice_url:
            body.append(f"- Notice: {notice_url}")
        body.append("")
    body.append(f"Job ID: {notify_input.job_id}")
    return ComposedEmail(subject=subject, body="\n".join(body))


def compose_broadcast_email(notify_input: NotifyInput, notify: Notify) -> ComposedEmail:
    if notify_input.job_type == "week_in_review":
        return compose_week_in_review_email(notify_input, notify)
    return compose_alerts_email(notify_input, notify)


class _PayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class WebhookJobRef(_PayloadModel):
    id: str
    type: Literal["week_in_review", "alerts"]
    run_key: str = Field(alias="runKey", max_length=500)
    date_from: str | None = Field(default=None, alias="dateFromISO")
    date_to: str | None = Field(default=None, alias="dateToISO")


class WebhookRecipient(_PayloadModel):
    key: str
    profile_name: str | None = Field(default=None, alias="profileName")


class WebhookSummary(_PayloadModel):
    risks: int = 0
    open_loops: int = Field(default=0, alias="openLoops")
    decisions: int = 0
    actions: int = 0


class WebhookTop(_PayloadModel):
    risks: list[TopRisk] | None = None
    open_loops: list[TopOpenLoop] | None = Field(default=None, alias="openLoops")
    decisions: list[TopDecision] | None = None
    actions: list[TopAction] | None = None


class WebhookLinks(_PayloadModel):
    dashboard_url: str = Field(alias="dashboardUrl")
    drilldown_url: str | None = Field(default=None, alias="drilldownUrl")
    report_url: str | None = Field(default=None, alias="reportUrl")
    synthesis_url: str | None = Field(default=None, alias="synthesisUrl")


class WebhookPayloadV1(_PayloadModel):
    version: Literal[1] = 1
    job: WebhookJobRef
    recipient: WebhookRecipient
    summary: WebhookSummary
    top: WebhookTop
    links: WebhookLinks

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass(frozen=True)
class FormattedDigest:
    slack_text: str
    webhook_payload: WebhookPayloadV1


def job_ref_for(notify_input: NotifyInput) -> WebhookJobRef:
    return WebhookJobRef(
        id=notify_input.job_id,
        type=notify_input.job_type,
        run_key=notify_input.run_key,
        date_from=to_iso(notify_input.window_start),
        date_to=to_iso(notify_input.window_end),
    )


def format_digest(
    digest: Digest,
    *,
    job: WebhookJobRef,
    recipient: WebhookRecipient,
    max_items: int,
    include_report_link: bool = True,
) -> FormattedDigest:
    """Render one digest as chat text and as the versioned webhook payload."""
    risks = digest.top.risks[:max_items]
    open_loops = digest.top.open_loops[:max_items]
    decisions = digest.top.decisions[:max_items]
    actions = digest.top.actions[:max_items]
    report_url = digest.links.report_url if include_report_link else None

    lines = [
        digest.subject,
        f"Risks: {digest.stats.risks} | Open loops: {digest.stats.open_loops} | Decisions: {digest.stats.decisions}",
    ]
    lines += [f"• Risk: {item.text[:SLACK_ITEM_MAX]}" for item in risks]
    lines += [f"• Open loop: {item.text[:SLACK_ITEM_MAX]}" for item in open_loops]
    lines += [f"• Decision: {item.text[:SLACK_ITEM_MAX]}" for item in decisions]
    if digest.links.drilldown_url:
        lines.append(f"Drilldown: {digest.links.drilldown_url}")
    if report_url:
        lines.append(f"Report: {report_url}")
    if digest.links.synthesis_url:
        lines.append(f"Synthesis: {digest.links.synthesis_url}")

    payload = WebhookPayloadV1(
        job=job,
        recipient=recipient,
        summary=WebhookSummary(
            risks=digest.stats.risks,
            open_loops=digest.stats.open_loops,
            decisions=digest.stats.decisions,
            actions=digest.stats.actions,
        ),
        top=WebhookTop(
            risks=risks or None,
            open_loops=open_loops or None,
            decisions=decisions or None,
            actions=actions or None,
        ),
        links=WebhookLinks(
            dashboard_url=_dashboard_url(),
            drilldown_url=digest.links.drilldown_url,
            report_url=report_url,
            synthesis_url=digest.links.synthesis_url,
        ),
    )
    return FormattedDigest(slack_text="\n".join(lines), webhook_payload=payload)
