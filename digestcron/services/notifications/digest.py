from __future__ import annotations

from collections import Counter
from typing import Protocol
from urllib.parse import quote, urlencode

from pydantic import BaseModel, ConfigDict, Field

from digestcron.core.config import get_settings
from digestcron.domain.schedule import ProfileFilters, ProfileFiltersOverride, RecipientProfile
from digestcron.services.content.entities import canonicalize_entity, normalize_entity_name
from digestcron.services.content.source import ContentSource, StructuredQuery
from digestcron.services.scheduler.jobs import NotifyInput, to_iso
from digestcron.services.scheduler.reports import report_link


TOP_ITEMS_MAX = 20
ITEM_TEXT_MAX = 240
HIGHLIGHTS_MAX = 5
_SEVERITY_RANK = {"low": 1, "medium": 2, "high": 3}


class _DigestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TopRisk(_DigestModel):
    text: str
    severity: str | None = None
    owner: str | None = None
    due_date: str | None = Field(default=None, alias="dueDateISO")


class TopOpenLoop(_DigestModel):
    text: str
    owner: str | None = None
    due_date: str | None = Field(default=None, alias="dueDateISO")
    status: str | None = None


class TopDecision(_DigestModel):
    text: str
    date: str | None = Field(default=None, alias="dateISO")
    owner: str | None = None


class TopAction(_DigestModel):
    type: str
    text: str
    due_date: str | None = Field(default=None, alias="dueDateISO")


class DigestStats(_DigestModel):
    risks: int = 0
    open_loops: int = Field(default=0, alias="openLoops")
    decisions: int = 0
    actions: int = 0
    top_entities: list[str] = Field(default_factory=list, alias="topEntities")


class DigestTop(_DigestModel):
    risks: list[TopRisk] = Field(default_factory=list)
    open_loops: list[TopOpenLoop] = Field(default_factory=list, alias="openLoops")
    decisions: list[TopDecision] = Field(default_factory=list)
    actions: list[TopAction] = Field(default_factory=list)


class DigestLinks(_DigestModel):
    drilldown_url: str | None = Field(default=None, alias="drilldownUrl")
    report_url: str | None = Field(default=None, alias="reportUrl")
    synthesis_url: str | None = Field(default=None, alias="synthesisUrl")


class Digest(_DigestModel):
    subject: str
    body: str
    empty: bool
    stats: DigestStats = Field(default_factory=DigestStats)
    top: DigestTop = Field(default_factory=DigestTop)
    links: DigestLinks = Field(default_factory=DigestLinks)


class DigestBuilder(Protocol):
    async def build_digest(
        self,
        job_type: str,
        profile: RecipientProfile,
        notify_input: NotifyInput,
        *,
        report_file_id: str | None = None,
    ) -> Digest: ...


def _unique(items: list[str] | None) -> list[str]:
    seen: dict[str, None] = {}
    for item in items or []:
        value = item.strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


def normalize_profile_filters(filters: ProfileFilters, aliases: dict[str, str] | None = None) -> ProfileFilters:
    # Entities are alias-canonicalized; tags and participants compare lower-cased.
    entities = _unique([canonicalize_entity(entity, aliases) for entity in _unique(filters.entities)])
    return filters.model_copy(
        update={
            "entities": entities,
            "tags": _unique([tag.lower() for tag in _unique(filters.tags)]),
            "participants": _unique([person.lower() for person in _unique(filters.participants)]),
        }
    )


def merge_filters(base: ProfileFilters, override: ProfileFiltersOverride | None) -> ProfileFilters:
    if override is None:
        return base
    changes = {name: value for name, value in override.model_dump().items() if value is not None}
    return base.model_copy(update=changes)


def timeline_link(filters: ProfileFilters) -> str:
    params: dict[str, str] = {}
    if filters.entities:
        params["entity"] = filters.entities[0]
    if filters.tags:
        params["tags"] = ",".join(filters.tags)
    if filters.participants:
        params["participants"] = ",".join(filters.participants)
    query = urlencode(params)
    return f"{get_settings().app_base_url}/timeline" + (f"?{query}" if query else "")


def synthesis_link(artifact_id: str | None) -> str | None:
    if not artifact_id:
        return None
    return f"{get_settings().app_base_url}/timeline?artifactId={quote(artifact_id, safe='')}"


def _clamp(value: str, limit: int = ITEM_TEXT_MAX) -> str:
    return value.strip()[:limit]


def _highlights(items: list[str]) -> list[str]:
    return [f"- {item}" for item in items[:HIGHLIGHTS_MAX]]


def attach_report(digest: Digest, file_id: str) -> Digest:
    # Point the digest at a per-route report saved after it was built.
    url = report_link(file_id)
    links = digest.links.model_copy(update={"report_url": url})
    return digest.model_copy(update={"links": links, "body": digest.body.rstrip("\n") + f"\n- Report: {url}"})


class ContentDigestBuilder:
    """Personalize a job's content for one recipient profile."""

    def __init__(self, source: ContentSource, *, aliases: dict[str, str] | None = None) -> None:
        self._source = source
        self._aliases = aliases or {}

    async def build_digest(
        self,
        job_type: str,
        profile: RecipientProfile,
        notify_input: NotifyInput,
        *,
        report_file_id: str | None = None,
    ) -> Digest:
        filters = normalize_profile_filters(profile.filters, self._aliases)
        require_any = []
        if filters.include_risks:
            require_any.append("risks")
        if filters.include_open_loops:
            require_any.append("open_loops")
        if filters.include_decisions:
            require_any.append("decisions")
        if filters.include_actions:
            require_any.append("actions")
        risk_floor = _SEVERITY_RANK.get(filters.risk_severity_min or "low", 1)

        risks: list[str] = []
        loops: list[str] = []
        decisions: list[str] = []
        actions: list[str] = []
        top = DigestTop()
        entity_counts: Counter[str] = Counter()
        seen_artifacts: set[str] = set()
        for entity in filters.entities or [None]:
            result = await self._source.query(
                StructuredQuery(
                    date_from=notify_input.window_start,
                    date_to=notify_input.window_end,
                    entity=entity,
                    tags=filters.tags,
                    participants=filters.participants,
                    require_any=require_any,
                )
            )
            for artifact in result.artifacts:
                # Several entity queries can hit the same artifact.
                if artifact.id in seen_artifacts:
                    continue
                seen_artifacts.add(artifact.id)
                entity_counts.update(normalize_entity_name(ref.name) for ref in artifact.entities)
                if filters.include_risks:
                    for risk in artifact.risks:
                        if _SEVERITY_RANK.get(risk.severity, 1) < risk_floor:
                            continue
                        risks.append(f"[{risk.severity}] {risk.text}")
                        top.risks.append(
                            TopRisk(text=_clamp(risk.text), severity=risk.severity, owner=risk.owner, due_date=risk.due_date)
                        )
                if filters.include_open_loops:
                    for loop in artifact.open_loops:
                        loops.append(loop.text)
                        top.open_loops.append(
                            TopOpenLoop(text=_clamp(loop.text), owner=loop.owner, due_date=loop.due_date, status=loop.status)
                        )
                if filters.include_decisions:
                    for decision in artifact.decisions:
                        decisions.append(decision.text)
                        top.decisions.append(TopDecision(text=_clamp(decision.text), date=decision.date, owner=decision.owner))
                if filters.include_actions:
                    for action in artifact.actions:
                        actions.append(action.text)
                        top.actions.append(TopAction(type=action.type, text=_clamp(action.text), due_date=action.due_date))

        has_content = bool(risks or loops or decisions or actions)
        top_entities = [f"{name} ({count})" for name, count in entity_counts.most_common(3) if name]
        scope = " · ".join(
            part
            for part in (
                f"entities={','.join(filters.entities)}" if filters.entities else "",
                f"tags={','.join(filters.tags)}" if filters.tags else "",
                f"participants={','.join(filters.participants)}" if filters.participants else "",
            )
            if part
        )
        subject_base = "Week in Review" if job_type == "week_in_review" else "Timeline Alerts"
        links = DigestLinks(
            drilldown_url=timeline_link(filters),
            report_url=report_link(report_file_id or notify_input.report_file_id),
            synthesis_url=synthesis_link(notify_input.synthesis_artifact_id),
        )
        body = [
            f"# {subject_base}",
            "",
            f"Window: {to_iso(notify_input.window_start)} to {to_iso(notify_input.window_end)}",
            f"Your scope: {scope or 'all indexed timeline items'}",
            "",
        ]
        if top_entities:
            body += ["Top entities", *_highlights(top_entities), ""]
        for heading, rows in (("Risks", risks), ("Open loops", loops), ("Decisions", decisions), ("Actions", actions)):
            if rows:
                body += [heading, *_highlights(rows), ""]
        if not has_content:
            body += ["No updates in your scope this run.", ""]
        body += ["Links", f"- Timeline: {links.drilldown_url}"]
        if links.report_url:
            body.append(f"- Report: {links.report_url}")
        if links.synthesis_url:
            body.append(f"- Synthesis: {links.synthesis_url}")

        return Digest(
            subject=f"{subject_base} • {profile.label}",
            body="\n".join(body),
            empty=not has_content,
            stats=DigestStats(
                risks=len(risks),
                open_loops=len(loops),
                decisions=len(decisions),
                actions=len(actions),
                top_entities=top_entities,
            ),
            top=DigestTop(
                risks=top.risks[:TOP_ITEMS_MAX],
                open_loops=top.open_loops[:TOP_ITEMS_MAX],
                decisions=top.decisions[:TOP_ITEMS_MAX],
                actions=top.actions[:TOP_ITEMS_MAX],
            ),
            links=links,
        )
