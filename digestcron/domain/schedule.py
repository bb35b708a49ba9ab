from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


TARGET_KEY_PATTERN = re.compile(r"^[A-Z0-9_]+$")
ALERT_TYPES = ("new_high_risks", "new_open_loops_due_7d", "new_decisions")


def normalize_target_key(value: str) -> str:
    # Keys are upper-cased aliases for env-backed secrets, never raw URLs.
    key = str(value or "").strip().upper()
    if not TARGET_KEY_PATTERN.match(key):
        raise ValueError(f"Invalid target key {value!r}: use an alias matching [A-Z0-9_]+, not a URL")
    return key


class ScheduleModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProfileFilters(ScheduleModel):
    entities: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    risk_severity_min: Literal["low", "medium", "high"] | None = Field(default=None, alias="riskSeverityMin")
    include_risks: bool = Field(default=True, alias="includeRisks")
    include_open_loops: bool = Field(default=True, alias="includeOpenLoops")
    include_decisions: bool = Field(default=True, alias="includeDecisions")
    include_actions: bool = Field(default=True, alias="includeActions")


class ProfileFiltersOverride(ScheduleModel):
    # Every field optional so a route can override just one dimension.
    entities: list[str] | None = None
    tags: list[str] | None = None
    participants: list[str] | None = None
    risk_severity_min: Literal["low", "medium", "high"] | None = Field(default=None, alias="riskSeverityMin")
    include_risks: bool | None = Field(default=None, alias="includeRisks")
    include_open_loops: bool | None = Field(default=None, alias="includeOpenLoops")
    include_decisions: bool | None = Field(default=None, alias="includeDecisions")
    include_actions: bool | None = Field(default=None, alias="includeActions")


class RecipientProfile(ScheduleModel):
    id: str = Field(min_length=1)
    name: str | None = None
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    filters: ProfileFilters = Field(default_factory=ProfileFilters)

    @property
    def label(self) -> str:
        return self.name or self.id


class Route(ScheduleModel):
    profile_id: str = Field(alias="profileId", min_length=1)
    filters_override: ProfileFiltersOverride | None = Field(default=None, alias="filtersOverride")
    subject_prefix: str | None = Field(default=None, alias="subjectPrefix")


class RoutesTarget(ScheduleModel):
    profile_id: str = Field(alias="profileId", min_length=1)
    targets: list[str] = Field(default_factory=list)

    @field_validator("targets")
    @classmethod
    def _normalize_targets(cls, value: list[str]) -> list[str]:
        return [normalize_target_key(item) for item in value]


class ChannelConfig(ScheduleModel):
    enabled: bool = False
    targets: list[str] = Field(default_factory=list)
    routes_targets: list[RoutesTarget] = Field(default_factory=list, alias="routesTargets")
    max_items: int = Field(default=5, alias="maxItems", ge=1, le=20)

    @field_validator("targets")
    @classmethod
    def _normalize_targets(cls, value: list[str]) -> list[str]:
        return [normalize_target_key(item) for item in value]

    def targets_for(self, profile_id: str | None) -> list[str]:
        # Route-specific targets win; otherwise fall back to the channel-wide list.
        if profile_id is not None:
            for entry in self.routes_targets:
                if entry.profile_id == profile_id:
                    return list(entry.targets)
        return list(self.targets)


class SlackChannelConfig(ChannelConfig):
    pass


class WebhookChannelConfig(ChannelConfig):
    payload_version: Literal[1] = Field(default=1, alias="payloadVersion")


class Channels(ScheduleModel):
    slack: SlackChannelConfig | None = None
    webhook: WebhookChannelConfig | None = None


class Notify(ScheduleModel):
    enabled: bool = False
    mode: Literal["broadcast", "routes"] = "broadcast"
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    subject_prefix: str | None = Field(default=None, alias="subjectPrefix")
    include_links: bool = Field(default=True, alias="includeLinks")
    send_when_empty: bool = Field(default=False, alias="sendWhenEmpty")
    routes: list[Route] = Field(default_factory=list)
    generate_per_route_report: bool = Field(default=False, alias="generatePerRouteReport")
    report_title_template: str | None = Field(default=None, alias="reportTitleTemplate")
    max_per_route_reports_per_run: int | None = Field(default=None, alias="maxPerRouteReportsPerRun", ge=1)
    channels: Channels = Field(default_factory=Channels)


class JobSchedule(ScheduleModel):
    cron: str
    timezone: str = "UTC"


class WeekInReviewParams(ScheduleModel):
    export_report: bool = Field(default=True, alias="exportReport")
    report_title: str | None = Field(default=None, alias="reportTitle")
    tags: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)


class AlertsParams(ScheduleModel):
    alert_types: list[Literal["new_high_risks", "new_open_loops_due_7d", "new_decisions"]] = Field(
        default_factory=lambda: list(ALERT_TYPES), alias="alertTypes"
    )
    lookback_days: int = Field(default=1, alias="lookbackDays", ge=1, le=30)
    due_in_days: int = Field(default=7, alias="dueInDays", ge=1, le=60)
    risk_severity: Literal["low", "medium", "high"] = Field(default="high", alias="riskSeverity")


class JobBase(ScheduleModel):
    id: str = Field(min_length=1)
    name: str | None = None
    enabled: bool = True
    schedule: JobSchedule
    notify: Notify | None = None

    @property
    def label(self) -> str:
        return self.name or self.id


class WeekInReviewJob(JobBase):
    type: Literal["week_in_review"]
    params: WeekInReviewParams = Field(default_factory=WeekInReviewParams)


class AlertsJob(JobBase):
    type: Literal["alerts"]
    params: AlertsParams = Field(default_factory=AlertsParams)


Job = Annotated[Union[WeekInReviewJob, AlertsJob], Field(discriminator="type")]
JOB_ADAPTER: TypeAdapter[Any] = TypeAdapter(Job)


def unresolved_route_profiles(job: WeekInReviewJob | AlertsJob, profile_ids: set[str]) -> list[str]:
    # Routes mode requires every route to point at a declared profile.
    if job.notify is None or job.notify.mode != "routes":
        return []
    return [route.profile_id for route in job.notify.routes if route.profile_id not in profile_ids]


class ScheduleConfig(ScheduleModel):
    version: int = 1
    updated_at: datetime | None = Field(default=None, alias="updatedAtISO")
    jobs: list[Job] = Field(default_factory=list)
    recipient_profiles: list[RecipientProfile] = Field(default_factory=list, alias="recipientProfiles")

    @model_validator(mode="after")
    def _check_references(self) -> "ScheduleConfig":
        seen: set[str] = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"Duplicate job id {job.id}")
            seen.add(job.id)
        profile_ids = {profile.id for profile in self.recipient_profiles}
        for job in self.jobs:
            missing = unresolved_route_profiles(job, profile_ids)
            if missing:
                raise ValueError(f"Job {job.id} routes reference unknown profiles: {', '.join(missing)}")
        return self

    def profile(self, profile_id: str) -> RecipientProfile | None:
        for profile in self.recipient_profiles:
            if profile.id == profile_id:
                return profile
        return None

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
