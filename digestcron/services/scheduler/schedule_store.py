from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from digestcron.core.errors import ConfigError
from digestcron.domain.schedule import JOB_ADAPTER, RecipientProfile, ScheduleConfig
from digestcron.persistence.blob_store import BlobStore


logger = logging.getLogger(__name__)

SCHEDULE_CONFIG_NAME = "schedule_config.json"


@dataclass(frozen=True)
class ConfigIssue:
    # One rejected job or profile, surfaced to operators instead of failing the tick.
    ref: str
    message: str


@dataclass
class LoadedSchedule:
    config: ScheduleConfig
    issues: list[ConfigIssue] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_schedule_config(now: datetime | None = None) -> ScheduleConfig:
    return ScheduleConfig(version=1, updated_at=now or _utc_now(), jobs=[], recipient_profiles=[])


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def parse_schedule_lenient(payload: Any) -> LoadedSchedule:
    """Parse a stored config, dropping invalid jobs and profiles one by one.

    Route-to-profile resolution is not enforced here; a route whose profile is
    missing is reported as a failed route at fan-out time.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("jobs", []), list):
        return LoadedSchedule(
            config=default_schedule_config(),
            issues=[ConfigIssue(ref="schedule_config", message="Config is not a valid schedule document")],
        )
    issues: list[ConfigIssue] = []
    profiles: list[RecipientProfile] = []
    for index, raw in enumerate(payload.get("recipientProfiles") or []):
        try:
            profiles.append(RecipientProfile.model_validate(raw))
        except ValidationError as exc:
            issues.append(ConfigIssue(ref=f"recipientProfiles[{index}]", message=_first_error(exc)))
    jobs: list[Any] = []
    seen: set[str] = set()
    for index, raw in enumerate(payload.get("jobs") or []):
        ref = str(raw.get("id")) if isinstance(raw, dict) and raw.get("id") else f"jobs[{index}]"
        try:
            job = JOB_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            issues.append(ConfigIssue(ref=ref, message=_first_error(exc)))
            continue
        if job.id in seen:
            issues.append(ConfigIssue(ref=ref, message="Duplicate job id"))
            continue
        seen.add(job.id)
        jobs.append(job)
    updated_at = None
    try:
        if payload.get("updatedAtISO"):
            updated_at = datetime.fromisoformat(str(payload["updatedAtISO"]).replace("Z", "+00:00"))
    except ValueError:
        updated_at = None
    config = ScheduleConfig.model_construct(
        version=int(payload.get("version") or 1),
        updated_at=updated_at,
        jobs=jobs,
        recipient_profiles=profiles,
    )
    for issue in issues:
        logger.warning("schedule_config_issue ref=%s message=%s", issue.ref, issue.message)
    return LoadedSchedule(config=config, issues=issues)


def validate_schedule_config(payload: Any) -> ScheduleConfig:
    # Strict validation for admin writes; any problem raises ConfigError.
    try:
        return ScheduleConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(_first_error(exc)) from exc


async def read_schedule_config(store: BlobStore, *, folder_id: str) -> LoadedSchedule:
    # Auto-create the default empty config on first read; degrade unreadable documents to it.
    ref = await store.find_by_name(parent=folder_id, name=SCHEDULE_CONFIG_NAME)
    if ref is None:
        config = default_schedule_config()
        await store.create(
            name=SCHEDULE_CONFIG_NAME,
            parent=folder_id,
            body=json.dumps(config.to_json_dict(), indent=2).encode("utf-8"),
        )
        logger.info("schedule_config_created folder=%s", folder_id)
        return LoadedSchedule(config=config)
    raw = await store.get(ref.id)
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("schedule_config_unparseable folder=%s", folder_id)
        return LoadedSchedule(
            config=default_schedule_config(),
            issues=[ConfigIssue(ref="schedule_config", message="Config is not valid JSON")],
        )
    return parse_schedule_lenient(payload)


async def write_schedule_config(store: BlobStore, *, folder_id: str, payload: Any) -> ScheduleConfig:
    config = validate_schedule_config(payload)
    config = config.model_copy(update={"updated_at": _utc_now()})
    await store.upsert_json(parent=folder_id, name=SCHEDULE_CONFIG_NAME, payload=config.to_json_dict())
    return config
