from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from digestcron.core.config import Settings, get_settings
from digestcron.domain.documents import BreakerTarget, JobRunLogEntry
from digestcron.domain.schedule import ScheduleConfig
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.notifications.breaker import (
    TargetRef,
    load_breaker_state,
    muted_targets,
    save_breaker_state,
    unmute_target,
)
from digestcron.services.notifications.targets import missing_targets
from digestcron.services.scheduler.lock import LeaseLock
from digestcron.services.scheduler.run_log import JobRunLog
from digestcron.services.scheduler.schedule_store import read_schedule_config
from digestcron.services.telemetry import counters_snapshot, send_stats_by_channel


logger = logging.getLogger(__name__)

RECENT_FAILURES_MAX = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _last_run_summary(entry: JobRunLogEntry) -> dict[str, Any]:
    # Keep the per-channel counters; drop the failure list, which is reported separately.
    payload = entry.to_json_dict()
    payload.pop("failures", None)
    return payload


def _recent_failures(entries: list[JobRunLogEntry]) -> list[dict[str, Any]]:
    failures: list[dict[str, Any]] = []
    for entry in entries:
        stamp = entry.to_json_dict()["tsISO"]
        if not entry.ok and not entry.failures:
            failures.append({"jobId": entry.job_id, "tsISO": stamp, "channel": "job", "message": entry.error or ""})
        for failure in entry.failures or []:
            failures.append({"jobId": entry.job_id, "tsISO": stamp, **failure.to_json_dict()})
    return failures[-RECENT_FAILURES_MAX:]


def configured_target_keys(config: ScheduleConfig) -> dict[str, list[str]]:
    # Every alias an enabled chat/webhook channel could resolve at send time.
    keys: dict[str, list[str]] = {"slack": [], "webhook": []}
    for job in config.jobs:
        if job.notify is None:
            continue
        for channel, channel_config in (("slack", job.notify.channels.slack), ("webhook", job.notify.channels.webhook)):
            if channel_config is None or not channel_config.enabled:
                continue
            candidates = list(channel_config.targets)
            for entry in channel_config.routes_targets:
                candidates.extend(entry.targets)
            for key in candidates:
                if key not in keys[channel]:
                    keys[channel].append(key)
    return keys


def _breaker_view(entry: BreakerTarget) -> dict[str, Any]:
    return {"key": entry.key, **entry.to_json_dict()}


async def build_ops_status(
    store: BlobStore,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the operator view: lock, last runs, failures, muted and missing targets."""
    settings = settings or get_settings()
    now = now or _utc_now()
    folder_id = await store.ensure_folder(settings.app_folder_name)

    lock = await LeaseLock(store, folder_id=folder_id).read()
    entries = await JobRunLog(store, folder_id=folder_id).read_tail()
    last_runs: dict[str, dict[str, Any]] = {}
    for entry in entries:
        last_runs[entry.job_id] = _last_run_summary(entry)

    loaded = await read_schedule_config(store, folder_id=folder_id)
    target_keys = configured_target_keys(loaded.config)
    breaker_state = await load_breaker_state(store, folder_id=folder_id)

    return {
        "now": now.isoformat(),
        "lock": {
            "held": bool(lock and lock.lease_until > now),
            "holder": lock.holder if lock else None,
            "leaseUntilISO": lock.lease_until.isoformat() if lock else None,
        },
        "jobs": [
            {"id": job.id, "type": job.type, "enabled": job.enabled, "cron": job.schedule.cron}
            for job in loaded.config.jobs
        ],
        "configIssues": [{"ref": issue.ref, "message": issue.message} for issue in loaded.issues],
        "lastRuns": last_runs,
        "recentFailures": _recent_failures(entries),
        "missingTargets": {channel: missing_targets(channel, keys) for channel, keys in target_keys.items()},
        "mutedTargets": [_breaker_view(entry) for entry in muted_targets(breaker_state, now=now)],
        "counters": counters_snapshot(),
        "sendStats": send_stats_by_channel(),
    }


async def list_muted_targets(
    store: BlobStore,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    settings = settings or get_settings()
    folder_id = await store.ensure_folder(settings.app_folder_name)
    state = await load_breaker_state(store, folder_id=folder_id)
    return [_breaker_view(entry) for entry in muted_targets(state, now=now or _utc_now())]


async def unmute_breaker_target(
    store: BlobStore,
    target: TargetRef,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    # Operator override; races with a running tick are last-writer-wins.
    settings = settings or get_settings()
    folder_id = await store.ensure_folder(settings.app_folder_name)
    state = await load_breaker_state(store, folder_id=folder_id)
    entry = unmute_target(state, target)
    await save_breaker_state(store, folder_id=folder_id, state=state, now=now)
    logger.info("breaker_target_unmuted key=%s", entry.key)
    return _breaker_view(entry)
