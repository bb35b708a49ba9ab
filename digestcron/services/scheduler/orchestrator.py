from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from digestcron.core.config import Settings, get_settings
from digestcron.core.errors import BlobStoreError, JobComputationError, PersistenceError, ServiceAuthError
from digestcron.domain.documents import DeliveryFailure, JobRunLogEntry
from digestcron.domain.schedule import AlertsJob, ScheduleConfig, WeekInReviewJob
from digestcron.persistence.blob_store import BlobStore, get_blob_store
from digestcron.services.content.entities import load_entity_aliases
from digestcron.services.content.source import ContentSource, IndexedContentSource
from digestcron.services.notifications.breaker import load_breaker_state, save_breaker_state
from digestcron.services.notifications.channels import ChannelSenders, build_channel_senders
from digestcron.services.notifications.digest import ContentDigestBuilder
from digestcron.services.notifications.fanout import FanoutContext, fan_out
from digestcron.services.notifications.identity import ServiceCredentials, resolve_service_credentials
from digestcron.services.scheduler.cron import is_due
from digestcron.services.scheduler.jobs import run_job
from digestcron.services.scheduler.lock import LeaseLock, new_holder_token
from digestcron.services.scheduler.markers import DeliveryMarkerStore, ReportMarkerStore
from digestcron.services.scheduler.run_log import JobRunLog
from digestcron.services.scheduler.schedule_store import read_schedule_config
from digestcron.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ContentSourceFactory = Callable[[BlobStore, str, dict[str, str]], ContentSource]
CredentialsResolver = Callable[[Settings], Awaitable[ServiceCredentials]]
SendersFactory = Callable[[ServiceCredentials, Settings], ChannelSenders]


class TickResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    skipped: bool | None = None
    reason: str | None = None
    ran_jobs: list[JobRunLogEntry] = Field(default_factory=list, alias="ranJobs")
    config_issues: list[dict[str, str]] | None = Field(default=None, alias="configIssues")

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass
class TickDependencies:
    """Swappable collaborators for one tick; defaults build the production wiring."""

    store: BlobStore | None = None
    credentials_resolver: CredentialsResolver | None = None
    senders_factory: SendersFactory | None = None
    content_source_factory: ContentSourceFactory | None = None


def _utc_minute(now: datetime | None) -> datetime:
    # Every tick inside one scheduled minute shares a window, hence a run key.
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(second=0, microsecond=0)


async def _default_credentials(settings: Settings) -> ServiceCredentials:
    return await resolve_service_credentials(settings)


def _default_senders(credentials: ServiceCredentials, settings: Settings) -> ChannelSenders:
    return build_channel_senders(access_token=credentials.access_token, settings=settings)


def _default_content_source(store: BlobStore, folder_id: str, aliases: dict[str, str]) -> ContentSource:
    return IndexedContentSource(store, folder_id=folder_id, aliases=aliases)


def _preflight_failure(now: datetime, error: str) -> TickResult:
    entry = JobRunLogEntry(ts=now, job_id="auth", type="auth", ok=False, error=error)
    return TickResult(ok=False, ran_jobs=[entry])


async def _run_one_job(
    job: WeekInReviewJob | AlertsJob,
    *,
    ctx: FanoutContext,
    config: ScheduleConfig,
    source: ContentSource,
) -> JobRunLogEntry:
    started = time.perf_counter()
    entry = JobRunLogEntry(ts=ctx.now, job_id=job.id, type=job.type, ok=True)
    try:
        notify_input = await run_job(job, now=ctx.now, source=source, store=ctx.store, folder_id=ctx.folder_id)
    except JobComputationError as exc:
        increment_counter("job_failures_total")
        entry.ok = False
        entry.error = str(exc)[:500]
        entry.duration_ms = int((time.perf_counter() - started) * 1000)
        return entry
    entry.run_key = notify_input.run_key
    if job.notify is not None and job.notify.enabled:
        try:
            report = await fan_out(ctx, notify_input=notify_input, notify=job.notify, config=config)
        except Exception as exc:  # noqa: BLE001 - delivery problems are data, not job failures
            logger.exception("fanout_failed job=%s", job.id)
            entry.failures = [
                DeliveryFailure(channel="fanout", message=(str(exc) or exc.__class__.__name__)[:200], code="fanout_error")
            ]
        else:
            entry.email = report.email
            entry.routes = report.routes
            entry.reports = report.reports
            slack_config = job.notify.channels.slack
            webhook_config = job.notify.channels.webhook
            entry.slack = report.slack if slack_config is not None and slack_config.enabled else None
            entry.webhook = report.webhook if webhook_config is not None and webhook_config.enabled else None
            entry.failures = report.failures or None
            entry.warnings = report.warnings or None
    entry.duration_ms = int((time.perf_counter() - started) * 1000)
    increment_counter("jobs_run_total")
    return entry


async def run_scheduler_tick(
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
    deps: TickDependencies | None = None,
    holder: str | None = None,
) -> TickResult:
    """Run every due job once, under the tick lease.

    Pre-flight problems (identity, folder) and unexpected errors produce
    ``ok=False``; lock contention is a successful skip, and per-job or
    per-destination failures are reported inside ``ranJobs``.
    """
    settings = settings or get_settings()
    deps = deps or TickDependencies()
    now = _utc_minute(now)
    store = deps.store or get_blob_store()

    try:
        credentials = await (deps.credentials_resolver or _default_credentials)(settings)
    except ServiceAuthError as exc:
        logger.warning("tick_auth_failed code=%s", exc.code)
        return _preflight_failure(now, exc.code)
    try:
        folder_id = await store.ensure_folder(settings.app_folder_name)
    except BlobStoreError as exc:
        logger.warning("tick_folder_failed error=%s", exc)
        return _preflight_failure(now, "folder_provisioning_failed")

    lock = LeaseLock(store, folder_id=folder_id)
    holder = holder or new_holder_token()
    acquisition = await lock.try_acquire(holder, lease_ms=settings.cron_lock_lease_ms)
    if not acquisition.acquired:
        return TickResult(ok=True, skipped=True, reason="locked")

    breaker_state = None
    ran_jobs: list[JobRunLogEntry] = []
    issues: list[dict[str, str]] = []
    try:
        breaker_state = await load_breaker_state(store, folder_id=folder_id)
        loaded = await read_schedule_config(store, folder_id=folder_id)
        issues = [{"ref": issue.ref, "message": issue.message} for issue in loaded.issues]
        aliases = await load_entity_aliases(store, folder_id=folder_id)
        source = (deps.content_source_factory or _default_content_source)(store, folder_id, aliases)
        ctx = FanoutContext(
            store=store,
            folder_id=folder_id,
            markers=DeliveryMarkerStore(store, folder_id=folder_id),
            report_markers=ReportMarkerStore(store, folder_id=folder_id),
            breaker_state=breaker_state,
            senders=(deps.senders_factory or _default_senders)(credentials, settings),
            digest_builder=ContentDigestBuilder(source, aliases=aliases),
            now=now,
        )
        for job in loaded.config.jobs:
            if not job.enabled or not is_due(job.schedule.cron, job.schedule.timezone, now):
                continue
            logger.info("job_due job=%s type=%s", job.id, job.type)
            ran_jobs.append(await _run_one_job(job, ctx=ctx, config=loaded.config, source=source))

        run_log = JobRunLog(store, folder_id=folder_id)
        for entry in ran_jobs:
            try:
                await run_log.append(entry)
            except PersistenceError:
                logger.exception("job_run_log_append_failed job=%s", entry.job_id)
    except Exception:  # noqa: BLE001 - the trigger always gets a structured answer
        logger.exception("tick_failed holder=%s", holder)
        return TickResult(ok=False, reason="tick_failed", ran_jobs=ran_jobs, config_issues=issues or None)
    finally:
        if breaker_state is not None:
            try:
                await save_breaker_state(store, folder_id=folder_id, state=breaker_state)
            except Exception:  # noqa: BLE001 - a failed save must not mask completed sends
                logger.exception("breaker_state_save_failed")
        await lock.release(holder)

    return TickResult(ok=True, ran_jobs=ran_jobs, config_issues=issues or None)
