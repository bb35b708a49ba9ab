from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from digestcron.core.errors import BlobStoreError, ChannelError, MissingTargetSecretError
from digestcron.domain.documents import (
    CircuitBreakerState,
    DeliveryCounts,
    DeliveryFailure,
    EmailOutcome,
    ReportCounts,
)
from digestcron.domain.schedule import ChannelConfig, Notify, RecipientProfile, ScheduleConfig
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.notifications.breaker import (
    MESSAGE_MAX,
    TargetRef,
    get_circuit_state,
    record_send_failure,
    record_send_success,
)
from digestcron.services.notifications.channels import ChannelSenders, OutgoingEmail, SendReceipt
from digestcron.services.notifications.digest import Digest, DigestBuilder, attach_report, merge_filters
from digestcron.services.notifications.formatting import (
    WebhookRecipient,
    compose_broadcast_email,
    format_digest,
    job_ref_for,
)
from digestcron.services.notifications.targets import resolve_target
from digestcron.services.resilience import RetryableError
from digestcron.services.scheduler.jobs import NotifyInput
from digestcron.services.scheduler.markers import BROADCAST_RECIPIENT, DeliveryMarkerStore, ReportMarkerStore
from digestcron.services.scheduler.reports import ReportBudget, maybe_generate_route_report, tally_report
from digestcron.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SendOutcome = Literal["sent", "skipped", "failed"]


@dataclass
class FanoutContext:
    """Per-tick collaborators; breaker state is the tick's single in-memory snapshot."""

    store: BlobStore
    folder_id: str
    markers: DeliveryMarkerStore
    report_markers: ReportMarkerStore
    breaker_state: CircuitBreakerState
    senders: ChannelSenders
    digest_builder: DigestBuilder
    now: datetime
    resolve_target: Callable[[str, str], str | None] = resolve_target


@dataclass
class JobDeliveryReport:
    email: EmailOutcome
    slack: DeliveryCounts = field(default_factory=DeliveryCounts)
    webhook: DeliveryCounts = field(default_factory=DeliveryCounts)
    routes: DeliveryCounts | None = None
    reports: ReportCounts | None = None
    failures: list[DeliveryFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class _SendResult:
    outcome: SendOutcome
    reason: str | None = None
    error: str | None = None
    message_id: str | None = None
    marker_warning: str | None = None


def _failure_from(
    channel: str,
    error: RetryableError,
    *,
    recipient_key: str | None,
    target_key: str | None,
    attempts: int | None,
) -> DeliveryFailure:
    return DeliveryFailure(
        channel=channel,
        recipient_key=recipient_key,
        target_key=target_key,
        message=(error.message or "send failed")[:MESSAGE_MAX],
        code=error.code[:60] if error.code else None,
        status=error.status,
        attempts=attempts,
    )


async def _gated_send(
    ctx: FanoutContext,
    report: JobDeliveryReport,
    *,
    channel: str,
    run_key: str,
    recipient_key: str,
    target_key: str | None,
    send: Callable[[], Awaitable[SendReceipt]],
    counts: DeliveryCounts | None = None,
) -> _SendResult:
    """Breaker check, marker check, send, then marker write and breaker update.

    A failed send is counted once against the breaker however many retries it
    took. A marker write failing after a successful send is only a warning.
    """
    target = TargetRef(
        channel=channel,
        target_key=target_key,
        recipient_key=recipient_key if channel == "email" else None,
    )
    status = get_circuit_state(ctx.breaker_state, target, now=ctx.now)
    if status.muted:
        increment_counter(f"sends_skipped_muted_total.{channel}")
        logger.info("send_skipped_muted key=%s until=%s", target.key, status.muted_until)
        return _SendResult(outcome="skipped", reason="muted")
    try:
        already_sent = await ctx.markers.exists(channel, run_key, recipient_key, target_key)
    except BlobStoreError as exc:
        # Without the marker we cannot rule out a duplicate, so this destination is not sent.
        logger.warning("delivery_marker_lookup_failed key=%s run_key=%s", target.key, run_key, exc_info=True)
        message = f"marker lookup failed: {exc}"[:MESSAGE_MAX]
        report.failures.append(
            DeliveryFailure(
                channel=channel,
                recipient_key=recipient_key,
                target_key=target_key,
                message=message,
                code="marker_lookup_failed",
            )
        )
        return _SendResult(outcome="failed", error=message)
    if already_sent:
        increment_counter(f"sends_skipped_marked_total.{channel}")
        return _SendResult(outcome="skipped", reason="already_sent")
    try:
        receipt = await send()
    except MissingTargetSecretError as exc:
        # Configuration gap, not a destination failure; the breaker is left alone.
        report.failures.append(
            DeliveryFailure(
                channel=channel,
                recipient_key=recipient_key,
                target_key=target_key,
                message=exc.message[:MESSAGE_MAX],
                code=exc.code,
            )
        )
        return _SendResult(outcome="failed", error=exc.message)
    except ChannelError as exc:
        if counts is not None:
            counts.attempts_total += exc.attempts
        error = RetryableError(kind=exc.kind, message=exc.message, status=exc.status, code=exc.code)
        record_send_failure(ctx.breaker_state, target, error, now=ctx.now)
        report.failures.append(
            _failure_from(channel, error, recipient_key=recipient_key, target_key=target_key, attempts=exc.attempts)
        )
        logger.warning("send_failed channel=%s key=%s attempts=%s error=%s", channel, target.key, exc.attempts, exc.message)
        return _SendResult(outcome="failed", error=exc.message[:MESSAGE_MAX])
    if counts is not None:
        counts.attempts_total += receipt.attempts
    record_send_success(ctx.breaker_state, target)
    result = _SendResult(outcome="sent", message_id=receipt.id)
    try:
        await ctx.markers.write(
            channel,
            run_key,
            recipient_key,
            target_key,
            details={"attempts": receipt.attempts},
            message_id=receipt.id,
            now=ctx.now,
        )
    except BlobStoreError as exc:
        logger.warning("delivery_marker_write_failed key=%s run_key=%s", target.key, run_key, exc_info=True)
        result.marker_warning = f"marker write failed: {str(exc)[:160]}"
        report.warnings.append(f"{target.key}: {result.marker_warning}")
    return result


def _tally(counts: DeliveryCounts, outcome: SendOutcome) -> None:
    if outcome == "sent":
        counts.sent += 1
    elif outcome == "skipped":
        counts.skipped += 1
    else:
        counts.failed += 1


async def _deliver_to_targets(
    ctx: FanoutContext,
    report: JobDeliveryReport,
    *,
    channel: Literal["slack", "webhook"],
    config: ChannelConfig | None,
    run_key: str,
    recipient_key: str,
    profile_id: str | None,
    payload_for: Callable[[], tuple[str, dict[str, Any]]],
) -> None:
    # Targets are processed one at a time against the shared breaker snapshot.
    if config is None or not config.enabled:
        return
    counts = report.slack if channel == "slack" else report.webhook
    for target_key in config.targets_for(profile_id):
        counts.attempted += 1

        async def _send(target_key: str = target_key) -> SendReceipt:
            url = ctx.resolve_target(channel, target_key)
            if url is None:
                raise MissingTargetSecretError(channel, target_key)
            text, payload = payload_for()
            if channel == "slack":
                return await ctx.senders.slack.post(url, text)
            return await ctx.senders.webhook.post(url, payload)

        result = await _gated_send(
            ctx,
            report,
            channel=channel,
            run_key=run_key,
            recipient_key=recipient_key,
            target_key=target_key,
            send=_send,
            counts=counts,
        )
        _tally(counts, result.outcome)


def _channel_payloads(
    digest: Digest,
    notify_input: NotifyInput,
    *,
    recipient: WebhookRecipient,
    notify: Notify,
    max_items: int,
) -> Callable[[], tuple[str, dict[str, Any]]]:
    def _build() -> tuple[str, dict[str, Any]]:
        formatted = format_digest(
            digest,
            job=job_ref_for(notify_input),
            recipient=recipient,
            max_items=max_items,
            include_report_link=notify.include_links,
        )
        return formatted.slack_text, formatted.webhook_payload.to_json_dict()

    return _build


def _max_items(notify: Notify, channel: str) -> int:
    config = notify.channels.slack if channel == "slack" else notify.channels.webhook
    return config.max_items if config is not None else 5


async def _fan_out_broadcast(
    ctx: FanoutContext,
    notify_input: NotifyInput,
    notify: Notify,
    report: JobDeliveryReport,
) -> None:
    # Broadcast always goes out; only the breaker and marker gates apply.
    if notify.to:
        composed = compose_broadcast_email(notify_input, notify)
        message = OutgoingEmail(to=list(notify.to), cc=list(notify.cc) or None, subject=composed.subject, body=composed.body)
        result = await _gated_send(
            ctx,
            report,
            channel="email",
            run_key=notify_input.run_key,
            recipient_key=BROADCAST_RECIPIENT,
            target_key=None,
            send=lambda: ctx.senders.email.send(message),
        )
        report.email = EmailOutcome(
            mode="broadcast",
            attempted=result.outcome != "skipped",
            ok=None if result.outcome == "skipped" else result.outcome == "sent",
            skipped=result.outcome == "skipped",
            reason=result.reason,
            error=result.error,
            message_id=result.message_id,
            marker_warning=result.marker_warning,
        )
    else:
        report.email = EmailOutcome(mode="broadcast", skipped=True, reason="no_recipients")

    channels = notify.channels
    if (channels.slack and channels.slack.enabled) or (channels.webhook and channels.webhook.enabled):
        audience = RecipientProfile(id=BROADCAST_RECIPIENT, name=notify_input.job_name, to=list(notify.to))
        digest = await ctx.digest_builder.build_digest(notify_input.job_type, audience, notify_input)
        recipient = WebhookRecipient(key=BROADCAST_RECIPIENT)
        for channel, config in (("slack", channels.slack), ("webhook", channels.webhook)):
            await _deliver_to_targets(
                ctx,
                report,
                channel=channel,
                config=config,
                run_key=notify_input.run_key,
                recipient_key=BROADCAST_RECIPIENT,
                profile_id=None,
                payload_for=_channel_payloads(
                    digest, notify_input, recipient=recipient, notify=notify, max_items=_max_items(notify, channel)
                ),
            )


async def _fan_out_routes(
    ctx: FanoutContext,
    notify_input: NotifyInput,
    notify: Notify,
    config: ScheduleConfig,
    report: JobDeliveryReport,
) -> None:
    routes = report.routes = DeliveryCounts()
    report.email = EmailOutcome(mode="routes")
    reports = ReportCounts() if notify.generate_per_route_report else None
    report.reports = reports
    budget = ReportBudget.for_notify(notify_input.run_key, notify)

    for route in notify.routes:
        routes.attempted += 1
        profile = config.profile(route.profile_id)
        if profile is None:
            routes.failed += 1
            report.failures.append(
                DeliveryFailure(
                    channel="email",
                    recipient_key=route.profile_id,
                    message=f"Recipient profile {route.profile_id} not found",
                    code="profile_not_found",
                )
            )
            continue
        profile = profile.model_copy(update={"filters": merge_filters(profile.filters, route.filters_override)})
        try:
            digest = await ctx.digest_builder.build_digest(notify_input.job_type, profile, notify_input)
        except Exception as exc:  # noqa: BLE001 - one profile's digest must not stop other routes
            logger.exception("route_digest_failed job=%s profile=%s", notify_input.job_id, profile.id)
            routes.failed += 1
            report.failures.append(
                DeliveryFailure(
                    channel="email",
                    recipient_key=profile.id,
                    message=(str(exc) or exc.__class__.__name__)[:MESSAGE_MAX],
                    code="digest_failed",
                )
            )
            continue
        if digest.empty and not notify.send_when_empty:
            routes.skipped += 1
            continue

        if reports is not None:
            report_result = await maybe_generate_route_report(
                store=ctx.store,
                folder_id=ctx.folder_id,
                markers=ctx.report_markers,
                budget=budget,
                notify=notify,
                job_id=notify_input.job_id,
                job_type=notify_input.job_type,
                job_name=notify_input.job_name,
                profile=profile,
                window_start=notify_input.window_start,
                window_end=notify_input.window_end,
                markdown_body=digest.body,
                now=ctx.now,
            )
            tally_report(reports, report_result)
            report.warnings.extend(report_result.warnings)
            if report_result.file_id:
                digest = attach_report(digest, report_result.file_id)

        if profile.to:
            subject_prefix = route.subject_prefix if route.subject_prefix is not None else notify.subject_prefix
            subject = f"{subject_prefix.strip()} {digest.subject}" if subject_prefix and subject_prefix.strip() else digest.subject
            message = OutgoingEmail(to=list(profile.to), cc=list(profile.cc) or None, subject=subject, body=digest.body)
            result = await _gated_send(
                ctx,
                report,
                channel="email",
                run_key=notify_input.run_key,
                recipient_key=profile.id,
                target_key=None,
                send=lambda message=message: ctx.senders.email.send(message),
            )
            _tally(routes, result.outcome)
            if result.outcome != "skipped":
                report.email.attempted = True
        else:
            routes.skipped += 1

        recipient = WebhookRecipient(key=profile.id, profile_name=profile.name)
        for channel, channel_config in (("slack", notify.channels.slack), ("webhook", notify.channels.webhook)):
            await _deliver_to_targets(
                ctx,
                report,
                channel=channel,
                config=channel_config,
                run_key=notify_input.run_key,
                recipient_key=profile.id,
                profile_id=profile.id,
                payload_for=_channel_payloads(
                    digest, notify_input, recipient=recipient, notify=notify, max_items=_max_items(notify, channel)
                ),
            )

    report.email.ok = routes.failed == 0
    report.email.skipped = routes.attempted > 0 and routes.skipped == routes.attempted


async def fan_out(
    ctx: FanoutContext,
    *,
    notify_input: NotifyInput,
    notify: Notify,
    config: ScheduleConfig,
) -> JobDeliveryReport:
    """Deliver one job run to every configured recipient and target.

    Each destination fails on its own: errors land in ``failures`` and the
    counts, and never abort the remaining destinations.
    """
    report = JobDeliveryReport(email=EmailOutcome(mode=notify.mode))
    if notify.mode == "routes":
        await _fan_out_routes(ctx, notify_input, notify, config, report)
    else:
        await _fan_out_broadcast(ctx, notify_input, notify, report)
    return report
