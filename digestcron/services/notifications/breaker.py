from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from digestcron.core.config import get_settings
from digestcron.core.errors import BlobStoreError
from digestcron.domain.documents import BreakerError, BreakerTarget, CircuitBreakerState
from digestcron.persistence.blob_store import BlobStore
from digestcron.services.resilience import RetryableError
from digestcron.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BREAKER_FILE_NAME = "notification_circuit_breakers.json"
MESSAGE_MAX = 200
CODE_MAX = 60


@dataclass(frozen=True)
class TargetRef:
    channel: str
    target_key: str | None = None
    recipient_key: str | None = None

    @property
    def key(self) -> str:
        suffix = self.recipient_key if self.channel == "email" else self.target_key
        return f"{self.channel}:{suffix or ''}"


@dataclass(frozen=True)
class CircuitStatus:
    muted: bool
    muted_until: datetime | None = None
    reason: str | None = None


@dataclass(frozen=True)
class BreakerPolicy:
    # Escalating mute: a sustained failure run mutes longer than a short burst.
    short_failures: int = 3
    short_window: timedelta = timedelta(minutes=30)
    long_failures: int = 6
    long_window: timedelta = timedelta(hours=6)


def default_breaker_policy() -> BreakerPolicy:
    settings = get_settings()
    return BreakerPolicy(
        short_failures=settings.cb_short_window_failures,
        short_window=timedelta(seconds=settings.cb_short_window_s),
        long_failures=settings.cb_long_window_failures,
        long_window=timedelta(seconds=settings.cb_long_window_s),
    )


def empty_breaker_state() -> CircuitBreakerState:
    return CircuitBreakerState()


def sanitize_error(error: RetryableError | BreakerError) -> BreakerError:
    # Bound stored error text so the document cannot grow without limit.
    code = error.code[:CODE_MAX] if error.code else None
    return BreakerError(message=(error.message or "")[:MESSAGE_MAX], code=code, status=error.status)


def _find(state: CircuitBreakerState, target: TargetRef) -> BreakerTarget | None:
    key = target.key
    for entry in state.targets:
        if entry.key == key:
            return entry
    return None


def _get_or_create(state: CircuitBreakerState, target: TargetRef) -> BreakerTarget:
    entry = _find(state, target)
    if entry is not None:
        return entry
    entry = BreakerTarget(
        channel=target.channel,
        target_key=target.target_key,
        recipient_key=target.recipient_key,
    )
    state.targets.append(entry)
    return entry


def _clear_failures(entry: BreakerTarget) -> None:
    entry.state = "open"
    entry.failure_count = 0
    entry.first_failure_at = None
    entry.last_failure_at = None
    entry.muted_until = None


def _mute_duration(entry: BreakerTarget, now: datetime, policy: BreakerPolicy) -> timedelta | None:
    if entry.first_failure_at is None:
        return None
    since_first = now - entry.first_failure_at
    if entry.failure_count >= policy.long_failures and since_first <= policy.long_window:
        return policy.long_window
    if entry.failure_count >= policy.short_failures and since_first <= policy.short_window:
        return policy.short_window
    return None


def record_send_failure(
    state: CircuitBreakerState,
    target: TargetRef,
    error: RetryableError | BreakerError,
    *,
    now: datetime,
    policy: BreakerPolicy | None = None,
) -> BreakerTarget:
    # Count one logical send failure and mute when a threshold trips.
    policy = policy or default_breaker_policy()
    entry = _get_or_create(state, target)
    if entry.first_failure_at is not None and now - entry.first_failure_at > policy.long_window:
        # A failure run older than the longest window starts a fresh count.
        entry.failure_count = 0
        entry.first_failure_at = None
    entry.failure_count += 1
    if entry.first_failure_at is None:
        entry.first_failure_at = now
    entry.last_failure_at = now
    entry.last_error = sanitize_error(error)
    duration = _mute_duration(entry, now, policy)
    if duration is not None:
        if entry.state != "muted":
            increment_counter(f"breaker_muted_total.{target.channel}")
            logger.warning(
                "breaker_muted key=%s failures=%s for_s=%s",
                target.key,
                entry.failure_count,
                int(duration.total_seconds()),
            )
        entry.state = "muted"
        entry.muted_until = now + duration
    return entry


def record_send_success(state: CircuitBreakerState, target: TargetRef) -> BreakerTarget:
    # Any success resets the target completely.
    entry = _get_or_create(state, target)
    _clear_failures(entry)
    entry.last_error = None
    return entry


def get_circuit_state(state: CircuitBreakerState, target: TargetRef, *, now: datetime) -> CircuitStatus:
    """Report whether ``target`` is muted at ``now``.

    An elapsed mute is flipped back to open on the in-memory state as part of
    the read; nothing else ever lifts a mute.
    """
    entry = _find(state, target)
    if entry is None or entry.state != "muted":
        return CircuitStatus(muted=False)
    if entry.muted_until is None or entry.muted_until <= now:
        entry.state = "open"
        entry.muted_until = None
        return CircuitStatus(muted=False)
    reason = entry.last_error.message if entry.last_error else "muted_due_to_failures"
    return CircuitStatus(muted=True, muted_until=entry.muted_until, reason=reason)


def unmute_target(state: CircuitBreakerState, target: TargetRef) -> BreakerTarget:
    # Operator override; keeps the last error for context.
    entry = _get_or_create(state, target)
    _clear_failures(entry)
    return entry


def muted_targets(state: CircuitBreakerState, *, now: datetime) -> list[BreakerTarget]:
    return [
        entry
        for entry in state.targets
        if entry.state == "muted" and entry.muted_until is not None and entry.muted_until > now
    ]


async def load_breaker_state(store: BlobStore, *, folder_id: str) -> CircuitBreakerState:
    # Unreadable or invalid documents start from an empty state.
    ref = await store.find_by_name(parent=folder_id, name=BREAKER_FILE_NAME)
    if ref is None:
        return empty_breaker_state()
    try:
        raw = await store.get(ref.id)
        return CircuitBreakerState.model_validate(json.loads(raw.decode("utf-8")))
    except (BlobStoreError, UnicodeDecodeError, json.JSONDecodeError, ValidationError):
        logger.warning("breaker_state_unreadable folder=%s", folder_id, exc_info=True)
        return empty_breaker_state()


async def save_breaker_state(
    store: BlobStore,
    *,
    folder_id: str,
    state: CircuitBreakerState,
    now: datetime | None = None,
) -> None:
    state.updated_at = now or datetime.now(timezone.utc)
    await store.upsert_json(parent=folder_id, name=BREAKER_FILE_NAME, payload=state.to_json_dict())
