from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from digestcron.core.config import get_settings


logger = logging.getLogger(__name__)

_WEEKDAYS = {"SUN": 0, "MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6}


class ClockProjector(Protocol):
    def __call__(self, now: datetime, tz_name: str | None) -> datetime: ...


def utc_projector(now: datetime, tz_name: str | None) -> datetime:
    # Evaluate every expression against UTC components; the configured timezone is accepted but unused.
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def zoneinfo_projector(now: datetime, tz_name: str | None) -> datetime:
    # Opt-in wall-clock evaluation in the job's IANA timezone; unknown zones fall back to UTC.
    base = utc_projector(now, None)
    if not tz_name:
        return base
    try:
        return base.astimezone(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("cron_unknown_timezone tz=%s", tz_name)
        return base


def default_projector() -> ClockProjector:
    if get_settings().cron_timezone_aware:
        return zoneinfo_projector
    return utc_projector


def _cron_weekday(moment: datetime) -> int:
    # Python counts Monday=0; cron counts Sunday=0.
    return (moment.weekday() + 1) % 7


def _parse_token(token: str, *, is_dow: bool) -> int | None:
    token = token.strip()
    if is_dow:
        named = _WEEKDAYS.get(token.upper())
        if named is not None:
            return named
    if not token.isdigit():
        return None
    value = int(token)
    if is_dow and value == 7:
        return 0
    return value


def field_matches(field: str, value: int, *, is_dow: bool = False) -> bool:
    # Support `*`, `*/N` and comma lists of literals only.
    field = field.strip()
    if field == "*":
        return True
    if field.startswith("*/"):
        step = field[2:]
        if not step.isdigit() or int(step) == 0:
            return False
        return value % int(step) == 0
    for part in field.split(","):
        if _parse_token(part, is_dow=is_dow) == value:
            return True
    return False


def is_due(
    cron_expr: str,
    tz_name: str | None,
    now: datetime,
    *,
    projector: Callable[[datetime, str | None], datetime] | None = None,
) -> bool:
    """Return True when every field of a 5-field cron expression matches ``now``.

    Expressions without exactly five whitespace-separated fields are never due.
    The result is re-evaluated on every tick, so a matching minute reports due
    each time it is asked; duplicate side effects are prevented by delivery
    markers rather than here.
    """
    fields = (cron_expr or "").split()
    if len(fields) != 5:
        return False
    moment = (projector or default_projector())(now, tz_name)
    minute, hour, day_of_month, month, day_of_week = fields
    return (
        field_matches(minute, moment.minute)
        and field_matches(hour, moment.hour)
        and field_matches(day_of_month, moment.day)
        and field_matches(month, moment.month)
        and field_matches(day_of_week, _cron_weekday(moment), is_dow=True)
    )
