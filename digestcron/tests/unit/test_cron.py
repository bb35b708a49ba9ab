from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from digestcron.core.config import get_settings
from digestcron.services.scheduler.cron import (
    default_projector,
    field_matches,
    is_due,
    utc_projector,
    zoneinfo_projector,
)


MONDAY_9AM = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_weekly_monday_job_due_only_on_the_minute() -> None:
    assert is_due("0 9 * * MON", "UTC", MONDAY_9AM) is True
    assert is_due("0 9 * * MON", "UTC", MONDAY_9AM + timedelta(minutes=1)) is False
    assert is_due("0 9 * * MON", "UTC", MONDAY_9AM + timedelta(days=1)) is False


@pytest.mark.parametrize(
    "expr",
    ["", "0 9 * *", "0 9 * * MON *", "@weekly", "   "],
)
def test_expressions_without_five_fields_are_never_due(expr: str) -> None:
    assert is_due(expr, "UTC", MONDAY_9AM) is False


def test_step_lists_and_weekday_tokens() -> None:
    assert field_matches("*/15", 30) is True
    assert field_matches("*/15", 31) is False
    assert field_matches("*/0", 0) is False
    assert field_matches("*/x", 0) is False
    assert field_matches("1,5,9", 9) is True
    assert field_matches("1,5,9", 4) is False
    # Sunday is both 0 and 7; names are case-insensitive.
    assert field_matches("7", 0, is_dow=True) is True
    assert field_matches("sun", 0, is_dow=True) is True
    assert field_matches("MON,FRI", 5, is_dow=True) is True
    # Ranges are not supported and simply never match.
    assert field_matches("1-5", 3) is False


def test_is_due_is_pure_for_same_inputs() -> None:
    results = {is_due("*/5 9 * * 1", "UTC", MONDAY_9AM) for _ in range(5)}
    assert results == {True}


def test_timezone_is_ignored_by_default() -> None:
    # Evaluation is UTC even when a job names another zone.
    assert is_due("0 9 * * MON", "America/New_York", MONDAY_9AM) is True
    assert default_projector() is utc_projector


def test_naive_now_is_treated_as_utc() -> None:
    assert is_due("0 9 5 1 *", "UTC", datetime(2026, 1, 5, 9, 0)) is True


def test_zoneinfo_projector_opt_in(monkeypatch) -> None:
    monkeypatch.setenv("CRON_TIMEZONE_AWARE", "true")
    get_settings.cache_clear()
    assert default_projector() is zoneinfo_projector
    # 14:00 UTC is 09:00 in New York in January.
    afternoon = datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc)
    assert is_due("0 9 * * MON", "America/New_York", afternoon) is True
    assert is_due("0 9 * * MON", "America/New_York", MONDAY_9AM) is False


def test_zoneinfo_projector_unknown_zone_falls_back_to_utc() -> None:
    projected = zoneinfo_projector(MONDAY_9AM, "Mars/Olympus_Mons")
    assert projected.hour == 9
    assert is_due("0 9 * * MON", "Mars/Olympus_Mons", MONDAY_9AM, projector=zoneinfo_projector) is True
