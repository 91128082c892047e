from __future__ import annotations

import logging
from datetime import date

import pytest

from app.models.user import UserPreference
from app.scheduling import time_resolver as module
from tests.helpers.metrics_stub import StubMetrics

WINTER_DAY = date(2025, 1, 15)
SUMMER_DAY = date(2025, 7, 15)
SPRING_FORWARD = date(2025, 3, 9)
FALL_BACK = date(2025, 11, 2)


@pytest.fixture(autouse=True)
def _stub_metrics(monkeypatch: pytest.MonkeyPatch) -> StubMetrics:
    stub = StubMetrics()
    monkeypatch.setattr(module, "metrics", stub)
    return stub


@pytest.mark.parametrize("local_hour", range(24))
def test_utc_is_identity(local_hour: int):
    assert module.local_to_utc_hour(local_hour, "UTC", today=WINTER_DAY) == local_hour


@pytest.mark.parametrize("local_hour", range(24))
def test_fixed_offset_zone_shifts_every_hour(local_hour: int):
    # Etc/GMT-5 is five hours ahead of UTC.
    assert module.local_to_utc_hour(local_hour, "Etc/GMT-5", today=WINTER_DAY) == (local_hour - 5) % 24


def test_new_york_follows_daylight_saving():
    assert module.local_to_utc_hour(9, "America/New_York", today=WINTER_DAY) == 14
    assert module.local_to_utc_hour(9, "America/New_York", today=SUMMER_DAY) == 13


def test_tokyo_morning_maps_to_previous_utc_evening():
    assert module.local_to_utc_hour(8, "Asia/Tokyo", today=WINTER_DAY) == 23


def test_half_hour_zone_matches_on_local_hour():
    # 04:00 UTC is 09:30 in Kolkata.
    assert module.local_to_utc_hour(9, "Asia/Kolkata", today=WINTER_DAY) == 4


def test_unknown_timezone_falls_back_to_local_hour(caplog, _stub_metrics: StubMetrics):
    caplog.set_level(logging.WARNING, logger="app.scheduling.time_resolver")

    assert module.local_to_utc_hour(9, "Mars/Olympus_Mons", today=WINTER_DAY) == 9

    messages = [record.getMessage() for record in caplog.records]
    assert "schedule.timezone.invalid" in messages
    assert "schedule.timezone.fallback" in messages
    assert _stub_metrics.counted("schedule.timezone.fallback") == 1


def test_skipped_spring_forward_hour_is_degraded(caplog):
    caplog.set_level(logging.WARNING, logger="app.scheduling.time_resolver")
    preference = UserPreference(timezone="America/New_York", local_hour=2)

    resolved = module.resolve_preference(preference, today=SPRING_FORWARD)

    assert resolved.utc_hour == 2
    assert resolved.analysis_hour == 1
    assert resolved.degraded is True
    assert any(record.getMessage() == "schedule.timezone.fallback" for record in caplog.records)


def test_repeated_fall_back_hour_returns_first_occurrence():
    # 01:00 EDT is 05:00 UTC, 01:00 EST is 06:00 UTC.
    assert module.local_to_utc_hour(1, "America/New_York", today=FALL_BACK) == 5


def test_resolved_preference_is_not_degraded_for_valid_zone():
    resolved = module.resolve_preference(
        UserPreference(timezone="Europe/Berlin", local_hour=9), today=WINTER_DAY
    )

    assert resolved == module.ResolvedSchedule(utc_hour=8, analysis_hour=7, degraded=False)


@pytest.mark.parametrize("utc_hour", range(24))
def test_analysis_hour_precedes_email_hour(utc_hour: int):
    analysis_hour = module.analysis_hour_for(utc_hour)

    assert 0 <= analysis_hour <= 23
    assert (analysis_hour + 1) % 24 == utc_hour


def test_analysis_hour_wraps_midnight():
    assert module.analysis_hour_for(0) == 23
