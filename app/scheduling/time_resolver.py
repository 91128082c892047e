"""Map a user's preferred local hour onto the UTC hour that corresponds to it today."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.models.user import UserPreference
from app.observability.metrics import metrics

logger = logging.getLogger("app.scheduling.time_resolver")

HOURS_PER_DAY = 24


@dataclass(frozen=True)
class ResolvedSchedule:
    """UTC trigger hours derived from a single preference."""

    utc_hour: int
    analysis_hour: int
    degraded: bool = False


def analysis_hour_for(utc_hour: int) -> int:
    """Analyses run one hour before the email goes out."""
    return (utc_hour - 1 + HOURS_PER_DAY) % HOURS_PER_DAY


def _load_zone(timezone_id: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, OSError, ValueError, TypeError) as exc:
        logger.warning(
            "schedule.timezone.invalid",
            extra={"timezone": timezone_id, "error": type(exc).__name__},
        )
        return None


def _search_utc_hour(local_hour: int, zone: ZoneInfo, today: date) -> int | None:
    for candidate in range(HOURS_PER_DAY):
        instant = datetime.combine(today, time(hour=candidate), tzinfo=UTC)
        if instant.astimezone(zone).hour == local_hour:
            return candidate
    return None


def _resolve(local_hour: int, timezone_id: str, reference_day: date) -> tuple[int, bool]:
    zone = _load_zone(timezone_id)
    found = _search_utc_hour(local_hour, zone, reference_day) if zone is not None else None
    if found is None:
        logger.warning(
            "schedule.timezone.fallback",
            extra={
                "timezone": timezone_id,
                "local_hour": local_hour,
                "reference_day": reference_day.isoformat(),
            },
        )
        metrics.increment("schedule.timezone.fallback", tags={"timezone": timezone_id})
        return local_hour, True
    logger.debug(
        "schedule.timezone.resolved",
        extra={"timezone": timezone_id, "local_hour": local_hour, "utc_hour": found},
    )
    return found, False


def local_to_utc_hour(local_hour: int, timezone_id: str, *, today: date | None = None) -> int:
    """Return the UTC hour at which ``timezone_id`` shows ``local_hour`` today.

    Candidates are tried from 00:00 UTC upwards and the first match wins, so on
    a fall-back day the earlier occurrence is returned. When nothing matches
    (unknown zone, or a local hour skipped by a spring-forward transition) the
    local hour itself is returned and the fallback is logged.
    """
    utc_hour, _ = _resolve(local_hour, timezone_id, today or datetime.now(UTC).date())
    return utc_hour


def resolve_preference(preference: UserPreference, *, today: date | None = None) -> ResolvedSchedule:
    """Resolve both trigger hours for a preference, flagging degraded conversions."""
    utc_hour, degraded = _resolve(
        preference.local_hour, preference.timezone, today or datetime.now(UTC).date()
    )
    return ResolvedSchedule(
        utc_hour=utc_hour,
        analysis_hour=analysis_hour_for(utc_hour),
        degraded=degraded,
    )
