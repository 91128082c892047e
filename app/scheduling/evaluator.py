"""Partition users into the analysis and email due-sets for one hourly tick."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date

from app.models.user import DEFAULT_LOCAL_HOUR, DEFAULT_TIMEZONE, UserRecord
from app.observability.metrics import metrics
from app.scheduling.time_resolver import HOURS_PER_DAY, resolve_preference

logger = logging.getLogger("app.scheduling.evaluator")


@dataclass(frozen=True)
class ScheduleDecision:
    """Outcome of evaluating one user against the current UTC hour."""

    user_id: str
    utc_hour: int
    analysis_hour: int
    analysis_due: bool
    email_due: bool
    degraded: bool = False


@dataclass
class DueSets:
    analysis_due: list[UserRecord] = field(default_factory=list)
    email_due: list[UserRecord] = field(default_factory=list)
    decisions: list[ScheduleDecision] = field(default_factory=list)
    anomalies: list[ScheduleDecision] = field(default_factory=list)


def evaluate(
    current_utc_hour: int,
    users: Sequence[UserRecord],
    *,
    today: date | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
    default_local_hour: int = DEFAULT_LOCAL_HOUR,
) -> DueSets:
    """Decide which users need an analysis and which need their email this hour.

    A user normally lands in at most one set. Landing in both can only happen
    when the timezone conversion degraded, so it is reported as an anomaly
    rather than prevented.
    """
    if not 0 <= current_utc_hour < HOURS_PER_DAY:
        raise ValueError(f"current_utc_hour must be within 0-23, got {current_utc_hour}.")

    due = DueSets()
    for user in users:
        preference = user.preference(
            default_timezone=default_timezone, default_local_hour=default_local_hour
        )
        resolved = resolve_preference(preference, today=today)
        decision = ScheduleDecision(
            user_id=user.id,
            utc_hour=resolved.utc_hour,
            analysis_hour=resolved.analysis_hour,
            analysis_due=resolved.analysis_hour == current_utc_hour,
            email_due=resolved.utc_hour == current_utc_hour,
            degraded=resolved.degraded,
        )
        logger.debug(
            "schedule.user.evaluated",
            extra={
                "user": user.label,
                "timezone": preference.timezone,
                "local_hour": preference.local_hour,
                "utc_hour": decision.utc_hour,
                "analysis_hour": decision.analysis_hour,
            },
        )
        due.decisions.append(decision)
        if decision.analysis_due:
            due.analysis_due.append(user)
        if decision.email_due:
            due.email_due.append(user)
        if decision.analysis_due and decision.email_due:
            due.anomalies.append(decision)
            logger.warning(
                "schedule.anomaly.both_due",
                extra={"user": user.label, "utc_hour": decision.utc_hour, "degraded": decision.degraded},
            )
            metrics.increment("schedule.anomaly", tags={"kind": "both_due"})

    logger.info(
        "schedule.evaluated",
        extra={
            "current_utc_hour": current_utc_hour,
            "users": len(users),
            "analysis_due": len(due.analysis_due),
            "email_due": len(due.email_due),
            "anomalies": len(due.anomalies),
        },
    )
    return due
