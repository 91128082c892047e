"""Shared helpers for the hourly analysis/email pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from app.config import Settings, settings
from app.services.workflow.errors import WorkflowError


@dataclass(frozen=True)
class WorkflowConfig:
    """Values the tick needs, resolved once at startup and passed down explicitly."""

    videos_per_query: int = 3
    email_sender: str = "noreply@lazy-trends.com"
    email_sender_name: str = "The Complete Lazy Trend"
    email_subject: str = "Your TikTok Trend Analysis Results"
    default_timezone: str = "UTC"
    default_local_hour: int = 9
    dry_run: bool = False

    @classmethod
    def from_settings(
        cls,
        source: Settings | None = None,
        *,
        videos_per_query: int | None = None,
        dry_run: bool = False,
    ) -> WorkflowConfig:
        resolved = source or settings
        return cls(
            videos_per_query=videos_per_query or resolved.videos_per_query,
            email_sender=resolved.email_sender,
            email_sender_name=resolved.email_sender_name,
            email_subject=resolved.email_subject,
            default_timezone=resolved.default_timezone,
            default_local_hour=resolved.default_local_hour,
            dry_run=dry_run,
        )


@dataclass
class TickSummary:
    """Counters describing one hourly pass."""

    current_utc_hour: int
    users_loaded: int = 0
    analysis_due: int = 0
    analysis_completed: int = 0
    analysis_failed: int = 0
    analysis_skipped: int = 0
    email_due: int = 0
    email_sent: int = 0
    email_failed: int = 0
    email_skipped: int = 0
    anomalies: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, int | bool]:
        return asdict(self)


def parse_now(value: str | None) -> datetime:
    """Return the override instant (ISO8601) in UTC, or the current time."""
    if not value:
        return datetime.now(UTC)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise WorkflowError(f"--now must be ISO8601, got '{value}'.", code="E_INVALID_NOW") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
