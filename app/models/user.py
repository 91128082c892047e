"""User records and scheduling preferences."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOCAL_HOUR = 9


class UserPreference(BaseModel):
    """When a user wants their digest, expressed in their own timezone."""

    model_config = ConfigDict(frozen=True)

    timezone: str = DEFAULT_TIMEZONE
    local_hour: int = Field(default=DEFAULT_LOCAL_HOUR, ge=0, le=23)


class UserRecord(BaseModel):
    """Row from the user store; unknown columns are kept but ignored."""

    model_config = ConfigDict(extra="allow")

    id: str
    email: str | None = None
    full_name: str | None = None
    business_description: str | None = None
    timezone: str | None = None
    email_time_hour: int | None = None
    email_notifications: bool = False
    auth_id: str | None = None
    last_analysis_results: dict[str, Any] | None = None
    analysis_ready_for_email: bool = False
    last_workflow_run: datetime | None = None
    last_email_sent: datetime | None = None

    @field_validator("id", "auth_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("analysis_ready_for_email", "email_notifications", mode="before")
    @classmethod
    def _coerce_flag(cls, value: object) -> object:
        return False if value is None else value

    def preference(
        self,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        default_local_hour: int = DEFAULT_LOCAL_HOUR,
    ) -> UserPreference:
        """Return the scheduling preference, falling back to defaults for blank fields."""
        timezone = (self.timezone or "").strip() or default_timezone
        local_hour = self.email_time_hour
        if local_hour is None or not 0 <= local_hour <= 23:
            local_hour = default_local_hour
        return UserPreference(timezone=timezone, local_hour=local_hour)

    @property
    def label(self) -> str:
        return self.email or self.id

    def has_pending_analysis(self) -> bool:
        """True when an analysis was stored and has not been emailed yet."""
        return bool(self.analysis_ready_for_email and self.last_analysis_results)
