"""Payload returned by the complete-workflow analysis endpoint."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class AnalysisResult(BaseModel):
    """Analysis output; the strategy document is kept as a loose mapping."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    search_queries: list[Any] = Field(default_factory=list, alias="searchQueries")
    videos_count: int = Field(default=0, alias="videosCount")
    marketing_strategy: dict[str, Any] = Field(default_factory=dict, alias="marketingStrategy")

    @field_validator("search_queries", "marketing_strategy", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object, info: ValidationInfo) -> object:
        if value is None:
            return {} if info.field_name == "marketing_strategy" else []
        return value

    @field_validator("videos_count", mode="before")
    @classmethod
    def _coerce_count(cls, value: object) -> object:
        return 0 if value is None else value

    @classmethod
    def from_stored(cls, payload: dict[str, Any] | None) -> AnalysisResult:
        """Parse a stored blob, unwrapping the ``{"data": {...}}`` envelope when present."""
        body = payload or {}
        inner = body.get("data")
        if isinstance(inner, dict):
            body = inner
        return cls.model_validate(body)
