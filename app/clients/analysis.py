"""Client for the complete-workflow analysis endpoint."""

from __future__ import annotations

from typing import Any

import httpx

from app.config import settings

WORKFLOW_PATH = "/api/complete-workflow"


class AnalysisError(RuntimeError):
    """Base error for analysis endpoint failures."""

    def __init__(
        self,
        message: str,
        code: str = "ANALYSIS_ERROR",
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.detail = detail


class AnalysisTimeoutError(AnalysisError):
    """Raised when the analysis request times out."""

    def __init__(self, message: str = "Analysis request timed out") -> None:
        super().__init__(message, code="ANALYSIS_TIMEOUT")


class AnalysisUnreachableError(AnalysisError):
    """Raised when no response was received from the analysis service."""

    def __init__(self, message: str = "Analysis service unreachable") -> None:
        super().__init__(message, code="ANALYSIS_UNREACHABLE")


class AnalysisSchemaError(AnalysisError):
    """Raised when the analysis response is not a JSON object."""

    def __init__(self, message: str = "Unexpected analysis response schema") -> None:
        super().__init__(message, code="ANALYSIS_SCHEMA_ERR")


class AnalysisClient:
    """Async client that triggers one complete analysis run per user."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("API_BASE_URL is required to create an AnalysisClient.")
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(cls) -> AnalysisClient:
        return cls(base_url=settings.api_base_url, timeout=settings.analysis_timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def run_complete_workflow(
        self,
        *,
        business_description: str,
        user_id: str,
        videos_per_query: int,
    ) -> dict[str, Any]:
        """Run the analysis and return the decoded response body."""
        payload = {
            "businessDescription": business_description,
            "userId": user_id,
            "videosPerQuery": videos_per_query,
        }
        try:
            response = await self._http.post(WORKFLOW_PATH, json=payload)
        except httpx.TimeoutException as exc:
            raise AnalysisTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise AnalysisUnreachableError(f"No response from analysis service: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text[:500]
            raise AnalysisError(
                f"Analysis request failed: {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise AnalysisSchemaError("Failed to decode analysis response JSON.") from exc
        if not isinstance(data, dict):
            raise AnalysisSchemaError("Analysis response must be a JSON object.")
        return data

    async def __aenter__(self) -> AnalysisClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
