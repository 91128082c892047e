"""Client for the Brevo transactional email API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from app.config import settings

SEND_PATH = "/smtp/email"


class BrevoError(RuntimeError):
    """Base error for Brevo client failures."""

    def __init__(
        self,
        message: str,
        code: str = "BREVO_ERROR",
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.detail = detail


class BrevoRateLimitError(BrevoError):
    """Raised when Brevo responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Brevo") -> None:
        super().__init__(message, code="BREVO_429", status_code=429)


class BrevoTimeoutError(BrevoError):
    """Raised when Brevo requests time out."""

    def __init__(self, message: str = "Brevo request timed out") -> None:
        super().__init__(message, code="BREVO_TIMEOUT")


class BrevoAuthError(BrevoError):
    """Raised when Brevo rejects the API key."""

    def __init__(self, message: str = "Brevo rejected the API key") -> None:
        super().__init__(message, code="BREVO_AUTH", status_code=401)


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: str | None = None

    def as_dict(self) -> dict[str, str]:
        body = {"email": self.email}
        if self.name:
            body["name"] = self.name
        return body


@dataclass(frozen=True)
class TransactionalEmail:
    """One outgoing message in the shape Brevo's send endpoint expects."""

    to: EmailAddress
    sender: EmailAddress
    subject: str
    html_content: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "to": [self.to.as_dict()],
            "sender": self.sender.as_dict(),
            "subject": self.subject,
            "htmlContent": self.html_content,
        }


class BrevoEmailClient:
    """Lightweight async Brevo client."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.brevo.com/v3",
        timeout: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("BREVO_API_KEY is required to create a BrevoEmailClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_settings(cls) -> BrevoEmailClient:
        return cls(
            api_key=settings.brevo_api_key or "",
            base_url=settings.brevo_base_url,
            timeout=settings.email_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def send(self, message: TransactionalEmail) -> str | None:
        """Send a message and return Brevo's message id when one is reported."""
        headers = {
            "api-key": self._api_key,
            "accept": "application/json",
        }
        try:
            response = await self._http.post(SEND_PATH, json=message.as_payload(), headers=headers)
        except httpx.TimeoutException as exc:
            raise BrevoTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise BrevoError(f"HTTP error calling Brevo: {exc}") from exc

        if response.status_code == 429:
            raise BrevoRateLimitError()
        if response.status_code in (401, 403):
            raise BrevoAuthError()
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                detail_json = response.json()
            except ValueError:
                detail_json = None
            if isinstance(detail_json, dict):
                detail = detail_json.get("message") or detail_json.get("code") or detail
            raise BrevoError(
                f"Brevo request failed: {response.status_code} - {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            body = response.json()
        except ValueError:
            return None
        return body.get("messageId") if isinstance(body, dict) else None

    async def __aenter__(self) -> BrevoEmailClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
