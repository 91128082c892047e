"""User store backends for the scheduled workflow."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from app.config import settings
from app.models.user import UserRecord
from app.observability.metrics import metrics
from app.services.workflow.errors import ConfigurationError, UserStoreError

logger = logging.getLogger(__name__)


class UserRepository(Protocol):
    """Persistence contract for user schedules and delivery flags."""

    async def list_opted_in(self) -> list[UserRecord]:
        ...

    async def record_analysis(
        self, user_id: str, result: dict[str, Any], *, ran_at: datetime
    ) -> None:
        ...

    async def mark_email_sent(self, user_id: str, *, sent_at: datetime) -> None:
        ...


class InMemoryUserRepository(UserRepository):
    """Repository used for local runs and tests."""

    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users: dict[str, UserRecord] = {user.id: user for user in users}

    def get(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    async def list_opted_in(self) -> list[UserRecord]:
        return [user for user in self._users.values() if user.email_notifications]

    async def record_analysis(
        self, user_id: str, result: dict[str, Any], *, ran_at: datetime
    ) -> None:
        self._update(
            user_id,
            last_workflow_run=ran_at,
            last_analysis_results=result,
            analysis_ready_for_email=True,
        )

    async def mark_email_sent(self, user_id: str, *, sent_at: datetime) -> None:
        self._update(user_id, last_email_sent=sent_at, analysis_ready_for_email=False)

    def _update(self, user_id: str, **changes: Any) -> None:
        user = self._users.get(user_id)
        if user is None:
            raise UserStoreError(f"Unknown user id '{user_id}'.", code="E_USER_NOT_FOUND")
        self._users[user_id] = user.model_copy(update=changes)
        logger.info(
            "workflow.user_store.updated",
            extra={"user_id": user_id, "fields": sorted(changes), "backend": "memory"},
        )


class SupabaseUserRepository(UserRepository):
    """Reads and updates the users table through Supabase REST."""

    def __init__(
        self,
        *,
        base_url: str,
        service_key: str,
        table: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._table = table
        self._client = http_client
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    @property
    def _table_url(self) -> str:
        return f"{self._base}/rest/v1/{self._table}"

    async def list_opted_in(self) -> list[UserRecord]:
        params = {"select": "*", "email_notifications": "eq.true"}
        try:
            response = await self._client.get(self._table_url, headers=self._headers, params=params)
        except httpx.HTTPError as exc:
            raise UserStoreError(
                f"Supabase query failed: {exc}", code="E_SUPABASE_FETCH"
            ) from exc
        if response.status_code >= 400:
            raise UserStoreError(
                f"Supabase query failed with status {response.status_code}",
                code="E_SUPABASE_FETCH",
            )
        try:
            rows = response.json()
        except ValueError as exc:
            raise UserStoreError(
                "Supabase returned a non-JSON body.", code="E_SUPABASE_SCHEMA"
            ) from exc
        if not isinstance(rows, list):
            raise UserStoreError("Supabase returned a non-list body.", code="E_SUPABASE_SCHEMA")

        users: list[UserRecord] = []
        for row in rows:
            try:
                users.append(UserRecord.model_validate(row))
            except ValidationError as exc:
                logger.warning(
                    "workflow.user_store.row_invalid",
                    extra={"row_id": row.get("id") if isinstance(row, dict) else None, "error": str(exc)},
                )
        metrics.increment("workflow.user_store.loaded", tags={"count": len(users)})
        return users

    async def record_analysis(
        self, user_id: str, result: dict[str, Any], *, ran_at: datetime
    ) -> None:
        await self._patch(
            user_id,
            {
                "last_workflow_run": ran_at.isoformat(),
                "last_analysis_results": result,
                "analysis_ready_for_email": True,
            },
        )

    async def mark_email_sent(self, user_id: str, *, sent_at: datetime) -> None:
        await self._patch(
            user_id,
            {"last_email_sent": sent_at.isoformat(), "analysis_ready_for_email": False},
        )

    async def _patch(self, user_id: str, changes: dict[str, Any]) -> None:
        headers = {**self._headers, "Prefer": "return=minimal"}
        try:
            response = await self._client.patch(
                self._table_url,
                json=changes,
                params={"id": f"eq.{user_id}"},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise UserStoreError(
                f"Supabase update failed: {exc}", code="E_SUPABASE_WRITE"
            ) from exc
        if response.status_code >= 400:
            raise UserStoreError(
                f"Supabase update failed with status {response.status_code}",
                code="E_SUPABASE_WRITE",
            )
        logger.info(
            "workflow.user_store.updated",
            extra={"user_id": user_id, "fields": sorted(changes), "backend": "supabase"},
        )


def build_user_repository(http_client: httpx.AsyncClient) -> SupabaseUserRepository:
    """Instantiate the Supabase repository from settings."""
    missing = [
        name
        for name, value in (
            ("SUPABASE_URL", settings.supabase_url),
            ("SUPABASE_SERVICE_KEY", settings.supabase_service_key),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"User store requires the following env vars: {', '.join(missing)}.",
            code="E_SUPABASE_CONFIG",
        )
    return SupabaseUserRepository(
        base_url=settings.supabase_url or "",
        service_key=settings.supabase_service_key or "",
        table=settings.supabase_users_table,
        http_client=http_client,
    )
