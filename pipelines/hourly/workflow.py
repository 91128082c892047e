"""Cron-friendly hourly tick: run due analyses, then deliver due analysis emails."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from app.clients.analysis import AnalysisClient, AnalysisError
from app.clients.brevo import BrevoEmailClient, BrevoError, EmailAddress, TransactionalEmail
from app.config import settings
from app.models.analysis import AnalysisResult
from app.models.user import UserRecord
from app.observability.metrics import metrics
from app.rendering.assembler import render_email_document
from app.scheduling.evaluator import evaluate
from app.services.workflow.errors import ConfigurationError, UserStoreError, WorkflowError
from app.services.workflow.repositories import UserRepository, build_user_repository
from pipelines.hourly import TickSummary, WorkflowConfig, parse_now

logger = logging.getLogger("pipelines.hourly.workflow")


class AnalysisService(Protocol):
    """Subset of analysis client behavior used by the workflow."""

    async def run_complete_workflow(
        self, *, business_description: str, user_id: str, videos_per_query: int
    ) -> dict[str, Any]:
        ...


class EmailTransport(Protocol):
    """Subset of email client behavior used by the workflow."""

    async def send(self, message: TransactionalEmail) -> str | None:
        ...


def missing_analysis_prerequisite(user: UserRecord) -> str | None:
    if not (user.business_description or "").strip():
        return "business_description"
    if not user.auth_id:
        return "auth_id"
    return None


def missing_email_prerequisites(user: UserRecord) -> list[str]:
    missing: list[str] = []
    if not user.email:
        missing.append("email")
    if not user.analysis_ready_for_email:
        missing.append("analysis_ready_for_email")
    if not user.last_analysis_results:
        missing.append("last_analysis_results")
    return missing


class WorkflowRunner:
    """Runs one hourly pass over the user population, strictly one user at a time."""

    def __init__(
        self,
        *,
        repository: UserRepository,
        analysis_client: AnalysisService,
        email_client: EmailTransport,
        config: WorkflowConfig,
    ) -> None:
        self._repository = repository
        self._analysis = analysis_client
        self._email = email_client
        self._config = config

    async def run_tick(self, now: datetime | None = None) -> TickSummary:
        """Evaluate schedules for ``now`` and process every due user.

        A failure to load the user population aborts the tick. Failures for a
        single user are logged and the pass moves on to the next user.
        """
        current = (now or datetime.now(UTC)).astimezone(UTC)
        with metrics.timed("workflow.tick.duration_ms"):
            summary = await self._tick(current)
        logger.info("workflow.tick.completed", extra=summary.as_dict())
        return summary

    async def _tick(self, current: datetime) -> TickSummary:
        summary = TickSummary(current_utc_hour=current.hour, dry_run=self._config.dry_run)
        logger.info(
            "workflow.tick.start",
            extra={"timestamp": current.isoformat(), "current_utc_hour": current.hour},
        )

        users = await self._repository.list_opted_in()
        summary.users_loaded = len(users)
        due = evaluate(
            current.hour,
            users,
            today=current.date(),
            default_timezone=self._config.default_timezone,
            default_local_hour=self._config.default_local_hour,
        )
        summary.analysis_due = len(due.analysis_due)
        summary.email_due = len(due.email_due)
        summary.anomalies = len(due.anomalies)

        if self._config.dry_run:
            logger.info(
                "workflow.tick.dry_run",
                extra={
                    "analysis_due": [user.label for user in due.analysis_due],
                    "email_due": [user.label for user in due.email_due],
                },
            )
        else:
            for user in due.analysis_due:
                await self._process_analysis(user, current, summary)
            for user in due.email_due:
                await self._process_email(user, summary)
        return summary

    async def run_analysis_for_user(self, user: UserRecord) -> dict[str, Any] | None:
        """Trigger the analysis for one user; ``None`` when skipped or failed."""
        missing = missing_analysis_prerequisite(user)
        if missing:
            logger.info(
                "workflow.analysis.skipped",
                extra={"user": user.label, "user_id": user.id, "missing": missing},
            )
            return None
        try:
            result = await self._analysis.run_complete_workflow(
                business_description=user.business_description or "",
                user_id=user.auth_id or "",
                videos_per_query=self._config.videos_per_query,
            )
        except (AnalysisError, httpx.HTTPError) as exc:
            logger.error(
                "workflow.analysis.failed",
                extra={
                    "user": user.label,
                    "code": getattr(exc, "code", type(exc).__name__),
                    "status": getattr(exc, "status_code", None),
                    "detail": getattr(exc, "detail", None),
                    "error": str(exc),
                },
            )
            return None
        logger.info(
            "workflow.analysis.completed",
            extra={"user": user.label, "result_keys": sorted(result) if result else []},
        )
        return result or None

    async def send_analysis_email(self, user: UserRecord, stored: dict[str, Any]) -> bool:
        """Render the stored analysis and send it; ``False`` when not sent."""
        if not user.email:
            logger.info("workflow.email.skipped", extra={"user_id": user.id, "missing": ["email"]})
            return False
        try:
            result = AnalysisResult.from_stored(stored)
        except ValidationError as exc:
            logger.error(
                "workflow.email.invalid_analysis",
                extra={"user": user.label, "error": str(exc)},
            )
            return False

        message = TransactionalEmail(
            to=EmailAddress(email=user.email, name=user.full_name or user.email),
            sender=EmailAddress(email=self._config.email_sender, name=self._config.email_sender_name),
            subject=self._config.email_subject,
            html_content=render_email_document(user, result),
        )
        try:
            message_id = await self._email.send(message)
        except (BrevoError, httpx.HTTPError) as exc:
            logger.error(
                "workflow.email.failed",
                extra={
                    "user": user.label,
                    "code": getattr(exc, "code", type(exc).__name__),
                    "status": getattr(exc, "status_code", None),
                    "detail": getattr(exc, "detail", None),
                    "error": str(exc),
                },
            )
            return False
        logger.info("workflow.email.sent", extra={"user": user.label, "message_id": message_id})
        return True

    async def _process_analysis(
        self, user: UserRecord, current: datetime, summary: TickSummary
    ) -> None:
        skipped = missing_analysis_prerequisite(user) is not None
        result = await self.run_analysis_for_user(user)
        if not result:
            if skipped:
                summary.analysis_skipped += 1
                metrics.increment("workflow.analysis.skipped")
            else:
                summary.analysis_failed += 1
                metrics.increment("workflow.analysis.failed")
            return
        try:
            await self._repository.record_analysis(user.id, result, ran_at=current)
        except UserStoreError as exc:
            logger.error(
                "workflow.analysis.persist_failed",
                extra={"user": user.label, "code": exc.code, "error": str(exc)},
            )
            summary.analysis_failed += 1
            metrics.increment("workflow.analysis.failed")
            return
        summary.analysis_completed += 1
        metrics.increment("workflow.analysis.completed")

    async def _process_email(self, user: UserRecord, summary: TickSummary) -> None:
        missing = missing_email_prerequisites(user)
        if missing:
            logger.info(
                "workflow.email.skipped",
                extra={"user": user.label, "user_id": user.id, "missing": missing},
            )
            summary.email_skipped += 1
            metrics.increment("workflow.email.skipped")
            return
        sent = await self.send_analysis_email(user, user.last_analysis_results or {})
        if not sent:
            summary.email_failed += 1
            metrics.increment("workflow.email.failed")
            return
        try:
            await self._repository.mark_email_sent(user.id, sent_at=datetime.now(UTC))
        except UserStoreError as exc:
            logger.error(
                "workflow.email.persist_failed",
                extra={"user": user.label, "code": exc.code, "error": str(exc)},
            )
        summary.email_sent += 1
        metrics.increment("workflow.email.sent")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one hourly tick of scheduled trend analyses and result emails."
    )
    parser.add_argument(
        "--now",
        type=str,
        default=None,
        help="Override the current time (ISO8601) for testing or backfills.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Evaluate schedules and log the due users without calling any service.",
    )
    parser.add_argument(
        "--videos-per-query",
        type=int,
        default=None,
        help=f"Videos analysed per search query (default: {settings.videos_per_query}).",
    )
    return parser.parse_args(argv)


class _DryRunTransport:
    async def send(self, message: TransactionalEmail) -> str | None:
        raise ConfigurationError("Email transport is disabled in dry-run mode.", code="E_DRY_RUN")


async def _run_async(args: argparse.Namespace, config: WorkflowConfig) -> TickSummary:
    now = parse_now(args.now)
    if not config.dry_run and not settings.brevo_api_key:
        raise ConfigurationError(
            "BREVO_API_KEY is required unless --dry-run is set.", code="E_BREVO_CONFIG"
        )
    async with AsyncExitStack() as stack:
        store_client = await stack.enter_async_context(
            httpx.AsyncClient(timeout=httpx.Timeout(settings.supabase_timeout_seconds))
        )
        analysis_client = await stack.enter_async_context(AnalysisClient.from_settings())
        email_client: EmailTransport = _DryRunTransport()
        if not config.dry_run:
            email_client = await stack.enter_async_context(BrevoEmailClient.from_settings())
        runner = WorkflowRunner(
            repository=build_user_repository(store_client),
            analysis_client=analysis_client,
            email_client=email_client,
            config=config,
        )
        return await runner.run_tick(now)


def run(argv: Sequence[str] | None = None) -> TickSummary:
    args = parse_args(argv)
    config = WorkflowConfig.from_settings(
        videos_per_query=args.videos_per_query, dry_run=args.dry_run
    )
    return asyncio.run(_run_async(args, config))


def main() -> None:
    """Entry point for `python -m pipelines.hourly.workflow`."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        run()
    except WorkflowError as exc:
        logger.error("workflow.tick.failed", extra={"code": exc.code, "error": str(exc)})
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
