from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from app.clients.analysis import AnalysisError
from app.clients.brevo import BrevoError, TransactionalEmail
from app.config import settings
from app.models.user import UserRecord
from app.services.workflow.errors import ConfigurationError, UserStoreError, WorkflowError
from app.services.workflow.repositories import InMemoryUserRepository
from pipelines.hourly import TickSummary, WorkflowConfig, parse_now
from pipelines.hourly import workflow as module
from tests.helpers.metrics_stub import StubMetrics

NOW = datetime(2025, 1, 15, 8, 0, tzinfo=UTC)
STORED_RESULT = {
    "data": {
        "searchQueries": ["bakery tiktok", "sourdough tips"],
        "videosCount": 6,
        "marketingStrategy": {"observations": "- Short clips\\n- Strong hooks"},
    }
}


class _StubAnalysis:
    def __init__(self, outcomes: dict[str, Any] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[dict[str, Any]] = []

    async def run_complete_workflow(
        self, *, business_description: str, user_id: str, videos_per_query: int
    ) -> dict[str, Any]:
        self.calls.append(
            {
                "business_description": business_description,
                "user_id": user_id,
                "videos_per_query": videos_per_query,
            }
        )
        outcome = self.outcomes.get(user_id, {"data": {"videosCount": 1}})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _StubTransport:
    def __init__(self, failures: dict[str, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.sent: list[TransactionalEmail] = []

    async def send(self, message: TransactionalEmail) -> str | None:
        failure = self.failures.get(message.to.email)
        if failure is not None:
            raise failure
        self.sent.append(message)
        return f"<{len(self.sent)}@smtp>"


class _FlakyRepository(InMemoryUserRepository):
    def __init__(self, users, *, fail_on: set[str]) -> None:  # noqa: ANN001
        super().__init__(users)
        self.fail_on = fail_on

    async def list_opted_in(self) -> list[UserRecord]:
        if "list" in self.fail_on:
            raise UserStoreError("store offline", code="E_SUPABASE_FETCH")
        return await super().list_opted_in()

    async def record_analysis(self, user_id: str, result: dict[str, Any], *, ran_at: datetime) -> None:
        if "record" in self.fail_on:
            raise UserStoreError("write failed", code="E_SUPABASE_WRITE")
        await super().record_analysis(user_id, result, ran_at=ran_at)

    async def mark_email_sent(self, user_id: str, *, sent_at: datetime) -> None:
        if "mark" in self.fail_on:
            raise UserStoreError("write failed", code="E_SUPABASE_WRITE")
        await super().mark_email_sent(user_id, sent_at=sent_at)


@pytest.fixture(autouse=True)
def _stub_metrics(monkeypatch: pytest.MonkeyPatch) -> StubMetrics:
    stub = StubMetrics()
    monkeypatch.setattr(module, "metrics", stub)
    return stub


def _analysis_user(user_id: str, **overrides: Any) -> UserRecord:
    fields: dict[str, Any] = {
        "id": user_id,
        "email": f"{user_id}@example.com",
        "full_name": f"User {user_id}",
        "business_description": "Neighbourhood sourdough bakery",
        "auth_id": f"auth-{user_id}",
        "timezone": "UTC",
        "email_time_hour": 9,
        "email_notifications": True,
    }
    fields.update(overrides)
    return UserRecord(**fields)


def _email_user(user_id: str, **overrides: Any) -> UserRecord:
    fields: dict[str, Any] = {
        "email_time_hour": 8,
        "analysis_ready_for_email": True,
        "last_analysis_results": STORED_RESULT,
    }
    fields.update(overrides)
    return _analysis_user(user_id, **fields)


def _runner(
    repository: InMemoryUserRepository,
    analysis: _StubAnalysis | None = None,
    transport: _StubTransport | None = None,
    *,
    dry_run: bool = False,
) -> module.WorkflowRunner:
    return module.WorkflowRunner(
        repository=repository,
        analysis_client=analysis or _StubAnalysis(),
        email_client=transport or _StubTransport(),
        config=WorkflowConfig(videos_per_query=4, dry_run=dry_run),
    )


@pytest.mark.asyncio
async def test_analysis_failure_does_not_stop_other_users(_stub_metrics: StubMetrics):
    repository = InMemoryUserRepository([_analysis_user("1"), _analysis_user("2"), _analysis_user("3")])
    analysis = _StubAnalysis(
        {
            "auth-2": AnalysisError("boom", status_code=500, detail="server error"),
            "auth-3": {"data": {"videosCount": 3}},
        }
    )

    summary = await _runner(repository, analysis).run_tick(NOW)

    assert [call["user_id"] for call in analysis.calls] == ["auth-1", "auth-2", "auth-3"]
    assert all(call["videos_per_query"] == 4 for call in analysis.calls)
    assert summary.analysis_due == 3
    assert summary.analysis_completed == 2
    assert summary.analysis_failed == 1
    assert repository.get("1").analysis_ready_for_email is True
    assert repository.get("2").analysis_ready_for_email is False
    assert repository.get("3").last_analysis_results == {"data": {"videosCount": 3}}
    assert repository.get("3").last_workflow_run == NOW
    assert _stub_metrics.counted("workflow.analysis.failed") == 1
    assert _stub_metrics.counted("workflow.analysis.completed") == 2
    assert any(call["metric"] == "workflow.tick.duration_ms" for call in _stub_metrics.timing_calls)


@pytest.mark.asyncio
async def test_transport_errors_and_empty_results_count_as_failures():
    repository = InMemoryUserRepository([_analysis_user("1"), _analysis_user("2")])
    analysis = _StubAnalysis(
        {
            "auth-1": httpx.ConnectError("refused"),
            "auth-2": {},
        }
    )

    summary = await _runner(repository, analysis).run_tick(NOW)

    assert summary.analysis_failed == 2
    assert summary.analysis_completed == 0


@pytest.mark.asyncio
async def test_users_missing_prerequisites_are_skipped(caplog):
    caplog.set_level(logging.INFO, logger="pipelines.hourly.workflow")
    repository = InMemoryUserRepository(
        [
            _analysis_user("no-desc", business_description="   "),
            _analysis_user("no-auth", auth_id=None),
        ]
    )
    analysis = _StubAnalysis()

    summary = await _runner(repository, analysis).run_tick(NOW)

    assert analysis.calls == []
    assert summary.analysis_skipped == 2
    assert summary.analysis_failed == 0
    assert [record.missing for record in caplog.records if record.getMessage() == "workflow.analysis.skipped"] == [
        "business_description",
        "auth_id",
    ]


@pytest.mark.asyncio
async def test_analysis_persistence_failure_is_counted():
    repository = _FlakyRepository([_analysis_user("1")], fail_on={"record"})

    summary = await _runner(repository).run_tick(NOW)

    assert summary.analysis_failed == 1
    assert summary.analysis_completed == 0


@pytest.mark.asyncio
async def test_due_email_is_sent_and_flag_cleared():
    repository = InMemoryUserRepository([_email_user("1")])
    transport = _StubTransport()

    summary = await _runner(repository, transport=transport).run_tick(NOW)

    assert summary.email_due == 1
    assert summary.email_sent == 1
    message = transport.sent[0]
    assert message.to.email == "1@example.com"
    assert message.to.name == "User 1"
    assert message.sender.email == "noreply@lazy-trends.com"
    assert message.subject == "Your TikTok Trend Analysis Results"
    assert "Search Queries Analyzed: 2" in message.html_content
    assert "TikTok Videos Analyzed: 6" in message.html_content
    assert "<li>Strong hooks</li>" in message.html_content
    stored = repository.get("1")
    assert stored.analysis_ready_for_email is False
    assert stored.last_email_sent is not None
    assert abs(datetime.now(UTC) - stored.last_email_sent) < timedelta(minutes=1)


@pytest.mark.asyncio
async def test_email_gate_skips_users_without_pending_analysis():
    repository = InMemoryUserRepository(
        [
            _email_user("not-ready", analysis_ready_for_email=False),
            _email_user("no-results", last_analysis_results=None),
            _email_user("no-email", email=None),
        ]
    )
    transport = _StubTransport()

    summary = await _runner(repository, transport=transport).run_tick(NOW)

    assert transport.sent == []
    assert summary.email_due == 3
    assert summary.email_skipped == 3
    assert repository.get("not-ready").last_email_sent is None


@pytest.mark.asyncio
async def test_send_failure_keeps_analysis_pending(_stub_metrics: StubMetrics):
    repository = InMemoryUserRepository([_email_user("1"), _email_user("2")])
    transport = _StubTransport({"1@example.com": BrevoError("rejected", status_code=400)})

    summary = await _runner(repository, transport=transport).run_tick(NOW)

    assert summary.email_failed == 1
    assert summary.email_sent == 1
    assert repository.get("1").analysis_ready_for_email is True
    assert repository.get("2").analysis_ready_for_email is False
    assert _stub_metrics.counted("workflow.email.failed") == 1


@pytest.mark.asyncio
async def test_unparseable_stored_analysis_is_not_sent():
    repository = InMemoryUserRepository(
        [_email_user("1", last_analysis_results={"videosCount": "many"})]
    )
    transport = _StubTransport()

    summary = await _runner(repository, transport=transport).run_tick(NOW)

    assert transport.sent == []
    assert summary.email_failed == 1


@pytest.mark.asyncio
async def test_flag_write_failure_after_send_still_counts_as_sent(caplog):
    caplog.set_level(logging.ERROR, logger="pipelines.hourly.workflow")
    repository = _FlakyRepository([_email_user("1")], fail_on={"mark"})
    transport = _StubTransport()

    summary = await _runner(repository, transport=transport).run_tick(NOW)

    assert len(transport.sent) == 1
    assert summary.email_sent == 1
    assert any(record.getMessage() == "workflow.email.persist_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_user_load_failure_aborts_tick():
    repository = _FlakyRepository([_analysis_user("1")], fail_on={"list"})

    with pytest.raises(UserStoreError):
        await _runner(repository).run_tick(NOW)


@pytest.mark.asyncio
async def test_only_opted_in_users_are_considered():
    repository = InMemoryUserRepository(
        [_analysis_user("1"), _analysis_user("2", email_notifications=False)]
    )
    analysis = _StubAnalysis()

    summary = await _runner(repository, analysis).run_tick(NOW)

    assert summary.users_loaded == 1
    assert [call["user_id"] for call in analysis.calls] == ["auth-1"]


@pytest.mark.asyncio
async def test_dry_run_reports_due_users_without_side_effects():
    repository = InMemoryUserRepository([_analysis_user("1"), _email_user("2")])
    analysis = _StubAnalysis()
    transport = _StubTransport()

    summary = await _runner(repository, analysis, transport, dry_run=True).run_tick(NOW)

    assert summary.dry_run is True
    assert summary.analysis_due == 1
    assert summary.email_due == 1
    assert analysis.calls == []
    assert transport.sent == []
    assert repository.get("2").analysis_ready_for_email is True


@pytest.mark.asyncio
async def test_analysis_and_email_land_in_consecutive_ticks():
    repository = InMemoryUserRepository([_analysis_user("1")])
    transport = _StubTransport()
    analysis = _StubAnalysis({"auth-1": STORED_RESULT})
    runner = _runner(repository, analysis, transport)

    first = await runner.run_tick(NOW)
    second = await runner.run_tick(NOW + timedelta(hours=1))

    assert first.analysis_completed == 1
    assert first.email_due == 0
    assert second.analysis_due == 0
    assert second.email_sent == 1
    assert repository.get("1").analysis_ready_for_email is False


def test_parse_now_normalizes_to_utc():
    assert parse_now("2025-01-15T08:30:00+02:00") == datetime(2025, 1, 15, 6, 30, tzinfo=UTC)
    assert parse_now("2025-01-15T08:30:00") == datetime(2025, 1, 15, 8, 30, tzinfo=UTC)
    assert parse_now(None).tzinfo is not None


def test_parse_now_rejects_garbage():
    with pytest.raises(WorkflowError) as excinfo:
        parse_now("yesterday-ish")

    assert excinfo.value.code == "E_INVALID_NOW"


def test_workflow_config_prefers_cli_override(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "videos_per_query", 7)

    assert WorkflowConfig.from_settings().videos_per_query == 7
    config = WorkflowConfig.from_settings(videos_per_query=2, dry_run=True)
    assert config.videos_per_query == 2
    assert config.dry_run is True


def test_parse_args_defaults():
    args = module.parse_args([])

    assert args.now is None
    assert args.dry_run is False
    assert args.videos_per_query is None


def test_run_requires_brevo_key_outside_dry_run(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "brevo_api_key", None)

    with pytest.raises(ConfigurationError) as excinfo:
        module.run(["--now", "2025-01-15T08:00:00Z"])

    assert excinfo.value.code == "E_BREVO_CONFIG"


def test_main_exits_non_zero_on_workflow_error(monkeypatch: pytest.MonkeyPatch):
    def _fail(argv=None) -> TickSummary:  # noqa: ANN001
        raise UserStoreError("store offline", code="E_SUPABASE_FETCH")

    monkeypatch.setattr(module, "run", _fail)

    with pytest.raises(SystemExit) as excinfo:
        module.main()

    assert excinfo.value.code == 1


@pytest.mark.asyncio
async def test_dry_run_transport_refuses_to_send():
    with pytest.raises(ConfigurationError):
        await module._DryRunTransport().send(None)  # type: ignore[arg-type]
