"""Counters and timings for the hourly tick, logged locally or shipped to StatsD."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from app.config import Settings, settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except ImportError:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")


@dataclass(frozen=True)
class MetricEvent:
    name: str
    kind: str
    value: float
    tags: dict[str, Any] = field(default_factory=dict)
    sample_rate: float = 1.0

    def as_payload(self) -> dict[str, Any]:
        payload = {
            "metric": self.name,
            "type": self.kind,
            "value": round(float(self.value), 4),
            "tags": self.tags,
        }
        if self.sample_rate < 1.0:
            payload["sample_rate"] = round(self.sample_rate, 4)
        return payload


class MetricsReporter:
    """Emits metric events to the debug log and, when configured, to StatsD."""

    def __init__(self, source: Settings | None = None) -> None:
        config = source or settings
        self._disabled = config.metrics_disable
        self._namespace = (config.metrics_namespace or "trend_digest").strip(".")
        self._backend = (config.metrics_backend or "stdout").lower()
        self._sample_rate = max(0.0, min(config.metrics_sample_rate, 1.0))
        self._statsd = None
        if self._backend == "statsd" and not self._disabled:
            self._statsd = self._connect_statsd(config)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("gauge", metric, value, tags)

    @contextmanager
    def timed(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[None]:
        """Record the wall time of the enclosed block in milliseconds, even on error."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timing(metric, (time.perf_counter() - started) * 1000, tags=tags)

    def qualify(self, metric: str) -> str:
        name = (metric or "").strip(". ")
        if not name:
            return self._namespace
        if name == self._namespace or name.startswith(f"{self._namespace}."):
            return name
        return f"{self._namespace}.{name}"

    def _record(self, kind: str, metric: str, value: float, tags: dict[str, Any] | None) -> None:
        if self._disabled or value is None:
            return
        rate = 1.0 if kind == "gauge" else self._sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 > rate:
            return
        event = MetricEvent(
            name=self.qualify(metric),
            kind=kind,
            value=value,
            tags=dict(tags or {}),
            sample_rate=rate,
        )
        logger.debug("trend_digest.metric", extra={"metrics": event.as_payload()})
        if self._statsd is not None:
            self._ship(event)

    def _ship(self, event: MetricEvent) -> None:
        try:
            if event.kind == "timing":
                self._statsd.timing(event.name, event.value, rate=event.sample_rate)
            elif event.kind == "gauge":
                self._statsd.gauge(event.name, event.value)
            else:
                self._statsd.incr(event.name, event.value, rate=event.sample_rate)
        except OSError as exc:  # pragma: no cover
            self._warn_backend(event.name, exc)

    def _connect_statsd(self, config: Settings):  # noqa: ANN202
        if StatsClient is None:
            logger.warning("metrics.statsd.unavailable", extra={"backend": self._backend})
            return None
        try:
            return StatsClient(
                host=config.metrics_statsd_host,
                port=config.metrics_statsd_port,
                prefix="",
            )
        except OSError as exc:  # pragma: no cover
            self._warn_backend("statsd.init", exc)
            return None

    def _warn_backend(self, metric: str, exc: Exception) -> None:
        logger.warning(
            "metrics.backend_error",
            extra={"metric": metric, "backend": self._backend, "error": type(exc).__name__},
        )


metrics = MetricsReporter()
