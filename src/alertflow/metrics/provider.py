"""Metrics providers feeding the rule engine.

A provider exposes four independently callable snapshot categories
(performance, system, business, model) and a push channel delivering
individual metric updates to subscribers.

Built-in providers:
- StaticMetricsProvider: in-memory values, push-capable (tests, embedding)
- FileMetricsProvider: re-reads a YAML/JSON snapshot file on every fetch

Custom providers just need the four ``*_metrics`` coroutines and
``subscribe(topic, handler)``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, Field

from alertflow.models import MetricsSnapshot

logger = logging.getLogger(__name__)

CATEGORIES = ("performance", "system", "business", "model")
METRIC_UPDATE = "metric_update"


class MetricsFetchError(Exception):
    """Raised when a metrics category cannot be fetched."""


class MetricUpdate(BaseModel):
    """A single pushed metric-update event."""

    type: str = METRIC_UPDATE
    data: MetricsSnapshot = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


MetricUpdateHandler = Callable[[MetricUpdate], Awaitable[None] | None]


@runtime_checkable
class MetricsProvider(Protocol):
    """Protocol for metric sources consumed by the alerting service."""

    async def performance_metrics(self) -> MetricsSnapshot: ...

    async def system_metrics(self) -> MetricsSnapshot: ...

    async def business_metrics(self) -> MetricsSnapshot: ...

    async def model_metrics(self) -> MetricsSnapshot: ...

    def subscribe(
        self, topic: str, handler: MetricUpdateHandler,
    ) -> Callable[[], None]: ...


async def fetch_snapshot(provider: MetricsProvider) -> MetricsSnapshot:
    """Fetch all four categories concurrently and merge them.

    Every rule evaluated against the result sees the same instant. Any
    category failure aborts the whole snapshot with MetricsFetchError.
    """
    fetchers = [getattr(provider, f"{name}_metrics") for name in CATEGORIES]
    results = await asyncio.gather(
        *(fetch() for fetch in fetchers), return_exceptions=True,
    )

    merged: MetricsSnapshot = {}
    for name, result in zip(CATEGORIES, results, strict=True):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            raise MetricsFetchError(
                f"Failed to fetch {name} metrics: {result}"
            ) from result
        merged.update(result)
    return merged


class StaticMetricsProvider:
    """In-memory provider whose values are set directly.

    ``publish()`` pushes a metric update to every handler subscribed to a
    topic. Handler failures are logged and never reach the publisher.
    """

    def __init__(
        self,
        performance: MetricsSnapshot | None = None,
        system: MetricsSnapshot | None = None,
        business: MetricsSnapshot | None = None,
        model: MetricsSnapshot | None = None,
    ) -> None:
        self._values: dict[str, MetricsSnapshot] = {
            "performance": dict(performance or {}),
            "system": dict(system or {}),
            "business": dict(business or {}),
            "model": dict(model or {}),
        }
        self._lock = threading.Lock()
        self._handlers: dict[str, dict[int, MetricUpdateHandler]] = {}
        self._next_handle = 0

    def set(self, category: str, values: MetricsSnapshot) -> None:
        """Replace the values of one category."""
        if category not in self._values:
            raise ValueError(f"Unknown metrics category: {category!r}")
        self._values[category] = dict(values)

    async def performance_metrics(self) -> MetricsSnapshot:
        return dict(self._values["performance"])

    async def system_metrics(self) -> MetricsSnapshot:
        return dict(self._values["system"])

    async def business_metrics(self) -> MetricsSnapshot:
        return dict(self._values["business"])

    async def model_metrics(self) -> MetricsSnapshot:
        return dict(self._values["model"])

    def subscribe(
        self, topic: str, handler: MetricUpdateHandler,
    ) -> Callable[[], None]:
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._handlers.setdefault(topic, {})[handle] = handler

        def unsubscribe() -> None:
            with self._lock:
                self._handlers.get(topic, {}).pop(handle, None)

        return unsubscribe

    async def publish(self, topic: str, data: MetricsSnapshot) -> None:
        """Deliver one metric update to every subscriber of *topic*."""
        update = MetricUpdate(data=dict(data))
        with self._lock:
            handlers = list(self._handlers.get(topic, {}).values())

        for handler in handlers:
            try:
                result = handler(update)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Metric update handler failed on topic %s", topic)


class FileMetricsProvider(StaticMetricsProvider):
    """Reads a YAML (or JSON) snapshot file on every fetch.

    Expected layout::

        performance: {avgResponseTime: 850, errorRate: 0.01}
        system: {memoryUsage: 0.62, cpuUsage: 0.40}
        business: {...}
        model: {...}

    Missing categories read as empty. A missing or malformed file makes
    the fetch fail, which aborts the current poll tick only.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        data = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            msg = f"Expected a mapping in {self._path}, got {type(data).__name__}"
            raise ValueError(msg)
        return data

    async def _category(self, name: str) -> MetricsSnapshot:
        data = await asyncio.to_thread(self._load)
        values = data.get(name) or {}
        if not isinstance(values, dict):
            msg = f"Category {name!r} in {self._path} is not a mapping"
            raise ValueError(msg)
        return values

    async def performance_metrics(self) -> MetricsSnapshot:
        return await self._category("performance")

    async def system_metrics(self) -> MetricsSnapshot:
        return await self._category("system")

    async def business_metrics(self) -> MetricsSnapshot:
        return await self._category("business")

    async def model_metrics(self) -> MetricsSnapshot:
        return await self._category("model")
