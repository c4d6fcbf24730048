"""Tests for metrics providers and snapshot fetching."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from alertflow.metrics.provider import (
    FileMetricsProvider,
    MetricsFetchError,
    MetricsProvider,
    MetricUpdate,
    StaticMetricsProvider,
    fetch_snapshot,
)


class _FailingProvider(StaticMetricsProvider):
    async def business_metrics(self):
        raise ConnectionError("analytics backend unreachable")


class TestFetchSnapshot:
    def test_merges_categories(self):
        provider = StaticMetricsProvider(
            performance={"avgResponseTime": 850},
            system={"memoryUsage": 0.5},
            business={"conversionRate": 0.04},
            model={"modelAccuracy": 0.93},
        )
        snapshot = asyncio.run(fetch_snapshot(provider))
        assert snapshot == {
            "avgResponseTime": 850,
            "memoryUsage": 0.5,
            "conversionRate": 0.04,
            "modelAccuracy": 0.93,
        }

    def test_category_failure_names_category(self):
        with pytest.raises(MetricsFetchError, match="business"):
            asyncio.run(fetch_snapshot(_FailingProvider()))

    def test_static_provider_is_metrics_provider(self):
        assert isinstance(StaticMetricsProvider(), MetricsProvider)


class TestStaticMetricsProvider:
    def test_set_replaces_category(self):
        provider = StaticMetricsProvider(system={"memoryUsage": 0.5, "cpuUsage": 0.2})
        provider.set("system", {"memoryUsage": 0.95})
        snapshot = asyncio.run(fetch_snapshot(provider))
        assert snapshot == {"memoryUsage": 0.95}

    def test_set_unknown_category(self):
        with pytest.raises(ValueError):
            StaticMetricsProvider().set("network", {})

    def test_publish_reaches_sync_and_async_handlers(self):
        provider = StaticMetricsProvider()
        seen: list[MetricUpdate] = []

        async def async_handler(update: MetricUpdate) -> None:
            seen.append(update)

        provider.subscribe("alerting", seen.append)
        provider.subscribe("alerting", async_handler)
        provider.subscribe("other", seen.append)

        asyncio.run(provider.publish("alerting", {"memoryUsage": 0.97}))
        assert len(seen) == 2
        assert all(u.type == "metric_update" for u in seen)
        assert seen[0].data == {"memoryUsage": 0.97}

    def test_unsubscribe(self):
        provider = StaticMetricsProvider()
        seen: list[MetricUpdate] = []
        unsubscribe = provider.subscribe("alerting", seen.append)
        unsubscribe()
        asyncio.run(provider.publish("alerting", {"x": 1}))
        assert seen == []

    def test_handler_failure_isolated(self):
        provider = StaticMetricsProvider()
        seen: list[MetricUpdate] = []

        def broken(update: MetricUpdate) -> None:
            raise RuntimeError("boom")

        provider.subscribe("alerting", broken)
        provider.subscribe("alerting", seen.append)
        asyncio.run(provider.publish("alerting", {"x": 1}))
        assert len(seen) == 1


class TestFileMetricsProvider:
    def test_reads_categories(self, tmp_path: Path):
        path = tmp_path / "metrics.yaml"
        path.write_text(
            "performance:\n  avgResponseTime: 2500\n  errorRate: 0.01\n"
            "system:\n  memoryUsage: 0.4\n",
            encoding="utf-8",
        )
        snapshot = asyncio.run(fetch_snapshot(FileMetricsProvider(path)))
        assert snapshot == {"avgResponseTime": 2500, "errorRate": 0.01, "memoryUsage": 0.4}

    def test_rereads_on_every_fetch(self, tmp_path: Path):
        path = tmp_path / "metrics.yaml"
        provider = FileMetricsProvider(path)
        path.write_text("system:\n  cpuUsage: 0.1\n", encoding="utf-8")
        assert asyncio.run(fetch_snapshot(provider)) == {"cpuUsage": 0.1}
        path.write_text("system:\n  cpuUsage: 0.9\n", encoding="utf-8")
        assert asyncio.run(fetch_snapshot(provider)) == {"cpuUsage": 0.9}

    def test_missing_file_fails_fetch(self, tmp_path: Path):
        with pytest.raises(MetricsFetchError):
            asyncio.run(fetch_snapshot(FileMetricsProvider(tmp_path / "missing.yaml")))

    def test_non_mapping_category(self, tmp_path: Path):
        path = tmp_path / "metrics.yaml"
        path.write_text("system: [1, 2]\n", encoding="utf-8")
        with pytest.raises(MetricsFetchError, match="system"):
            asyncio.run(fetch_snapshot(FileMetricsProvider(path)))
