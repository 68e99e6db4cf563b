"""Unit tests for event publishers."""

from __future__ import annotations

from typing import Any

import pytest
from prometheus_client import REGISTRY

from provisioner.infrastructure.messaging.event_publisher import (
    InMemoryEventPublisher,
    MetricsEventPublisher,
)


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestInMemoryEventPublisher:
    @pytest.mark.asyncio
    async def test_publish(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("cluster.step.started", {"step": "git_init"})
        assert publisher.published_events == [("cluster.step.started", {"step": "git_init"})]

    @pytest.mark.asyncio
    async def test_publish_batch(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish_batch(
            [("cluster.create.started", {}), ("cluster.create.succeeded", {})]
        )
        assert len(publisher.published_events) == 2

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self) -> None:
        publisher = InMemoryEventPublisher()
        received: list[dict[str, Any]] = []

        async def handler(payload: dict[str, Any]) -> None:
            received.append(payload)

        publisher.subscribe("cluster.step.failed", handler)
        await publisher.publish("cluster.step.failed", {"step": "vault_terraform_apply"})
        await publisher.publish("cluster.step.completed", {"step": "git_init"})
        assert received == [{"step": "vault_terraform_apply"}]

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("cluster.step.started", {})
        publisher.clear()
        assert publisher.published_events == []


class TestMetricsEventPublisher:
    @pytest.mark.asyncio
    async def test_forwards_to_inner(self) -> None:
        inner = InMemoryEventPublisher()
        publisher = MetricsEventPublisher(inner)
        await publisher.publish("cluster.step.started", {"step": "git_init"})
        await publisher.publish_batch([("cluster.step.skipped", {"step": "git_init"})])
        assert [event for event, _ in inner.published_events] == [
            "cluster.step.started",
            "cluster.step.skipped",
        ]

    @pytest.mark.asyncio
    async def test_step_outcomes_counted(self) -> None:
        labels = {"step": "metrics_sample_step", "outcome": "completed"}
        before = sample("provisioner_steps_total", labels)
        publisher = MetricsEventPublisher(InMemoryEventPublisher())

        await publisher.publish(
            "cluster.step.completed", {"step": "metrics_sample_step", "duration_seconds": 2.5}
        )

        assert sample("provisioner_steps_total", labels) == before + 1
        assert sample(
            "provisioner_step_duration_seconds_count", {"step": "metrics_sample_step"}
        ) >= 1

    @pytest.mark.asyncio
    async def test_run_lifecycle_moves_gauge_and_counts_result(self) -> None:
        result_labels = {"operation": "delete", "result": "failed"}
        runs_before = sample("provisioner_pipeline_runs_total", result_labels)
        gauge_before = sample("provisioner_clusters_in_progress")
        publisher = MetricsEventPublisher(InMemoryEventPublisher())

        await publisher.publish("cluster.delete.started", {})
        assert sample("provisioner_clusters_in_progress") == gauge_before + 1

        await publisher.publish("cluster.delete.failed", {})
        assert sample("provisioner_clusters_in_progress") == gauge_before
        assert sample("provisioner_pipeline_runs_total", result_labels) == runs_before + 1
