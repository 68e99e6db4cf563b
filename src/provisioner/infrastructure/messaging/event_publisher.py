"""Event publisher implementations."""

from __future__ import annotations

from typing import Any

import structlog

from provisioner.domain.ports.services import EventPublisher
from provisioner.infrastructure.observability.metrics import (
    CLUSTERS_IN_PROGRESS,
    PIPELINE_RUNS_TOTAL,
    STEP_DURATION,
    STEPS_TOTAL,
)


logger = structlog.get_logger(__name__)

_STEP_OUTCOMES = {
    "cluster.step.completed": "completed",
    "cluster.step.skipped": "skipped",
    "cluster.step.failed": "failed",
}


class InMemoryEventPublisher(EventPublisher):
    """In-memory event publisher for local runs and tests."""

    def __init__(self) -> None:
        self._events: list[tuple[str, dict[str, Any]]] = []
        self._handlers: dict[str, list[Any]] = {}

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self._events.append((event_type, payload))
        logger.info("event_published", event_type=event_type, payload_keys=list(payload.keys()))

        for handler in self._handlers.get(event_type, []):
            await handler(payload)

    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        for event_type, payload in events:
            await self.publish(event_type, payload)

    def subscribe(self, event_type: str, handler: Any) -> None:
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    @property
    def published_events(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()


class MetricsEventPublisher(EventPublisher):
    """Publisher decorator that turns lifecycle events into Prometheus samples."""

    def __init__(self, inner: EventPublisher) -> None:
        self._inner = inner

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self._record(event_type, payload)
        await self._inner.publish(event_type, payload)

    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        for event_type, payload in events:
            self._record(event_type, payload)
        await self._inner.publish_batch(events)

    @staticmethod
    def _record(event_type: str, payload: dict[str, Any]) -> None:
        outcome = _STEP_OUTCOMES.get(event_type)
        if outcome is not None:
            step = str(payload.get("step", "unknown"))
            STEPS_TOTAL.labels(step=step, outcome=outcome).inc()
            if "duration_seconds" in payload:
                STEP_DURATION.labels(step=step).observe(float(payload["duration_seconds"]))
            return

        if event_type in ("cluster.create.started", "cluster.delete.started"):
            CLUSTERS_IN_PROGRESS.inc()
        elif event_type.startswith("cluster.create.") or event_type.startswith("cluster.delete."):
            operation = event_type.split(".")[1]
            result = event_type.split(".")[2]
            PIPELINE_RUNS_TOTAL.labels(operation=operation, result=result).inc()
            CLUSTERS_IN_PROGRESS.dec()
