"""Checkpointed execution of individual pipeline steps."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from opentelemetry import trace

from provisioner.domain.models.cluster import Cluster
from provisioner.domain.models.pipeline import PipelineContext, StepResult
from provisioner.domain.models.steps import checkpoint_path, Step, StepStatus
from provisioner.domain.ports.repositories import CheckpointStore
from provisioner.domain.ports.services import EventPublisher


logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

StepFunction = Callable[[PipelineContext, Cluster, StepResult], Awaitable[None]]


class StepExecutor:
    """Runs a step at most once to completion, recording the outcome.

    The checkpoint is read from the store immediately before the step and
    written together with the step's outputs in a single update. A crash
    between the work and that update leaves the step pending, so it is
    re-run on resume; every step body must tolerate that.
    """

    def __init__(self, store: CheckpointStore, event_publisher: EventPublisher) -> None:
        self._store = store
        self._events = event_publisher

    async def run(self, ctx: PipelineContext, step: Step, fn: StepFunction) -> Cluster:
        """Run ``fn`` unless ``step`` is already done. Returns the refreshed record."""
        cluster = await self._store.get_cluster(ctx.cluster_name)
        if cluster.is_done(step):
            return await self._skip(ctx, step, cluster)

        async def persist_success(result: StepResult) -> Cluster:
            return await self._store.update_cluster(
                ctx.cluster_name,
                {**result.updates, checkpoint_path(step): StepStatus.DONE},
            )

        return await self._execute(ctx, step, cluster, fn, persist_success)

    async def run_teardown(
        self,
        ctx: PipelineContext,
        step: str,
        gate: Step,
        fn: StepFunction,
        *,
        allowed: tuple[StepStatus, ...] = (StepStatus.DONE,),
        clears: Step | None = None,
        marks: Step | None = None,
    ) -> Cluster:
        """Run a deletion step when the creation step ``gate`` reached an allowed state.

        On success ``clears`` is reset to pending and ``marks`` is set done.
        """
        cluster = await self._store.get_cluster(ctx.cluster_name)
        if cluster.step_status(gate) not in allowed or (marks is not None and cluster.is_done(marks)):
            return await self._skip(ctx, step, cluster)

        async def persist_success(result: StepResult) -> Cluster:
            updates: dict[str, Any] = dict(result.updates)
            if clears is not None:
                updates[checkpoint_path(clears)] = StepStatus.PENDING
            if marks is not None:
                updates[checkpoint_path(marks)] = StepStatus.DONE
            if not updates:
                return await self._store.get_cluster(ctx.cluster_name)
            return await self._store.update_cluster(ctx.cluster_name, updates)

        return await self._execute(ctx, step, cluster, fn, persist_success, marks)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _skip(self, ctx: PipelineContext, step: str, cluster: Cluster) -> Cluster:
        name = _step_name(step)
        logger.info("step_skipped", cluster_name=ctx.cluster_name, step=name)
        await self._events.publish(
            "cluster.step.skipped", {"cluster_name": ctx.cluster_name, "step": name}
        )
        return cluster

    async def _execute(
        self,
        ctx: PipelineContext,
        step: str,
        cluster: Cluster,
        fn: StepFunction,
        persist_success: Callable[[StepResult], Awaitable[Cluster]],
        failure_marker: Step | None = None,
    ) -> Cluster:
        name = _step_name(step)
        result = StepResult()
        started = time.monotonic()

        logger.info("step_started", cluster_name=ctx.cluster_name, step=name)
        await self._events.publish(
            "cluster.step.started", {"cluster_name": ctx.cluster_name, "step": name}
        )

        with tracer.start_as_current_span(f"step.{name}") as span:
            span.set_attribute("cluster.name", ctx.cluster_name)
            span.set_attribute("cluster.cloud_provider", ctx.cloud_provider.value)
            try:
                await fn(ctx, cluster, result)
            except Exception as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                await self._record_failure(ctx, step, e, failure_marker)
                raise StepFailedError(ctx.cluster_name, name, e) from e

            updated = await persist_success(result)

        duration = time.monotonic() - started
        logger.info(
            "step_completed",
            cluster_name=ctx.cluster_name,
            step=name,
            duration_seconds=round(duration, 2),
        )
        await self._events.publish(
            "cluster.step.completed",
            {"cluster_name": ctx.cluster_name, "step": name, "duration_seconds": duration},
        )
        return updated

    async def _record_failure(
        self, ctx: PipelineContext, step: str, error: Exception, failure_marker: Step | None
    ) -> None:
        name = _step_name(step)
        updates: dict[str, Any] = {"last_condition": f"{name}: {error}"}
        if isinstance(step, Step):
            updates[checkpoint_path(step)] = StepStatus.FAILED
        elif failure_marker is not None:
            updates[checkpoint_path(failure_marker)] = StepStatus.FAILED

        logger.error("step_failed", cluster_name=ctx.cluster_name, step=name, error=str(error))
        await self._store.update_cluster(ctx.cluster_name, updates)
        await self._events.publish(
            "cluster.step.failed",
            {"cluster_name": ctx.cluster_name, "step": name, "error": str(error)},
        )


def _step_name(step: str) -> str:
    return step.value if isinstance(step, Step) else step


class StepFailedError(Exception):
    """Raised when a pipeline step's body fails."""

    def __init__(self, cluster_name: str, step: str, cause: Exception) -> None:
        self.cluster_name = cluster_name
        self.step = step
        self.cause = cause
        super().__init__(f"{cluster_name}: step {step} failed: {cause}")
