"""Sequential stage execution for promotion pipelines."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol, Sequence

import httpx

from .contracts import (
    BuildPhase,
    BuildState,
    HistoryStatus,
    PipelineOutcome,
    PipelineStep,
    QueuedBuild,
    StageSpec,
)
from .errors import FlowgateError, PollTimeoutError, QueueCancelledError

logger = logging.getLogger(__name__)

# Errors that end a single stage; anything else is an internal error.
STAGE_ERRORS = (FlowgateError, httpx.HTTPError)


class BuildServer(Protocol):
    """The subset of :class:`flowgate.jenkins.JenkinsClient` a stage needs."""

    async def trigger_job(
        self, job_path: str, parameters: Optional[Mapping[str, str]] = None
    ) -> str:
        """Queue a job and return the queue item URL."""

    async def resolve_queue_item(self, queue_url: str) -> QueuedBuild:
        """Wait for the queue item to become a build."""

    async def wait_for_build(
        self, build_url: str, *, stop_on_approval: bool
    ) -> BuildState:
        """Wait for a terminal (or approval) state."""


class StageEvents:
    """Structured log records emitted at stage boundaries."""

    def __init__(self, pipeline: str, log: logging.Logger = logger) -> None:
        self.pipeline = pipeline
        self._log = log

    def _extra(self, event: str, stage: str, **fields: object) -> Dict[str, object]:
        return {"event": event, "pipeline": self.pipeline, "stage": stage, **fields}

    def started(self, spec: StageSpec) -> None:
        self._log.info(
            f"[{self.pipeline}] stage {spec.label} started ({spec.job_path})",
            extra=self._extra("stage_started", spec.label, job=spec.job_path),
        )

    def finished(self, step: PipelineStep) -> None:
        self._log.info(
            f"[{self.pipeline}] stage {step.label} finished: {step.state.phase.value}",
            extra=self._extra(
                "stage_finished",
                step.label,
                phase=step.state.phase.value,
                build_url=step.build_url,
            ),
        )

    def failed(self, step: PipelineStep) -> None:
        self._log.error(
            f"[{self.pipeline}] stage {step.label} failed: {step.error}",
            extra=self._extra("stage_failed", step.label, error=step.error),
        )

    def timed_out(self, step: PipelineStep) -> None:
        self._log.warning(
            f"[{self.pipeline}] stage {step.label} timed out: {step.error}",
            extra=self._extra("stage_timed_out", step.label, error=step.error),
        )


def _failure_state(exc: Exception, build: Optional[QueuedBuild]) -> BuildState:
    if isinstance(exc, PollTimeoutError) and isinstance(exc.last_value, BuildState):
        return exc.last_value
    if isinstance(exc, QueueCancelledError):
        return BuildState(phase=BuildPhase.NOT_BUILT, raw_status="CANCELLED")
    if build is None and isinstance(exc, PollTimeoutError):
        return BuildState(phase=BuildPhase.QUEUED, raw_status="QUEUED")
    return BuildState(phase=BuildPhase.UNKNOWN, raw_status=type(exc).__name__)


class PipelineOrchestrator:
    """Runs stages strictly in order and decides the pipeline outcome.

    A stage that does not end in ``SUCCESS`` aborts the remaining stages. When
    the stage was configured with ``stop_on_approval`` and paused for input,
    the outcome is ``AWAITING_APPROVAL`` instead of ``FAILED``.
    """

    def __init__(self, client: BuildServer) -> None:
        self._client = client

    async def run_stage(
        self, spec: StageSpec, events: Optional[StageEvents] = None
    ) -> PipelineStep:
        """Trigger, resolve and wait for one stage.

        Known stage errors are folded into the returned step (``error`` set);
        unexpected exceptions propagate.
        """
        events = events or StageEvents(spec.label)
        events.started(spec)

        queue_url: Optional[str] = None
        build: Optional[QueuedBuild] = None
        try:
            queue_url = await self._client.trigger_job(spec.job_path, spec.parameters)
            build = await self._client.resolve_queue_item(queue_url)
            state = await self._client.wait_for_build(
                build.build_url, stop_on_approval=spec.stop_on_approval
            )
        except STAGE_ERRORS as exc:
            step = PipelineStep(
                label=spec.label,
                queue_url=queue_url,
                build_url=build.build_url if build else None,
                build_number=build.build_number if build else None,
                state=_failure_state(exc, build),
                error=str(exc),
            )
            if isinstance(exc, PollTimeoutError):
                events.timed_out(step)
            else:
                events.failed(step)
            return step

        step = PipelineStep(
            label=spec.label,
            queue_url=queue_url,
            build_url=build.build_url,
            build_number=build.build_number,
            state=state,
        )
        events.finished(step)
        return step

    async def run(self, pipeline: str, stages: Sequence[StageSpec]) -> PipelineOutcome:
        """Run ``stages`` in order and return the accumulated outcome."""
        events = StageEvents(pipeline)
        steps = []
        for spec in stages:
            step = await self.run_stage(spec, events)
            steps.append(step)
            if step.succeeded:
                continue
            if spec.stop_on_approval and step.state.awaiting_approval:
                logger.info(f"[{pipeline}] paused for approval at {spec.label}")
                return PipelineOutcome(
                    pipeline=pipeline, status=HistoryStatus.AWAITING_APPROVAL, steps=steps
                )
            error = step.error or f"{spec.label} finished with {step.state.phase.value}"
            logger.info(f"[{pipeline}] aborted at {spec.label}: {error}")
            return PipelineOutcome(
                pipeline=pipeline, status=HistoryStatus.FAILED, steps=steps, error=error
            )

        logger.info(f"[{pipeline}] completed {len(steps)} stage(s)")
        return PipelineOutcome(pipeline=pipeline, status=HistoryStatus.SUCCESS, steps=steps)
