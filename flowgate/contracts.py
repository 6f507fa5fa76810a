"""Core data contracts shared by the build client, orchestrator and ledger."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BuildPhase(str, Enum):
    """Normalized lifecycle phase of a single build."""

    QUEUED = "QUEUED"
    BUILDING = "BUILDING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"
    UNSTABLE = "UNSTABLE"
    NOT_BUILT = "NOT_BUILT"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset(
    {
        BuildPhase.SUCCESS,
        BuildPhase.FAILURE,
        BuildPhase.ABORTED,
        BuildPhase.UNSTABLE,
        BuildPhase.NOT_BUILT,
    }
)


class EntityType(str, Enum):
    WORKFLOW = "WORKFLOW"
    CREDENTIAL = "CREDENTIAL"


class HistoryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    RUNNING = "RUNNING"


class ApprovalInfo(BaseModel):
    """A pending human decision on a paused build.

    Every URL is absolute by the time an instance leaves the build client.
    """

    model_config = ConfigDict(frozen=True)

    message: Optional[str] = None
    proceed_text: Optional[str] = None
    id: Optional[str] = None
    input_page_url: str
    proceed_url: Optional[str] = None
    abort_url: Optional[str] = None


class BuildState(BaseModel):
    """Normalized view of a build at one point in time."""

    model_config = ConfigDict(frozen=True)

    phase: BuildPhase
    raw_status: Optional[str] = None
    stage: Optional[str] = None
    approval: Optional[ApprovalInfo] = None
    result: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_result(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("result") is None:
            try:
                phase = BuildPhase(data.get("phase"))
            except ValueError:
                return data
            if phase.is_terminal:
                data = {**data, "result": phase.value}
        return data

    @model_validator(mode="after")
    def _check_invariants(self) -> "BuildState":
        if (self.approval is not None) != (self.phase is BuildPhase.AWAITING_APPROVAL):
            raise ValueError("approval must be set exactly when phase is AWAITING_APPROVAL")
        if (self.result is not None) != self.phase.is_terminal:
            raise ValueError("result must be set exactly when phase is terminal")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def awaiting_approval(self) -> bool:
        return self.phase is BuildPhase.AWAITING_APPROVAL


class QueuedBuild(BaseModel):
    """The executable a queue item resolved to."""

    build_url: str
    build_number: Optional[int] = None


class PipelineStep(BaseModel):
    """Record of one executed stage."""

    model_config = ConfigDict(frozen=True)

    label: str
    queue_url: Optional[str] = None
    build_url: Optional[str] = None
    build_number: Optional[int] = None
    state: BuildState
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state.phase is BuildPhase.SUCCESS


class StageSpec(BaseModel):
    """One trigger-and-wait unit of a pipeline.

    ``stop_on_approval`` has no default: each pipeline definition must decide.
    """

    label: str
    job_path: str
    parameters: Dict[str, str] = Field(default_factory=dict)
    stop_on_approval: bool


class PipelineOutcome(BaseModel):
    """Result of running a named pipeline."""

    pipeline: str
    status: HistoryStatus
    steps: List[PipelineStep] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def last_step(self) -> Optional[PipelineStep]:
        return self.steps[-1] if self.steps else None

    @property
    def build_url(self) -> Optional[str]:
        step = self.last_step
        return step.build_url if step else None

    @property
    def approval(self) -> Optional[ApprovalInfo]:
        step = self.last_step
        return step.state.approval if step else None


class EntityRef(BaseModel):
    """The workflow or credential set a pipeline run acts on."""

    type: EntityType
    id: str
    name: Optional[str] = None
