"""Flowgate: promote workflows and credentials to production through build server pipelines."""

from .contracts import (
    ApprovalInfo,
    BuildPhase,
    BuildState,
    EntityRef,
    EntityType,
    HistoryStatus,
    PipelineOutcome,
    PipelineStep,
    StageSpec,
)
from .jenkins import JenkinsClient
from .orchestrator import PipelineOrchestrator
from .persistence import get_repository
from .pipelines import PipelineCatalog
from .service import ControlPlane, HistorySync, build_control_plane

__version__ = "0.1.0"
__all__ = [
    "ApprovalInfo",
    "BuildPhase",
    "BuildState",
    "ControlPlane",
    "EntityRef",
    "EntityType",
    "HistoryStatus",
    "HistorySync",
    "JenkinsClient",
    "PipelineCatalog",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "PipelineStep",
    "StageSpec",
    "build_control_plane",
    "get_repository",
]
