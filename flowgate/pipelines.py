"""Named promotion pipelines and the stages they expand to."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .config import JobsConfig
from .constants import (
    ACTION_DEPLOY_FROM_GIT,
    ACTION_PROMOTE_CREDENTIALS,
    ACTION_PULL_FROM_GIT,
    ACTION_PUSH_TO_GIT,
    ACTION_PUSH_TO_PROD,
    STAGE_DEPLOY_FROM_GIT,
    STAGE_DEV_TO_GIT,
    STAGE_PROMOTE_CREDS,
)
from .contracts import EntityType, StageSpec
from .errors import ConfigurationError
from .sources import CredentialInventory

logger = logging.getLogger(__name__)

PROMOTE_CREDENTIALS = "promote-credentials"
PUSH_TO_GIT = "push-to-git"
DEPLOY_FROM_GIT = "deploy-from-git"
PUSH_TO_PROD = "push-to-prod"
PULL_FROM_GIT = "pull-from-git"


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    action: str
    entity_type: EntityType
    plan: Callable[[str, Mapping[str, Any]], Awaitable[List[StageSpec]]]


def credential_ids(entity_id: str, parameters: Mapping[str, Any]) -> List[str]:
    """Credential ids from ``parameters["ids"]`` (list or comma string), else the entity id."""
    raw = parameters.get("ids")
    if isinstance(raw, str):
        ids = [s.strip() for s in raw.split(",")]
    elif isinstance(raw, (list, tuple)):
        ids = [str(s).strip() for s in raw]
    else:
        ids = [entity_id]
    return [i for i in ids if i]


class PipelineCatalog:
    """Builds stage lists for each named pipeline from job configuration."""

    def __init__(
        self, jobs: JobsConfig, inventory: Optional[CredentialInventory] = None
    ) -> None:
        self._jobs = jobs
        self._inventory = inventory
        self._definitions: Dict[str, PipelineDefinition] = {
            d.name: d
            for d in (
                PipelineDefinition(
                    PROMOTE_CREDENTIALS,
                    ACTION_PROMOTE_CREDENTIALS,
                    EntityType.CREDENTIAL,
                    self._plan_promote_credentials,
                ),
                PipelineDefinition(
                    PUSH_TO_GIT, ACTION_PUSH_TO_GIT, EntityType.WORKFLOW, self._plan_push_to_git
                ),
                PipelineDefinition(
                    DEPLOY_FROM_GIT,
                    ACTION_DEPLOY_FROM_GIT,
                    EntityType.WORKFLOW,
                    self._plan_deploy_from_git,
                ),
                PipelineDefinition(
                    PUSH_TO_PROD, ACTION_PUSH_TO_PROD, EntityType.WORKFLOW, self._plan_push_to_prod
                ),
                PipelineDefinition(
                    PULL_FROM_GIT,
                    ACTION_PULL_FROM_GIT,
                    EntityType.WORKFLOW,
                    self._plan_pull_from_git,
                ),
            )
        }

    @property
    def names(self) -> Sequence[str]:
        return tuple(self._definitions)

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ValueError(
                f"Unknown pipeline {name!r}; expected one of {', '.join(self._definitions)}"
            ) from None

    # ------------------------------------------------------------------
    # Single stages

    def _job(self, field: str) -> str:
        job = getattr(self._jobs, field)
        if not job:
            raise ConfigurationError(f"jobs.{field} is not configured")
        return job

    def promote_credentials_stage(
        self, ids: Sequence[str], *, stop_on_approval: bool = True
    ) -> StageSpec:
        """Credential promotion stage.

        Inside a composite pipeline the stage waits through its approval gate
        (``stop_on_approval=False``) so the push and deploy stages still run.
        """
        if not ids:
            raise ValueError("at least one credential id is required")
        return StageSpec(
            label=STAGE_PROMOTE_CREDS,
            job_path=self._job("promote_credentials"),
            parameters={self._jobs.cred_ids_param: ",".join(ids)},
            stop_on_approval=stop_on_approval,
        )

    def push_to_git_stage(self, workflow_id: str) -> StageSpec:
        return StageSpec(
            label=STAGE_DEV_TO_GIT,
            job_path=self._job("dev_to_git"),
            parameters={self._jobs.workflow_param: workflow_id},
            stop_on_approval=False,
        )

    def deploy_from_git_stage(self, workflow_id: str) -> StageSpec:
        return StageSpec(
            label=STAGE_DEPLOY_FROM_GIT,
            job_path=self._job("deploy_from_git"),
            parameters={self._jobs.workflow_param: workflow_id},
            stop_on_approval=True,
        )

    # ------------------------------------------------------------------
    # Pipelines

    async def _missing_credential_stages(self, workflow_id: str) -> List[StageSpec]:
        if self._inventory is None:
            raise ConfigurationError(
                "credential inventory is required to promote a workflow"
            )
        missing = await self._inventory.missing_credentials(workflow_id)
        if not missing:
            return []
        return [self.promote_credentials_stage(missing, stop_on_approval=False)]

    async def _plan_promote_credentials(
        self, entity_id: str, parameters: Mapping[str, Any]
    ) -> List[StageSpec]:
        return [self.promote_credentials_stage(credential_ids(entity_id, parameters))]

    async def _plan_push_to_git(
        self, entity_id: str, parameters: Mapping[str, Any]
    ) -> List[StageSpec]:
        return [self.push_to_git_stage(entity_id)]

    async def _plan_deploy_from_git(
        self, entity_id: str, parameters: Mapping[str, Any]
    ) -> List[StageSpec]:
        return [self.deploy_from_git_stage(entity_id)]

    async def _plan_push_to_prod(
        self, entity_id: str, parameters: Mapping[str, Any]
    ) -> List[StageSpec]:
        stages = await self._missing_credential_stages(entity_id)
        stages.append(self.push_to_git_stage(entity_id))
        stages.append(self.deploy_from_git_stage(entity_id))
        return stages

    async def _plan_pull_from_git(
        self, entity_id: str, parameters: Mapping[str, Any]
    ) -> List[StageSpec]:
        stages = await self._missing_credential_stages(entity_id)
        stages.append(self.deploy_from_git_stage(entity_id))
        return stages

    async def plan(
        self, name: str, entity_id: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> List[StageSpec]:
        definition = self.get(name)
        stages = await definition.plan(entity_id, parameters or {})
        logger.debug(f"Planned {name} for {entity_id}: {[s.label for s in stages]}")
        return stages
