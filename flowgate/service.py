"""Operations exposed to the routing layer.

:class:`ControlPlane` ties the build client, the pipeline catalog and the
history ledger together. Each pipeline run writes one ``RUNNING`` row when it
starts and exactly one more row when it succeeds, fails or pauses.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from .config import FlowgateConfig, load_config
from .contracts import (
    BuildPhase,
    BuildState,
    EntityRef,
    EntityType,
    HistoryStatus,
    PipelineOutcome,
)
from .errors import BuildUrlNotAllowedError
from .jenkins import JenkinsClient
from .orchestrator import PipelineOrchestrator
from .persistence import (
    HistoryEntry,
    HistoryRepository,
    HistorySummary,
    get_repository,
    normalize_status_filter,
)
from .pipelines import PipelineCatalog, credential_ids
from .sources import (
    CredentialInventory,
    N8nClient,
    PostgresCredentialIndex,
)
from .utils.urls import ensure_trailing_slash, same_host

logger = logging.getLogger(__name__)


class HistorySync(BaseModel):
    """Identifies the ledger entity a build status check belongs to."""

    entity: EntityRef
    action: str
    ids: List[str] = Field(default_factory=list)


def _details(action: str, outcome: PipelineOutcome) -> str:
    if outcome.status is HistoryStatus.SUCCESS:
        return f"{action} success"
    if outcome.status is HistoryStatus.AWAITING_APPROVAL:
        step = outcome.last_step
        return f"{action} awaiting approval at {step.label if step else 'unknown stage'}"
    return f"{action} failed: {outcome.error or 'unknown error'}"


class ControlPlane:
    """Entry point for triggering pipelines and querying their history."""

    def __init__(
        self,
        client: JenkinsClient,
        catalog: PipelineCatalog,
        repository: HistoryRepository,
        *,
        history_window_days: int = 7,
        history_page_size: int = 20,
        resources: Sequence[Any] = (),
    ) -> None:
        self._client = client
        self._resources = list(resources)
        self._catalog = catalog
        self._repository = repository
        self._orchestrator = PipelineOrchestrator(client)
        self._window_days = history_window_days
        self._page_size = history_page_size

    @property
    def catalog(self) -> PipelineCatalog:
        return self._catalog

    async def aclose(self) -> None:
        await self._client.aclose()
        for resource in self._resources:
            await resource.aclose()

    async def _record(
        self,
        entity: EntityRef,
        action: str,
        status: HistoryStatus,
        *,
        build_url: Optional[str] = None,
        details: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        return await self._repository.record(
            HistoryEntry(
                entity_type=entity.type,
                entity_id=entity.id,
                entity_name=entity.name,
                action=action,
                status=status,
                build_url=build_url,
                details=details,
                metadata=metadata or {},
            )
        )

    # ------------------------------------------------------------------
    async def trigger_pipeline(
        self,
        pipeline_name: str,
        entity: EntityRef,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> PipelineOutcome:
        """Run a named pipeline for ``entity`` and record it in the ledger.

        Stage failures come back as a ``FAILED`` outcome. Unexpected errors are
        recorded as ``FAILED`` with an opaque detail and then re-raised.
        """
        parameters = dict(parameters or {})
        definition = self._catalog.get(pipeline_name)
        stages = await self._catalog.plan(pipeline_name, entity.id, parameters)

        metadata: Dict[str, Any] = {
            "pipeline": pipeline_name,
            "stages": [s.label for s in stages],
        }
        if entity.type is EntityType.CREDENTIAL:
            metadata["ids"] = credential_ids(entity.id, parameters)

        action = definition.action
        await self._record(
            entity, action, HistoryStatus.RUNNING, details=f"{action} started", metadata=metadata
        )

        try:
            outcome = await self._orchestrator.run(pipeline_name, stages)
        except Exception:
            logger.exception(f"Pipeline {pipeline_name} for {entity.id} crashed")
            await self._record(
                entity,
                action,
                HistoryStatus.FAILED,
                details=f"{action} failed: internal error",
                metadata={**metadata, "error": "internal error"},
            )
            raise

        await self._record(
            entity,
            action,
            outcome.status,
            build_url=outcome.build_url,
            details=_details(action, outcome),
            metadata={
                **metadata,
                "steps": [s.model_dump(mode="json") for s in outcome.steps],
                "error": outcome.error,
            },
        )
        logger.info(f"Pipeline {pipeline_name} for {entity.id}: {outcome.status.value}")
        return outcome

    def _check_build_url(self, build_url: str) -> str:
        if not same_host(build_url, self._client.base_url):
            raise BuildUrlNotAllowedError(f"{build_url} is not on {self._client.base_url}")
        return ensure_trailing_slash(build_url)

    async def get_build_state(
        self, build_url: str, sync: Optional[HistorySync] = None
    ) -> BuildState:
        """Current state of a build; optionally sync a finished build into the ledger."""
        build_url = self._check_build_url(build_url)
        state = await self._client.get_build_state(build_url)
        if sync is not None and state.is_terminal:
            await self._sync_history(sync, build_url, state)
        return state

    async def _sync_history(self, sync: HistorySync, build_url: str, state: BuildState) -> None:
        status = (
            HistoryStatus.SUCCESS if state.phase is BuildPhase.SUCCESS else HistoryStatus.FAILED
        )
        latest = await self._repository.latest_by_entity(
            sync.entity.type, [sync.entity.id], sync.action
        )
        previous = latest.get(sync.entity.id)
        if previous is not None and previous.build_url == build_url and previous.status == status:
            logger.debug(f"History for {sync.entity.id} already records {status.value}")
            return

        details = (
            f"{sync.action} success"
            if status is HistoryStatus.SUCCESS
            else f"{sync.action} failed: {state.result}"
        )
        metadata: Dict[str, Any] = {
            "source": "build-status-poller",
            "build_state": state.model_dump(mode="json"),
        }
        if sync.entity.type is EntityType.CREDENTIAL:
            metadata["ids"] = sync.ids or [sync.entity.id]
        await self._record(
            sync.entity,
            sync.action,
            status,
            build_url=build_url,
            details=details,
            metadata=metadata,
        )

    async def respond_to_approval(self, build_url: str, *, proceed: bool = True) -> BuildState:
        """Proceed or abort a paused build; a build that is not paused is left alone."""
        build_url = self._check_build_url(build_url)
        state = await self._client.get_build_state(build_url)
        if not state.awaiting_approval:
            logger.info(f"{build_url} is {state.phase.value}; nothing to answer")
            return state
        await self._client.respond_to_approval(state.approval, proceed=proceed)
        return await self._client.get_build_state(build_url)

    async def get_history_summary(
        self, window_days: Optional[int] = None, status_filter: Optional[str] = None
    ) -> HistorySummary:
        return await self._repository.summary(
            self._window_days if window_days is None else window_days,
            normalize_status_filter(status_filter),
            self._page_size,
        )

    async def latest_history(
        self, entity_type: EntityType, ids: List[str], action: Optional[str] = None
    ) -> Dict[str, HistoryEntry]:
        return await self._repository.latest_by_entity(entity_type, ids, action)


def build_control_plane(
    config: Optional[FlowgateConfig] = None,
    repository: Optional[HistoryRepository] = None,
) -> ControlPlane:
    """Assemble a :class:`ControlPlane` from configuration."""
    config = config or load_config()

    inventory = None
    resources = []
    if config.n8n.base_url and config.n8n.api_key and config.production_database_url:
        n8n = N8nClient.from_config(config.n8n)
        resources.append(n8n)
        inventory = CredentialInventory(
            n8n,
            PostgresCredentialIndex(config.production_database_url),
        )
    else:
        logger.debug("Credential inventory not configured; promotion pipelines disabled")

    return ControlPlane(
        JenkinsClient.from_config(config.jenkins),
        PipelineCatalog(config.jobs, inventory),
        repository or get_repository(config=config),
        history_window_days=config.history.window_days,
        history_page_size=config.history.page_size,
        resources=resources,
    )
