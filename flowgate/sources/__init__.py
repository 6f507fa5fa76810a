"""Workflow and credential metadata sources."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Protocol

from .n8n import N8nClient, WorkflowSummary, referenced_credential_ids
from .production import (
    InMemoryCredentialIndex,
    PostgresCredentialIndex,
    ProductionCredentialIndex,
)

logger = logging.getLogger(__name__)


class WorkflowSource(Protocol):
    async def get_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Fetch one workflow document."""


class CredentialInventory:
    """Compares a workflow's credentials with what production already has."""

    def __init__(self, workflows: WorkflowSource, production: ProductionCredentialIndex):
        self._workflows = workflows
        self._production = production

    async def missing_credentials(self, workflow_id: str) -> List[str]:
        workflow = await self._workflows.get_workflow(workflow_id)
        referenced = referenced_credential_ids(workflow)
        if not referenced:
            return []
        present = await self._production.existing_ids(referenced)
        missing = [i for i in referenced if i not in present]
        logger.info(
            f"Workflow {workflow_id} references {len(referenced)} credential(s), "
            f"{len(missing)} missing in production"
        )
        return missing


__all__ = [
    "CredentialInventory",
    "InMemoryCredentialIndex",
    "N8nClient",
    "PostgresCredentialIndex",
    "ProductionCredentialIndex",
    "WorkflowSource",
    "WorkflowSummary",
    "referenced_credential_ids",
]
