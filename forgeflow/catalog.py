"""Workflow catalog: versioned storage of workflow definitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from .errors import NotFoundError
from .graph import PlanCache, Workflow, compile_workflow
from .persistence.repository import StateStore
from .schema import check_variable_schema

logger = logging.getLogger(__name__)


class WorkflowCatalog:
    """Save, version and publish workflow definitions.

    Definitions are compiled before they are stored, so an invalid graph
    never reaches the store. Saving a definition whose structure differs
    from the latest version creates a new version; saving an unchanged
    structure returns the existing version.
    """

    def __init__(self, store: StateStore, plan_cache: Optional[PlanCache] = None) -> None:
        self._store = store
        self._plans = plan_cache

    async def save(self, definition: Union[Workflow, Dict[str, Any]]) -> Workflow:
        workflow = (
            definition
            if isinstance(definition, Workflow)
            else Workflow.model_validate(definition)
        )
        compile_workflow(workflow)
        check_variable_schema(workflow.variable_schema)

        latest = await self._store.get_workflow(workflow.id)
        if latest is not None and latest.fingerprint() == workflow.fingerprint():
            logger.info(f"Workflow {workflow.id} unchanged at v{latest.version}")
            return latest

        version = latest.version + 1 if latest is not None else 1
        stored = workflow.model_copy(update={"version": version, "published": False})
        await self._store.save_workflow(stored)
        if self._plans is not None:
            self._plans.get(stored)
        logger.info(f"Saved workflow {stored.id} v{stored.version}")
        return stored

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Workflow:
        workflow = await self._store.get_workflow(workflow_id, version)
        if workflow is None:
            suffix = f" v{version}" if version is not None else ""
            raise NotFoundError(f"Workflow {workflow_id}{suffix} not found")
        return workflow

    async def list(self) -> List[Workflow]:
        return await self._store.list_workflows()

    async def publish(self, workflow_id: str, version: Optional[int] = None) -> Workflow:
        """Mark a version (latest by default) as published."""
        workflow = await self.get(workflow_id, version)
        if workflow.published:
            return workflow
        published = await self._store.publish_workflow(workflow.id, workflow.version)
        logger.info(f"Published workflow {workflow.id} v{workflow.version}")
        return published
