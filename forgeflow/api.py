"""HTTP trigger and query API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .catalog import WorkflowCatalog
from .coordinator import ExecutionCoordinator, ExecutionView
from .errors import (
    CompilationError,
    ForgeflowError,
    InputValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from .persistence.models import TriggerInfo

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    NotFoundError: 404,
    InputValidationError: 422,
    CompilationError: 422,
    InvalidTransitionError: 409,
}


class StartExecutionRequest(BaseModel):
    """Request body for triggering a workflow run."""

    version: Optional[int] = Field(default=None, ge=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


class StartExecutionResponse(BaseModel):
    execution_id: str


class DecisionRequest(BaseModel):
    """Request body for an approval decision."""

    approved: bool
    decided_by: Optional[str] = None
    comment: Optional[str] = Field(default=None, description="Optional reviewer comment")


class WorkflowSummary(BaseModel):
    id: str
    version: int
    name: Optional[str] = None
    published: bool


class ExecutionSummary(BaseModel):
    execution_id: str
    status: str


router = APIRouter()


def get_coordinator(request: Request) -> ExecutionCoordinator:
    return request.app.state.coordinator


def get_catalog(request: Request) -> WorkflowCatalog:
    return request.app.state.catalog


@router.get("/workflows", response_model=List[WorkflowSummary])
async def list_workflows(catalog: WorkflowCatalog = Depends(get_catalog)):
    workflows = await catalog.list()
    return [
        WorkflowSummary(id=w.id, version=w.version, name=w.name, published=w.published)
        for w in workflows
    ]


@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=StartExecutionResponse,
    status_code=201,
)
async def start_execution(
    workflow_id: str,
    body: StartExecutionRequest,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
):
    """Start a run of the workflow (latest version unless one is given)."""
    trigger = TriggerInfo(kind="api", actor=body.actor)
    execution_id = await coordinator.start(
        workflow_id, version=body.version, trigger=trigger, input=body.input
    )
    return StartExecutionResponse(execution_id=execution_id)


@router.get("/executions", response_model=List[ExecutionSummary])
async def list_executions(
    workflow_id: Optional[str] = None,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
):
    executions = await coordinator.store.list_executions(workflow_id)
    return [ExecutionSummary(execution_id=e.id, status=e.status.value) for e in executions]


@router.get("/executions/{execution_id}", response_model=ExecutionView)
async def get_execution(
    execution_id: str,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
):
    """Status, progress percentage, per-step detail and terminal error."""
    return await coordinator.describe(execution_id)


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionSummary)
async def cancel_execution(
    execution_id: str,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
):
    execution = await coordinator.cancel(execution_id)
    return ExecutionSummary(execution_id=execution.id, status=execution.status.value)


@router.post(
    "/executions/{execution_id}/steps/{step_id}/decision",
    response_model=ExecutionView,
)
async def decide_step(
    execution_id: str,
    step_id: str,
    body: DecisionRequest,
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
):
    """Record an approval decision and return the updated execution."""
    await coordinator.decide(
        execution_id,
        step_id,
        body.approved,
        decided_by=body.decided_by,
        comment=body.comment,
    )
    return await coordinator.describe(execution_id)


async def _forgeflow_error_handler(request: Request, exc: ForgeflowError) -> JSONResponse:
    status_code = 400
    for error_type, code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(
    coordinator: ExecutionCoordinator, catalog: Optional[WorkflowCatalog] = None
) -> FastAPI:
    """Build the API around an existing coordinator."""
    app = FastAPI(title="forgeflow")
    app.state.coordinator = coordinator
    app.state.catalog = catalog or WorkflowCatalog(coordinator.store)
    app.add_exception_handler(ForgeflowError, _forgeflow_error_handler)
    app.include_router(router)
    return app
