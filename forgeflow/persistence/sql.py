"""SQL implementation of the state store built on SQLModel."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..errors import NotFoundError, StateConflictError
from ..graph.model import Workflow
from .models import JoinState, WorkflowExecution, WorkflowStep
from .repository import StateStore
from .tables import ExecutionRow, JoinRow, StepRow, WorkflowRow

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

_TIMESTAMPS = ("created_at", "started_at", "finished_at")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_values(record: BaseModel) -> Dict[str, Any]:
    data = record.model_dump(mode="json")
    for key in _TIMESTAMPS:
        if key in data:
            data[key] = getattr(record, key)
    return data


def _from_row(model: Type[RecordT], row: SQLModel) -> RecordT:
    data = row.model_dump()
    for key in _TIMESTAMPS:
        if key in data:
            data[key] = _aware(data[key])
    return model.model_validate(data)


class SQLStateStore(StateStore):
    """Persist engine state with SQLModel on an async SQLAlchemy engine.

    Works with ``sqlite+aiosqlite://`` and ``postgresql+asyncpg://`` URLs.
    Compare-and-set updates are single ``UPDATE ... WHERE revision = ?``
    statements; uniqueness of steps per node is enforced by a constraint.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    async def _ensure_schema(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if not self._initialized:
                await self.init_db()

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self._ensure_schema()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def _insert(self, row: SQLModel) -> bool:
        async with self.session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def _compare_and_set(
        self, table: Type[SQLModel], keys: Dict[str, Any], record: RecordT
    ) -> RecordT:
        revision = getattr(record, "revision")
        values = _row_values(record)
        for key in keys:
            values.pop(key, None)
        values["revision"] = revision + 1
        conditions = [getattr(table, key) == value for key, value in keys.items()]
        conditions.append(getattr(table, "revision") == revision)

        async with self.session() as session:
            result = await session.execute(update(table).where(*conditions).values(**values))
            await session.commit()
        if result.rowcount != 1:
            raise StateConflictError(f"{table.__tablename__} {keys} changed concurrently")
        return record.model_copy(update={"revision": revision + 1}, deep=True)

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        row = WorkflowRow(
            workflow_id=workflow.id,
            version=workflow.version,
            definition=workflow.model_dump(mode="json"),
            retry_defaults=(
                workflow.retry.model_dump(mode="json") if workflow.retry else {}
            ),
            published=workflow.published,
            created_at=workflow.created_at,
        )
        if not await self._insert(row):
            raise StateConflictError(
                f"Workflow {workflow.id} v{workflow.version} already exists"
            )

    async def get_workflow(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Workflow | None:
        async with self.session() as session:
            if version is not None:
                row = await session.get(WorkflowRow, (workflow_id, version))
            else:
                result = await session.execute(
                    select(WorkflowRow)
                    .where(WorkflowRow.workflow_id == workflow_id)
                    .order_by(WorkflowRow.version.desc())
                    .limit(1)
                )
                row = result.scalars().first()
        return Workflow.model_validate(row.definition) if row else None

    async def list_workflows(self) -> list[Workflow]:
        async with self.session() as session:
            result = await session.execute(
                select(WorkflowRow).order_by(WorkflowRow.workflow_id, WorkflowRow.version)
            )
            rows = result.scalars().all()
        latest: Dict[str, Workflow] = {}
        for row in rows:
            latest[row.workflow_id] = Workflow.model_validate(row.definition)
        return list(latest.values())

    async def publish_workflow(self, workflow_id: str, version: int) -> Workflow:
        async with self.session() as session:
            row = await session.get(WorkflowRow, (workflow_id, version))
            if row is None:
                raise NotFoundError(f"Workflow {workflow_id} v{version} not found")
            workflow = Workflow.model_validate(row.definition).model_copy(
                update={"published": True}
            )
            row.published = True
            row.definition = workflow.model_dump(mode="json")
            session.add(row)
            await session.commit()
        return workflow

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        if not await self._insert(ExecutionRow(**_row_values(execution))):
            raise StateConflictError(f"Execution {execution.id} already exists")

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self.session() as session:
            row = await session.get(ExecutionRow, execution_id)
        return _from_row(WorkflowExecution, row) if row else None

    async def update_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        return await self._compare_and_set(ExecutionRow, {"id": execution.id}, execution)

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        query = select(ExecutionRow).order_by(ExecutionRow.created_at)
        if workflow_id is not None:
            query = query.where(ExecutionRow.workflow_id == workflow_id)
        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_from_row(WorkflowExecution, row) for row in rows]

    # ------------------------------------------------------------------
    # Steps
    async def create_step(self, step: WorkflowStep) -> Tuple[WorkflowStep, bool]:
        if await self._insert(StepRow(**_row_values(step))):
            return step.model_copy(deep=True), True
        existing = await self.get_step_for_node(step.execution_id, step.node_id)
        if existing is None:
            raise StateConflictError(f"Step {step.id} could not be created")
        return existing, False

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        async with self.session() as session:
            row = await session.get(StepRow, step_id)
        return _from_row(WorkflowStep, row) if row else None

    async def get_step_for_node(
        self, execution_id: str, node_id: str
    ) -> WorkflowStep | None:
        async with self.session() as session:
            result = await session.execute(
                select(StepRow).where(
                    StepRow.execution_id == execution_id, StepRow.node_id == node_id
                )
            )
            row = result.scalars().first()
        return _from_row(WorkflowStep, row) if row else None

    async def update_step(self, step: WorkflowStep) -> WorkflowStep:
        return await self._compare_and_set(StepRow, {"id": step.id}, step)

    async def list_steps(self, execution_id: str) -> List[WorkflowStep]:
        async with self.session() as session:
            result = await session.execute(
                select(StepRow)
                .where(StepRow.execution_id == execution_id)
                .order_by(StepRow.created_at)
            )
            rows = result.scalars().all()
        return [_from_row(WorkflowStep, row) for row in rows]

    # ------------------------------------------------------------------
    # Join bookkeeping
    async def get_join(self, execution_id: str, node_id: str) -> JoinState | None:
        async with self.session() as session:
            row = await session.get(JoinRow, (execution_id, node_id))
        return _from_row(JoinState, row) if row else None

    async def create_join(self, join: JoinState) -> Tuple[JoinState, bool]:
        if await self._insert(JoinRow(**_row_values(join))):
            return join.model_copy(deep=True), True
        existing = await self.get_join(join.execution_id, join.node_id)
        if existing is None:
            raise StateConflictError(f"Join state of {join.node_id} could not be created")
        return existing, False

    async def update_join(self, join: JoinState) -> JoinState:
        return await self._compare_and_set(
            JoinRow,
            {"execution_id": join.execution_id, "node_id": join.node_id},
            join,
        )
