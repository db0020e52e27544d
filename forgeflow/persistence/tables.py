from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _json(nullable: bool = False) -> Column:
    return Column(JSON, nullable=nullable)


def _timestamp(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class WorkflowRow(SQLModel, table=True):
    """A stored workflow version."""

    __tablename__ = "workflows"

    workflow_id: str = Field(primary_key=True)
    version: int = Field(primary_key=True)
    definition: dict = Field(sa_column=_json())
    retry_defaults: dict = Field(sa_column=_json())
    published: bool = False
    created_at: datetime = Field(sa_column=_timestamp(nullable=False))


class ExecutionRow(SQLModel, table=True):
    """One run of a workflow version."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    workflow_version: int
    status: str
    variables: dict = Field(sa_column=_json())
    trigger: dict = Field(sa_column=_json())
    error: Optional[dict] = Field(default=None, sa_column=_json(nullable=True))
    created_at: datetime = Field(sa_column=_timestamp(nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    finished_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    revision: int = 0


class StepRow(SQLModel, table=True):
    """Execution details for a single node within a run."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("execution_id", "node_id"),)

    id: str = Field(primary_key=True)
    execution_id: str = Field(index=True)
    node_id: str
    node_type: str
    status: str
    attempt: int = 1
    input: dict = Field(sa_column=_json())
    output: Optional[dict] = Field(default=None, sa_column=_json(nullable=True))
    active_branches: Optional[list] = Field(default=None, sa_column=_json(nullable=True))
    error: Optional[dict] = Field(default=None, sa_column=_json(nullable=True))
    warnings: list = Field(sa_column=_json())
    waiting: bool = False
    created_at: datetime = Field(sa_column=_timestamp(nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    finished_at: Optional[datetime] = Field(default=None, sa_column=_timestamp())
    revision: int = 0


class JoinRow(SQLModel, table=True):
    """Remaining-predecessor counter of a join node."""

    __tablename__ = "join_states"

    execution_id: str = Field(primary_key=True)
    node_id: str = Field(primary_key=True)
    remaining: int
    arrivals: dict = Field(sa_column=_json())
    revision: int = 0
