"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


class WorkflowExecution(SQLModel, table=True):
    """One run of a workflow, with its node snapshots and aggregate metrics."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    status: str = Field(default="pending", index=True, max_length=50)
    document_id: Optional[str] = Field(default=None, max_length=255)
    dataset_id: Optional[str] = Field(default=None, max_length=255)
    started_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    node_snapshots: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    metrics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=4000)

    # Cancellation
    cancellation_reason: Optional[str] = Field(default=None, max_length=1000)
    cancelled_by: Optional[str] = Field(default=None, max_length=255)
    cancelled_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )

    # Origin of the run
    trigger_source: Optional[str] = Field(default=None, max_length=100)
    trigger_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    execution_context: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )
