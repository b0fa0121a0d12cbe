"""Async database service with SQLModel and SQLAlchemy 2.0."""

from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from models.database import WorkflowExecution
from core.logging import get_logger

logger = get_logger(__name__)

# Record fields stored as timezone-aware datetimes, exchanged as epoch seconds
TIMESTAMP_FIELDS = ("started_at", "completed_at", "cancelled_at", "created_at")


def to_datetime(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops tzinfo on the way back
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflow Executions
    # ============================================================================

    @staticmethod
    def _to_columns(values: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: to_datetime(value) if key in TIMESTAMP_FIELDS else value
            for key, value in values.items()
        }

    @staticmethod
    def _to_values(row: WorkflowExecution) -> Dict[str, Any]:
        data = row.model_dump()
        data.pop("updated_at", None)
        for key in TIMESTAMP_FIELDS:
            data[key] = to_timestamp(data.get(key))
        return data

    async def save_workflow_execution(self, values: Dict[str, Any]) -> None:
        """Insert or fully replace an execution row."""
        try:
            async with self.get_session() as session:
                columns = self._to_columns(values)
                existing = await session.get(WorkflowExecution, values["id"])
                if existing:
                    for key, value in columns.items():
                        setattr(existing, key, value)
                else:
                    session.add(WorkflowExecution(**columns))
                await session.commit()

        except Exception as e:
            logger.error("Failed to save workflow execution", execution_id=values.get("id"), error=str(e))
            raise

    async def get_workflow_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.get_session() as session:
                row = await session.get(WorkflowExecution, execution_id)
                return self._to_values(row) if row else None

        except Exception as e:
            logger.error("Failed to get workflow execution", execution_id=execution_id, error=str(e))
            raise

    async def update_workflow_execution(self, execution_id: str, values: Dict[str, Any]) -> bool:
        """Apply a partial update. Returns False if the row does not exist."""
        try:
            async with self.get_session() as session:
                row = await session.get(WorkflowExecution, execution_id)
                if row is None:
                    return False
                for key, value in self._to_columns(values).items():
                    setattr(row, key, value)
                row.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to update workflow execution", execution_id=execution_id, error=str(e))
            raise

    async def list_workflow_executions(self, workflow_id: Optional[str] = None,
                                       status: Optional[str] = None,
                                       limit: int = 50) -> List[Dict[str, Any]]:
        try:
            async with self.get_session() as session:
                stmt = select(WorkflowExecution)
                if workflow_id:
                    stmt = stmt.where(WorkflowExecution.workflow_id == workflow_id)
                if status:
                    stmt = stmt.where(WorkflowExecution.status == status)
                stmt = stmt.order_by(WorkflowExecution.created_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return [self._to_values(row) for row in result.scalars().all()]

        except Exception as e:
            logger.error("Failed to list workflow executions", workflow_id=workflow_id, error=str(e))
            raise
