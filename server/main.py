"""
Pipeline engine process bootstrap.

The engine has no network surface of its own. An embedding service enters
``lifespan()`` once per process and uses the yielded orchestrator:

    async with lifespan() as orchestrator:
        container.step_registry().register("dedupe", DedupeStep)
        record = await orchestrator.execute_workflow_sync(workflow, items)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from core.container import Container, container as default_container
from core.logging import configure_logging, get_logger
from services.pipeline.orchestrator import WorkflowOrchestrator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app_container: Optional[Container] = None) -> AsyncIterator[WorkflowOrchestrator]:
    """Process lifespan management."""
    app_container = app_container or default_container
    settings = app_container.settings()
    configure_logging(settings)

    # Startup
    logger.info("Starting pipeline engine",
                environment=settings.environment,
                execution_store=settings.execution_store)

    if settings.execution_store == "database":
        await app_container.database().startup()
    await app_container.cache().startup()

    orchestrator = app_container.orchestrator()
    logger.info("Services started successfully",
                redis_available=app_container.cache().is_redis_available())
    try:
        yield orchestrator
    finally:
        # Shutdown
        await orchestrator.shutdown()
        await app_container.cache().shutdown()
        if settings.execution_store == "database":
            await app_container.database().shutdown()
        logger.info("Services shutdown complete")
