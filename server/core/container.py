"""Dependency injection container for the pipeline engine."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.pipeline.cache import OutputCache
from services.pipeline.cancellation import CancellationSignals
from services.pipeline.executor import WorkflowExecutor
from services.pipeline.notifications import create_notifier
from services.pipeline.orchestrator import WorkflowOrchestrator
from services.pipeline.registry import StepRegistry
from services.pipeline.snapshots import SnapshotRecorder
from services.pipeline.store import CacheExecutionStore, DatabaseExecutionStore


def _execution_store_kind(settings: Settings) -> str:
    return settings.execution_store


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Durable home of ExecutionRecords, chosen by settings.execution_store
    execution_store = providers.Selector(
        providers.Callable(_execution_store_kind, settings),
        database=providers.Singleton(DatabaseExecutionStore, database=database),
        cache=providers.Singleton(CacheExecutionStore, cache=cache),
    )

    step_registry = providers.Singleton(
        StepRegistry
    )

    snapshot_recorder = providers.Singleton(
        SnapshotRecorder,
        store=execution_store
    )

    output_cache = providers.Singleton(
        OutputCache,
        durable=snapshot_recorder,
        threshold=settings.provided.output_cache_threshold,
        max_memory_nodes=settings.provided.output_cache_max_nodes
    )

    cancellation_signals = providers.Singleton(
        CancellationSignals,
        cache=cache
    )

    notifier = providers.Singleton(
        create_notifier,
        enabled=settings.provided.notifications_enabled
    )

    workflow_executor = providers.Singleton(
        WorkflowExecutor,
        registry=step_registry,
        output_cache=output_cache,
        recorder=snapshot_recorder,
        signals=cancellation_signals,
        notifier=notifier,
        max_concurrency=settings.provided.max_concurrency,
        node_timeout=settings.provided.node_timeout,
        datasource_types=settings.provided.datasource_node_types,
        environment=settings.provided.environment,
        version=settings.provided.execution_version
    )

    orchestrator = providers.Singleton(
        WorkflowOrchestrator,
        executor=workflow_executor,
        store=execution_store,
        output_cache=output_cache,
        signals=cancellation_signals
    )


# Global container instance
container = Container()
