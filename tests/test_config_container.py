"""Tests for settings, logging setup, DI wiring and the process lifespan."""

import pytest
import structlog
from dependency_injector import providers
from pydantic import ValidationError

from conftest import UppercaseStep

from core.config import Settings
from core.container import Container
from core.logging import (
    bind_execution,
    configure_logging,
    get_logger,
    log_cache_operation,
    log_execution_time,
)
from main import lifespan
from services.pipeline.models import ExecutionStatus, WorkflowDefinition
from services.pipeline.notifications import LoggingNotifier, NullNotifier
from services.pipeline.orchestrator import WorkflowOrchestrator
from services.pipeline.store import CacheExecutionStore, DatabaseExecutionStore


def container_for(settings):
    container = Container()
    container.settings.override(providers.Object(settings))
    return container


class TestSettings:

    def test_defaults(self, tmp_path):
        settings = Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        assert settings.execution_store == "database"
        assert settings.output_cache_threshold == 1000
        assert settings.output_cache_max_nodes == 10
        assert settings.max_concurrency == 8
        assert settings.node_timeout is None
        assert settings.datasource_node_types == ["datasource"]
        assert settings.is_sqlite

    def test_environment_overrides(self, monkeypatch, settings):
        monkeypatch.setenv("MAX_CONCURRENCY", "3")
        monkeypatch.setenv("EXECUTION_STORE", "cache")
        monkeypatch.setenv("NODE_TIMEOUT", "2.5")

        overridden = Settings(_env_file=None, database_url=settings.database_url)

        assert overridden.max_concurrency == 3
        assert overridden.execution_store == "cache"
        assert overridden.node_timeout == 2.5

    def test_log_level_normalized(self, settings):
        assert Settings(_env_file=None, database_url=settings.database_url, log_level="warning").log_level == "WARNING"

    @pytest.mark.parametrize("overrides", [
        {"log_level": "chatty"},
        {"execution_store": "s3"},
        {"max_concurrency": 0},
        {"unknown_option": True},
    ])
    def test_invalid_values_rejected(self, settings, overrides):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, database_url=settings.database_url, **overrides)

    def test_sqlite_directory_created(self, tmp_path):
        Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'x.db'}")
        assert (tmp_path / "nested").is_dir()


class TestLogging:

    @pytest.mark.parametrize("log_format, renderer", [
        ("json", structlog.processors.JSONRenderer),
        ("console", structlog.dev.ConsoleRenderer),
    ])
    def test_configure_logging(self, settings, log_format, renderer):
        configure_logging(settings.model_copy(update={"log_format": log_format}))

        assert structlog.is_configured()
        assert isinstance(structlog.get_config()["processors"][-1], renderer)

        logger = get_logger("tests.logging")
        log_execution_time(logger, "unit", 1.0, 1.5, execution_id="exec-1")
        log_cache_operation(logger, "get", "execution:exec-1:record", hit=True)

    def test_log_file(self, settings, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        configure_logging(settings.model_copy(update={"log_file": str(log_file)}))
        assert log_file.parent.is_dir()

    def test_bind_execution_scopes_identifiers(self):
        with bind_execution("exec-1", "wf-1"):
            assert structlog.contextvars.get_contextvars() == {
                "execution_id": "exec-1",
                "workflow_id": "wf-1",
            }
        assert "execution_id" not in structlog.contextvars.get_contextvars()


class TestContainer:

    def test_store_selected_by_settings(self, settings):
        assert isinstance(container_for(settings).execution_store(), DatabaseExecutionStore)

        cache_settings = settings.model_copy(update={"execution_store": "cache"})
        assert isinstance(container_for(cache_settings).execution_store(), CacheExecutionStore)

    def test_executor_wired_from_settings(self, settings):
        tuned = settings.model_copy(update={
            "max_concurrency": 3,
            "node_timeout": 4.0,
            "output_cache_threshold": 50,
            "datasource_node_types": ["datasource", "loader"],
        })
        container = container_for(tuned)
        executor = container.workflow_executor()

        assert executor.max_concurrency == 3
        assert executor.node_timeout == 4.0
        assert executor.output_cache.threshold == 50
        assert executor.datasource_types == frozenset(["datasource", "loader"])
        assert executor.recorder is container.snapshot_recorder()
        assert executor.output_cache.durable is container.snapshot_recorder()

    def test_singletons_shared(self, settings):
        container = container_for(settings)
        orchestrator = container.orchestrator()
        assert isinstance(orchestrator, WorkflowOrchestrator)
        assert orchestrator.executor is container.workflow_executor()
        assert orchestrator.signals is container.cancellation_signals()

    @pytest.mark.parametrize("enabled, notifier_type", [(True, LoggingNotifier), (False, NullNotifier)])
    def test_notifier_toggle(self, settings, enabled, notifier_type):
        container = container_for(settings.model_copy(update={"notifications_enabled": enabled}))
        assert isinstance(container.notifier(), notifier_type)


class TestLifespan:

    @pytest.mark.parametrize("execution_store", ["database", "cache"])
    async def test_runs_workflow_end_to_end(self, settings, execution_store):
        container = container_for(settings.model_copy(update={"execution_store": execution_store}))
        container.step_registry().register("uppercase", UppercaseStep)
        workflow = WorkflowDefinition.from_dict({
            "id": "wf-life",
            "nodes": [{"id": "U", "type": "uppercase"}],
        })

        async with lifespan(container) as orchestrator:
            record = await orchestrator.execute_workflow_sync(workflow, [{"text": "abc"}])
            stored = await orchestrator.get_execution(record.id)

        assert record.status == ExecutionStatus.COMPLETED
        assert stored.get_snapshot("U").output_data == [{"text": "ABC"}]
