"""Tests for workflow definition parsing."""

import pytest

from services.pipeline.models import (
    ErrorHandling,
    ExecutionMode,
    NodeExecutionMode,
    WorkflowNode,
    WorkflowSettings,
)


class TestNodeEnabledFlag:
    """Tests for the ``enabled`` flag across JSON-ish encodings."""

    @pytest.mark.parametrize("raw", [False, 0, "false", "False", " no ", "off", "0", ""])
    def test_falsy_values_disable(self, raw):
        node = WorkflowNode.from_dict({"id": "A", "type": "echo", "enabled": raw})
        assert node.enabled is False

    @pytest.mark.parametrize("raw", [True, 1, "true", "TRUE", "yes", "on", "1"])
    def test_truthy_values_enable(self, raw):
        node = WorkflowNode.from_dict({"id": "A", "type": "echo", "enabled": raw})
        assert node.enabled is True

    def test_missing_or_null_defaults_to_enabled(self):
        assert WorkflowNode.from_dict({"id": "A", "type": "echo"}).enabled is True
        assert WorkflowNode.from_dict({"id": "A", "type": "echo", "enabled": None}).enabled is True

    def test_unrecognized_string_rejected(self):
        with pytest.raises(ValueError, match="maybe"):
            WorkflowNode.from_dict({"id": "A", "type": "echo", "enabled": "maybe"})

    def test_round_trip_keeps_flag(self):
        node = WorkflowNode.from_dict({"id": "A", "type": "echo", "enabled": "false"})
        assert WorkflowNode.from_dict(node.to_dict()).enabled is False


class TestWorkflowSettings:

    def test_defaults(self):
        settings = WorkflowSettings.from_dict(None)
        assert settings.execution_mode == ExecutionMode.SEQUENTIAL
        assert settings.error_handling == ErrorHandling.STOP
        assert settings.notify_on_completion is True
        assert settings.notify_on_failure is True

    def test_camel_case_keys(self):
        settings = WorkflowSettings.from_dict({
            "executionMode": "hybrid",
            "errorHandling": "continue",
            "maxRetries": "2",
            "notifyOnCompletion": "false",
            "notifyOnFailure": "no",
        })
        assert settings.execution_mode == ExecutionMode.HYBRID
        assert settings.error_handling == ErrorHandling.CONTINUE
        assert settings.max_retries == 2
        assert settings.notify_on_completion is False
        assert settings.notify_on_failure is False

    def test_node_execution_mode_camel_case(self):
        node = WorkflowNode.from_dict({"id": "A", "type": "echo", "executionMode": "parallel"})
        assert node.execution_mode == NodeExecutionMode.PARALLEL
