"""Step contract and template base class.

A step is the executable unit behind a node type. The engine only relies on
the ``Step`` protocol; ``BaseStep`` is a convenience template that handles
input unwrapping, config validation, timing and error capture so concrete
steps implement ``execute_step`` alone.
"""

import time
from typing import Any, Dict, List, Protocol, runtime_checkable

from core.logging import get_logger
from .models import StepExecutionContext, StepResult, ValidationResult
from .shapes import unwrap_input

logger = get_logger(__name__)


@runtime_checkable
class Step(Protocol):
    """Protocol implemented by processing-node collaborators."""

    async def execute(self, input_data: Any, config: Dict[str, Any],
                      context: StepExecutionContext) -> Any:
        """Run the step. Returns a StepResult or its dict shape."""
        ...

    def format_output(self, result: StepResult, original_input: Any) -> Any:
        """Shape a raw result into its final stored/displayed form."""
        ...

    async def validate(self, config: Dict[str, Any]) -> Any:
        """Check a node config. Returns a ValidationResult or its dict shape."""
        ...


class BaseStep:
    """Template for steps that process a list of items.

    Execution flow:
        unwrap input -> validate config -> should_execute -> execute_step
        -> metrics. Any exception becomes a failed StepResult.
    """

    step_type: str = ""
    step_name: str = ""
    version: str = "1.0.0"

    def __init__(self):
        self.logger = get_logger(f"steps.{self.step_type or type(self).__name__}")

    async def execute(self, input_data: Any, config: Dict[str, Any],
                      context: StepExecutionContext) -> StepResult:
        started = time.perf_counter()
        items = unwrap_input(input_data)

        try:
            validation = ValidationResult.coerce(await self.validate(config))
            if not validation.is_valid:
                return self._error_result(items, started, ", ".join(validation.errors))
            if validation.warnings:
                self.logger.warning("Configuration warnings",
                                    node_id=context.node_id,
                                    warnings=validation.warnings)

            if not self.should_execute(items, config, context):
                return StepResult(
                    success=True,
                    output_segments=items,
                    metrics=self.calculate_metrics(items, items, started, skipped=True),
                )

            output = await self.execute_step(items, config, context)
            return StepResult(
                success=True,
                output_segments=output,
                metrics=self.calculate_metrics(items, output, started),
            )

        except Exception as e:
            self.logger.error("Step execution failed",
                              step_type=self.step_type,
                              node_id=context.node_id,
                              error=str(e))
            return self._error_result(items, started, str(e))

    async def execute_step(self, items: List[Any], config: Dict[str, Any],
                           context: StepExecutionContext) -> List[Any]:
        raise NotImplementedError

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        return ValidationResult(is_valid=True)

    def should_execute(self, items: List[Any], config: Dict[str, Any],
                       context: StepExecutionContext) -> bool:
        return True

    def format_output(self, result: StepResult, original_input: Any) -> Any:
        """Default display shape: the output items, plus duplicates if any."""
        duplicates = result.extra.get("duplicates")
        if duplicates:
            return {"data": result.output_segments, "duplicates": duplicates}
        return result.output_segments

    def calculate_metrics(self, items: List[Any], output: Any, started: float,
                          skipped: bool = False) -> Dict[str, Any]:
        elapsed_ms = (time.perf_counter() - started) * 1000
        output_count = len(output) if isinstance(output, list) else 0
        metrics = {
            "input_count": len(items),
            "output_count": output_count,
            "processing_time": round(elapsed_ms, 3),
        }
        if skipped:
            metrics["skipped"] = True
        return metrics

    def _error_result(self, items: List[Any], started: float, error: str) -> StepResult:
        return StepResult(
            success=False,
            output_segments=[],
            metrics=self.calculate_metrics(items, [], started),
            error=error,
        )
