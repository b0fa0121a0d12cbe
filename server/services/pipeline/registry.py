"""Step registry.

Maps node types to step factories. One registry object is built at process
startup (see ``core.container``) and injected into the executor, so tests can
swap in their own registry instead of patching module state.
"""

from typing import Any, Callable, Dict, List, Optional, Protocol

from core.logging import get_logger
from .models import ValidationResult
from .steps import Step

logger = get_logger(__name__)

StepFactory = Callable[[], Step]


class StepRegistryProtocol(Protocol):
    def has_step(self, step_type: str) -> bool: ...

    def create_step_instance(self, step_type: str) -> Optional[Step]: ...

    def get_step_types(self) -> List[str]: ...

    async def validate_step_config(self, step_type: str, config: Dict[str, Any]) -> ValidationResult: ...


class StepRegistry:
    """Registry-based step dispatch without if-else chains."""

    def __init__(self, factories: Optional[Dict[str, StepFactory]] = None):
        self._factories: Dict[str, StepFactory] = {}
        for step_type, factory in (factories or {}).items():
            self.register(step_type, factory)

    def register(self, step_type: str, factory: StepFactory) -> None:
        """Register a zero-argument factory (usually the step class) for a type."""
        if step_type in self._factories:
            logger.warning("Replacing registered step", step_type=step_type)
        self._factories[step_type] = factory

    def unregister(self, step_type: str) -> bool:
        return self._factories.pop(step_type, None) is not None

    def has_step(self, step_type: str) -> bool:
        return step_type in self._factories

    def create_step_instance(self, step_type: str) -> Optional[Step]:
        """Instantiate the step for a type, or None if the type is unknown."""
        factory = self._factories.get(step_type)
        if factory is None:
            return None
        return factory()

    def get_step_types(self) -> List[str]:
        return sorted(self._factories)

    async def validate_step_config(self, step_type: str, config: Dict[str, Any]) -> ValidationResult:
        step = self.create_step_instance(step_type)
        if step is None:
            return ValidationResult(is_valid=False, errors=[f"Unknown step type: {step_type}"])
        try:
            return ValidationResult.coerce(await step.validate(config or {}))
        except Exception as e:
            logger.warning("Step config validation raised", step_type=step_type, error=str(e))
            return ValidationResult(is_valid=False, errors=[str(e)])
