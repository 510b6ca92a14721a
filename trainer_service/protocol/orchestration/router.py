import asyncio
import json
from typing import Any, Optional

from trainer_service.core.errors import ExecutorFailure, UnknownDirective
from trainer_service.core.executor_registry import ExecutorRegistry
from trainer_service.core.types import DirectiveCall, DirectiveResult
from trainer_service.core.logging import logger


def as_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def result_from_output(name: str, outcome: Any) -> DirectiveResult:
    """Normalize whatever an executor returned into a DirectiveResult."""
    if isinstance(outcome, DirectiveResult):
        return outcome
    if isinstance(outcome, dict) and outcome.get("error"):
        return DirectiveResult.failure(name, str(outcome["error"]))
    return DirectiveResult.ok(name, as_output(outcome))


class DirectiveRouter:
    """Dispatch one call to its executor; every failure comes back as a failed result."""

    def __init__(self, registry: ExecutorRegistry, timeout_sec: Optional[float] = None):
        self.registry = registry
        self.timeout = timeout_sec

    async def route(self, call: DirectiveCall) -> DirectiveResult:
        executor = self.registry.get(call.name)
        if executor is None:
            err = UnknownDirective(call.name)
            logger.warning(str(err))
            return DirectiveResult.failure(call.name, str(err))

        try:
            if self.timeout:
                outcome = await asyncio.wait_for(executor.execute(call), timeout=self.timeout)
            else:
                outcome = await executor.execute(call)
        except asyncio.TimeoutError:
            err = ExecutorFailure(call.name, f"Timed out after {self.timeout}s")
            logger.error(f"Directive '{call.name}' timed out after {self.timeout}s")
            return DirectiveResult.failure(call.name, str(err))
        except Exception as e:
            logger.exception(f"Directive '{call.name}' raised: {e}")
            return DirectiveResult.failure(call.name, str(ExecutorFailure(call.name, str(e) or type(e).__name__)))
        return result_from_output(call.name, outcome)
