from typing import Any, Dict, List, Optional

from trainer_service.core.interfaces import DirectiveExecutor
from trainer_service.core.logging import logger


class ExecutorRegistry:
    """Maps directive names to executor instances. Last registration for a name wins."""

    def __init__(self, executors: Optional[List[DirectiveExecutor]] = None):
        self._by_name: Dict[str, DirectiveExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    @classmethod
    def from_config(cls, registry_cfg: List[Dict[str, Any]], enabled: List[str], **deps: Any) -> "ExecutorRegistry":
        """Build from `directives.registry` entries; `deps` are offered to each constructor."""
        from trainer_service.core.factory import load

        registry = cls()
        for ecfg in registry_cfg:
            name = ecfg.get("name")
            if name not in enabled:
                continue
            impl = ecfg.get("impl", "")
            args = dict(deps)
            args.update(ecfg.get("args", {}) or {})
            try:
                executor = load(impl, **args)
            except Exception:
                logger.exception(f"Failed to load executor '{name}' from {impl}")
                continue
            registry.register(executor)
        return registry

    def register(self, executor: DirectiveExecutor) -> None:
        for name in executor.supported_names():
            previous = self._by_name.get(name)
            if previous is not None and previous is not executor:
                logger.warning(
                    f"Directive '{name}' already registered by {type(previous).__name__}; "
                    f"overriding with {type(executor).__name__}"
                )
            self._by_name[name] = executor
        logger.info(f"Registered {type(executor).__name__}: {executor.supported_names()}")

    def get(self, name: str) -> Optional[DirectiveExecutor]:
        return self._by_name.get(name)

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def executors(self) -> List[DirectiveExecutor]:
        seen: List[DirectiveExecutor] = []
        for executor in self._by_name.values():
            if not any(executor is s for s in seen):
                seen.append(executor)
        return seen

    def describe(self, name: str) -> Optional[str]:
        executor = self._by_name.get(name)
        return executor.describe(name) if executor else None

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)
