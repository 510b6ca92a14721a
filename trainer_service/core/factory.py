from importlib import import_module
from typing import Any, Dict, Optional, cast
import inspect

from trainer_service.core.config import load_settings
from trainer_service.core.interfaces import ConnectivitySignal, ModelService, PersistenceStore


def load(dotted: str, **kwargs: Any) -> Any:
    """Import a dotted path and instantiate the class if callable.
    Filters kwargs to match the constructor signature (unless **kwargs is accepted)."""
    module, cls = dotted.rsplit(".", 1)
    mod = import_module(module)
    obj = getattr(mod, cls)

    if isinstance(obj, type):
        sig = inspect.signature(obj.__init__)
        params = list(sig.parameters.values())
        accepts_kwargs = any(p.kind == p.VAR_KEYWORD for p in params)
        if accepts_kwargs:
            return obj(**kwargs)
        allowed = {p.name for p in params if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY) and p.name != "self"}
        filtered = {k: v for k, v in kwargs.items() if k in allowed}
        return obj(**filtered)

    return obj


class ServiceFactory:
    """Builds the object graph from settings; the only place that reads configuration."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_settings()
        self._model: ModelService | None = None
        self._store: PersistenceStore | None = None
        self._connectivity: ConnectivitySignal | None = None

    def _provider_cfg(self, name: str) -> Dict[str, Any]:
        cfg = self.config.get("providers", {}).get(name, {}) or {}
        if not cfg.get("impl"):
            raise ValueError(f"providers.{name}.impl is not configured")
        return cfg

    def get_model(self) -> ModelService:
        if not self._model:
            cfg = self._provider_cfg("model")
            args = dict(cfg.get("args", {}) or {})
            args.setdefault("timeout_sec", self.config.get("network", {}).get("timeout_sec", 120))
            self._model = cast(ModelService, load(cfg["impl"], **args))
        return self._model

    def get_store(self) -> PersistenceStore:
        if not self._store:
            cfg = self._provider_cfg("store")
            self._store = cast(PersistenceStore, load(cfg["impl"], **(cfg.get("args", {}) or {})))
        return self._store

    def get_connectivity(self) -> ConnectivitySignal:
        if not self._connectivity:
            cfg = self._provider_cfg("connectivity")
            self._connectivity = cast(ConnectivitySignal, load(cfg["impl"], **(cfg.get("args", {}) or {})))
        return self._connectivity

    def get_registry(self):
        from trainer_service.core.executor_registry import ExecutorRegistry

        directives_cfg = self.config.get("directives", {}) or {}
        return ExecutorRegistry.from_config(
            directives_cfg.get("registry", []) or [],
            directives_cfg.get("enabled", []) or [],
            store=self.get_store(),
        )

    def get_chat_service(self):
        from trainer_service.protocol.delivery.backoff import BackoffPolicy
        from trainer_service.protocol.delivery.retry_manager import DeliveryManager
        from trainer_service.protocol.parsers.params import DEFAULT_RESERVED_FIELDS, ParameterParser
        from trainer_service.protocol.prompts import build_system_prompt_with_directives
        from trainer_service.protocol.service.chat_service import ChatService

        registry = self.get_registry()
        system_cfg = self.config.get("system", {}) or {}
        limits = self.config.get("limits", {}) or {}
        directives_cfg = self.config.get("directives", {}) or {}
        reserved = directives_cfg.get("reserved_payload_fields", list(DEFAULT_RESERVED_FIELDS))

        system_prompt = build_system_prompt_with_directives(registry, system_cfg.get("prompt", "").strip())
        delivery = DeliveryManager(
            self.get_store(),
            self.get_connectivity(),
            BackoffPolicy.from_config(self.config.get("retry", {})),
        )
        kwargs: Dict[str, Any] = {}
        if system_cfg.get("fallback_response"):
            kwargs["fallback_response"] = system_cfg["fallback_response"]
        return ChatService(
            model=self.get_model(),
            registry=registry,
            store=self.get_store(),
            connectivity=self.get_connectivity(),
            system_prompt=system_prompt,
            delivery=delivery,
            param_parser=ParameterParser(reserved),
            max_turns=int(limits.get("max_turns", 5)),
            tool_timeout_sec=limits.get("tool_timeout_sec"),
            **kwargs,
        )
