from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from trainer_service.core.types import DirectiveCall, DirectiveResult, ModelReply

TokenCallback = Callable[[str], None]
ConnectivityListener = Callable[[bool], Union[None, Awaitable[None]]]


class ModelService(ABC):
    @abstractmethod
    async def complete(self, system_prompt: str, history: List[Dict[str, Any]]) -> ModelReply:
        """Single non-streaming completion."""
        ...

    @abstractmethod
    async def stream_complete(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        on_token: TokenCallback,
        on_reasoning: Optional[TokenCallback] = None,
    ) -> ModelReply:
        """Streaming completion; tokens are pushed to the callbacks as they arrive."""
        ...


class DirectiveExecutor(ABC):
    @abstractmethod
    def supported_names(self) -> List[str]:
        ...

    @abstractmethod
    async def execute(self, call: DirectiveCall) -> DirectiveResult:
        """May raise; the router converts exceptions into failed results."""
        ...

    def describe(self, name: str) -> Optional[str]:
        """Short user-facing status line shown while `name` runs."""
        return None


class PersistenceStore(ABC):
    @abstractmethod
    async def load(self, key: str) -> Any:
        """Return the stored value or None."""
        ...

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class ConnectivitySignal(ABC):
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def subscribe(self, listener: ConnectivityListener) -> None:
        """Register a callback invoked with the new value on every change."""
        ...
