"""Async in-memory store implementing PersistenceStore"""
import copy
from typing import Any, Dict

from trainer_service.core.interfaces import PersistenceStore


class MemoryStore(PersistenceStore):
    def __init__(self):
        self.data: Dict[str, Any] = {}

    async def load(self, key: str) -> Any:
        # hand out copies so callers never alias stored state
        return copy.deepcopy(self.data.get(key))

    async def save(self, key: str, value: Any) -> None:
        self.data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

