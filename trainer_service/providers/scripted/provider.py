import asyncio
from typing import Any, Dict, List, Optional, Sequence

from trainer_service.core.interfaces import ModelService, TokenCallback
from trainer_service.core.types import ModelReply


class ScriptedModelService(ModelService):
    """
    Replays canned replies in order, for local runs without an API key.
    Once the script is exhausted it echoes the last user message.
    """

    def __init__(self, replies: Optional[Sequence[str]] = None, chunk_size: int = 8, delay_sec: float = 0.0):
        self.replies: List[str] = list(replies or [])
        self.chunk_size = max(1, chunk_size)
        self.delay = delay_sec
        self.calls: List[List[Dict[str, Any]]] = []

    def _next(self, history: List[Dict[str, Any]]) -> str:
        self.calls.append(list(history))
        if self.replies:
            return self.replies.pop(0)
        last_user = next((m["content"] for m in reversed(history) if m.get("role") == "user"), "")
        return f"You said: {last_user}" if last_user else ""

    async def complete(self, system_prompt: str, history: List[Dict[str, Any]]) -> ModelReply:
        text = self._next(history)
        return ModelReply(content=text) if text.strip() else ModelReply.missing()

    async def stream_complete(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        on_token: TokenCallback,
        on_reasoning: Optional[TokenCallback] = None,
    ) -> ModelReply:
        text = self._next(history)
        for i in range(0, len(text), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            on_token(text[i : i + self.chunk_size])
        return ModelReply(content=text) if text.strip() else ModelReply.missing()
