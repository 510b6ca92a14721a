import asyncio
import functools
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from trainer_service.core.interfaces import PersistenceStore
from trainer_service.core.types import ConversationMessage, DeliveryState, MessageState, Role
from trainer_service.core.logging import logger


def transcript_key(conversation_id: str) -> str:
    return f"conversations/{conversation_id}"


class Transcript:
    """
    Ordered message list for one conversation.

    Writes happen on the event loop that holds `writer()`. Callbacks arriving
    from other threads (e.g. a provider streaming from a worker thread) go
    through post(), which hands the mutation to that loop.
    """

    def __init__(self, conversation_id: str, store: Optional[PersistenceStore] = None):
        self.conversation_id = conversation_id
        self.store = store
        self._messages: List[ConversationMessage] = []
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    async def load(cls, conversation_id: str, store: Optional[PersistenceStore]) -> "Transcript":
        transcript = cls(conversation_id, store)
        if store is not None:
            records = await store.load(transcript_key(conversation_id)) or []
            for rec in records:
                try:
                    transcript._messages.append(ConversationMessage.from_record(rec))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Dropping unreadable message in {conversation_id}: {e}")
        return transcript

    @asynccontextmanager
    async def writer(self) -> AsyncIterator["Transcript"]:
        """Exclusive write access for one orchestration at a time."""
        async with self._lock:
            self._loop = asyncio.get_running_loop()
            try:
                yield self
            finally:
                await self.persist()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        call = functools.partial(fn, *args, **kwargs)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if self._loop is None or running is self._loop:
            call()
        else:
            self._loop.call_soon_threadsafe(call)

    # ---- reads ----

    @property
    def messages(self) -> List[ConversationMessage]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[ConversationMessage]:
        for m in self._messages:
            if m.id == message_id:
                return m
        return None

    def __len__(self) -> int:
        return len(self._messages)

    # ---- writes ----

    def append(self, message: ConversationMessage) -> ConversationMessage:
        self._messages.append(message)
        return message

    def update(self, message_id: str, **changes: Any) -> Optional[ConversationMessage]:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                self._messages[i] = m.evolve(**changes)
                return self._messages[i]
        logger.warning(f"Update for unknown message {message_id} in {self.conversation_id}")
        return None

    def append_content(self, message_id: str, delta: str) -> None:
        msg = self.get(message_id)
        if msg is not None:
            self.update(message_id, content=msg.content + delta)

    def mark(self) -> int:
        return len(self._messages)

    def rollback(self, mark: int) -> List[ConversationMessage]:
        removed = self._messages[mark:]
        del self._messages[mark:]
        return removed

    async def persist(self) -> None:
        if self.store is None:
            return
        await self.store.save(transcript_key(self.conversation_id), [m.to_record() for m in self._messages])

    # ---- model context ----

    def history_for_model(self, current_user_id: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Messages replayed upstream: completed user/assistant content whose
        user side was delivered, then the in-flight user message followed by
        this orchestration's own assistant and result messages.
        """

        def usable(m: ConversationMessage) -> bool:
            return m.state == MessageState.COMPLETED and bool(m.content.strip())

        history: List[Dict[str, str]] = []
        for m in self._messages:
            if m.id == current_user_id or (current_user_id and m.reply_to == current_user_id):
                continue
            if not usable(m):
                continue
            if m.role == Role.USER and m.delivery.state != DeliveryState.SENT:
                continue
            if m.role == Role.SYSTEM:
                continue
            history.append({"role": str(m.role), "content": m.content})

        if current_user_id:
            current = self.get(current_user_id)
            if current is not None and current.content.strip():
                history.append({"role": "user", "content": current.content})
            for m in self._messages:
                if m.reply_to == current_user_id and usable(m):
                    history.append({"role": str(m.role), "content": m.content})
        return history
