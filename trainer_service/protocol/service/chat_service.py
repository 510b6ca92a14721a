import asyncio
import datetime
import functools
import uuid
from contextlib import aclosing
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from trainer_service.core.errors import DeliveryFailed, OfflineError
from trainer_service.core.executor_registry import ExecutorRegistry
from trainer_service.core.interfaces import ConnectivitySignal, ModelService, PersistenceStore
from trainer_service.core.types import ConversationMessage, DeliveryStatus, Role, StreamEvent
from trainer_service.protocol.delivery.retry_manager import DeliveryManager, Operation
from trainer_service.protocol.orchestration.emitter import NdjsonEmitter
from trainer_service.protocol.orchestration.orchestrator import (
    DEFAULT_MAX_TURNS,
    FALLBACK_RESPONSE,
    EventSink,
    OrchestrationResult,
    TurnOrchestrator,
)
from trainer_service.protocol.orchestration.router import DirectiveRouter
from trainer_service.protocol.orchestration.streaming import StreamingCoordinator
from trainer_service.protocol.orchestration.tool_runner import ToolRunner
from trainer_service.protocol.orchestration.transcript import Transcript, transcript_key
from trainer_service.protocol.parsers.directives import DirectiveDetector
from trainer_service.protocol.parsers.params import ParameterParser
from trainer_service.core.logging import logger

SESSIONS_INDEX_KEY = "conversations/index"


class ChatService:
    """
    Conversation facade: owns transcripts, runs orchestrations through the
    delivery manager and turns their events into NDJSON for the HTTP layer.
    """

    def __init__(
        self,
        model: ModelService,
        registry: ExecutorRegistry,
        store: PersistenceStore,
        connectivity: ConnectivitySignal,
        system_prompt: str,
        delivery: Optional[DeliveryManager] = None,
        param_parser: Optional[ParameterParser] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        tool_timeout_sec: Optional[float] = None,
        fallback_response: str = FALLBACK_RESPONSE,
    ):
        """Initialize with model, executor registry, store and connectivity signal"""
        self.model = model
        self.registry = registry
        self.store = store
        self.connectivity = connectivity
        self.system_prompt = system_prompt
        self.delivery = delivery or DeliveryManager(store, connectivity)
        self.tool_runner = ToolRunner(DirectiveDetector(param_parser), DirectiveRouter(registry, tool_timeout_sec))
        self.streaming = StreamingCoordinator(model)
        self.max_turns = max_turns
        self.fallback_response = fallback_response

        self._transcripts: Dict[str, Transcript] = {}
        self._message_sessions: Dict[str, str] = {}
        self._sinks: Dict[str, EventSink] = {}
        self._active: Dict[str, Tuple[str, asyncio.Event]] = {}
        self._background: Set[asyncio.Task] = set()

        self.delivery.subscribe(self._on_delivery_status)
        connectivity.subscribe(self._on_connectivity)

    # --- transcripts ---

    async def _transcript(self, session_id: str) -> Transcript:
        transcript = self._transcripts.get(session_id)
        if transcript is None:
            transcript = await Transcript.load(session_id, self.store)
            self._transcripts[session_id] = transcript
            for m in transcript.messages:
                self._message_sessions[m.id] = session_id
        return transcript

    async def _session_for(self, message_id: str) -> Optional[str]:
        if message_id in self._message_sessions:
            return self._message_sessions[message_id]
        for session in await self.list_sessions():
            transcript = await self._transcript(session["session_id"])
            if transcript.get(message_id) is not None:
                return session["session_id"]
        return None

    def _on_delivery_status(self, message_id: str, status: DeliveryStatus) -> Optional[Awaitable[None]]:
        session_id = self._message_sessions.get(message_id)
        transcript = self._transcripts.get(session_id) if session_id else None
        self._emit(message_id, StreamEvent.DELIVERY, {"message_id": message_id, **status.to_record(), "description": status.description})
        if transcript is None:
            return None
        transcript.post(transcript.update, message_id, delivery=status)
        if transcript.busy:
            # the active writer persists on exit
            return None
        return transcript.persist()

    def _on_connectivity(self, connected: bool) -> Optional[Awaitable[List[str]]]:
        if connected:
            return self.drain_offline_queue()
        return None

    # --- sending ---

    def _emit(self, message_id: str, kind: StreamEvent, data: Dict[str, Any]) -> None:
        sink = self._sinks.get(message_id)
        if sink is not None:
            sink(kind, data)

    def _operation(self, transcript: Transcript, message_id: str, cancel: asyncio.Event) -> Operation:
        async def run() -> OrchestrationResult:
            orchestrator = TurnOrchestrator(
                self.model,
                self.tool_runner,
                streaming=self.streaming,
                max_turns=self.max_turns,
                fallback_response=self.fallback_response,
                emit=functools.partial(self._emit, message_id),
            )
            async with transcript.writer():
                return await orchestrator.run(transcript, message_id, self.system_prompt, cancel)

        return run

    async def submit(self, session_id: str, text: str) -> ConversationMessage:
        """Append a user message to the transcript in the `sending` state."""
        await self._ensure_session(session_id)
        transcript = await self._transcript(session_id)
        async with transcript.writer():
            msg = transcript.append(ConversationMessage(role=Role.USER, content=text, delivery=DeliveryStatus.sending()))
        self._message_sessions[msg.id] = session_id
        return msg

    async def _deliver(
        self,
        session_id: str,
        message_id: str,
        send: Callable[[str, Operation], Awaitable[Any]],
    ) -> Optional[OrchestrationResult]:
        transcript = await self._transcript(session_id)
        cancel = asyncio.Event()
        self._active[session_id] = (message_id, cancel)
        try:
            return await send(message_id, self._operation(transcript, message_id, cancel))
        except OfflineError:
            logger.warning(f"Message {message_id} queued until connectivity returns")
        except DeliveryFailed as e:
            self._emit(message_id, StreamEvent.ERROR, {"message_id": message_id, "message": str(e), "retryable": e.retryable})
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            logger.info(f"Delivery of {message_id} cancelled")
        except Exception as e:
            logger.exception(f"Exception while delivering {message_id}: {e}")
            self._emit(message_id, StreamEvent.ERROR, {"message_id": message_id, "message": str(e)})
        finally:
            self._sinks.pop(message_id, None)
            if self._active.get(session_id, (None,))[0] == message_id:
                self._active.pop(session_id, None)
        return None

    async def _event_stream(
        self,
        session_id: str,
        message_id: str,
        send: Callable[[str, Operation], Awaitable[Any]],
        first: Optional[ConversationMessage] = None,
    ) -> AsyncGenerator[bytes, None]:
        emitter = NdjsonEmitter(session_id)
        queue: asyncio.Queue = asyncio.Queue()

        def emit(kind: StreamEvent, data: Dict[str, Any]) -> None:
            queue.put_nowait({"type": kind, "data": data})

        if first is not None:
            emit(StreamEvent.MESSAGE, first.to_record())
        self._sinks[message_id] = emit
        task = asyncio.create_task(self._deliver(session_id, message_id, send))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield emitter.emit(item)
            result = task.result()
        finally:
            if not task.done():
                # client went away; the reply still completes and is persisted
                logger.info(f"Stream for {message_id} closed early; finishing delivery in the background")
                if self._sinks.get(message_id) is emit:
                    self._sinks.pop(message_id, None)
                self._background.add(task)
                task.add_done_callback(self._background.discard)
        done: Dict[str, Any] = {"message_id": message_id}
        if result is not None:
            done.update(turns=result.turns, had_directives=result.had_directives, cancelled=result.cancelled)
        yield emitter.emit({"type": StreamEvent.DONE, "data": done})

    async def stream(self, session_id: str, prompt: str) -> AsyncGenerator[bytes, None]:
        """Send a user message and stream NDJSON events until its reply is final"""
        user_msg = await self.submit(session_id, prompt)
        logger.info(f"Chat message {user_msg.id} submitted to session {session_id}")
        async with aclosing(self._event_stream(session_id, user_msg.id, self.delivery.send, first=user_msg)) as events:
            async for chunk in events:
                yield chunk

    async def retry(self, session_id: str, message_id: str) -> AsyncGenerator[bytes, None]:
        """Manually retry a failed or queued user message"""
        transcript = await self._transcript(session_id)
        msg = transcript.get(message_id)
        if msg is None or msg.role != Role.USER:
            raise KeyError(message_id)
        self._message_sessions[message_id] = session_id
        async with aclosing(self._event_stream(session_id, message_id, self.delivery.retry)) as events:
            async for chunk in events:
                yield chunk

    async def wait_idle(self) -> None:
        """Wait for replies whose stream was closed before they finished."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def cancel(self, session_id: str) -> bool:
        """Stop the active orchestration after its current turn and any pending retry."""
        active = self._active.get(session_id)
        if active is None:
            return False
        message_id, event = active
        event.set()
        self.delivery.cancel(message_id)
        return True

    async def drain_offline_queue(self) -> List[str]:
        async def resolve(message_id: str) -> Optional[Operation]:
            session_id = await self._session_for(message_id)
            if session_id is None:
                return None
            transcript = await self._transcript(session_id)
            if transcript.get(message_id) is None:
                return None
            return self._operation(transcript, message_id, asyncio.Event())

        delivered = await self.delivery.drain(resolve)
        if delivered:
            logger.info(f"Delivered {len(delivered)} queued message(s)")
        return delivered

    async def offline_queue(self) -> List[str]:
        return await self.delivery.offline_queue()

    # --- Session Management ---

    async def _ensure_session(self, session_id: str) -> None:
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        if any(s["session_id"] == session_id for s in sessions):
            return
        sessions.append({"session_id": session_id, "created_at": datetime.datetime.now().isoformat()})
        await self.store.save(SESSIONS_INDEX_KEY, sessions)

    async def create_session(self) -> Dict[str, Any]:
        """Creates a new session and returns its details."""
        session_id = str(uuid.uuid4())
        await self._ensure_session(session_id)
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        return next(s for s in sessions if s["session_id"] == session_id)

    async def list_sessions(self) -> List[Dict[str, Any]]:
        """Lists all sessions, newest first."""
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        return sorted(sessions, key=lambda s: s["created_at"], reverse=True)

    async def get_session_messages(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        """Messages for a session, or None if the session does not exist."""
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        if not any(s["session_id"] == session_id for s in sessions):
            return None
        transcript = await self._transcript(session_id)
        out = []
        for m in transcript.messages:
            rec = m.to_record()
            rec["delivery"]["description"] = m.delivery.description
            out.append(rec)
        return out

    async def delete_session(self, session_id: str) -> bool:
        """Deletes a session by its ID."""
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        remaining = [s for s in sessions if s["session_id"] != session_id]
        if len(remaining) == len(sessions):
            return False
        await self.store.save(SESSIONS_INDEX_KEY, remaining)
        await self.store.delete(transcript_key(session_id))
        transcript = self._transcripts.pop(session_id, None)
        if transcript is not None:
            for m in transcript.messages:
                self._message_sessions.pop(m.id, None)
        return True

    async def delete_all_sessions(self) -> int:
        """Deletes all sessions."""
        sessions = await self.store.load(SESSIONS_INDEX_KEY) or []
        for s in sessions:
            await self.delete_session(s["session_id"])
        return len(sessions)
