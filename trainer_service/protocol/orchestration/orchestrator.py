import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from trainer_service.core.errors import TransportError
from trainer_service.core.interfaces import ModelService
from trainer_service.core.types import (
    ConversationMessage,
    DirectiveCall,
    DirectiveResult,
    MessageState,
    ModelReply,
    Role,
    StreamEvent,
    TurnState,
)
from trainer_service.protocol.orchestration.streaming import StreamingCoordinator
from trainer_service.protocol.orchestration.tool_runner import ToolRunner, format_results
from trainer_service.protocol.orchestration.transcript import Transcript
from trainer_service.core.logging import logger

FALLBACK_RESPONSE = "I've processed your request, but encountered an issue generating a response. Please try again."
DEFAULT_MAX_TURNS = 5

EventSink = Callable[[StreamEvent, Dict[str, Any]], None]


def synthesize_from_results(results: Sequence[DirectiveResult]) -> str:
    """Stand-in reply built from the latest directive results when the model sends nothing back."""
    lines: List[str] = []
    for r in results:
        if not r.success:
            continue
        # skip "[Section]" headers, keep the first informative line
        informative = [ln.strip() for ln in r.output.splitlines() if ln.strip() and not ln.strip().startswith("[")]
        if informative:
            first = informative[0]
            lines.append(first if first.startswith("•") else f"• {first}")
    if lines:
        return "I've completed the requested actions:\n\n" + "\n".join(lines)
    failures = [r for r in results if not r.success]
    if failures:
        detail = "; ".join(f"{r.name}: {r.error or 'Unknown error'}" for r in failures)
        return f"I wasn't able to complete everything you asked for ({detail})."
    return "Great! I've completed the requested actions and everything is set up for you."


@dataclass
class OrchestrationResult:
    message: ConversationMessage
    turns: int
    had_directives: bool
    results: Tuple[DirectiveResult, ...] = field(default_factory=tuple)
    cancelled: bool = False
    hit_turn_cap: bool = False


class TurnOrchestrator:
    """
    Drives one user message through as many model turns as its directives need.

    Turn 1 streams (falling back to a plain completion on transport failure);
    follow-up turns are plain completions that see the formatted results of
    the previous turn. The loop stops on the first directive-free reply or
    after `max_turns`, and can be cancelled between turns.

    The caller must hold `transcript.writer()`. If a transport error escapes,
    every message appended by this run is rolled back before re-raising so a
    retry starts from a clean transcript.
    """

    def __init__(
        self,
        model: ModelService,
        tool_runner: ToolRunner,
        streaming: Optional[StreamingCoordinator] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        fallback_response: str = FALLBACK_RESPONSE,
        emit: Optional[EventSink] = None,
    ):
        self.model = model
        self.tool_runner = tool_runner
        self.streaming = streaming if streaming is not None else StreamingCoordinator(model)
        self.max_turns = max(1, int(max_turns))
        self.fallback_response = fallback_response
        self.emit = emit
        self.state = TurnState.IDLE

    def _emit(self, kind: StreamEvent, data: Dict[str, Any]) -> None:
        if self.emit is not None:
            self.emit(kind, data)

    def _set_state(self, state: TurnState) -> None:
        if state != self.state:
            logger.debug(f"Turn state {self.state} -> {state}")
            self.state = state
            self._emit(StreamEvent.STATE, {"state": str(state)})

    async def run(
        self,
        transcript: Transcript,
        user_message_id: str,
        system_prompt: str,
        cancel: Optional[asyncio.Event] = None,
    ) -> OrchestrationResult:
        mark = transcript.mark()
        try:
            return await self._run(transcript, user_message_id, system_prompt, cancel)
        except BaseException:
            removed = transcript.rollback(mark)
            if removed:
                logger.warning(f"Orchestration for {user_message_id} aborted; rolled back {len(removed)} message(s)")
            raise
        finally:
            self._set_state(TurnState.IDLE)

    async def _run(
        self,
        transcript: Transcript,
        user_id: str,
        system_prompt: str,
        cancel: Optional[asyncio.Event],
    ) -> OrchestrationResult:
        self._set_state(TurnState.PREPARING_RESPONSE)
        turns = 0
        had_directives = False
        all_results: List[DirectiveResult] = []
        last_results: Tuple[DirectiveResult, ...] = ()
        last_msg: Optional[ConversationMessage] = None
        cancelled = False
        finished = False

        while turns < self.max_turns:
            if turns and cancel is not None and cancel.is_set():
                logger.info(f"Orchestration for {user_id} cancelled after {turns} turn(s)")
                cancelled = True
                break
            turns += 1
            logger.info(f"Turn {turns}/{self.max_turns} for message {user_id}")

            if turns == 1:
                msg, reply = await self._first_turn(transcript, user_id, system_prompt)
            else:
                msg, reply = await self._follow_up_turn(transcript, user_id, system_prompt, last_results)

            self._set_state(TurnState.DETECTING_CALLS)
            processed = await self.tool_runner.process(
                reply.content,
                on_started=self._on_call_started,
                on_completed=self._on_call_completed,
            )
            last_msg = transcript.update(msg.id, content=processed.cleaned_text, state=MessageState.COMPLETED)

            if not processed.had_directives:
                finished = True
                break

            had_directives = True
            last_results = processed.results
            all_results.extend(processed.results)
            self._emit(StreamEvent.MESSAGE, last_msg.to_record())
            system_msg = transcript.append(
                ConversationMessage(
                    role=Role.SYSTEM,
                    content=format_results(processed.results),
                    reply_to=user_id,
                )
            )
            self._emit(StreamEvent.MESSAGE, system_msg.to_record())

        hit_cap = not finished and not cancelled
        if hit_cap:
            logger.warning(f"Turn cap ({self.max_turns}) reached for message {user_id}; forcing finalization")

        final = self._finalize(transcript, user_id, last_msg)
        return OrchestrationResult(
            message=final,
            turns=turns,
            had_directives=had_directives,
            results=tuple(all_results),
            cancelled=cancelled,
            hit_turn_cap=hit_cap,
        )

    async def _first_turn(
        self, transcript: Transcript, user_id: str, system_prompt: str
    ) -> Tuple[ConversationMessage, ModelReply]:
        msg = transcript.append(
            ConversationMessage(role=Role.ASSISTANT, content="", state=MessageState.STREAMING, reply_to=user_id)
        )
        history = transcript.history_for_model(user_id)
        registry = self.tool_runner.router.registry

        def on_delta(delta: str) -> None:
            transcript.append_content(msg.id, delta)
            self._emit(StreamEvent.TEXT, {"message_id": msg.id, "delta": delta})

        def on_reasoning(delta: str) -> None:
            self._emit(StreamEvent.THINK, {"message_id": msg.id, "delta": delta})

        def on_directive(name: str) -> None:
            self._emit(StreamEvent.DIRECTIVE_DETECTED, {"name": name, "description": registry.describe(name)})

        self._set_state(TurnState.STREAMING)
        reply: Optional[ModelReply] = None
        try:
            outcome = await self.streaming.stream(
                system_prompt,
                history,
                on_content=lambda d: transcript.post(on_delta, d),
                on_reasoning=lambda d: transcript.post(on_reasoning, d),
                on_directive=lambda n: transcript.post(on_directive, n),
            )
            reply = ModelReply(content=outcome.text, reasoning=outcome.reasoning, status=outcome.reply.status)
        except TransportError as e:
            logger.warning(f"Streaming failed ({e.reason}): {e}; falling back to non-streaming")

        if reply is None or not reply.ok:
            if reply is not None:
                logger.warning("Stream ended without content; retrying turn without streaming")
            # drop any partially rendered text before the replacement reply lands
            transcript.update(msg.id, content="")
            self._set_state(TurnState.NON_STREAMING)
            reply = await self.model.complete(system_prompt, history)

        msg = transcript.update(msg.id, content=reply.content, reasoning=reply.reasoning) or msg
        return msg, reply

    async def _follow_up_turn(
        self,
        transcript: Transcript,
        user_id: str,
        system_prompt: str,
        last_results: Sequence[DirectiveResult],
    ) -> Tuple[ConversationMessage, ModelReply]:
        self._set_state(TurnState.NON_STREAMING)
        history = transcript.history_for_model(user_id)
        reply = await self.model.complete(system_prompt, history)
        if not reply.ok:
            logger.warning(f"Model returned no content on follow-up for {user_id}; synthesizing from results")
            reply = ModelReply(content=synthesize_from_results(last_results), reasoning=reply.reasoning)
        msg = transcript.append(
            ConversationMessage(
                role=Role.ASSISTANT,
                content=reply.content,
                state=MessageState.STREAMING,
                reasoning=reply.reasoning,
                reply_to=user_id,
            )
        )
        return msg, reply

    async def _on_call_started(self, call: DirectiveCall) -> None:
        self._set_state(TurnState.EXECUTING_TOOLS)
        self._emit(StreamEvent.TOOL_STARTED, {"name": call.name, "parameters": {k: str(v) for k, v in call.parameters.items()}})

    async def _on_call_completed(self, call: DirectiveCall, result: DirectiveResult) -> None:
        self._emit(StreamEvent.TOOL_COMPLETED, result.to_record())

    def _finalize(
        self, transcript: Transcript, user_id: str, last_msg: Optional[ConversationMessage]
    ) -> ConversationMessage:
        self._set_state(TurnState.FINALIZING)
        if last_msg is None:
            final = transcript.append(
                ConversationMessage(role=Role.ASSISTANT, content=self.fallback_response, reply_to=user_id)
            )
        else:
            content = last_msg.content if last_msg.content.strip() else self.fallback_response
            final = transcript.update(last_msg.id, content=content, state=MessageState.COMPLETED) or last_msg
        self._emit(StreamEvent.MESSAGE, final.to_record())
        return final
