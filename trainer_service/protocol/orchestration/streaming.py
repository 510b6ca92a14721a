import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from trainer_service.core.interfaces import ModelService, TokenCallback
from trainer_service.core.types import ModelReply, StreamBufferState, StreamMode
from trainer_service.core.logging import logger
from trainer_service.protocol.parsers.directives import MARKER

DirectiveHook = Callable[[str], None]

_NAME_AFTER_MARKER = re.compile(r"\[TOOL_CALL:\s*([A-Za-z_][A-Za-z0-9_]*)[(\]]")


def _marker_prefix_len(text: str) -> int:
    """Length of the longest suffix of `text` that is a proper prefix of MARKER."""
    for k in range(min(len(MARKER) - 1, len(text)), 0, -1):
        if text.endswith(MARKER[:k]):
            return k
    return 0


@dataclass
class StreamOutcome:
    text: str
    reasoning: Optional[str]
    state: StreamBufferState
    reply: ModelReply


class StreamingCoordinator:
    """
    Runs one streaming completion and decides which tokens reach the live sink.

    In live mode each token goes straight to `on_content`, except a trailing
    fragment that could be the start of the directive marker; that fragment is
    held until the next token settles it. Once the accumulated text contains
    the marker the call flips to buffering for good and nothing more is
    forwarded. The full raw text is returned either way.
    """

    def __init__(self, model: ModelService):
        self.model = model

    async def stream(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        on_content: TokenCallback,
        on_reasoning: Optional[TokenCallback] = None,
        on_directive: Optional[DirectiveHook] = None,
    ) -> StreamOutcome:
        state = StreamBufferState()
        held = {"text": "", "announced": False}

        def forward(delta: str) -> None:
            if delta:
                state.rendered_so_far += delta
                on_content(delta)

        def handle_token(token: str) -> None:
            if not token:
                return
            state.raw_accumulated += token
            if state.mode == StreamMode.LIVE:
                if MARKER in state.raw_accumulated:
                    state.mode = StreamMode.BUFFERING
                    # forward whatever prose preceded the marker and was still held back
                    marker_at = state.raw_accumulated.find(MARKER)
                    forward(state.raw_accumulated[len(state.rendered_so_far):marker_at])
                    held["text"] = ""
                    logger.info(f"Directive marker seen mid-stream; buffering after {len(state.rendered_so_far)} chars")
                else:
                    pending = held["text"] + token
                    keep = _marker_prefix_len(pending)
                    forward(pending[: len(pending) - keep])
                    held["text"] = pending[len(pending) - keep :]
            if state.mode == StreamMode.BUFFERING and on_directive and not held["announced"]:
                m = _NAME_AFTER_MARKER.search(state.raw_accumulated)
                if m:
                    held["announced"] = True
                    on_directive(m.group(1))

        reply = await self.model.stream_complete(system_prompt, history, handle_token, on_reasoning)

        if state.mode == StreamMode.LIVE and held["text"]:
            forward(held["text"])
            held["text"] = ""

        # providers may deliver the final text without per-token callbacks
        text = state.raw_accumulated or reply.content
        if text and not state.raw_accumulated and MARKER not in text:
            forward(text)
        logger.debug(f"Stream finished: mode={state.mode}, raw={len(text)} chars, rendered={len(state.rendered_so_far)}")
        return StreamOutcome(text=text, reasoning=reply.reasoning, state=state, reply=reply)
