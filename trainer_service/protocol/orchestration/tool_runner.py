import re
from typing import Awaitable, Callable, Iterable, List, Optional

from trainer_service.core.types import DirectiveCall, DirectiveResult, ProcessedTurn
from trainer_service.protocol.orchestration.router import DirectiveRouter
from trainer_service.protocol.parsers.directives import DirectiveDetector
from trainer_service.core.logging import logger

CallHook = Callable[[DirectiveCall], Awaitable[None]]
ResultHook = Callable[[DirectiveCall, DirectiveResult], Awaitable[None]]

_MULTI_SPACE = re.compile(r" {2,}")


def format_result(result: DirectiveResult) -> str:
    if result.success:
        return f"Tool '{result.name}' executed successfully:\n{result.output}"
    return f"Tool '{result.name}' failed: {result.error or 'Unknown error'}"


def format_results(results: Iterable[DirectiveResult]) -> str:
    return "\n\n".join(format_result(r) for r in results)


def remove_spans(text: str, calls: List[DirectiveCall]) -> str:
    """Cut every call span out of `text`, last span first, then normalize spaces."""
    for call in sorted(calls, key=lambda c: c.start, reverse=True):
        text = text[: call.start] + text[call.end :]
    return _MULTI_SPACE.sub(" ", text).strip()


class ToolRunner:
    """Detect directives in a response and execute them one at a time, in source order."""

    def __init__(self, detector: DirectiveDetector, router: DirectiveRouter):
        self.detector = detector
        self.router = router

    async def process(
        self,
        text: str,
        on_started: Optional[CallHook] = None,
        on_completed: Optional[ResultHook] = None,
    ) -> ProcessedTurn:
        calls = self.detector.detect(text)
        if not calls:
            return ProcessedTurn(cleaned_text=_MULTI_SPACE.sub(" ", text).strip(), had_directives=False)

        logger.info(f"Executing {len(calls)} directive(s): {[c.name for c in calls]}")
        results: List[DirectiveResult] = []
        for call in calls:
            if on_started:
                await on_started(call)
            result = await self.router.route(call)
            results.append(result)
            logger.info(f"Directive '{call.name}' success={result.success}")
            if on_completed:
                await on_completed(call, result)

        return ProcessedTurn(
            cleaned_text=remove_spans(text, calls),
            had_directives=True,
            results=tuple(results),
        )
