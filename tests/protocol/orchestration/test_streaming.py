import pytest

from trainer_service.core.types import StreamMode
from trainer_service.protocol.orchestration.streaming import StreamingCoordinator, _marker_prefix_len
from tests.fakes import FakeModelService


async def run_stream(text, chunk_size=5):
    rendered, directives = [], []
    model = FakeModelService(stream=[text], chunk_size=chunk_size)
    outcome = await StreamingCoordinator(model).stream(
        "sys", [], on_content=rendered.append, on_directive=directives.append
    )
    return outcome, "".join(rendered), directives


def test_marker_prefix_len():
    assert _marker_prefix_len("hello [") == 1
    assert _marker_prefix_len("hello [TOOL_C") == 7
    assert _marker_prefix_len("hello") == 0
    assert _marker_prefix_len("[TOOL_CALL:") == 0


@pytest.mark.asyncio
async def test_plain_text_stays_live():
    outcome, rendered, directives = await run_stream("Three sets of ten reps.")
    assert outcome.state.mode == StreamMode.LIVE
    assert rendered == "Three sets of ten reps."
    assert outcome.text == rendered
    assert directives == []


@pytest.mark.asyncio
async def test_switches_to_buffering_at_marker():
    outcome, rendered, directives = await run_stream("Hello there [TOOL_CALL: get_status] ok")
    assert outcome.state.mode == StreamMode.BUFFERING
    assert rendered == "Hello there "
    assert outcome.text == "Hello there [TOOL_CALL: get_status] ok"
    assert directives == ["get_status"]


@pytest.mark.asyncio
async def test_marker_split_across_tokens_is_never_rendered():
    outcome, rendered, _ = await run_stream("Ok [TOOL_CALL: A]", chunk_size=1)
    assert outcome.state.mode == StreamMode.BUFFERING
    assert rendered == "Ok "
    assert "[" not in rendered


@pytest.mark.asyncio
async def test_partial_marker_that_diverges_is_flushed():
    outcome, rendered, _ = await run_stream("Costs [5] dollars [TO", chunk_size=1)
    assert outcome.state.mode == StreamMode.LIVE
    assert rendered == "Costs [5] dollars [TO"


@pytest.mark.asyncio
async def test_directive_announced_once():
    _, _, directives = await run_stream("[TOOL_CALL: A] [TOOL_CALL: B]")
    assert directives == ["A"]
