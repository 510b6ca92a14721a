import pytest

from trainer_service.core.types import CompletionStatus
from trainer_service.providers.scripted.provider import ScriptedModelService


@pytest.mark.asyncio
async def test_replays_script_then_echoes():
    model = ScriptedModelService(["[TOOL_CALL: get_current_time]", "It is late."], chunk_size=4)
    tokens = []
    first = await model.stream_complete("sys", [{"role": "user", "content": "time?"}], tokens.append)
    assert "".join(tokens) == first.content == "[TOOL_CALL: get_current_time]"
    assert (await model.complete("sys", [])).content == "It is late."
    echo = await model.complete("sys", [{"role": "user", "content": "thanks"}])
    assert echo.content == "You said: thanks"
    assert len(model.calls) == 3


@pytest.mark.asyncio
async def test_empty_history_is_missing_content():
    reply = await ScriptedModelService().complete("sys", [])
    assert reply.status == CompletionStatus.MISSING_CONTENT
