import asyncio

import pytest

from trainer_service.core.types import ConversationMessage, DeliveryStatus, Role
from trainer_service.protocol.orchestration.transcript import Transcript


@pytest.mark.asyncio
async def test_writer_persists_and_load_restores(store):
    transcript = Transcript("c1", store)
    async with transcript.writer():
        msg = transcript.append(ConversationMessage(role=Role.USER, content="hi"))
    loaded = await Transcript.load("c1", store)
    assert [m.id for m in loaded.messages] == [msg.id]
    assert loaded.get(msg.id).delivery == DeliveryStatus.sent()


@pytest.mark.asyncio
async def test_writers_are_exclusive():
    transcript = Transcript("c1")
    order = []

    async def write(tag):
        async with transcript.writer():
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(write("a"), write("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_post_from_another_thread_runs_on_writer_loop():
    transcript = Transcript("c1")
    async with transcript.writer():
        msg = transcript.append(ConversationMessage(role=Role.ASSISTANT, content=""))
        await asyncio.to_thread(transcript.post, transcript.append_content, msg.id, "hello")
        await asyncio.sleep(0)
        assert transcript.get(msg.id).content == "hello"


@pytest.mark.asyncio
async def test_post_forwards_keyword_arguments():
    transcript = Transcript("c1")
    msg = transcript.append(ConversationMessage(role=Role.USER, content="hi", delivery=DeliveryStatus.sending()))
    transcript.post(transcript.update, msg.id, delivery=DeliveryStatus.sent())
    assert transcript.get(msg.id).delivery == DeliveryStatus.sent()

    async with transcript.writer():
        await asyncio.to_thread(transcript.post, transcript.update, msg.id, content="edited")
        await asyncio.sleep(0)
        assert transcript.get(msg.id).content == "edited"


@pytest.mark.asyncio
async def test_rollback_to_mark():
    transcript = Transcript("c1")
    transcript.append(ConversationMessage(role=Role.USER, content="keep"))
    mark = transcript.mark()
    transcript.append(ConversationMessage(role=Role.ASSISTANT, content="drop"))
    removed = transcript.rollback(mark)
    assert [m.content for m in removed] == ["drop"]
    assert [m.content for m in transcript.messages] == ["keep"]


@pytest.mark.asyncio
async def test_unreadable_records_are_dropped(store):
    await store.save("conversations/c1", [{"role": "user"}, {"id": "x", "role": "user", "content": "ok"}])
    transcript = await Transcript.load("c1", store)
    assert [m.id for m in transcript.messages] == ["x"]
