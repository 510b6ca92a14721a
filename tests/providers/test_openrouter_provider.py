"""
OpenRouterModelService against httpx.MockTransport:
- plain completions and SSE streaming
- status codes mapped onto transport errors
- empty replies reported as missing content
"""
import json

import httpx
import pytest

from trainer_service.core.errors import (
    TransportAuthError,
    TransportNetworkError,
    TransportRateLimitError,
    TransportServerError,
)
from trainer_service.core.types import CompletionStatus
from trainer_service.providers.openrouter.provider import OpenRouterModelService

HISTORY = [{"role": "user", "content": "Plan my week"}]


def make_service(handler, **kwargs):
    return OpenRouterModelService(
        api_key="test-key",
        temporal_context=False,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def completion(content, reasoning=None):
    message = {"role": "assistant", "content": content}
    if reasoning:
        message["reasoning"] = reasoning
    return {"choices": [{"message": message, "finish_reason": "stop"}]}


def sse(*chunks):
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks] + ["data: [DONE]\n\n"]
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_complete_sends_system_prompt_and_history():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion("Sure.", reasoning="short plan"))

    reply = await make_service(handler).complete("You are a coach.", HISTORY)

    assert reply.content == "Sure."
    assert reply.reasoning == "short plan"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["messages"] == [{"role": "system", "content": "You are a coach."}] + HISTORY
    assert seen["body"]["stream"] is False


@pytest.mark.asyncio
async def test_complete_with_empty_content_is_missing():
    reply = await make_service(lambda r: httpx.Response(200, json=completion(""))).complete("sys", HISTORY)
    assert reply.status == CompletionStatus.MISSING_CONTENT
    assert not reply.ok


@pytest.mark.asyncio
async def test_stream_complete_pushes_tokens():
    body = sse(
        {"choices": [{"delta": {"reasoning": "thinking"}}]},
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
    )
    tokens, thoughts = [], []

    reply = await make_service(lambda r: httpx.Response(200, content=body)).stream_complete(
        "sys", HISTORY, tokens.append, thoughts.append
    )

    assert tokens == ["Hel", "lo"]
    assert thoughts == ["thinking"]
    assert reply.content == "Hello"
    assert reply.reasoning == "thinking"


@pytest.mark.asyncio
async def test_stream_skips_malformed_chunks():
    body = b"data: {not json}\n\n" + sse({"choices": [{"delta": {"content": "ok"}}]})
    tokens = []
    reply = await make_service(lambda r: httpx.Response(200, content=body)).stream_complete("sys", HISTORY, tokens.append)
    assert reply.content == "ok"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [(429, TransportRateLimitError), (401, TransportAuthError), (500, TransportServerError), (503, TransportServerError)],
)
async def test_status_codes_map_to_transport_errors(status, error):
    service = make_service(lambda r: httpx.Response(status, headers={"Retry-After": "2"}, json={"error": "x"}))
    with pytest.raises(error):
        await service.complete("sys", HISTORY)
    with pytest.raises(error):
        await service.stream_complete("sys", HISTORY, lambda t: None)


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    service = make_service(lambda r: httpx.Response(429, headers={"Retry-After": "2"}))
    with pytest.raises(TransportRateLimitError) as info:
        await service.complete("sys", HISTORY)
    assert info.value.retry_after == 2.0


@pytest.mark.asyncio
async def test_connection_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportNetworkError):
        await make_service(handler).complete("sys", HISTORY)


@pytest.mark.asyncio
async def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    service = OpenRouterModelService(api_key="", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(TransportAuthError):
        await service.complete("sys", HISTORY)


@pytest.mark.asyncio
async def test_temporal_context_is_appended():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion("ok"))

    service = OpenRouterModelService(api_key="k", transport=httpx.MockTransport(handler))
    await service.complete("You are a coach.", HISTORY)
    assert "[TEMPORAL_CONTEXT]" in seen["body"]["messages"][0]["content"]
