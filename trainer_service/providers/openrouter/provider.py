"""
provider.py - OpenAI-compatible chat completions client (OpenRouter by default).

- One request timeout for every call (network.timeout_sec)
- Streaming over SSE `data:` lines terminated by `[DONE]`
- HTTP statuses and httpx exceptions mapped onto the transport taxonomy
- Empty replies reported as ModelReply.missing(), not raised
- No API keys or full payloads in logs
"""
import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from trainer_service.core.errors import TransportAuthError
from trainer_service.core.interfaces import ModelService, TokenCallback
from trainer_service.core.types import ModelReply
from trainer_service.protocol.delivery.classifier import error_for_status, to_transport_error
from trainer_service.protocol.prompts import with_temporal_context

logger = logging.getLogger(__name__)


class OpenRouterModelService(ModelService):
    """
    Async client for an OpenAI-compatible /chat/completions endpoint.
    """

    def __init__(
        self,
        model: str = "openai/gpt-4o-mini",
        api_key: Optional[str] = None,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout_sec: float = 120.0,
        temperature: float = 0.7,
        include_reasoning: bool = True,
        temporal_context: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            model: Model identifier sent in every request
            api_key: Bearer token; falls back to OPENROUTER_API_KEY
            base_url: API root without the /chat/completions suffix
            timeout_sec: Timeout applied to every request
            temperature: Sampling temperature
            include_reasoning: Ask the provider to return reasoning tokens
            temporal_context: Append the current time to the system prompt
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.model = model
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY", "")
        self.url = base_url.rstrip("/") + "/chat/completions"
        self.timeout = httpx.Timeout(timeout_sec)
        self.temperature = temperature
        self.include_reasoning = include_reasoning
        self.temporal_context = temporal_context
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise TransportAuthError("No API key configured for the model provider")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, system_prompt: str, history: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
        prompt = with_temporal_context(system_prompt) if self.temporal_context else system_prompt
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": prompt}] + list(history),
            "temperature": self.temperature,
            "stream": stream,
        }
        if self.include_reasoning:
            body["include_reasoning"] = True
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response, body_text: str = "") -> None:
        if response.status_code < 400:
            return
        logger.error(f"Model API error: status={response.status_code} body={body_text[:200]!r}")
        raise error_for_status(
            response.status_code,
            f"Model API returned {response.status_code}",
            response.headers.get("Retry-After"),
        )

    async def complete(self, system_prompt: str, history: List[Dict[str, Any]]) -> ModelReply:
        headers = self._headers()
        try:
            async with self._client() as client:
                response = await client.post(self.url, headers=headers, json=self._body(system_prompt, history, False))
                self._raise_for_status(response, response.text)
                data = response.json()
        except (httpx.HTTPError, OSError) as e:
            raise to_transport_error(e) from e

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        content = message.get("content") or ""
        reasoning = message.get("reasoning") or None
        logger.info(f"Completion: model={self.model}, chars={len(content)}, finish={choice.get('finish_reason')}")
        if not content.strip():
            return ModelReply.missing(reasoning)
        return ModelReply(content=content, reasoning=reasoning)

    async def stream_complete(
        self,
        system_prompt: str,
        history: List[Dict[str, Any]],
        on_token: TokenCallback,
        on_reasoning: Optional[TokenCallback] = None,
    ) -> ModelReply:
        headers = self._headers()
        content_parts: List[str] = []
        reasoning_parts: List[str] = []
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.url, headers=headers, json=self._body(system_prompt, history, True)
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        self._raise_for_status(response, body)
                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        payload = line[len("data: "):].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            chunk = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.debug(f"Skipping malformed SSE chunk: {payload[:80]!r}")
                            continue
                        delta = ((chunk.get("choices") or [{}])[0]).get("delta") or {}
                        if delta.get("reasoning"):
                            reasoning_parts.append(delta["reasoning"])
                            if on_reasoning:
                                on_reasoning(delta["reasoning"])
                        if delta.get("content"):
                            content_parts.append(delta["content"])
                            on_token(delta["content"])
        except (httpx.HTTPError, OSError) as e:
            raise to_transport_error(e) from e

        content = "".join(content_parts)
        reasoning = "".join(reasoning_parts) or None
        logger.info(f"Stream complete: model={self.model}, chars={len(content)}")
        if not content.strip():
            return ModelReply.missing(reasoning)
        return ModelReply(content=content, reasoning=reasoning)
