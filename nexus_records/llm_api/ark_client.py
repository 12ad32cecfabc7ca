# nexus_records/llm_api/ark_client.py

"""
Direct client for OpenAI-compatible chat-completions endpoints
(Volcengine Ark / Doubao by default). Used when the pydantic-ai handler
is not wanted, and as the reference implementation of the streaming
wire contract: `data: {json}` lines terminated by `data: [DONE]`.
"""

import asyncio
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
import logfire
from aiolimiter import AsyncLimiter

from nexus_records.errors import MalformedResponse, TransportError
from nexus_records.llm_api.streaming import iter_sse_deltas
from nexus_records.schemas.engine_schema import EngineMessage, EngineResponse, ImagePart, TextPart

ARK_BASE_URL = "https://ark.cn-beijing.volces.com/api/v3"


def to_wire_messages(messages: Sequence[EngineMessage]) -> List[Dict[str, Any]]:
    """Render EngineMessages in the chat-completions multimodal format."""
    wire = []
    for message in messages:
        if all(isinstance(p, TextPart) for p in message.parts):
            wire.append({"role": message.role, "content": message.plain_text})
            continue
        content = []
        for part in message.parts:
            if isinstance(part, ImagePart):
                content.append({"type": "image_url", "image_url": {"url": part.data_url}})
            else:
                content.append({"type": "text", "text": part.text})
        wire.append({"role": message.role, "content": content})
    return wire


def provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def completion_text(payload: Any) -> str:
    """Pull the reply text out of a chat-completions body."""
    if not isinstance(payload, dict):
        raise MalformedResponse("Completion body is not a JSON object.")
    # the newer /responses shape puts the text under output.text
    output = payload.get("output")
    if isinstance(output, dict) and isinstance(output.get("text"), str):
        return output["text"]
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise MalformedResponse("Completion body has no choices.")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "") for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    raise MalformedResponse("Completion message has no text content.")


class ArkEngine:
    """
    Reasoning engine speaking the raw chat-completions protocol over httpx.

    :param model: Endpoint/model id sent in every request.
    :param api_key: Bearer token; falls back to ARK_API_KEY.
    :param base_url: API root; `/chat/completions` is appended.
    :param client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport here).
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        request_timeout: float = 120.0,
        stream_idle_timeout: float = 60.0,
        requests_per_minute: Optional[int] = None,
        temperature: float = 0.1,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.api_key = api_key or os.getenv("ARK_API_KEY")
        self.base_url = (base_url or ARK_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.stream_idle_timeout = stream_idle_timeout
        self.rate_limiter = (
            AsyncLimiter(requests_per_minute, 60) if requests_per_minute else None
        )
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(request_timeout, connect=10.0)
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(self, messages: Sequence[EngineMessage], stream: bool) -> Dict[str, Any]:
        body = {
            "model": self.model,
            "messages": to_wire_messages(messages),
            "temperature": self.temperature,
        }
        if stream:
            body["stream"] = True
        return body

    async def aclose(self) -> None:
        await self._client.aclose()

    async def process(self, messages: Sequence[EngineMessage]) -> EngineResponse:
        """Buffered call. Never raises for engine failures; see EngineResponse."""
        with logfire.span("ark_process", model=self.model):
            try:
                if self.rate_limiter:
                    async with self.rate_limiter:
                        text = await self._post(messages)
                else:
                    text = await self._post(messages)
                return EngineResponse(success=True, text=text)
            except TransportError as e:
                logfire.error("ark call failed", error=str(e), status_code=e.status_code)
                return EngineResponse(
                    success=False, error=str(e), error_type="transport", status_code=e.status_code
                )
            except MalformedResponse as e:
                logfire.error("ark response malformed", error=str(e))
                return EngineResponse(success=False, error=str(e), error_type="malformed")

    async def _post(self, messages: Sequence[EngineMessage]) -> str:
        try:
            response = await self._client.post(
                self.url, headers=self._headers(), json=self._body(messages, stream=False)
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e
        if response.status_code >= 400:
            raise TransportError(provider_error_message(response), status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedResponse("Completion body is not valid JSON.") from e
        return completion_text(payload)

    async def stream(self, messages: Sequence[EngineMessage]) -> AsyncIterator[str]:
        """
        Streaming call yielding text deltas in arrival order. Raises
        TransportError on HTTP failure or idle timeout and StreamInterrupted
        when the connection closes without the sentinel.
        """
        if self.rate_limiter:
            await self.rate_limiter.acquire()
        try:
            async with self._client.stream(
                "POST", self.url, headers=self._headers(), json=self._body(messages, stream=True)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TransportError(
                        provider_error_message(response), status_code=response.status_code
                    )
                deltas = iter_sse_deltas(response.aiter_lines())
                try:
                    while True:
                        try:
                            delta = await asyncio.wait_for(
                                deltas.__anext__(), timeout=self.stream_idle_timeout
                            )
                        except StopAsyncIteration:
                            break
                        yield delta
                finally:
                    await deltas.aclose()
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"No stream data for {self.stream_idle_timeout:g}s."
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Stream failed: {e}") from e
