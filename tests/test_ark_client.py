"""
Raw chat-completions client tests (httpx MockTransport, no network)
"""
import json

import httpx
import pytest

from nexus_records.errors import MalformedResponse, StreamInterrupted, TransportError
from nexus_records.llm_api.ark_client import ArkEngine, completion_text, to_wire_messages
from nexus_records.llm_api.streaming import relay_stream
from nexus_records.schemas.engine_schema import EngineMessage, ImagePart, TextPart

MESSAGES = [
    EngineMessage.text("system", "系统指令"),
    EngineMessage(role="user", parts=[TextPart(text="请解析"), ImagePart(media_type="image/png", data=b"abc")]),
]


def _sse(*deltas, done=True):
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": d}}]}, ensure_ascii=False)
        for d in deltas
    ]
    lines.insert(1, ": keep-alive")
    lines.insert(2, "data: {truncated")
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode("utf-8")


def _engine(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ArkEngine("doubao-pro-32k", api_key="test-key", client=client)


class TestWireFormat:
    """Request rendering and response decoding"""

    def test_multimodal_message(self):
        wire = to_wire_messages(MESSAGES)
        assert wire[0] == {"role": "system", "content": "系统指令"}
        assert wire[1]["content"][1] == {
            "type": "image_url",
            "image_url": {"url": "data:image/png;base64,YWJj"},
        }

    def test_completion_text_shapes(self):
        assert completion_text({"choices": [{"message": {"content": "好"}}]}) == "好"
        assert completion_text({"output": {"text": "好"}}) == "好"
        with pytest.raises(MalformedResponse):
            completion_text({"choices": []})


class TestBuffered:
    """process()"""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "报告"}}]})

        response = await _engine(handler).process(MESSAGES)
        assert response.success and response.text == "报告"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["model"] == "doubao-pro-32k"
        assert "stream" not in seen["body"]

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "invalid api key"}})

        response = await _engine(handler).process(MESSAGES)
        assert not response.success
        assert response.error_type == "transport"
        assert response.status_code == 401
        assert response.error == "invalid api key"

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        response = await _engine(handler).process(MESSAGES)
        assert response.error_type == "malformed"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        response = await _engine(handler).process(MESSAGES)
        assert response.error_type == "transport"
        assert "connection refused" in response.error


class TestStreaming:
    """stream()"""

    @pytest.mark.asyncio
    async def test_deltas_in_order(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=_sse("A", "B", "C"))

        seen = []
        outcome = await relay_stream(_engine(handler).stream(MESSAGES), seen.append)
        assert outcome.ok
        assert seen == ["A", "B", "C"]
        assert outcome.text == "ABC"

    @pytest.mark.asyncio
    async def test_missing_sentinel(self):
        def handler(request):
            return httpx.Response(200, content=_sse("A", "B", done=False))

        received = []
        with pytest.raises(StreamInterrupted):
            async for delta in _engine(handler).stream(MESSAGES):
                received.append(delta)
        assert received == ["A", "B"]

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(429, json={"message": "rate limited"})

        with pytest.raises(TransportError) as excinfo:
            async for _ in _engine(handler).stream(MESSAGES):
                pass
        assert excinfo.value.status_code == 429
        assert "rate limited" in str(excinfo.value)
