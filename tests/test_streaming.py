"""
Streaming transport tests: SSE decoding and ordered relay
"""
import json

import pytest

from nexus_records.errors import StreamInterrupted, TransportError
from nexus_records.llm_api.streaming import (
    StreamState,
    decode_sse_line,
    iter_sse_deltas,
    relay_stream,
)


async def _agen(items):
    for item in items:
        if isinstance(item, Exception):
            raise item
        yield item


def _data(text):
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}, ensure_ascii=False)


class TestDecodeLine:
    """Single-line decoding"""

    def test_delta(self):
        event = decode_sse_line(_data("你好"))
        assert event.delta == "你好"
        assert not event.done

    def test_sentinel(self):
        assert decode_sse_line("data: [DONE]").done

    @pytest.mark.parametrize("line", [
        "",
        ": keep-alive",
        "event: ping",
        "data: {\"choices\": [{\"delta\": {\"cont",
        "data: not json",
    ])
    def test_skipped_lines(self, line):
        assert decode_sse_line(line) is None

    def test_role_only_delta_is_empty(self):
        event = decode_sse_line('data: {"choices": [{"delta": {"role": "assistant"}}]}')
        assert event.delta == ""


class TestIterDeltas:
    """Line stream to delta stream"""

    @pytest.mark.asyncio
    async def test_skips_malformed_and_stops_at_sentinel(self):
        lines = [_data("A"), "data: {broken", "", _data("B"), "data: [DONE]", _data("ignored")]
        deltas = [d async for d in iter_sse_deltas(_agen(lines))]
        assert deltas == ["A", "B"]

    @pytest.mark.asyncio
    async def test_missing_sentinel_interrupts(self):
        received = []
        with pytest.raises(StreamInterrupted) as excinfo:
            async for delta in iter_sse_deltas(_agen([_data("A"), _data("B")])):
                received.append(delta)
        assert received == ["A", "B"]
        assert excinfo.value.partial_text == "AB"


class TestRelay:
    """Ordered delivery to a sink"""

    @pytest.mark.asyncio
    async def test_chunks_delivered_in_order(self):
        seen = []
        outcome = await relay_stream(_agen(["A", "B", "C"]), seen.append)
        assert outcome.state == StreamState.COMPLETE
        assert outcome.text == "ABC"
        assert seen == ["A", "B", "C"]
        assert outcome.delta_count == 3

    @pytest.mark.asyncio
    async def test_async_sink(self):
        seen = []

        async def sink(delta):
            seen.append(delta)

        outcome = await relay_stream(_agen(["x", "y"]), sink)
        assert outcome.ok
        assert seen == ["x", "y"]

    @pytest.mark.asyncio
    async def test_without_sink(self):
        outcome = await relay_stream(_agen(["x", "", "y"]))
        assert outcome.text == "xy"

    @pytest.mark.asyncio
    async def test_interrupted_stream_keeps_partial_text(self):
        outcome = await relay_stream(_agen(["A", StreamInterrupted("cut", partial_text="A")]))
        assert outcome.state == StreamState.FAILED
        assert outcome.interrupted
        assert outcome.text == "A"

    @pytest.mark.asyncio
    async def test_transport_error_status(self):
        outcome = await relay_stream(_agen([TransportError("denied", status_code=401)]))
        assert not outcome.ok
        assert outcome.status_code == 401
        assert outcome.text == ""
