# nexus_records/llm_api/streaming.py

import inspect
import json
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import logfire
from pydantic import BaseModel

from nexus_records.errors import NexusError, StreamInterrupted

DONE_SENTINEL = "[DONE]"

Sink = Callable[[str], Union[None, Awaitable[None]]]


class StreamState(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"


class StreamOutcome(BaseModel):
    """Terminal state of one relayed stream."""
    state: StreamState
    text: str
    delta_count: int
    error: Optional[str] = None
    status_code: Optional[int] = None
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.state == StreamState.COMPLETE


class SSEEvent(BaseModel):
    """One decoded `data:` line. `done` marks the terminal sentinel."""
    done: bool = False
    delta: str = ""


def decode_sse_line(line: str) -> Optional[SSEEvent]:
    """
    Decode a single event-stream line from an OpenAI-compatible endpoint.

    Returns None for anything that carries no text: blank lines, comments,
    non-data fields, and malformed or partial JSON. Those are skipped, not
    treated as errors.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if payload == DONE_SENTINEL:
        return SSEEvent(done=True)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logfire.debug("skipping malformed stream line", line=line[:200])
        return None
    return SSEEvent(delta=_delta_text(data))


def _delta_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


async def iter_sse_deltas(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Turn raw event-stream lines into text deltas, in arrival order.
    Raises StreamInterrupted if the lines run out before the sentinel.
    """
    received = []
    async for line in lines:
        event = decode_sse_line(line)
        if event is None:
            continue
        if event.done:
            return
        if event.delta:
            received.append(event.delta)
            yield event.delta
    raise StreamInterrupted(
        "Stream ended before the completion marker.",
        partial_text="".join(received),
    )


async def relay_stream(deltas: AsyncIterator[str], sink: Optional[Sink] = None) -> StreamOutcome:
    """
    Deliver every delta to `sink` in receipt order while rebuilding the
    full text. Engine failures become a FAILED outcome carrying the partial
    text; cancellation propagates after the underlying stream is closed.
    """
    chunks = []
    with logfire.span("relay_stream"):
        try:
            async for delta in deltas:
                if not delta:
                    continue
                chunks.append(delta)
                if sink is not None:
                    result = sink(delta)
                    if inspect.isawaitable(result):
                        await result
        except NexusError as e:
            logfire.warn("stream failed", error=str(e), deltas=len(chunks))
            return StreamOutcome(
                state=StreamState.FAILED,
                text="".join(chunks),
                delta_count=len(chunks),
                error=str(e),
                status_code=getattr(e, "status_code", None),
                interrupted=isinstance(e, StreamInterrupted),
            )
        finally:
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                await aclose()

    return StreamOutcome(
        state=StreamState.COMPLETE,
        text="".join(chunks),
        delta_count=len(chunks),
    )
