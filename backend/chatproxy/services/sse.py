"""
Line-oriented Server-Sent-Events decoder for upstream chat completion streams.

Upstream bytes arrive in arbitrary chunks. ``decode_sse_chunk`` is a pure
function over ``(buffer, chunk) -> (events, buffer)``: it splits on ``\\n``
at the byte level, keeps the trailing incomplete line as the new buffer and
turns every complete ``data:`` line into at most one event.

Only two event kinds leave the decoder:
- ``ContentDelta``: incremental text from ``choices[0].delta.content``
- ``StreamDone``: the literal ``[DONE]`` terminal marker

Anything else (comments, ``event:``/``id:`` fields, deltas without text,
malformed JSON) produces no event.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
DATA_FIELD = b"data:"


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class StreamDone:
    pass


SSEEvent = Union[ContentDelta, StreamDone]


def _extract_delta_text(payload: str) -> Optional[str]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Dropping malformed upstream event: {payload[:200]!r}")
        return None

    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def parse_sse_line(line: bytes) -> Optional[SSEEvent]:
    """Decode one complete line (without its newline) into an event."""
    if line.endswith(b"\r"):
        line = line[:-1]
    if not line.startswith(DATA_FIELD):
        return None

    value = line[len(DATA_FIELD):]
    if value.startswith(b" "):
        value = value[1:]

    payload = value.decode("utf-8", errors="replace")
    if payload == DONE_MARKER:
        return StreamDone()

    text = _extract_delta_text(payload)
    if text is None:
        return None
    return ContentDelta(text)


def decode_sse_chunk(buffer: bytes, chunk: bytes) -> Tuple[List[SSEEvent], bytes]:
    """Feed a chunk into the line buffer.

    Args:
        buffer: Incomplete trailing line left over from previous chunks
        chunk: Newly received bytes

    Returns:
        (events decoded from every completed line, new buffer)
    """
    data = buffer + chunk
    lines = data.split(b"\n")
    remainder = lines.pop()

    events: List[SSEEvent] = []
    for line in lines:
        event = parse_sse_line(line)
        if event is not None:
            events.append(event)
    return events, remainder


def flush_sse_buffer(buffer: bytes) -> List[SSEEvent]:
    """Decode whatever is left in the buffer once the upstream has ended."""
    if not buffer:
        return []
    event = parse_sse_line(buffer)
    return [event] if event is not None else []


# =============================================================================
# CLIENT-FACING FRAMES
# =============================================================================

def encode_client_event(event: SSEEvent) -> str:
    if isinstance(event, StreamDone):
        return f"data: {DONE_MARKER}\n\n"
    return f"data: {json.dumps({'content': event.text}, ensure_ascii=False)}\n\n"


def encode_error_event(message: str) -> str:
    return f"data: {json.dumps({'error': message}, ensure_ascii=False)}\n\n"
