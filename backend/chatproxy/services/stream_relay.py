"""
Stream relay: upstream SSE bytes in, minimal client SSE frames out.

Per-stream lifecycle::

    OPEN -> (RECEIVING)* -> DONE
    OPEN -> ERROR -> DONE

- OPEN: upstream headers accepted, handle registered, id sent to the client
- RECEIVING: one iteration per upstream chunk; decoded events are forwarded
- ERROR: upstream failed mid-stream; one error frame is emitted
- DONE: terminal marker sent (exactly once), handle deregistered, upstream closed

The terminal marker is forwarded the first time upstream sends it and
suppressed afterwards, together with any content arriving after it. If
upstream never sends one, it is emitted when the upstream ends. Either way
it is always the last frame.

Cleanup (deregistration, upstream close, metrics) lives in ``close()``,
which is idempotent. The generator calls it on exit; the HTTP layer calls
it again after the response so a body that was never iterated still
releases its upstream connection.
"""

import logging
import time
from typing import AsyncIterator, List

from chatproxy.core.logging import log_stream_finished
from chatproxy.core.metrics import (
    record_stream_event,
    record_stream_finished,
    record_stream_opened,
)
from chatproxy.services.sse import (
    StreamDone,
    decode_sse_chunk,
    encode_client_event,
    encode_error_event,
    flush_sse_buffer,
)
from chatproxy.services.stream_registry import StreamHandle, StreamRegistry

logger = logging.getLogger(__name__)

STREAM_ERROR_MESSAGE = "Stream processing error"


class StreamRelay:
    """Relays one registered upstream stream to the client."""

    def __init__(self, handle: StreamHandle, registry: StreamRegistry) -> None:
        self.handle = handle
        self.registry = registry
        self.events_sent = 0
        self.outcome = "disconnected"
        self.closed = False
        self._buffer = b""
        self._done_sent = False
        record_stream_opened()

    def _frame(self, event) -> str:
        if isinstance(event, StreamDone):
            self._done_sent = True
            record_stream_event("done")
        else:
            record_stream_event("content")
        self.events_sent += 1
        return encode_client_event(event)

    def _frames(self, events) -> List[str]:
        # Nothing may follow the terminal marker
        frames = []
        for event in events:
            if self._done_sent:
                break
            frames.append(self._frame(event))
        return frames

    async def __aiter__(self) -> AsyncIterator[str]:
        handle = self.handle
        outcome = "completed"

        try:
            try:
                async for chunk in handle.iter_bytes():
                    events, self._buffer = decode_sse_chunk(self._buffer, chunk)
                    for frame in self._frames(events):
                        yield frame
                    if handle.cancelled:
                        break

                if handle.cancelled:
                    outcome = "cancelled"
                else:
                    for frame in self._frames(flush_sse_buffer(self._buffer)):
                        yield frame
                self._buffer = b""
            except Exception as e:
                if handle.cancelled:
                    # Abort from the stop endpoint closed the transport under us
                    outcome = "cancelled"
                elif not self._done_sent:
                    outcome = "error"
                    logger.error(f"Upstream stream {handle.id} failed: {e}")
                    record_stream_event("error")
                    self.events_sent += 1
                    yield encode_error_event(STREAM_ERROR_MESSAGE)
                else:
                    logger.debug(f"Upstream stream {handle.id} failed after completion: {e}")

            if not self._done_sent:
                yield self._frame(StreamDone())
            self.outcome = outcome
        finally:
            # Without a recorded outcome the client went away mid-stream
            await self.close()

    async def close(self) -> None:
        """Deregister, close the upstream and record the outcome. Safe to call twice."""
        if self.closed:
            return
        self.closed = True

        handle = self.handle
        self.registry.deregister(handle.id)
        try:
            await handle.abort()
        except Exception as e:
            logger.debug(f"Closing upstream for stream {handle.id} failed: {e}")
        record_stream_finished(self.outcome)
        log_stream_finished(
            handle.id,
            self.outcome,
            self.events_sent,
            (time.monotonic() - handle.opened_at) * 1000,
        )


def relay_stream(handle: StreamHandle, registry: StreamRegistry) -> AsyncIterator[str]:
    """Async iterator of client SSE frames for a registered handle."""
    return StreamRelay(handle, registry).__aiter__()
