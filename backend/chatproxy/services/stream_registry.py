"""
In-flight stream registry.

The registry is the single source of truth for which upstream streams are
still active. Entries are removed exactly once: either by the relay when it
finishes or by an explicit cancel, whichever comes first. The loser of that
race finds the id already gone and does nothing.

All operations run on the event loop thread and contain no ``await`` between
lookup and removal, so a plain dict is safe without a lock.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def new_stream_id() -> str:
    """Time-based id with a random suffix, unique for the process lifetime."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass
class StreamHandle:
    """A live upstream response owned by the registry.

    ``response`` only needs ``aiter_bytes()``. If it also has an async
    ``aclose()`` the handle supports abort; otherwise cancellation is
    bookkeeping only and the relay notices it between chunks.
    """

    id: str
    response: Any
    cancelled: bool = False
    opened_at: float = field(default_factory=time.monotonic)

    def iter_bytes(self):
        return self.response.aiter_bytes()

    @property
    def supports_abort(self) -> bool:
        return callable(getattr(self.response, "aclose", None))

    async def abort(self) -> None:
        """Close the upstream response if the transport allows it."""
        if self.supports_abort:
            await self.response.aclose()


class StreamRegistry:
    """Maps stream ids to live handles."""

    def __init__(self) -> None:
        self._streams: Dict[str, StreamHandle] = {}

    def __len__(self) -> int:
        return len(self._streams)

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._streams

    def register(self, stream_id: str, handle: StreamHandle) -> None:
        if stream_id in self._streams:
            raise ValueError(f"Stream id already registered: {stream_id}")
        self._streams[stream_id] = handle
        logger.debug(f"Registered stream {stream_id} ({len(self._streams)} active)")

    def lookup(self, stream_id: str) -> Optional[StreamHandle]:
        return self._streams.get(stream_id)

    def deregister(self, stream_id: str) -> bool:
        """Remove an entry; returns False if it was already gone."""
        return self._streams.pop(stream_id, None) is not None

    def active_ids(self) -> List[str]:
        return list(self._streams)

    async def cancel(self, stream_id: str) -> bool:
        """Cancel a stream if it is still registered.

        Returns:
            True if an entry was found and removed, False otherwise.
        """
        handle = self._streams.pop(stream_id, None)
        if handle is None:
            return False

        handle.cancelled = True
        if handle.supports_abort:
            try:
                await handle.abort()
            except Exception as e:
                logger.warning(f"Abort of stream {stream_id} failed: {e}")
        logger.info(f"Cancelled stream {stream_id}")
        return True

    async def close_all(self) -> None:
        """Cancel everything still open (used at shutdown)."""
        for stream_id in self.active_ids():
            await self.cancel(stream_id)
