"""
Chat Service - request validation, upstream connection and stream bookkeeping.

Pipeline for ``POST /chat``:
1. Validate the client body (messages, images)
2. Split it into preset system prompt, history and the new user turn
3. Build the upstream request (images inlined concurrently)
4. Open the upstream stream and register it under a fresh id

The caller then relays the registered handle to the client.
"""

import logging
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from chatproxy.clients.upstream import UpstreamConnector
from chatproxy.core.errors import InvalidChatRequest, StreamNotFound
from chatproxy.core.metrics import record_cancellation
from chatproxy.models.schemas import ChatPayload, ChatTurn
from chatproxy.services.request_transformer import RequestTransformer
from chatproxy.services.stream_registry import StreamHandle, StreamRegistry

logger = logging.getLogger(__name__)


def parse_chat_payload(body: Any) -> ChatPayload:
    """Validate a decoded JSON body.

    Raises:
        InvalidChatRequest: If ``messages`` is missing, empty or malformed
    """
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        raise InvalidChatRequest("Messages are required")
    try:
        return ChatPayload.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidChatRequest(f"Invalid request: {location}: {first.get('msg')}") from e


def split_messages(messages: List[ChatTurn]) -> Tuple[Optional[str], List[ChatTurn], str]:
    """Return (preset system prompt, history, new user text).

    A leading system turn is the preset prompt. The trailing turn must be
    the user's new message; everything in between is history.
    """
    if not messages or messages[-1].role != "user":
        raise InvalidChatRequest("The last message must be a user message")

    system_prompt: Optional[str] = None
    start = 0
    if messages[0].role == "system" and len(messages) > 1:
        system_prompt = messages[0].text()
        start = 1

    return system_prompt, list(messages[start:-1]), messages[-1].text()


class ChatService:
    def __init__(
        self,
        transformer: RequestTransformer,
        connector: UpstreamConnector,
        registry: StreamRegistry,
    ) -> None:
        self.transformer = transformer
        self.connector = connector
        self.registry = registry

    async def open_stream(self, payload: ChatPayload) -> StreamHandle:
        """Build, send and register; returns the registered handle."""
        system_prompt, history, user_text = split_messages(payload.messages)

        chat_request = await self.transformer.build(
            history=history,
            new_user_text=user_text,
            image_refs=payload.images,
            system_prompt=system_prompt,
        )
        logger.info(
            f"Sending chat request: model={chat_request.model} "
            f"turns={len(chat_request.turns)} images={chat_request.image_count} "
            f"conversation={payload.conversation_id or '-'}"
        )

        handle = await self.connector.connect(chat_request)
        self.registry.register(handle.id, handle)
        return handle

    async def stop(self, stream_id: str) -> None:
        """Cancel an in-flight stream.

        Raises:
            StreamNotFound: If the id is unknown or the stream already ended
        """
        found = await self.registry.cancel(stream_id)
        record_cancellation(found)
        if not found:
            raise StreamNotFound(stream_id)
