import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from chatproxy.core.errors import InvalidChatRequest
from chatproxy.dependencies import get_chat_service, get_stream_registry
from chatproxy.models.schemas import StopRequest, StopResponse
from chatproxy.services.chat_service import ChatService, parse_chat_payload
from chatproxy.services.stream_registry import StreamRegistry
from chatproxy.services.stream_relay import StreamRelay

router = APIRouter()

STREAM_ID_HEADER = "X-Stream-Id"


class RelayStreamingResponse(StreamingResponse):
    """Streams a relay and always releases it, even if the body never started."""

    def __init__(self, relay: StreamRelay, **kwargs) -> None:
        super().__init__(relay.__aiter__(), **kwargs)
        self.relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.relay.close()


@router.post("", summary="Stream a chat completion")
async def chat(
    request: Request,
    service: ChatService = Depends(get_chat_service),
    registry: StreamRegistry = Depends(get_stream_registry),
):
    """
    Forward a conversation turn to the upstream model and stream the reply.

    JSON body: {"messages": [{"role": "...", "content": "..."}], "conversationId": "...", "images": ["..."]}

    The response is ``text/event-stream`` with frames ``data: {"content": "..."}``
    and a final ``data: [DONE]``. The stream id needed by ``/chat/stop`` is in the
    ``X-Stream-Id`` header. Failures before streaming starts return ``{"error": "..."}``.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidChatRequest("Invalid JSON body")

    payload = parse_chat_payload(body)
    handle = await service.open_stream(payload)

    return RelayStreamingResponse(
        StreamRelay(handle, registry),
        media_type="text/event-stream",
        headers={
            STREAM_ID_HEADER: handle.id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/stop", response_model=StopResponse, summary="Stop an in-flight stream")
async def stop_stream(
    body: StopRequest,
    service: ChatService = Depends(get_chat_service),
) -> StopResponse:
    """Cancel a stream by the id from the ``X-Stream-Id`` header. 404 if unknown."""
    await service.stop(body.stream_id)
    return StopResponse()
