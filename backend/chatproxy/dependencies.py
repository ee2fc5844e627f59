"""Central Dependency Injection Module.

Long-lived collaborators (stream registry, upstream connector, image
inliner, upload store) are built once per application by ``main.create_app``
and stored on ``app.state``. These dependencies hand them to route handlers,
which keeps them easy to override in tests.

Usage:
    from chatproxy.dependencies import get_chat_service

    @router.post("/endpoint")
    async def my_endpoint(service: ChatService = Depends(get_chat_service)):
        ...
"""

from fastapi import Depends, Request

from chatproxy.clients.upstream import UpstreamConnector
from chatproxy.config import Settings
from chatproxy.services.chat_service import ChatService
from chatproxy.services.request_transformer import RequestTransformer
from chatproxy.services.stream_registry import StreamRegistry
from chatproxy.services.upload_store import UploadStore


def get_settings(request: Request) -> Settings:
    """Get the settings the running app was built with."""
    return request.app.state.settings


def get_stream_registry(request: Request) -> StreamRegistry:
    return request.app.state.stream_registry


def get_upload_store(request: Request) -> UploadStore:
    return request.app.state.upload_store


def get_request_transformer(request: Request) -> RequestTransformer:
    return request.app.state.request_transformer


def get_upstream_connector(request: Request) -> UpstreamConnector:
    return request.app.state.upstream_connector


def get_chat_service(
    transformer: RequestTransformer = Depends(get_request_transformer),
    connector: UpstreamConnector = Depends(get_upstream_connector),
    registry: StreamRegistry = Depends(get_stream_registry),
) -> ChatService:
    """Per-request ChatService over the shared collaborators."""
    return ChatService(transformer, connector, registry)
