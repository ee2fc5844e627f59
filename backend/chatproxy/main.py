import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from chatproxy import __version__
from chatproxy.api.routes import chat, health, upload
from chatproxy.api.routes.chat import STREAM_ID_HEADER
from chatproxy.clients.upstream import UpstreamConnector
from chatproxy.config import Settings, settings as default_settings
from chatproxy.core.errors import ChatProxyError
from chatproxy.core.logging import CorrelationIdMiddleware, setup_logging
from chatproxy.core.metrics import setup_metrics
from chatproxy.models.schemas import ErrorResponse
from chatproxy.services.image_inliner import ImageInliner
from chatproxy.services.request_transformer import RequestTransformer
from chatproxy.services.stream_registry import StreamRegistry
from chatproxy.services.upload_store import UploadStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    cfg: Settings = app.state.settings
    logger.info(
        f"Chat proxy started: model={cfg.upstream.model} upstream={cfg.upstream.base_url}"
    )

    yield

    # Shutdown: abort whatever is still streaming, then drop pooled connections
    await app.state.stream_registry.close_all()
    await app.state.upstream_connector.aclose()
    logger.info("Chat proxy stopped")


# OpenAPI tags for better documentation organization
tags_metadata = [
    {"name": "health", "description": "Health check endpoints"},
    {"name": "chat", "description": "Streaming chat and stream cancellation"},
    {"name": "upload", "description": "Image upload for multimodal turns"},
]


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatProxyError)
    async def chat_proxy_error_handler(request: Request, exc: ChatProxyError):
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            location = ".".join(str(part) for part in errors[0].get("loc", ()))
            message = f"Invalid request: {location}: {errors[0].get('msg')}"
        else:
            message = "Invalid request"
        return _error_response(400, message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error_response(500, str(exc) or "Internal server error")


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the application and its long-lived collaborators."""
    cfg = app_settings or default_settings

    setup_logging(
        log_level=cfg.logging.level,
        log_file=cfg.logging.log_file,
        log_dir=cfg.logging.log_dir,
        max_bytes=cfg.logging.max_bytes,
        backup_count=cfg.logging.backup_count,
        json_format=cfg.logging.json_format,
    )

    app = FastAPI(
        title="Chat Stream Proxy",
        version=__version__,
        lifespan=lifespan,
        description="""
Streaming chat proxy for OpenAI-compatible multimodal endpoints.

## Features
- **Streaming chat**: upstream SSE relayed as minimal `{"content": ...}` events
- **Multimodal**: uploaded images are inlined, resized and sent as base64 JPEG
- **Cancellation**: stop an in-flight stream by its `X-Stream-Id`
""",
        openapi_tags=tags_metadata,
    )

    upload_store = UploadStore(
        directory=cfg.upload.directory,
        url_path=cfg.upload.url_path,
        max_files=cfg.upload.max_files,
        max_file_size=cfg.upload.max_file_size,
    )
    inliner = ImageInliner(
        upload_store,
        max_dimension=cfg.images.max_dimension,
        jpeg_quality=cfg.images.jpeg_quality,
        max_images=cfg.images.max_images_per_request,
        public_base_url=cfg.upload.public_base_url,
    )

    app.state.settings = cfg
    app.state.stream_registry = StreamRegistry()
    app.state.upload_store = upload_store
    app.state.request_transformer = RequestTransformer(
        inliner,
        model=cfg.upstream.model,
        default_system_prompt=cfg.chat.default_system_prompt,
        temperature=cfg.chat.temperature,
        max_tokens=cfg.chat.max_tokens,
    )
    app.state.upstream_connector = UpstreamConnector(
        base_url=cfg.upstream.base_url,
        api_key=cfg.upstream.api_key.get_secret_value(),
        timeout=cfg.upstream.timeout,
        pinned_ip=cfg.upstream.pinned_ip,
        user_agent=cfg.upstream.user_agent,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.server.cors_origins,
        allow_credentials="*" not in cfg.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[STREAM_ID_HEADER],
    )
    app.add_middleware(CorrelationIdMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(chat.router, prefix="/chat", tags=["chat"])
    app.include_router(upload.router, prefix="/upload", tags=["upload"])

    app.mount(upload_store.url_path, StaticFiles(directory=upload_store.directory), name="uploads")

    setup_metrics(app, enabled=cfg.monitoring.metrics_enabled)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
