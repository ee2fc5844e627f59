"""Application Configuration.

This module provides a structured configuration system using Pydantic v2 settings.
Settings are organized into nested groups, one per concern of the proxy:
the upstream LLM endpoint, chat defaults, image inlining, uploads, the HTTP
server, logging and monitoring.

Environment variables use ``__`` as the nesting delimiter, e.g.::

    UPSTREAM__API_KEY=sk-...
    UPSTREAM__BASE_URL=https://dashscope.aliyuncs.com/compatible-mode/v1
    UPSTREAM__MODEL=qwen3-vl-plus
    SERVER__PORT=3001
    UPLOAD__PUBLIC_BASE_URL=https://chat.example.com
"""

from typing import List, Optional

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class UpstreamSettings(BaseModel):
    """OpenAI-compatible upstream endpoint."""

    api_key: SecretStr = SecretStr("")
    base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    model: str = "qwen3-vl-plus"

    # Budget for connecting and receiving response headers. Once the
    # stream is open there is no timeout; only explicit cancellation.
    timeout: float = 30.0

    # Skip DNS and connect to this address (TLS still verifies base_url's host)
    pinned_ip: Optional[str] = None

    user_agent: str = "chat-stream-proxy/1.0"


class ChatSettings(BaseModel):
    """Defaults applied to every upstream chat completion."""

    default_system_prompt: str = "You are a helpful assistant."
    temperature: float = 0.7
    max_tokens: int = 2000


class ImageSettings(BaseModel):
    """Image inlining bounds."""

    max_images_per_request: int = 6
    max_dimension: int = 1280
    jpeg_quality: int = 80


class UploadSettings(BaseModel):
    """Image upload storage."""

    directory: str = "./data/uploads"
    url_path: str = "/uploads"
    max_files: int = 10
    max_file_size: int = 5 * 1024 * 1024  # 5MB per file

    # Used to build absolute upload URLs; falls back to the request base URL
    public_base_url: Optional[str] = None


class ServerSettings(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: List[str] = ["*"]


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    log_dir: str = "./logs"
    log_file: str = "app.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB per file
    backup_count: int = 30
    json_format: bool = True


class MonitoringSettings(BaseModel):
    """Prometheus metrics."""

    metrics_enabled: bool = True


class Settings(BaseSettings):
    """Root application settings.

    Usage:
        from chatproxy.config import settings

        model = settings.upstream.model
        bound = settings.images.max_images_per_request
    """

    upstream: UpstreamSettings = UpstreamSettings()
    chat: ChatSettings = ChatSettings()
    images: ImageSettings = ImageSettings()
    upload: UploadSettings = UploadSettings()
    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()
    monitoring: MonitoringSettings = MonitoringSettings()

    # ============================================================
    # SHORTCUTS
    # ============================================================

    @property
    def upstream_model(self) -> str:
        return self.upstream.model

    @property
    def upstream_base_url(self) -> str:
        return self.upstream.base_url

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        env_nested_delimiter="__",
        extra="ignore",
    )


settings = Settings()
