"""Structured JSON logging with correlation IDs and file rotation.

Every request gets a correlation id (taken from ``X-Correlation-ID`` or
generated) that is attached to each log line written while the request,
and the stream it opens, is being served.

Streaming responses are long-lived, so the request line is logged when the
response body has finished rather than when headers go out; its duration
covers the whole relayed stream.

Usage:
    from chatproxy.core.logging import get_logger, setup_logging

    setup_logging(json_format=False)

    logger = get_logger(__name__)
    logger.info("Stream opened", extra={"stream_id": "1718000000000-k3j2h1"})
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# LogRecord attributes that are not user-supplied ``extra`` fields
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "PIL")

_PLAIN_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_var.get()


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Warnings and above carry their source location; ``extra`` fields are
    copied through as top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.pathname}:{record.lineno} ({record.funcName})"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        return json.dumps(entry, default=str, ensure_ascii=False)


class CorrelationIdMiddleware:
    """ASGI middleware that scopes a correlation id to each HTTP request.

    The id is echoed in the ``X-Correlation-ID`` response header. The
    request is logged once the last body chunk has been sent.
    """

    HEADER_NAME = "X-Correlation-ID"

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_headers = dict(scope.get("headers") or [])
        raw_id = request_headers.get(self.HEADER_NAME.lower().encode("latin-1"))
        correlation_id = raw_id.decode("latin-1") if raw_id else str(uuid.uuid4())

        token = correlation_id_var.set(correlation_id)
        started = time.perf_counter()
        status_code = 500

        async def send_with_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message)[self.HEADER_NAME] = correlation_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        finally:
            log_request(
                scope["method"],
                scope["path"],
                status_code,
                (time.perf_counter() - started) * 1000,
            )
            correlation_id_var.reset(token)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps the correlation id into ``extra``."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        correlation_id = get_correlation_id()
        if correlation_id:
            kwargs["extra"] = {"correlation_id": correlation_id, **kwargs.get("extra", {})}
        return msg, kwargs


_loggers: Dict[str, ContextLogger] = {}


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger for the given module (cached per name)."""
    if name not in _loggers:
        _loggers[name] = ContextLogger(logging.getLogger(name), {})
    return _loggers[name]


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_dir: str = "./logs",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 30,
    json_format: bool = True,
) -> None:
    """Configure the root logger with a console and a rotating file handler.

    Args:
        log_level: Minimum log level name
        log_file: Log filename inside ``log_dir`` (default: app.log)
        log_dir: Directory for log files, created if missing
        max_bytes: Size at which the file rotates
        backup_count: Rotated files to keep
        json_format: JSON lines if True, otherwise a human-readable format
    """
    file_path = Path(log_dir) / (log_file or "app.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(_PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            file_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        ),
    ]

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging configured",
        extra={"log_level": log_level, "log_file": str(file_path), "json_format": json_format},
    )


def _log_event(channel: str, level: int, message: str, **fields: Any) -> None:
    if "duration_ms" in fields:
        fields["duration_ms"] = round(fields["duration_ms"], 2)
    get_logger(channel).log(level, message, extra=fields)


def log_request(method: str, path: str, status_code: int, duration_ms: float) -> None:
    """Log a finished HTTP request; 4xx as warning, 5xx as error."""
    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    _log_event(
        "http.request",
        level,
        f"{method} {path} {status_code}",
        http_method=method,
        http_path=path,
        http_status=status_code,
        duration_ms=duration_ms,
    )


def log_upstream_request(
    model: str,
    turns: int,
    images: int,
    duration_ms: float,
    status_code: Optional[int] = None,
) -> None:
    """Log an upstream chat completion request once headers have arrived."""
    _log_event(
        "upstream.request",
        logging.INFO,
        "Upstream request answered",
        model=model,
        turns=turns,
        images=images,
        upstream_status=status_code,
        duration_ms=duration_ms,
    )


def log_stream_finished(stream_id: str, outcome: str, events: int, duration_ms: float) -> None:
    """Log the end of a relayed stream."""
    level = logging.WARNING if outcome == "error" else logging.INFO
    _log_event(
        "stream.relay",
        level,
        f"Stream {stream_id} {outcome}",
        stream_id=stream_id,
        outcome=outcome,
        events=events,
        duration_ms=duration_ms,
    )
