"""Error taxonomy for the chat proxy.

Every error that can end a request before streaming starts derives from
``ChatProxyError`` and carries the HTTP status it maps to. The API layer
renders them uniformly as ``{"error": message}``.
"""

from typing import Optional


class ChatProxyError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidChatRequest(ChatProxyError):
    """Malformed client request; the upstream is never contacted."""

    status_code = 400


class UpstreamError(ChatProxyError):
    """Base class for failures talking to the upstream API."""

    error_type = "network"


class UpstreamHttpError(UpstreamError):
    """Upstream answered with a non-success status. The status is mirrored."""

    error_type = "http"

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"API error: {status_code}", status_code=status_code)
        self.body = body


class UpstreamDnsError(UpstreamError):
    error_type = "dns"
    status_code = 503

    def __init__(self, message: str = "DNS resolution failed, check network settings") -> None:
        super().__init__(message)


class UpstreamConnectionRefused(UpstreamError):
    error_type = "connection_refused"
    status_code = 503

    def __init__(self, message: str = "Connection refused, check network settings") -> None:
        super().__init__(message)


class UpstreamTimeout(UpstreamError):
    error_type = "timeout"
    status_code = 504

    def __init__(self, message: str = "Request timed out, please retry later") -> None:
        super().__init__(message)


class UpstreamNetworkError(UpstreamError):
    error_type = "network"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(f"Network error: {detail}")


class StreamNotFound(ChatProxyError):
    status_code = 404

    def __init__(self, stream_id: str) -> None:
        super().__init__("Stream not found")
        self.stream_id = stream_id


class ImageProcessingError(ChatProxyError):
    """A single image could not be inlined. Never escapes the inliner."""

    status_code = 422


class UploadRejected(ChatProxyError):
    status_code = 400
