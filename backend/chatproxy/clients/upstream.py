"""
Upstream connector for OpenAI-compatible chat completion APIs.

DNS and TLS identity are decoupled: the host name from ``base_url`` is
resolved to an IPv4 address (or taken from ``pinned_ip``) and the socket
connects to that address, while TLS SNI, certificate verification and the
``Host`` header all keep using the logical host name.

Only the connect + response-headers phase is bounded by ``timeout``. Once a
2xx response arrives the body is handed back unread inside a
``StreamHandle`` for the relay to consume.
"""

import asyncio
import ipaddress
import json
import logging
import socket
import time
from typing import Awaitable, Callable, Optional

import httpx

from chatproxy.core.errors import (
    UpstreamConnectionRefused,
    UpstreamDnsError,
    UpstreamError,
    UpstreamHttpError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from chatproxy.core.logging import log_upstream_request
from chatproxy.core.metrics import record_upstream_error, record_upstream_headers
from chatproxy.models.schemas import ChatRequest
from chatproxy.services.stream_registry import StreamHandle, new_stream_id

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[Optional[str]]]

_DNS_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
)
_REFUSED_HINTS = ("connection refused", "errno 111", "errno 61", "actively refused")


async def resolve_ipv4(host: str) -> Optional[str]:
    """Resolve ``host`` to its first IPv4 address using the system resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
    if not infos:
        return None
    return infos[0][4][0]


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def classify_network_error(exc: BaseException) -> UpstreamError:
    """Map a transport exception onto the upstream error taxonomy."""
    chain = []
    current: Optional[BaseException] = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__

    for err in chain:
        if isinstance(err, socket.gaierror):
            return UpstreamDnsError()
        if isinstance(err, ConnectionRefusedError):
            return UpstreamConnectionRefused()
        if isinstance(err, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)):
            return UpstreamTimeout()

    message = " ".join(str(err) for err in chain).lower()
    if any(hint in message for hint in _DNS_HINTS):
        return UpstreamDnsError()
    if any(hint in message for hint in _REFUSED_HINTS):
        return UpstreamConnectionRefused()
    return UpstreamNetworkError(str(exc) or type(exc).__name__)


class UpstreamConnector:
    """Opens streaming chat completion requests against the upstream API.

    Usage:
        connector = UpstreamConnector(base_url, api_key)
        handle = await connector.connect(chat_request)
        async for chunk in handle.iter_bytes():
            ...
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        pinned_ip: Optional[str] = None,
        user_agent: str = "chat-stream-proxy/1.0",
        resolver: Optional[Resolver] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = httpx.URL(f"{base_url.rstrip('/')}/chat/completions")
        self.host = self.endpoint.host
        self.api_key = api_key
        self.timeout = timeout
        self.pinned_ip = pinned_ip
        self.user_agent = user_agent
        self.resolver = resolver or resolve_ipv4

        # No read timeout: an open stream stays open until it ends or is cancelled
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=timeout))

    @property
    def host_header(self) -> str:
        if self.endpoint.port is None:
            return self.host
        return f"{self.host}:{self.endpoint.port}"

    async def resolve_target(self) -> str:
        """IP address to connect to; falls back to the host name itself."""
        if self.pinned_ip:
            return self.pinned_ip
        if _is_ip_literal(self.host):
            return self.host

        try:
            address = await self.resolver(self.host)
        except OSError as e:
            logger.warning(f"DNS resolution for {self.host} failed, using host name: {e}")
            return self.host

        if not address:
            logger.warning(f"No IPv4 address for {self.host}, using host name")
            return self.host
        logger.debug(f"Resolved {self.host} -> {address}")
        return address

    def build_request(self, request: ChatRequest, target: str) -> httpx.Request:
        url = self.endpoint.copy_with(host=target)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": self.user_agent,
            "Host": self.host_header,
        }
        extensions = {}
        if url.scheme == "https":
            # TLS server name and certificate check use the logical host
            extensions["sni_hostname"] = self.host

        body = json.dumps(request.to_upstream_payload(), ensure_ascii=False).encode("utf-8")
        return self.client.build_request(
            "POST",
            url,
            content=body,
            headers=headers,
            extensions=extensions,
        )

    async def connect(self, request: ChatRequest) -> StreamHandle:
        """Send the request and return a handle on the open event stream.

        Raises:
            UpstreamHttpError: Non-2xx status (body drained and discarded)
            UpstreamDnsError / UpstreamConnectionRefused / UpstreamTimeout /
            UpstreamNetworkError: Transport-level failures
        """
        try:
            target = await self.resolve_target()
            http_request = self.build_request(request, target)

            started = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self.client.send(http_request, stream=True),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as e:
                raise UpstreamTimeout() from e
            except httpx.TimeoutException as e:
                raise UpstreamTimeout() from e
            except (httpx.TransportError, OSError) as e:
                raise classify_network_error(e) from e

            duration = time.monotonic() - started
            record_upstream_headers(request.model, duration)
            log_upstream_request(
                request.model,
                len(request.turns),
                request.image_count,
                duration * 1000,
                response.status_code,
            )

            if not response.is_success:
                try:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                except httpx.HTTPError as e:
                    body = f"<error body unreadable: {e}>"
                finally:
                    await response.aclose()
                logger.error(f"Upstream API error {response.status_code}: {body[:500]}")
                raise UpstreamHttpError(response.status_code, body)
        except UpstreamError as e:
            if not isinstance(e, UpstreamHttpError):
                logger.error(f"Upstream request to {self.host} failed: {e.message}")
            record_upstream_error(e.error_type)
            raise

        return StreamHandle(id=new_stream_id(), response=response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
