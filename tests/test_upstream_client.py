import asyncio
import json
import socket

import httpx
import pytest
import respx
from httpx import Response

from chatproxy.clients.upstream import UpstreamConnector, classify_network_error
from chatproxy.core.errors import (
    UpstreamConnectionRefused,
    UpstreamDnsError,
    UpstreamHttpError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from chatproxy.models.schemas import ChatRequest, ChatTurn

BASE_URL = "https://api.example.com/v1"
PINNED_URL = "https://203.0.113.7/v1/chat/completions"
SSE_BODY = 'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\ndata: [DONE]\n\n'


async def fixed_resolver(host: str) -> str:
    return "203.0.113.7"


def chat_request() -> ChatRequest:
    return ChatRequest(
        turns=[
            ChatTurn(role="system", content="sys"),
            ChatTurn(role="user", content="hi"),
        ],
        model="test-model",
    )


def make_connector(**kwargs) -> UpstreamConnector:
    kwargs.setdefault("resolver", fixed_resolver)
    return UpstreamConnector(base_url=BASE_URL, api_key="sk-test", **kwargs)


@pytest.mark.asyncio
@respx.mock
async def test_connect_pins_ip_and_keeps_logical_host() -> None:
    route = respx.post(PINNED_URL).mock(
        return_value=Response(200, text=SSE_BODY, headers={"content-type": "text/event-stream"})
    )
    connector = make_connector()

    handle = await connector.connect(chat_request())
    body = b"".join([chunk async for chunk in handle.iter_bytes()])
    await handle.abort()
    await connector.aclose()

    assert body.decode() == SSE_BODY
    assert handle.id

    sent = route.calls.last.request
    assert sent.headers["host"] == "api.example.com"
    assert sent.headers["authorization"] == "Bearer sk-test"
    assert sent.headers["accept"] == "text/event-stream"
    assert sent.extensions["sni_hostname"] == "api.example.com"

    payload = json.loads(sent.content)
    assert payload["model"] == "test-model"
    assert payload["stream"] is True
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


@pytest.mark.asyncio
@respx.mock
async def test_pinned_ip_skips_resolver() -> None:
    async def failing_resolver(host: str) -> str:
        raise AssertionError("resolver should not be called")

    respx.post("https://198.51.100.9/v1/chat/completions").mock(
        return_value=Response(200, text=SSE_BODY)
    )
    connector = make_connector(pinned_ip="198.51.100.9", resolver=failing_resolver)

    handle = await connector.connect(chat_request())
    await handle.abort()


@pytest.mark.asyncio
@respx.mock
async def test_resolver_failure_falls_back_to_host_name() -> None:
    async def broken_resolver(host: str) -> str:
        raise socket.gaierror(-2, "Name or service not known")

    route = respx.post(f"{BASE_URL}/chat/completions").mock(
        return_value=Response(200, text=SSE_BODY)
    )
    connector = make_connector(resolver=broken_resolver)

    handle = await connector.connect(chat_request())
    await handle.abort()

    assert route.called


@pytest.mark.asyncio
@respx.mock
async def test_non_success_status_is_mirrored() -> None:
    respx.post(PINNED_URL).mock(
        return_value=Response(401, json={"error": {"message": "Invalid API key"}})
    )
    connector = make_connector()

    with pytest.raises(UpstreamHttpError) as exc_info:
        await connector.connect(chat_request())

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "API error: 401"
    assert "Invalid API key" in exc_info.value.body


@pytest.mark.asyncio
@respx.mock
@pytest.mark.parametrize(
    "error, expected, status",
    [
        (httpx.ConnectError("[Errno 111] Connection refused"), UpstreamConnectionRefused, 503),
        (httpx.ConnectError("[Errno -2] Name or service not known"), UpstreamDnsError, 503),
        (httpx.ConnectTimeout("timed out"), UpstreamTimeout, 504),
        (httpx.RemoteProtocolError("peer closed connection"), UpstreamNetworkError, 500),
    ],
)
async def test_transport_errors_are_classified(error, expected, status) -> None:
    respx.post(PINNED_URL).mock(side_effect=error)
    connector = make_connector()

    with pytest.raises(expected) as exc_info:
        await connector.connect(chat_request())

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_slow_headers_hit_connect_timeout() -> None:
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
    connector = make_connector(timeout=0.05, client=client)

    with pytest.raises(UpstreamTimeout) as exc_info:
        await connector.connect(chat_request())

    assert exc_info.value.message == "Request timed out, please retry later"
    await client.aclose()


def test_classify_follows_exception_chain() -> None:
    try:
        try:
            raise socket.gaierror(-3, "Temporary failure")
        except socket.gaierror as e:
            raise httpx.ConnectError("connect failed") from e
    except httpx.ConnectError as exc:
        assert isinstance(classify_network_error(exc), UpstreamDnsError)

    refused = httpx.ConnectError("connect failed")
    refused.__cause__ = ConnectionRefusedError(111, "refused")
    assert isinstance(classify_network_error(refused), UpstreamConnectionRefused)


def test_network_error_message_carries_detail() -> None:
    err = classify_network_error(httpx.ReadError("socket hang up"))
    assert isinstance(err, UpstreamNetworkError)
    assert err.message == "Network error: socket hang up"


@pytest.mark.asyncio
async def test_plain_http_endpoint_has_no_sni_and_keeps_port() -> None:
    async def local_resolver(host: str) -> str:
        return "127.0.0.1"

    connector = UpstreamConnector(
        base_url="http://localhost:8080/v1/",
        api_key="k",
        resolver=local_resolver,
    )

    target = await connector.resolve_target()
    request = connector.build_request(chat_request(), target)
    await connector.aclose()

    assert str(request.url) == "http://127.0.0.1:8080/v1/chat/completions"
    assert request.headers["host"] == "localhost:8080"
    assert "sni_hostname" not in request.extensions


@pytest.mark.asyncio
async def test_ip_literal_base_url_is_used_directly() -> None:
    async def failing_resolver(host: str) -> str:
        raise AssertionError("resolver should not be called")

    connector = UpstreamConnector(
        base_url="https://192.0.2.10/v1", api_key="k", resolver=failing_resolver
    )
    assert await connector.resolve_target() == "192.0.2.10"
    await connector.aclose()
