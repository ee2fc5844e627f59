import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from chatproxy.api.routes.chat import RelayStreamingResponse
from chatproxy.core.errors import (
    UpstreamConnectionRefused,
    UpstreamDnsError,
    UpstreamHttpError,
    UpstreamNetworkError,
    UpstreamTimeout,
)
from chatproxy.dependencies import get_upstream_connector
from chatproxy.main import create_app
from chatproxy.services.stream_registry import StreamHandle, StreamRegistry, new_stream_id
from chatproxy.services.stream_relay import StreamRelay
from fakes import DONE_LINE, FakeConnector, FakeUpstreamResponse, delta_line, make_image, parse_frames


def use_connector(app, connector: FakeConnector) -> FakeConnector:
    app.dependency_overrides[get_upstream_connector] = lambda: connector
    return connector


def png_bytes(tmp_path, name: str = "pic.png") -> bytes:
    return make_image(tmp_path / name).read_bytes()


# =============================================================================
# HEALTH
# =============================================================================


def test_root_endpoint(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "AI Chat System"
    assert data["model"] == "test-model"
    assert data["timestamp"].endswith("Z")
    assert "version" in data


# =============================================================================
# CHAT
# =============================================================================


def test_chat_streams_events(app, client):
    connector = use_connector(app, FakeConnector([delta_line("Hel"), delta_line("lo"), DONE_LINE]))

    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "hi"}], "conversationId": "c-1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-stream-id"]
    assert parse_frames(response.text) == ['{"content": "Hel"}', '{"content": "lo"}', "[DONE]"]

    sent = connector.requests[0]
    assert [turn.role for turn in sent.turns] == ["system", "user"]
    assert sent.model == "test-model"
    assert len(app.state.stream_registry) == 0


def test_chat_uses_leading_system_message_as_preset(app, client):
    connector = use_connector(app, FakeConnector([DONE_LINE]))

    client.post(
        "/chat",
        json={
            "messages": [
                {"role": "system", "content": "Answer in French."},
                {"role": "user", "content": "Hello"},
                {"role": "assistant", "content": "Bonjour"},
                {"role": "user", "content": "Thanks"},
            ]
        },
    )

    turns = connector.requests[0].turns
    assert turns[0].content == "Answer in French."
    assert [turn.role for turn in turns] == ["system", "user", "assistant", "user"]
    assert turns[-1].content == "Thanks"


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": []},
        {"messages": "hi"},
        {"messages": [{"role": "assistant", "content": "hi"}]},
        {"messages": [{"role": "robot", "content": "hi"}]},
        [1, 2, 3],
    ],
)
def test_chat_rejects_bad_messages(app, client, body):
    connector = use_connector(app, FakeConnector([DONE_LINE]))

    response = client.post("/chat", json=body)

    assert response.status_code == 400
    assert "error" in response.json()
    assert connector.requests == []


def test_chat_rejects_invalid_json(client):
    response = client.post(
        "/chat", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


@pytest.mark.parametrize(
    "error, status, message",
    [
        (UpstreamHttpError(429, "rate limited"), 429, "API error: 429"),
        (UpstreamHttpError(401), 401, "API error: 401"),
        (UpstreamDnsError(), 503, "DNS resolution failed, check network settings"),
        (UpstreamConnectionRefused(), 503, "Connection refused, check network settings"),
        (UpstreamTimeout(), 504, "Request timed out, please retry later"),
        (UpstreamNetworkError("socket hang up"), 500, "Network error: socket hang up"),
    ],
)
def test_chat_maps_upstream_failures(app, client, error, status, message):
    use_connector(app, FakeConnector(error=error))

    response = client.post("/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == status
    assert response.json() == {"error": message}
    assert len(app.state.stream_registry) == 0


def test_chat_with_uploaded_image_inlines_it(app, client, tmp_path):
    connector = use_connector(app, FakeConnector([delta_line("A red square."), DONE_LINE]))

    upload = client.post(
        "/upload",
        files=[("images", ("red.png", png_bytes(tmp_path), "image/png"))],
    )
    url = upload.json()["urls"][0]

    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "What is this?"}], "images": [url]},
    )

    assert response.status_code == 200
    content = connector.requests[0].turns[-1].content
    assert content[0].text == "What is this?"
    assert content[1].source_url.startswith("data:image/jpeg;base64,")


def test_chat_exposes_stream_id_to_browsers(app, client):
    use_connector(app, FakeConnector([DONE_LINE]))

    response = client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "hi"}]},
        headers={"Origin": "http://localhost:5173"},
    )

    assert "x-stream-id" in response.headers["access-control-expose-headers"].lower()


# =============================================================================
# STOP
# =============================================================================


def test_stop_unknown_stream(client):
    response = client.post("/chat/stop", json={"streamId": "nope"})
    assert response.status_code == 404
    assert response.json() == {"error": "Stream not found"}


@pytest.mark.parametrize("body", [{}, {"streamId": ""}])
def test_stop_requires_stream_id(client, body):
    response = client.post("/chat/stop", json=body)
    assert response.status_code == 400
    assert "error" in response.json()


def test_stop_in_flight_stream_once(app, client):
    upstream = FakeUpstreamResponse([delta_line("x")])
    handle = StreamHandle(id=new_stream_id(), response=upstream)
    app.state.stream_registry.register(handle.id, handle)

    first = client.post("/chat/stop", json={"streamId": handle.id})
    second = client.post("/chat/stop", json={"streamId": handle.id})

    assert first.status_code == 200
    assert first.json() == {"success": True, "message": "Stream stopped"}
    assert handle.cancelled is True
    assert upstream.closed is True
    assert second.status_code == 404


# =============================================================================
# UPLOAD
# =============================================================================


def test_upload_stores_and_serves_images(app, client, tmp_path):
    files = [
        ("images", ("a.png", png_bytes(tmp_path, "a.png"), "image/png")),
        ("images", ("my photo!.png", png_bytes(tmp_path, "b.png"), "image/png")),
    ]

    response = client.post("/upload", files=files)

    assert response.status_code == 200
    urls = response.json()["urls"]
    assert len(urls) == 2
    assert all(url.startswith("http://testserver/uploads/") for url in urls)
    assert urls[1].endswith("-myphoto.png")

    stored = sorted(p.name for p in app.state.upload_store.directory.iterdir())
    assert len(stored) == 2

    served = client.get(urls[0].replace("http://testserver", ""))
    assert served.status_code == 200
    assert served.content == png_bytes(tmp_path, "a.png")


def test_upload_rejects_non_images(app, client):
    response = client.post(
        "/upload", files=[("images", ("notes.txt", b"hello", "text/plain"))]
    )
    assert response.status_code == 415
    assert list(app.state.upload_store.directory.iterdir()) == []


def test_upload_rejects_too_many_files(app, client, tmp_path):
    data = png_bytes(tmp_path)
    files = [("images", (f"{i}.png", data, "image/png")) for i in range(11)]

    response = client.post("/upload", files=files)

    assert response.status_code == 400
    assert list(app.state.upload_store.directory.iterdir()) == []


def test_upload_requires_files(client):
    response = client.post("/upload", data={"other": "x"})
    assert response.status_code == 400


def test_upload_rejects_oversize_batch(test_settings, tmp_path):
    test_settings.upload.max_file_size = 1024
    app = create_app(test_settings)
    files = [
        ("images", ("small.png", png_bytes(tmp_path), "image/png")),
        ("images", ("big.png", b"\x89PNG" + b"0" * 4096, "image/png")),
    ]

    with TestClient(app) as client:
        response = client.post("/upload", files=files)

    assert response.status_code == 413
    assert list(app.state.upload_store.directory.iterdir()) == []


def test_upload_uses_public_base_url(test_settings, tmp_path):
    test_settings.upload.public_base_url = "https://chat.example.com/"
    app = create_app(test_settings)

    with TestClient(app) as client:
        response = client.post(
            "/upload", files=[("images", ("a.png", png_bytes(tmp_path), "image/png"))]
        )

    assert response.json()["urls"][0].startswith("https://chat.example.com/uploads/")


def test_error_body_is_json(client):
    response = client.post("/chat/stop", content=b"[]", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert json.loads(response.text).keys() == {"error"}


def test_correlation_id_is_echoed(client):
    generated = client.get("/health")
    supplied = client.get("/health", headers={"X-Correlation-ID": "req-123"})

    assert generated.headers["x-correlation-id"]
    assert supplied.headers["x-correlation-id"] == "req-123"


def test_create_app_builds_collaborators(app):
    # Available before startup so requests and overrides can reach them
    for name in ("stream_registry", "upload_store", "request_transformer", "upstream_connector"):
        assert getattr(app.state, name) is not None


@pytest.mark.asyncio
async def test_relay_released_when_client_leaves_after_headers() -> None:
    registry = StreamRegistry()
    upstream = FakeUpstreamResponse([delta_line("a"), DONE_LINE])
    handle = StreamHandle(id=new_stream_id(), response=upstream)
    registry.register(handle.id, handle)
    response = RelayStreamingResponse(StreamRelay(handle, registry), media_type="text/event-stream")

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.body":
            raise OSError("client went away")

    scope = {"type": "http", "method": "POST", "path": "/chat", "headers": []}
    try:
        await response(scope, receive, send)
    except Exception:
        pass

    assert handle.id not in registry
    assert upstream.closed is True


def test_upload_writes_off_the_event_loop(client, tmp_path, monkeypatch):
    calls = []
    original = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        calls.append(getattr(func, "__name__", ""))
        return await original(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)

    response = client.post(
        "/upload", files=[("images", ("a.png", png_bytes(tmp_path), "image/png"))]
    )

    assert response.status_code == 200
    assert "save" in calls
