"""
Tests for the session boundary: login API and broker connection handling.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from desk_relay.auth import AuthGuard
from desk_relay.config import Config
from desk_relay.server import RelayServer, WebSocketTransport, token_from_path
from desk_relay.streamer import FrameStreamer, StreamState


REMOTE = ("192.168.1.50", 51000)
LOCAL = ("127.0.0.1", 51000)


class FakeWebSocket:
    """Stand-in for a websockets ServerConnection that replays messages."""

    def __init__(self, messages=(), remote=REMOTE, path="/"):
        self._messages = list(messages)
        self.remote_address = remote
        self.request = SimpleNamespace(path=path)
        self.state = State.OPEN
        self.sent = []
        self.close = AsyncMock()
        self.iterated = False

    async def send(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self._replay()

    async def _replay(self):
        self.iterated = True
        for message in self._messages:
            yield message
        self.state = State.CLOSED

    def messages(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]


@pytest.fixture
def capture():
    source = MagicMock()
    source.capture_frame = AsyncMock(return_value=b"jpeg")
    source.screen_dimensions.return_value = (1280, 720)
    return source


@pytest.fixture
def server(capture, injector, tmp_path):
    config = Config(tmp_path / "missing.yaml")
    auth = AuthGuard()
    with patch("desk_relay.auth.secrets.randbelow", return_value=246810):
        auth.generate_pin()
    return RelayServer(config, auth=auth, capture=capture, injector=injector)


class TestTokenParsing:
    """Test token extraction from connection paths."""

    def test_token_from_query(self):
        assert token_from_path("/?token=abc123") == "abc123"
        assert token_from_path("/ws?x=1&token=t%20k") == "t k"

    def test_missing_token(self):
        assert token_from_path("/") is None
        assert token_from_path(None) is None


class TestAuthorize:
    """Test the broker's connection gate."""

    def test_local_peer_needs_no_token(self, server):
        assert server.authorize("127.0.0.1", "/")
        assert server.authorize("::1", "/")

    def test_remote_peer_needs_valid_token(self, server):
        assert not server.authorize("192.168.1.50", "/")
        assert not server.authorize("192.168.1.50", "/?token=forged")

        token = server.auth.create_session("192.168.1.50")
        assert server.authorize("192.168.1.50", f"/?token={token}")

    def test_logged_out_token_is_refused(self, server):
        token = server.auth.create_session("192.168.1.50")
        server.auth.remove_session(token)
        assert not server.authorize("192.168.1.50", f"/?token={token}")


class TestBrokerConnection:
    """Test the per-connection handler."""

    @pytest.mark.asyncio
    async def test_unauthorized_remote_is_closed(self, server):
        """Remote peers without a token are closed with 4001 before registration."""
        ws = FakeWebSocket([json.dumps({"type": "register-viewer"})], remote=REMOTE)

        await server._websocket_handler(ws)

        ws.close.assert_awaited_once_with(4001, "Unauthorized")
        assert not ws.iterated
        assert len(server.registry) == 0
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_remote_with_token_registers(self, server):
        token = server.auth.create_session(REMOTE[0])
        ws = FakeWebSocket([json.dumps({"type": "register-viewer"})], path=f"/?token={token}")

        await server._websocket_handler(ws)
        await server.streamer.shutdown()

        ws.close.assert_not_awaited()
        assert ws.messages()[0]["type"] == "registered"
        assert ws.messages()[0]["screenWidth"] == 1280
        assert len(server.registry) == 0

    @pytest.mark.asyncio
    async def test_local_peer_flow(self, server):
        """A local host and viewer exchange an offer through the broker."""
        host_ws = FakeWebSocket(remote=LOCAL)
        host = server.registry.connect(WebSocketTransport(host_ws), LOCAL)
        await server.dispatch(host, json.dumps({"type": "register-host"}))

        viewer_ws = FakeWebSocket(
            [
                json.dumps({"type": "register-viewer"}),
                json.dumps({"type": "offer", "sdp": "v=0"}),
            ],
            remote=LOCAL,
        )
        await server._websocket_handler(viewer_ws)
        await server.streamer.shutdown()

        host_types = [m["type"] for m in host_ws.messages()]
        assert host_types == ["registered", "viewer-joined", "offer", "viewer-left"]
        assert host_ws.messages()[2] == {"type": "offer", "sdp": "v=0", "viewerId": 0}

    @pytest.mark.asyncio
    async def test_malformed_messages_keep_connection(self, server):
        """Bad JSON and binary input are dropped; later messages still work."""
        ws = FakeWebSocket(
            [
                "{not json",
                json.dumps([1, 2, 3]),
                json.dumps({"no": "type"}),
                b"\x00\x01",
                json.dumps({"type": "ping", "timestamp": 5}),
            ],
            remote=LOCAL,
        )

        await server._websocket_handler(ws)

        assert [m["type"] for m in ws.messages()] == ["pong"]

    @pytest.mark.asyncio
    async def test_streaming_follows_viewers(self, server, capture):
        """Registering a viewer starts streaming; closing it returns to idle."""
        ws = FakeWebSocket(remote=LOCAL)
        conn = server.registry.connect(WebSocketTransport(ws), LOCAL)
        assert server.streamer.state is StreamState.IDLE

        await server.dispatch(conn, json.dumps({"type": "register-viewer"}))
        assert server.streamer.state is StreamState.STREAMING

        await server.router.handle_close(conn)
        server._sync_streamer()
        assert server.streamer.state is StreamState.IDLE
        await server.streamer.shutdown()

    @pytest.mark.asyncio
    async def test_streaming_disabled(self, capture, injector, tmp_path):
        config = Config(tmp_path / "missing.yaml")
        config.set("stream", "enabled", False)
        server = RelayServer(config, auth=AuthGuard(), capture=capture, injector=injector)
        conn = server.registry.connect(WebSocketTransport(FakeWebSocket(remote=LOCAL)), LOCAL)
        await server.dispatch(conn, json.dumps({"type": "register-viewer"}))

        assert server.streamer.state is StreamState.IDLE
        capture.capture_frame.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closing_handlers_after_stop_do_not_restart_capture(self, server, capture):
        """Viewers dropping out during shutdown leave the capture loop down."""
        first = server.registry.connect(WebSocketTransport(FakeWebSocket(remote=LOCAL)), LOCAL)
        second = server.registry.connect(WebSocketTransport(FakeWebSocket(remote=LOCAL)), LOCAL)
        await server.dispatch(first, json.dumps({"type": "register-viewer"}))
        await server.dispatch(second, json.dumps({"type": "register-viewer"}))
        assert server.streamer.state is StreamState.STREAMING

        await server.stop()
        captured = capture.capture_frame.await_count

        # What a broker handler's finally block does once its peer is closed
        await server.router.handle_close(first)
        server._sync_streamer()
        await asyncio.sleep(0.1)

        assert server.streamer.state is StreamState.IDLE
        assert capture.capture_frame.await_count == captured
        capture.close.assert_called_once()


class TestWebSocketTransport:
    """Test the websockets adapter."""

    @pytest.mark.asyncio
    async def test_send_to_closed_peer_raises(self):
        ws = FakeWebSocket()
        ws.send = AsyncMock(side_effect=ConnectionClosed(None, None))

        with pytest.raises(ConnectionClosed):
            await WebSocketTransport(ws).send(b"frame")

    @pytest.mark.asyncio
    async def test_frame_to_closed_peer_is_not_counted(self, registry):
        ws = FakeWebSocket()
        ws.send = AsyncMock(side_effect=ConnectionClosed(None, None))
        viewer = registry.connect(WebSocketTransport(ws), LOCAL)
        registry.register_viewer(viewer)
        source = MagicMock()
        source.capture_frame = AsyncMock(return_value=b"jpeg")
        streamer = FrameStreamer(registry, source)

        assert streamer.broadcast(b"jpeg") == 1
        await asyncio.gather(*streamer._send_tasks)

        assert streamer.frames_sent == 0
        await streamer.shutdown()


class TestLoginApi:
    """Test the HTTP login endpoints."""

    @pytest.mark.asyncio
    async def test_correct_pin_returns_token(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.post("/api/auth", json={"pin": "246810"})
            data = await resp.json()

            assert resp.status == 200
            assert data["success"] is True
            assert server.auth.validate_session(data["token"])
            assert resp.cookies["auth_token"].value == data["token"]

    @pytest.mark.asyncio
    async def test_wrong_pin_is_401_with_attempts(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.post("/api/auth", json={"pin": "000000"})
            data = await resp.json()

            assert resp.status == 401
            assert data == {"success": False, "error": "invalid_pin", "remainingAttempts": 4}

    @pytest.mark.asyncio
    async def test_lockout_is_429(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            for _ in range(5):
                resp = await client.post("/api/auth", json={"pin": "000000"})
            assert resp.status == 429

            resp = await client.post("/api/auth", json={"pin": "246810"})
            data = await resp.json()
            assert resp.status == 429
            assert data["error"] == "locked"
            assert int(resp.headers["Retry-After"]) == data["retryAfter"]

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.post("/api/auth", data="pin=1")
            assert resp.status == 400
            resp = await client.post("/api/auth", json={"code": "246810"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_session_check_and_logout(self, server):
        token = server.auth.create_session("127.0.0.1")
        headers = {"Authorization": f"Bearer {token}"}
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.get("/api/session", headers=headers)
            assert (await resp.json())["valid"] is True

            resp = await client.post("/api/logout", json={"token": token})
            assert (await resp.json())["removed"] is True

            resp = await client.get("/api/session", headers=headers)
            assert (await resp.json())["valid"] is False

            resp = await client.post("/api/logout", json={"token": token})
            assert (await resp.json())["removed"] is False

    @pytest.mark.asyncio
    async def test_pin_shown_to_local_callers_only(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.get("/api/pin")
            assert (await resp.json()) == {"pin": "246810"}

            with patch("desk_relay.server.is_local_address", return_value=False):
                resp = await client.get("/api/pin")
                assert resp.status == 403

    @pytest.mark.asyncio
    async def test_status_and_ping(self, server):
        async with TestClient(TestServer(server.http_app)) as client:
            resp = await client.get("/ping")
            assert await resp.text() == "pong"

            resp = await client.get("/status")
            data = await resp.json()
            assert data["hostReady"] is False
            assert data["viewers"] == 0
            assert data["streaming"] == "idle"
            assert data["inputEnabled"] is True
