"""
Servers for Desk Relay.

Two listeners share one event loop:
- aiohttp on ``port`` for the PIN login API and status endpoints
- a websockets broker on ``port + 1`` carrying JSON signaling/control
  messages and binary screen frames

Remote peers must present a session token (``?token=...``) to open the broker
channel; connections from this machine are let through without one.
"""

import asyncio
import logging
import signal
from typing import Optional, Union
from urllib.parse import parse_qs, urlsplit

from aiohttp import web
import websockets
from websockets.asyncio.server import ServerConnection, serve as ws_serve
from websockets.protocol import State

from . import __version__, protocol
from .auth import AuthGuard, FailureReason, is_local_address
from .capture import ScreenCapture
from .config import Config, get_config, get_local_ip
from .input_handler import InputHandler
from .registry import Connection, ConnectionRegistry
from .signaling import InputInjector, SignalingRouter
from .streamer import FrameSource, FrameStreamer


logger = logging.getLogger(__name__)

TOKEN_COOKIE = "auth_token"


class WebSocketTransport:
    """Adapts a websockets server connection to the registry's Transport."""

    def __init__(self, websocket: ServerConnection):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, data: Union[str, bytes]) -> None:
        """Raises ConnectionClosed if the peer has gone away."""
        await self.websocket.send(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code, reason)


def token_from_path(path: Optional[str]) -> Optional[str]:
    """Pull the ``token`` query parameter out of a request path."""
    if not path:
        return None
    values = parse_qs(urlsplit(path).query).get("token")
    return values[0] if values else None


def token_from_request(request: web.Request, body: Optional[dict] = None) -> Optional[str]:
    """Find a session token in the body, Authorization header, cookie or query."""
    if body and isinstance(body.get("token"), str):
        return body["token"]
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.cookies.get(TOKEN_COOKIE) or request.query.get("token")


class RelayServer:
    """
    Session broker for one screen source and its viewers.

    Features:
    - PIN login with per-address lockout, bearer session tokens
    - Host/viewer registration and negotiation relay
    - Paced JPEG frame broadcast while viewers are connected
    - Viewer mouse and keyboard input applied on this machine
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        auth: Optional[AuthGuard] = None,
        capture: Optional[FrameSource] = None,
        injector: Optional[InputInjector] = None,
    ):
        """Initialize the server."""
        self.config = config or get_config()

        self.auth = auth or AuthGuard(
            max_attempts=self.config.max_attempts,
            lockout_seconds=self.config.lockout_seconds,
            session_ttl=self.config.session_ttl,
            sweep_interval=self.config.sweep_interval,
        )

        self.capture = capture or ScreenCapture(
            monitor=self.config.monitor,
            quality=self.config.quality,
            scale=self.config.scale,
            use_turbojpeg=self.config.use_turbojpeg,
        )
        self.injector = injector if injector is not None else self._make_injector()

        self.registry = ConnectionRegistry()
        self.router = SignalingRouter(
            self.registry,
            injector=self.injector,
            screen_size=self.capture.screen_dimensions,
        )
        self.streamer = FrameStreamer(
            self.registry,
            self.capture,
            interval=self.config.frame_interval,
        )

        # Server instances
        self.http_runner: Optional[web.AppRunner] = None
        self.ws_server = None

        # Shutdown event
        self.shutdown_event = asyncio.Event()

        self.http_app = web.Application()
        self._setup_http_routes()

    def _make_injector(self) -> Optional[InputInjector]:
        try:
            return InputHandler(size_provider=self.capture.screen_dimensions)
        except RuntimeError as e:
            logger.warning("Remote input disabled: %s", e)
            return None

    def _setup_http_routes(self) -> None:
        """Setup HTTP routes for the login API and status."""
        self.http_app.router.add_get("/ping", self._handle_ping)
        self.http_app.router.add_get("/status", self._handle_status)
        self.http_app.router.add_post("/api/auth", self._handle_auth)
        self.http_app.router.add_post("/api/logout", self._handle_logout)
        self.http_app.router.add_get("/api/session", self._handle_session)
        self.http_app.router.add_get("/api/pin", self._handle_pin)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _handle_ping(self, request: web.Request) -> web.Response:
        """Simple ping endpoint."""
        return web.Response(text="pong")

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Return server status."""
        status = {
            "status": "running",
            "version": __version__,
            "hostReady": self.registry.is_host_present(),
            "viewers": self.registry.viewer_count(),
            "streaming": self.streamer.state.value,
            "fps": round(self.streamer.fps, 1),
            "inputEnabled": self.injector is not None,
            "settings": {
                "fps": self.config.fps,
                "quality": self.config.quality,
                "scale": self.config.scale,
            },
        }
        return web.json_response(status)

    async def _handle_auth(self, request: web.Request) -> web.Response:
        """Trade a PIN for a session token."""
        address = request.remote or ""
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or "pin" not in body:
            return web.json_response(
                {"success": False, "error": "bad_request"}, status=400
            )

        result = self.auth.verify_pin(str(body["pin"]), address)
        if not result.success:
            if result.reason is FailureReason.LOCKED:
                return web.json_response(
                    result.to_dict(),
                    status=429,
                    headers={"Retry-After": str(result.retry_after)},
                )
            return web.json_response(result.to_dict(), status=401)

        token = self.auth.create_session(address)
        response = web.json_response({"success": True, "token": token})
        response.set_cookie(
            TOKEN_COOKIE,
            token,
            max_age=int(self.auth.session_ttl),
            samesite="Strict",
        )
        return response

    async def _handle_logout(self, request: web.Request) -> web.Response:
        try:
            body = await request.json() if request.can_read_body else None
        except ValueError:
            body = None
        token = token_from_request(request, body if isinstance(body, dict) else None)
        removed = self.auth.remove_session(token)
        response = web.json_response({"success": True, "removed": removed})
        response.del_cookie(TOKEN_COOKIE)
        return response

    async def _handle_session(self, request: web.Request) -> web.Response:
        token = token_from_request(request)
        return web.json_response({
            "valid": self.auth.validate_session(token),
            "local": is_local_address(request.remote),
        })

    async def _handle_pin(self, request: web.Request) -> web.Response:
        """The PIN is only ever shown to callers on this machine."""
        if not is_local_address(request.remote):
            return web.json_response({"error": "forbidden"}, status=403)
        return web.json_response({"pin": self.auth.current_pin})

    # ------------------------------------------------------------------
    # Broker channel
    # ------------------------------------------------------------------

    def authorize(self, address: str, path: Optional[str]) -> bool:
        """Local peers pass; remote peers need a valid session token."""
        if is_local_address(address):
            return True
        return self.auth.validate_session(token_from_path(path))

    async def _websocket_handler(self, websocket: ServerConnection) -> None:
        """Handle a broker connection from authentication to close."""
        remote = websocket.remote_address or ("", 0)
        request = getattr(websocket, "request", None)
        path = request.path if request is not None else None

        if not self.authorize(remote[0], path):
            logger.warning("Rejected unauthorized connection from %s", remote[0])
            await websocket.close(
                protocol.CLOSE_UNAUTHORIZED, protocol.CLOSE_UNAUTHORIZED_REASON
            )
            return

        conn = self.registry.connect(WebSocketTransport(websocket), tuple(remote[:2]))
        logger.info("Client connected: %r", conn)

        try:
            async for message in websocket:
                await self.dispatch(conn, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            await self.router.handle_close(conn)
            self._sync_streamer()
            logger.info("Client disconnected: %r", conn)

    async def dispatch(self, conn: Connection, raw: Union[str, bytes]) -> None:
        """Parse one inbound message and route it. Bad payloads are dropped."""
        if isinstance(raw, bytes):
            logger.warning("Unexpected binary message from %r dropped", conn)
            return
        try:
            message = protocol.decode(raw)
        except protocol.MalformedMessage as e:
            logger.warning("Malformed message from %r: %s", conn, e)
            return

        await self.router.handle(conn, message)
        self._sync_streamer()

    def _sync_streamer(self) -> None:
        if self.config.stream_enabled:
            self.streamer.update(self.registry.viewer_count())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start both HTTP and WebSocket servers."""
        pin = self.auth.generate_pin()
        self.auth.start_sweeper()

        # Start HTTP server for the login API
        self.http_runner = web.AppRunner(self.http_app)
        await self.http_runner.setup()
        http_site = web.TCPSite(self.http_runner, self.config.host, self.config.port)
        await http_site.start()

        # Start broker on port + 1
        self.ws_server = await ws_serve(
            self._websocket_handler,
            self.config.host,
            self.config.ws_port,
            max_size=self.config.max_message_bytes,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_interval,
        )

        # Show user-friendly URL
        display_host = self.config.host
        if display_host == "0.0.0.0":
            display_host = get_local_ip()

        print(f"\n🖥️  Desk Relay started!")
        print(f"   Login API: http://{display_host}:{self.config.port}/api/auth")
        print(f"   Broker:    ws://{display_host}:{self.config.ws_port}")
        print(f"   PIN: {pin}")
        print(f"\n   Enter the PIN on your other device to connect.\n")

    async def stop(self) -> None:
        """Stop the servers."""
        # Stop broker first; closing handlers re-sync the streamer on their way out
        if self.ws_server:
            self.ws_server.close()
            await self.ws_server.wait_closed()
            self.ws_server = None

        await self.streamer.shutdown()
        await self.auth.stop_sweeper()

        # Stop HTTP server
        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        close = getattr(self.capture, "close", None)
        if close is not None:
            close()

        print("\n🖥️  Desk Relay stopped.\n")

    async def run_forever(self) -> None:
        """Run the server until interrupted."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, self.shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            pass

        await self.start()
        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


def run_server(config: Optional[Config] = None) -> None:
    """Run the server (blocking)."""
    server = RelayServer(config)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")
