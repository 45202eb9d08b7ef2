"""
Message routing between the host, its viewers and the local input injector.

The router owns no transports. It looks peers up in the registry, relays
negotiation messages (offer / answer / ICE candidates) between the host and
the right viewer, and runs control commands from viewers against the input
injector. A message whose target is gone is dropped; the sender is never told.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from . import protocol
from .registry import Connection, ConnectionRegistry, Role


logger = logging.getLogger(__name__)


class InputInjector(Protocol):
    def move_to(self, x: float, y: float) -> bool: ...

    def click(self, x: float, y: float, button: Any = "left", is_double: bool = False) -> bool: ...

    def button_down(self, button: Any = "left") -> bool: ...

    def button_up(self, button: Any = "left") -> bool: ...

    def scroll(self, dx: float, dy: float) -> bool: ...

    def key_tap(self, key: str, modifiers: Iterable[str] = ()) -> bool: ...

    def type_text(self, text: str) -> bool: ...

    def screen_dimensions(self) -> Tuple[int, int]: ...


def _coord(message: Dict[str, Any], name: str) -> float:
    value = message.get(name, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return min(1.0, max(0.0, float(value)))


def _number(message: Dict[str, Any], name: str) -> float:
    value = message.get(name) or 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return float(value)


class SignalingRouter:
    """Dispatches parsed broker messages for one registry."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        injector: Optional[InputInjector] = None,
        screen_size: Optional[Callable[[], Tuple[int, int]]] = None,
    ):
        self.registry = registry
        self.injector = injector
        self.screen_size = screen_size

        self._handlers = {
            protocol.REGISTER_HOST: self._on_register_host,
            protocol.REGISTER_VIEWER: self._on_register_viewer,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_ice_candidate,
            protocol.PING: self._on_ping,
        }

    async def handle(self, conn: Connection, message: Dict[str, Any]) -> None:
        """Route one inbound message from ``conn``."""
        message_type = message.get("type")

        if message_type in protocol.CONTROL_TYPES:
            await self._on_control(conn, message)
            return

        handler = self._handlers.get(message_type)
        if handler is None:
            logger.info("Unknown message type %r from %r", message_type, conn)
            return
        await handler(conn, message)

    async def handle_close(self, conn: Connection) -> None:
        """Tell the counterpart(s) that ``conn`` went away, then forget it."""
        if conn.role is Role.HOST and self.registry.host_connection() is conn:
            logger.info("Host %r disconnected", conn)
            await self.broadcast_to_viewers(protocol.encode(protocol.HOST_DISCONNECTED))
        elif conn.role is Role.VIEWER:
            viewer_id = conn.viewer_index
            host = self.registry.host_connection()
            logger.info("Viewer %r disconnected", conn)
            if host is not None:
                await self.send(host, protocol.encode(protocol.VIEWER_LEFT, viewerId=viewer_id))
        self.registry.unregister(conn)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def _on_register_host(self, conn: Connection, message: Dict[str, Any]) -> None:
        previous = self.registry.register_host(conn)
        logger.info("Host registered: %r", conn)
        if previous is not None:
            logger.info("Previous host %r is now unassigned", previous)

        await self.send(conn, protocol.encode(protocol.REGISTERED, role=Role.HOST.value))
        await self.broadcast_to_viewers(protocol.encode(protocol.HOST_READY))

    async def _on_register_viewer(self, conn: Connection, message: Dict[str, Any]) -> None:
        if self.registry.host_connection() is conn:
            # The host is stepping down; viewers must hear it before the slot clears
            logger.info("Host %r re-registered as viewer", conn)
            await self.broadcast_to_viewers(protocol.encode(protocol.HOST_DISCONNECTED))

        viewer_id = self.registry.register_viewer(conn)
        host = self.registry.host_connection()
        logger.info("Viewer registered: %r", conn)

        width = height = None
        if self.screen_size is not None:
            try:
                width, height = self.screen_size()
            except Exception as e:
                logger.debug("Screen size unavailable: %s", e)

        await self.send(conn, protocol.encode(
            protocol.REGISTERED,
            role=Role.VIEWER.value,
            hostReady=host is not None,
            viewerId=viewer_id,
            screenWidth=width,
            screenHeight=height,
        ))
        if host is not None:
            await self.send(host, protocol.encode(protocol.VIEWER_JOINED, viewerId=viewer_id))

    # ------------------------------------------------------------------
    # Negotiation relay
    # ------------------------------------------------------------------

    async def _on_offer(self, conn: Connection, message: Dict[str, Any]) -> None:
        viewer_id = self.registry.viewer_index_of(conn)
        if viewer_id is None:
            logger.info("Offer from non-viewer %r dropped", conn)
            return
        host = self.registry.host_connection()
        if host is None:
            logger.info("Offer from viewer %d dropped: no host", viewer_id)
            return
        logger.debug("Offer viewer %d -> host", viewer_id)
        await self.send(host, protocol.encode(
            protocol.OFFER, sdp=message.get("sdp"), viewerId=viewer_id
        ))

    async def _on_answer(self, conn: Connection, message: Dict[str, Any]) -> None:
        if self.registry.host_connection() is not conn:
            logger.info("Answer from non-host %r dropped", conn)
            return
        viewer_id = protocol.viewer_id_of(message)
        viewer = self.registry.viewer_by_index(viewer_id)
        if viewer is None:
            logger.info("Answer for viewer %r dropped: no such viewer", message.get("viewerId"))
            return
        logger.debug("Answer host -> viewer %d", viewer_id)
        await self.send(viewer, protocol.encode(protocol.ANSWER, sdp=message.get("sdp")))

    async def _on_ice_candidate(self, conn: Connection, message: Dict[str, Any]) -> None:
        candidate = message.get("candidate")

        if self.registry.host_connection() is conn:
            viewer = self.registry.viewer_by_index(protocol.viewer_id_of(message))
            if viewer is not None:
                await self.send(viewer, protocol.encode(protocol.ICE_CANDIDATE, candidate=candidate))
            return

        viewer_id = self.registry.viewer_index_of(conn)
        host = self.registry.host_connection()
        if viewer_id is not None and host is not None:
            await self.send(host, protocol.encode(
                protocol.ICE_CANDIDATE, candidate=candidate, viewerId=viewer_id
            ))

    async def _on_ping(self, conn: Connection, message: Dict[str, Any]) -> None:
        await self.send(conn, protocol.encode(
            protocol.PONG,
            timestamp=int(time.time() * 1000),
            clientTimestamp=message.get("timestamp"),
        ))

    # ------------------------------------------------------------------
    # Control commands
    # ------------------------------------------------------------------

    async def _on_control(self, conn: Connection, message: Dict[str, Any]) -> None:
        message_type = message["type"]
        if conn.role is not Role.VIEWER:
            logger.info("Control %r from non-viewer %r dropped", message_type, conn)
            return
        if self.injector is None:
            logger.debug("Control %r dropped: input injection unavailable", message_type)
            return

        try:
            call = self._control_call(message)
        except (ValueError, TypeError) as e:
            logger.warning("Malformed %r message from %r: %s", message_type, conn, e)
            return
        if call is None:
            return

        try:
            ok = await asyncio.to_thread(call)
        except Exception as e:
            logger.warning("Input %r failed: %s", message_type, e)
            return
        if ok is False:
            logger.warning("Input %r was not applied", message_type)

    def _control_call(self, message: Dict[str, Any]) -> Optional[Callable[[], bool]]:
        injector = self.injector
        message_type = message["type"]
        button = message.get("button") or "left"

        if message_type == protocol.MOUSEMOVE:
            x, y = _coord(message, "x"), _coord(message, "y")
            return lambda: injector.move_to(x, y)

        if message_type == protocol.CLICK:
            x, y = _coord(message, "x"), _coord(message, "y")
            is_double = bool(message.get("double", False))
            return lambda: injector.click(x, y, button, is_double)

        if message_type == protocol.MOUSEDOWN:
            x, y = _coord(message, "x"), _coord(message, "y")
            return lambda: injector.move_to(x, y) and injector.button_down(button)

        if message_type == protocol.MOUSEUP:
            return lambda: injector.button_up(button)

        if message_type == protocol.SCROLL:
            dx, dy = _number(message, "deltaX"), _number(message, "deltaY")
            return lambda: injector.scroll(dx, dy)

        if message_type == protocol.KEYPRESS:
            key = message.get("key")
            if not isinstance(key, str) or not key:
                raise ValueError("keypress without key")
            modifiers = message.get("modifiers") or []
            if not isinstance(modifiers, list) or not all(isinstance(m, str) for m in modifiers):
                raise ValueError("modifiers must be a list of strings")
            return lambda: injector.key_tap(key, modifiers)

        if message_type == protocol.TYPE:
            text = message.get("text")
            if not isinstance(text, str):
                raise ValueError("type without text")
            if not text:
                return None
            return lambda: injector.type_text(text)

        return None

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send(self, conn: Connection, payload: str) -> bool:
        """Send to one peer if its channel is open. Failures are logged, not raised."""
        if not conn.is_open:
            return False
        try:
            await conn.transport.send(payload)
            return True
        except Exception as e:
            logger.debug("Send to %r failed: %s", conn, e)
            return False

    async def broadcast_to_viewers(self, payload: str) -> int:
        sent = 0
        for viewer in self.registry.viewers():
            if await self.send(viewer, payload):
                sent += 1
        return sent
