"""
Registry of live broker connections and their roles.

At most one connection is the host (screen source). Any number of
connections are viewers, each holding a viewer index handed out in
registration order. Indices are never reused or recomputed, so a viewer
keeps its index even after lower-indexed viewers leave.
"""

import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple, Union


logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the broker needs from a message-oriented peer channel."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, data: Union[str, bytes]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class Role(str, Enum):
    UNASSIGNED = "unassigned"
    HOST = "host"
    VIEWER = "viewer"


@dataclass(eq=False)
class Connection:
    """One live peer channel. Identity is the object itself (and its id)."""

    transport: Any
    remote_address: Tuple[str, int]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    role: Role = Role.UNASSIGNED
    viewer_index: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.transport.is_open

    @property
    def address(self) -> str:
        return self.remote_address[0] if self.remote_address else ""

    def __repr__(self) -> str:
        label = self.role.value
        if self.viewer_index is not None:
            label = f"{label}#{self.viewer_index}"
        return f"<Connection {self.id[:8]} {label} {self.address}>"


class ConnectionRegistry:
    """
    Authoritative set of connected peers.

    Methods never await, so on a single event loop every call is atomic with
    respect to other connections' handlers.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._host: Optional[Connection] = None
        self._viewers: Dict[int, Connection] = {}
        self._next_index = itertools.count()

    def connect(self, transport: Any, remote_address: Tuple[str, int]) -> Connection:
        """Admit an authenticated peer with no role yet."""
        conn = Connection(transport=transport, remote_address=remote_address)
        self._connections[conn.id] = conn
        return conn

    def get(self, conn_id: str) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def register_host(self, conn: Connection) -> Optional[Connection]:
        """
        Make ``conn`` the host. The previous host, if any, is demoted to
        unassigned and returned.
        """
        self._connections.setdefault(conn.id, conn)
        self._drop_viewer(conn)

        previous = self._host
        if previous is not None and previous is not conn:
            previous.role = Role.UNASSIGNED
            logger.info("Host %r replaced by %r", previous, conn)
        else:
            previous = None

        self._host = conn
        conn.role = Role.HOST
        return previous

    def register_viewer(self, conn: Connection) -> int:
        """Make ``conn`` a viewer and return its viewer index."""
        self._connections.setdefault(conn.id, conn)
        if conn.role is Role.VIEWER and conn.viewer_index is not None:
            return conn.viewer_index
        if self._host is conn:
            self._host = None

        index = next(self._next_index)
        conn.role = Role.VIEWER
        conn.viewer_index = index
        self._viewers[index] = conn
        return index

    def unregister(self, conn: Connection) -> Role:
        """Forget ``conn`` entirely. Returns the role it held."""
        role = conn.role
        if self._host is conn:
            self._host = None
        self._drop_viewer(conn)
        self._connections.pop(conn.id, None)
        conn.role = Role.UNASSIGNED
        return role

    def _drop_viewer(self, conn: Connection) -> None:
        if conn.viewer_index is not None:
            if self._viewers.get(conn.viewer_index) is conn:
                del self._viewers[conn.viewer_index]
            conn.viewer_index = None

    def host_connection(self) -> Optional[Connection]:
        return self._host

    def is_host_present(self) -> bool:
        return self._host is not None

    def viewer_by_index(self, index: Optional[int]) -> Optional[Connection]:
        if index is None:
            return None
        return self._viewers.get(index)

    def viewer_index_of(self, conn: Connection) -> Optional[int]:
        if conn.role is Role.VIEWER:
            return conn.viewer_index
        return None

    def viewer_count(self) -> int:
        return len(self._viewers)

    def viewers(self) -> Iterator[Connection]:
        """Viewers in registration order (snapshot)."""
        return iter([self._viewers[i] for i in sorted(self._viewers)])

    def __len__(self) -> int:
        return len(self._connections)
