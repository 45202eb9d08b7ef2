"""
PIN and session authentication for Desk Relay.

A fresh 6-digit PIN is generated once per process start and shown on the
local machine only. Remote devices trade the PIN for a bearer session token
which they present when opening the broker channel. Repeated wrong PINs from
one address lock that address out for a while; other addresses are not
affected.
"""

import asyncio
import hashlib
import hmac
import ipaddress
import logging
import math
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional


logger = logging.getLogger(__name__)

PIN_LENGTH = 6
MAX_ATTEMPTS = 5
LOCKOUT_SECONDS = 5 * 60
SESSION_TTL = 24 * 60 * 60
SWEEP_INTERVAL = 60 * 60


class FailureReason(str, Enum):
    INVALID_PIN = "invalid_pin"
    LOCKED = "locked"


@dataclass(frozen=True)
class PinVerification:
    """Outcome of a PIN check."""

    success: bool
    reason: Optional[FailureReason] = None
    remaining_attempts: Optional[int] = None
    retry_after: Optional[int] = None

    def to_dict(self) -> dict:
        data: dict = {"success": self.success}
        if self.reason is not None:
            data["error"] = self.reason.value
        if self.remaining_attempts is not None:
            data["remainingAttempts"] = self.remaining_attempts
        if self.retry_after is not None:
            data["retryAfter"] = self.retry_after
        return data


@dataclass
class _Attempts:
    count: int = 0
    locked_until: Optional[float] = None


@dataclass(frozen=True)
class Session:
    created_at: float
    address: str


def hash_pin(pin: str) -> str:
    """SHA-256 hex digest of a PIN."""
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()


def is_local_address(address: Optional[str]) -> bool:
    """
    Check whether a peer address belongs to this machine.

    Loopback IPv4/IPv6 and IPv4-mapped loopback (``::ffff:127.0.0.1``)
    count as local. Anything unparsable is treated as remote.
    """
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback


class AuthGuard:
    """
    PIN lifecycle, brute-force lockout and session tokens.

    All state lives in memory and is owned by the event loop that uses the
    guard, so no locking is done here.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        lockout_seconds: float = LOCKOUT_SECONDS,
        session_ttl: float = SESSION_TTL,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.max_attempts = max(1, max_attempts)
        self.lockout_seconds = lockout_seconds
        self.session_ttl = session_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._pin: Optional[str] = None
        self._pin_hash: Optional[str] = None
        self._attempts: Dict[str, _Attempts] = {}
        self._sessions: Dict[str, Session] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # PIN
    # ------------------------------------------------------------------

    def generate_pin(self) -> str:
        """Create a new random PIN; the previous one stops working at once."""
        pin = f"{secrets.randbelow(10 ** PIN_LENGTH):0{PIN_LENGTH}d}"
        self._pin = pin
        self._pin_hash = hash_pin(pin)
        return pin

    @property
    def current_pin(self) -> Optional[str]:
        """Plaintext PIN, for display on the local machine only."""
        return self._pin

    def verify_pin(self, candidate: object, address: str) -> PinVerification:
        """
        Check a PIN submitted from ``address``.

        A locked address is refused without consuming an attempt. A wrong
        PIN counts towards the lockout; the attempt that reaches
        ``max_attempts`` starts the lockout and is reported as locked.
        """
        now = self._clock()
        tracker = self._attempts.get(address)

        if tracker is not None and tracker.locked_until is not None:
            if now < tracker.locked_until:
                return PinVerification(
                    success=False,
                    reason=FailureReason.LOCKED,
                    retry_after=max(1, math.ceil(tracker.locked_until - now)),
                )
            # Lockout has run out: start counting afresh
            del self._attempts[address]
            tracker = None

        if self._matches(candidate):
            self._attempts.pop(address, None)
            return PinVerification(success=True)

        if tracker is None:
            tracker = self._attempts[address] = _Attempts()
        tracker.count += 1

        if tracker.count >= self.max_attempts:
            tracker.locked_until = now + self.lockout_seconds
            logger.warning(
                "Locked out %s for %ss after %d failed PIN attempts",
                address, self.lockout_seconds, tracker.count,
            )
            return PinVerification(
                success=False,
                reason=FailureReason.LOCKED,
                retry_after=max(1, math.ceil(self.lockout_seconds)),
            )

        remaining = self.max_attempts - tracker.count
        logger.info("Wrong PIN from %s (%d attempts left)", address, remaining)
        return PinVerification(
            success=False,
            reason=FailureReason.INVALID_PIN,
            remaining_attempts=remaining,
        )

    def _matches(self, candidate: object) -> bool:
        if self._pin_hash is None or not isinstance(candidate, str):
            return False
        return hmac.compare_digest(hash_pin(candidate), self._pin_hash)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, address: str) -> str:
        token = secrets.token_hex(32)
        self._sessions[token] = Session(created_at=self._clock(), address=address)
        logger.info("Session created for %s", address)
        return token

    def validate_session(self, token: Optional[str]) -> bool:
        if not token:
            return False
        session = self._sessions.get(token)
        if session is None:
            return False
        if self._expired(session, self._clock()):
            del self._sessions[token]
            return False
        return True

    def remove_session(self, token: Optional[str]) -> bool:
        """Log a token out. Returns whether it existed."""
        if not token:
            return False
        return self._sessions.pop(token, None) is not None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def sweep_expired(self) -> int:
        """Drop every session past its TTL. Returns how many were removed."""
        now = self._clock()
        expired = [t for t, s in self._sessions.items() if self._expired(s, now)]
        for token in expired:
            del self._sessions[token]
        if expired:
            logger.debug("Swept %d expired sessions", len(expired))
        return len(expired)

    def _expired(self, session: Session, now: float) -> bool:
        return now - session.created_at > self.session_ttl

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic session sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
