"""Process-wide registry of live protocol sessions.

At most one :class:`Session` exists per ``device_id``.  The registry is
a plain dict touched only from the event loop, so every method is
atomic with respect to other tasks: none of them awaits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from devicelink._models import ConnectionMethod
from devicelink._protocol import ProtocolSession


class SessionState(StrEnum):
    """Runtime lifecycle state of one session."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    AWAITING_ENROLLMENT = "awaiting_enrollment"
    CONNECTED = "connected"
    CLOSING = "closing"


class PairingState(StrEnum):
    """Pairing-code progress for one session."""

    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    CODE_DELIVERED = "code_delivered"


@dataclass(eq=False)
class Session:
    """Runtime state of one live protocol connection.

    Sessions compare by identity: a superseded session must never be
    mistaken for its replacement.
    """

    device_id: str
    handle: ProtocolSession
    created_at: datetime
    is_recovery: bool = False
    has_valid_session: bool = False
    connection_method: ConnectionMethod = ConnectionMethod.QR
    pairing_phone: str | None = None
    state: SessionState = SessionState.CONNECTING
    authenticated: bool = False
    pairing_code_requested: bool = False
    pairing_state: PairingState = PairingState.IDLE
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def awaiting_enrollment(self) -> bool:
        """Whether the session still needs a QR scan or pairing code."""
        return not self.has_valid_session and not self.is_recovery


class SessionRegistry:
    """Mapping ``device_id`` → :class:`Session`."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def insert_if_absent(self, session: Session) -> bool:
        """Register *session* unless one already exists for its device."""
        if session.device_id in self._sessions:
            return False
        self._sessions[session.device_id] = session
        return True

    def remove(self, device_id: str, session: Session | None = None) -> Session | None:
        """Remove and return the session for *device_id*.

        With *session*, removal only happens when the registered entry
        is that exact object.
        """
        current = self._sessions.get(device_id)
        if current is None:
            return None
        if session is not None and current is not session:
            return None
        del self._sessions[device_id]
        return current

    def get(self, device_id: str) -> Session | None:
        return self._sessions.get(device_id)

    def is_authenticated(self, device_id: str) -> bool:
        """Whether *device_id* has a live authenticated session."""
        session = self._sessions.get(device_id)
        return session is not None and session.authenticated

    def sessions(self) -> list[Session]:
        """Snapshot of all live sessions."""
        return list(self._sessions.values())

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))
