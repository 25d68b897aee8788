"""Protocol library port and session event enumeration.

devicelink treats the messaging protocol implementation (framing,
encryption, device pairing cryptography) as a black box.  Adapters
translate the library's callbacks into a single ordered stream of
:data:`SessionEvent` values, consumed by one dispatch task per session:

- :class:`ConnectionOpened` — the session authenticated.
- :class:`ConnectionClosed` — the session ended, with a classified cause.
- :class:`CredentialsUpdated` — identity/key material changed.
- :class:`EnrollmentArtifact` — a QR payload or pairing code to show.
- :class:`MessageReceived` — inbound message (pipeline is external).

Adapters are selected with an import string in
``Settings.protocol.factory`` (``"package.module:attribute"``).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

from devicelink._models import Credentials
from devicelink._policy import DisconnectCause

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConnectionOpened:
    """The protocol session authenticated successfully."""

    phone_number: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    """The protocol session closed."""

    cause: DisconnectCause = DisconnectCause.UNKNOWN
    status_code: int | None = None
    message: str = ""

    @classmethod
    def from_status(cls, status_code: int | None, message: str = "") -> ConnectionClosed:
        """Build an event, classifying the cause from code and message."""
        return cls(
            cause=DisconnectCause.from_status(status_code, message),
            status_code=status_code,
            message=message,
        )


@dataclass(frozen=True, slots=True)
class CredentialsUpdated:
    """Credential material changed and must be persisted."""

    credentials: Credentials


@dataclass(frozen=True, slots=True)
class EnrollmentArtifact:
    """Enrollment material emitted while unauthenticated.

    Exactly one of ``qr`` or ``pairing_code`` is normally set.
    """

    qr: str | None = None
    pairing_code: str | None = None


@dataclass(frozen=True, slots=True)
class MessageReceived:
    """An inbound protocol message."""

    sender: str
    payload: dict[str, Any] = field(default_factory=dict)


SessionEvent: TypeAlias = (
    ConnectionOpened
    | ConnectionClosed
    | CredentialsUpdated
    | EnrollmentArtifact
    | MessageReceived
)

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class ProtocolSession(Protocol):
    """One live protocol connection."""

    def events(self) -> AsyncIterator[SessionEvent]:
        """Ordered event stream; ends when the transport is gone."""
        ...

    async def request_pairing_code(self, phone_number: str) -> str | None:
        """Ask the library for a numeric pairing code.

        Returns the code, or ``None`` when the library delivers it later
        as an :class:`EnrollmentArtifact`.
        """
        ...

    async def close(self) -> None:
        """Close the underlying transport.  Idempotent."""
        ...


@runtime_checkable
class ProtocolPort(Protocol):
    """Factory for protocol sessions."""

    async def open(
        self,
        device_id: str,
        credentials: Credentials,
        *,
        pairing_phone: str | None = None,
    ) -> ProtocolSession:
        """Open a session for *device_id* using *credentials*.

        ``pairing_phone`` is set when the device enrolls with a pairing
        code instead of a QR scan.
        """
        ...
