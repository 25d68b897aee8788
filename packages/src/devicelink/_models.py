"""Domain model for the device connection lifecycle.

Durable entities (:class:`Device`, :class:`Credentials`,
:class:`OwnershipRecord`) mirror what the device store persists.
Runtime-only state lives on :class:`~devicelink._registry.Session`.
"""

from __future__ import annotations

import base64
import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ConnectionMethod(StrEnum):
    """Enrollment path used when a device has no valid credentials."""

    QR = "qr"
    PAIRING = "pairing"


class DeviceStatus(StrEnum):
    """Durable device status rendered by downstream UIs.

    Enrollment sub-states are runtime-only (see
    :class:`~devicelink._registry.SessionState`); while enrollment is
    pending the durable status stays ``connecting``.
    """

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


ACTIVE_STATUSES: frozenset[DeviceStatus] = frozenset(
    {DeviceStatus.CONNECTING, DeviceStatus.CONNECTED},
)
"""Statuses for which a device is expected to hold a live session."""


@dataclass(slots=True)
class Device:
    """A registered client identity requiring its own protocol session."""

    device_id: str
    display_name: str = ""
    connection_method: ConnectionMethod = ConnectionMethod.QR
    phone_for_pairing: str | None = None
    status: DeviceStatus = DeviceStatus.UNINITIALIZED
    assigned_instance_id: str | None = None
    assigned_at: datetime | None = None
    phone_number: str | None = None
    error_message: str | None = None
    qr_code: str | None = None
    pairing_code: str | None = None
    last_connected_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def label(self) -> str:
        """Display name, falling back to the device id."""
        return self.display_name or self.device_id


@dataclass(frozen=True, slots=True)
class OwnershipRecord:
    """Which backend instance currently owns a device."""

    device_id: str
    instance_id: str
    assigned_at: datetime


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

_BYTES_TAG = "__bytes__"


def _encode(value: Any) -> Any:
    """Recursively convert *value* into a JSON-safe structure.

    ``bytes`` become ``{"__bytes__": "<base64>"}``.  Containers are
    rebuilt, so the result never aliases the input.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    """Inverse of :func:`_encode`."""
    if isinstance(value, dict):
        if set(value) == {_BYTES_TAG}:
            return base64.b64decode(value[_BYTES_TAG])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


@dataclass(slots=True)
class Credentials:
    """Protocol identity/session key material for one device.

    ``creds`` is the identity blob handed to the protocol library;
    ``keys`` caches per-recipient key material as
    ``{key_type: {key_id: blob}}``.  Both are opaque to devicelink
    apart from the ``registered`` flag.
    """

    creds: dict[str, Any] = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> Credentials:
        """Freshly initialised, unregistered credentials."""
        return cls(creds={"registered": False}, keys={})

    @property
    def registered(self) -> bool:
        """Whether these credentials belong to an enrolled session."""
        return bool(self.creds.get("registered", False))

    def snapshot(self) -> Credentials:
        """Deep copy, detached from later mutation by the protocol."""
        return Credentials(creds=copy.deepcopy(self.creds), keys=copy.deepcopy(self.keys))

    def to_document(self, *, saved_at: datetime | None = None) -> dict[str, Any]:
        """Serialise to a JSON-safe document for the credential backend."""
        document: dict[str, Any] = {
            "creds": _encode(self.creds),
            "keys": _encode(self.keys),
        }
        if saved_at is not None:
            document["saved_at"] = saved_at.isoformat()
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Credentials:
        """Rebuild credentials from a stored document.

        Missing ``creds`` yields empty credentials; missing ``keys``
        yields an empty key cache.
        """
        raw_creds = document.get("creds")
        creds = _decode(raw_creds) if raw_creds else {"registered": False}
        keys = _decode(document.get("keys") or {})
        return cls(creds=creds, keys=keys)
