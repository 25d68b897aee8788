"""Durable store ports and in-memory adapters.

Two ports separate the concerns the supervisor persists:

- :class:`DeviceStore` — device configuration and status, plus the
  compare-and-set ownership write.
- :class:`CredentialBackend` — raw credential documents keyed by device.

Adapters raise :class:`~devicelink._errors.StoreError` for I/O failures.
The in-memory adapters back development, dry-run and tests; see
:mod:`devicelink._postgrest` for the remote adapter.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from devicelink._models import Device, DeviceStatus

logger = logging.getLogger(__name__)

DEVICE_FIELDS: frozenset[str] = frozenset(
    f.name for f in dataclasses.fields(Device) if f.name != "device_id"
)
"""Device attributes writable through :meth:`DeviceStore.update`."""

# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class DeviceStore(Protocol):
    """Device configuration source and status sink."""

    async def get(self, device_id: str) -> Device | None:
        """Return the device, or ``None`` when it does not exist."""
        ...

    async def update(self, device_id: str, fields: Mapping[str, object]) -> None:
        """Overwrite *fields* on the device.  Unknown devices are ignored."""
        ...

    async def list_by_status(self, statuses: Collection[DeviceStatus]) -> list[Device]:
        """Return every device whose status is in *statuses*."""
        ...

    async def claim(
        self,
        device_id: str,
        instance_id: str,
        *,
        expected: str | None,
        assigned_at: datetime,
    ) -> bool:
        """Compare-and-set ``assigned_instance_id``.

        Sets the owner to *instance_id* only when the current owner equals
        *expected*; returns whether the write happened.  Passing
        ``instance_id=""`` with ``expected=<owner>`` releases ownership.
        """
        ...


@runtime_checkable
class CredentialBackend(Protocol):
    """Persistence for serialised credential documents."""

    async def read(self, device_id: str) -> dict[str, Any] | None:
        """Return the stored document, or ``None``."""
        ...

    async def write(self, device_id: str, document: dict[str, Any] | None) -> None:
        """Replace the stored document; ``None`` deletes it."""
        ...


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------


@dataclass
class MemoryDeviceStore:
    """Process-local :class:`DeviceStore`.

    Returned devices are copies, so callers never mutate stored state
    outside :meth:`update`.
    """

    _devices: dict[str, Device] = field(default_factory=dict, repr=False)

    def add(self, device: Device) -> Device:
        """Insert or replace *device* (admin action)."""
        self._devices[device.device_id] = dataclasses.replace(device)
        return device

    def remove(self, device_id: str) -> None:
        """Delete a device (admin action)."""
        self._devices.pop(device_id, None)

    def peek(self, device_id: str) -> Device:
        """Synchronous read for assertions.  Raises ``KeyError``."""
        return dataclasses.replace(self._devices[device_id])

    async def get(self, device_id: str) -> Device | None:
        device = self._devices.get(device_id)
        return dataclasses.replace(device) if device is not None else None

    async def update(self, device_id: str, fields: Mapping[str, object]) -> None:
        unknown = set(fields) - DEVICE_FIELDS
        if unknown:
            msg = f"Unknown device fields: {sorted(unknown)}"
            raise ValueError(msg)
        device = self._devices.get(device_id)
        if device is None:
            logger.debug("Update for unknown device %s ignored", device_id)
            return
        self._devices[device_id] = dataclasses.replace(device, **fields)  # type: ignore[arg-type]

    async def list_by_status(self, statuses: Collection[DeviceStatus]) -> list[Device]:
        wanted = set(statuses)
        return [
            dataclasses.replace(device)
            for device in self._devices.values()
            if device.status in wanted
        ]

    async def claim(
        self,
        device_id: str,
        instance_id: str,
        *,
        expected: str | None,
        assigned_at: datetime,
    ) -> bool:
        # No await between compare and set: atomic on the event loop.
        device = self._devices.get(device_id)
        if device is None or device.assigned_instance_id != expected:
            return False
        self._devices[device_id] = dataclasses.replace(
            device,
            assigned_instance_id=instance_id or None,
            assigned_at=assigned_at if instance_id else None,
        )
        return True


@dataclass
class MemoryCredentialBackend:
    """Process-local :class:`CredentialBackend` storing deep copies."""

    _documents: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)

    def peek(self, device_id: str) -> dict[str, Any] | None:
        """Synchronous read for assertions."""
        document = self._documents.get(device_id)
        return copy.deepcopy(document) if document is not None else None

    async def read(self, device_id: str) -> dict[str, Any] | None:
        return self.peek(device_id)

    async def write(self, device_id: str, document: dict[str, Any] | None) -> None:
        if document is None:
            self._documents.pop(device_id, None)
            return
        self._documents[device_id] = copy.deepcopy(document)
