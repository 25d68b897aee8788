"""Durable credential persistence.

:class:`CredentialStore` sits between the supervisor and a
:class:`~devicelink._store.CredentialBackend`.  Saves are full-overwrite
snapshots: the caller's credentials are serialised at call entry, so
later mutation by the protocol library cannot leak into an in-flight
write.  Writes for one device go through a per-device lock, which
serialises them in arrival order (last writer wins).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from devicelink._clock import WallClock, utc_now
from devicelink._errors import StoreError
from devicelink._models import Credentials
from devicelink._store import CredentialBackend

logger = logging.getLogger(__name__)


class CredentialStore:
    """Load, save and clear per-device credentials.

    Args:
        backend: Credential persistence adapter.
        clock: Wall clock used to stamp ``saved_at``.
    """

    def __init__(self, backend: CredentialBackend, *, clock: WallClock = utc_now) -> None:
        self._backend = backend
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._saved_at: dict[str, datetime] = {}

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def load(self, device_id: str) -> Credentials:
        """Return stored credentials, or empty ones.

        Missing, unreadable or corrupt documents all yield
        :meth:`Credentials.empty`, which forces a fresh enrollment.
        """
        try:
            document = await self._backend.read(device_id)
        except Exception:
            logger.exception("Failed to read credentials for %s, starting fresh", device_id)
            return Credentials.empty()

        if not document:
            logger.debug("No stored credentials for %s", device_id)
            return Credentials.empty()

        try:
            return Credentials.from_document(document)
        except (TypeError, ValueError, AttributeError):
            logger.exception("Corrupt credential document for %s, starting fresh", device_id)
            return Credentials.empty()

    async def save(self, device_id: str, credentials: Credentials) -> None:
        """Persist a snapshot of *credentials*.

        Raises:
            StoreError: The backend write failed.
        """
        saved_at = self._clock()
        document = credentials.to_document(saved_at=saved_at)
        async with self._lock(device_id):
            try:
                await self._backend.write(device_id, document)
            except Exception as exc:
                logger.error("Failed to save credentials for %s: %s", device_id, exc)
                if isinstance(exc, StoreError):
                    raise
                msg = f"Credential save failed for {device_id}: {exc}"
                raise StoreError(msg) from exc
            self._saved_at[device_id] = saved_at
        logger.debug("Saved credentials for %s", device_id)

    async def clear(self, device_id: str) -> None:
        """Delete stored credentials.

        Raises:
            StoreError: The backend write failed.
        """
        async with self._lock(device_id):
            try:
                await self._backend.write(device_id, None)
            except Exception as exc:
                logger.error("Failed to clear credentials for %s: %s", device_id, exc)
                if isinstance(exc, StoreError):
                    raise
                msg = f"Credential clear failed for {device_id}: {exc}"
                raise StoreError(msg) from exc
            self._saved_at.pop(device_id, None)
        logger.info("Cleared credentials for %s", device_id)

    def last_saved_at(self, device_id: str) -> datetime | None:
        """When this process last saved credentials for *device_id*."""
        return self._saved_at.get(device_id)
