"""Device ownership across backend instances.

Each device is owned by at most one backend instance.  Ownership is a
compare-and-set on ``assigned_instance_id``: a claim only succeeds when
the device is unassigned, so two instances racing for the same device
cannot both win.  Losing is not an error.
"""

from __future__ import annotations

import logging

from devicelink._clock import WallClock, utc_now
from devicelink._models import Device, OwnershipRecord
from devicelink._store import DeviceStore

logger = logging.getLogger(__name__)


class DeviceOwnershipAssigner:
    """Claims and releases devices for one backend instance.

    Args:
        store: Device store providing the compare-and-set write.
        instance_id: Identity of this instance.
        clock: Wall clock used for ``assigned_at``.
    """

    def __init__(
        self,
        store: DeviceStore,
        instance_id: str,
        *,
        clock: WallClock = utc_now,
    ) -> None:
        self._store = store
        self.instance_id = instance_id
        self._clock = clock

    def owns(self, device: Device) -> bool:
        """Whether *device* is assigned to this instance."""
        return device.assigned_instance_id == self.instance_id

    async def claim(self, device_id: str, instance_id: str | None = None) -> bool:
        """Claim *device_id* for *instance_id* (default: this instance).

        Returns ``True`` when the device is now owned by the claimant.
        Never raises: store failures and lost races are logged and
        reported as ``False``.
        """
        claimant = instance_id or self.instance_id
        assigned_at = self._clock()
        try:
            if await self._store.claim(
                device_id,
                claimant,
                expected=None,
                assigned_at=assigned_at,
            ):
                record = OwnershipRecord(device_id, claimant, assigned_at)
                logger.info("Device %s assigned to instance %s", record.device_id, record.instance_id)
                return True

            device = await self._store.get(device_id)
        except Exception as exc:
            logger.warning("Ownership claim for %s failed: %s", device_id, exc)
            return False

        if device is None:
            logger.warning("Ownership claim for %s: device not found", device_id)
            return False
        if device.assigned_instance_id == claimant:
            return True
        logger.warning(
            "Device %s already owned by %s, not claiming for %s",
            device_id,
            device.assigned_instance_id,
            claimant,
        )
        return False

    async def release(self, device_id: str) -> bool:
        """Clear ownership if this instance holds it.  Never raises."""
        try:
            released = await self._store.claim(
                device_id,
                "",
                expected=self.instance_id,
                assigned_at=self._clock(),
            )
        except Exception as exc:
            logger.warning("Ownership release for %s failed: %s", device_id, exc)
            return False
        if released:
            logger.info("Device %s released by instance %s", device_id, self.instance_id)
        return released
