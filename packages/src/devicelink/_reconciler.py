"""Periodic reconciliation of durable device status with live sessions.

Each pass compares what the device store says should be online
(``connecting`` / ``connected``) with the sessions this process holds:

- devices without a local session are connected (in recovery mode when
  they were ``connected``);
- ``connected`` devices whose session never authenticated are
  reconnected in recovery mode, superseding the stale session;
- devices stuck in ``connecting`` past the timeout are reset to
  ``disconnected`` with their credentials cleared;
- local sessions whose device is gone, stopped, or owned by another
  instance are retired.

In multi-instance mode unassigned devices are claimed first, and
devices owned elsewhere are left alone.  One failing device never
aborts a pass.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from devicelink._clock import WallClock, utc_now
from devicelink._errors import ConfigurationError, StoreError
from devicelink._logging import DeviceLoggerAdapter
from devicelink._models import ACTIVE_STATUSES, Device, DeviceStatus
from devicelink._ownership import DeviceOwnershipAssigner
from devicelink._store import DeviceStore
from devicelink._supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """What one reconciliation pass did, by device id."""

    connected: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    reset: list[str] = field(default_factory=list)
    retired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Reconciler:
    """Drives the supervisor towards the durable device state.

    Args:
        devices: Device store.
        supervisor: Supervisor owning the live sessions.
        assigner: Ownership assigner; ``None`` in single-instance mode.
        stuck_timeout: Seconds a device may stay ``connecting``.
        clock: Wall clock compared against ``updated_at``.
    """

    def __init__(
        self,
        devices: DeviceStore,
        supervisor: ConnectionSupervisor,
        *,
        assigner: DeviceOwnershipAssigner | None = None,
        stuck_timeout: float = 120.0,
        clock: WallClock = utc_now,
    ) -> None:
        self._devices = devices
        self._supervisor = supervisor
        self._assigner = assigner
        self._stuck_timeout = timedelta(seconds=stuck_timeout)
        self._clock = clock

    async def run(self, interval: float, shutdown_event: asyncio.Event) -> None:
        """Reconcile every *interval* seconds until *shutdown_event* is set."""
        while not shutdown_event.is_set():
            try:
                await self.run_once()
            except StoreError as exc:
                logger.warning("Reconciliation pass failed: %s", exc)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)

    async def run_once(self) -> ReconcileReport:
        """Run a single pass.

        Raises:
            StoreError: The active device list could not be read.
        """
        report = ReconcileReport()
        active = await self._devices.list_by_status(ACTIVE_STATUSES)
        handled: set[str] = set()

        for device in active:
            try:
                if await self._reconcile(device, report):
                    handled.add(device.device_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                DeviceLoggerAdapter(logger, device.device_id).exception("Reconciliation failed")
                report.failed.append(device.device_id)
                handled.add(device.device_id)

        for session in self._supervisor.sessions():
            if session.device_id in handled:
                continue
            if await self._supervisor.retire(session.device_id):
                report.retired.append(session.device_id)

        logger.info(
            "Reconciled %d devices (%d live sessions): %d connected, %d recovered, "
            "%d reset, %d retired",
            len(active),
            len(self._supervisor.registry),
            len(report.connected),
            len(report.recovered),
            len(report.reset),
            len(report.retired),
        )
        return report

    async def _reconcile(self, device: Device, report: ReconcileReport) -> bool:
        """Reconcile one device.  Returns whether this instance handles it."""
        device_id = device.device_id
        log = DeviceLoggerAdapter(logger, device_id)

        if self._assigner is not None:
            if device.assigned_instance_id is None:
                if not await self._assigner.claim(device_id):
                    report.skipped.append(device_id)
                    return False
            elif not self._assigner.owns(device):
                log.debug("Owned by %s, skipping", device.assigned_instance_id)
                report.skipped.append(device_id)
                return False

        session = self._supervisor.registry.get(device_id)
        authenticated = session is not None and session.authenticated

        if not authenticated and self._is_stuck(device):
            stuck_for = int((self._clock() - device.updated_at).total_seconds())  # type: ignore[operator]
            log.warning("Stuck in connecting for %ds, clearing session", stuck_for)
            await self._supervisor.disconnect(
                device_id,
                clear_credentials=True,
                reason=f"Connection stuck for {stuck_for}s - session cleared",
            )
            report.reset.append(device_id)
            return True

        if session is None:
            is_recovery = device.status is DeviceStatus.CONNECTED
            await self._connect(device_id, is_recovery=is_recovery, log=log)
            (report.recovered if is_recovery else report.connected).append(device_id)
        elif device.status is DeviceStatus.CONNECTED and not authenticated:
            log.info("Session not authenticated, attempting recovery")
            await self._connect(device_id, is_recovery=True, log=log)
            report.recovered.append(device_id)
        return True

    def _is_stuck(self, device: Device) -> bool:
        if device.status is not DeviceStatus.CONNECTING or device.updated_at is None:
            return False
        return self._clock() - device.updated_at > self._stuck_timeout

    async def _connect(
        self,
        device_id: str,
        *,
        is_recovery: bool,
        log: DeviceLoggerAdapter,
    ) -> None:
        try:
            await self._supervisor.connect(device_id, is_recovery=is_recovery)
        except ConfigurationError as exc:
            log.error("Cannot connect: %s", exc)
