"""Connection supervisor: one supervised protocol session per device.

:class:`ConnectionSupervisor` opens protocol sessions, consumes each
session's event stream in a dedicated dispatch task, and applies the
:class:`~devicelink._policy.ReconnectionPolicy` when a session closes.

Runtime states per device (see :class:`~devicelink._registry.SessionState`)::

    uninitialized → connecting → awaiting_enrollment (qr | pairing)
                  → connected → closing → {connecting | disconnected | error}

Ordering rules:

- ``connect`` and ``disconnect`` for one device are serialised by a
  per-device lock; different devices never wait on each other.
- Events of one session are handled in delivery order by its dispatch
  task.
- A session is removed from the registry before any reconnect is
  scheduled, so a device never has two live sessions.
- The reaction to a close is decided under the device lock, so it
  observes a ``disconnect`` that was in flight when the session ended.
- Reconnect timers re-read the durable status under the device lock
  and cancel themselves if the device was stopped in the meantime.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping

from devicelink._clock import WallClock, utc_now
from devicelink._credentials import CredentialStore
from devicelink._errors import ConfigurationError, ConflictError, ErrorPublisher, StoreError
from devicelink._health import HealthReporter
from devicelink._logging import DeviceLoggerAdapter
from devicelink._models import ConnectionMethod, Credentials, Device, DeviceStatus
from devicelink._ownership import DeviceOwnershipAssigner
from devicelink._pairing import PairingCoordinator
from devicelink._policy import (
    Action,
    DisconnectCause,
    ReconnectionPolicy,
    RetryFresh,
    RetryWithCredentials,
    StopAndClearSession,
    StopAndReportConflict,
    StopNoAction,
)
from devicelink._protocol import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    EnrollmentArtifact,
    MessageReceived,
    ProtocolPort,
    SessionEvent,
)
from devicelink._registry import Session, SessionRegistry, SessionState
from devicelink._store import DeviceStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
"""``asyncio.sleep``-compatible coroutine function."""

LOGGED_OUT_MESSAGE = "Logged out remotely. Re-enroll the device to reconnect."


class ConnectionSupervisor:
    """Opens, supervises, reconnects and retires device sessions.

    Args:
        protocol: Protocol library adapter.
        devices: Device configuration source and status sink.
        credentials: Durable credential store.
        registry: Live session registry (one per process).
        policy: Reconnection decision table.
        pairing: Enrollment artifact coordinator.
        assigner: Ownership assigner; ``None`` in single-instance mode.
        errors: Publisher for user-visible errors (conflicts).
        health: Availability reporter.
        sleep: Delay primitive for reconnect timers and write retries.
        clock: Wall clock for durable timestamps.
        write_attempts: Attempts per durable device write.
        retry_backoff: Linear backoff base between write attempts.
    """

    def __init__(
        self,
        protocol: ProtocolPort,
        devices: DeviceStore,
        credentials: CredentialStore,
        *,
        registry: SessionRegistry | None = None,
        policy: ReconnectionPolicy | None = None,
        pairing: PairingCoordinator | None = None,
        assigner: DeviceOwnershipAssigner | None = None,
        errors: ErrorPublisher | None = None,
        health: HealthReporter | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: WallClock = utc_now,
        write_attempts: int = 3,
        retry_backoff: float = 0.2,
    ) -> None:
        self._protocol = protocol
        self._devices = devices
        self._credentials = credentials
        self._registry = registry if registry is not None else SessionRegistry()
        self._policy = policy if policy is not None else ReconnectionPolicy()
        self._pairing = pairing if pairing is not None else PairingCoordinator(devices, clock=clock)
        self._assigner = assigner
        self._errors = errors
        self._health = health
        self._sleep = sleep
        self._clock = clock
        self._write_attempts = max(1, write_attempts)
        self._retry_backoff = retry_backoff

        self._locks: dict[str, asyncio.Lock] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._saves: dict[str, set[asyncio.Task[None]]] = {}

    # -- Introspection -------------------------------------------------------

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def pending_reconnects(self) -> frozenset[str]:
        """Device ids with a scheduled reconnect timer."""
        return frozenset(
            device_id for device_id, task in self._timers.items() if not task.done()
        )

    def sessions(self) -> list[Session]:
        """Snapshot of all live sessions."""
        return self._registry.sessions()

    def is_connected(self, device_id: str) -> bool:
        """Whether *device_id* has a live, authenticated session here."""
        return self._registry.is_authenticated(device_id)

    # -- Entry points --------------------------------------------------------

    async def connect(self, device: Device | str, *, is_recovery: bool = False) -> bool:
        """Open a supervised session for *device*.

        Returns ``True`` when a session is live (newly opened or already
        authenticated), ``False`` when the store could not be read or the
        protocol session failed to open.  Open failures are recorded
        durably as ``status=error``.

        Raises:
            ConfigurationError: The device does not exist, or uses
                ``pairing`` without a phone number.
        """
        device_id = device if isinstance(device, str) else device.device_id
        async with self._lock(device_id):
            return await self._connect_locked(device_id, is_recovery=is_recovery)

    async def disconnect(
        self,
        device_id: str,
        *,
        clear_credentials: bool = False,
        reason: str | None = None,
    ) -> None:
        """Stop *device_id*: tear down its session and mark it disconnected.

        *reason*, when given, is stored as the device's ``error_message``.

        The durable ``status=disconnected`` write completes before this
        returns, so in-flight reconnect timers observe it.

        Raises:
            StoreError: The durable write failed after all retries.
        """
        log = DeviceLoggerAdapter(logger, device_id)
        await self._cancel_timer(device_id)
        async with self._lock(device_id):
            # A close handled while we waited may have scheduled a new timer.
            await self._cancel_timer(device_id)
            session = self._registry.remove(device_id)
            if session is not None:
                await self._teardown(session)
            fields: dict[str, object] = {
                "status": DeviceStatus.DISCONNECTED,
                "qr_code": None,
                "pairing_code": None,
            }
            if reason is not None:
                fields["error_message"] = reason
            await self._update(device_id, fields)
            if clear_credentials:
                await self._credentials.clear(device_id)
            if self._assigner is not None:
                await self._assigner.release(device_id)
            if self._health is not None and session is not None:
                await self._health.publish_device_unavailable(device_id)
        log.info("Disconnected")

    async def retire(self, device_id: str) -> bool:
        """Tear down the local session without touching durable state.

        Used when the device was deleted or stopped elsewhere.  Returns
        whether a session existed.
        """
        await self._cancel_timer(device_id)
        async with self._lock(device_id):
            session = self._registry.remove(device_id)
            if session is None:
                return False
            await self._teardown(session)
            if self._health is not None:
                await self._health.publish_device_unavailable(device_id)
        DeviceLoggerAdapter(logger, device_id).info("Session retired")
        return True

    async def refresh_liveness(self) -> int:
        """Touch ``last_connected_at`` for every authenticated session.

        Returns the number of devices refreshed.  Write failures are
        logged and skipped.
        """
        refreshed = 0
        now = self._clock()
        for session in self._registry.sessions():
            if not session.authenticated:
                continue
            try:
                await self._devices.update(
                    session.device_id,
                    {"last_connected_at": now, "updated_at": now},
                )
            except StoreError as exc:
                DeviceLoggerAdapter(logger, session.device_id).warning(
                    "Liveness refresh failed: %s",
                    exc,
                )
                continue
            refreshed += 1
        return refreshed

    async def shutdown(self) -> None:
        """Cancel timers and tear down every session.

        Durable status is left untouched so a restarted process
        recovers the same devices.
        """
        for device_id in list(self._timers):
            await self._cancel_timer(device_id)
        sessions = self._registry.sessions()
        for session in sessions:
            self._registry.remove(session.device_id, session)
            await self._teardown(session)
        pending = [task for tasks in self._saves.values() for task in tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Supervisor stopped (%d sessions closed)", len(sessions))

    # -- Connect -------------------------------------------------------------

    async def _connect_locked(
        self,
        device_id: str,
        *,
        is_recovery: bool,
        respect_stop: bool = False,
    ) -> bool:
        """Connect with the device lock held.

        With *respect_stop* (reconnect timers) an existing session of any
        kind, or a durable ``disconnected`` status, cancels the attempt.
        """
        log = DeviceLoggerAdapter(logger, device_id)

        existing = self._registry.get(device_id)
        if existing is not None and respect_stop:
            log.debug("Reconnect cancelled, session already live")
            return True
        if existing is not None:
            if existing.authenticated:
                log.debug("Already connected, nothing to do")
                return True
            log.info("Superseding unauthenticated session")
            self._registry.remove(device_id, existing)
            await self._teardown(existing)

        try:
            device = await self._devices.get(device_id)
        except StoreError as exc:
            log.warning("Cannot read device configuration: %s", exc)
            return False
        if device is None:
            msg = f"Unknown device {device_id!r}"
            raise ConfigurationError(msg)
        if respect_stop and device.status is DeviceStatus.DISCONNECTED:
            log.info("Reconnect cancelled, device was stopped")
            return False

        pairing_phone: str | None = None
        if device.connection_method is ConnectionMethod.PAIRING:
            if not device.phone_for_pairing:
                msg = "Pairing method requires a phone number"
                log.error(msg)
                await self._write_best_effort(
                    device_id,
                    {"status": DeviceStatus.ERROR, "error_message": msg},
                    log,
                )
                raise ConfigurationError(msg)
            pairing_phone = device.phone_for_pairing

        credentials = await self._credentials.load(device_id)
        has_valid_session = credentials.registered
        if is_recovery and not has_valid_session:
            log.info("No valid credentials, recovery downgraded to fresh connect")
            is_recovery = False

        log.info(
            "Connecting %s (method=%s, recovery=%s, valid_session=%s)",
            device.label,
            device.connection_method,
            is_recovery,
            has_valid_session,
        )
        if not is_recovery:
            await self._write_best_effort(
                device_id,
                {"status": DeviceStatus.CONNECTING, "error_message": None},
                log,
            )

        try:
            handle = await self._protocol.open(
                device_id,
                credentials,
                pairing_phone=None if has_valid_session else pairing_phone,
            )
        except Exception as exc:
            log.exception("Failed to open protocol session")
            await self._write_best_effort(
                device_id,
                {"status": DeviceStatus.ERROR, "error_message": str(exc) or "Connection error"},
                log,
            )
            return False

        session = Session(
            device_id=device_id,
            handle=handle,
            created_at=self._clock(),
            is_recovery=is_recovery,
            has_valid_session=has_valid_session,
            connection_method=device.connection_method,
            pairing_phone=pairing_phone,
        )
        # Unreachable while the device lock is held; guards the invariant.
        if not self._registry.insert_if_absent(session):
            log.warning("Session appeared concurrently, discarding new one")
            await self._close_handle(session, log)
            return True
        session.task = asyncio.create_task(
            self._run_session(session),
            name=f"devicelink-session-{device_id}",
        )
        return True

    # -- Dispatch ------------------------------------------------------------

    async def _run_session(self, session: Session) -> None:
        log = DeviceLoggerAdapter(logger, session.device_id)
        closed: ConnectionClosed | None = None
        try:
            async for event in session.handle.events():
                if isinstance(event, ConnectionClosed):
                    closed = event
                    break
                await self._dispatch(session, event, log)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("Session event stream failed")
            closed = ConnectionClosed(
                cause=DisconnectCause.TRANSPORT_ERROR,
                message=str(exc),
            )
        if closed is None:
            closed = ConnectionClosed(
                cause=DisconnectCause.CONNECTION_CLOSED,
                message="event stream ended",
            )
        await self._handle_close(session, closed, log)

    async def _dispatch(
        self,
        session: Session,
        event: SessionEvent,
        log: DeviceLoggerAdapter,
    ) -> None:
        try:
            if isinstance(event, ConnectionOpened):
                await self._on_open(session, event, log)
            elif isinstance(event, CredentialsUpdated):
                self._save_in_background(session.device_id, event.credentials)
            elif isinstance(event, EnrollmentArtifact):
                await self._pairing.handle(session, event)
            elif isinstance(event, MessageReceived):
                log.debug("Message from %s", event.sender)
            else:
                log.warning("Unhandled session event %r", event)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Handler for %s failed", type(event).__name__)

    async def _on_open(
        self,
        session: Session,
        event: ConnectionOpened,
        log: DeviceLoggerAdapter,
    ) -> None:
        session.authenticated = True
        session.state = SessionState.CONNECTED

        fields: dict[str, object] = {
            "status": DeviceStatus.CONNECTED,
            "last_connected_at": self._clock(),
            "qr_code": None,
            "pairing_code": None,
            "error_message": None,
        }
        if event.phone_number:
            fields["phone_number"] = event.phone_number
        await self._write_best_effort(session.device_id, fields, log)
        await self._pairing.clear(session.device_id)

        if self._assigner is not None:
            await self._claim_if_unowned(session.device_id, log)
        if self._health is not None:
            await self._health.publish_device_available(session.device_id)
        log.info(
            "Connected%s%s",
            f" as {event.phone_number}" if event.phone_number else "",
            " (recovered)" if session.is_recovery else "",
        )

    async def _claim_if_unowned(self, device_id: str, log: DeviceLoggerAdapter) -> None:
        assert self._assigner is not None
        try:
            device = await self._devices.get(device_id)
        except StoreError as exc:
            log.warning("Cannot read ownership: %s", exc)
            return
        if device is not None and device.assigned_instance_id is None:
            await self._assigner.claim(device_id)

    # -- Credentials ---------------------------------------------------------

    def _save_in_background(self, device_id: str, credentials: Credentials) -> None:
        snapshot = credentials.snapshot()
        task = asyncio.create_task(
            self._save_credentials(device_id, snapshot),
            name=f"devicelink-creds-{device_id}",
        )
        tasks = self._saves.setdefault(device_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _save_credentials(self, device_id: str, credentials: Credentials) -> None:
        try:
            await self._credentials.save(device_id, credentials)
        except StoreError as exc:
            DeviceLoggerAdapter(logger, device_id).warning(
                "Credential save failed, session continues: %s",
                exc,
            )

    async def _drain_saves(self, device_id: str) -> None:
        pending = list(self._saves.get(device_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- Close handling ------------------------------------------------------

    async def _handle_close(
        self,
        session: Session,
        event: ConnectionClosed,
        log: DeviceLoggerAdapter,
    ) -> None:
        device_id = session.device_id
        was_authenticated = session.authenticated
        session.state = SessionState.CLOSING
        session.authenticated = False

        removed = self._registry.remove(device_id, session)
        await self._close_handle(session, log)
        if removed is None:
            log.debug("Superseded session closed")
            return
        if self._health is not None:
            if was_authenticated:
                await self._health.publish_device_unavailable(device_id)
            else:
                self._health.remove_device(device_id)

        await self._drain_saves(device_id)
        async with self._lock(device_id):
            if device_id in self._registry:
                log.info("Newer session already live, close not acted on")
                return
            await self._decide_and_apply(device_id, event, log)

    async def _decide_and_apply(
        self,
        device_id: str,
        event: ConnectionClosed,
        log: DeviceLoggerAdapter,
    ) -> None:
        user_stopped = False
        try:
            device = await self._devices.get(device_id)
        except StoreError as exc:
            log.warning("Cannot read durable status after close: %s", exc)
        else:
            if device is None:
                log.info("Device no longer exists, not reconnecting")
                return
            user_stopped = device.status is DeviceStatus.DISCONNECTED

        credentials = await self._credentials.load(device_id)
        action = self._policy.decide(
            event.cause,
            credentials.registered,
            user_stopped=user_stopped,
        )
        log.info(
            "Session closed (cause=%s, code=%s): %s",
            event.cause,
            event.status_code,
            action,
        )
        await self._apply(device_id, action, event, log)

    async def _apply(
        self,
        device_id: str,
        action: Action,
        event: ConnectionClosed,
        log: DeviceLoggerAdapter,
    ) -> None:
        if isinstance(action, StopNoAction):
            log.info("Device stopped by user, not reconnecting")
        elif isinstance(action, StopAndReportConflict):
            await self._clear_credentials(device_id, log)
            await self._write_best_effort(
                device_id,
                {
                    "status": DeviceStatus.ERROR,
                    "error_message": action.message,
                    "qr_code": None,
                    "pairing_code": None,
                },
                log,
            )
            if self._errors is not None:
                await self._errors.publish(
                    ConflictError(action.message),
                    device=device_id,
                    details={"cause": str(event.cause), "status_code": event.status_code},
                )
        elif isinstance(action, StopAndClearSession):
            await self._clear_credentials(device_id, log)
            await self._write_best_effort(
                device_id,
                {
                    "status": DeviceStatus.DISCONNECTED,
                    "phone_number": None,
                    "qr_code": None,
                    "pairing_code": None,
                    "error_message": LOGGED_OUT_MESSAGE,
                },
                log,
            )
            if self._assigner is not None:
                await self._assigner.release(device_id)
        elif isinstance(action, RetryFresh):
            if action.clear_session:
                await self._clear_credentials(device_id, log)
            self._schedule(device_id, action.delay, is_recovery=False)
        elif isinstance(action, RetryWithCredentials):
            self._schedule(device_id, action.delay, is_recovery=True)

    async def _clear_credentials(self, device_id: str, log: DeviceLoggerAdapter) -> None:
        try:
            await self._credentials.clear(device_id)
        except StoreError as exc:
            log.warning("Credential clear failed: %s", exc)

    # -- Timers --------------------------------------------------------------

    def _schedule(self, device_id: str, delay: float, *, is_recovery: bool) -> None:
        existing = self._timers.get(device_id)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()
        task = asyncio.create_task(
            self._reconnect_after(device_id, delay, is_recovery=is_recovery),
            name=f"devicelink-reconnect-{device_id}",
        )
        self._timers[device_id] = task
        task.add_done_callback(lambda done: self._forget_timer(device_id, done))
        DeviceLoggerAdapter(logger, device_id).info(
            "Reconnecting in %.1fs (recovery=%s)",
            delay,
            is_recovery,
        )

    def _forget_timer(self, device_id: str, task: asyncio.Task[None]) -> None:
        if self._timers.get(device_id) is task:
            del self._timers[device_id]

    async def _cancel_timer(self, device_id: str) -> None:
        task = self._timers.pop(device_id, None)
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _reconnect_after(self, device_id: str, delay: float, *, is_recovery: bool) -> None:
        log = DeviceLoggerAdapter(logger, device_id)
        await self._sleep(delay)

        try:
            device = await self._devices.get(device_id)
        except StoreError as exc:
            log.warning("Reconnect skipped, cannot read device: %s", exc)
            return
        if device is None:
            log.info("Reconnect cancelled, device no longer exists")
            return
        if device.status is DeviceStatus.DISCONNECTED:
            log.info("Reconnect cancelled, device was stopped")
            return
        if device_id in self._registry:
            log.debug("Reconnect cancelled, session already live")
            return

        try:
            # Status may change while waiting for the lock; re-read under it.
            async with self._lock(device_id):
                await self._connect_locked(device_id, is_recovery=is_recovery, respect_stop=True)
        except ConfigurationError as exc:
            log.error("Reconnect failed: %s", exc)

    # -- Teardown & writes ---------------------------------------------------

    async def _teardown(self, session: Session) -> None:
        log = DeviceLoggerAdapter(logger, session.device_id)
        session.state = SessionState.CLOSING
        session.authenticated = False
        task = session.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_handle(session, log)

    @staticmethod
    async def _close_handle(session: Session, log: DeviceLoggerAdapter) -> None:
        try:
            await session.handle.close()
        except Exception as exc:
            log.warning("Error closing protocol session: %s", exc)

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    async def _update(self, device_id: str, fields: Mapping[str, object]) -> None:
        """Durable device write with retries.

        Raises:
            StoreError: Every attempt failed.
        """
        payload = {**fields, "updated_at": self._clock()}
        for attempt in range(1, self._write_attempts + 1):
            try:
                await self._devices.update(device_id, payload)
            except StoreError as exc:
                if attempt == self._write_attempts:
                    DeviceLoggerAdapter(logger, device_id).error(
                        "Device write failed after %d attempts: %s",
                        attempt,
                        exc,
                    )
                    raise
                DeviceLoggerAdapter(logger, device_id).warning(
                    "Device write failed (attempt %d/%d): %s",
                    attempt,
                    self._write_attempts,
                    exc,
                )
                await self._sleep(self._retry_backoff * attempt)
            else:
                return

    async def _write_best_effort(
        self,
        device_id: str,
        fields: Mapping[str, object],
        log: DeviceLoggerAdapter,
    ) -> bool:
        try:
            await self._update(device_id, fields)
        except StoreError:
            log.warning("Continuing without durable write of %s", sorted(fields))
            return False
        return True
