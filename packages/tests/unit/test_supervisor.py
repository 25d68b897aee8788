"""Tests for devicelink._supervisor — ConnectionSupervisor.

Test Techniques Used:
    - State-based Testing: session lifecycle transitions
    - Decision Table Testing: close cause → durable outcome
    - Concurrency Testing: racing connects and pending timers
    - Error Guessing: store failures and protocol open failures
    - Mock-based Isolation: FakeProtocol, FakeSleeper, MockMqttClient
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

import pytest

from devicelink._errors import ConfigurationError, StoreError
from devicelink._models import ConnectionMethod, DeviceStatus
from devicelink._policy import CONFLICT_MESSAGE
from devicelink._protocol import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    EnrollmentArtifact,
    MessageReceived,
)
from devicelink._registry import SessionState
from devicelink._supervisor import LOGGED_OUT_MESSAGE
from devicelink.testing import SupervisorHarness, registered_credentials
from tests.fixtures.stores import FlakyDeviceStore, GatedCredentialBackend, GatedDeviceStore

PHONE = "15550001111"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def blocking() -> AsyncIterator[SupervisorHarness]:
    """Harness whose reconnect timers wait for an explicit release."""
    harness = SupervisorHarness.create(block_timers=True)
    yield harness
    await harness.shutdown()


async def connect_and_open(
    harness: SupervisorHarness,
    device_id: str = "dev-1",
    *,
    seed: bool = True,
) -> None:
    """Connect *device_id* and drive its session to authenticated."""
    if seed:
        await harness.seed_credentials(device_id)
    await harness.supervisor.connect(device_id)
    harness.session(device_id).emit(ConnectionOpened(PHONE))
    await harness.settle()


def availability(harness: SupervisorHarness, device_id: str = "dev-1") -> list[str]:
    topic = f"test/{device_id}/availability"
    return [payload for payload, _retain, _qos in harness.mqtt.get_messages_for(topic)]


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


class TestConnect:
    """Technique: State-based Testing — opening sessions."""

    async def test_fresh_connect_marks_connecting(self, harness: SupervisorHarness) -> None:
        """A device without credentials opens a fresh session."""
        harness.add_device("dev-1")

        assert await harness.supervisor.connect("dev-1") is True

        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTING
        session = harness.registry.get("dev-1")
        assert session is not None
        assert session.state is SessionState.CONNECTING
        assert session.is_recovery is False
        assert session.has_valid_session is False
        assert harness.session().credentials.registered is False

    async def test_connect_accepts_device_object(self, harness: SupervisorHarness) -> None:
        """connect() takes a Device as well as an id."""
        device = harness.add_device("dev-1")

        assert await harness.supervisor.connect(device) is True
        assert "dev-1" in harness.registry

    async def test_connect_logs_display_name(
        self,
        harness: SupervisorHarness,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Connect attempts name the device the way dashboards do."""
        harness.add_device("dev-1", display_name="Front desk")
        caplog.set_level(logging.INFO, logger="devicelink._supervisor")

        await harness.supervisor.connect("dev-1")

        assert "[dev-1] Connecting Front desk (method=qr" in caplog.text

    async def test_connected_device_is_left_alone(self, harness: SupervisorHarness) -> None:
        """connect() on an authenticated session is a no-op."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        assert await harness.supervisor.connect("dev-1") is True
        assert len(harness.protocol.opened) == 1

    async def test_unauthenticated_session_is_superseded(self, harness: SupervisorHarness) -> None:
        """A second connect replaces a session that never authenticated."""
        harness.add_device("dev-1")
        await harness.supervisor.connect("dev-1")
        first = harness.session()

        await harness.supervisor.connect("dev-1")
        await harness.settle()

        assert first.closed is True
        assert len(harness.protocol.opened) == 2
        assert len(harness.registry) == 1
        assert harness.registry.get("dev-1").handle is harness.session()  # type: ignore[union-attr]
        assert harness.sleeper.delays == []

    async def test_unknown_device_raises(self, harness: SupervisorHarness) -> None:
        """Connecting a device that does not exist is a configuration error."""
        with pytest.raises(ConfigurationError, match="ghost"):
            await harness.supervisor.connect("ghost")

    async def test_pairing_without_phone_raises(self, harness: SupervisorHarness) -> None:
        """Pairing devices need a phone number; the failure is durable."""
        harness.add_device("dev-1", connection_method=ConnectionMethod.PAIRING)

        with pytest.raises(ConfigurationError, match="phone number"):
            await harness.supervisor.connect("dev-1")

        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.ERROR
        assert device.error_message == "Pairing method requires a phone number"
        assert harness.protocol.opened == []

    async def test_pairing_phone_passed_when_enrolling(self, harness: SupervisorHarness) -> None:
        """A fresh pairing session is opened with the pairing phone."""
        harness.add_device(
            "dev-1",
            connection_method=ConnectionMethod.PAIRING,
            phone_for_pairing=PHONE,
        )

        await harness.supervisor.connect("dev-1")

        assert harness.session().pairing_phone == PHONE

    async def test_pairing_phone_omitted_with_valid_credentials(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """Registered credentials skip enrollment entirely."""
        harness.add_device(
            "dev-1",
            connection_method=ConnectionMethod.PAIRING,
            phone_for_pairing=PHONE,
        )
        await harness.seed_credentials()

        await harness.supervisor.connect("dev-1")

        assert harness.session().pairing_phone is None
        assert harness.session().credentials.registered is True

    async def test_open_failure_is_durable_error(self, harness: SupervisorHarness) -> None:
        """A protocol open failure records status=error and returns False."""
        harness.add_device("dev-1")
        harness.protocol.fail_next = RuntimeError("handshake refused")

        assert await harness.supervisor.connect("dev-1") is False

        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.ERROR
        assert device.error_message == "handshake refused"
        assert "dev-1" not in harness.registry

    async def test_recovery_without_credentials_is_downgraded(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """Recovery mode needs credentials; otherwise it is a fresh connect."""
        harness.add_device("dev-1", status=DeviceStatus.CONNECTED)

        await harness.supervisor.connect("dev-1", is_recovery=True)

        assert harness.registry.get("dev-1").is_recovery is False  # type: ignore[union-attr]
        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTING

    async def test_recovery_leaves_status_untouched(self, harness: SupervisorHarness) -> None:
        """A silent recovery does not flip the status to connecting."""
        harness.add_device("dev-1", status=DeviceStatus.CONNECTED)
        await harness.seed_credentials()

        await harness.supervisor.connect("dev-1", is_recovery=True)

        assert harness.registry.get("dev-1").is_recovery is True  # type: ignore[union-attr]
        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTED


class TestConcurrentConnect:
    """Technique: Concurrency Testing — single-session invariant."""

    async def test_racing_connects_leave_one_session(self, harness: SupervisorHarness) -> None:
        """Concurrent connects for one device never produce two live sessions."""
        harness.add_device("dev-1")

        results = await asyncio.gather(
            harness.supervisor.connect("dev-1"),
            harness.supervisor.connect("dev-1"),
            harness.supervisor.connect("dev-1"),
        )
        await harness.settle()

        assert all(results)
        assert len(harness.registry) == 1
        live = harness.registry.get("dev-1")
        assert live is not None
        open_handles = [s for s in harness.protocol.opened if not s.closed]
        assert open_handles == [live.handle]

    async def test_different_devices_connect_independently(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """Each device gets its own session."""
        for device_id in ("dev-1", "dev-2", "dev-3"):
            harness.add_device(device_id)

        await asyncio.gather(
            *(harness.supervisor.connect(d) for d in ("dev-1", "dev-2", "dev-3")),
        )

        assert sorted(harness.registry) == ["dev-1", "dev-2", "dev-3"]


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------


class TestSessionEvents:
    """Technique: State-based Testing — event dispatch."""

    async def test_open_marks_connected(self, harness: SupervisorHarness) -> None:
        """Authentication writes status, phone and liveness."""
        harness.add_device("dev-1", qr_code="stale", error_message="old")
        await connect_and_open(harness, seed=False)

        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.CONNECTED
        assert device.phone_number == PHONE
        assert device.last_connected_at == harness.clock()
        assert device.qr_code is None
        assert device.error_message is None
        assert harness.supervisor.is_connected("dev-1")
        assert harness.registry.get("dev-1").state is SessionState.CONNECTED  # type: ignore[union-attr]

    async def test_open_clears_enrollment_and_reports_online(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """The published artifact is withdrawn and the device goes online."""
        harness.add_device("dev-1")
        await harness.supervisor.connect("dev-1")
        harness.session().emit(EnrollmentArtifact(qr="QR-1"))
        await harness.settle()

        harness.session().emit(ConnectionOpened(PHONE))
        await harness.settle()

        assert harness.enrollment_messages() == [json.dumps({"qr": "QR-1"}), ""]
        assert availability(harness) == ["online"]
        assert harness.health.tracked_devices == {"dev-1": "connected"}

    async def test_credentials_update_is_persisted(self, harness: SupervisorHarness) -> None:
        """CredentialsUpdated events are saved in the background."""
        harness.add_device("dev-1")
        await harness.supervisor.connect("dev-1")
        creds = registered_credentials()

        harness.session().emit(CredentialsUpdated(creds))
        await harness.settle()

        assert await harness.credentials.load("dev-1") == creds

    async def test_failing_save_keeps_session(self, harness: SupervisorHarness) -> None:
        """A credential save failure is logged; the session continues."""

        async def refuse(device_id: str, document: object) -> None:
            raise StoreError("disk full")

        harness.add_device("dev-1")
        await connect_and_open(harness, seed=False)
        harness.backend.write = refuse  # type: ignore[method-assign]

        harness.session().emit(CredentialsUpdated(registered_credentials()))
        await harness.settle()

        assert harness.supervisor.is_connected("dev-1")

    async def test_messages_do_not_change_state(self, harness: SupervisorHarness) -> None:
        """Inbound messages are passed through without side effects."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().emit(MessageReceived("peer@example", {"text": "hi"}))
        await harness.settle()

        assert harness.supervisor.is_connected("dev-1")


# ---------------------------------------------------------------------------
# Close handling
# ---------------------------------------------------------------------------


class TestCloseHandling:
    """Technique: Decision Table Testing — close cause → outcome."""

    async def test_transient_close_recovers_with_credentials(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """A lost connection reconnects silently with stored credentials."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        first = harness.session()

        first.emit(ConnectionClosed.from_status(408))
        await harness.settle()

        assert first.closed is True
        assert harness.sleeper.delays == [0.5]
        assert len(harness.protocol.opened) == 2
        session = harness.registry.get("dev-1")
        assert session is not None
        assert session.is_recovery is True
        assert harness.session().credentials.registered is True
        assert availability(harness) == ["online", "offline"]

    async def test_stream_end_counts_as_transient(self, harness: SupervisorHarness) -> None:
        """An event stream that ends without a close event is reconnected."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().end()
        await harness.settle()

        assert harness.sleeper.delays == [0.5]
        assert len(harness.protocol.opened) == 2

    async def test_close_waits_for_pending_credential_save(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """Credentials saved just before the close count as valid."""
        harness.add_device("dev-1")
        await harness.supervisor.connect("dev-1")

        harness.session().emit(
            CredentialsUpdated(registered_credentials()),
            ConnectionClosed.from_status(515),
        )
        await harness.settle()

        assert harness.sleeper.delays == [1.5]
        assert harness.registry.get("dev-1").is_recovery is True  # type: ignore[union-attr]

    async def test_auth_failure_clears_and_reenrolls(self, harness: SupervisorHarness) -> None:
        """Rejected credentials are discarded and a fresh session opened."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().emit(ConnectionClosed.from_status(500))
        await harness.settle()

        assert harness.backend.peek("dev-1") is None
        assert harness.sleeper.delays == [1.0]
        assert harness.session().credentials.registered is False
        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTING

    async def test_logged_out_is_terminal(self, harness: SupervisorHarness) -> None:
        """Remote logout clears credentials and stops."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().emit(ConnectionClosed.from_status(401))
        await harness.settle()

        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.DISCONNECTED
        assert device.phone_number is None
        assert device.error_message == LOGGED_OUT_MESSAGE
        assert harness.backend.peek("dev-1") is None
        assert harness.sleeper.delays == []
        assert len(harness.registry) == 0

    async def test_conflict_is_terminal_and_reported(self, harness: SupervisorHarness) -> None:
        """A conflict records the error and publishes it; no reconnect."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().emit(ConnectionClosed.from_status(440))
        await harness.settle()

        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.ERROR
        assert device.error_message == CONFLICT_MESSAGE
        assert harness.backend.peek("dev-1") is None
        assert harness.sleeper.delays == []
        payloads = harness.mqtt.get_messages_for("test/dev-1/error")
        assert len(payloads) == 1
        body = json.loads(payloads[0][0])
        assert body["error_type"] == "conflict"
        assert body["details"]["status_code"] == 440

    async def test_connect_after_conflict_requires_enrollment(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """A manual connect after a conflict starts from scratch."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        harness.session().emit(ConnectionClosed.from_status(440))
        await harness.settle()

        assert await harness.supervisor.connect("dev-1") is True
        harness.session().emit(EnrollmentArtifact(qr="QR-9"))
        await harness.settle()

        assert harness.session().credentials.registered is False
        assert harness.enrollment_messages()[-1] == json.dumps({"qr": "QR-9"})
        device = harness.devices.peek("dev-1")
        assert device.status is DeviceStatus.CONNECTING
        assert device.qr_code == "QR-9"

    async def test_enrolling_close_drops_heartbeat_entry(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """An unauthenticated session stops being reported once closed."""
        harness.add_device("dev-1")
        await harness.supervisor.connect("dev-1")
        harness.health.set_device_status("dev-1", "awaiting_enrollment")

        harness.session().emit(ConnectionClosed.from_status(440))
        await harness.settle()

        assert "dev-1" not in harness.health.tracked_devices
        assert availability(harness) == []

    async def test_close_after_durable_stop_does_nothing(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """A device stopped elsewhere is not reconnected."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        await harness.devices.update("dev-1", {"status": DeviceStatus.DISCONNECTED})

        harness.session().emit(ConnectionClosed.from_status(408))
        await harness.settle()

        assert harness.sleeper.delays == []
        assert len(harness.protocol.opened) == 1
        assert harness.backend.peek("dev-1") is not None

    async def test_close_of_deleted_device_does_nothing(self, harness: SupervisorHarness) -> None:
        """Deleted devices are not reconnected."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        harness.devices.remove("dev-1")

        harness.session().emit(ConnectionClosed.from_status(408))
        await harness.settle()

        assert harness.sleeper.delays == []


class TestReconnectTimers:
    """Technique: Concurrency Testing — pending timers vs user actions."""

    async def test_pending_reconnect_is_visible(self, blocking: SupervisorHarness) -> None:
        """A scheduled reconnect shows up until it fires."""
        blocking.add_device("dev-1")
        await connect_and_open(blocking)

        blocking.session().emit(ConnectionClosed.from_status(408))
        await blocking.settle()

        assert blocking.supervisor.pending_reconnects == {"dev-1"}
        assert blocking.sleeper.pending == 1

        blocking.sleeper.release()
        await blocking.settle()

        assert blocking.supervisor.pending_reconnects == frozenset()
        assert len(blocking.protocol.opened) == 2

    async def test_disconnect_cancels_pending_reconnect(
        self,
        blocking: SupervisorHarness,
    ) -> None:
        """User stop during the delay wins over the scheduled reconnect."""
        blocking.add_device("dev-1")
        await connect_and_open(blocking)
        blocking.session().emit(ConnectionClosed.from_status(408))
        await blocking.settle()

        await blocking.supervisor.disconnect("dev-1")
        blocking.sleeper.release()
        await blocking.settle()

        assert len(blocking.protocol.opened) == 1
        assert blocking.devices.peek("dev-1").status is DeviceStatus.DISCONNECTED
        assert blocking.supervisor.pending_reconnects == frozenset()

    async def test_timer_rechecks_durable_status(self, blocking: SupervisorHarness) -> None:
        """A stop written by another process cancels the timer when it fires."""
        blocking.add_device("dev-1")
        await connect_and_open(blocking)
        blocking.session().emit(ConnectionClosed.from_status(408))
        await blocking.settle()

        await blocking.devices.update("dev-1", {"status": DeviceStatus.DISCONNECTED})
        blocking.sleeper.release()
        await blocking.settle()

        assert len(blocking.protocol.opened) == 1

    async def test_timer_skips_when_session_already_live(
        self,
        blocking: SupervisorHarness,
    ) -> None:
        """A manual connect during the delay makes the timer a no-op."""
        blocking.add_device("dev-1")
        await connect_and_open(blocking)
        blocking.session().emit(ConnectionClosed.from_status(408))
        await blocking.settle()

        await blocking.supervisor.connect("dev-1")
        blocking.sleeper.release()
        await blocking.settle()

        assert len(blocking.protocol.opened) == 2
        assert len(blocking.registry) == 1

    async def test_stop_written_while_timer_waits_for_lock(
        self,
        blocking: SupervisorHarness,
    ) -> None:
        """The timer re-reads status once it holds the device lock."""
        blocking.add_device("dev-1")
        await connect_and_open(blocking)
        blocking.session().emit(ConnectionClosed.from_status(408))
        await blocking.settle()

        async with blocking.supervisor._lock("dev-1"):  # noqa: SLF001
            blocking.sleeper.release()
            await blocking.settle()
            await blocking.devices.update("dev-1", {"status": DeviceStatus.DISCONNECTED})
        await blocking.settle()

        assert len(blocking.protocol.opened) == 1
        assert len(blocking.registry) == 0

    async def test_close_racing_disconnect_stays_stopped(self) -> None:
        """A close handled during a user stop never reopens the device.

        The close waits on a slow credential save while ``disconnect()``
        holds the device lock with its durable write in flight.
        """
        devices = GatedDeviceStore(hold_status=DeviceStatus.DISCONNECTED)
        backend = GatedCredentialBackend()
        harness = SupervisorHarness.create(block_timers=True, devices=devices, backend=backend)
        try:
            harness.add_device("dev-1")
            await connect_and_open(harness)
            backend.gate.clear()
            harness.session().emit(
                CredentialsUpdated(registered_credentials()),
                ConnectionClosed.from_status(408),
            )
            await harness.settle()

            stopping = asyncio.create_task(harness.supervisor.disconnect("dev-1"))
            await harness.settle()
            assert devices.held == 1

            backend.gate.set()
            await harness.settle()
            harness.sleeper.release()
            await harness.settle()
            devices.gate.set()
            await stopping
            harness.sleeper.release()
            await harness.settle()

            assert devices.peek("dev-1").status is DeviceStatus.DISCONNECTED
            assert len(harness.protocol.opened) == 1
            assert len(harness.registry) == 0
            assert harness.supervisor.pending_reconnects == frozenset()
        finally:
            await harness.shutdown()


# ---------------------------------------------------------------------------
# disconnect / retire / liveness / shutdown
# ---------------------------------------------------------------------------


class TestDisconnect:
    """Technique: State-based Testing."""

    async def test_disconnect_tears_down_and_persists(self, harness: SupervisorHarness) -> None:
        """The session is closed and the device marked disconnected."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        handle = harness.session()

        await harness.supervisor.disconnect("dev-1")
        await harness.settle()

        assert handle.closed is True
        assert len(harness.registry) == 0
        assert harness.devices.peek("dev-1").status is DeviceStatus.DISCONNECTED
        assert harness.backend.peek("dev-1") is not None
        assert harness.sleeper.delays == []
        assert availability(harness) == ["online", "offline"]

    async def test_disconnect_with_reason_and_clear(self, harness: SupervisorHarness) -> None:
        """clear_credentials and reason are honoured."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        await harness.supervisor.disconnect(
            "dev-1",
            clear_credentials=True,
            reason="Connection stuck for 130s - session cleared",
        )

        device = harness.devices.peek("dev-1")
        assert device.error_message == "Connection stuck for 130s - session cleared"
        assert harness.backend.peek("dev-1") is None

    async def test_disconnect_without_session(self, harness: SupervisorHarness) -> None:
        """Disconnecting an idle device still records the stop."""
        harness.add_device("dev-1", status=DeviceStatus.ERROR)

        await harness.supervisor.disconnect("dev-1")

        assert harness.devices.peek("dev-1").status is DeviceStatus.DISCONNECTED

    async def test_write_is_retried(self) -> None:
        """Transient store failures are retried before giving up."""
        store = FlakyDeviceStore()
        harness = SupervisorHarness.create(devices=store)
        harness.add_device("dev-1")
        store.failures = 2

        await harness.supervisor.disconnect("dev-1")

        assert harness.devices.peek("dev-1").status is DeviceStatus.DISCONNECTED
        assert harness.sleeper.delays == [0.0, 0.0]
        await harness.shutdown()

    async def test_write_failure_is_raised(self) -> None:
        """disconnect() reports a durable write it could not complete."""
        store = FlakyDeviceStore()
        harness = SupervisorHarness.create(devices=store, write_attempts=2)
        harness.add_device("dev-1")
        store.failures = 10

        with pytest.raises(StoreError):
            await harness.supervisor.disconnect("dev-1")
        await harness.shutdown()


class TestRetire:
    """Technique: State-based Testing."""

    async def test_retire_leaves_durable_state(self, harness: SupervisorHarness) -> None:
        """Retiring only affects the local session."""
        harness.add_device("dev-1")
        await connect_and_open(harness)

        assert await harness.supervisor.retire("dev-1") is True

        assert len(harness.registry) == 0
        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTED
        assert harness.sleeper.delays == []

    async def test_retire_without_session(self, harness: SupervisorHarness) -> None:
        assert await harness.supervisor.retire("dev-1") is False


class TestMaintenance:
    """Technique: State-based Testing — liveness and shutdown."""

    async def test_refresh_liveness_touches_connected_sessions(
        self,
        harness: SupervisorHarness,
    ) -> None:
        """Only authenticated sessions are refreshed."""
        harness.add_device("dev-1")
        harness.add_device("dev-2")
        await connect_and_open(harness, "dev-1")
        await harness.supervisor.connect("dev-2")
        later = harness.clock.advance(60)

        assert await harness.supervisor.refresh_liveness() == 1

        assert harness.devices.peek("dev-1").last_connected_at == later
        assert harness.devices.peek("dev-2").last_connected_at is None

    async def test_shutdown_keeps_durable_status(self, harness: SupervisorHarness) -> None:
        """Shutdown closes sessions without marking devices stopped."""
        harness.add_device("dev-1")
        await connect_and_open(harness)
        handle = harness.session()

        await harness.supervisor.shutdown()
        await harness.settle()

        assert handle.closed is True
        assert len(harness.registry) == 0
        assert harness.devices.peek("dev-1").status is DeviceStatus.CONNECTED
        assert harness.sleeper.delays == []


class TestOwnership:
    """Technique: State-based Testing — multi-instance mode."""

    async def test_open_claims_unowned_device(self) -> None:
        """Authenticating claims the device for this instance."""
        harness = SupervisorHarness.create(multi_instance=True)
        harness.add_device("dev-1")

        await connect_and_open(harness)

        assert harness.devices.peek("dev-1").assigned_instance_id == "instance-a"
        await harness.shutdown()

    async def test_logout_releases_ownership(self) -> None:
        """A terminal logout frees the device for other instances."""
        harness = SupervisorHarness.create(multi_instance=True)
        harness.add_device("dev-1")
        await connect_and_open(harness)

        harness.session().emit(ConnectionClosed.from_status(401))
        await harness.settle()

        assert harness.devices.peek("dev-1").assigned_instance_id is None
        await harness.shutdown()

    async def test_disconnect_releases_ownership(self) -> None:
        """A user stop frees the device."""
        harness = SupervisorHarness.create(multi_instance=True)
        harness.add_device("dev-1")
        await connect_and_open(harness)

        await harness.supervisor.disconnect("dev-1")

        assert harness.devices.peek("dev-1").assigned_instance_id is None
        await harness.shutdown()
