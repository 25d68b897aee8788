"""Enrollment artifact handling (QR payloads and pairing codes).

While a device has no valid credentials, the protocol session emits
enrollment artifacts.  :class:`PairingCoordinator` decides which of them
reach the user:

- ``qr`` devices: every QR payload overwrites the persisted artifact and
  is published to the enrollment sink.
- ``pairing`` devices: the first enrollment event triggers exactly one
  pairing-code request per session; the code (returned directly or
  delivered later as an artifact) is persisted and published.  QR
  payloads are never shown.

Sessions holding valid credentials, and recovery sessions, never show
enrollment UI: their artifacts are dropped.

Sink topic layout::

    {prefix}/{device_id}/enrollment   ← retained JSON, empty payload clears

Payloads::

    {"qr": "<payload>"}
    {"pairing_code": "ABCD1234"}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from devicelink._clock import WallClock, utc_now
from devicelink._logging import DeviceLoggerAdapter
from devicelink._models import ConnectionMethod, DeviceStatus
from devicelink._mqtt import MqttPort
from devicelink._protocol import EnrollmentArtifact
from devicelink._registry import PairingState, Session, SessionState
from devicelink._store import DeviceStore

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")

# ---------------------------------------------------------------------------
# Sink port and adapters
# ---------------------------------------------------------------------------


@runtime_checkable
class EnrollmentSink(Protocol):
    """Best-effort delivery of enrollment artifacts to the user."""

    async def publish(
        self,
        device_id: str,
        *,
        qr: str | None = None,
        pairing_code: str | None = None,
    ) -> None: ...

    async def clear(self, device_id: str) -> None: ...


class NullEnrollmentSink:
    """Discards enrollment artifacts."""

    async def publish(
        self,
        device_id: str,
        *,
        qr: str | None = None,  # noqa: ARG002
        pairing_code: str | None = None,  # noqa: ARG002
    ) -> None:
        logger.debug("Discarded enrollment artifact for %s (no sink)", device_id)

    async def clear(self, device_id: str) -> None:
        logger.debug("Discarded enrollment clear for %s (no sink)", device_id)


@dataclass
class MqttEnrollmentSink:
    """Publishes enrollment artifacts as retained MQTT messages.

    Fire-and-forget: publication failures are logged, never propagated.
    """

    mqtt: MqttPort
    topic_prefix: str

    def topic(self, device_id: str) -> str:
        return f"{self.topic_prefix}/{device_id}/enrollment"

    async def publish(
        self,
        device_id: str,
        *,
        qr: str | None = None,
        pairing_code: str | None = None,
    ) -> None:
        payload: dict[str, str] = {}
        if qr is not None:
            payload["qr"] = qr
        if pairing_code is not None:
            payload["pairing_code"] = pairing_code
        await self._safe_publish(self.topic(device_id), json.dumps(payload))

    async def clear(self, device_id: str) -> None:
        await self._safe_publish(self.topic(device_id), "")

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish enrollment artifact to %s", topic)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


def normalize_phone(phone: str) -> str:
    """Strip everything but digits from a phone number."""
    return _NON_DIGITS.sub("", phone)


class PairingCoordinator:
    """Routes enrollment artifacts to the device store and sink.

    Args:
        devices: Device store receiving ``qr_code`` / ``pairing_code``.
        sink: Delivery channel for the artifacts.
        clock: Wall clock for ``updated_at`` stamps.
    """

    def __init__(
        self,
        devices: DeviceStore,
        sink: EnrollmentSink | None = None,
        *,
        clock: WallClock = utc_now,
    ) -> None:
        self._devices = devices
        self._sink: EnrollmentSink = sink if sink is not None else NullEnrollmentSink()
        self._clock = clock

    async def handle(self, session: Session, artifact: EnrollmentArtifact) -> None:
        """Process one enrollment event for *session*."""
        log = DeviceLoggerAdapter(logger, session.device_id)
        if not session.awaiting_enrollment or session.authenticated:
            log.debug("Enrollment artifact ignored (session holds credentials or is recovering)")
            return

        session.state = SessionState.AWAITING_ENROLLMENT
        if session.connection_method is ConnectionMethod.PAIRING:
            await self._handle_pairing(session, artifact, log)
        else:
            await self._handle_qr(session, artifact, log)

    async def clear(self, device_id: str) -> None:
        """Withdraw published artifacts once the device authenticated."""
        await self._sink.clear(device_id)

    async def _handle_qr(
        self,
        session: Session,
        artifact: EnrollmentArtifact,
        log: DeviceLoggerAdapter,
    ) -> None:
        if artifact.qr is None:
            return
        log.info("QR code received")
        await self._persist(
            session.device_id,
            {"qr_code": artifact.qr, "pairing_code": None},
            log,
        )
        await self._sink.publish(session.device_id, qr=artifact.qr)

    async def _handle_pairing(
        self,
        session: Session,
        artifact: EnrollmentArtifact,
        log: DeviceLoggerAdapter,
    ) -> None:
        if artifact.pairing_code is not None:
            await self._deliver_code(session, artifact.pairing_code, log)
            return

        if artifact.qr is not None:
            log.debug("QR payload skipped (pairing mode)")

        if session.pairing_code_requested or not session.pairing_phone:
            return

        session.pairing_code_requested = True
        session.pairing_state = PairingState.CODE_REQUESTED
        phone = normalize_phone(session.pairing_phone)
        log.info("Requesting pairing code for %s", phone)
        try:
            code = await session.handle.request_pairing_code(phone)
        except Exception:
            log.exception("Pairing code request failed")
            return

        if code:
            await self._deliver_code(session, code, log)
        else:
            log.info("Pairing code will arrive asynchronously")

    async def _deliver_code(
        self,
        session: Session,
        code: str,
        log: DeviceLoggerAdapter,
    ) -> None:
        session.pairing_state = PairingState.CODE_DELIVERED
        log.info("Pairing code received")
        await self._persist(
            session.device_id,
            {"pairing_code": code, "qr_code": None},
            log,
        )
        await self._sink.publish(session.device_id, pairing_code=code)

    async def _persist(
        self,
        device_id: str,
        fields: dict[str, object],
        log: DeviceLoggerAdapter,
    ) -> None:
        fields = {
            **fields,
            "status": DeviceStatus.CONNECTING,
            "updated_at": self._clock(),
        }
        try:
            await self._devices.update(device_id, fields)
        except Exception as exc:
            log.warning("Failed to persist enrollment artifact: %s", exc)
