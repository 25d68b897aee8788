"""Instance heartbeat and per-device availability over MQTT.

Publishes an instance-level heartbeat and per-device availability so
dashboards can see which backend instance holds which live sessions,
with LWT (Last Will and Testament) integration for crash detection.

Topic layout::

    {prefix}/{instance}/status        ← instance heartbeat (retained JSON)
    {prefix}/{device}/availability    ← device online/offline (retained)

Heartbeat payload schema::

    {
        "status": "online",
        "instance": "eu-1",
        "uptime_s": 3600,
        "version": "0.1.0",
        "sessions": 2,
        "devices": {
            "dev-1": {"status": "connected"},
            "dev-2": {"status": "awaiting_enrollment"}
        }
    }

Publication is retained, QoS 1, and fire-and-forget: failures are
logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field

from devicelink._clock import ClockPort
from devicelink._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceHealth:
    """Immutable status snapshot for a single device session."""

    status: str = "connected"

    def to_dict(self) -> dict[str, str]:
        """Serialise to a plain dictionary."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable instance heartbeat ready for JSON serialisation."""

    status: str
    instance: str
    uptime_s: float
    version: str
    devices: dict[str, DeviceHealth] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        data: dict[str, object] = {
            "status": self.status,
            "instance": self.instance,
            "uptime_s": self.uptime_s,
            "version": self.version,
            "sessions": len(self.devices),
            "devices": {
                name: device.to_dict() for name, device in self.devices.items()
            },
        }
        return json.dumps(data)


def build_will_config(topic_prefix: str, instance_id: str) -> WillConfig:
    """Create the LWT for ``{topic_prefix}/{instance_id}/status``.

    The broker publishes ``"offline"`` there (QoS 1, retained) when the
    instance disconnects unexpectedly.
    """
    return WillConfig(
        topic=f"{topic_prefix}/{instance_id}/status",
        payload="offline",
        qos=1,
        retain=True,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class HealthReporter:
    """Publishes instance heartbeats and device availability to MQTT.

    Parameters
    ----------
    mqtt:
        MQTT port used for publishing.
    topic_prefix:
        Base prefix for health topics.
    instance_id:
        Identity of this backend instance.
    version:
        Application version string included in heartbeats.
    clock:
        Monotonic clock for uptime measurement.
    """

    mqtt: MqttPort
    topic_prefix: str
    instance_id: str
    version: str
    clock: ClockPort
    _start_time: float = field(init=False, repr=False)
    _devices: dict[str, DeviceHealth] = field(
        init=False,
        default_factory=dict,
        repr=False,
    )

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/{self.instance_id}/status"

    def set_device_status(self, device: str, status: str = "connected") -> None:
        """Update or add a device's status in the heartbeat tracker."""
        self._devices[device] = DeviceHealth(status=status)

    def remove_device(self, device: str) -> None:
        """Stop tracking *device*, if present."""
        self._devices.pop(device, None)

    @property
    def tracked_devices(self) -> dict[str, str]:
        """``{device_id: status}`` for every tracked device."""
        return {name: health.status for name, health in self._devices.items()}

    async def publish_device_available(self, device: str) -> None:
        """Publish ``"online"`` and start tracking *device*."""
        await self._safe_publish(f"{self.topic_prefix}/{device}/availability", "online")
        self.set_device_status(device)

    async def publish_device_unavailable(self, device: str) -> None:
        """Publish ``"offline"`` and stop tracking *device*."""
        await self._safe_publish(f"{self.topic_prefix}/{device}/availability", "offline")
        self.remove_device(device)

    async def publish_heartbeat(self) -> None:
        """Publish a structured JSON heartbeat to the status topic."""
        payload = HeartbeatPayload(
            status="online",
            instance=self.instance_id,
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            devices=dict(self._devices),
        )
        logger.debug("Publishing heartbeat to %s", self.status_topic)
        await self._safe_publish(self.status_topic, payload.to_json())

    async def shutdown(self) -> None:
        """Publish ``"offline"`` for every tracked device and the instance.

        Sessions are torn down locally on shutdown, so the devices are
        no longer served by this instance even though their durable
        status is left for the next process to recover.
        """
        logger.info("Health reporter shutting down, publishing offline")
        for device in list(self._devices):
            await self._safe_publish(f"{self.topic_prefix}/{device}/availability", "offline")
        await self._safe_publish(self.status_topic, "offline")
        self._devices.clear()

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", topic)
