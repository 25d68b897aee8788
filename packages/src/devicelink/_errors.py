"""Error taxonomy and structured error publication.

Exception hierarchy::

    DeviceLinkError
    ├── ConfigurationError   fatal to one connect attempt, surfaced to caller
    ├── TransientIOError     logged, never ends a session
    │   └── StoreError       durable store read/write failure
    └── ConflictError        identity authenticated elsewhere (terminal)

Protocol disconnects are *not* exceptions: they arrive as events and are
handled by :mod:`devicelink._policy`.

:class:`ErrorPublisher` converts exceptions into JSON payloads and
publishes them over MQTT so unattended instances are observable::

    {prefix}/error              ← all errors
    {prefix}/{device}/error     ← per-device errors

Payload schema::

    {
        "error_type": "conflict",
        "message": "Human-readable error description",
        "device": "dev-1" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }

Publication is not retained, QoS 1, and fire-and-forget: failures are
logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field

from devicelink._clock import WallClock, utc_now
from devicelink._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DeviceLinkError(Exception):
    """Base class for all devicelink errors."""


class ConfigurationError(DeviceLinkError):
    """Device configuration prevents a connection attempt.

    Raised to the caller of ``connect()``; never retried automatically.
    """


class TransientIOError(DeviceLinkError):
    """A persistence or ownership operation failed transiently."""


class StoreError(TransientIOError):
    """The durable device or credential store failed."""


class ConflictError(DeviceLinkError):
    """The device identity authenticated elsewhere.

    Terminal until the user re-enrolls the device manually.
    """


DEFAULT_ERROR_TYPES: dict[type[Exception], str] = {
    ConfigurationError: "configuration",
    TransientIOError: "transient_io",
    StoreError: "store",
    ConflictError: "conflict",
}
"""Machine-readable ``error_type`` for each devicelink exception."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: WallClock | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not matched.
    Unmapped types fall back to ``"error"``.
    """
    resolved_map = DEFAULT_ERROR_TYPES if error_type_map is None else error_type_map
    error_type = resolved_map.get(type(error), "error")
    now = clock() if clock is not None else utc_now()
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to MQTT.

    Args:
        mqtt: MQTT port used for publishing.
        topic_prefix: Base prefix for error topics.
        error_type_map: Mapping from exception types to ``error_type``.
        clock: Wall clock for deterministic timestamps in tests.
    """

    mqtt: MqttPort
    topic_prefix: str
    error_type_map: dict[type[Exception], str] = field(
        default_factory=lambda: dict(DEFAULT_ERROR_TYPES),
    )
    clock: WallClock | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        device: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Publish *error* globally and, with *device*, per device.

        Never raises.
        """
        try:
            payload = build_error_payload(
                error,
                error_type_map=self.error_type_map,
                device=device,
                details=details,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception(
                "Failed to build error payload for %r (device=%s)",
                error,
                device,
            )
            return

        logger.warning(
            "Publishing error: %s (type=%s, device=%s)",
            payload.message,
            payload.error_type,
            device,
        )
        await self._safe_publish(f"{self.topic_prefix}/error", payload_json)
        if device is not None:
            await self._safe_publish(
                f"{self.topic_prefix}/{device}/error",
                payload_json,
            )

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
