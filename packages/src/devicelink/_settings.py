"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  All variables carry the ``DEVICELINK_`` prefix and nested
models use ``__`` as the delimiter, e.g.
``DEVICELINK_STORE__URL=https://db.example.com/rest/v1``.

Sections:

* **MQTT** — broker used for enrollment artifacts, error events and
  heartbeats.
* **Logging** — level, format, optional file sink, rotation.
* **Store** — durable device/credential store (in-memory or PostgREST).
* **Supervisor** — reconnect delays and reconciler cadence.
* **Instance** — identity of this backend instance in a fleet.
* **Fleet** — peers probed by the fleet health probe.
* **Protocol** — import string of the protocol library adapter.

All durations are in **seconds**.
"""

from __future__ import annotations

import socket
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        DEVICELINK_MQTT__HOST=broker.local
        DEVICELINK_MQTT__PORT=1883
        DEVICELINK_MQTT__TOPIC_PREFIX=devicelink
    """

    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, App auto-generates "
            "'{instance_id}-{hex8}' at startup."
        ),
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait before reconnecting to the broker.",
    )
    topic_prefix: str = Field(
        default="devicelink",
        description="Root prefix for all MQTT topics.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for container
      log aggregators.
    - ``"text"`` — human-readable timestamped format for local
      development and direct terminal use.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class StoreSettings(BaseModel):
    """Durable store for device records and credentials.

    ``backend="memory"`` keeps everything in-process (development and
    dry-run).  ``backend="postgrest"`` talks to a PostgREST endpoint
    (e.g. a Supabase project's ``/rest/v1``).
    """

    backend: Literal["memory", "postgrest"] = Field(
        default="memory",
        description="Store adapter to use.",
    )
    url: str = Field(
        default="",
        description="PostgREST base URL (required for backend='postgrest').",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="Service key sent as 'apikey' and bearer token.",
    )
    devices_table: str = Field(
        default="devices",
        description="Table holding device rows and their session_data.",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="HTTP timeout for store requests.",
    )
    write_attempts: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Attempts for a durable device write before giving up.",
    )
    retry_backoff: Annotated[float, Field(ge=0)] = Field(
        default=0.2,
        description="Base delay between write attempts (multiplied by attempt).",
    )


class SupervisorSettings(BaseModel):
    """Reconnect delays and periodic maintenance cadence."""

    restart_delay: Annotated[float, Field(ge=0)] = Field(
        default=1.5,
        description="Delay before reconnecting after a restart-required close.",
    )
    auth_failure_delay: Annotated[float, Field(ge=0)] = Field(
        default=1.0,
        description="Delay before a fresh enrollment after credential rejection.",
    )
    transient_delay: Annotated[float, Field(ge=0)] = Field(
        default=0.5,
        description="Delay before reconnecting after any other close.",
    )
    reconcile_interval: Annotated[float, Field(gt=0)] = Field(
        default=30.0,
        description="Seconds between device reconciliation passes.",
    )
    stuck_timeout: Annotated[float, Field(gt=0)] = Field(
        default=120.0,
        description="Seconds a device may stay 'connecting' before it is reset.",
    )
    heartbeat_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Seconds between heartbeats and liveness refreshes.",
    )


class InstanceSettings(BaseModel):
    """Identity of this backend instance."""

    instance_id: str = Field(
        default="",
        description="Stable instance identifier. Empty means the hostname.",
    )
    multi_instance: bool = Field(
        default=False,
        description="Enable device ownership claims across instances.",
    )

    def resolved_id(self) -> str:
        """Return ``instance_id`` or the hostname when unset."""
        return self.instance_id or socket.gethostname()


class FleetSettings(BaseModel):
    """Peers probed by :class:`~devicelink._fleet.FleetProbe`.

    ``instances`` maps instance id to base URL::

        DEVICELINK_FLEET__INSTANCES='{"eu-1": "https://eu-1.example.com"}'
    """

    instances: dict[str, str] = Field(
        default_factory=dict,
        description="Instance id to base URL. Empty disables probing.",
    )
    probe_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Seconds between probe rounds.",
    )
    probe_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Timeout for a single GET /health.",
    )
    failure_threshold: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Consecutive failures before an instance is unhealthy.",
    )


class ProtocolSettings(BaseModel):
    """Protocol library adapter selection."""

    factory: str = Field(
        default="",
        description=(
            "'module:attribute' import string resolving to a ProtocolPort "
            "instance or a zero-argument factory returning one."
        ),
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for a devicelink process.

    Example ``.env``::

        DEVICELINK_STORE__BACKEND=postgrest
        DEVICELINK_STORE__URL=https://project.supabase.co/rest/v1
        DEVICELINK_STORE__API_KEY=secret
        DEVICELINK_INSTANCE__MULTI_INSTANCE=true
        DEVICELINK_PROTOCOL__FACTORY=acme_link.protocol:factory
        DEVICELINK_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVICELINK_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    store: StoreSettings = Field(
        default_factory=StoreSettings,
        description="Durable store configuration.",
    )
    supervisor: SupervisorSettings = Field(
        default_factory=SupervisorSettings,
        description="Connection supervisor tuning.",
    )
    instance: InstanceSettings = Field(
        default_factory=InstanceSettings,
        description="Backend instance identity.",
    )
    fleet: FleetSettings = Field(
        default_factory=FleetSettings,
        description="Fleet health probe configuration.",
    )
    protocol: ProtocolSettings = Field(
        default_factory=ProtocolSettings,
        description="Protocol adapter selection.",
    )
