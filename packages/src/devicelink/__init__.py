"""devicelink.

Supervises one long-lived protocol session per registered device:
opens, reconnects and retires sessions, persists credentials across
restarts, and coordinates device ownership between backend instances.
"""

from importlib.metadata import PackageNotFoundError, version

from devicelink._app import App, load_protocol
from devicelink._clock import ClockPort, SystemClock, WallClock, utc_now
from devicelink._credentials import CredentialStore
from devicelink._errors import (
    ConfigurationError,
    ConflictError,
    DeviceLinkError,
    ErrorPayload,
    ErrorPublisher,
    StoreError,
    TransientIOError,
    build_error_payload,
)
from devicelink._fleet import BackendInstance, FleetProbe, InstanceHealth
from devicelink._health import (
    DeviceHealth,
    HealthReporter,
    HeartbeatPayload,
    build_will_config,
)
from devicelink._logging import DeviceLoggerAdapter, JsonFormatter, configure_logging
from devicelink._models import (
    ACTIVE_STATUSES,
    ConnectionMethod,
    Credentials,
    Device,
    DeviceStatus,
    OwnershipRecord,
)
from devicelink._mqtt import (
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from devicelink._ownership import DeviceOwnershipAssigner
from devicelink._pairing import (
    EnrollmentSink,
    MqttEnrollmentSink,
    NullEnrollmentSink,
    PairingCoordinator,
)
from devicelink._policy import (
    Action,
    DisconnectBucket,
    DisconnectCause,
    ReconnectionPolicy,
    RetryFresh,
    RetryWithCredentials,
    StopAndClearSession,
    StopAndReportConflict,
    StopNoAction,
    decide,
)
from devicelink._postgrest import PostgrestStore
from devicelink._protocol import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    EnrollmentArtifact,
    MessageReceived,
    ProtocolPort,
    ProtocolSession,
    SessionEvent,
)
from devicelink._reconciler import ReconcileReport, Reconciler
from devicelink._registry import PairingState, Session, SessionRegistry, SessionState
from devicelink._settings import (
    FleetSettings,
    InstanceSettings,
    LoggingSettings,
    MqttSettings,
    ProtocolSettings,
    Settings,
    StoreSettings,
    SupervisorSettings,
)
from devicelink._store import (
    CredentialBackend,
    DeviceStore,
    MemoryCredentialBackend,
    MemoryDeviceStore,
)
from devicelink._supervisor import ConnectionSupervisor

try:
    # Prefer the generated version file (setuptools_scm at build time)
    from devicelink._version import __version__
except ImportError:
    try:
        __version__ = version("devicelink")
    except PackageNotFoundError:
        __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "App",
    "load_protocol",
    # Clock
    "ClockPort",
    "SystemClock",
    "WallClock",
    "utc_now",
    # Models
    "ACTIVE_STATUSES",
    "ConnectionMethod",
    "Credentials",
    "Device",
    "DeviceStatus",
    "OwnershipRecord",
    # Core components
    "ConnectionSupervisor",
    "CredentialStore",
    "DeviceOwnershipAssigner",
    "PairingCoordinator",
    "Reconciler",
    "ReconcileReport",
    "SessionRegistry",
    "Session",
    "SessionState",
    "PairingState",
    # Policy
    "Action",
    "DisconnectBucket",
    "DisconnectCause",
    "ReconnectionPolicy",
    "RetryFresh",
    "RetryWithCredentials",
    "StopAndClearSession",
    "StopAndReportConflict",
    "StopNoAction",
    "decide",
    # Protocol
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsUpdated",
    "EnrollmentArtifact",
    "MessageReceived",
    "ProtocolPort",
    "ProtocolSession",
    "SessionEvent",
    # Stores
    "CredentialBackend",
    "DeviceStore",
    "MemoryCredentialBackend",
    "MemoryDeviceStore",
    "PostgrestStore",
    # Enrollment
    "EnrollmentSink",
    "MqttEnrollmentSink",
    "NullEnrollmentSink",
    # Fleet
    "BackendInstance",
    "FleetProbe",
    "InstanceHealth",
    # Logging
    "DeviceLoggerAdapter",
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "ConfigurationError",
    "ConflictError",
    "DeviceLinkError",
    "ErrorPayload",
    "ErrorPublisher",
    "StoreError",
    "TransientIOError",
    "build_error_payload",
    # Health
    "DeviceHealth",
    "HealthReporter",
    "HeartbeatPayload",
    "build_will_config",
    # Settings
    "FleetSettings",
    "InstanceSettings",
    "LoggingSettings",
    "MqttSettings",
    "ProtocolSettings",
    "Settings",
    "StoreSettings",
    "SupervisorSettings",
]
