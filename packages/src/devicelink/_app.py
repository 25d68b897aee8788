"""Process orchestrator for devicelink.

The :class:`App` class is the composition root: it builds the stores,
MQTT client, supervisor, reconciler and fleet probe from
:class:`~devicelink._settings.Settings`, then runs the process lifecycle
in :meth:`run`.

Typical usage::

    import devicelink

    app = devicelink.App(protocol=MyProtocolAdapter())
    app.run()

or, with the adapter selected by configuration
(``DEVICELINK_PROTOCOL__FACTORY=acme_link.protocol:factory``)::

    devicelink --env-file prod.env
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import logging
import signal
import uuid
from dataclasses import dataclass, field
from typing import Any

from devicelink._clock import ClockPort, SystemClock, WallClock, utc_now
from devicelink._credentials import CredentialStore
from devicelink._errors import ConfigurationError, ErrorPublisher
from devicelink._fleet import FleetProbe
from devicelink._health import HealthReporter, build_will_config
from devicelink._logging import configure_logging
from devicelink._mqtt import MqttClient, MqttLifecycle, MqttPort, NullMqttClient
from devicelink._ownership import DeviceOwnershipAssigner
from devicelink._pairing import MqttEnrollmentSink, PairingCoordinator
from devicelink._policy import ReconnectionPolicy
from devicelink._postgrest import PostgrestStore
from devicelink._protocol import ProtocolPort
from devicelink._reconciler import Reconciler
from devicelink._registry import SessionRegistry
from devicelink._settings import Settings
from devicelink._store import (
    CredentialBackend,
    DeviceStore,
    MemoryCredentialBackend,
    MemoryDeviceStore,
)
from devicelink._supervisor import ConnectionSupervisor, Sleeper

logger = logging.getLogger(__name__)


def _import_string(dotted_path: str) -> Any:
    """Import an object from a ``module.path:attribute`` string.

    Raises:
        ImportError: If the module cannot be found.
        AttributeError: If the attribute doesn't exist in the module.
        ValueError: If the path doesn't contain exactly one ``:``.
    """
    parts = dotted_path.split(":")
    if len(parts) != 2:  # noqa: PLR2004
        msg = f"Expected 'module.path:attribute', got {dotted_path!r}"
        raise ValueError(msg)

    module_path, attribute = parts
    module = importlib.import_module(module_path)
    return getattr(module, attribute)


def load_protocol(factory: str) -> ProtocolPort:
    """Resolve ``Settings.protocol.factory`` to a :class:`ProtocolPort`.

    The import string may name an adapter instance, or a class or
    zero-argument callable producing one.

    Raises:
        ConfigurationError: The string is empty, cannot be imported, or
            does not yield a protocol adapter.
    """
    if not factory:
        msg = "No protocol adapter configured (set protocol.factory)"
        raise ConfigurationError(msg)
    try:
        target = _import_string(factory)
    except (ImportError, AttributeError, ValueError) as exc:
        msg = f"Cannot import protocol adapter {factory!r}: {exc}"
        raise ConfigurationError(msg) from exc

    if isinstance(target, type) or not isinstance(target, ProtocolPort):
        protocol = target()
    else:
        protocol = target
    if not isinstance(protocol, ProtocolPort):
        msg = f"{factory!r} did not produce a ProtocolPort"
        raise ConfigurationError(msg)
    return protocol


@dataclass
class Runtime:
    """Services wired for one process run."""

    settings: Settings
    instance_id: str
    devices: DeviceStore
    credentials: CredentialStore
    mqtt: MqttPort
    health: HealthReporter
    errors: ErrorPublisher
    supervisor: ConnectionSupervisor
    reconciler: Reconciler
    fleet: FleetProbe | None = None
    closers: list[Any] = field(default_factory=list)


class App:
    """Composition root and process orchestrator.

    Args:
        name: Service name used for logging and default MQTT client ids.
        version: Application version string.
        description: Short description for CLI help text.
        settings_class: Settings subclass to instantiate at startup.
        dry_run: Use in-memory stores and a silent MQTT client.
        protocol: Protocol adapter; when ``None`` it is loaded from
            ``settings.protocol.factory``.
    """

    def __init__(
        self,
        name: str = "devicelink",
        version: str = "0.0.0",
        *,
        description: str = "Device connection lifecycle manager",
        settings_class: type[Settings] = Settings,
        dry_run: bool = False,
        protocol: ProtocolPort | None = None,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._dry_run = dry_run
        self._protocol = protocol
        self._runtime: Runtime | None = None

    @property
    def runtime(self) -> Runtime | None:
        """Services of the running process, ``None`` when stopped."""
        return self._runtime

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Start the process (blocking, synchronous entrypoint)."""
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(settings=settings, shutdown_event=shutdown_event),
            )

    def cli(self) -> None:
        """Start the process with CLI argument parsing."""
        from devicelink._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        protocol: ProtocolPort | None = None,
        devices: DeviceStore | None = None,
        credentials: CredentialBackend | None = None,
        mqtt: MqttPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock = utc_now,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Async orchestration.

        1. Bootstrap settings, logging, stores, MQTT and services.
        2. Start MQTT, publish the first heartbeat, start the loops.
        3. Block until shutdown is requested.
        4. Tear down loops and sessions; durable status is left as is
           so the next process recovers the same devices.

        Every collaborator can be injected for tests.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        resolved_protocol = protocol or self._protocol or load_protocol(
            resolved_settings.protocol.factory,
        )
        runtime = self._build_runtime(
            resolved_settings,
            resolved_protocol,
            devices=devices,
            credentials=credentials,
            mqtt=mqtt,
            clock=clock if clock is not None else SystemClock(),
            wall_clock=wall_clock,
            sleep=sleep,
        )
        self._runtime = runtime
        logger.info(
            "%s v%s starting (instance=%s, store=%s, multi_instance=%s, dry_run=%s)",
            self._name,
            self._version,
            runtime.instance_id,
            "memory" if self._dry_run else resolved_settings.store.backend,
            resolved_settings.instance.multi_instance,
            self._dry_run,
        )

        if isinstance(runtime.mqtt, MqttLifecycle):
            await runtime.mqtt.start()

        # --- Phase 2: Run ---
        shutdown_event = self._install_signal_handlers(shutdown_event)
        await runtime.health.publish_heartbeat()
        tasks = self._start_tasks(runtime, shutdown_event)

        try:
            await shutdown_event.wait()
        finally:
            # --- Phase 3: Tear down ---
            await self._cancel_tasks(tasks)
            await runtime.supervisor.shutdown()
            await runtime.health.shutdown()
            if isinstance(runtime.mqtt, MqttLifecycle):
                await runtime.mqtt.stop()
            for closer in runtime.closers:
                await closer()
            self._runtime = None

        logger.info("Shutdown complete")

    # --- _run_async helpers ------------------------------------------------

    def _build_runtime(
        self,
        settings: Settings,
        protocol: ProtocolPort,
        *,
        devices: DeviceStore | None,
        credentials: CredentialBackend | None,
        mqtt: MqttPort | None,
        clock: ClockPort,
        wall_clock: WallClock,
        sleep: Sleeper,
    ) -> Runtime:
        """Wire every service from settings and injected overrides."""
        instance_id = settings.instance.resolved_id()
        prefix = settings.mqtt.topic_prefix or self._name
        closers: list[Any] = []

        device_store, credential_backend = self._create_stores(
            settings,
            devices,
            credentials,
            closers,
        )
        mqtt = self._create_mqtt(mqtt, settings, prefix, instance_id)

        health = HealthReporter(
            mqtt=mqtt,
            topic_prefix=prefix,
            instance_id=instance_id,
            version=self._version,
            clock=clock,
        )
        errors = ErrorPublisher(mqtt=mqtt, topic_prefix=prefix, clock=wall_clock)
        credential_store = CredentialStore(credential_backend, clock=wall_clock)
        assigner = (
            DeviceOwnershipAssigner(device_store, instance_id, clock=wall_clock)
            if settings.instance.multi_instance
            else None
        )
        supervisor = ConnectionSupervisor(
            protocol,
            device_store,
            credential_store,
            registry=SessionRegistry(),
            policy=ReconnectionPolicy.from_settings(settings.supervisor),
            pairing=PairingCoordinator(
                device_store,
                MqttEnrollmentSink(mqtt, prefix),
                clock=wall_clock,
            ),
            assigner=assigner,
            errors=errors,
            health=health,
            sleep=sleep,
            clock=wall_clock,
            write_attempts=settings.store.write_attempts,
            retry_backoff=settings.store.retry_backoff,
        )
        reconciler = Reconciler(
            device_store,
            supervisor,
            assigner=assigner,
            stuck_timeout=settings.supervisor.stuck_timeout,
            clock=wall_clock,
        )
        fleet = None
        if settings.fleet.instances:
            fleet = FleetProbe.from_urls(
                settings.fleet.instances,
                timeout=settings.fleet.probe_timeout,
                failure_threshold=settings.fleet.failure_threshold,
                clock=clock,
                wall_clock=wall_clock,
            )
        return Runtime(
            settings=settings,
            instance_id=instance_id,
            devices=device_store,
            credentials=credential_store,
            mqtt=mqtt,
            health=health,
            errors=errors,
            supervisor=supervisor,
            reconciler=reconciler,
            fleet=fleet,
            closers=closers,
        )

    def _create_stores(
        self,
        settings: Settings,
        devices: DeviceStore | None,
        credentials: CredentialBackend | None,
        closers: list[Any],
    ) -> tuple[DeviceStore, CredentialBackend]:
        """Return injected stores, or build them from settings.

        Dry-run and ``backend="memory"`` use process-local stores; the
        PostgREST adapter serves both ports from one HTTP client.
        """
        if devices is not None and credentials is not None:
            return devices, credentials
        if self._dry_run or settings.store.backend == "memory":
            return (
                devices if devices is not None else MemoryDeviceStore(),
                credentials if credentials is not None else MemoryCredentialBackend(),
            )
        try:
            store = PostgrestStore.from_settings(settings.store)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        closers.append(store.aclose)
        return (
            devices if devices is not None else store,
            credentials if credentials is not None else store,
        )

    def _create_mqtt(
        self,
        mqtt: MqttPort | None,
        settings: Settings,
        prefix: str,
        instance_id: str,
    ) -> MqttPort:
        """Return the injected client, a null client, or a real one.

        When no ``client_id`` is configured, one is generated from the
        instance id and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        if self._dry_run:
            return NullMqttClient()
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{instance_id}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(
            settings=mqtt_settings,
            will=build_will_config(prefix, instance_id),
        )

    @staticmethod
    def _install_signal_handlers(
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers.  Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    def _start_tasks(
        self,
        runtime: Runtime,
        shutdown_event: asyncio.Event,
    ) -> list[asyncio.Task[None]]:
        """Start the reconciler, heartbeat and fleet-probe loops."""
        supervisor_settings = runtime.settings.supervisor
        tasks = [
            asyncio.create_task(
                runtime.reconciler.run(supervisor_settings.reconcile_interval, shutdown_event),
                name="devicelink-reconciler",
            ),
            asyncio.create_task(
                self._heartbeat_loop(runtime, supervisor_settings.heartbeat_interval),
                name="devicelink-heartbeat",
            ),
        ]
        if runtime.fleet is not None:
            tasks.append(
                asyncio.create_task(
                    runtime.fleet.run(runtime.settings.fleet.probe_interval, shutdown_event),
                    name="devicelink-fleet-probe",
                ),
            )
        return tasks

    @staticmethod
    async def _heartbeat_loop(runtime: Runtime, interval: float) -> None:
        """Refresh liveness and publish heartbeats until cancelled.

        Sleeps first: the initial heartbeat is published before this
        task starts.
        """
        while True:
            await asyncio.sleep(interval)
            await runtime.supervisor.refresh_liveness()
            for session in runtime.supervisor.sessions():
                runtime.health.set_device_status(session.device_id, session.state.value)
            await runtime.health.publish_heartbeat()

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        """Cancel background loops and wait for them to finish."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)
