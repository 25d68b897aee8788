"""Outbound MQTT channel.

devicelink only *publishes*: enrollment artifacts (QR payloads, pairing
codes), error events, device availability and instance heartbeats go to
the broker for dashboards to render.  Nothing is consumed.

Adapters satisfying :class:`MqttPort`:

- :class:`MqttClient` — aiomqtt-backed, reconnecting, replays retained
  state published while the broker was unreachable
- :class:`MockMqttClient` — records publishes for assertions
- :class:`NullMqttClient` — discards everything (dry-run)

aiomqtt is imported inside :meth:`MqttClient._session_loop` so the other
adapters work without it installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from devicelink._settings import MqttSettings

logger = logging.getLogger(__name__)


@runtime_checkable
class MqttPort(Protocol):
    """Anything devicelink can publish through."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters owning a background broker connection."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass(frozen=True)
class WillConfig:
    """Message the broker publishes if this instance vanishes.

    Kept free of aiomqtt types; :class:`MqttClient` converts it.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Adapter that drops every message."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("Dropped publish to %s (MQTT disabled)", topic)


@dataclass
class MockMqttClient:
    """Records ``(topic, payload, retain, qos)`` for every publish.

    Set ``raise_on_publish`` to simulate a broker outage: publishes then
    raise it and nothing is recorded.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    raise_on_publish: Exception | None = None

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if self.raise_on_publish is not None:
            raise self.raise_on_publish
        self.published.append((topic, payload, retain, qos))

    @property
    def publish_count(self) -> int:
        return len(self.published)

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """``(payload, retain, qos)`` published to *topic*, oldest first."""
        return [(p, r, q) for t, p, r, q in self.published if t == topic]

    def reset(self) -> None:
        self.published.clear()


# ---------------------------------------------------------------------------
# aiomqtt adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Broker connection maintained by a background task.

    Publishing while disconnected raises :class:`RuntimeError`, except
    for retained messages: the newest payload per retained topic is kept
    and republished once the connection is back, so dashboards never
    show an enrollment artifact or availability that was superseded
    during the outage.  Callers wrap publication in fire-and-forget
    handling.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    _client: Any = field(default=None, init=False, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _connected: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _stopping: bool = field(default=False, init=False, repr=False)
    _retained: dict[str, tuple[str, int]] = field(default_factory=dict, init=False, repr=False)

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish, or hold a retained message until reconnect.

        Raises:
            RuntimeError: Not connected and *retain* is false.
        """
        if retain:
            self._retained[topic] = (payload, qos)
        client = self._client
        if client is None:
            if retain:
                logger.debug("Broker unavailable, holding retained %s", topic)
                return
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._session_loop(), name="devicelink-mqtt")

    async def stop(self) -> None:
        """Close the connection.  Safe to call repeatedly."""
        self._stopping = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._connected.clear()

    async def _session_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        while not self._stopping:
            try:
                await self._run_connection(aiomqtt)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "MQTT connection to %s:%d lost, retrying in %.1fs",
                    self.settings.host,
                    self.settings.port,
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    async def _run_connection(self, aiomqtt: Any) -> None:
        """Hold one broker connection until it drops."""
        async with aiomqtt.Client(**self._client_options(aiomqtt)) as client:
            self._client = client
            self._connected.set()
            try:
                logger.info("MQTT connected to %s:%d", self.settings.host, self.settings.port)
                await self._replay_retained(client)
                # Iterating raises once the connection drops.
                async for message in client.messages:
                    logger.debug("Ignoring inbound message on %s", message.topic)
            finally:
                self._connected.clear()
                self._client = None

    def _client_options(self, aiomqtt: Any) -> dict[str, Any]:
        secret = self.settings.password
        will = None
        if self.will is not None:
            will = aiomqtt.Will(
                topic=self.will.topic,
                payload=self.will.payload,
                qos=self.will.qos,
                retain=self.will.retain,
            )
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": secret.get_secret_value() if secret is not None else None,
            "identifier": self.settings.client_id or None,
            "will": will,
        }

    async def _replay_retained(self, client: Any) -> None:
        for topic, (payload, qos) in list(self._retained.items()):
            await client.publish(topic, payload, retain=True, qos=qos)
        if self._retained:
            logger.info("Republished %d retained messages", len(self._retained))
