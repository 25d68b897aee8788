"""Backend fleet health probe.

Periodically sends ``GET {url}/health`` to every registered backend
instance and keeps a per-instance health record: last latency, last
error, consecutive and total failure counts.  ``failure_threshold``
consecutive failures mark an instance unhealthy for routing; a single
successful probe restores it.

The probe is independent of the connection supervisor: it only informs
routing decisions made elsewhere.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime

import httpx

from devicelink._clock import ClockPort, SystemClock, WallClock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackendInstance:
    """A backend instance reachable over HTTP."""

    instance_id: str
    url: str
    api_key: str | None = None

    @property
    def health_url(self) -> str:
        return f"{self.url.rstrip('/')}/health"


@dataclass(frozen=True, slots=True)
class InstanceHealth:
    """Latest probe outcome for one instance."""

    instance_id: str
    healthy: bool = True
    latency_ms: float | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    total_failures: int = 0
    last_checked: datetime | None = None


class FleetProbe:
    """Health-checks a set of backend instances.

    Args:
        instances: Instances to probe.
        timeout: Per-request timeout in seconds.
        failure_threshold: Consecutive failures before an instance is
            unhealthy.
        clock: Monotonic clock for latency measurement.
        wall_clock: Wall clock for ``last_checked``.
        transport: Optional httpx transport (``httpx.MockTransport`` in
            tests).
    """

    def __init__(
        self,
        instances: Iterable[BackendInstance],
        *,
        timeout: float = 10.0,
        failure_threshold: int = 3,
        clock: ClockPort | None = None,
        wall_clock: WallClock = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._instances = {instance.instance_id: instance for instance in instances}
        self._timeout = timeout
        self._failure_threshold = failure_threshold
        self._clock = clock if clock is not None else SystemClock()
        self._wall_clock = wall_clock
        self._transport = transport
        self._health = {
            instance_id: InstanceHealth(instance_id) for instance_id in self._instances
        }

    @classmethod
    def from_urls(cls, urls: Mapping[str, str], **kwargs: object) -> FleetProbe:
        """Build a probe from ``{instance_id: base_url}``."""
        instances = [BackendInstance(instance_id, url) for instance_id, url in urls.items()]
        return cls(instances, **kwargs)  # type: ignore[arg-type]

    @property
    def instances(self) -> list[BackendInstance]:
        return list(self._instances.values())

    def status(self, instance_id: str) -> InstanceHealth:
        """Latest health record.  Raises ``KeyError`` for unknown ids."""
        return self._health[instance_id]

    def healthy_instances(self) -> list[str]:
        """Ids of instances currently considered healthy."""
        return [instance_id for instance_id, health in self._health.items() if health.healthy]

    async def probe_all(self) -> dict[str, InstanceHealth]:
        """Probe every instance concurrently and return the new records."""
        if not self._instances:
            return {}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            await asyncio.gather(
                *(self._probe(client, instance) for instance in self._instances.values())
            )
        return dict(self._health)

    async def run(self, interval: float, shutdown_event: asyncio.Event) -> None:
        """Probe every *interval* seconds until *shutdown_event* is set."""
        while not shutdown_event.is_set():
            await self.probe_all()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)

    async def _probe(self, client: httpx.AsyncClient, instance: BackendInstance) -> None:
        headers = {"Authorization": f"Bearer {instance.api_key}"} if instance.api_key else None
        started = self._clock.now()
        error: str | None = None
        try:
            response = await client.get(instance.health_url, headers=headers)
            if response.is_error:
                error = f"Health check failed with status {response.status_code}"
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
        latency_ms = (self._clock.now() - started) * 1000
        self._record(instance.instance_id, latency_ms, error)

    def _record(self, instance_id: str, latency_ms: float, error: str | None) -> None:
        previous = self._health[instance_id]
        if error is None:
            current = replace(
                previous,
                healthy=True,
                latency_ms=latency_ms,
                last_error=None,
                consecutive_failures=0,
                last_checked=self._wall_clock(),
            )
            if not previous.healthy:
                logger.info("Instance %s is healthy again", instance_id)
        else:
            failures = previous.consecutive_failures + 1
            current = replace(
                previous,
                healthy=failures < self._failure_threshold,
                latency_ms=latency_ms,
                last_error=error,
                consecutive_failures=failures,
                total_failures=previous.total_failures + 1,
                last_checked=self._wall_clock(),
            )
            logger.warning(
                "Health check for %s failed (%d consecutive): %s",
                instance_id,
                failures,
                error,
            )
            if previous.healthy and not current.healthy:
                logger.error("Instance %s marked unhealthy", instance_id)
        self._health[instance_id] = current
