"""Tests for devicelink._fleet — FleetProbe.

Test Techniques Used:
    - Mock-based Isolation: httpx.MockTransport instead of real peers
    - State-based Testing: consecutive failure counting and recovery
    - Boundary Value Analysis: failure threshold
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from devicelink._fleet import BackendInstance, FleetProbe
from devicelink.testing import FakeClock, FakeWallClock

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class ScriptedPeers:
    """MockTransport handler with a per-host status code."""

    def __init__(self, statuses: dict[str, int | Exception]) -> None:
        self.statuses = statuses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.statuses[request.url.host]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"status": "ok"})


def make_probe(
    peers: ScriptedPeers,
    *,
    threshold: int = 3,
    wall_clock: FakeWallClock | None = None,
) -> FleetProbe:
    return FleetProbe(
        [
            BackendInstance("eu-1", "https://eu-1.example.com/", api_key="secret"),
            BackendInstance("us-1", "https://us-1.example.com"),
        ],
        failure_threshold=threshold,
        clock=FakeClock(),
        wall_clock=wall_clock or FakeWallClock(),
        transport=httpx.MockTransport(peers),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestBackendInstance:
    """Technique: Specification-based Testing."""

    def test_health_url_strips_trailing_slash(self) -> None:
        assert BackendInstance("a", "https://a.example.com/").health_url == (
            "https://a.example.com/health"
        )


class TestProbe:
    """Technique: Mock-based Isolation."""

    async def test_healthy_peers(self) -> None:
        """A 200 response keeps the instance healthy and stamps it."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 200})
        wall = FakeWallClock()
        probe = make_probe(peers, wall_clock=wall)

        results = await probe.probe_all()

        assert set(results) == {"eu-1", "us-1"}
        assert results["eu-1"].healthy is True
        assert results["eu-1"].last_checked == wall()
        assert results["eu-1"].latency_ms == 0.0
        assert probe.healthy_instances() == ["eu-1", "us-1"]

    async def test_requests_target_health_with_bearer(self) -> None:
        """GET /health carries the instance API key."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 200})

        await make_probe(peers).probe_all()

        by_host = {request.url.host: request for request in peers.requests}
        assert by_host["eu-1.example.com"].method == "GET"
        assert by_host["eu-1.example.com"].url.path == "/health"
        assert by_host["eu-1.example.com"].headers["Authorization"] == "Bearer secret"
        assert "Authorization" not in by_host["us-1.example.com"].headers

    async def test_error_status_is_a_failure(self) -> None:
        """5xx responses count as failed checks."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 503})

        results = await make_probe(peers).probe_all()

        assert results["us-1"].last_error == "Health check failed with status 503"
        assert results["us-1"].consecutive_failures == 1
        assert results["us-1"].total_failures == 1

    async def test_transport_error_is_a_failure(self) -> None:
        """Connection errors are recorded, not raised."""
        peers = ScriptedPeers(
            {
                "eu-1.example.com": 200,
                "us-1.example.com": httpx.ConnectError("connection refused"),
            },
        )

        results = await make_probe(peers).probe_all()

        assert results["us-1"].last_error == "connection refused"

    async def test_empty_fleet(self) -> None:
        assert await FleetProbe([]).probe_all() == {}


class TestThreshold:
    """Technique: Boundary Value Analysis — consecutive failures."""

    async def test_unhealthy_after_threshold(self) -> None:
        """The instance flips exactly at the threshold."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 500})
        probe = make_probe(peers, threshold=2)

        await probe.probe_all()
        assert probe.status("us-1").healthy is True

        await probe.probe_all()
        assert probe.status("us-1").healthy is False
        assert probe.healthy_instances() == ["eu-1"]

    async def test_single_success_restores(self) -> None:
        """One good probe resets the consecutive count."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 500})
        probe = make_probe(peers, threshold=1)
        await probe.probe_all()
        assert probe.status("us-1").healthy is False

        peers.statuses["us-1.example.com"] = 200
        await probe.probe_all()

        health = probe.status("us-1")
        assert health.healthy is True
        assert health.consecutive_failures == 0
        assert health.total_failures == 1
        assert health.last_error is None


class TestConstruction:
    """Technique: Specification-based Testing."""

    def test_from_urls(self) -> None:
        probe = FleetProbe.from_urls({"eu-1": "https://eu-1.example.com"})

        assert [i.instance_id for i in probe.instances] == ["eu-1"]
        assert probe.status("eu-1").healthy is True

    def test_unknown_instance_raises(self) -> None:
        with pytest.raises(KeyError):
            FleetProbe([]).status("ghost")

    async def test_run_stops_on_shutdown(self) -> None:
        """The loop probes, then exits when the event is set."""
        peers = ScriptedPeers({"eu-1.example.com": 200, "us-1.example.com": 200})
        probe = make_probe(peers)
        shutdown = asyncio.Event()

        task = asyncio.create_task(probe.run(60.0, shutdown))
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(peers.requests) == 2
