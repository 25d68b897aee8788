"""Public test-support utilities for devicelink.

Re-exports test doubles and factories so that consumer test suites can
import everything from a single ``devicelink.testing`` namespace instead
of reaching into private modules.

Provided symbols:

- :class:`SupervisorHarness` — supervisor wired to in-memory doubles.
- :class:`FakeProtocol` / :class:`FakeSession` — scriptable protocol.
- :class:`FakeSleeper` — records reconnect delays, optionally blocks.
- :class:`FakeClock` / :class:`FakeWallClock` — deterministic clocks.
- :class:`MockMqttClient` / :class:`NullMqttClient` — MQTT doubles.
- :func:`make_settings` — ``Settings`` without ``.env`` files.
- :func:`registered_credentials` — enrolled credential fixture data.
"""

from devicelink._mqtt import MockMqttClient, NullMqttClient
from devicelink.testing._clock import FakeClock, FakeWallClock
from devicelink.testing._harness import SupervisorHarness, registered_credentials
from devicelink.testing._protocol import FakeProtocol, FakeSession
from devicelink.testing._settings import make_settings
from devicelink.testing._sleep import FakeSleeper

__all__ = [
    "FakeClock",
    "FakeProtocol",
    "FakeSession",
    "FakeSleeper",
    "FakeWallClock",
    "MockMqttClient",
    "NullMqttClient",
    "SupervisorHarness",
    "make_settings",
    "registered_credentials",
]
