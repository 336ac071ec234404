"""Public test-support utilities for melsync.

Re-exports test doubles and factories so that consumer test suites
can import everything from a single ``melsync.testing`` namespace
instead of reaching into private modules.

Provided symbols:

- :class:`PlatformHarness` — Platform wired with in-memory doubles.
- :class:`MockCloudSession` — scriptable in-memory cloud session.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic clock for timing tests.
- :class:`RecordingController` — controller that records its lifecycle.
- :class:`EventRecorder` — event listener that keeps every event.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
- :func:`make_account` — factory for a valid ``AccountSettings``.
"""

from melsync._mqtt import MockMqttClient, NullMqttClient
from melsync._session import MockCloudSession
from melsync.testing._clock import FakeClock
from melsync.testing._controller import EventRecorder, RecordingController
from melsync.testing._harness import PlatformHarness
from melsync.testing._settings import make_account, make_settings

__all__ = [
    "EventRecorder",
    "FakeClock",
    "MockCloudSession",
    "MockMqttClient",
    "NullMqttClient",
    "PlatformHarness",
    "RecordingController",
    "make_account",
    "make_settings",
]
