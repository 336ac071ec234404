"""MQTT port and adapters for the platform boundary.

The platform publishes accessories, availability, heartbeats and
errors; it never consumes messages, so the port is publish-only.

Adapters:

- :class:`MqttClient` — aiomqtt-backed client with reconnect backoff
  and replay of retained state after each (re)connect.
- :class:`MockMqttClient` — test double that records publications.
- :class:`NullMqttClient` — silent adapter used by ``--dry-run``.

``aiomqtt`` is imported lazily inside the connection loop so the mock
and null adapters work without a broker library installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from melsync._settings import MqttSettings

logger = logging.getLogger(__name__)

_TOPIC_UNSAFE = re.compile(r"[/+#\x00]+")


def topic_segment(part: str) -> str:
    """Make *part* usable as a single level of a publish topic.

    Level separators, wildcards and NUL are replaced with ``_``; an
    empty part becomes ``_``.
    """
    return _TOPIC_UNSAFE.sub("_", part) or "_"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament, independent of aiomqtt types."""

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Publish contract used by the platform boundary."""

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
    """Adapters that hold a connection implement start/stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Discards every publication (logged at DEBUG)."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("NullMqttClient.publish(%s) discarded", topic)


# ---------------------------------------------------------------------------
# Test double
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory double recording ``(topic, payload, retain, qos)``."""

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        self.published.append((topic, payload, retain, qos))

    @property
    def publish_count(self) -> int:
        return len(self.published)

    @property
    def topics(self) -> list[str]:
        return [topic for topic, *_ in self.published]

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]

    def reset(self) -> None:
        self.published.clear()


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production adapter backed by *aiomqtt*.

    A background task keeps the connection open.  After a connection
    loss the delay before the next attempt doubles, starting at
    ``settings.reconnect_interval`` and capped at
    ``settings.reconnect_max_interval``, with up to 10% jitter.

    Retained publications are remembered per topic and replayed on every
    connect, so state published while the broker was unreachable is not
    lost.  Non-retained publications while disconnected raise
    :class:`RuntimeError`.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    _client: Any = field(default=None, init=False, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _retained: dict[str, tuple[str, int]] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if retain:
            self._retained[topic] = (payload, qos)
        if self._client is None:
            if retain:
                logger.debug("Not connected, %s queued for replay", topic)
                return
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def start(self) -> None:
        """Start the background connection loop (no-op when running)."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the connection loop.  Safe to call repeatedly."""
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def _backoff(self, failures: int) -> float:
        base = self.settings.reconnect_interval * (2 ** max(failures - 1, 0))
        delay = min(base, self.settings.reconnect_max_interval)
        return delay + random.uniform(0, delay * 0.1)  # noqa: S311

    async def _replay_retained(self, client: Any) -> None:
        for topic, (payload, qos) in list(self._retained.items()):
            await client.publish(topic, payload, retain=True, qos=qos)

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        failures = 0
        while not self._stopping:
            password: str | None = None
            if self.settings.password is not None:
                password = self.settings.password.get_secret_value()
            will = None
            if self.will is not None:
                will = aiomqtt.Will(
                    topic=self.will.topic,
                    payload=self.will.payload,
                    qos=self.will.qos,
                    retain=self.will.retain,
                )
            try:
                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    try:
                        await self._replay_retained(client)
                        self._connected.set()
                        failures = 0
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )
                        # Nothing is subscribed; iterating only surfaces
                        # the disconnect as an exception.
                        async for _message in client.messages:
                            pass
                    finally:
                        self._connected.clear()
                        self._client = None
            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                delay = self._backoff(failures)
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
