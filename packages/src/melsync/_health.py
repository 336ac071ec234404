"""Heartbeat and per-account availability over MQTT.

Topic layout::

    {prefix}/status                    ← platform heartbeat (retained JSON)
    {prefix}/{account}/availability    ← "online" / "offline" (retained)

Heartbeat payload::

    {
        "status": "online",
        "uptime_s": 3600.0,
        "version": "0.1.0",
        "accounts": {
            "home": {"state": "running", "devices": 2},
            "office": {"state": "failed", "devices": 0}
        }
    }

The broker publishes ``"offline"`` to ``{prefix}/status`` on an
unexpected disconnect (LWT, see :func:`build_will_config`); a graceful
shutdown publishes it explicitly.  Publication is fire-and-forget.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field

from melsync._clock import ClockPort
from melsync._mqtt import MqttPort, WillConfig, topic_segment

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AccountStatus:
    """Status of one account inside the heartbeat."""

    state: str = "idle"
    devices: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Platform-level status snapshot."""

    status: str
    uptime_s: float
    version: str
    accounts: dict[str, AccountStatus] = field(default_factory=dict)

    def to_json(self) -> str:
        data: dict[str, object] = {
            "status": self.status,
            "uptime_s": self.uptime_s,
            "version": self.version,
            "accounts": {
                name: status.to_dict() for name, status in self.accounts.items()
            },
        }
        return json.dumps(data)


def build_will_config(topic_prefix: str) -> WillConfig:
    """LWT publishing retained ``"offline"`` to ``{topic_prefix}/status``."""
    return WillConfig(
        topic=f"{topic_prefix}/status",
        payload="offline",
        qos=1,
        retain=True,
    )


@dataclass
class HealthReporter:
    """Publishes heartbeats and per-account availability.

    Parameters
    ----------
    mqtt:
        Port used for publishing.
    topic_prefix:
        Root topic (e.g. ``"melsync"``).
    version:
        Version string included in heartbeats.
    clock:
        Monotonic clock for uptime.
    """

    mqtt: MqttPort
    topic_prefix: str
    version: str
    clock: ClockPort
    _start_time: float = field(init=False, repr=False)
    _accounts: dict[str, AccountStatus] = field(
        init=False,
        default_factory=dict,
        repr=False,
    )

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def accounts(self) -> dict[str, AccountStatus]:
        return dict(self._accounts)

    def set_account_status(self, account: str, state: str, devices: int = 0) -> None:
        self._accounts[account] = AccountStatus(state=state, devices=devices)

    def availability_topic(self, account: str) -> str:
        return f"{self.topic_prefix}/{topic_segment(account)}/availability"

    async def publish_account_available(self, account: str, devices: int = 0) -> None:
        """Publish ``"online"`` and track the account as running."""
        await self._safe_publish(self.availability_topic(account), "online")
        self.set_account_status(account, "running", devices)

    async def publish_account_unavailable(self, account: str, state: str) -> None:
        """Publish ``"offline"`` and record *state* for the heartbeat."""
        await self._safe_publish(self.availability_topic(account), "offline")
        self.set_account_status(account, state)

    async def publish_heartbeat(self) -> None:
        payload = HeartbeatPayload(
            status="online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            accounts=dict(self._accounts),
        )
        topic = f"{self.topic_prefix}/status"
        logger.debug("Publishing heartbeat to %s", topic)
        await self._safe_publish(topic, payload.to_json())

    async def shutdown(self) -> None:
        """Publish ``"offline"`` for every tracked account and the platform."""
        logger.info("Health reporter shutting down, publishing offline")
        for account in list(self._accounts):
            await self._safe_publish(
                self.availability_topic(account),
                "offline",
            )
        await self._safe_publish(f"{self.topic_prefix}/status", "offline")
        self._accounts.clear()

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", topic)
