"""Error taxonomy and structured error publication.

Every failure the engine handles belongs to one of these classes, and
each is isolated to the account or device that owns it:

* :class:`ConfigError` — missing mandatory field or duplicate account
  name.  Stops that account before any network call.
* :class:`AuthError` / :class:`NetworkError` — raised by a cloud
  session.  Fatal to an account's startup; during polling they are
  reported and the next tick tries again.
* :class:`DeviceStartError` — one controller failed to start.  Its
  siblings still start.
* :class:`PollError` — a refresh failed for a reason other than the
  session contract.  The previous snapshot stays authoritative.

Errors are also published to the platform boundary as JSON::

    {prefix}/error              ← every error
    {prefix}/{account}/error    ← errors attributed to an account

Payload schema::

    {
        "error_type": "auth_error",
        "message": "Invalid credentials",
        "account": "home" | null,
        "device": "ATA Living room" | null,
        "timestamp": "2026-10-18T12:34:56+00:00",
        "details": {}
    }

Publication is fire-and-forget: a failed error *report* is logged and
never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from melsync._mqtt import MqttPort, topic_segment

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class MelsyncError(Exception):
    """Base class for all engine errors."""


class ConfigError(MelsyncError):
    """Invalid or incomplete configuration."""


class SessionError(MelsyncError):
    """Failure reported by a cloud session."""


class AuthError(SessionError):
    """Credentials rejected or context key no longer valid."""


class NetworkError(SessionError):
    """Transport-level failure talking to the cloud."""


class DeviceStartError(MelsyncError):
    """A device controller failed to start."""

    def __init__(self, message: str, *, device_id: str, type_label: str) -> None:
        super().__init__(message)
        self.device_id = device_id
        self.type_label = type_label


class PollError(MelsyncError):
    """A device-list refresh failed outside the session contract."""


ERROR_TYPES: dict[type[Exception], str] = {
    ConfigError: "config_error",
    AuthError: "auth_error",
    NetworkError: "network_error",
    DeviceStartError: "device_start_error",
    PollError: "poll_error",
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    account: str | None
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    account: str | None = None,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into an :class:`ErrorPayload`.

    The type lookup walks the exception's MRO, so a subclass of a mapped
    error inherits its ``error_type``.  Unmapped exceptions fall back to
    ``"error"``.

    Args:
        error: The exception to convert.
        error_type_map: Exception type → ``error_type`` string.  Defaults
            to :data:`ERROR_TYPES`.
        account: Account the error is attributed to.
        device: Device label the error is attributed to.
        details: Extra context; defaults to an empty dict.
        clock: Callable returning the timestamp.  Defaults to
            ``datetime.now(UTC)``.
    """
    resolved_map = ERROR_TYPES if error_type_map is None else error_type_map
    error_type = next(
        (resolved_map[cls] for cls in type(error).__mro__ if cls in resolved_map),
        "error",
    )
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        account=account,
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads over MQTT.

    Args:
        mqtt: Port used for publishing.
        topic_prefix: Root topic (e.g. ``"melsync"``).
        error_type_map: Exception type → ``error_type`` string.
        clock: Optional timestamp source for deterministic tests.
    """

    mqtt: MqttPort
    topic_prefix: str
    error_type_map: dict[type[Exception], str] = field(
        default_factory=lambda: dict(ERROR_TYPES),
    )
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        account: str | None = None,
        device: str | None = None,
    ) -> None:
        """Publish *error* to the global topic and, if known, the account's."""
        try:
            payload = build_error_payload(
                error,
                error_type_map=self.error_type_map,
                account=account,
                device=device,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception(
                "Failed to build error payload for %r (account=%s)",
                error,
                account,
            )
            return

        await self._safe_publish(f"{self.topic_prefix}/error", payload_json)
        if account:
            await self._safe_publish(
                f"{self.topic_prefix}/{topic_segment(account)}/error",
                payload_json,
            )

    async def _safe_publish(self, topic: str, payload: str) -> None:
        try:
            await self.mqtt.publish(topic, payload, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
