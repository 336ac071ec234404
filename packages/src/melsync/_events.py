"""Typed lifecycle events for accounts and devices.

Each account owns one :class:`EventChannel`.  The account manager emits
on it directly; every started controller receives a
:class:`DeviceEvents` view of the same channel that stamps its events
with the device's type label and name.  Listeners subscribed by the
platform turn events into log records, MQTT publications and the
published-accessory list.

Event kinds::

    success            milestone reached ("connected", "started")
    message            informational text
    debug              diagnostic text, only emitted in debug mode
    warn               recoverable problem or rejected configuration
    error              exception attributed to the account or device
    publish_accessory  a controller produced an accessory to register
    dev_info           human-readable device summary

A failing listener is logged and skipped; it never reaches the emitter
or the remaining listeners.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    SUCCESS = "success"
    MESSAGE = "message"
    DEBUG = "debug"
    WARN = "warn"
    ERROR = "error"
    PUBLISH_ACCESSORY = "publish_accessory"
    DEV_INFO = "dev_info"


@dataclass(frozen=True, slots=True)
class DeviceLabel:
    """Attribution of a device event."""

    device_id: str
    type_label: str
    name: str

    def __str__(self) -> str:
        return f"{self.type_label}, {self.name}"


@dataclass(frozen=True, slots=True)
class Event:
    """One emitted event.

    ``payload`` is a ``str`` for text kinds, the exception for
    ``error``, and the accessory object for ``publish_accessory``.
    """

    kind: EventKind
    account: str
    payload: Any
    device: DeviceLabel | None = None

    @property
    def source(self) -> str:
        """Human-readable attribution prefix."""
        if self.device is not None:
            return str(self.device)
        return f"Account {self.account}"


EventListener: TypeAlias = Callable[[Event], Awaitable[None]]


class _EventMethods:
    """One coroutine per event kind, shared by channel and device views."""

    async def _send(self, kind: EventKind, payload: Any) -> None:
        raise NotImplementedError

    async def success(self, message: str) -> None:
        await self._send(EventKind.SUCCESS, message)

    async def message(self, message: str) -> None:
        await self._send(EventKind.MESSAGE, message)

    async def debug(self, message: str) -> None:
        await self._send(EventKind.DEBUG, message)

    async def warn(self, message: str) -> None:
        await self._send(EventKind.WARN, message)

    async def error(self, error: Exception) -> None:
        await self._send(EventKind.ERROR, error)

    async def publish_accessory(self, accessory: Any) -> None:
        await self._send(EventKind.PUBLISH_ACCESSORY, accessory)

    async def dev_info(self, summary: str) -> None:
        await self._send(EventKind.DEV_INFO, summary)


class EventChannel(_EventMethods):
    """Fan-out of one account's events to its listeners."""

    def __init__(self, account: str) -> None:
        self._account = account
        self._listeners: list[EventListener] = []

    @property
    def account(self) -> str:
        return self._account

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Add *listener*; returns a callable that removes it again."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def for_device(self, label: DeviceLabel) -> DeviceEvents:
        return DeviceEvents(self, label)

    async def emit(self, event: Event) -> None:
        """Deliver *event* to every listener in subscription order."""
        for listener in list(self._listeners):
            try:
                await listener(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Event listener failed for %s event of account %s",
                    event.kind,
                    event.account,
                )

    async def _send(self, kind: EventKind, payload: Any) -> None:
        await self.emit(Event(kind=kind, account=self._account, payload=payload))


class DeviceEvents(_EventMethods):
    """View of an :class:`EventChannel` scoped to one device."""

    def __init__(self, channel: EventChannel, label: DeviceLabel) -> None:
        self._channel = channel
        self._label = label

    @property
    def label(self) -> DeviceLabel:
        return self._label

    async def _send(self, kind: EventKind, payload: Any) -> None:
        await self._channel.emit(
            Event(
                kind=kind,
                account=self._channel.account,
                payload=payload,
                device=self._label,
            ),
        )


# ---------------------------------------------------------------------------
# Logging listener
# ---------------------------------------------------------------------------

_LEVELS: dict[EventKind, int] = {
    EventKind.SUCCESS: logging.INFO,
    EventKind.MESSAGE: logging.INFO,
    EventKind.DEBUG: logging.INFO,
    EventKind.WARN: logging.WARNING,
    EventKind.ERROR: logging.ERROR,
    EventKind.PUBLISH_ACCESSORY: logging.INFO,
    EventKind.DEV_INFO: logging.INFO,
}


class LoggingListener:
    """Writes events as log records attributed to account and device.

    Debug events are logged at INFO: whether they are produced at all is
    decided by the account's debug flag, not by the log level.
    """

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target if target is not None else logger

    @staticmethod
    def format(event: Event) -> str:
        match event.kind:
            case EventKind.DEBUG:
                return f"{event.source}, debug: {event.payload}"
            case EventKind.DEV_INFO:
                return str(event.payload)
            case EventKind.PUBLISH_ACCESSORY if event.device is not None:
                device = event.device
                return (
                    f"{event.account}, {device.type_label} {device.name}, "
                    "published as external accessory."
                )
            case _:
                return f"{event.source}, {event.payload}"

    async def __call__(self, event: Event) -> None:
        extra: dict[str, str] = {"account": event.account}
        if event.device is not None:
            extra["device"] = str(event.device)
        self._logger.log(_LEVELS[event.kind], self.format(event), extra=extra)
