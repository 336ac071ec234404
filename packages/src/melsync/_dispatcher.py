"""Match configured devices against the registry and start controllers.

Types are dispatched in a fixed order (ATA, ATW, ERV) and, within a
type, in configuration order.  A configured device is bound only when it
is enabled (``display_mode > 0``) and the current registry snapshot
contains its id; anything else is skipped without an event.

Failure isolation has two levels:

* a controller that fails to build or start is reported as a
  :class:`~melsync._errors.DeviceStartError` and the loop moves on;
* an unexpected failure of a whole type's loop is reported and the next
  type still runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from melsync._controller import (
    ControllerContext,
    ControllerFactory,
    DeviceBinding,
    DeviceController,
    DeviceType,
)
from melsync._errors import DeviceStartError
from melsync._events import EventChannel
from melsync._registry import DeviceRegistry
from melsync._session import CloudDevice, CloudSession, ConnectResult
from melsync._settings import AccountSettings, DeviceSettings
from melsync._store import SnapshotStore

logger = logging.getLogger(__name__)

DISPATCH_ORDER: tuple[DeviceType, ...] = (DeviceType.ATA, DeviceType.ATW, DeviceType.ERV)


class DeviceDispatcher:
    """Start one controller per bound device of an account.

    Args:
        account: The account's configuration (device lists).
        registry: Registry whose current snapshot decides presence.
        factories: Controller factory per device type.
        events: The account's event channel.
    """

    def __init__(
        self,
        account: AccountSettings,
        registry: DeviceRegistry,
        factories: Mapping[DeviceType, ControllerFactory],
        events: EventChannel,
    ) -> None:
        self._account = account
        self._registry = registry
        self._factories = factories
        self._events = events

    def configured(self, device_type: DeviceType) -> list[DeviceSettings]:
        return list(getattr(self._account, device_type.config_attr))

    def bindings(
        self,
        device_type: DeviceType,
        snapshot: Mapping[str, CloudDevice] | None = None,
    ) -> list[DeviceBinding]:
        """Bindings for *device_type*.

        Presence is checked against *snapshot* when given, otherwise
        against the registry's current snapshot.
        """
        bound: list[DeviceBinding] = []
        for device in self.configured(device_type):
            if not device.enabled:
                continue
            lookup = self._registry.get if snapshot is None else snapshot.get
            cloud = lookup(device.id)
            if cloud is None:
                continue
            bound.append(
                DeviceBinding(
                    account=self._account.name,
                    device_type=device_type,
                    config=device,
                    cloud=cloud,
                ),
            )
        return bound

    async def dispatch(
        self,
        session: CloudSession,
        connection: ConnectResult,
        store: SnapshotStore | None = None,
        started: list[DeviceController] | None = None,
    ) -> list[DeviceController]:
        """Start controllers for every binding; return those that started.

        Presence is decided against the snapshot current when dispatch
        begins, even if a refresh replaces it while controllers start.

        Each controller is appended to *started* as soon as its
        ``start()`` returns, so a caller that owns the list can stop
        them even when dispatch is cancelled halfway.
        """
        snapshot = {device.device_id: device for device in self._registry.all()}
        if started is None:
            started = []
        for device_type in DISPATCH_ORDER:
            try:
                await self._dispatch_type(
                    device_type,
                    snapshot,
                    session,
                    connection,
                    store,
                    started,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "Account %s: %s dispatch failed",
                    self._account.name,
                    device_type.label,
                )
                await self._events.error(exc)
        return started

    async def _dispatch_type(
        self,
        device_type: DeviceType,
        snapshot: Mapping[str, CloudDevice],
        session: CloudSession,
        connection: ConnectResult,
        store: SnapshotStore | None,
        started: list[DeviceController],
    ) -> None:
        factory = self._factories[device_type]
        for binding in self.bindings(device_type, snapshot):
            device_events = self._events.for_device(binding.label)
            ctx = ControllerContext(
                binding=binding,
                session=session,
                connection=connection,
                events=device_events,
                refresh_interval_ms=self._account.device_refresh_interval_ms,
                store=store,
            )
            try:
                controller = factory(ctx)
                await controller.start()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = DeviceStartError(
                    f"{binding.type_label} {binding.name} failed to start: {exc}",
                    device_id=binding.device_id,
                    type_label=binding.type_label,
                )
                error.__cause__ = exc
                await device_events.error(error)
                continue
            started.append(controller)
