"""Device controller capability.

Air conditioners (ATA), heat pumps (ATW) and energy-recovery
ventilators (ERV) share one controller contract distinguished by a
:class:`DeviceType` tag.  How a controller maps cloud state onto
accessory characteristics is its own business; the engine only builds
it from a :class:`ControllerContext` and awaits :meth:`start`.

:class:`BasicController` is the controller used when an application
registers nothing more specific: it caches the device's cloud
attributes, emits a device summary and publishes an :class:`Accessory`
describing the device.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol, TypeAlias, runtime_checkable

from melsync._events import DeviceEvents, DeviceLabel
from melsync._session import CloudDevice, CloudSession, ConnectResult
from melsync._settings import DeviceSettings
from melsync._store import SnapshotStore


class DeviceType(IntEnum):
    """Device families, valued with the cloud's type codes."""

    ATA = 0
    ATW = 1
    ERV = 3

    @property
    def label(self) -> str:
        return self.name

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def config_attr(self) -> str:
        """Name of the :class:`AccountSettings` list holding this type."""
        return f"{self.name.lower()}_devices"


_DESCRIPTIONS = {
    DeviceType.ATA: "Air Conditioner",
    DeviceType.ATW: "Heat Pump",
    DeviceType.ERV: "Energy Recovery Ventilation",
}


@dataclass(frozen=True, slots=True)
class DeviceBinding:
    """A configured device matched with the cloud device of the same id."""

    account: str
    device_type: DeviceType
    config: DeviceSettings
    cloud: CloudDevice

    @property
    def device_id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name or self.cloud.name or self.device_id

    @property
    def type_label(self) -> str:
        return self.config.type_label or self.device_type.description

    @property
    def label(self) -> DeviceLabel:
        return DeviceLabel(
            device_id=self.device_id,
            type_label=self.type_label,
            name=self.name,
        )


@dataclass(frozen=True, slots=True)
class ControllerContext:
    """Everything a controller receives when it is built."""

    binding: DeviceBinding
    session: CloudSession
    connection: ConnectResult
    events: DeviceEvents
    refresh_interval_ms: int
    store: SnapshotStore | None = None

    @property
    def use_fahrenheit(self) -> bool:
        return self.connection.use_fahrenheit


@runtime_checkable
class DeviceController(Protocol):
    """A started controller owns one device's ongoing state."""

    device_type: DeviceType

    async def start(self) -> None: ...


@runtime_checkable
class ControllerLifecycle(Protocol):
    """Controllers holding resources release them in ``stop()``."""

    async def stop(self) -> None: ...


ControllerFactory: TypeAlias = Callable[[ControllerContext], DeviceController]


@dataclass(frozen=True, slots=True)
class Accessory:
    """Accessory handed to the platform boundary for registration."""

    account: str
    device_id: str
    name: str
    type_label: str
    device_type: DeviceType
    use_fahrenheit: bool = False
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "device_id": self.device_id,
            "name": self.name,
            "type_label": self.type_label,
            "device_type": self.device_type.label,
            "use_fahrenheit": self.use_fahrenheit,
            "attributes": dict(self.attributes),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class BasicController:
    """Publishes a bound device as an accessory."""

    def __init__(self, ctx: ControllerContext) -> None:
        self._ctx = ctx
        self.device_type = ctx.binding.device_type

    def _summary(self) -> str:
        binding = self._ctx.binding
        attributes = binding.cloud.attributes
        lines = [
            f"-------- {binding.name} --------",
            f"Account: {binding.account}",
            f"Type: {binding.type_label}",
            f"Device ID: {binding.device_id}",
        ]
        for key, title in (("SerialNumber", "Serial"), ("FirmwareVersion", "Firmware")):
            if attributes.get(key):
                lines.append(f"{title}: {attributes[key]}")
        lines.append(f"Temperature unit: {'°F' if self._ctx.use_fahrenheit else '°C'}")
        lines.append("-" * (len(lines[0])))
        return "\n".join(lines)

    async def start(self) -> None:
        binding = self._ctx.binding
        if self._ctx.store is not None:
            self._ctx.store.write_device(binding.device_id, dict(binding.cloud.attributes))
        await self._ctx.events.dev_info(self._summary())
        await self._ctx.events.publish_accessory(
            Accessory(
                account=binding.account,
                device_id=binding.device_id,
                name=binding.name,
                type_label=binding.type_label,
                device_type=binding.device_type,
                use_fahrenheit=self._ctx.use_fahrenheit,
                attributes=dict(binding.cloud.attributes),
            ),
        )
