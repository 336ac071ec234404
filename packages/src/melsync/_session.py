"""Cloud session contract consumed by the engine.

The engine never speaks the cloud protocol itself.  It depends on two
operations of a per-account session object and on the error kinds they
raise:

* ``connect()`` → :class:`ConnectResult`; raises
  :class:`~melsync._errors.AuthError` on bad credentials and
  :class:`~melsync._errors.NetworkError` on transport failure.  Must be
  safe to call again (the engine reconnects after a stale context key).
* ``list_devices(context_key)`` → devices; raises ``AuthError`` when
  the key is stale and ``NetworkError`` otherwise.

Sessions may return :class:`CloudDevice` instances or the raw cloud
mappings (identified by their ``DeviceID`` key); the registry
normalises both.

Sessions are built per account by a :data:`SessionFactory`, which may
also be given as a ``"module.path:Name"`` string and imported lazily so
the protocol library is only needed where it is used.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, TypeAlias, runtime_checkable

from melsync._errors import AuthError, ConfigError

if TYPE_CHECKING:
    from melsync._settings import AccountSettings

DEVICE_ID_KEY = "DeviceID"

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConnectResult:
    """Outcome of a successful ``connect()``."""

    context_key: str
    account_info: dict[str, Any] = field(default_factory=dict)
    use_fahrenheit: bool = False


@dataclass(frozen=True, slots=True)
class CloudDevice:
    """One device as reported by the cloud in a single poll."""

    device_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> CloudDevice:
        """Build from a raw cloud mapping keyed by ``DeviceID``.

        Raises:
            KeyError: If the mapping carries no ``DeviceID``.
        """
        return cls(device_id=str(raw[DEVICE_ID_KEY]), attributes=dict(raw))

    @property
    def name(self) -> str:
        return str(self.attributes.get("DeviceName", ""))


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class CloudSession(Protocol):
    """Authenticated connection to the cloud for one account."""

    async def connect(self) -> ConnectResult: ...

    async def list_devices(
        self,
        context_key: str,
    ) -> Sequence[CloudDevice | Mapping[str, Any]]: ...


@runtime_checkable
class SessionLifecycle(Protocol):
    """Sessions holding resources release them in ``close()``."""

    async def close(self) -> None: ...


SessionFactory: TypeAlias = "Callable[[AccountSettings], CloudSession]"
"""Builds the session for one account."""


def import_string(dotted_path: str) -> Any:
    """Import an object from a ``module.path:Name`` string.

    Raises:
        ValueError: If the path does not contain exactly one ``:``.
        ImportError: If the module cannot be imported.
        AttributeError: If the module has no such attribute.
    """
    parts = dotted_path.split(":")
    if len(parts) != 2:  # noqa: PLR2004
        msg = f"Expected 'module.path:Name', got {dotted_path!r}"
        raise ValueError(msg)
    module_path, name = parts
    module = importlib.import_module(module_path)
    return getattr(module, name)


def resolve_session_factory(
    factory: SessionFactory | str | None,
) -> SessionFactory:
    """Return a callable session factory.

    Raises:
        ConfigError: If no factory is configured or the import string
            cannot be resolved.
    """
    if factory is None:
        msg = "No cloud session factory configured (MELSYNC_SESSION_FACTORY)"
        raise ConfigError(msg)
    if not isinstance(factory, str):
        return factory
    try:
        resolved = import_string(factory)
    except (ValueError, ImportError, AttributeError) as exc:
        msg = f"Cannot load session factory {factory!r}: {exc}"
        raise ConfigError(msg) from exc
    if not callable(resolved):
        msg = f"Session factory {factory!r} is not callable"
        raise ConfigError(msg)
    return resolved


# ---------------------------------------------------------------------------
# Test double
# ---------------------------------------------------------------------------


@dataclass
class MockCloudSession:
    """Scriptable in-memory session.

    ``devices`` is what ``list_devices`` returns; set ``connect_error``
    or ``list_error`` to make the next calls raise.  ``stale_keys``
    lists context keys that ``list_devices`` rejects with
    :class:`AuthError`.  Each successful ``connect()`` hands out a new
    key (``ctx-1``, ``ctx-2`` …).
    """

    devices: list[CloudDevice | Mapping[str, Any]] = field(default_factory=list)
    account_info: dict[str, Any] = field(default_factory=dict)
    use_fahrenheit: bool = False
    connect_error: Exception | None = None
    list_error: Exception | None = None
    stale_keys: set[str] = field(default_factory=set)

    connect_calls: int = field(default=0, init=False)
    list_calls: list[str] = field(default_factory=list, init=False)
    closed: bool = field(default=False, init=False)

    async def connect(self) -> ConnectResult:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        return ConnectResult(
            context_key=f"ctx-{self.connect_calls}",
            account_info=dict(self.account_info),
            use_fahrenheit=self.use_fahrenheit,
        )

    async def list_devices(
        self,
        context_key: str,
    ) -> Sequence[CloudDevice | Mapping[str, Any]]:
        self.list_calls.append(context_key)
        if context_key in self.stale_keys:
            msg = f"Context key {context_key} expired"
            raise AuthError(msg)
        if self.list_error is not None:
            raise self.list_error
        return list(self.devices)

    async def close(self) -> None:
        self.closed = True
