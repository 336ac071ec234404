"""Per-account orchestration: connect, discover, schedule, dispatch.

State machine::

    idle ──validate──▶ connecting ──connect()──▶ discovering ──refresh()──▶ running
      │                    │                         │                        │
      └──ConfigError──▶ failed ◀──Auth/NetworkError──┴──────any error─────────┘ (startup only)
                                                                              │
                                                                   stop() ──▶ stopped

``failed`` is terminal: the engine schedules no retries and the account
contributes no devices.  Once ``running``, refresh failures are reported
and the next tick tries again; a refresh rejected with ``AuthError``
triggers one reconnect and an immediate retry.

Devices are dispatched exactly once, on entering ``running``, from the
initial snapshot.  Later refresh ticks update the registry only, so a
device added in the cloud after startup is not picked up until the
process restarts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path

from melsync._clock import ClockPort, SystemClock
from melsync._controller import (
    ControllerFactory,
    ControllerLifecycle,
    DeviceController,
    DeviceType,
)
from melsync._dispatcher import DeviceDispatcher
from melsync._errors import AuthError, ConfigError, MelsyncError, PollError
from melsync._events import EventChannel
from melsync._registry import DeviceRegistry
from melsync._scheduler import PollingScheduler, TimerSpec
from melsync._session import (
    CloudSession,
    ConnectResult,
    SessionFactory,
    SessionLifecycle,
)
from melsync._settings import AccountSettings
from melsync._store import SnapshotStore

logger = logging.getLogger(__name__)

REFRESH_TIMER = "refresh_device_list"


class AccountState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class AccountManager:
    """Owns the session, registry, scheduler and store of one account.

    Args:
        account: The account's configuration.
        session_factory: Builds the account's cloud session.
        controller_factories: Controller factory per device type.
        events: The account's event channel.
        account_names: Names already claimed by other accounts.  Owned by
            the platform; the manager adds its own name once validated.
        storage_path: Directory for snapshot files; ``None`` disables
            persistence.
        clock: Monotonic clock for the scheduler and registry.
    """

    def __init__(
        self,
        account: AccountSettings,
        *,
        session_factory: SessionFactory,
        controller_factories: Mapping[DeviceType, ControllerFactory],
        events: EventChannel,
        account_names: set[str],
        storage_path: Path | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        self._account = account
        self._session_factory = session_factory
        self._controller_factories = controller_factories
        self._events = events
        self._account_names = account_names
        self._storage_path = storage_path
        self._clock = clock if clock is not None else SystemClock()

        self._state = AccountState.IDLE
        self._failure: Exception | None = None
        self._session: CloudSession | None = None
        self._connection: ConnectResult | None = None
        self._store: SnapshotStore | None = None
        self._registry: DeviceRegistry | None = None
        self._scheduler: PollingScheduler | None = None
        self._controllers: list[DeviceController] = []
        self._duplicate = False

    # --- Accessors ----------------------------------------------------------

    @property
    def name(self) -> str:
        return self._events.account

    @property
    def account(self) -> AccountSettings:
        return self._account

    @property
    def state(self) -> AccountState:
        return self._state

    @property
    def failure(self) -> Exception | None:
        """The exception that moved the account to ``failed``."""
        return self._failure

    @property
    def connection(self) -> ConnectResult | None:
        return self._connection

    @property
    def registry(self) -> DeviceRegistry | None:
        return self._registry

    @property
    def scheduler(self) -> PollingScheduler | None:
        return self._scheduler

    @property
    def controllers(self) -> list[DeviceController]:
        return list(self._controllers)

    @property
    def duplicate(self) -> bool:
        """Whether validation rejected the name as claimed by another account."""
        return self._duplicate

    # --- Startup ------------------------------------------------------------

    def validate(self) -> None:
        """Check mandatory fields and claim the account name.

        Raises:
            ConfigError: On a missing field or an already claimed name.
        """
        missing = self._account.missing_fields()
        if missing:
            msg = f"Missing mandatory config field(s): {', '.join(missing)}"
            raise ConfigError(msg)
        if self._account.name in self._account_names:
            self._duplicate = True
            msg = f"Account name: {self._account.name}, must be unique"
            raise ConfigError(msg)
        self._account_names.add(self._account.name)

    async def start(self) -> AccountState:
        """Run the startup sequence; returns the resulting state.

        Never raises for account-level failures: they are reported on
        the event channel and leave the account ``failed``.
        """
        if self._state is not AccountState.IDLE:
            msg = f"Account {self.name} already started ({self._state})"
            raise RuntimeError(msg)

        try:
            self.validate()
        except ConfigError as exc:
            self._failure = exc
            self._state = AccountState.FAILED
            await self._events.warn(str(exc))
            return self._state

        if self._account.debug:
            await self._events.debug("did finish launching.")
            config = json.dumps(self._account.redacted(), indent=2)
            await self._events.debug(f"Config: {config}")

        if self._storage_path is not None:
            self._store = SnapshotStore(self._storage_path, self._account.name)

        self._state = AccountState.CONNECTING
        try:
            self._session = self._session_factory(self._account)
            self._connection = await self._session.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._fail(exc)
        self._persist_account_info()
        await self._events.success("connected.")

        self._state = AccountState.DISCOVERING
        self._registry = DeviceRegistry(self._session, store=self._store, clock=self._clock)
        try:
            devices = await self._registry.refresh(self._connection.context_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._fail(exc)
        if self._account.debug:
            await self._events.debug(f"found {len(devices)} device(s) in the cloud.")

        self._scheduler = PollingScheduler(
            self._on_tick,
            on_error=self._on_tick_error,
            clock=self._clock,
            name=f"account:{self.name}",
        )
        self._state = AccountState.RUNNING
        self._scheduler.start([TimerSpec(REFRESH_TIMER, self._account.refresh_interval_ms)])

        dispatcher = DeviceDispatcher(
            self._account,
            self._registry,
            self._controller_factories,
            self._events,
        )
        await dispatcher.dispatch(
            self._session,
            self._connection,
            self._store,
            started=self._controllers,
        )
        if self._account.debug:
            await self._events.debug(f"started {len(self._controllers)} controller(s).")
        return self._state

    async def _fail(self, exc: Exception) -> AccountState:
        logger.debug("Account %s failed during %s", self.name, self._state)
        self._failure = exc
        self._state = AccountState.FAILED
        await self._events.error(exc)
        await self._close_session()
        return self._state

    def _persist_account_info(self) -> None:
        if self._store is None or self._connection is None:
            return
        try:
            self._store.write_account(self._connection.account_info)
        except OSError:
            logger.exception("Account %s: failed to persist account info", self.name)

    # --- Polling ------------------------------------------------------------

    async def _on_tick(self, name: str) -> None:
        if name == REFRESH_TIMER:
            await self._refresh_device_list()
        else:
            logger.warning("Account %s: unknown timer '%s'", self.name, name)

    async def _refresh_device_list(self) -> None:
        if self._registry is None or self._connection is None or self._session is None:
            return
        try:
            devices = await self._registry.refresh(self._connection.context_key)
        except AuthError as exc:
            await self._events.warn(f"session rejected ({exc}), reconnecting.")
            self._connection = await self._session.connect()
            self._persist_account_info()
            devices = await self._registry.refresh(self._connection.context_key)
        if self._account.debug:
            await self._events.debug(f"device list refreshed, {len(devices)} device(s).")

    async def _on_tick_error(self, name: str, exc: Exception) -> None:
        if not isinstance(exc, MelsyncError):
            wrapped = PollError(f"{name} failed: {exc!r}")
            wrapped.__cause__ = exc
            exc = wrapped
        await self._events.error(exc)

    # --- Shutdown -----------------------------------------------------------

    async def stop(self) -> None:
        """Stop polling, then controllers, then release the session."""
        if self._scheduler is not None:
            await self._scheduler.stop()
        controllers = list(self._controllers)
        self._controllers.clear()
        for controller in reversed(controllers):
            if isinstance(controller, ControllerLifecycle):
                try:
                    await controller.stop()
                except Exception:
                    logger.exception("Account %s: controller stop failed", self.name)
        await self._close_session()
        if self._state is not AccountState.FAILED:
            self._state = AccountState.STOPPED

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if isinstance(session, SessionLifecycle):
            try:
                await session.close()
            except Exception:
                logger.exception("Account %s: session close failed", self.name)
