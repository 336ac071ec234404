"""Top-level orchestrator.

:class:`Platform` is the composition root.  It owns the only
process-wide state — the set of claimed account names and the list of
published accessories — and hands both explicitly to the pieces that
need them.

Typical usage::

    import melsync

    platform = melsync.Platform(
        name="melsync",
        session_factory="mycloud.session:MelCloudSession",
    )

    @platform.controller(melsync.DeviceType.ATA)
    def air_conditioner(ctx: melsync.ControllerContext) -> MyAtaController:
        return MyAtaController(ctx)

    platform.run()

Lifecycle of :meth:`Platform.run`:

1. Bootstrap: settings, logging, session factory, account list, storage
   directory, MQTT boundary, health and error publishers.
2. One startup task per account (connect → discover → schedule →
   dispatch), all running concurrently; a failing account never
   affects another.
3. Block until SIGTERM/SIGINT (or the injected shutdown event).
4. Teardown: cancel unfinished startups, stop every account (scheduler
   before session), publish offline, disconnect MQTT.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, overload

from melsync._account import AccountManager, AccountState
from melsync._clock import ClockPort, SystemClock
from melsync._controller import Accessory, BasicController, ControllerFactory, DeviceType
from melsync._errors import ConfigError, ErrorPublisher
from melsync._events import Event, EventChannel, EventKind, LoggingListener
from melsync._health import HealthReporter, build_will_config
from melsync._logging import configure_logging
from melsync._mqtt import (
    MqttClient,
    MqttLifecycle,
    MqttPort,
    NullMqttClient,
    topic_segment,
)
from melsync._session import SessionFactory, resolve_session_factory
from melsync._settings import AccountSettings, Settings

logger = logging.getLogger(__name__)


@dataclass
class _BoundaryListener:
    """Forwards accessories and errors of every account to the boundary."""

    mqtt: MqttPort
    topic_prefix: str
    error_publisher: ErrorPublisher
    accessories: list[Any] = field(default_factory=list)

    async def __call__(self, event: Event) -> None:
        if event.kind is EventKind.PUBLISH_ACCESSORY:
            await self._publish_accessory(event)
        elif event.kind is EventKind.ERROR:
            await self.error_publisher.publish(
                event.payload,
                account=event.account,
                device=str(event.device) if event.device is not None else None,
            )

    async def _publish_accessory(self, event: Event) -> None:
        accessory = event.payload
        self.accessories.append(accessory)
        if isinstance(accessory, Accessory):
            device_id = accessory.device_id
            payload = accessory.to_json()
        else:
            device_id = event.device.device_id if event.device is not None else "unknown"
            payload = json.dumps(accessory, default=str)
        topic = (
            f"{self.topic_prefix}/{topic_segment(event.account)}"
            f"/{topic_segment(str(device_id))}/accessory"
        )
        try:
            await self.mqtt.publish(topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish accessory to %s", topic)


class Platform:
    """Composition root for all configured accounts."""

    def __init__(
        self,
        name: str = "melsync",
        version: str = "0.0.0",
        *,
        description: str = "Cloud HVAC device synchroniser",
        settings_class: type[Settings] = Settings,
        session_factory: SessionFactory | str | None = None,
        dry_run: bool = False,
        heartbeat_interval: float | None = 60.0,
    ) -> None:
        """Initialise the platform.

        Args:
            name: Platform name; default MQTT topic prefix and client id.
            version: Version string for heartbeats and ``--version``.
            description: Short description for CLI help text.
            settings_class: Settings subclass instantiated at startup.
            session_factory: Builds each account's cloud session.  When
                ``None``, ``Settings.session_factory`` is used.
            dry_run: Replace the MQTT client with a silent adapter.
            heartbeat_interval: Seconds between heartbeats; ``None``
                disables periodic heartbeats.
        """
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            msg = f"heartbeat_interval must be positive, got {heartbeat_interval}"
            raise ValueError(msg)
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._session_factory = session_factory
        self._dry_run = dry_run
        self._heartbeat_interval = heartbeat_interval
        self._controller_factories: dict[DeviceType, ControllerFactory] = {
            device_type: BasicController for device_type in DeviceType
        }
        self._custom_controllers: set[DeviceType] = set()
        self._account_names: set[str] = set()
        self._accessories: list[Any] = []
        self._managers: list[AccountManager] = []
        self._startup_tasks: list[asyncio.Task[None]] = []

    # --- Registration -------------------------------------------------------

    @overload
    def controller(
        self,
        device_type: DeviceType,
    ) -> Callable[[ControllerFactory], ControllerFactory]: ...

    @overload
    def controller(
        self,
        device_type: DeviceType,
        factory: ControllerFactory,
    ) -> ControllerFactory: ...

    def controller(
        self,
        device_type: DeviceType,
        factory: ControllerFactory | None = None,
    ) -> Any:
        """Register the controller factory for *device_type*.

        Usable directly or as a decorator.

        Raises:
            ValueError: If a factory was already registered for the type.
        """

        def register(func: ControllerFactory) -> ControllerFactory:
            if device_type in self._custom_controllers:
                msg = f"Controller already registered for {device_type.label}"
                raise ValueError(msg)
            self._custom_controllers.add(device_type)
            self._controller_factories[device_type] = func
            return func

        if factory is None:
            return register
        return register(factory)

    # --- Accessors ----------------------------------------------------------

    @property
    def accessories(self) -> list[Any]:
        """Accessories published so far, across all accounts."""
        return list(self._accessories)

    @property
    def managers(self) -> list[AccountManager]:
        return list(self._managers)

    @property
    def account_names(self) -> frozenset[str]:
        return frozenset(self._account_names)

    @property
    def started(self) -> bool:
        """Whether every account of the current run finished its startup."""
        return bool(self._startup_tasks) and all(
            task.done() for task in self._startup_tasks
        )

    # --- Lifecycle ----------------------------------------------------------

    def run(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Run until SIGTERM/SIGINT (blocking).

        All arguments are overrides for tests and embedding.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    mqtt=mqtt,
                    settings=settings,
                    shutdown_event=shutdown_event,
                    clock=clock,
                ),
            )

    def cli(self) -> None:
        """Run with command-line argument parsing."""
        from melsync._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        mqtt: MqttPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Bootstrap, run every account, and tear down on shutdown.

        Raises:
            ConfigError: If the session factory, the config file or the
                storage directory is unusable.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        prefix = resolved_settings.mqtt.topic_prefix or self._name
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )

        accounts = resolved_settings.load_accounts()
        if not accounts:
            logger.warning("No accounts configured for %s", self._name)
            return
        session_factory = resolve_session_factory(
            self._session_factory
            if self._session_factory is not None
            else resolved_settings.session_factory,
        )
        storage_path = self._prepare_storage(resolved_settings.storage_path)

        resolved_clock = clock if clock is not None else SystemClock()
        mqtt = self._create_mqtt(mqtt, resolved_settings, prefix)
        health_reporter = HealthReporter(
            mqtt=mqtt,
            topic_prefix=prefix,
            version=self._version,
            clock=resolved_clock,
        )
        boundary = _BoundaryListener(
            mqtt=mqtt,
            topic_prefix=prefix,
            error_publisher=ErrorPublisher(mqtt=mqtt, topic_prefix=prefix),
            accessories=self._accessories,
        )

        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()

        shutdown_event = self._install_signal_handlers(shutdown_event)

        # --- Phase 2: Accounts ---
        self._account_names.clear()
        self._accessories.clear()
        self._startup_tasks = []
        self._managers = self._build_managers(
            accounts,
            session_factory,
            storage_path,
            resolved_clock,
            boundary,
        )
        await health_reporter.publish_heartbeat()
        startup_tasks = [
            asyncio.create_task(
                self._start_account(manager, health_reporter),
                name=f"account:{manager.name}",
            )
            for manager in self._managers
        ]
        self._startup_tasks = startup_tasks
        heartbeat_task = self._start_heartbeat_task(health_reporter)

        # --- Phase 3: Run ---
        try:
            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await self._cancel_tasks(startup_tasks)
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat_task
            for manager in self._managers:
                await manager.stop()
            await health_reporter.shutdown()
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.stop()

        logger.info("Shutdown complete")

    # --- _run_async helpers -------------------------------------------------

    @staticmethod
    def _prepare_storage(path: Path) -> Path:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Prepare directory error: {exc}"
            raise ConfigError(msg) from exc
        return path

    def _create_mqtt(
        self,
        mqtt: MqttPort | None,
        settings: Settings,
        prefix: str,
    ) -> MqttPort:
        if mqtt is not None:
            return mqtt
        if self._dry_run:
            return NullMqttClient()
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{self._name}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(settings=mqtt_settings, will=build_will_config(prefix))

    def _build_managers(
        self,
        accounts: list[AccountSettings],
        session_factory: SessionFactory,
        storage_path: Path,
        clock: ClockPort,
        boundary: _BoundaryListener,
    ) -> list[AccountManager]:
        managers: list[AccountManager] = []
        logging_listener = LoggingListener()
        for index, account in enumerate(accounts, start=1):
            channel = EventChannel(account.name or f"account-{index}")
            channel.subscribe(logging_listener)
            channel.subscribe(boundary)
            managers.append(
                AccountManager(
                    account,
                    session_factory=session_factory,
                    controller_factories=self._controller_factories,
                    events=channel,
                    account_names=self._account_names,
                    storage_path=storage_path,
                    clock=clock,
                ),
            )
        return managers

    @staticmethod
    async def _start_account(
        manager: AccountManager,
        health_reporter: HealthReporter,
    ) -> None:
        try:
            state = await manager.start()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Account %s: startup crashed", manager.name)
            state = AccountState.FAILED
        if manager.duplicate:
            # Availability and heartbeat entry belong to the account that
            # claimed the name first.
            return
        if state is AccountState.RUNNING:
            await health_reporter.publish_account_available(
                manager.name,
                len(manager.controllers),
            )
        else:
            await health_reporter.publish_account_unavailable(manager.name, state)

    def _install_signal_handlers(
        self,
        shutdown_event: asyncio.Event | None,
    ) -> asyncio.Event:
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    def _start_heartbeat_task(
        self,
        health_reporter: HealthReporter,
    ) -> asyncio.Task[None] | None:
        if self._heartbeat_interval is None:
            return None
        return asyncio.create_task(
            self._heartbeat_loop(health_reporter, self._heartbeat_interval),
        )

    @staticmethod
    async def _heartbeat_loop(
        health_reporter: HealthReporter,
        interval: float,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            await health_reporter.publish_heartbeat()

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Task error during shutdown: %s", result)
