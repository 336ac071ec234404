"""Tests for melsync._account — the per-account state machine.

Test Techniques Used:
    - State Transition Testing: idle → connecting → discovering → running
    - Error Isolation: Config, auth and network failures end in ``failed``
    - Mock-based Isolation: MockCloudSession, RecordingController
    - Timing: Short real refresh intervals drive the scheduler
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from pathlib import Path

import pytest

from melsync._account import REFRESH_TIMER, AccountManager, AccountState
from melsync._controller import (
    BasicController,
    ControllerContext,
    ControllerFactory,
    DeviceType,
)
from melsync._errors import (
    AuthError,
    ConfigError,
    NetworkError,
    PollError,
)
from melsync._events import EventChannel, EventKind
from melsync._settings import AccountSettings
from melsync._store import SnapshotStore
from melsync.testing import (
    EventRecorder,
    MockCloudSession,
    RecordingController,
    make_account,
)

DEVICES = [{"DeviceID": 1, "DeviceName": "Living"}, {"DeviceID": 2, "DeviceName": "Attic"}]


def _manager(
    account: AccountSettings,
    session: MockCloudSession,
    recorder: EventRecorder,
    *,
    account_names: set[str] | None = None,
    factories: Mapping[DeviceType, ControllerFactory] | None = None,
    storage_path: Path | None = None,
) -> AccountManager:
    channel = EventChannel(account.name)
    channel.subscribe(recorder)
    return AccountManager(
        account,
        session_factory=lambda _account: session,
        controller_factories=factories
        or {device_type: RecordingController for device_type in DeviceType},
        events=channel,
        account_names=set() if account_names is None else account_names,
        storage_path=storage_path,
    )


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def session() -> MockCloudSession:
    return MockCloudSession(devices=list(DEVICES), account_info={"LoginData": {}})


class TestHappyPath:
    """Startup of a valid account.

    Technique: State Transition Testing.
    """

    async def test_reaches_running_with_controllers(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home", ata=["1"], erv=["2"]), session, event_recorder)
        assert manager.state is AccountState.IDLE

        state = await manager.start()

        assert state is AccountState.RUNNING
        assert manager.failure is None
        assert session.connect_calls == 1
        assert [c.device_id for c in manager.controllers] == ["1", "2"]  # type: ignore[attr-defined]
        assert event_recorder.payloads(EventKind.SUCCESS) == ["connected."]
        assert manager.connection is not None
        assert manager.connection.context_key == "ctx-1"
        await manager.stop()

    async def test_scheduler_runs_refresh_timer(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        assert manager.scheduler is not None
        assert [t.name for t in manager.scheduler.timers] == [REFRESH_TIMER]
        assert manager.scheduler.timers[0].interval_ms == 120_000
        await _settle()
        assert len(session.list_calls) >= 1
        await manager.stop()

    async def test_name_is_claimed(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        names: set[str] = set()
        manager = _manager(make_account("home"), session, event_recorder, account_names=names)
        await manager.start()
        assert names == {"home"}
        await manager.stop()

    async def test_snapshots_persisted(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
        tmp_path: Path,
    ) -> None:
        manager = _manager(
            make_account("home", ata=["1"]),
            session,
            event_recorder,
            factories={t: BasicController for t in DeviceType},
            storage_path=tmp_path,
        )
        await manager.start()
        store = SnapshotStore(tmp_path, "home")
        assert store.read_account() == {"LoginData": {}}
        assert [d.device_id for d in store.read_devices()] == ["1", "2"]
        assert store.read_device("1") is not None
        await manager.stop()

    async def test_second_start_rejected(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        with pytest.raises(RuntimeError, match="already started"):
            await manager.start()
        await manager.stop()


class TestConfigFailures:
    """Invalid configuration stops the account before any network call.

    Technique: Error Isolation.
    """

    @pytest.mark.parametrize("field", ["user", "password", "language"])
    async def test_missing_field(
        self,
        field: str,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        account = make_account("home", **{field: ""})
        manager = _manager(account, session, event_recorder)
        assert await manager.start() is AccountState.FAILED
        assert isinstance(manager.failure, ConfigError)
        assert session.connect_calls == 0
        [warning] = event_recorder.payloads(EventKind.WARN)
        assert field in str(warning)
        assert manager.scheduler is None

    async def test_duplicate_name(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        names: set[str] = set()
        first = _manager(make_account("home"), session, event_recorder, account_names=names)
        second = _manager(make_account("home"), MockCloudSession(), event_recorder, account_names=names)

        assert await first.start() is AccountState.RUNNING
        assert await second.start() is AccountState.FAILED
        assert "must be unique" in str(second.failure)
        assert second.duplicate is True
        assert first.duplicate is False
        assert first.state is AccountState.RUNNING
        await first.stop()

    async def test_duplicate_names_both_unstarted_only_first_wins(
        self,
        event_recorder: EventRecorder,
    ) -> None:
        names: set[str] = set()
        sessions = [MockCloudSession(), MockCloudSession()]
        managers = [
            _manager(make_account("home"), s, event_recorder, account_names=names)
            for s in sessions
        ]
        states = await asyncio.gather(*(m.start() for m in managers))
        assert sorted(states) == sorted([AccountState.RUNNING, AccountState.FAILED])
        assert sum(s.connect_calls for s in sessions) == 1
        for manager in managers:
            await manager.stop()


class TestSessionFailures:
    """Auth and network failures during startup are terminal.

    Technique: Error Isolation.
    """

    @pytest.mark.parametrize("error", [AuthError("bad password"), NetworkError("dns")])
    async def test_connect_failure(
        self,
        error: Exception,
        event_recorder: EventRecorder,
    ) -> None:
        session = MockCloudSession(connect_error=error)
        manager = _manager(make_account("home", ata=["1"]), session, event_recorder)
        assert await manager.start() is AccountState.FAILED
        assert manager.failure is error
        assert event_recorder.payloads(EventKind.ERROR) == [error]
        assert session.closed
        assert manager.scheduler is None
        assert manager.controllers == []
        assert session.list_calls == []

    async def test_initial_refresh_failure(self, event_recorder: EventRecorder) -> None:
        session = MockCloudSession(devices=list(DEVICES), list_error=NetworkError("down"))
        manager = _manager(make_account("home", ata=["1"]), session, event_recorder)
        assert await manager.start() is AccountState.FAILED
        assert isinstance(manager.failure, NetworkError)
        assert manager.controllers == []
        assert manager.scheduler is None
        assert session.list_calls == ["ctx-1"]

    async def test_session_factory_failure(self, event_recorder: EventRecorder) -> None:
        channel = EventChannel("home")
        channel.subscribe(event_recorder)

        def broken_factory(account: AccountSettings) -> MockCloudSession:
            msg = "missing protocol library"
            raise ImportError(msg)

        manager = AccountManager(
            make_account("home"),
            session_factory=broken_factory,
            controller_factories={},
            events=channel,
            account_names=set(),
        )
        assert await manager.start() is AccountState.FAILED
        assert isinstance(manager.failure, ImportError)

    async def test_stop_after_failure_keeps_failed(self, event_recorder: EventRecorder) -> None:
        session = MockCloudSession(connect_error=AuthError("x"))
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        await manager.stop()
        assert manager.state is AccountState.FAILED


class TestDebugMode:
    async def test_debug_events_without_password(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        account = make_account("home", debug=True)
        manager = _manager(account, session, event_recorder)
        await manager.start()
        debug = [str(p) for p in event_recorder.payloads(EventKind.DEBUG)]
        assert debug[0] == "did finish launching."
        config_message = next(m for m in debug if m.startswith("Config: "))
        config = json.loads(config_message.removeprefix("Config: "))
        assert config["passwd"] == "removed"
        assert "secret" not in config_message
        await manager.stop()

    async def test_no_debug_events_by_default(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        await _settle()
        assert event_recorder.of_kind(EventKind.DEBUG) == []
        await manager.stop()


class TestPolling:
    """Refresh ticks while running.

    Technique: Timing — short real refresh intervals.
    """

    async def test_refresh_failure_keeps_snapshot(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home", refresh_interval=0.01), session, event_recorder)
        await manager.start()
        session.list_error = NetworkError("down")
        await asyncio.sleep(0.05)
        assert manager.state is AccountState.RUNNING
        assert manager.registry is not None
        assert manager.registry.exists("1")
        assert any(isinstance(e, NetworkError) for e in event_recorder.payloads(EventKind.ERROR))

        session.list_error = None
        session.devices = [{"DeviceID": 9}]
        await asyncio.sleep(0.05)
        assert [d.device_id for d in manager.registry.all()] == ["9"]
        await manager.stop()

    async def test_stale_key_reconnects_and_retries(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        await _settle()
        session.stale_keys.add("ctx-1")
        session.devices = [{"DeviceID": 7}]
        await manager._on_tick(REFRESH_TIMER)
        assert session.connect_calls == 2
        assert manager.connection is not None
        assert manager.connection.context_key == "ctx-2"
        assert session.list_calls[-1] == "ctx-2"
        assert manager.registry is not None
        assert manager.registry.exists("7")
        assert any("reconnecting" in str(w) for w in event_recorder.payloads(EventKind.WARN))
        await manager.stop()

    async def test_unexpected_tick_failure_reported_as_poll_error(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        cause = ValueError("bad")
        await manager._on_tick_error(REFRESH_TIMER, cause)
        [error] = event_recorder.payloads(EventKind.ERROR)
        assert isinstance(error, PollError)
        assert error.__cause__ is cause
        await manager.stop()

    async def test_dispatch_happens_once(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home", ata=["1", "5"]), session, event_recorder)
        await manager.start()
        await _settle()
        session.devices = [*DEVICES, {"DeviceID": 5}]
        await manager._on_tick(REFRESH_TIMER)
        assert manager.registry is not None
        assert manager.registry.exists("5")
        assert [c.device_id for c in manager.controllers] == ["1"]  # type: ignore[attr-defined]
        await manager.stop()


class TestStop:
    """Shutdown order and final state.

    Technique: State Transition Testing.
    """

    async def test_stop_releases_everything(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home", ata=["1"]), session, event_recorder)
        await manager.start()
        [controller] = manager.controllers
        scheduler = manager.scheduler
        assert scheduler is not None

        await manager.stop()

        assert manager.state is AccountState.STOPPED
        assert not scheduler.running
        assert controller.stopped  # type: ignore[attr-defined]
        assert session.closed
        assert manager.controllers == []

    async def test_no_refresh_after_stop(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        manager = _manager(make_account("home", refresh_interval=0.01), session, event_recorder)
        await manager.start()
        await manager.stop()
        calls = len(session.list_calls)
        await asyncio.sleep(0.05)
        assert len(session.list_calls) == calls

    async def test_scheduler_stops_before_session_closes(
        self,
        event_recorder: EventRecorder,
    ) -> None:
        order: list[str] = []

        class OrderedSession(MockCloudSession):
            async def close(self) -> None:
                order.append("session")
                await super().close()

        session = OrderedSession(devices=list(DEVICES))
        manager = _manager(make_account("home"), session, event_recorder)
        await manager.start()
        assert manager.scheduler is not None
        original_stop = manager.scheduler.stop

        async def stop() -> None:
            await original_stop()
            order.append("scheduler")

        manager.scheduler.stop = stop  # type: ignore[method-assign]
        await manager.stop()
        assert order == ["scheduler", "session"]

    async def test_controller_stop_failure_is_contained(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        class BadStop(RecordingController):
            async def stop(self) -> None:
                msg = "stuck"
                raise RuntimeError(msg)

        manager = _manager(
            make_account("home", ata=["1"]),
            session,
            event_recorder,
            factories={t: BadStop for t in DeviceType},
        )
        await manager.start()
        await manager.stop()
        assert session.closed

    async def test_cancel_during_dispatch_stops_started_controllers(
        self,
        session: MockCloudSession,
        event_recorder: EventRecorder,
    ) -> None:
        release = asyncio.Event()
        built: list[RecordingController] = []

        class Blocking(RecordingController):
            async def start(self) -> None:
                await release.wait()
                await super().start()

        def factory(ctx: ControllerContext) -> RecordingController:
            cls = Blocking if ctx.binding.device_id == "2" else RecordingController
            controller = cls(ctx)
            built.append(controller)
            return controller

        manager = _manager(
            make_account("home", ata=["1", "2"]),
            session,
            event_recorder,
            factories={t: factory for t in DeviceType},
        )
        startup = asyncio.create_task(manager.start())
        while len(built) < 2:
            await asyncio.sleep(0)
        assert [c.device_id for c in manager.controllers] == ["1"]  # type: ignore[attr-defined]

        startup.cancel()
        with pytest.raises(asyncio.CancelledError):
            await startup
        await manager.stop()

        first, blocked = built
        assert first.stopped is True
        assert blocked.started is False
        assert manager.controllers == []
        assert session.closed


class TestContext:
    async def test_controller_context_reflects_connection(
        self,
        event_recorder: EventRecorder,
    ) -> None:
        session = MockCloudSession(devices=list(DEVICES), use_fahrenheit=True)
        manager = _manager(make_account("home", ata=["1"]), session, event_recorder)
        await manager.start()
        [controller] = manager.controllers
        ctx: ControllerContext = controller.ctx  # type: ignore[attr-defined]
        assert ctx.use_fahrenheit is True
        assert ctx.events.label.name == "Device 1"
        await manager.stop()
