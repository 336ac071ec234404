"""melsync.

Keeps the devices of one or more HVAC cloud accounts in sync and
publishes them as accessories over MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from melsync._account import AccountManager, AccountState
from melsync._clock import ClockPort, SystemClock
from melsync._controller import (
    Accessory,
    BasicController,
    ControllerContext,
    ControllerFactory,
    ControllerLifecycle,
    DeviceBinding,
    DeviceController,
    DeviceType,
)
from melsync._dispatcher import DeviceDispatcher
from melsync._errors import (
    AuthError,
    ConfigError,
    DeviceStartError,
    ErrorPayload,
    ErrorPublisher,
    MelsyncError,
    NetworkError,
    PollError,
    SessionError,
    build_error_payload,
)
from melsync._events import (
    DeviceEvents,
    DeviceLabel,
    Event,
    EventChannel,
    EventKind,
    LoggingListener,
)
from melsync._health import (
    AccountStatus,
    HealthReporter,
    HeartbeatPayload,
    build_will_config,
)
from melsync._logging import JsonFormatter, configure_logging
from melsync._mqtt import (
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from melsync._platform import Platform
from melsync._registry import DeviceRegistry
from melsync._scheduler import PollingScheduler, TimerSpec
from melsync._session import (
    CloudDevice,
    CloudSession,
    ConnectResult,
    SessionFactory,
    SessionLifecycle,
)
from melsync._settings import (
    AccountSettings,
    DeviceSettings,
    LoggingSettings,
    MqttSettings,
    Settings,
)
from melsync._store import SnapshotStore

try:
    __version__ = version("melsync")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Platform
    "Platform",
    # Accounts
    "AccountManager",
    "AccountState",
    # Session
    "CloudDevice",
    "CloudSession",
    "ConnectResult",
    "SessionFactory",
    "SessionLifecycle",
    # Registry and scheduling
    "DeviceRegistry",
    "PollingScheduler",
    "TimerSpec",
    "SnapshotStore",
    # Controllers
    "Accessory",
    "BasicController",
    "ControllerContext",
    "ControllerFactory",
    "ControllerLifecycle",
    "DeviceBinding",
    "DeviceController",
    "DeviceDispatcher",
    "DeviceType",
    # Events
    "DeviceEvents",
    "DeviceLabel",
    "Event",
    "EventChannel",
    "EventKind",
    "LoggingListener",
    # Clock
    "ClockPort",
    "SystemClock",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "AuthError",
    "ConfigError",
    "DeviceStartError",
    "ErrorPayload",
    "ErrorPublisher",
    "MelsyncError",
    "NetworkError",
    "PollError",
    "SessionError",
    "build_error_payload",
    # Health
    "AccountStatus",
    "HealthReporter",
    "HeartbeatPayload",
    "build_will_config",
    # Settings
    "AccountSettings",
    "DeviceSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
