"""Configuration via pydantic-settings.

Two layers are modelled here:

* **Process settings** (:class:`Settings`) — MQTT boundary, logging,
  storage directory and the cloud session factory.  Loaded from
  environment variables (prefix ``MELSYNC_``, nested delimiter ``__``)
  and an optional ``.env`` file.
* **Account configuration** (:class:`AccountSettings`,
  :class:`DeviceSettings`) — one object per cloud account, either
  inline in ``MELSYNC_ACCOUNTS`` (JSON) or read from the JSON file named
  by ``MELSYNC_CONFIG_FILE``.  The file uses the platform-config shape
  ``{"accounts": [...]}`` and the camelCase keys of that format
  (``passwd``, ``enableDebugMode``, ``ataDevices`` …); snake_case names
  are accepted as well.

Account fields are deliberately permissive: a missing user or password
must only stop *that* account, so the mandatory-field check happens in
:class:`~melsync._account.AccountManager`, not at parse time.

Durations in configuration are in **seconds**; the engine works in
milliseconds (``*_ms`` properties).
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from melsync._errors import ConfigError

DEFAULT_REFRESH_INTERVAL_MS = 120_000
DEFAULT_DEVICE_REFRESH_INTERVAL_MS = 5_000


def _seconds_to_ms(seconds: float | None, default: int) -> int:
    if seconds is None or seconds <= 0:
        return default
    return int(seconds * 1000)


# -------------------------------------------------------------------
# Account configuration
# -------------------------------------------------------------------


class DeviceSettings(BaseModel):
    """One device declared in an account's configuration.

    ``display_mode`` is an ordinal; the device is enabled iff it is
    greater than zero.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    name: str = ""
    type_label: str = Field(default="", alias="typeString")
    display_mode: int = Field(default=0, alias="displayMode")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # The cloud reports numeric ids; config files often quote them.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def enabled(self) -> bool:
        return self.display_mode > 0


class AccountSettings(BaseModel):
    """Credentials, polling cadence and device lists for one account."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    user: str = ""
    password: SecretStr = Field(default=SecretStr(""), alias="passwd")
    language: str = ""
    debug: bool = Field(default=False, alias="enableDebugMode")
    refresh_interval: float | None = Field(
        default=None,
        alias="refreshInterval",
        description="Seconds between device-list refreshes.",
    )
    device_refresh_interval: float | None = Field(
        default=None,
        alias="deviceRefreshInterval",
        description="Seconds between per-device state polls.",
    )
    ata_devices: list[DeviceSettings] = Field(default_factory=list, alias="ataDevices")
    atw_devices: list[DeviceSettings] = Field(default_factory=list, alias="atwDevices")
    erv_devices: list[DeviceSettings] = Field(default_factory=list, alias="ervDevices")

    @field_validator("language", mode="before")
    @classmethod
    def _coerce_language(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("ata_devices", "atw_devices", "erv_devices", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def refresh_interval_ms(self) -> int:
        return _seconds_to_ms(self.refresh_interval, DEFAULT_REFRESH_INTERVAL_MS)

    @property
    def device_refresh_interval_ms(self) -> int:
        return _seconds_to_ms(
            self.device_refresh_interval,
            DEFAULT_DEVICE_REFRESH_INTERVAL_MS,
        )

    def missing_fields(self) -> list[str]:
        """Names of mandatory fields that are empty, in declaration order."""
        values = {
            "name": self.name,
            "user": self.user,
            "password": self.password.get_secret_value(),
            "language": self.language,
        }
        return [key for key, value in values.items() if not value.strip()]

    def redacted(self) -> dict[str, Any]:
        """JSON-safe dump with the password removed, for debug output."""
        data = self.model_dump(mode="json", by_alias=True)
        data["passwd"] = "removed"
        return data


class PlatformConfig(BaseModel):
    """Top-level shape of an accounts configuration file."""

    model_config = ConfigDict(extra="ignore")

    accounts: list[AccountSettings] = Field(default_factory=list)


def load_config_file(path: Path) -> list[AccountSettings]:
    """Read the account list from a JSON configuration file.

    Raises:
        ConfigError: If the file cannot be read or does not validate.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file {path}: {exc}"
        raise ConfigError(msg) from exc
    try:
        return PlatformConfig.model_validate_json(raw).accounts
    except ValidationError as exc:
        msg = f"Invalid config file {path}: {exc}"
        raise ConfigError(msg) from exc


# -------------------------------------------------------------------
# Infrastructure sub-models
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection for the platform boundary.

    Environment variables::

        MELSYNC_MQTT__HOST=broker.local
        MELSYNC_MQTT__PORT=1883
        MELSYNC_MQTT__TOPIC_PREFIX=melcloud
    """

    host: str = Field(default="localhost", description="Broker hostname or IP.")
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="Broker port.",
    )
    username: str | None = Field(default=None, description="Optional username.")
    password: SecretStr | None = Field(default=None, description="Optional password.")
    client_id: str = Field(
        default="",
        description="Client identifier; generated at startup when empty.",
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS for boundary publications.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Initial reconnect delay in seconds; doubles per failure.",
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound for the reconnect delay in seconds.",
    )
    topic_prefix: str = Field(
        default="",
        description="Root topic. Falls back to the platform name when empty.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format`` selects ``"json"`` (one JSON object per line, for log
    aggregators) or ``"text"`` (human-readable).  When ``file`` is set a
    rotating file handler is added next to stderr.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format.",
    )
    file: str | None = Field(default=None, description="Optional log file path.")
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Rotation threshold in megabytes.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root process settings.

    Example ``.env``::

        MELSYNC_CONFIG_FILE=/etc/melsync/config.json
        MELSYNC_STORAGE_PATH=/var/lib/melsync
        MELSYNC_SESSION_FACTORY=mycloud.session:MelCloudSession
        MELSYNC_MQTT__HOST=broker.local
        MELSYNC_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="MELSYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    accounts: list[AccountSettings] = Field(
        default_factory=list,
        description="Inline account list; takes precedence over config_file.",
    )
    config_file: Path | None = Field(
        default=None,
        description="JSON file holding an 'accounts' array.",
    )
    storage_path: Path = Field(
        default=Path(".melsync"),
        description="Directory for per-account snapshot files.",
    )
    session_factory: str | None = Field(
        default=None,
        description="Cloud session factory as 'module.path:Name'.",
    )

    def load_accounts(self) -> list[AccountSettings]:
        """Return the configured accounts, reading ``config_file`` if needed."""
        if self.accounts:
            return list(self.accounts)
        if self.config_file is None:
            return []
        return load_config_file(self.config_file)
