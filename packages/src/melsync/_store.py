"""Per-account snapshot files.

Last-known cloud data is kept on disk so controllers and operators can
inspect it without a live session.  One file per kind, all inside the
shared storage directory and all prefixed with the (sanitised) account
name so an account only ever writes its own files::

    {storage}/{account}_Account              account info from connect()
    {storage}/{account}_Devices              device list from the last refresh
    {storage}/{account}_{device_id}_Device   per-device controller cache

Writes go to a temporary file that is then renamed over the target, so
a reader never sees a half-written snapshot.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from melsync._session import DEVICE_ID_KEY, CloudDevice

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^\w.-]+")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", part).strip(".") or "_"


class SnapshotStore:
    """Reads and writes one account's snapshot files."""

    def __init__(self, directory: Path, account: str) -> None:
        self._directory = Path(directory)
        self._prefix = _safe(account)

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def account_file(self) -> Path:
        return self._directory / f"{self._prefix}_Account"

    @property
    def devices_file(self) -> Path:
        return self._directory / f"{self._prefix}_Devices"

    def device_file(self, device_id: str) -> Path:
        return self._directory / f"{self._prefix}_{_safe(device_id)}_Device"

    def write_account(self, account_info: dict[str, Any]) -> None:
        self._write(self.account_file, account_info)

    def write_devices(self, devices: Iterable[CloudDevice]) -> None:
        self._write(
            self.devices_file,
            [
                {**device.attributes, DEVICE_ID_KEY: device.device_id}
                for device in devices
            ],
        )

    def write_device(self, device_id: str, data: dict[str, Any]) -> None:
        self._write(self.device_file(device_id), data)

    def read_account(self) -> dict[str, Any] | None:
        return self._read(self.account_file)

    def read_devices(self) -> list[CloudDevice]:
        raw = self._read(self.devices_file)
        if not raw:
            return []
        return [CloudDevice.from_raw(item) for item in raw]

    def read_device(self, device_id: str) -> dict[str, Any] | None:
        return self._read(self.device_file(device_id))

    def _write(self, path: Path, data: Any) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, default=str)
            Path(tmp_name).replace(path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Wrote snapshot %s", path)

    @staticmethod
    def _read(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
