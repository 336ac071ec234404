"""Latest cloud-reported device list for one account.

The registry holds a snapshot, never a merge: each successful
:meth:`DeviceRegistry.refresh` builds the complete next snapshot first
and swaps it in with one assignment, so ``exists()``/``all()`` observe
either the previous or the next list, never a mix.  A failed refresh
leaves the previous snapshot in place and raises to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from melsync._clock import ClockPort, SystemClock
from melsync._errors import PollError, SessionError
from melsync._session import CloudDevice, CloudSession
from melsync._store import SnapshotStore

logger = logging.getLogger(__name__)


def _normalise(item: CloudDevice | Mapping[str, Any]) -> CloudDevice:
    if isinstance(item, CloudDevice):
        return item
    return CloudDevice.from_raw(item)


class DeviceRegistry:
    """Cached snapshot of the devices the cloud reports for an account.

    Args:
        session: Session whose ``list_devices`` feeds the snapshot.
        store: Optional snapshot store; the device list is written
            through to it after every successful refresh.
        clock: Clock used for :attr:`refreshed_at`.
    """

    def __init__(
        self,
        session: CloudSession,
        *,
        store: SnapshotStore | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        self._session = session
        self._store = store
        self._clock = clock if clock is not None else SystemClock()
        self._snapshot: dict[str, CloudDevice] = {}
        self._refreshed_at: float | None = None

    async def refresh(self, context_key: str) -> tuple[CloudDevice, ...]:
        """Replace the snapshot with the session's current device list.

        Returns:
            The new snapshot.

        Raises:
            SessionError: ``AuthError``/``NetworkError`` from the session,
                unchanged.
            PollError: Any other failure, including malformed devices.
        """
        try:
            raw = await self._session.list_devices(context_key)
            snapshot = {device.device_id: device for device in map(_normalise, raw)}
        except SessionError:
            raise
        except Exception as exc:
            msg = f"Device list refresh failed: {exc!r}"
            raise PollError(msg) from exc

        self._snapshot = snapshot
        self._refreshed_at = self._clock.now()
        self._write_through()
        return self.all()

    def _write_through(self) -> None:
        if self._store is None:
            return
        try:
            self._store.write_devices(self._snapshot.values())
        except OSError:
            logger.exception("Failed to persist device list")

    def exists(self, device_id: str) -> bool:
        return str(device_id) in self._snapshot

    def get(self, device_id: str) -> CloudDevice | None:
        return self._snapshot.get(str(device_id))

    def all(self) -> tuple[CloudDevice, ...]:
        return tuple(self._snapshot.values())

    @property
    def refreshed_at(self) -> float | None:
        """Clock reading of the last successful refresh, if any."""
        return self._refreshed_at

    def __len__(self) -> int:
        return len(self._snapshot)
