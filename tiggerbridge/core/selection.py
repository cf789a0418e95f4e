"""Manual device selection used when automatic discovery times out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

from tiggerbridge.core.device_match import hint_matches, is_named
from tiggerbridge.core.errors import ScanTimeout
from tiggerbridge.core.model import DeviceRef

LOGGER = logging.getLogger(__name__)

Snapshot = tuple[DeviceRef, ...]


class ManualSelection:
    """Live list of named devices seen by the open-ended scan.

    Created by the session machine when automatic discovery times out and
    handed to the registered consumer. The consumer watches `updates()` and
    answers with `select()` or `cancel()`. Once the machine leaves manual
    selection the instance is closed and further answers are ignored.
    """

    def __init__(
        self,
        *,
        reason: ScanTimeout,
        on_select: Callable[[DeviceRef], None],
        on_cancel: Callable[[], None],
        on_renew: Callable[[], None],
    ) -> None:
        self.reason = reason
        self._on_select = on_select
        self._on_cancel = on_cancel
        self._on_renew = on_renew
        self._devices: list[DeviceRef] = []
        self._listeners: list[asyncio.Queue[Snapshot | None]] = []
        self._closed = False
        self._scanning = False

    @property
    def devices(self) -> Snapshot:
        return tuple(self._devices)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def scanning(self) -> bool:
        return self._scanning

    def select(self, device: DeviceRef) -> None:
        if self._closed:
            LOGGER.debug("Ignoring selection of %s; selection already closed", device.address)
            return
        self._on_select(device)

    def cancel(self) -> None:
        if self._closed:
            return
        self._on_cancel()

    def renew(self) -> None:
        """Restart the bounded scan after it expired."""
        if self._closed or self._scanning:
            return
        self._on_renew()

    async def updates(self) -> AsyncIterator[Snapshot]:
        """Yield the current device list, then a new snapshot on every change."""
        if self._closed:
            return
        queue: asyncio.Queue[Snapshot | None] = asyncio.Queue()
        self._listeners.append(queue)
        try:
            yield self.devices
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self._listeners.remove(queue)

    def offer(self, device: DeviceRef) -> bool:
        if self._closed or not is_named(device):
            return False
        if any(known.same_device(device) for known in self._devices):
            return False
        self._devices.append(device)
        snapshot = self.devices
        for queue in self._listeners:
            queue.put_nowait(snapshot)
        return True

    def set_scanning(self, scanning: bool) -> None:
        self._scanning = scanning

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._scanning = False
        for queue in self._listeners:
            queue.put_nowait(None)


async def pick_by_hint(
    selection: ManualSelection,
    hint: str,
    *,
    window_s: float,
) -> DeviceRef | None:
    """Return the first listed device whose address or name matches hint."""

    async def _first_match() -> DeviceRef | None:
        async with aclosing(selection.updates()) as updates:
            async for snapshot in updates:
                for device in snapshot:
                    if hint_matches(device, hint):
                        return device
        return None

    try:
        return await asyncio.wait_for(_first_match(), timeout=window_s)
    except asyncio.TimeoutError:
        return None


def select_by_hint(hint: str | None, *, window_s: float) -> Callable[[ManualSelection], None]:
    """Build a headless manual-selection consumer.

    With a hint, the first matching device within window_s is selected and the
    selection is cancelled otherwise. Without a hint it is cancelled at once.
    """
    pending: set[asyncio.Task[None]] = set()

    async def _resolve(selection: ManualSelection) -> None:
        device = None
        if hint:
            device = await pick_by_hint(selection, hint, window_s=window_s)
        if device is None:
            LOGGER.info("No device chosen for manual selection; cancelling")
            selection.cancel()
        else:
            LOGGER.info("Selecting %s (%s) from manual scan", device.name, device.address)
            selection.select(device)

    def _consume(selection: ManualSelection) -> None:
        task = asyncio.get_running_loop().create_task(_resolve(selection))
        pending.add(task)
        task.add_done_callback(pending.discard)

    return _consume
