"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol

from tiggerbridge.core.model import (
    CharacteristicHandle,
    DeviceRef,
    LinkState,
    ServiceHandle,
)

ScanCallback = Callable[[DeviceRef], None]
LinkStateCallback = Callable[[LinkState], None]
ValueCallback = Callable[[bytes], None]


class ScanHandle:
    """A running scan that can be stopped exactly once."""

    def __init__(self, stop: Callable[[], Awaitable[None]]) -> None:
        self._stop = stop
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        await self._stop()


class Transport(Protocol):
    async def scan(
        self,
        on_result: ScanCallback,
        *,
        name_filter: str | None,
        timeout_s: float,
    ) -> ScanHandle:
        """Start scanning; each advertisement is reported through on_result."""

    async def connect(
        self,
        device: DeviceRef,
        on_state: LinkStateCallback,
        *,
        timeout_s: float = 10.0,
    ) -> None:
        """Open a link without auto-reconnect and report later state changes."""

    async def discover_services(self, device: DeviceRef) -> list[ServiceHandle]:
        """Return the GATT table of a connected device."""

    async def write(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        payload: bytes,
        *,
        response: bool = True,
    ) -> None:
        """Write payload to a characteristic."""

    async def set_notify(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        enabled: bool,
        on_value: ValueCallback | None = None,
    ) -> None:
        """Enable or disable notifications on a characteristic."""

    async def disconnect(self, device: DeviceRef) -> None:
        """Close the link to a device. Safe when already disconnected."""
