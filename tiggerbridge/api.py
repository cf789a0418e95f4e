"""Stable public API for embedding tiggerbridge in a UI host.

This module is the supported integration surface for third-party callers
(web view hosts, desktop shells, scripts). Avoid importing from private/internal
modules unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from tiggerbridge.core.bridge import MessageBridge, parse_command
from tiggerbridge.core.errors import (
    BridgeError,
    CharacteristicNotFound,
    DiscoveryError,
    LinkFailure,
    MalformedCommand,
    ProfileLoadError,
    ProfileValidationError,
    ScanFailure,
    ScanTimeout,
    ServiceNotFound,
    TransportError,
    WriteFailure,
)
from tiggerbridge.core.model import (
    Action,
    CharacteristicHandle,
    CommandEnvelope,
    DeviceProfile,
    DeviceRef,
    EventEnvelope,
    EventType,
    ServiceHandle,
    SessionState,
    Status,
    Timing,
)
from tiggerbridge.core.profile_loader import DEFAULT_PROFILE_ID, load_profiles
from tiggerbridge.core.selection import ManualSelection, pick_by_hint, select_by_hint
from tiggerbridge.core.session import SelectionConsumer
from tiggerbridge.transports.base import ScanHandle, Transport
from tiggerbridge.transports.ble_gatt import BLEGATTTransport

__all__ = [
    "BridgeError",
    "CharacteristicNotFound",
    "DiscoveryError",
    "LinkFailure",
    "MalformedCommand",
    "ProfileLoadError",
    "ProfileValidationError",
    "ScanFailure",
    "ScanTimeout",
    "ServiceNotFound",
    "TransportError",
    "WriteFailure",
    "Action",
    "CharacteristicHandle",
    "CommandEnvelope",
    "DeviceProfile",
    "DeviceRef",
    "EventEnvelope",
    "EventType",
    "ServiceHandle",
    "SessionState",
    "Status",
    "Timing",
    "ManualSelection",
    "pick_by_hint",
    "select_by_hint",
    "parse_command",
    "BLEGATTTransport",
    "ScanHandle",
    "Transport",
    "Client",
]


class Client:
    """Public client wrapping profile loading, the message bridge and its session.

    `send` receives every outbound event as JSON text; inbound UI messages go
    to `handle_message`. `start()` must be called from a running event loop.
    """

    def __init__(
        self,
        send: Callable[[str], None],
        *,
        profile_id: str = DEFAULT_PROFILE_ID,
        profile: DeviceProfile | None = None,
        transport: Transport | None = None,
        on_manual_selection: SelectionConsumer | None = None,
    ) -> None:
        if profile is None:
            loaded = load_profiles()
            self.load_warnings = loaded.warnings
            profile = loaded.get(profile_id)
        else:
            self.load_warnings = ()
        self.profile = profile
        self._bridge = MessageBridge(
            transport or BLEGATTTransport(),
            profile,
            send,
            on_manual_selection=on_manual_selection,
        )

    @property
    def state(self) -> SessionState:
        return self._bridge.machine.state

    def start(self) -> asyncio.Task[None]:
        return self._bridge.machine.start()

    def handle_message(self, text: str) -> CommandEnvelope | None:
        return self._bridge.handle_message(text)

    def connect(self) -> None:
        self._bridge.machine.start_connect()

    def disconnect(self) -> None:
        self._bridge.machine.disconnect()

    def write(self, text: str) -> None:
        self._bridge.machine.write(text.encode("utf-8"))

    def resync(self) -> None:
        self._bridge.machine.resync()

    async def drain(self) -> None:
        await self._bridge.machine.drain()

    async def close(self) -> None:
        await self._bridge.machine.close()
