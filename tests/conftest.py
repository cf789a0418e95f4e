from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from tiggerbridge.core.model import (
    CharacteristicHandle,
    DeviceProfile,
    DeviceRef,
    EventEnvelope,
    EventType,
    ServiceHandle,
    Timing,
)
from tiggerbridge.core.session import SessionMachine
from tiggerbridge.transports.base import (
    LinkStateCallback,
    ScanCallback,
    ScanHandle,
    ValueCallback,
)

SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
WRITE_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NOTIFY_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

TIGGER = DeviceRef(address="C0:FF:EE:00:00:01", name="TiggerSmart")


def nus_services(*, write: bool = True, notify: bool = True) -> list[ServiceHandle]:
    chars = [CharacteristicHandle(uuid="00002a00-0000-1000-8000-00805f9b34fb", handle=3)]
    if write:
        chars.append(CharacteristicHandle(uuid=WRITE_UUID.upper(), handle=12, properties=("write",)))
    if notify:
        chars.append(CharacteristicHandle(uuid=NOTIFY_UUID.upper(), handle=14, properties=("notify",)))
    return [
        ServiceHandle(uuid="1800", characteristics=()),
        ServiceHandle(uuid=SERVICE_UUID.upper(), characteristics=tuple(chars)),
    ]


class FakeTransport:
    """Scripted transport recording every call that reaches it."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.scan_results: list[DeviceRef] = []
        self.manual_results: list[DeviceRef] = []
        self.services: list[ServiceHandle] = nus_services()
        self.scan_error: Exception | None = None
        self.connect_error: Exception | None = None
        self.discover_error: Exception | None = None
        self.notify_error: Exception | None = None
        self.write_error: Exception | None = None
        self.on_scan: ScanCallback | None = None
        self.on_state: LinkStateCallback | None = None
        self.on_value: ValueCallback | None = None

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def scan(self, on_result: ScanCallback, *, name_filter: str | None, timeout_s: float) -> ScanHandle:
        self.calls.append(("scan", name_filter))
        if self.scan_error is not None:
            raise self.scan_error
        self.on_scan = on_result
        for device in self.scan_results if name_filter is not None else self.manual_results:
            on_result(device)

        async def _stop() -> None:
            self.calls.append(("stop_scan",))

        return ScanHandle(_stop)

    async def connect(self, device: DeviceRef, on_state: LinkStateCallback, *, timeout_s: float = 10.0) -> None:
        self.calls.append(("connect", device.address))
        self.on_state = on_state
        if self.connect_error is not None:
            raise self.connect_error

    async def discover_services(self, device: DeviceRef) -> list[ServiceHandle]:
        self.calls.append(("discover_services", device.address))
        if self.discover_error is not None:
            raise self.discover_error
        return self.services

    async def write(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        payload: bytes,
        *,
        response: bool = True,
    ) -> None:
        self.calls.append(("write", characteristic.uuid.lower(), payload))
        if self.write_error is not None:
            raise self.write_error

    async def set_notify(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        enabled: bool,
        on_value: ValueCallback | None = None,
    ) -> None:
        self.calls.append(("set_notify", characteristic.uuid.lower(), enabled))
        if enabled and self.notify_error is not None:
            raise self.notify_error
        if enabled:
            self.on_value = on_value

    async def disconnect(self, device: DeviceRef) -> None:
        self.calls.append(("disconnect", device.address))


def statuses(events: list[EventEnvelope]) -> list[str]:
    return [e.content for e in events if e.type is EventType.STATUS]


def of_type(events: list[EventEnvelope], event_type: EventType) -> list[str]:
    return [e.content for e in events if e.type is event_type]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def profile() -> DeviceProfile:
    return DeviceProfile(
        id="tiggersmart",
        name="TiggerSmart Controller",
        advertised_name="TiggerSmart",
        service_uuid=SERVICE_UUID,
        write_char_uuid=WRITE_UUID,
        notify_char_uuid=NOTIFY_UUID,
        timing=Timing(scan_timeout_s=0.05, manual_scan_timeout_s=5.0, settle_s=0.0, connect_timeout_s=1.0),
    )


Scenario = Callable[[SessionMachine, list[EventEnvelope]], Awaitable[None]]


@pytest.fixture
def run_session(transport: FakeTransport, profile: DeviceProfile):
    """Run a scenario against a live SessionMachine inside a fresh event loop."""

    def _run(scenario: Scenario, *, profile: DeviceProfile = profile, on_manual_selection=None) -> list[EventEnvelope]:
        events: list[EventEnvelope] = []

        async def _main() -> None:
            machine = SessionMachine(transport, profile, events.append, on_manual_selection=on_manual_selection)
            machine.start()
            try:
                await scenario(machine, events)
            finally:
                await machine.close()

        asyncio.run(_main())
        return events

    return _run
