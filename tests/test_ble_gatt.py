from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from tiggerbridge.core.errors import LinkFailure, ScanFailure, WriteFailure
from tiggerbridge.core.model import CharacteristicHandle, DeviceRef, LinkState
from tiggerbridge.transports import ble_gatt
from tiggerbridge.transports.base import ScanHandle
from tiggerbridge.transports.ble_gatt import BLEGATTTransport

TIGGER = DeviceRef(address="C0:FF:EE:00:00:01", name="TiggerSmart")
WRITE = CharacteristicHandle(uuid="6e400002-b5a3-f393-e0a9-e50e24dcca9e", handle=12)
NOTIFY = CharacteristicHandle(uuid="6e400003-b5a3-f393-e0a9-e50e24dcca9e", handle=14)


class FakeScanner:
    instances: list[FakeScanner] = []
    fail_init = False

    def __init__(self, detection_callback) -> None:
        if FakeScanner.fail_init:
            raise RuntimeError("No Bluetooth adapters found.")
        self.detection_callback = detection_callback
        self.started = False
        self.stops = 0
        FakeScanner.instances.append(self)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stops += 1


class FakeClient:
    instances: list[FakeClient] = []
    fail_connect = False
    fail_write = False
    fail_init = False

    def __init__(self, target, disconnected_callback=None, timeout=10.0) -> None:
        if FakeClient.fail_init:
            raise ValueError("unsupported backend")
        self.target = target
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.is_connected = False
        self.writes: list[tuple[int, bytes, bool]] = []
        self.notify_handlers: dict[int, object] = {}
        self.services = [
            SimpleNamespace(
                uuid="6E400001-B5A3-F393-E0A9-E50E24DCCA9E",
                characteristics=[
                    SimpleNamespace(uuid="6E400002-B5A3-F393-E0A9-E50E24DCCA9E", handle=12, properties=["write"]),
                    SimpleNamespace(uuid="6E400003-B5A3-F393-E0A9-E50E24DCCA9E", handle=14, properties=["notify"]),
                ],
            )
        ]
        FakeClient.instances.append(self)

    async def connect(self) -> None:
        if FakeClient.fail_connect:
            raise OSError("Device with address C0:FF:EE:00:00:01 was not found")
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False
        if self.disconnected_callback is not None:
            self.disconnected_callback(self)

    async def write_gatt_char(self, handle, payload, response=True) -> None:
        if FakeClient.fail_write:
            raise OSError("Unlikely Error")
        self.writes.append((handle, payload, response))

    async def start_notify(self, handle, callback) -> None:
        self.notify_handlers[handle] = callback

    async def stop_notify(self, handle) -> None:
        self.notify_handlers.pop(handle)


@pytest.fixture(autouse=True)
def fake_bleak(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeScanner.instances = []
    FakeClient.instances = []
    FakeClient.fail_connect = False
    FakeClient.fail_write = False
    FakeScanner.fail_init = False
    FakeClient.fail_init = False
    fake = SimpleNamespace(BleakScanner=FakeScanner, BleakClient=FakeClient)
    monkeypatch.setattr(ble_gatt, "_load_bleak", lambda error_cls: fake)


def _advertise(scanner: FakeScanner, address: str, name: str | None, local_name: str | None = None) -> None:
    scanner.detection_callback(
        SimpleNamespace(address=address, name=name),
        SimpleNamespace(local_name=local_name),
    )


def test_scan_handle_stops_once() -> None:
    stops: list[int] = []

    async def _stop() -> None:
        stops.append(1)

    async def _main() -> None:
        handle = ScanHandle(_stop)
        await handle.stop()
        await handle.stop()
        assert handle.stopped

    asyncio.run(_main())
    assert stops == [1]


def test_scan_filters_by_exact_name_and_stops_once() -> None:
    found: list[DeviceRef] = []

    async def _main() -> None:
        transport = BLEGATTTransport()
        handle = await transport.scan(found.append, name_filter="TiggerSmart", timeout_s=30)
        scanner = FakeScanner.instances[0]
        assert scanner.started
        _advertise(scanner, "AA:00:00:00:00:01", "TiggerSmart Pro")
        _advertise(scanner, "AA:00:00:00:00:02", None)
        _advertise(scanner, TIGGER.address, None, local_name="TiggerSmart")
        await handle.stop()
        await handle.stop()
        assert scanner.stops == 1

    asyncio.run(_main())
    assert found == [TIGGER]


def test_scan_expires_after_timeout() -> None:
    async def _main() -> ScanHandle:
        transport = BLEGATTTransport()
        handle = await transport.scan(lambda device: None, name_filter=None, timeout_s=0.01)
        await asyncio.sleep(0.05)
        return handle

    handle = asyncio.run(_main())
    assert handle.stopped
    assert FakeScanner.instances[0].stops == 1


def test_connect_reports_link_state_and_reuses_scanned_device() -> None:
    states: list[LinkState] = []

    async def _main() -> None:
        transport = BLEGATTTransport()
        await transport.scan(lambda device: None, name_filter=None, timeout_s=30)
        _advertise(FakeScanner.instances[0], TIGGER.address, "TiggerSmart")
        await transport.connect(TIGGER, states.append, timeout_s=7.5)
        client = FakeClient.instances[0]
        assert client.timeout == 7.5
        assert client.target.address == TIGGER.address

        await transport.disconnect(TIGGER)
        await transport.disconnect(TIGGER)

    asyncio.run(_main())
    assert states == [LinkState.CONNECTED, LinkState.DISCONNECTED]


def test_connect_failure_raises_link_failure() -> None:
    FakeClient.fail_connect = True

    async def _main() -> None:
        transport = BLEGATTTransport()
        with pytest.raises(LinkFailure, match="was not found"):
            await transport.connect(TIGGER, lambda state: None)
        with pytest.raises(WriteFailure):
            await transport.write(TIGGER, WRITE, b"PING")

    asyncio.run(_main())


def test_discover_write_and_notify() -> None:
    values: list[bytes] = []

    async def _main() -> None:
        transport = BLEGATTTransport()
        await transport.connect(TIGGER, lambda state: None)
        services = await transport.discover_services(TIGGER)
        assert services[0].uuid == "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
        assert services[0].characteristics[1] == CharacteristicHandle(
            uuid="6e400003-b5a3-f393-e0a9-e50e24dcca9e",
            handle=14,
            properties=("notify",),
        )

        client = FakeClient.instances[0]
        await transport.set_notify(TIGGER, NOTIFY, True, values.append)
        client.notify_handlers[14](14, bytearray(b"OK"))
        await transport.write(TIGGER, WRITE, b"PING", response=False)
        assert client.writes == [(12, b"PING", False)]

        await transport.set_notify(TIGGER, NOTIFY, False)
        assert client.notify_handlers == {}

    asyncio.run(_main())
    assert values == [b"OK"]


def test_rejected_write_raises_write_failure() -> None:
    FakeClient.fail_write = True

    async def _main() -> None:
        transport = BLEGATTTransport()
        await transport.connect(TIGGER, lambda state: None)
        with pytest.raises(WriteFailure, match="Unlikely Error"):
            await transport.write(TIGGER, WRITE, b"PING")

    asyncio.run(_main())


def test_scanner_construction_failure_raises_scan_failure() -> None:
    FakeScanner.fail_init = True

    async def _main() -> None:
        transport = BLEGATTTransport()
        with pytest.raises(ScanFailure, match="No Bluetooth adapters"):
            await transport.scan(lambda device: None, name_filter=None, timeout_s=1)

    asyncio.run(_main())


def test_client_construction_failure_raises_link_failure() -> None:
    FakeClient.fail_init = True

    async def _main() -> None:
        transport = BLEGATTTransport()
        with pytest.raises(LinkFailure, match="unsupported backend"):
            await transport.connect(TIGGER, lambda state: None)
        with pytest.raises(WriteFailure):
            await transport.write(TIGGER, WRITE, b"PING")

    asyncio.run(_main())


def test_early_stop_cancels_scan_expiry(monkeypatch: pytest.MonkeyPatch) -> None:
    expired: list[ScanHandle] = []

    async def _record(handle: ScanHandle) -> None:
        expired.append(handle)

    monkeypatch.setattr(ble_gatt, "_expire", _record)

    async def _main() -> None:
        transport = BLEGATTTransport()
        handle = await transport.scan(lambda device: None, name_filter=None, timeout_s=0.01)
        await handle.stop()
        await asyncio.sleep(0.05)

    asyncio.run(_main())
    assert expired == []


def test_scanned_devices_do_not_outlive_their_use() -> None:
    async def _main() -> None:
        transport = BLEGATTTransport()
        await transport.scan(lambda device: None, name_filter=None, timeout_s=30)
        _advertise(FakeScanner.instances[0], "AA:00:00:00:00:09", "Desk Lamp")
        _advertise(FakeScanner.instances[0], TIGGER.address, "TiggerSmart")

        await transport.scan(lambda device: None, name_filter=None, timeout_s=30)
        _advertise(FakeScanner.instances[1], TIGGER.address, "TiggerSmart")
        assert list(transport._seen) == [TIGGER.address]

        await transport.connect(TIGGER, lambda state: None)
        assert transport._seen == {}
        assert FakeClient.instances[0].target.address == TIGGER.address

    asyncio.run(_main())
