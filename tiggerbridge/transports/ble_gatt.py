"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from types import ModuleType
from typing import Any

from tiggerbridge.core.errors import (
    LinkFailure,
    ScanFailure,
    TransportError,
    WriteFailure,
)
from tiggerbridge.core.model import (
    CharacteristicHandle,
    DeviceRef,
    LinkState,
    ServiceHandle,
)
from tiggerbridge.transports.base import (
    LinkStateCallback,
    ScanCallback,
    ScanHandle,
    ValueCallback,
)

LOGGER = logging.getLogger(__name__)


def _load_bleak(error_cls: type[TransportError]) -> ModuleType:
    try:
        import bleak  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise error_cls(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return bleak


class BLEGATTTransport:
    """Transport backed by bleak. One client per connected address."""

    def __init__(self) -> None:
        self._seen: dict[str, Any] = {}
        self._clients: dict[str, Any] = {}
        self._expiring: set[asyncio.Task[None]] = set()

    async def scan(
        self,
        on_result: ScanCallback,
        *,
        name_filter: str | None,
        timeout_s: float,
    ) -> ScanHandle:
        bleak = _load_bleak(ScanFailure)

        def _detected(device: Any, advertisement: Any) -> None:
            name = getattr(advertisement, "local_name", None) or device.name or ""
            if name_filter is not None and name != name_filter:
                return
            self._seen[device.address.upper()] = device
            on_result(DeviceRef(address=device.address, name=name))

        self._seen.clear()
        try:
            scanner = bleak.BleakScanner(detection_callback=_detected)
            await scanner.start()
        except Exception as exc:
            raise ScanFailure(f"BLE scan failed to start: {exc}") from exc

        expiry: asyncio.TimerHandle | None = None

        async def _stop() -> None:
            if expiry is not None:
                expiry.cancel()
            try:
                await scanner.stop()
            except Exception as exc:
                raise ScanFailure(f"BLE scan failed to stop: {exc}") from exc

        handle = ScanHandle(_stop)
        expiry = asyncio.get_running_loop().call_later(timeout_s, self._on_expiry, handle)
        return handle

    async def connect(
        self,
        device: DeviceRef,
        on_state: LinkStateCallback,
        *,
        timeout_s: float = 10.0,
    ) -> None:
        bleak = _load_bleak(LinkFailure)
        key = device.address.upper()
        target = self._seen.pop(key, device.address)

        try:
            client = bleak.BleakClient(
                target,
                disconnected_callback=lambda _client: on_state(LinkState.DISCONNECTED),
                timeout=timeout_s,
            )
            self._clients[key] = client
            await client.connect()
        except Exception as exc:
            self._clients.pop(key, None)
            raise LinkFailure(f"BLE connect failed for {device.address}: {exc}") from exc

        if not client.is_connected:
            self._clients.pop(key, None)
            raise LinkFailure(f"BLE connect failed for {device.address}")
        on_state(LinkState.CONNECTED)

    async def discover_services(self, device: DeviceRef) -> list[ServiceHandle]:
        client = self._client(device, LinkFailure)
        try:
            return [
                ServiceHandle(
                    uuid=str(service.uuid).lower(),
                    characteristics=tuple(
                        CharacteristicHandle(
                            uuid=str(char.uuid).lower(),
                            handle=char.handle,
                            properties=tuple(char.properties),
                        )
                        for char in service.characteristics
                    ),
                )
                for service in client.services
            ]
        except Exception as exc:
            raise LinkFailure(f"BLE service discovery failed: {exc}") from exc

    async def write(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        payload: bytes,
        *,
        response: bool = True,
    ) -> None:
        client = self._client(device, WriteFailure)
        try:
            await client.write_gatt_char(characteristic.handle, payload, response=response)
        except Exception as exc:
            raise WriteFailure(f"BLE write to {characteristic.uuid} failed: {exc}") from exc

    async def set_notify(
        self,
        device: DeviceRef,
        characteristic: CharacteristicHandle,
        enabled: bool,
        on_value: ValueCallback | None = None,
    ) -> None:
        client = self._client(device, TransportError)
        try:
            if enabled:
                if on_value is None:
                    raise TransportError("Enabling notifications requires a value callback")
                await client.start_notify(
                    characteristic.handle,
                    lambda _sender, data: on_value(bytes(data)),
                )
            else:
                await client.stop_notify(characteristic.handle)
        except TransportError:
            raise
        except Exception as exc:
            state = "enable" if enabled else "disable"
            raise TransportError(
                f"Could not {state} notifications on {characteristic.uuid}: {exc}"
            ) from exc

    async def disconnect(self, device: DeviceRef) -> None:
        client = self._clients.pop(device.address.upper(), None)
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            raise LinkFailure(f"BLE disconnect failed for {device.address}: {exc}") from exc

    def _on_expiry(self, handle: ScanHandle) -> None:
        task = asyncio.get_running_loop().create_task(_expire(handle))
        self._expiring.add(task)
        task.add_done_callback(self._expiring.discard)

    def _client(self, device: DeviceRef, error_cls: type[TransportError]) -> Any:
        client = self._clients.get(device.address.upper())
        if client is None or not client.is_connected:
            raise error_cls(f"Not connected to {device.address}")
        return client


async def _expire(handle: ScanHandle) -> None:
    try:
        await handle.stop()
    except ScanFailure as exc:
        LOGGER.warning("Scan did not stop cleanly: %s", exc)
