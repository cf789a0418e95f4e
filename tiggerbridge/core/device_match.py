"""Device and GATT attribute matching logic."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from tiggerbridge.core.errors import CharacteristicNotFound, ServiceNotFound
from tiggerbridge.core.model import CharacteristicHandle, DeviceProfile, DeviceRef, ServiceHandle

_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"


def expand_uuid(uuid: str) -> str:
    """Return the 128-bit lowercase form of a 16-, 32- or 128-bit UUID string."""
    normalized = uuid.strip().lower()
    if len(normalized) == 4:
        return f"0000{normalized}{_BASE_UUID_SUFFIX}"
    if len(normalized) == 8:
        return f"{normalized}{_BASE_UUID_SUFFIX}"
    return normalized


def uuid_matches(left: str, right: str) -> bool:
    return expand_uuid(left) == expand_uuid(right)


def is_target_device(device: DeviceRef, profile: DeviceProfile) -> bool:
    return device.name == profile.advertised_name


def is_named(device: DeviceRef) -> bool:
    return bool(device.name.strip())


def hint_matches(device: DeviceRef, hint: str) -> bool:
    lowered = hint.lower()
    return lowered in device.address.lower() or lowered in device.name.lower()


def distinct_named(devices: Iterable[DeviceRef]) -> list[DeviceRef]:
    seen: set[str] = set()
    named: list[DeviceRef] = []
    for device in devices:
        key = device.address.upper()
        if not is_named(device) or key in seen:
            continue
        seen.add(key)
        named.append(device)
    return named


def _find_characteristic(
    service: ServiceHandle,
    uuid: str,
    role: str,
) -> CharacteristicHandle:
    for characteristic in service.characteristics:
        if uuid_matches(characteristic.uuid, uuid):
            return characteristic
    raise CharacteristicNotFound(role, uuid)


def resolve_characteristics(
    services: Sequence[ServiceHandle],
    profile: DeviceProfile,
) -> tuple[ServiceHandle, CharacteristicHandle, CharacteristicHandle]:
    """Locate the profile's service and its write/notify characteristics.

    Raises ServiceNotFound or CharacteristicNotFound; the write characteristic
    is resolved first so a device missing both reports the write side.
    """
    service = next((s for s in services if uuid_matches(s.uuid, profile.service_uuid)), None)
    if service is None:
        raise ServiceNotFound(profile.service_uuid)
    write_char = _find_characteristic(service, profile.write_char_uuid, "write")
    notify_char = _find_characteristic(service, profile.notify_char_uuid, "notify")
    return service, write_char, notify_char
