"""Domain-specific errors for tiggerbridge."""


class BridgeError(Exception):
    """Base error for tiggerbridge."""


class ProfileValidationError(BridgeError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(BridgeError):
    """Raised when loading profile sources fails."""


class MalformedCommand(BridgeError):
    """Raised when a UI command envelope cannot be parsed. Never shown to the UI."""


class ScanTimeout(BridgeError):
    """Raised when automatic discovery finds no matching device in time."""


class DiscoveryError(BridgeError):
    """Base error for GATT service/characteristic resolution."""


class ServiceNotFound(DiscoveryError):
    """Raised when the configured service is not exposed by the device."""

    def __init__(self, uuid: str) -> None:
        super().__init__("Service Not Found")
        self.uuid = uuid


class CharacteristicNotFound(DiscoveryError):
    """Raised when the write or notify characteristic is missing."""

    def __init__(self, role: str, uuid: str) -> None:
        super().__init__(f"{role.capitalize()} Char Not Found")
        self.role = role
        self.uuid = uuid


class TransportError(BridgeError):
    """Base transport error."""


class ScanFailure(TransportError):
    """Raised when a scan cannot be started or stopped."""


class LinkFailure(TransportError):
    """Raised on BLE connect failures."""


class WriteFailure(TransportError):
    """Raised when a single characteristic write is rejected."""
