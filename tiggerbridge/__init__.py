"""Bridge a JSON message UI to a single BLE GATT peripheral."""

__version__ = "0.1.0"
