"""Core data models used across the session machine, bridge, and CLI."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class DeviceRef:
    address: str
    name: str

    def same_device(self, other: DeviceRef) -> bool:
        return self.address.upper() == other.address.upper()


@dataclass(frozen=True)
class CharacteristicHandle:
    uuid: str
    handle: int
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceHandle:
    uuid: str
    characteristics: tuple[CharacteristicHandle, ...] = ()


class LinkState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    AWAITING_MANUAL_SELECTION = "awaiting_manual_selection"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class Subscription(Enum):
    CONNECTION = "connection"
    NOTIFY = "notify"


@dataclass
class Session:
    """Mutable connection state. Owned and mutated by the session actor only."""

    generation: int
    state: SessionState = SessionState.SCANNING
    device: DeviceRef | None = None
    service: ServiceHandle | None = None
    write_char: CharacteristicHandle | None = None
    notify_char: CharacteristicHandle | None = None
    subscriptions: set[Subscription] = field(default_factory=set)


class Action(str, Enum):
    CONNECT = "CONNECT"
    DISCONNECT = "DISCONNECT"
    WRITE = "WRITE"


class EventType(str, Enum):
    STATUS = "STATUS"
    NOTIFICATION = "NOTIFICATION"
    ERROR = "ERROR"


class Status:
    SCANNING = "SCANNING"
    CONNECTING = "CONNECTING..."
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


@dataclass(frozen=True)
class CommandEnvelope:
    action: Action
    data: str | None = None


@dataclass(frozen=True)
class EventEnvelope:
    type: EventType
    content: str

    @classmethod
    def status(cls, content: str) -> EventEnvelope:
        return cls(EventType.STATUS, content)

    @classmethod
    def notification(cls, content: str) -> EventEnvelope:
        return cls(EventType.NOTIFICATION, content)

    @classmethod
    def error(cls, content: str) -> EventEnvelope:
        return cls(EventType.ERROR, content)

    def to_json(self) -> str:
        return json.dumps({"type": self.type.value, "content": self.content})


@dataclass(frozen=True)
class Timing:
    scan_timeout_s: float = 4.0
    manual_scan_timeout_s: float = 10.0
    settle_s: float = 1.0
    connect_timeout_s: float = 10.0


@dataclass(frozen=True)
class DeviceProfile:
    id: str
    name: str
    advertised_name: str
    service_uuid: str
    write_char_uuid: str
    notify_char_uuid: str
    write_with_response: bool = True
    timing: Timing = field(default_factory=Timing)
