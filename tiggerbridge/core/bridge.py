"""Translate UI JSON messages to session commands and session events to JSON."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from jsonschema import ValidationError

from tiggerbridge.core.errors import MalformedCommand
from tiggerbridge.core.model import Action, CommandEnvelope, DeviceProfile, EventEnvelope
from tiggerbridge.core.profile_loader import load_schema_validator
from tiggerbridge.core.session import SelectionConsumer, SessionMachine
from tiggerbridge.transports.base import Transport

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _command_validator() -> Any:
    return load_schema_validator("command.schema.json")


def parse_command(text: str) -> CommandEnvelope:
    try:
        doc = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedCommand(f"Invalid JSON command: {exc}") from exc

    try:
        _command_validator().validate(doc)
    except ValidationError as exc:
        raise MalformedCommand(f"Invalid command envelope: {exc.message}") from exc

    action = Action(doc["action"])
    data = doc["payload"]["data"] if action is Action.WRITE else None
    return CommandEnvelope(action=action, data=data)


class MessageBridge:
    """Stateless translation layer in front of a SessionMachine.

    `send` receives each outbound event as JSON text. It is called from the
    session actor, so it must not block.
    """

    def __init__(
        self,
        transport: Transport,
        profile: DeviceProfile,
        send: Callable[[str], None],
        *,
        on_manual_selection: SelectionConsumer | None = None,
    ) -> None:
        self._send = send
        self.machine = SessionMachine(
            transport,
            profile,
            self.publish,
            on_manual_selection=on_manual_selection,
        )

    def handle_message(self, text: str) -> CommandEnvelope | None:
        try:
            command = parse_command(text)
        except MalformedCommand as exc:
            LOGGER.warning("Dropping command: %s", exc)
            return None

        if command.action is Action.CONNECT:
            self.machine.start_connect()
        elif command.action is Action.DISCONNECT:
            self.machine.disconnect()
        elif command.action is Action.WRITE:
            self.machine.write((command.data or "").encode("utf-8"))
        return command

    def publish(self, event: EventEnvelope) -> None:
        text = event.to_json()
        try:
            self._send(text)
        except Exception:
            LOGGER.exception("Could not deliver %s event to the UI", event.type.value)
