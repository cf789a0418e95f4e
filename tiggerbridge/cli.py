"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from collections.abc import Callable
from typing import TextIO

import typer

from tiggerbridge.api import Client
from tiggerbridge.core.device_match import distinct_named, is_target_device
from tiggerbridge.core.errors import BridgeError
from tiggerbridge.core.model import DeviceProfile, DeviceRef, EventType, SessionState, Status
from tiggerbridge.core.profile_loader import DEFAULT_PROFILE_ID, LoadedProfiles, load_profiles
from tiggerbridge.core.selection import ManualSelection, select_by_hint
from tiggerbridge.transports.base import Transport
from tiggerbridge.transports.ble_gatt import BLEGATTTransport

app = typer.Typer(help="Bridge a JSON message UI to a BLE GATT peripheral")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_profiles() -> LoadedProfiles:
    loaded = load_profiles()
    for warning in loaded.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    return loaded


@app.command("profiles")
def list_profiles() -> None:
    """List available device profiles."""
    try:
        loaded = _load_profiles()
        if not loaded.profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in sorted(loaded.profiles.values(), key=lambda p: p.id):
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  advertised_name: {profile.advertised_name}")
            typer.echo(f"  service: {profile.service_uuid}")
            typer.echo(f"  write: {profile.write_char_uuid}")
            typer.echo(f"  notify: {profile.notify_char_uuid}")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    timeout: float = typer.Option(5.0, "--timeout", help="Scan duration in seconds"),
) -> None:
    """List advertising BLE devices that carry a name, with the matched profile."""
    try:
        loaded = _load_profiles()
        devices = asyncio.run(_collect_devices(BLEGATTTransport(), timeout))
        if not devices:
            typer.echo("No named BLE devices found")
            return

        for device in devices:
            matched = next(
                (p.id for p in loaded.profiles.values() if is_target_device(device, p)),
                "<no-match>",
            )
            typer.echo(f"{device.address} {device.name} -> {matched}")
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("serve")
def serve(
    profile: str = typer.Option(DEFAULT_PROFILE_ID, "--profile", help="Profile ID"),
    select: str | None = typer.Option(
        None,
        "--select",
        help="MAC or partial name to pick when automatic discovery fails",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
) -> None:
    """Run the JSON-lines bridge: commands on stdin, events on stdout."""
    _configure_logging(verbose)
    try:
        device_profile = _load_profiles().get(profile)
        asyncio.run(_serve(device_profile, select, sys.stdin, sys.stdout))
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("connect")
def connect(
    profile: str = typer.Option(DEFAULT_PROFILE_ID, "--profile", help="Profile ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
) -> None:
    """Connect interactively and send each input line to the device.

    If the device is not found automatically, nearby named devices are listed
    and you are asked to pick one.
    """
    _configure_logging(verbose)
    try:
        device_profile = _load_profiles().get(profile)
        code = asyncio.run(_interactive(device_profile, sys.stdin))
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if code:
        raise typer.Exit(code=code)


async def _collect_devices(transport: Transport, timeout_s: float) -> list[DeviceRef]:
    found: list[DeviceRef] = []
    handle = await transport.scan(found.append, name_filter=None, timeout_s=timeout_s)
    try:
        await asyncio.sleep(timeout_s)
    finally:
        await handle.stop()
    return distinct_named(found)


async def _serve(profile: DeviceProfile, select: str | None, stdin: TextIO, stdout: TextIO) -> None:
    def _send(text: str) -> None:
        stdout.write(text + "\n")
        stdout.flush()

    client = Client(
        _send,
        profile=profile,
        transport=BLEGATTTransport(),
        on_manual_selection=select_by_hint(select, window_s=profile.timing.manual_scan_timeout_s),
    )
    client.start()
    client.resync()
    while True:
        line = await asyncio.to_thread(stdin.readline)
        if not line:
            break
        if line.strip():
            client.handle_message(line)
    await client.close()


async def _interactive(profile: DeviceProfile, stdin: TextIO) -> int:
    lines = _feed_lines(stdin)
    settled = asyncio.Event()
    last_status: list[str] = []

    def _show(text: str) -> None:
        event = json.loads(text)
        kind, content = event["type"], event["content"]
        typer.echo(f"[{kind}] {content}", err=kind == EventType.ERROR.value)
        if kind == EventType.STATUS.value and content in (Status.CONNECTED, Status.DISCONNECTED):
            if content == Status.DISCONNECTED and last_status[-1:] == [Status.CONNECTED]:
                # Wake the input loop; the link is gone.
                lines.put_nowait(None)
            last_status.append(content)
            settled.set()

    client = Client(
        _show,
        profile=profile,
        transport=BLEGATTTransport(),
        on_manual_selection=_prompt_for_device(profile.timing.manual_scan_timeout_s, lines),
    )
    client.start()
    client.connect()
    await settled.wait()
    if last_status[-1] != Status.CONNECTED:
        await client.close()
        return 1

    typer.echo("Type a command and press Enter to send it. Ctrl-D quits.", err=True)
    while client.state is SessionState.CONNECTED:
        line = await lines.get()
        if line is None:
            break
        line = line.rstrip("\r\n")
        if line:
            client.write(line)
            await client.drain()
    link_lost = last_status[-1] != Status.CONNECTED
    await client.close()
    return 1 if link_lost else 0


def _feed_lines(stdin: TextIO) -> asyncio.Queue[str | None]:
    """Read stdin on a daemon thread; None marks end of input."""
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue[str | None] = asyncio.Queue()

    def _pump() -> None:
        for line in iter(stdin.readline, ""):
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                return
        try:
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            return

    threading.Thread(target=_pump, name="stdin-reader", daemon=True).start()
    return lines


def _prompt_for_device(
    window_s: float,
    lines: asyncio.Queue[str | None],
) -> Callable[[ManualSelection], None]:
    pending: set[asyncio.Task[None]] = set()

    async def _resolve(selection: ManualSelection) -> None:
        typer.echo(f"{selection.reason}. Scanning nearby devices for {window_s:g}s...", err=True)
        await asyncio.sleep(window_s)
        devices = selection.devices
        if not devices:
            typer.echo("No named devices found.", err=True)
            selection.cancel()
            return

        for index, device in enumerate(devices, start=1):
            typer.echo(f"  {index}) {device.name} [{device.address}]", err=True)
        typer.echo("Select a device number (blank to cancel): ", err=True, nl=False)
        answer = (await lines.get() or "").strip()
        choice = _parse_choice(answer, len(devices))
        if choice is None:
            selection.cancel()
        else:
            selection.select(devices[choice])

    def _consume(selection: ManualSelection) -> None:
        task = asyncio.get_running_loop().create_task(_resolve(selection))
        pending.add(task)
        task.add_done_callback(pending.discard)

    return _consume


def _parse_choice(answer: str, count: int) -> int | None:
    if not answer.isdigit():
        return None
    index = int(answer) - 1
    if 0 <= index < count:
        return index
    return None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
