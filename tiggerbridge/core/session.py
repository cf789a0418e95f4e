"""Session state machine for a single BLE device connection.

All commands and transport callbacks are funnelled through one asyncio queue
and handled by `SessionMachine.run()` one event at a time. Public methods and
transport callbacks only enqueue; only the actor touches the Session.

Transport callbacks carry the generation of the Session that registered them,
so late scan results, link reports or notifications from a torn-down Session
are dropped instead of leaking into the next one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from tiggerbridge.core.device_match import is_target_device, resolve_characteristics
from tiggerbridge.core.errors import BridgeError, ScanTimeout, TransportError
from tiggerbridge.core.model import (
    DeviceProfile,
    DeviceRef,
    EventEnvelope,
    LinkState,
    Session,
    SessionState,
    Status,
    Subscription,
)
from tiggerbridge.core.selection import ManualSelection
from tiggerbridge.transports.base import ScanHandle, Transport

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[EventEnvelope], None]
SelectionConsumer = Callable[[ManualSelection], None]


@dataclass(frozen=True)
class _StartConnect:
    pass


@dataclass(frozen=True)
class _SelectDevice:
    device: DeviceRef
    generation: int | None


@dataclass(frozen=True)
class _CancelSelection:
    generation: int | None


@dataclass(frozen=True)
class _RenewSelection:
    generation: int | None


@dataclass(frozen=True)
class _Disconnect:
    pass


@dataclass(frozen=True)
class _Write:
    payload: bytes


@dataclass(frozen=True)
class _Resync:
    pass


@dataclass(frozen=True)
class _Close:
    pass


@dataclass(frozen=True)
class _ScanResult:
    generation: int
    device: DeviceRef


@dataclass(frozen=True)
class _ScanTimedOut:
    generation: int


@dataclass(frozen=True)
class _ManualScanExpired:
    generation: int


@dataclass(frozen=True)
class _LinkStateChanged:
    generation: int
    state: LinkState


@dataclass(frozen=True)
class _Notification:
    generation: int
    value: bytes


class SessionMachine:
    def __init__(
        self,
        transport: Transport,
        profile: DeviceProfile,
        emit: EventSink,
        *,
        on_manual_selection: SelectionConsumer | None = None,
    ) -> None:
        self._transport = transport
        self._profile = profile
        self._emit = emit
        self._on_manual_selection = on_manual_selection
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._session: Session | None = None
        self._generation = 0
        self._scan: ScanHandle | None = None
        self._scan_timer: asyncio.TimerHandle | None = None
        self._selection: ManualSelection | None = None
        self._task: asyncio.Task[None] | None = None
        self._handlers = {
            _StartConnect: self._on_start_connect,
            _SelectDevice: self._on_select_device,
            _CancelSelection: self._on_cancel_selection,
            _RenewSelection: self._on_renew_selection,
            _Disconnect: self._on_disconnect,
            _Write: self._on_write,
            _Resync: self._on_resync,
            _ScanResult: self._on_scan_result,
            _ScanTimedOut: self._on_scan_timed_out,
            _ManualScanExpired: self._on_manual_scan_expired,
            _LinkStateChanged: self._on_link_state,
            _Notification: self._on_notification,
        }

    @property
    def profile(self) -> DeviceProfile:
        return self._profile

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.IDLE
        return self._session.state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def selection(self) -> ManualSelection | None:
        return self._selection

    def start_connect(self) -> None:
        self._post(_StartConnect())

    def select_device(self, device: DeviceRef, *, generation: int | None = None) -> None:
        self._post(_SelectDevice(device, generation))

    def cancel_selection(self, *, generation: int | None = None) -> None:
        self._post(_CancelSelection(generation))

    def renew_selection(self, *, generation: int | None = None) -> None:
        self._post(_RenewSelection(generation))

    def disconnect(self) -> None:
        self._post(_Disconnect())

    def write(self, payload: bytes) -> None:
        self._post(_Write(payload))

    def resync(self) -> None:
        """Re-announce the settled state, e.g. after the UI reloaded."""
        self._post(_Resync())

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def drain(self) -> None:
        """Wait until every queued command and event has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        self._post(_Close())
        if self._task is not None:
            await self._task

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if isinstance(event, _Close):
                    if self._session is not None:
                        await self._end_session()
                    break
                await self._handlers[type(event)](event)
            except Exception as exc:
                LOGGER.exception("Unhandled error while processing %s", type(event).__name__)
                if self._session is not None:
                    await self._abort_session(exc)
            finally:
                self._queue.task_done()

        while not self._queue.empty():
            LOGGER.debug("Discarding %s queued after close", type(self._queue.get_nowait()).__name__)
            self._queue.task_done()

    # -- event plumbing -------------------------------------------------

    def _post(self, event: object) -> None:
        self._queue.put_nowait(event)

    def _post_scan_result(self, generation: int, device: DeviceRef) -> None:
        self._post(_ScanResult(generation, device))

    def _post_link_state(self, generation: int, state: LinkState) -> None:
        self._post(_LinkStateChanged(generation, state))

    def _post_notification(self, generation: int, value: bytes) -> None:
        self._post(_Notification(generation, value))

    def _schedule(self, delay_s: float, event: object) -> None:
        self._cancel_timer()
        self._scan_timer = asyncio.get_running_loop().call_later(delay_s, self._post, event)

    def _cancel_timer(self) -> None:
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None

    def _publish(self, event: EventEnvelope) -> None:
        self._emit(event)

    def _current(self, generation: int | None) -> Session | None:
        session = self._session
        if session is None:
            return None
        if generation is not None and session.generation != generation:
            LOGGER.debug("Dropping event for stale session %d (current %d)", generation, session.generation)
            return None
        return session

    def _transition(self, session: Session, state: SessionState) -> None:
        LOGGER.debug("Session %d: %s -> %s", session.generation, session.state.value, state.value)
        session.state = state

    # -- commands -------------------------------------------------------

    async def _on_start_connect(self, _: _StartConnect) -> None:
        state = self.state
        if state is SessionState.CONNECTED:
            self._publish(EventEnvelope.status(Status.CONNECTED))
            return
        if state is not SessionState.IDLE:
            LOGGER.warning("Ignoring CONNECT while session is %s", state.value)
            return

        self._generation += 1
        session = Session(generation=self._generation, state=SessionState.SCANNING)
        self._session = session
        LOGGER.debug("Session %d: scanning for '%s'", session.generation, self._profile.advertised_name)
        self._publish(EventEnvelope.status(Status.SCANNING))

        timeout_s = self._profile.timing.scan_timeout_s
        if await self._start_scan(session, name_filter=self._profile.advertised_name, timeout_s=timeout_s):
            self._schedule(timeout_s, _ScanTimedOut(session.generation))

    async def _on_select_device(self, event: _SelectDevice) -> None:
        session = self._current(event.generation)
        if session is None or session.state is not SessionState.AWAITING_MANUAL_SELECTION:
            LOGGER.warning("Ignoring device selection while session is %s", self.state.value)
            return
        await self._stop_scan()
        self._close_selection()
        await self._connect(session, event.device)

    async def _on_cancel_selection(self, event: _CancelSelection) -> None:
        session = self._current(event.generation)
        if session is None or session.state is not SessionState.AWAITING_MANUAL_SELECTION:
            return
        LOGGER.info("Manual selection cancelled")
        await self._end_session()

    async def _on_renew_selection(self, event: _RenewSelection) -> None:
        session = self._current(event.generation)
        if session is None or session.state is not SessionState.AWAITING_MANUAL_SELECTION:
            return
        if self._scan is None:
            await self._start_manual_scan(session)

    async def _on_disconnect(self, _: _Disconnect) -> None:
        await self._end_session()

    async def _on_write(self, event: _Write) -> None:
        session = self._session
        if (
            session is None
            or session.state is not SessionState.CONNECTED
            or session.device is None
            or session.write_char is None
        ):
            LOGGER.debug("Dropping write of %d bytes; not connected", len(event.payload))
            return
        try:
            await self._transport.write(
                session.device,
                session.write_char,
                event.payload,
                response=self._profile.write_with_response,
            )
        except TransportError as exc:
            LOGGER.warning("Write to %s failed: %s", session.device.address, exc)
            self._publish(EventEnvelope.error(f"Write Failed: {exc}"))

    async def _on_resync(self, _: _Resync) -> None:
        state = self.state
        if state is SessionState.CONNECTED:
            self._publish(EventEnvelope.status(Status.CONNECTED))
        elif state is SessionState.IDLE:
            self._publish(EventEnvelope.status(Status.DISCONNECTED))

    # -- transport events -----------------------------------------------

    async def _on_scan_result(self, event: _ScanResult) -> None:
        session = self._current(event.generation)
        if session is None:
            return
        if session.state is SessionState.SCANNING:
            # First exact match wins; later results find the session past SCANNING.
            if not is_target_device(event.device, self._profile):
                return
            LOGGER.info("Found %s at %s", event.device.name, event.device.address)
            await self._stop_scan()
            await self._connect(session, event.device)
        elif session.state is SessionState.AWAITING_MANUAL_SELECTION and self._selection is not None:
            self._selection.offer(event.device)

    async def _on_scan_timed_out(self, event: _ScanTimedOut) -> None:
        session = self._current(event.generation)
        if session is None or session.state is not SessionState.SCANNING:
            return
        self._scan_timer = None
        await self._stop_scan()

        reason = ScanTimeout(
            f"'{self._profile.advertised_name}' not found within "
            f"{self._profile.timing.scan_timeout_s:g}s"
        )
        LOGGER.info("%s; falling back to manual selection", reason)
        self._transition(session, SessionState.AWAITING_MANUAL_SELECTION)
        generation = session.generation
        selection = ManualSelection(
            reason=reason,
            on_select=lambda device: self.select_device(device, generation=generation),
            on_cancel=lambda: self.cancel_selection(generation=generation),
            on_renew=lambda: self.renew_selection(generation=generation),
        )
        self._selection = selection
        if not await self._start_manual_scan(session):
            return

        if self._on_manual_selection is None:
            LOGGER.warning("No manual selection consumer registered; cancelling")
            selection.cancel()
            return
        self._on_manual_selection(selection)

    async def _on_manual_scan_expired(self, event: _ManualScanExpired) -> None:
        session = self._current(event.generation)
        if session is None or session.state is not SessionState.AWAITING_MANUAL_SELECTION:
            return
        self._scan_timer = None
        LOGGER.debug("Manual scan window closed")
        await self._stop_scan()

    async def _on_link_state(self, event: _LinkStateChanged) -> None:
        session = self._current(event.generation)
        if session is None or Subscription.CONNECTION not in session.subscriptions:
            return
        if event.state is LinkState.CONNECTED:
            LOGGER.debug("Link up for session %d", session.generation)
            return
        LOGGER.info("Link to %s lost", session.device.address if session.device else "<unknown>")
        await self._end_session(link_lost=True)

    async def _on_notification(self, event: _Notification) -> None:
        session = self._current(event.generation)
        if session is None or Subscription.NOTIFY not in session.subscriptions:
            return
        if session.state is not SessionState.CONNECTED:
            return
        self._publish(EventEnvelope.notification(event.value.decode("utf-8", errors="replace")))

    # -- lifecycle ------------------------------------------------------

    async def _start_scan(self, session: Session, *, name_filter: str | None, timeout_s: float) -> bool:
        try:
            self._scan = await self._transport.scan(
                partial(self._post_scan_result, session.generation),
                name_filter=name_filter,
                timeout_s=timeout_s,
            )
        except TransportError as exc:
            LOGGER.warning("Scan could not start: %s", exc)
            self._publish(EventEnvelope.error(f"Scan Error: {exc}"))
            await self._end_session()
            return False
        return True

    async def _start_manual_scan(self, session: Session) -> bool:
        timeout_s = self._profile.timing.manual_scan_timeout_s
        if not await self._start_scan(session, name_filter=None, timeout_s=timeout_s):
            return False
        if self._selection is not None:
            self._selection.set_scanning(True)
        self._schedule(timeout_s, _ManualScanExpired(session.generation))
        return True

    async def _stop_scan(self) -> None:
        self._cancel_timer()
        scan, self._scan = self._scan, None
        if self._selection is not None:
            self._selection.set_scanning(False)
        if scan is None:
            return
        try:
            await scan.stop()
        except TransportError as exc:
            LOGGER.warning("Scan did not stop cleanly: %s", exc)

    def _close_selection(self) -> None:
        selection, self._selection = self._selection, None
        if selection is not None:
            selection.close()

    async def _connect(self, session: Session, device: DeviceRef) -> None:
        session.device = device
        self._transition(session, SessionState.CONNECTING)
        self._publish(EventEnvelope.status(Status.CONNECTING))

        timing = self._profile.timing
        session.subscriptions.add(Subscription.CONNECTION)
        try:
            await self._transport.connect(
                device,
                partial(self._post_link_state, session.generation),
                timeout_s=timing.connect_timeout_s,
            )
            # Some stacks report the link before the GATT table is stable.
            await asyncio.sleep(timing.settle_s)
            self._transition(session, SessionState.DISCOVERING)

            services = await self._transport.discover_services(device)
            service, write_char, notify_char = resolve_characteristics(services, self._profile)
            await self._transport.set_notify(
                device,
                notify_char,
                True,
                partial(self._post_notification, session.generation),
            )
            session.subscriptions.add(Subscription.NOTIFY)
        except BridgeError as exc:
            LOGGER.warning("Connection to %s failed: %s", device.address, exc)
            self._publish(EventEnvelope.error(f"Connection Fail: {exc}"))
            await self._end_session()
            return

        session.service = service
        session.write_char = write_char
        session.notify_char = notify_char
        self._transition(session, SessionState.CONNECTED)
        LOGGER.info("Connected to %s (%s)", device.name, device.address)
        self._publish(EventEnvelope.status(Status.CONNECTED))

    async def _abort_session(self, exc: Exception) -> None:
        """Drop a session left half-built by an unexpected error."""
        self._publish(EventEnvelope.error(f"Connection Fail: {exc}"))
        try:
            await self._end_session()
        except Exception:
            LOGGER.exception("Teardown after failure did not complete")
            self._cancel_timer()
            self._scan = None
            self._close_selection()
            self._session = None
            self._publish(EventEnvelope.status(Status.DISCONNECTED))

    async def _end_session(self, *, link_lost: bool = False) -> None:
        await self._stop_scan()
        self._close_selection()

        session = self._session
        if session is not None:
            self._transition(session, SessionState.DISCONNECTING)
            device = session.device
            notify_enabled = Subscription.NOTIFY in session.subscriptions
            session.subscriptions.clear()

            if device is not None and notify_enabled and not link_lost and session.notify_char is not None:
                try:
                    await self._transport.set_notify(device, session.notify_char, False)
                except TransportError as exc:
                    LOGGER.debug("Could not disable notifications: %s", exc)
            if device is not None:
                try:
                    await self._transport.disconnect(device)
                except TransportError as exc:
                    LOGGER.warning("Disconnect from %s failed: %s", device.address, exc)

            session.device = None
            session.service = None
            session.write_char = None
            session.notify_char = None
            self._transition(session, SessionState.IDLE)
            self._session = None

        self._publish(EventEnvelope.status(Status.DISCONNECTED))
