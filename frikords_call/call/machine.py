"""Call state machine: lifecycle, timers and connectivity handling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from ..config import CallConfig
from ..errors import ConnectionTimeout, ConnectivityDegraded, ConnectivityFailed
from ..net import protocol
from ..net.poller import SignalPoller
from ..net.transport import SignalTransport
from ..rtc.negotiator import ConnectionNegotiator
from .session import CallSession, CallState, transition


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

CONNECTED_STATES = frozenset({"connected", "completed"})

REASON_HANGUP = "Call ended"
REASON_PEER_HANGUP = "Call ended by peer"
REASON_REJECTED = "Call declined"
REASON_BUSY = "User is busy"
REASON_TIMEOUT = "No connection"
REASON_MISSED = "Missed call"
REASON_FAILED = "Connection failed"
REASON_LOST = "Connection lost"
REASON_CLOSED = "Connection closed"
REASON_NO_MIC = "Microphone unavailable"


@dataclass
class MachineCallbacks:
    on_state: Optional[AsyncCallback] = None  # (snapshot: dict)
    on_dismiss: Optional[AsyncCallback] = None  # (machine: CallStateMachine)


class CallStateMachine:
    """Drives one `CallSession` from creation to `ended`.

    `end()` is the single exit: whichever trigger gets there first wins, the
    rest are no-ops. Teardown always completes before the dismiss callback
    is scheduled.
    """

    def __init__(
        self,
        session: CallSession,
        negotiator: ConnectionNegotiator,
        transport: SignalTransport,
        config: CallConfig,
        callbacks: Optional[MachineCallbacks] = None,
    ):
        self.session = session
        self.negotiator = negotiator
        self._transport = transport
        self._config = config
        self._callbacks = callbacks or MachineCallbacks()
        self.poller: Optional[SignalPoller] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._dismiss_handle: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> CallState:
        return self.session.state

    # ----------------------
    # Lifecycle
    # ----------------------
    async def begin_outgoing(self) -> None:
        transition(self.session, CallState.CALLING)
        await self._notify()

    async def begin_incoming(self) -> None:
        transition(self.session, CallState.INCOMING)
        self.session.ring_timer = self._call_later(self._config.ring_timeout, self._on_ring_timeout)
        await self._notify()

    async def accept(self) -> bool:
        if self.session.state != CallState.INCOMING:
            return False
        transition(self.session, CallState.CONNECTING)
        self._cancel(self.session.ring_timer)
        self.session.ring_timer = None
        # Also covers the wait for the offer.
        self.arm_connect_timeout()
        await self._notify()
        return True

    def arm_connect_timeout(self) -> None:
        s = self.session
        if s.ended or s.state == CallState.ACTIVE or s.connect_timer is not None:
            return
        s.connect_timer = self._call_later(self._config.connect_timeout, self._on_connect_timeout)
        logger.debug("call connect timeout armed peer=%s secs=%s", s.peer_id, self._config.connect_timeout)

    async def end(self, reason: str, *, send: Optional[str] = None) -> bool:
        """Enter `ended`, release everything, then schedule the dismiss.

        `send` names a signal to tell the peer (hangup/reject), sent
        best-effort after media and the peer connection are released.
        Returns False if the session had already ended.
        """
        s = self.session
        if s.ended:
            return False
        transition(s, CallState.ENDED)
        s.end_reason = reason
        self._cancel_timers()
        if self.poller is not None:
            self.poller.stop()
        logger.info("call ended peer=%s reason=%s duration=%s", s.peer_id, reason, s.duration_seconds)

        await self.negotiator.teardown()
        await self._notify()
        self._dismiss_handle = self._call_later(self._config.dismiss_delay, self._on_dismiss)

        if send is not None:
            await self._transport.send(s.peer_id, send)
        return True

    # ----------------------
    # Connectivity
    # ----------------------
    async def on_connectivity(self, kind: str, state: str) -> None:
        if self.session.ended:
            return
        if state != "failed":
            self.session.ice_restart_pending = False
        if state in CONNECTED_STATES:
            await self.mark_connected()
        elif state == "failed":
            await self._on_failed(kind)
        elif state == "disconnected":
            self._start_grace()
        elif state == "closed":
            await self.end(REASON_CLOSED)

    async def mark_connected(self) -> None:
        s = self.session
        if s.ended:
            return
        self._cancel(s.connect_timer)
        s.connect_timer = None
        self._cancel(s.grace_timer)
        s.grace_timer = None

        changed = False
        if s.state in (CallState.CALLING, CallState.CONNECTING):
            changed = transition(s, CallState.ACTIVE)
        if s.state == CallState.ACTIVE and s.duration_task is None:
            s.duration_task = self._spawn(self._tick_duration())
        if changed:
            await self._notify()

    async def _on_failed(self, kind: str) -> None:
        s = self.session
        if s.ice_restart_pending:
            # Both the ICE and the connection state report the same failure;
            # the restart's connect window decides.
            return
        if s.ice_restarted:
            logger.warning("call %s peer=%s kind=%s", ConnectivityFailed("failed after ICE restart"), s.peer_id, kind)
            await self.end(REASON_FAILED)
            return

        s.ice_restarted = True
        s.ice_restart_pending = True
        logger.info("call connectivity failed peer=%s kind=%s, restarting ICE", s.peer_id, kind)
        if not await self.negotiator.restart_ice():
            await self.end(REASON_FAILED)
            return
        # Give the restart one more connect window.
        self._cancel(s.connect_timer)
        s.connect_timer = None
        if not s.ended:
            s.connect_timer = self._call_later(self._config.connect_timeout, self._on_connect_timeout)

    def _start_grace(self) -> None:
        s = self.session
        if s.grace_timer is not None:
            return
        logger.info("call connectivity degraded peer=%s grace=%s", s.peer_id, self._config.disconnect_grace)
        s.grace_timer = self._call_later(self._config.disconnect_grace, self._on_grace_expired)

    # ----------------------
    # Mute / duration
    # ----------------------
    async def toggle_mute(self) -> bool:
        s = self.session
        if s.ended or s.state != CallState.ACTIVE:
            return s.muted
        s.muted = not s.muted
        self.negotiator.set_muted(s.muted)
        logger.info("call peer=%s muted=%s", s.peer_id, s.muted)
        await self._notify()
        return s.muted

    async def _tick_duration(self) -> None:
        s = self.session
        while not s.ended:
            await asyncio.sleep(1.0)
            if s.ended:
                return
            s.duration_seconds += 1
            await self._notify()

    # ----------------------
    # Timers
    # ----------------------
    def _on_connect_timeout(self) -> None:
        s = self.session
        s.connect_timer = None
        if s.ended:
            return
        logger.warning("call %s peer=%s", ConnectionTimeout("no connected state"), s.peer_id)
        self._spawn(self.end(REASON_TIMEOUT, send=protocol.HANGUP))

    def _on_ring_timeout(self) -> None:
        s = self.session
        s.ring_timer = None
        if s.ended or s.state != CallState.INCOMING:
            return
        logger.info("call incoming not answered peer=%s", s.peer_id)
        self._spawn(self.end(REASON_MISSED))

    def _on_grace_expired(self) -> None:
        s = self.session
        s.grace_timer = None
        if s.ended:
            return
        if self.negotiator.ice_connection_state in CONNECTED_STATES or self.negotiator.connection_state == "connected":
            return
        logger.warning("call %s peer=%s", ConnectivityDegraded("disconnected past grace window"), s.peer_id)
        self._spawn(self.end(REASON_LOST))

    def _on_dismiss(self) -> None:
        self._dismiss_handle = None
        if self._callbacks.on_dismiss:
            self._spawn(self._callbacks.on_dismiss(self))

    def _cancel_timers(self) -> None:
        s = self.session
        for handle in (s.connect_timer, s.ring_timer, s.grace_timer):
            self._cancel(handle)
        s.connect_timer = s.ring_timer = s.grace_timer = None
        if s.duration_task is not None:
            s.duration_task.cancel()
            s.duration_task = None

    def cancel_dismiss(self) -> None:
        self._cancel(self._dismiss_handle)
        self._dismiss_handle = None

    @staticmethod
    def _cancel(handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _call_later(delay: float, fn: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, fn)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _notify(self) -> None:
        if self._callbacks.on_state:
            await self._callbacks.on_state(self.session.snapshot())
