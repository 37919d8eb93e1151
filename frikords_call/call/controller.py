"""The call object the UI talks to.

Exposes `peer_id`, `peer_name`, `state`, `muted`, `duration_seconds` and the
user intents (start, accept, reject, hang up, mute). At most one session is
live at a time; a new session always gets a fresh negotiator, peer
connection and poller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from ..config import CallConfig
from ..errors import MediaAccessError
from ..net import protocol
from ..net.poller import SignalPoller
from ..net.transport import SignalTransport
from ..rtc.negotiator import ConnectionNegotiator, MediaFactory, NegotiatorCallbacks, PeerFactory
from .dispatcher import SignalDispatcher
from .machine import REASON_HANGUP, REASON_NO_MIC, REASON_REJECTED, CallStateMachine, MachineCallbacks
from .session import CallSession, CallState


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class CallCallbacks:
    on_log: Optional[AsyncCallback] = None  # (msg: str)
    on_state: Optional[AsyncCallback] = None  # (snapshot: dict)
    on_error: Optional[AsyncCallback] = None  # (message: str)
    on_dismiss: Optional[AsyncCallback] = None  # (snapshot: dict)
    on_mic_level: Optional[Callable[[int], None]] = None


def _default_name(user_id: int) -> str:
    return f"User {user_id}"


class CallController:
    def __init__(
        self,
        transport: SignalTransport,
        config: Optional[CallConfig] = None,
        callbacks: Optional[CallCallbacks] = None,
        *,
        name_resolver: Optional[Callable[[int], str]] = None,
        peer_factory: Optional[PeerFactory] = None,
        media_factory: Optional[MediaFactory] = None,
    ):
        self._transport = transport
        self.config = config or CallConfig()
        self._callbacks = callbacks or CallCallbacks()
        self._resolve_name = name_resolver or _default_name
        self._peer_factory = peer_factory
        self._media_factory = media_factory
        self._call: Optional[CallStateMachine] = None
        self.dispatcher = SignalDispatcher(
            transport,
            current_call=lambda: self._call,
            on_incoming_call=self._on_incoming_call,
        )

    # ----------------------
    # Observable fields
    # ----------------------
    @property
    def current(self) -> Optional[CallStateMachine]:
        return self._call

    @property
    def has_live_session(self) -> bool:
        return self._call is not None and self._call.session.live

    @property
    def peer_id(self) -> Optional[int]:
        return self._call.session.peer_id if self._call else None

    @property
    def peer_name(self) -> Optional[str]:
        return self._call.session.peer_name if self._call else None

    @property
    def state(self) -> CallState:
        return self._call.session.state if self._call else CallState.IDLE

    @property
    def muted(self) -> bool:
        return self._call.session.muted if self._call else False

    @property
    def duration_seconds(self) -> int:
        return self._call.session.duration_seconds if self._call else 0

    @property
    def end_reason(self) -> Optional[str]:
        return self._call.session.end_reason if self._call else None

    def snapshot(self) -> Dict[str, Any]:
        if self._call is None:
            return {
                "peer_id": None,
                "peer_name": None,
                "state": CallState.IDLE.value,
                "muted": False,
                "duration_seconds": 0,
                "end_reason": None,
            }
        return self._call.session.snapshot()

    # ----------------------
    # Intents
    # ----------------------
    async def start_call(self, peer_id: int, peer_name: Optional[str] = None) -> bool:
        if self.has_live_session:
            await self._emit_error("Already in a call")
            return False

        session = CallSession(peer_id=peer_id, peer_name=peer_name or self._resolve_name(peer_id), outgoing=True)
        call = self._new_call(session)
        await self._log(f"Calling {session.peer_name}")
        try:
            ok = await call.negotiator.create_connection()
        except MediaAccessError as e:
            await self._emit_error(str(e))
            return False
        if not ok:
            return False
        if self.has_live_session:
            # An incoming call claimed the line while the microphone opened.
            await call.negotiator.teardown()
            await self._emit_error("Already in a call")
            return False

        self._publish(call)
        await call.begin_outgoing()
        await self._transport.send(peer_id, protocol.CALL)
        if session.ended:
            return True
        if await call.negotiator.make_offer():
            call.arm_connect_timeout()
        return True

    async def accept_incoming(self) -> bool:
        call = self._call
        if call is None or call.session.state != CallState.INCOMING:
            return False
        session = call.session
        await call.accept()

        try:
            ok = await call.negotiator.create_connection()
        except MediaAccessError as e:
            await self._emit_error(str(e))
            await call.end(REASON_NO_MIC, send=protocol.REJECT)
            return False
        if not ok:
            return False

        async with self.dispatcher.lock:
            offer, session.pending_offer = session.pending_offer, None
            if offer is not None and not session.ended:
                if await call.negotiator.make_answer(offer.payload):
                    call.arm_connect_timeout()

        # The offer may already be waiting at the relay.
        if not session.ended and call.poller is not None:
            await call.poller.fetch_now()
        return True

    async def reject_incoming(self) -> bool:
        call = self._call
        if call is None or call.session.state != CallState.INCOMING:
            return False
        return await call.end(REASON_REJECTED, send=protocol.REJECT)

    async def hang_up(self) -> bool:
        call = self._call
        if call is None or call.session.ended:
            return False
        if call.session.state == CallState.INCOMING:
            return await call.end(REASON_REJECTED, send=protocol.REJECT)
        return await call.end(REASON_HANGUP, send=protocol.HANGUP)

    async def toggle_mute(self) -> bool:
        if self._call is None:
            return False
        return await self._call.toggle_mute()

    async def dispatch(self, signals: Iterable[protocol.Signal]) -> None:
        """Route an externally supplied batch."""
        await self.dispatcher.dispatch(signals)

    async def close(self) -> None:
        call = self._call
        if call is not None:
            await call.end(REASON_HANGUP, send=protocol.HANGUP)
            call.cancel_dismiss()
        self._call = None

    # ----------------------
    # Internals
    # ----------------------
    def _new_call(self, session: CallSession) -> CallStateMachine:
        negotiator_callbacks = NegotiatorCallbacks(on_mic_level=self._callbacks.on_mic_level)
        negotiator = ConnectionNegotiator(
            session,
            self._transport,
            rtc_config=self.config.rtc_configuration() if self._peer_factory is None else None,
            mic_device_id=self.config.mic_device_id,
            callbacks=negotiator_callbacks,
            peer_factory=self._peer_factory,
            media_factory=self._media_factory,
        )
        call = CallStateMachine(
            session,
            negotiator,
            self._transport,
            self.config,
            MachineCallbacks(on_state=self._on_state, on_dismiss=self._on_dismiss),
        )
        negotiator_callbacks.on_connectivity = call.on_connectivity
        call.poller = SignalPoller(
            self._transport,
            self.dispatch,
            interval=self.config.poll_interval,
            name=f"call-poller-{session.peer_id}",
        )
        return call

    def _publish(self, call: CallStateMachine) -> None:
        previous = self._call
        if previous is not None:
            previous.cancel_dismiss()
        self._call = call
        if self.config.internal_polling and call.poller is not None:
            call.poller.start()

    async def _on_incoming_call(self, sig: protocol.Signal) -> None:
        session = CallSession(peer_id=sig.from_user_id, peer_name=self._resolve_name(sig.from_user_id), outgoing=False)
        call = self._new_call(session)
        self._publish(call)
        await self._log(f"Incoming call from {session.peer_name}")
        await call.begin_incoming()

    async def _on_state(self, snapshot: Dict[str, Any]) -> None:
        if self._callbacks.on_state:
            await self._callbacks.on_state(snapshot)

    async def _on_dismiss(self, call: CallStateMachine) -> None:
        snapshot = call.session.snapshot()
        if self._call is call:
            self._call = None
        if self._callbacks.on_dismiss:
            await self._callbacks.on_dismiss(snapshot)

    async def _emit_error(self, message: str) -> None:
        logger.warning("call error: %s", message)
        if self._callbacks.on_error:
            await self._callbacks.on_error(message)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
