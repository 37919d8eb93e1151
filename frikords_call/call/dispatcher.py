"""Signal dispatcher.

Every inbound batch goes through here, whether it came from the session
poller, the one-shot fetch on accept, the inbox watcher or a host that
multiplexes signals itself. Batches are handled one at a time, signal ids
already seen are skipped, and only the current peer can drive the call.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Iterable, Optional, Set

from ..net import protocol
from ..net.transport import SignalTransport
from .machine import REASON_BUSY, REASON_PEER_HANGUP, REASON_REJECTED, CallStateMachine
from .session import CallState


logger = logging.getLogger(__name__)


TERMINAL_REASONS = {
    protocol.HANGUP: REASON_PEER_HANGUP,
    protocol.REJECT: REASON_REJECTED,
    protocol.BUSY: REASON_BUSY,
}

SEEN_LIMIT = 2048


class SignalDispatcher:
    def __init__(
        self,
        transport: SignalTransport,
        *,
        current_call: Callable[[], Optional[CallStateMachine]],
        on_incoming_call: Callable[[protocol.Signal], Awaitable[None]],
        seen_limit: int = SEEN_LIMIT,
    ):
        self._transport = transport
        self._current_call = current_call
        self._on_incoming_call = on_incoming_call
        self.lock = asyncio.Lock()
        self._seen: Set[int] = set()
        self._seen_order: Deque[int] = deque()
        self._seen_limit = seen_limit

    async def dispatch(self, signals: Iterable[protocol.Signal]) -> None:
        async with self.lock:
            for sig in signals:
                try:
                    await self._route(sig)
                except Exception:
                    logger.exception("dispatch failed id=%s type=%s from=%s", sig.id, sig.type, sig.from_user_id)

    def _mark_seen(self, sig_id: int) -> bool:
        """Record `sig_id`; False if it was already seen."""
        if sig_id in self._seen:
            return False
        self._seen.add(sig_id)
        self._seen_order.append(sig_id)
        while len(self._seen_order) > self._seen_limit:
            self._seen.discard(self._seen_order.popleft())
        return True

    async def _route(self, sig: protocol.Signal) -> None:
        if not self._mark_seen(sig.id):
            logger.debug("dispatch duplicate id=%s type=%s", sig.id, sig.type)
            return

        call = self._current_call()
        if call is not None and call.session.ended:
            call = None

        if sig.type == protocol.CALL:
            if call is None:
                logger.info("dispatch incoming call from=%s", sig.from_user_id)
                await self._on_incoming_call(sig)
            elif call.session.peer_id == sig.from_user_id:
                logger.debug("dispatch repeated call from current peer=%s", sig.from_user_id)
            else:
                logger.info("dispatch busy from=%s current_peer=%s", sig.from_user_id, call.session.peer_id)
                await self._transport.send(sig.from_user_id, protocol.BUSY)
            return

        if call is None or sig.from_user_id != call.session.peer_id:
            logger.debug("dispatch dropping type=%s from=%s (not current peer)", sig.type, sig.from_user_id)
            return

        await self._apply(call, sig)

    async def _apply(self, call: CallStateMachine, sig: protocol.Signal) -> None:
        session = call.session
        negotiator = call.negotiator

        if sig.type in TERMINAL_REASONS:
            await call.end(TERMINAL_REASONS[sig.type])

        elif sig.type == protocol.OFFER:
            if session.state == CallState.INCOMING or not negotiator.has_connection:
                # Answered once the user accepts and the microphone is open.
                session.pending_offer = sig
                logger.info("dispatch offer parked peer=%s id=%s", session.peer_id, sig.id)
                return
            if await negotiator.make_answer(sig.payload):
                call.arm_connect_timeout()

        elif sig.type == protocol.ANSWER:
            await negotiator.apply_remote_answer(sig.payload)

        elif sig.type == protocol.ICE:
            await negotiator.apply_remote_candidate(sig.payload)
