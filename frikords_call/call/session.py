"""Call session state.

One `CallSession` holds every piece of mutable state for one call attempt.
Collaborators get the session by reference; `state` itself is only ever
written by `transition()`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from ..errors import InvalidTransition
from ..net.protocol import Signal


logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    INCOMING = "incoming"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


TRANSITIONS: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset({CallState.CALLING, CallState.INCOMING, CallState.ENDED}),
    CallState.CALLING: frozenset({CallState.ACTIVE, CallState.ENDED}),
    CallState.INCOMING: frozenset({CallState.CONNECTING, CallState.ENDED}),
    CallState.CONNECTING: frozenset({CallState.ACTIVE, CallState.ENDED}),
    CallState.ACTIVE: frozenset({CallState.ENDED}),
    CallState.ENDED: frozenset(),
}

LIVE_STATES = frozenset({CallState.CALLING, CallState.INCOMING, CallState.CONNECTING, CallState.ACTIVE})


@dataclass
class CallSession:
    peer_id: int
    peer_name: str
    outgoing: bool
    state: CallState = CallState.IDLE
    muted: bool = False
    duration_seconds: int = 0
    end_reason: Optional[str] = None
    ended: bool = False

    # Negotiation
    pending_candidates: List[Any] = field(default_factory=list)
    has_remote_description: bool = False
    pending_offer: Optional[Signal] = None
    ice_restarted: bool = False
    ice_restart_pending: bool = False
    candidates_flushed: bool = False

    # Timers, owned by the state machine.
    connect_timer: Optional[asyncio.TimerHandle] = None
    ring_timer: Optional[asyncio.TimerHandle] = None
    grace_timer: Optional[asyncio.TimerHandle] = None
    duration_task: Optional["asyncio.Task[None]"] = None

    @property
    def live(self) -> bool:
        return not self.ended and self.state in LIVE_STATES

    def snapshot(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "peer_name": self.peer_name,
            "state": self.state.value,
            "muted": self.muted,
            "duration_seconds": self.duration_seconds,
            "end_reason": self.end_reason,
        }


def transition(session: CallSession, target: CallState) -> bool:
    """Move `session` to `target`.

    Returns False when already in `target`; raises InvalidTransition when the
    table does not allow the move.
    """
    current = session.state
    if current == target:
        return False
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    session.state = target
    if target == CallState.ENDED:
        session.ended = True
    logger.info("call peer=%s state %s -> %s", session.peer_id, current.value, target.value)
    return True


def format_duration(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"
