from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription

from frikords_call.call.controller import CallCallbacks, CallController
from frikords_call.config import CallConfig
from frikords_call.errors import MediaAccessError
from frikords_call.net import protocol
from frikords_call.net.transport import SignalTransport


OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
ANSWER_SDP = "v=0\r\no=- 2 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"

PEER_ID = 7


def candidate_payload(foundation: str = "1", port: int = 50000) -> str:
    return json.dumps(
        {
            "candidate": f"candidate:{foundation} 1 udp 2130706431 192.0.2.10 {port} typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        }
    )


def offer_payload() -> str:
    return protocol.encode_description("offer", OFFER_SDP)


def answer_payload() -> str:
    return protocol.encode_description("answer", ANSWER_SDP)


class SignalFactory:
    def __init__(self):
        self._ids = itertools.count(1)

    def __call__(self, stype: str, payload: str = "", from_user: int = PEER_ID, sig_id: Optional[int] = None) -> protocol.Signal:
        return protocol.Signal(
            id=sig_id if sig_id is not None else next(self._ids),
            from_user_id=from_user,
            type=stype,
            payload=payload,
        )


class FakeTransport(SignalTransport):
    def __init__(self):
        self.sent: List[tuple] = []
        self.inbound: List[protocol.Signal] = []
        self.poll_calls = 0
        self.closed = False
        # When set, sends wait on it like a slow relay request.
        self.gate: Optional[asyncio.Event] = None

    async def send(self, recipient_id: int, signal_type: str, payload: str = "") -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.sent.append((recipient_id, signal_type, payload))

    async def poll(self) -> List[protocol.Signal]:
        self.poll_calls += 1
        batch, self.inbound = self.inbound, []
        return batch

    async def close(self) -> None:
        self.closed = True

    def sent_types(self, recipient_id: Optional[int] = None) -> List[str]:
        return [t for r, t, _ in self.sent if recipient_id is None or r == recipient_id]


class FakePeerConnection:
    """Stands in for RTCPeerConnection: records calls, tracks signaling state."""

    def __init__(self):
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.events: List[tuple] = []
        self.tracks: List[Any] = []
        self.close_calls = 0
        self._handlers: Dict[str, Any] = {}

    def on(self, event: str):
        def decorator(fn):
            self._handlers[event] = fn
            return fn

        return decorator

    async def emit(self, event: str, *args) -> None:
        await self._handlers[event](*args)

    async def set_connection(self, state: str) -> None:
        self.connectionState = state
        await self.emit("connectionstatechange")

    async def set_ice(self, state: str) -> None:
        self.iceConnectionState = state
        await self.emit("iceconnectionstatechange")

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, desc: RTCSessionDescription) -> None:
        self.localDescription = desc
        self.signalingState = "have-local-offer" if desc.type == "offer" else "stable"

    async def setRemoteDescription(self, desc: RTCSessionDescription) -> None:
        self.remoteDescription = desc
        self.events.append(("remote", desc.type))
        self.signalingState = "have-remote-offer" if desc.type == "offer" else "stable"

    async def addIceCandidate(self, candidate) -> None:
        self.events.append(("candidate", candidate.foundation))

    async def close(self) -> None:
        self.close_calls += 1
        self.connectionState = "closed"


class PeerFactory:
    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeTrack:
    kind = "audio"

    def __init__(self):
        self.enabled = True


class FakeLocalAudio:
    def __init__(self):
        self.track = FakeTrack()
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1


class MediaFactory:
    """Opens fake microphones; `fail` raises, `gate` holds the open until set."""

    def __init__(self):
        self.opened: List[FakeLocalAudio] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, device_id, on_level) -> FakeLocalAudio:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise MediaAccessError(device=device_id)
        audio = FakeLocalAudio()
        self.opened.append(audio)
        return audio

    @property
    def last(self) -> FakeLocalAudio:
        return self.opened[-1]


class Recorder:
    def __init__(self):
        self.states: List[Dict[str, Any]] = []
        self.errors: List[str] = []
        self.logs: List[str] = []
        self.dismissed: List[Dict[str, Any]] = []

    async def on_state(self, snapshot: Dict[str, Any]) -> None:
        self.states.append(snapshot)

    async def on_error(self, message: str) -> None:
        self.errors.append(message)

    async def on_log(self, message: str) -> None:
        self.logs.append(message)

    async def on_dismiss(self, snapshot: Dict[str, Any]) -> None:
        self.dismissed.append(snapshot)

    def callbacks(self) -> CallCallbacks:
        return CallCallbacks(
            on_log=self.on_log,
            on_state=self.on_state,
            on_error=self.on_error,
            on_dismiss=self.on_dismiss,
        )


@pytest.fixture
def config() -> CallConfig:
    return CallConfig(
        poll_interval=0.01,
        inbox_interval=0.01,
        connect_timeout=0.2,
        ring_timeout=0.3,
        disconnect_grace=0.05,
        dismiss_delay=0.05,
        ice_servers=[],
        internal_polling=False,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def peers() -> PeerFactory:
    return PeerFactory()


@pytest.fixture
def media() -> MediaFactory:
    return MediaFactory()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def signal() -> SignalFactory:
    return SignalFactory()


@pytest.fixture
def controller(transport, config, recorder, peers, media) -> CallController:
    return CallController(
        transport,
        config,
        recorder.callbacks(),
        name_resolver=lambda uid: f"friend-{uid}",
        peer_factory=peers,
        media_factory=media,
    )
