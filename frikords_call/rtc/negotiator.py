"""Connection negotiator: one peer connection and one microphone per call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..call.session import CallSession
from ..errors import MediaAccessError, StaleOfferIgnored
from ..net import protocol
from ..net.transport import SignalTransport
from .audio import LevelCallback, LocalAudio, RemoteAudioSink, open_microphone


logger = logging.getLogger(__name__)


AsyncNegotiatorCallback = Callable[..., Awaitable[None]]
PeerFactory = Callable[[], Any]
MediaFactory = Callable[[Optional[str], Optional[LevelCallback]], Awaitable[LocalAudio]]


def candidate_from_payload(payload: str) -> Optional[RTCIceCandidate]:
    """Decode an `ice` payload; None for end-of-candidates."""
    obj = protocol.decode_candidate(payload)
    if obj is None:
        return None
    try:
        cand = candidate_from_sdp(obj["candidate"])
    except (AssertionError, IndexError, ValueError):
        raise protocol.ProtocolError("unparseable ICE candidate")
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def candidate_to_payload(candidate: RTCIceCandidate) -> str:
    return protocol.encode_candidate(
        candidate_to_sdp(candidate),
        getattr(candidate, "sdpMid", None),
        getattr(candidate, "sdpMLineIndex", None),
    )


async def _default_media_factory(device_id: Optional[str], on_level: Optional[LevelCallback]) -> LocalAudio:
    return await open_microphone(device_id, on_level=on_level)


@dataclass
class NegotiatorCallbacks:
    on_connectivity: Optional[AsyncNegotiatorCallback] = None  # (kind: "ice"|"connection", state: str)
    on_mic_level: Optional[LevelCallback] = None


class ConnectionNegotiator:
    """Turns call intents into the offer/answer/ICE exchange.

    Owns the peer connection and the local capture for the lifetime of one
    session; both are created in `create_connection()` and released together
    in `teardown()`. Every method re-checks `closed` after each await so a
    completion that lands after hang-up never touches a dead session.
    """

    def __init__(
        self,
        session: CallSession,
        transport: SignalTransport,
        *,
        rtc_config: Optional[RTCConfiguration] = None,
        mic_device_id: Optional[str] = None,
        callbacks: Optional[NegotiatorCallbacks] = None,
        peer_factory: Optional[PeerFactory] = None,
        media_factory: Optional[MediaFactory] = None,
    ):
        self.session = session
        self._transport = transport
        self._mic_device_id = mic_device_id
        self._callbacks = callbacks or NegotiatorCallbacks()
        self._peer_factory = peer_factory or (lambda: RTCPeerConnection(configuration=rtc_config))
        self._media_factory = media_factory or _default_media_factory

        self._pc: Optional[Any] = None
        self._local_audio: Optional[LocalAudio] = None
        self._remote_sink: Optional[RemoteAudioSink] = None
        self.is_offerer = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self.session.ended

    @property
    def has_connection(self) -> bool:
        return self._pc is not None and not self._closed

    @property
    def signaling_state(self) -> Optional[str]:
        return self._pc.signalingState if self._pc is not None else None

    @property
    def connection_state(self) -> Optional[str]:
        return self._pc.connectionState if self._pc is not None else None

    @property
    def ice_connection_state(self) -> Optional[str]:
        return self._pc.iceConnectionState if self._pc is not None else None

    async def create_connection(self) -> bool:
        """Acquire the microphone and build the peer connection.

        Raises MediaAccessError when capture cannot be opened. Returns False
        if the session ended while the microphone was being acquired.
        """
        if self._pc is not None:
            return True
        if self.closed:
            return False

        try:
            local = await self._media_factory(self._mic_device_id, self._callbacks.on_mic_level)
        except MediaAccessError as e:
            logger.warning("rtc microphone unavailable peer=%s device=%s", self.session.peer_id, e.device)
            raise

        if self.closed:
            logger.info("rtc session ended during microphone acquisition peer=%s", self.session.peer_id)
            local.close()
            return False

        pc = self._peer_factory()
        self._local_audio = local
        self._pc = pc
        if local.track is not None:
            # audio-only: send microphone to peer
            pc.addTrack(local.track)
        self._wire(pc)
        logger.debug("rtc created pc peer=%s", self.session.peer_id)
        return True

    def _wire(self, pc: Any) -> None:
        @pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None or self.closed:
                return
            await self._transport.send(self.session.peer_id, protocol.ICE, candidate_to_payload(candidate))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            await self._report("connection", pc.connectionState)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange() -> None:
            await self._report("ice", pc.iceConnectionState)

        @pc.on("track")
        async def on_track(track) -> None:
            logger.info("rtc remote track peer=%s kind=%s", self.session.peer_id, track.kind)
            if track.kind != "audio" or self.closed:
                return
            self._remote_sink = RemoteAudioSink()
            await self._remote_sink.start(track)

    async def _report(self, kind: str, state: str) -> None:
        logger.debug("rtc peer=%s %s state=%s", self.session.peer_id, kind, state)
        if self._closed:
            return
        if self._callbacks.on_connectivity:
            await self._callbacks.on_connectivity(kind, state)

    async def make_offer(self, *, restart: bool = False) -> bool:
        pc = self._pc
        if pc is None or self.closed:
            return False
        if not restart and pc.localDescription is not None:
            logger.info("rtc offer skipped, local description already set peer=%s", self.session.peer_id)
            return False
        if pc.signalingState != "stable":
            logger.info("rtc %s", StaleOfferIgnored("offer", pc.signalingState))
            return False

        offer = await pc.createOffer()
        if self.closed:
            return False
        await pc.setLocalDescription(offer)
        if self.closed:
            return False
        self.is_offerer = True
        desc = pc.localDescription
        logger.info("rtc sending offer peer=%s restart=%s sdp_len=%s", self.session.peer_id, restart, len(desc.sdp))
        await self._transport.send(self.session.peer_id, protocol.OFFER, protocol.encode_description(desc.type, desc.sdp))
        return True

    async def make_answer(self, offer_payload: str) -> bool:
        """Apply a remote offer and answer it.

        Ignored unless the signaling state is stable, so duplicate or late
        offers cannot disturb a negotiation in progress.
        """
        pc = self._pc
        if pc is None or self.closed:
            return False
        if pc.signalingState != "stable":
            logger.info("rtc %s", StaleOfferIgnored("offer", pc.signalingState))
            return False
        try:
            desc_type, sdp = protocol.decode_description(offer_payload)
        except protocol.ProtocolError as e:
            logger.warning("rtc bad offer payload peer=%s: %s", self.session.peer_id, e.message)
            return False
        if desc_type != "offer":
            logger.warning("rtc expected offer, got %s peer=%s", desc_type, self.session.peer_id)
            return False

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        except ValueError as e:
            logger.warning("rtc remote offer rejected peer=%s: %s", self.session.peer_id, e)
            return False
        if self.closed:
            return False
        self.session.has_remote_description = True
        await self._flush_candidates()

        answer = await pc.createAnswer()
        if self.closed:
            return False
        await pc.setLocalDescription(answer)
        if self.closed:
            return False
        desc = pc.localDescription
        logger.info("rtc sending answer peer=%s sdp_len=%s", self.session.peer_id, len(desc.sdp))
        await self._transport.send(self.session.peer_id, protocol.ANSWER, protocol.encode_description(desc.type, desc.sdp))
        return True

    async def apply_remote_answer(self, answer_payload: str) -> bool:
        pc = self._pc
        if pc is None or self.closed:
            return False
        if pc.signalingState != "have-local-offer":
            logger.info("rtc %s", StaleOfferIgnored("answer", pc.signalingState))
            return False
        try:
            desc_type, sdp = protocol.decode_description(answer_payload)
        except protocol.ProtocolError as e:
            logger.warning("rtc bad answer payload peer=%s: %s", self.session.peer_id, e.message)
            return False
        if desc_type != "answer":
            logger.warning("rtc expected answer, got %s peer=%s", desc_type, self.session.peer_id)
            return False

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except ValueError as e:
            logger.warning("rtc remote answer rejected peer=%s: %s", self.session.peer_id, e)
            return False
        if self.closed:
            return False
        logger.info("rtc applied answer peer=%s", self.session.peer_id)
        self.session.has_remote_description = True
        await self._flush_candidates()
        return True

    async def apply_remote_candidate(self, candidate_payload: str) -> bool:
        """Apply a remote candidate now, or queue it until the remote description is set.

        Returns True if the candidate was applied or queued.
        """
        if self.closed:
            return False
        try:
            cand = candidate_from_payload(candidate_payload)
        except protocol.ProtocolError as e:
            logger.warning("rtc bad candidate peer=%s: %s", self.session.peer_id, e.message)
            return False
        if cand is None:
            return False

        if self._pc is None or not self.session.has_remote_description:
            self.session.pending_candidates.append(cand)
            logger.debug("rtc queued candidate peer=%s queued=%s", self.session.peer_id, len(self.session.pending_candidates))
            return True

        await self._add_candidate(cand)
        return True

    async def _add_candidate(self, cand: RTCIceCandidate) -> None:
        assert self._pc is not None
        try:
            await self._pc.addIceCandidate(cand)
        except ValueError as e:
            logger.debug("rtc candidate rejected peer=%s: %s", self.session.peer_id, e)

    async def _flush_candidates(self) -> None:
        if self.session.candidates_flushed:
            return
        self.session.candidates_flushed = True
        queued, self.session.pending_candidates = self.session.pending_candidates, []
        logger.debug("rtc flushing candidates peer=%s count=%s", self.session.peer_id, len(queued))
        for cand in queued:
            if self.closed:
                return
            await self._add_candidate(cand)

    async def restart_ice(self) -> bool:
        """Renegotiate connectivity without tearing the session down.

        The offering side re-offers; the answering side waits for that offer.
        """
        pc = self._pc
        if pc is None or self.closed:
            return False
        restart = getattr(pc, "restartIce", None)
        if callable(restart):
            restart()
        if self.is_offerer:
            logger.info("rtc ice restart, re-offering peer=%s", self.session.peer_id)
            return await self.make_offer(restart=True)
        logger.info("rtc ice restart, waiting for peer re-offer peer=%s", self.session.peer_id)
        return True

    def set_muted(self, muted: bool) -> None:
        track = self._local_audio.track if self._local_audio is not None else None
        if track is not None:
            track.enabled = not muted

    async def teardown(self) -> None:
        """Release media and close the peer connection. Runs once."""
        if self._closed:
            return
        self._closed = True
        self.session.pending_candidates = []

        local, self._local_audio = self._local_audio, None
        sink, self._remote_sink = self._remote_sink, None
        pc, self._pc = self._pc, None
        logger.info("rtc teardown peer=%s", self.session.peer_id)
        try:
            if local is not None:
                local.close()
            if sink is not None:
                await sink.stop()
        finally:
            if pc is not None:
                await pc.close()
