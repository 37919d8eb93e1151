import asyncio

from conftest import PEER_ID, answer_payload, offer_payload
from frikords_call.call.machine import (
    REASON_FAILED,
    REASON_HANGUP,
    REASON_LOST,
    REASON_MISSED,
    REASON_NO_MIC,
    REASON_TIMEOUT,
)
from frikords_call.call.session import CallState
from frikords_call.net import protocol


async def _connected_outgoing(controller, peers, signal):
    await controller.start_call(PEER_ID)
    await controller.dispatch([signal(protocol.ANSWER, answer_payload())])
    await peers.last.set_connection("connected")
    assert controller.state == CallState.ACTIVE


async def test_start_call_sends_call_then_offer(controller, transport, recorder):
    assert await controller.start_call(PEER_ID, "Alice")

    assert transport.sent_types(PEER_ID) == [protocol.CALL, protocol.OFFER]
    assert controller.state == CallState.CALLING
    assert controller.peer_name == "Alice"
    assert recorder.states[-1]["state"] == "calling"


async def test_microphone_failure_on_outgoing_call_stays_idle(controller, transport, media, peers, recorder):
    media.fail = True

    assert not await controller.start_call(PEER_ID)

    assert controller.state == CallState.IDLE
    assert controller.current is None
    assert transport.sent == []
    assert peers.created == []
    assert recorder.errors == ["Microphone unavailable"]


async def test_microphone_failure_on_accept_rejects(controller, transport, media, signal):
    await controller.dispatch([signal(protocol.CALL), signal(protocol.OFFER, offer_payload())])
    media.fail = True

    assert not await controller.accept_incoming()

    assert controller.state == CallState.ENDED
    assert controller.end_reason == REASON_NO_MIC
    assert transport.sent_types() == [protocol.REJECT]


async def test_connected_state_activates_and_counts(controller, peers, signal, recorder):
    await _connected_outgoing(controller, peers, signal)

    assert controller.current.session.connect_timer is None
    await asyncio.sleep(1.1)
    assert controller.duration_seconds >= 1
    assert recorder.states[-1]["state"] == "active"


async def test_hang_up_before_answer(controller, transport, peers, media, signal):
    await controller.start_call(PEER_ID)

    assert await controller.hang_up()
    assert controller.state == CallState.ENDED
    assert controller.end_reason == REASON_HANGUP
    assert transport.sent_types() == [protocol.CALL, protocol.OFFER, protocol.HANGUP]

    # A late answer finds no live session.
    await controller.dispatch([signal(protocol.ANSWER, answer_payload())])
    assert peers.last.remoteDescription is None
    assert peers.last.close_calls == 1
    assert media.last.close_calls == 1


async def test_connect_timeout_ends_call(controller, transport, peers, config):
    await controller.start_call(PEER_ID)
    call = controller.current

    await asyncio.sleep(config.connect_timeout + 0.1)

    assert call.session.state == CallState.ENDED
    assert call.session.end_reason == REASON_TIMEOUT
    assert transport.sent_types().count(protocol.HANGUP) == 1
    assert peers.last.close_calls == 1


async def test_accepted_call_without_offer_times_out(controller, transport, peers, signal, config):
    await controller.dispatch([signal(protocol.CALL)])
    call = controller.current

    assert await controller.accept_incoming()
    assert call.session.state == CallState.CONNECTING
    assert call.session.connect_timer is not None

    await asyncio.sleep(config.connect_timeout + 0.1)

    assert call.session.state == CallState.ENDED
    assert call.session.end_reason == REASON_TIMEOUT
    assert transport.sent_types() == [protocol.HANGUP]
    assert peers.last.close_calls == 1


async def test_end_releases_media_before_sending(controller, transport, peers, media, signal, recorder):
    await _connected_outgoing(controller, peers, signal)
    call = controller.current
    transport.gate = asyncio.Event()

    hang_up = asyncio.ensure_future(controller.hang_up())
    await asyncio.sleep(0.01)

    assert not hang_up.done()
    assert call.session.state == CallState.ENDED
    assert peers.last.close_calls == 1
    assert media.last.close_calls == 1
    assert recorder.states[-1]["state"] == "ended"
    assert protocol.HANGUP not in transport.sent_types()

    transport.gate.set()
    assert await hang_up
    assert transport.sent_types()[-1] == protocol.HANGUP


async def test_racing_end_triggers_tear_down_once(controller, transport, peers, media):
    await controller.start_call(PEER_ID)
    call = controller.current

    results = await asyncio.gather(
        controller.hang_up(),
        call.end(REASON_TIMEOUT, send=protocol.HANGUP),
        controller.hang_up(),
    )

    assert results.count(True) == 1
    assert controller.end_reason == REASON_HANGUP
    assert transport.sent_types().count(protocol.HANGUP) == 1
    assert peers.last.close_calls == 1
    assert media.last.close_calls == 1


async def test_mute_only_while_active(controller, transport, peers, media, signal):
    await controller.start_call(PEER_ID)
    assert await controller.toggle_mute() is False
    assert media.last.track.enabled is True

    await controller.dispatch([signal(protocol.ANSWER, answer_payload())])
    await peers.last.set_connection("connected")

    sent_before = list(transport.sent)
    assert await controller.toggle_mute() is True
    assert controller.muted
    assert controller.state == CallState.ACTIVE
    assert transport.sent == sent_before
    assert media.last.track.enabled is False
    assert await controller.toggle_mute() is False
    assert media.last.track.enabled is True


async def test_failed_connectivity_restarts_ice_once(controller, transport, peers, signal):
    await controller.start_call(PEER_ID)
    await controller.dispatch([signal(protocol.ANSWER, answer_payload())])
    pc = peers.last

    await pc.set_ice("failed")
    await pc.set_connection("failed")
    assert controller.state == CallState.CALLING
    assert transport.sent_types().count(protocol.OFFER) == 2

    await pc.set_ice("checking")
    await pc.set_ice("failed")
    assert controller.state == CallState.ENDED
    assert controller.end_reason == REASON_FAILED


async def test_disconnect_recovers_within_grace(controller, peers, signal, config):
    await _connected_outgoing(controller, peers, signal)
    pc = peers.last

    await pc.set_ice("disconnected")
    await pc.set_ice("connected")
    await asyncio.sleep(config.disconnect_grace + 0.05)

    assert controller.state == CallState.ACTIVE


async def test_disconnect_past_grace_ends_call(controller, peers, signal, config):
    await _connected_outgoing(controller, peers, signal)
    pc = peers.last

    call = controller.current

    pc.connectionState = "disconnected"
    await pc.set_ice("disconnected")
    await asyncio.sleep(config.disconnect_grace + 0.05)

    assert call.session.state == CallState.ENDED
    assert call.session.end_reason == REASON_LOST


async def test_unanswered_incoming_call_is_missed(controller, transport, signal, config):
    await controller.dispatch([signal(protocol.CALL)])
    call = controller.current

    await asyncio.sleep(config.ring_timeout + 0.1)

    assert call.session.state == CallState.ENDED
    assert call.session.end_reason == REASON_MISSED
    assert transport.sent == []


async def test_ended_session_is_dismissed(controller, recorder, config):
    await controller.start_call(PEER_ID)
    await controller.hang_up()
    assert controller.current is not None

    await asyncio.sleep(config.dismiss_delay + 0.05)

    assert controller.current is None
    assert controller.state == CallState.IDLE
    assert recorder.dismissed[-1]["end_reason"] == REASON_HANGUP


async def test_start_call_refused_while_in_call(controller, transport, recorder, signal):
    await controller.dispatch([signal(protocol.CALL)])

    assert not await controller.start_call(99)
    assert recorder.errors == ["Already in a call"]
    assert transport.sent == []
    assert controller.peer_id == PEER_ID


async def test_new_call_after_ended_gets_fresh_connection(controller, peers, media):
    await controller.start_call(PEER_ID)
    await controller.hang_up()
    await controller.start_call(PEER_ID)

    assert len(peers.created) == 2
    assert controller.state == CallState.CALLING
    assert peers.created[0].close_calls == 1
    assert peers.created[1].close_calls == 0


async def test_close_hangs_up_live_call(controller, transport):
    await controller.start_call(PEER_ID)
    await controller.close()

    assert controller.current is None
    assert transport.sent_types()[-1] == protocol.HANGUP
