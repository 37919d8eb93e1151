import asyncio

from conftest import PEER_ID, answer_payload
from frikords_call.call.controller import CallController
from frikords_call.call.session import CallState
from frikords_call.net import protocol
from frikords_call.net.inbox import InboxWatcher
from frikords_call.net.poller import SignalPoller


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def _spin():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_spin(), timeout)


async def test_fetch_now_hands_batch_to_handler(transport, signal):
    batches = []

    async def handler(batch):
        batches.append(batch)

    poller = SignalPoller(transport, handler, interval=10)
    transport.inbound = [signal(protocol.CALL), signal(protocol.OFFER)]

    assert await poller.fetch_now() == 2
    assert await poller.fetch_now() == 0
    assert len(batches) == 1
    assert [s.type for s in batches[0]] == [protocol.CALL, protocol.OFFER]


async def test_loop_polls_until_stopped(transport, signal):
    seen = []

    async def handler(batch):
        seen.extend(batch)

    poller = SignalPoller(transport, handler, interval=0.01)
    poller.start()
    assert poller.running
    transport.inbound = [signal(protocol.CALL)]
    await _wait_for(lambda: seen)

    poller.stop()
    assert not poller.running
    calls = transport.poll_calls
    await asyncio.sleep(0.05)
    assert transport.poll_calls == calls


async def test_loop_survives_handler_errors(transport, signal):
    calls = []

    async def handler(batch):
        calls.append(batch)
        if len(calls) == 1:
            raise RuntimeError("boom")

    poller = SignalPoller(transport, handler, interval=0.01)
    transport.inbound = [signal(protocol.CALL)]
    poller.start()
    await _wait_for(lambda: calls)
    transport.inbound = [signal(protocol.HANGUP)]
    await _wait_for(lambda: len(calls) == 2)
    poller.stop()


async def test_stop_from_inside_handler(transport, signal):
    poller = None
    handled = []

    async def handler(batch):
        handled.append(batch)
        poller.stop()

    poller = SignalPoller(transport, handler, interval=0.01)
    transport.inbound = [signal(protocol.CALL)]
    poller.start()
    await _wait_for(lambda: handled)
    await asyncio.sleep(0.05)
    assert not poller.running
    assert transport.poll_calls == 1


async def test_inbox_watcher_opens_incoming_call(controller, transport, signal):
    watcher = InboxWatcher(transport, controller, interval=0.01)
    transport.inbound = [signal(protocol.CALL)]

    assert await watcher.check_once() == 1
    assert controller.state == CallState.INCOMING
    assert controller.peer_id == PEER_ID


async def test_inbox_watcher_quiet_during_call(controller, transport, signal):
    watcher = InboxWatcher(transport, controller, interval=0.01)
    await controller.start_call(PEER_ID)
    transport.inbound = [signal(protocol.HANGUP)]

    assert await watcher.check_once() == 0
    assert transport.poll_calls == 0
    assert controller.state == CallState.CALLING


async def test_inbox_watcher_start_stop(controller, transport):
    watcher = InboxWatcher(transport, controller, interval=0.01)
    watcher.start()
    assert watcher.running
    await _wait_for(lambda: transport.poll_calls > 0)
    await watcher.stop()
    assert not watcher.running


async def test_session_poller_feeds_live_call(transport, config, recorder, peers, media, signal):
    config.internal_polling = True
    controller = CallController(transport, config, recorder.callbacks(), peer_factory=peers, media_factory=media)
    await controller.start_call(PEER_ID)
    poller = controller.current.poller
    assert poller.running

    transport.inbound = [signal(protocol.ANSWER, answer_payload())]
    await _wait_for(lambda: peers.last.remoteDescription is not None)

    await controller.hang_up()
    assert not poller.running
