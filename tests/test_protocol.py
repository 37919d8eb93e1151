import json

import pytest

from frikords_call.net import protocol


def test_parse_poll_response_keeps_order_and_skips_malformed():
    body = {
        "signals": [
            {"id": 3, "from_user_id": 7, "type": "call", "payload": ""},
            {"id": "x", "from_user_id": 7, "type": "offer"},
            {"id": 4, "from_user_id": 7, "type": "dance"},
            {"id": 5, "from_user_id": "7", "type": "ice", "payload": None},
        ]
    }
    signals = protocol.parse_poll_response(body)
    assert [s.id for s in signals] == [3, 5]
    assert signals[1].from_user_id == 7
    assert signals[1].payload == ""


def test_parse_poll_response_empty_and_invalid():
    assert protocol.parse_poll_response({"signals": []}) == []
    assert protocol.parse_poll_response({}) == []
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_poll_response([])
    with pytest.raises(protocol.ProtocolError):
        protocol.parse_poll_response({"signals": "nope"})


def test_control_signals():
    sig = protocol.Signal(id=1, from_user_id=2, type=protocol.HANGUP)
    assert sig.is_control
    assert not protocol.Signal(id=2, from_user_id=2, type=protocol.ICE).is_control


def test_make_send_body_rejects_unknown_type():
    assert protocol.make_send_body(9, "busy") == {"to": 9, "type": "busy", "payload": ""}
    with pytest.raises(protocol.ProtocolError):
        protocol.make_send_body(9, "wave")


def test_description_payload_is_browser_shape():
    payload = protocol.encode_description("offer", "v=0\r\n")
    assert json.loads(payload) == {"type": "offer", "sdp": "v=0\r\n"}
    assert protocol.decode_description(payload) == ("offer", "v=0\r\n")


@pytest.mark.parametrize(
    "payload",
    ["not json", "[]", '{"type": "pranswer", "sdp": "v=0"}', '{"type": "offer"}'],
)
def test_decode_description_rejects(payload):
    with pytest.raises(protocol.ProtocolError):
        protocol.decode_description(payload)


def test_candidate_prefix_added_and_stripped():
    payload = protocol.encode_candidate("1 1 udp 100 192.0.2.1 5000 typ host", "0", 0)
    assert json.loads(payload)["candidate"].startswith("candidate:1 ")

    decoded = protocol.decode_candidate(payload)
    assert decoded == {"candidate": "1 1 udp 100 192.0.2.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


def test_empty_candidate_is_end_of_candidates():
    assert protocol.decode_candidate('{"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0}') is None
    with pytest.raises(protocol.ProtocolError):
        protocol.decode_candidate('{"candidate": 5}')
