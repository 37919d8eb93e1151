"""Call signal protocol helpers.

Signals travel through the `call_signal` action of the chat backend:
send is `{to, type, payload}`, poll returns `{signals: [{id, from_user_id,
type, payload}, ...]}`. Payloads are opaque strings; for descriptions and ICE
candidates they carry the browser's JSON shapes so web and desktop clients
interoperate.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, TypedDict


logger = logging.getLogger(__name__)


# Signal type constants
CALL = "call"
OFFER = "offer"
ANSWER = "answer"
ICE = "ice"
HANGUP = "hangup"
REJECT = "reject"
BUSY = "busy"

SIGNAL_TYPES = frozenset({CALL, OFFER, ANSWER, ICE, HANGUP, REJECT, BUSY})
CONTROL_TYPES = frozenset({CALL, HANGUP, REJECT, BUSY})
TERMINAL_TYPES = frozenset({HANGUP, REJECT, BUSY})

CANDIDATE_PREFIX = "candidate:"


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str


@dataclass(frozen=True)
class Signal:
	id: int
	from_user_id: int
	type: str
	payload: str = ""
	to_user_id: Optional[int] = None

	@property
	def is_control(self) -> bool:
		return self.type in CONTROL_TYPES


def parse_signal(obj: Any) -> Signal:
	if not isinstance(obj, dict):
		raise ProtocolError(f"signal must be an object, got {type(obj).__name__}")
	try:
		sig_id = int(obj["id"])
		from_user = int(obj["from_user_id"])
	except (KeyError, TypeError, ValueError):
		raise ProtocolError("signal needs integer id and from_user_id")
	stype = obj.get("type")
	if stype not in SIGNAL_TYPES:
		raise ProtocolError(f"unknown signal type {stype!r}")
	payload = obj.get("payload")
	to_user = obj.get("to_user_id")
	return Signal(
		id=sig_id,
		from_user_id=from_user,
		type=str(stype),
		payload="" if payload is None else str(payload),
		to_user_id=int(to_user) if to_user is not None else None,
	)


def parse_poll_response(body: Any) -> List[Signal]:
	"""Parse a poll body, skipping entries that do not validate."""
	if not isinstance(body, dict):
		raise ProtocolError("poll response must be an object")
	raw = body.get("signals") or []
	if not isinstance(raw, list):
		raise ProtocolError("poll response 'signals' must be a list")
	signals: List[Signal] = []
	for item in raw:
		try:
			signals.append(parse_signal(item))
		except ProtocolError as e:
			logger.warning("protocol dropping malformed signal: %s", e.message)
	return signals


def signal_to_json(sig: Signal) -> Dict[str, Any]:
	return {"id": sig.id, "from_user_id": sig.from_user_id, "type": sig.type, "payload": sig.payload}


def make_send_body(to_user: int, stype: str, payload: str = "") -> Dict[str, Any]:
	if stype not in SIGNAL_TYPES:
		raise ProtocolError(f"unknown signal type {stype!r}")
	return {"to": to_user, "type": stype, "payload": payload}


def encode_description(desc_type: str, sdp: str) -> str:
	return json.dumps({"type": desc_type, "sdp": sdp}, separators=(",", ":"))


def decode_description(payload: str) -> Tuple[str, str]:
	try:
		obj = json.loads(payload)
	except json.JSONDecodeError:
		raise ProtocolError("description payload is not JSON")
	if not isinstance(obj, dict):
		raise ProtocolError("description payload must be an object")
	desc_type = obj.get("type")
	sdp = obj.get("sdp")
	if desc_type not in ("offer", "answer") or not isinstance(sdp, str) or not sdp:
		raise ProtocolError("description payload needs type offer/answer and sdp")
	return desc_type, sdp


def encode_candidate(candidate_sdp: str, sdp_mid: Optional[str], sdp_mline_index: Optional[int]) -> str:
	if not candidate_sdp.startswith(CANDIDATE_PREFIX):
		candidate_sdp = CANDIDATE_PREFIX + candidate_sdp
	cand: IceCandidateDict = {
		"candidate": candidate_sdp,
		"sdpMid": sdp_mid,
		"sdpMLineIndex": sdp_mline_index,
	}
	return json.dumps(cand, separators=(",", ":"))


def decode_candidate(payload: str) -> Optional[IceCandidateDict]:
	"""Return the candidate dict with the `candidate:` prefix stripped.

	None means end-of-candidates.
	"""
	try:
		obj = json.loads(payload)
	except json.JSONDecodeError:
		raise ProtocolError("candidate payload is not JSON")
	if not isinstance(obj, dict):
		raise ProtocolError("candidate payload must be an object")
	cand = obj.get("candidate")
	if cand is None or cand == "":
		return None
	if not isinstance(cand, str):
		raise ProtocolError("candidate must be a string")
	if cand.startswith(CANDIDATE_PREFIX):
		cand = cand[len(CANDIDATE_PREFIX):]
	mline = obj.get("sdpMLineIndex")
	return {
		"candidate": cand,
		"sdpMid": obj.get("sdpMid"),
		"sdpMLineIndex": int(mline) if mline is not None else None,
	}
