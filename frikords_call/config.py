"""Runtime configuration for the call client.

Values come from defaults, then environment variables, then CLI flags
(applied by `main.py`).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer


logger = logging.getLogger(__name__)


DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
	{"urls": "stun:stun.l.google.com:19302"},
	{"urls": "stun:stun1.l.google.com:19302"},
	{"urls": "stun:stun.relay.metered.ca:80"},
	{"urls": "turn:global.relay.metered.ca:80", "username": "openrelayproject", "credential": "openrelayproject"},
	{"urls": "turn:global.relay.metered.ca:80?transport=tcp", "username": "openrelayproject", "credential": "openrelayproject"},
	{"urls": "turn:global.relay.metered.ca:443", "username": "openrelayproject", "credential": "openrelayproject"},
	{"urls": "turns:global.relay.metered.ca:443?transport=tcp", "username": "openrelayproject", "credential": "openrelayproject"},
]


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except ValueError:
		logger.warning("config ignoring non-numeric %s=%r", name, v)
		return default


def _env_ice_servers(name: str) -> List[Dict[str, Any]]:
	raw = os.environ.get(name)
	if not raw:
		return [dict(s) for s in DEFAULT_ICE_SERVERS]
	try:
		servers = json.loads(raw)
	except json.JSONDecodeError:
		logger.warning("config ignoring invalid JSON in %s", name)
		return [dict(s) for s in DEFAULT_ICE_SERVERS]
	if not isinstance(servers, list):
		logger.warning("config %s must be a JSON list", name)
		return [dict(s) for s in DEFAULT_ICE_SERVERS]
	return [s for s in servers if isinstance(s, dict) and s.get("urls")]


@dataclass
class CallConfig:
	"""Timing and media settings for one local party.

	All durations are in seconds.
	"""

	poll_interval: float = 0.8
	inbox_interval: float = 3.0
	connect_timeout: float = 45.0
	ring_timeout: float = 45.0
	disconnect_grace: float = 5.0
	dismiss_delay: float = 1.5
	mic_device_id: Optional[str] = None
	ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: [dict(s) for s in DEFAULT_ICE_SERVERS])
	internal_polling: bool = True

	@classmethod
	def from_env(cls) -> "CallConfig":
		return cls(
			poll_interval=_env_float("FRIKORDS_POLL_INTERVAL", cls.poll_interval),
			inbox_interval=_env_float("FRIKORDS_INBOX_INTERVAL", cls.inbox_interval),
			connect_timeout=_env_float("FRIKORDS_CONNECT_TIMEOUT", cls.connect_timeout),
			ring_timeout=_env_float("FRIKORDS_RING_TIMEOUT", cls.ring_timeout),
			disconnect_grace=_env_float("FRIKORDS_DISCONNECT_GRACE", cls.disconnect_grace),
			dismiss_delay=_env_float("FRIKORDS_DISMISS_DELAY", cls.dismiss_delay),
			mic_device_id=os.environ.get("FRIKORDS_MIC_ID") or None,
			ice_servers=_env_ice_servers("FRIKORDS_ICE_SERVERS"),
		)

	def rtc_configuration(self) -> RTCConfiguration:
		servers = []
		for s in self.ice_servers:
			servers.append(
				RTCIceServer(
					urls=s["urls"],
					username=s.get("username"),
					credential=s.get("credential"),
				)
			)
		return RTCConfiguration(iceServers=servers)
