"""Signal transport.

Best-effort delivery of call signals between two users without a persistent
connection. Sends are never retried: the negotiator compensates with ICE
restarts and the connection timeout. Polling is fetch-and-clear on the
server side, so every signal comes back from `poll()` at most once.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import SignalSendFailure
from . import protocol


logger = logging.getLogger(__name__)


SIGNAL_ACTION = "call_signal"


def auth_headers(token: str) -> Dict[str, str]:
	return {"Content-Type": "application/json", "X-Authorization": f"Bearer {token}"}


class SignalTransport(ABC):
	"""Exchanges signals with other users, addressed by recipient id."""

	@abstractmethod
	async def send(self, recipient_id: int, signal_type: str, payload: str = "") -> None:
		"""Fire-and-forget. Failures are logged and swallowed."""

	@abstractmethod
	async def poll(self) -> List[protocol.Signal]:
		"""Return signals addressed to us that no earlier poll returned."""

	async def close(self) -> None:
		return None


class HttpSignalTransport(SignalTransport):
	def __init__(
		self,
		base_url: str,
		token: str,
		*,
		session: Optional[aiohttp.ClientSession] = None,
		request_timeout: float = 10.0,
	):
		self.base_url = base_url
		self.token = token
		self._session = session
		self._owns_session = session is None
		self._timeout = aiohttp.ClientTimeout(total=request_timeout)

	def _get_session(self) -> aiohttp.ClientSession:
		if self._session is None or self._session.closed:
			self._session = aiohttp.ClientSession(timeout=self._timeout)
			self._owns_session = True
		return self._session

	async def send(self, recipient_id: int, signal_type: str, payload: str = "") -> None:
		body = protocol.make_send_body(recipient_id, signal_type, payload)
		if signal_type in (protocol.OFFER, protocol.ANSWER):
			logger.info("transport send type=%s to=%s payload_len=%s", signal_type, recipient_id, len(payload))
		else:
			logger.debug("transport send type=%s to=%s", signal_type, recipient_id)
		try:
			async with self._get_session().post(
				self.base_url,
				params={"action": SIGNAL_ACTION},
				json=body,
				headers=auth_headers(self.token),
			) as resp:
				if resp.status >= 400:
					raise SignalSendFailure(signal_type, recipient_id, f"http {resp.status}")
		except SignalSendFailure as e:
			logger.warning("transport %s", e)
		except (aiohttp.ClientError, asyncio.TimeoutError) as e:
			logger.warning("transport %s", SignalSendFailure(signal_type, recipient_id, repr(e)))

	async def poll(self) -> List[protocol.Signal]:
		try:
			async with self._get_session().get(
				self.base_url,
				params={"action": SIGNAL_ACTION},
				headers=auth_headers(self.token),
			) as resp:
				if resp.status >= 400:
					logger.warning("transport poll failed status=%s", resp.status)
					return []
				data: Any = await resp.json(content_type=None)
		except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
			logger.debug("transport poll error: %r", e)
			return []

		try:
			signals = protocol.parse_poll_response(data)
		except protocol.ProtocolError as e:
			logger.warning("transport poll bad response: %s", e.message)
			return []
		if signals:
			logger.debug("transport poll received=%s", len(signals))
		return signals

	async def close(self) -> None:
		if self._session is not None and self._owns_session:
			await self._session.close()
		self._session = None
