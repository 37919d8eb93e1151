"""WebSocket signal transport.

Push variant of the signal transport for relays that offer a persistent
channel. Inbound signals are buffered and handed out by `poll()` exactly
once, so the negotiator and dispatcher see the same contract as with HTTP
polling. With an `on_signals` callback set, pushed batches go to the callback
instead and `poll()` stays empty.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, List, Optional

import websockets

from ..errors import SignalSendFailure
from . import protocol
from .transport import SignalTransport


logger = logging.getLogger(__name__)


SignalsCallback = Callable[[List[protocol.Signal]], Awaitable[None]]


class WebSocketSignalTransport(SignalTransport):
	def __init__(self, url: str, token: str, on_signals: Optional[SignalsCallback] = None):
		self.url = url
		self.token = token
		self.on_signals = on_signals

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._inbox: List[protocol.Signal] = []

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._recv_task is not None and not self._recv_task.done()

	async def connect(self) -> None:
		if self.is_connected:
			return

		logger.info("ws transport connect url=%s", self.url)
		self._ws = await websockets.connect(
			self.url,
			additional_headers={"X-Authorization": f"Bearer {self.token}"},
		)
		self._recv_task = asyncio.create_task(self._recv_loop(), name="ws-transport-recv")

	async def send(self, recipient_id: int, signal_type: str, payload: str = "") -> None:
		raw = json.dumps(protocol.make_send_body(recipient_id, signal_type, payload), separators=(",", ":"))
		logger.debug("ws transport send type=%s to=%s", signal_type, recipient_id)
		try:
			if not self.is_connected:
				await self.connect()
			if self._ws is None:
				logger.warning("ws transport %s", SignalSendFailure(signal_type, recipient_id, "not connected"))
				return
			async with self._send_lock:
				await self._ws.send(raw)
		except (OSError, websockets.exceptions.WebSocketException) as e:
			logger.warning("ws transport %s", SignalSendFailure(signal_type, recipient_id, repr(e)))

	async def poll(self) -> List[protocol.Signal]:
		if not self.is_connected:
			try:
				await self.connect()
			except (OSError, websockets.exceptions.WebSocketException) as e:
				logger.debug("ws transport reconnect failed: %r", e)
		batch, self._inbox = self._inbox, []
		return batch

	async def close(self) -> None:
		logger.info("ws transport close")
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except websockets.exceptions.WebSocketException:
				pass
		self._ws = None

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("ws transport recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					logger.warning("ws transport invalid json len=%s", len(raw))
					continue

				if isinstance(msg, dict) and "error" in msg:
					logger.warning("ws transport relay error: %s", msg.get("error"))
					continue

				try:
					batch = protocol.parse_poll_response(msg)
				except protocol.ProtocolError as e:
					logger.warning("ws transport bad message: %s", e.message)
					continue
				if not batch:
					continue

				logger.debug("ws transport received=%s", len(batch))
				if self.on_signals is not None:
					await self.on_signals(batch)
				else:
					self._inbox.extend(batch)
		except websockets.exceptions.ConnectionClosed as e:
			logger.info("ws transport closed code=%s", getattr(e, "code", None))
		finally:
			logger.debug("ws transport recv loop stopped")
			if self._ws is ws:
				self._ws = None
