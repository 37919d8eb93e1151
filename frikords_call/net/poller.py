"""Fixed-cadence signal polling."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from . import protocol
from .transport import SignalTransport


logger = logging.getLogger(__name__)


BatchHandler = Callable[[List[protocol.Signal]], Awaitable[None]]


class SignalPoller:
	"""Polls a transport on a fixed interval and feeds batches to one handler.

	The periodic loop and `fetch_now()` share a lock, so a batch is always
	fully handled before the next poll goes out.
	"""

	def __init__(self, transport: SignalTransport, handler: BatchHandler, interval: float = 0.8, *, name: str = "signal-poller"):
		self._transport = transport
		self._handler = handler
		self.interval = interval
		self._name = name
		self._task: Optional[asyncio.Task[None]] = None
		self._lock = asyncio.Lock()
		self._stopping = False

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done() and not self._stopping

	def start(self) -> None:
		if self.running:
			return
		self._stopping = False
		self._task = asyncio.create_task(self._loop(), name=self._name)
		logger.debug("poller started name=%s interval=%s", self._name, self.interval)

	def stop(self) -> None:
		"""Stop the loop. Safe to call from inside the handler."""
		self._stopping = True
		task = self._task
		self._task = None
		if task is None or task.done():
			return
		if task is asyncio.current_task():
			# The loop checks `_stopping` once the handler returns.
			return
		task.cancel()
		logger.debug("poller stopped name=%s", self._name)

	async def fetch_now(self) -> int:
		"""Poll once immediately. Returns the number of signals handled."""
		async with self._lock:
			batch = await self._transport.poll()
			if batch:
				await self._handler(batch)
			return len(batch)

	async def _loop(self) -> None:
		try:
			while not self._stopping:
				try:
					await self.fetch_now()
				except asyncio.CancelledError:
					raise
				except Exception:
					logger.exception("poller batch failed name=%s", self._name)
				if self._stopping:
					break
				await asyncio.sleep(self.interval)
		except asyncio.CancelledError:
			pass
