"""Inbox watcher.

Watches for inbound `call` signals while the user has no call. Once a
session exists the session's own poller takes over and the watcher goes
quiet until the session is gone.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from .transport import SignalTransport

if TYPE_CHECKING:
	from ..call.controller import CallController


logger = logging.getLogger(__name__)


class InboxWatcher:
	def __init__(self, transport: SignalTransport, controller: "CallController", interval: float = 3.0):
		self._transport = transport
		self._controller = controller
		self.interval = interval
		self._task: Optional[asyncio.Task[None]] = None

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	def start(self) -> None:
		if self.running:
			return
		self._task = asyncio.create_task(self._loop(), name="inbox-watcher")
		logger.info("inbox watcher started interval=%s", self.interval)

	async def stop(self) -> None:
		task = self._task
		self._task = None
		if task is None:
			return
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass
		logger.info("inbox watcher stopped")

	async def check_once(self) -> int:
		if self._controller.has_live_session:
			return 0
		batch = await self._transport.poll()
		if batch:
			await self._controller.dispatch(batch)
		return len(batch)

	async def _loop(self) -> None:
		while True:
			try:
				await self.check_once()
			except asyncio.CancelledError:
				raise
			except Exception:
				logger.exception("inbox watcher check failed")
			await asyncio.sleep(self.interval)
