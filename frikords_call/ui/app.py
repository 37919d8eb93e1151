from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from PySide6 import QtCore, QtWidgets

from ..call.controller import CallCallbacks, CallController
from ..config import CallConfig
from ..net import protocol
from ..net.inbox import InboxWatcher
from ..net.transport import HttpSignalTransport, SignalTransport
from ..net.ws_transport import WebSocketSignalTransport
from ..rtc.audio import list_audio_inputs
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Runs an asyncio loop in a background thread and schedules coroutines."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("AsyncioThread not started")
        return self._loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="asyncio-thread", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self) -> None:
        if not self._loop:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    call_changed = QtCore.Signal(dict)
    mic_level = QtCore.Signal(int)


@dataclass
class AppConfig:
    server_url: str
    token: str
    transport: str = "http"  # "http" polling or "ws" push
    name: str = ""
    user_id: Optional[int] = None
    call: CallConfig = field(default_factory=CallConfig.from_env)


class FrikordsCallApp(QtCore.QObject):
    def __init__(self, cfg: AppConfig):
        super().__init__()
        self.cfg = cfg

        self.window = MainWindow()
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()

        self.transport: Optional[SignalTransport] = None
        self.controller: Optional[CallController] = None
        self.inbox: Optional[InboxWatcher] = None

        self._wire_ui()
        self._wire_bridge()
        self._init_mic_selector()

        # Defaults
        if cfg.name or cfg.user_id is not None:
            who = cfg.name or f"User {cfg.user_id}"
            suffix = f" (#{cfg.user_id})" if cfg.user_id is not None else ""
            self.window.setWindowTitle(f"Frikords call - {who}{suffix}")
        self.window.server_url_edit.setText(cfg.server_url)
        self.window.token_edit.setText(cfg.token)

    def start(self) -> None:
        self.asyncio_thread.start()
        self.window.show()
        self.bridge.status.emit("Ready")
        logger.info("ui started")

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        try:
            self.asyncio_thread.submit(self._disconnect()).result(timeout=5)
        except Exception:
            logger.exception("ui shutdown cleanup failed")
        self.asyncio_thread.stop()

    def _wire_ui(self) -> None:
        self.window.connect_clicked.connect(self._on_connect_clicked)
        self.window.disconnect_clicked.connect(self._on_disconnect_clicked)
        self.window.call_clicked.connect(self._on_call_clicked)
        self.window.mic_combo.currentIndexChanged.connect(self._on_mic_changed)

        card = self.window.call_card
        card.accept_clicked.connect(lambda: self._submit_intent("accept_incoming"))
        card.reject_clicked.connect(lambda: self._submit_intent("reject_incoming"))
        card.hangup_clicked.connect(lambda: self._submit_intent("hang_up"))
        card.mute_clicked.connect(lambda: self._submit_intent("toggle_mute"))

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.set_status)
        self.bridge.call_changed.connect(self.window.call_card.show_call)
        self.bridge.mic_level.connect(self.window.call_card.mic_level.set_level)

    def _init_mic_selector(self) -> None:
        """Populate the microphone dropdown, preselecting the saved device."""
        combo = self.window.mic_combo
        combo.blockSignals(True)
        try:
            combo.clear()
            for d in list_audio_inputs():
                combo.addItem(d.label, userData=d.device_id)
            saved = self.cfg.call.mic_device_id
            index = combo.findData(saved) if saved else -1
            combo.setCurrentIndex(index if index >= 0 else 0)
        finally:
            combo.blockSignals(False)

    @QtCore.Slot(int)
    def _on_mic_changed(self, _index: int) -> None:
        # Takes effect for the next call; an open call keeps its device.
        device_id = self.window.mic_combo.currentData()
        self.cfg.call.mic_device_id = str(device_id) if device_id else None
        logger.info("ui microphone selected device=%s", self.cfg.call.mic_device_id)

    @QtCore.Slot()
    def _on_connect_clicked(self) -> None:
        url = self.window.server_url_edit.text().strip()
        token = self.window.token_edit.text().strip()
        if not url or not token:
            self.bridge.status.emit("Server and token are required")
            return
        self.bridge.status.emit("Connecting...")
        logger.info("ui connect clicked url=%s transport=%s", url, self.cfg.transport)
        self.asyncio_thread.submit(self._connect(url, token))

    @QtCore.Slot()
    def _on_disconnect_clicked(self) -> None:
        self.bridge.status.emit("Disconnecting...")
        logger.info("ui disconnect clicked")
        self.asyncio_thread.submit(self._disconnect())

    @QtCore.Slot()
    def _on_call_clicked(self) -> None:
        raw = self.window.peer_id_edit.text().strip()
        try:
            peer_id = int(raw)
        except ValueError:
            self.bridge.log.emit(f"Not a user id: {raw!r}")
            return
        name = self.window.peer_name_edit.text().strip() or None
        if self.controller is None:
            self.bridge.status.emit("Connect first")
            return
        self.asyncio_thread.submit(self.controller.start_call(peer_id, name))

    def _submit_intent(self, name: str) -> None:
        if self.controller is None:
            return
        self.asyncio_thread.submit(getattr(self.controller, name)())

    # ----------------------
    # Async side (runs in asyncio thread)
    # ----------------------
    async def _connect(self, url: str, token: str) -> None:
        await self._disconnect()

        push = self.cfg.transport == "ws"
        call_cfg = self.cfg.call
        call_cfg.internal_polling = not push
        if push:
            transport: SignalTransport = WebSocketSignalTransport(url, token, on_signals=self._on_pushed)
        else:
            transport = HttpSignalTransport(url, token)

        self.transport = transport
        self.controller = CallController(
            transport,
            call_cfg,
            CallCallbacks(
                on_log=self._on_async_log,
                on_state=self._on_call_state,
                on_error=self._on_call_error,
                on_dismiss=self._on_call_dismiss,
                on_mic_level=self.bridge.mic_level.emit,
            ),
        )

        if push:
            try:
                await transport.connect()  # type: ignore[attr-defined]
            except OSError as e:
                self.bridge.status.emit(f"Connect failed: {e}")
                return
        else:
            self.inbox = InboxWatcher(transport, self.controller, interval=call_cfg.inbox_interval)
            self.inbox.start()
        self.bridge.status.emit(f"Connected ({self.cfg.transport})")

    async def _disconnect(self) -> None:
        if self.inbox is not None:
            await self.inbox.stop()
            self.inbox = None
        if self.controller is not None:
            await self.controller.close()
            self.controller = None
        if self.transport is not None:
            await self.transport.close()
            self.transport = None
        self.bridge.call_changed.emit({"state": "idle"})
        self.bridge.status.emit("Disconnected")

    async def _on_pushed(self, batch: List[protocol.Signal]) -> None:
        if self.controller is not None:
            await self.controller.dispatch(batch)

    async def _on_async_log(self, message: str) -> None:
        self.bridge.log.emit(message)

    async def _on_call_state(self, snapshot: Dict[str, Any]) -> None:
        self.bridge.call_changed.emit(snapshot)

    async def _on_call_error(self, message: str) -> None:
        self.bridge.log.emit(f"Error: {message}")
        self.bridge.status.emit(message)

    async def _on_call_dismiss(self, _snapshot: Dict[str, Any]) -> None:
        if self.controller is not None:
            self.bridge.call_changed.emit(self.controller.snapshot())


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore
