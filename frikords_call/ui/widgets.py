from __future__ import annotations

from typing import Any, Dict

from PySide6 import QtCore, QtWidgets

from ..call.session import format_duration


STATUS_TEXT = {
	"idle": "No call",
	"calling": "Calling...",
	"incoming": "Incoming call",
	"connecting": "Connecting...",
	"ended": "Call ended",
}


def describe_call(snapshot: Dict[str, Any]) -> str:
	state = str(snapshot.get("state", "idle"))
	if state == "active":
		return f"● {format_duration(int(snapshot.get('duration_seconds') or 0))}"
	text = STATUS_TEXT.get(state, state)
	reason = snapshot.get("end_reason")
	if state == "ended" and reason:
		text = f"{text}: {reason}"
	return text


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class MicLevelBar(QtWidgets.QProgressBar):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setRange(0, 100)
		self.setTextVisible(False)
		self.setMaximumHeight(8)
		self._muted = False

	def set_muted(self, muted: bool) -> None:
		self._muted = muted
		if muted:
			self.setValue(0)

	@QtCore.Slot(int)
	def set_level(self, level: int) -> None:
		self.setValue(0 if self._muted else max(0, min(100, int(level))))


class CallCard(QtWidgets.QFrame):
	"""Peer, status line, mic level and the call buttons."""

	accept_clicked = QtCore.Signal()
	reject_clicked = QtCore.Signal()
	hangup_clicked = QtCore.Signal()
	mute_clicked = QtCore.Signal()

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._peer = QtWidgets.QLabel("-")
		font = self._peer.font()
		font.setBold(True)
		font.setPointSize(font.pointSize() + 2)
		self._peer.setFont(font)
		self._status = QtWidgets.QLabel(STATUS_TEXT["idle"])
		self.mic_level = MicLevelBar()

		self.accept_btn = QtWidgets.QPushButton("Accept")
		self.reject_btn = QtWidgets.QPushButton("Decline")
		self.hangup_btn = QtWidgets.QPushButton("Hang up")
		self.mute_btn = QtWidgets.QPushButton("Mute")

		btn_row = QtWidgets.QHBoxLayout()
		btn_row.addWidget(self.reject_btn)
		btn_row.addWidget(self.accept_btn)
		btn_row.addWidget(self.mute_btn)
		btn_row.addWidget(self.hangup_btn)

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(10, 10, 10, 10)
		layout.setSpacing(6)
		layout.addWidget(self._peer, 0, QtCore.Qt.AlignmentFlag.AlignHCenter)
		layout.addWidget(self._status, 0, QtCore.Qt.AlignmentFlag.AlignHCenter)
		layout.addWidget(self.mic_level)
		layout.addLayout(btn_row)

		self.accept_btn.clicked.connect(self.accept_clicked.emit)
		self.reject_btn.clicked.connect(self.reject_clicked.emit)
		self.hangup_btn.clicked.connect(self.hangup_clicked.emit)
		self.mute_btn.clicked.connect(self.mute_clicked.emit)

		self.show_call({"state": "idle"})

	@QtCore.Slot(dict)
	def show_call(self, snapshot: Dict[str, Any]) -> None:
		state = str(snapshot.get("state", "idle"))
		muted = bool(snapshot.get("muted"))
		self._peer.setText(str(snapshot.get("peer_name") or "-"))
		self._status.setText(describe_call(snapshot))

		self.accept_btn.setVisible(state == "incoming")
		self.reject_btn.setVisible(state == "incoming")
		self.hangup_btn.setVisible(state in ("calling", "connecting", "active"))
		self.mute_btn.setVisible(state == "active")
		self.mute_btn.setText("Unmute" if muted else "Mute")
		self.mic_level.setVisible(state == "active")
		self.mic_level.set_muted(muted)
