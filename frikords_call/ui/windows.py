from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import CallCard, LogPanel


class MainWindow(QtWidgets.QMainWindow):
	connect_clicked = QtCore.Signal()
	disconnect_clicked = QtCore.Signal()
	call_clicked = QtCore.Signal()

	def __init__(self):
		super().__init__()
		self.setWindowTitle("Frikords call")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.server_url_edit = QtWidgets.QLineEdit()
		self.server_url_edit.setPlaceholderText("https://host/api")

		self.token_edit = QtWidgets.QLineEdit()
		self.token_edit.setPlaceholderText("Session token")
		self.token_edit.setEchoMode(QtWidgets.QLineEdit.EchoMode.Password)

		self.mic_combo = QtWidgets.QComboBox()

		self.peer_id_edit = QtWidgets.QLineEdit()
		self.peer_id_edit.setPlaceholderText("Friend user id")
		self.peer_name_edit = QtWidgets.QLineEdit()
		self.peer_name_edit.setPlaceholderText("Friend name (optional)")

		self.connect_btn = QtWidgets.QPushButton("Connect")
		self.disconnect_btn = QtWidgets.QPushButton("Disconnect")
		self.call_btn = QtWidgets.QPushButton("Call")

		self.call_card = CallCard()
		self.log_panel = LogPanel()

		form = QtWidgets.QFormLayout()
		form.addRow("Server", self.server_url_edit)
		form.addRow("Token", self.token_edit)
		form.addRow("Mic", self.mic_combo)

		btn_row = QtWidgets.QHBoxLayout()
		btn_row.addWidget(self.connect_btn)
		btn_row.addWidget(self.disconnect_btn)
		btn_row.addStretch(1)

		dial = QtWidgets.QFormLayout()
		dial.addRow("Friend", self.peer_id_edit)
		dial.addRow("Name", self.peer_name_edit)

		left = QtWidgets.QVBoxLayout()
		left.addLayout(form)
		left.addLayout(btn_row)
		left.addLayout(dial)
		left.addWidget(self.call_btn)
		left.addWidget(self.call_card)
		left.addStretch(1)

		right = QtWidgets.QVBoxLayout()
		right.addWidget(QtWidgets.QLabel("Log"))
		right.addWidget(self.log_panel, 1)

		main = QtWidgets.QHBoxLayout(central)
		main.addLayout(left, 1)
		main.addLayout(right, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)
		self.set_status("Idle")

		self.connect_btn.clicked.connect(self.connect_clicked.emit)
		self.disconnect_btn.clicked.connect(self.disconnect_clicked.emit)
		self.call_btn.clicked.connect(self.call_clicked.emit)

	@QtCore.Slot(str)
	def set_status(self, text: str) -> None:
		self.status.showMessage(text)
