"""Call error taxonomy.

None of these escape to the UI: the negotiator and the state machine catch
them, log them and turn them into an ended reason or an error message.
"""

from __future__ import annotations

from typing import Optional


class CallError(Exception):
	"""Base class for call signaling and media errors."""


class MediaAccessError(CallError):
	"""Microphone permission denied or no capture device available."""

	def __init__(self, message: str = "Microphone unavailable", device: Optional[str] = None):
		super().__init__(message)
		self.device = device


class SignalSendFailure(CallError):
	"""A signal could not be delivered to the transport endpoint."""

	def __init__(self, signal_type: str, recipient_id: int, cause: str = ""):
		super().__init__(f"send {signal_type} to {recipient_id} failed: {cause}")
		self.signal_type = signal_type
		self.recipient_id = recipient_id


class ConnectionTimeout(CallError):
	"""No connected state was reached within the allotted window."""


class StaleOfferIgnored(CallError):
	"""A description arrived while the signaling state could not accept it."""

	def __init__(self, description_type: str, signaling_state: str):
		super().__init__(f"{description_type} ignored in signaling state {signaling_state}")
		self.description_type = description_type
		self.signaling_state = signaling_state


class ConnectivityFailed(CallError):
	"""The media transport reported a failed connectivity state."""


class ConnectivityDegraded(CallError):
	"""The media transport reported disconnected and did not recover."""


class InvalidTransition(CallError):
	def __init__(self, current: str, target: str):
		super().__init__(f"invalid call transition {current} -> {target}")
		self.current = current
		self.target = target
