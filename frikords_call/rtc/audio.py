"""Audio helpers for aiortc.

- Open the local microphone (honoring a saved device choice) as an aiortc
  track with a mute switch and a level meter for UI feedback.
- Play the remote track (sounddevice if possible, else an ffmpeg sink, else
  discard).
"""

from __future__ import annotations

import asyncio
import logging
import platform
import time
from dataclasses import dataclass
from fractions import Fraction
from queue import Empty, Queue
from typing import Any, Callable, Optional, Tuple, cast

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from ..errors import MediaAccessError

try:
	import sounddevice as sd  # type: ignore
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


# int16 RMS that maps to a full meter.
LEVEL_FULL_SCALE_RMS = 8000.0

LevelCallback = Callable[[int], None]


@dataclass(frozen=True)
class AudioDevice:
	"""A selectable audio device.

	`backend` is "sounddevice" or an ffmpeg/aiortc format string (e.g.
	"pulse", "alsa"). `device` is the index or name that backend expects.
	"""

	backend: str
	device: Any
	label: str

	@property
	def device_id(self) -> str:
		return f"{self.backend}:{self.device}"


DEFAULT_INPUT = AudioDevice(backend="pulse", device="default", label="System default")


def list_audio_inputs() -> list[AudioDevice]:
	"""List microphone capture devices (best-effort)."""
	devices = [DEFAULT_INPUT]
	if sd is None:
		return devices
	try:
		infos = sd.query_devices()
	except Exception as e:
		logger.warning("audio enum inputs failed: %s", e)
		return devices
	for index, info in enumerate(infos):
		if int(info.get("max_input_channels", 0) or 0) <= 0:
			continue
		devices.append(AudioDevice(backend="sounddevice", device=index, label=str(info.get("name", index))))
	logger.debug("audio enum inputs count=%s", len(devices))
	return devices


def find_input_device(device_id: Optional[str]) -> Optional[AudioDevice]:
	"""Resolve a saved device id; None if unset or no longer present."""
	if not device_id:
		return None
	for d in list_audio_inputs():
		if d.device_id == device_id:
			return d
	logger.info("audio saved input %s not found, using default", device_id)
	return None


def compute_rms_int16(frame: av.AudioFrame) -> Optional[int]:
	"""Return int16 RMS estimate, or None if unsupported."""
	try:
		arr = frame.to_ndarray()
	except Exception:
		return None
	if arr.size == 0:
		return 0
	arr = arr.astype(np.float32, copy=False)
	rms = float(np.sqrt(np.mean(arr * arr)))
	# Float formats are on a [-1, 1] scale.
	if rms <= 2.0 and "flt" in str(getattr(getattr(frame, "format", None), "name", "")):
		rms *= 32768.0
	return int(rms)


def rms_to_level(rms: int) -> int:
	return max(0, min(100, int(rms * 100.0 / LEVEL_FULL_SCALE_RMS)))


def silence_like(frame: av.AudioFrame) -> av.AudioFrame:
	arr = frame.to_ndarray()
	out = av.AudioFrame.from_ndarray(np.zeros_like(arr), format=frame.format.name, layout=frame.layout.name)
	out.sample_rate = frame.sample_rate
	out.pts = frame.pts
	if frame.time_base is not None:
		out.time_base = frame.time_base
	return out


class LocalMicTrack(MediaStreamTrack):
	"""Pass-through microphone track with a mute switch and a level meter.

	Disabling the track replaces frames with silence so the peer keeps a
	steady stream and nothing has to be renegotiated.
	"""

	kind = "audio"

	def __init__(
		self,
		source: MediaStreamTrack,
		*,
		on_level: Optional[LevelCallback] = None,
		level_interval: float = 0.1,
	):
		super().__init__()
		self._source = source
		self.enabled = True
		self.on_level = on_level
		self._level_interval = level_interval
		self._last_level_ts = 0.0

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if not isinstance(frame, av.AudioFrame):
			return frame

		if not self.enabled:
			self._report_level(0)
			return silence_like(frame)

		if self.on_level is not None:
			rms = compute_rms_int16(cast(av.AudioFrame, frame))
			if rms is not None:
				self._report_level(rms_to_level(rms))
		return frame

	def _report_level(self, level: int) -> None:
		if self.on_level is None:
			return
		now = time.monotonic()
		if now - self._last_level_ts < self._level_interval:
			return
		self._last_level_ts = now
		try:
			self.on_level(level)
		except Exception:
			# Never break the media pipeline because of UI feedback.
			logger.debug("audio level callback failed", exc_info=True)

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


class SoundDeviceAudioTrack(MediaStreamTrack):
	kind = "audio"

	def __init__(
		self,
		*,
		device: Any = None,
		samplerate: int = 48000,
		channels: int = 1,
		blocksize: int = 960,
	):
		super().__init__()
		if sd is None:
			raise RuntimeError("sounddevice not available")

		self._samplerate = int(samplerate)
		self._channels = int(channels)
		self._queue: Queue[bytes] = Queue(maxsize=50)
		self._timestamp = 0
		self._time_base = Fraction(1, self._samplerate)

		def _callback(indata, frames, time_info, status) -> None:  # noqa: ANN001
			try:
				self._queue.put_nowait(bytes(indata))
			except Exception:
				# Drop if consumer is too slow.
				pass

		# Raw stream gives us bytes directly (int16 PCM).
		self._stream = sd.RawInputStream(
			samplerate=self._samplerate,
			channels=self._channels,
			dtype="int16",
			blocksize=int(blocksize),
			device=device,
			callback=_callback,
		)
		self._stream.start()
		logger.info("local audio using sounddevice os=%s device=%s rate=%s", platform.system(), device, self._samplerate)

	async def recv(self):  # type: ignore[override]
		if self.readyState != "live":
			raise asyncio.CancelledError

		loop = asyncio.get_running_loop()
		data = await loop.run_in_executor(None, self._get_block)
		if data is None:
			raise asyncio.CancelledError

		samples = len(data) // (self._channels * 2)
		arr = np.frombuffer(data, dtype=np.int16).reshape((1, samples * self._channels))
		layout = "mono" if self._channels == 1 else "stereo"
		frame = av.AudioFrame.from_ndarray(arr, format="s16", layout=layout)
		frame.sample_rate = self._samplerate
		frame.pts = self._timestamp
		frame.time_base = self._time_base
		self._timestamp += samples
		return frame

	def _get_block(self) -> Optional[bytes]:
		while self.readyState == "live":
			try:
				return self._queue.get(timeout=0.5)
			except Empty:
				continue
		return None

	def stop(self) -> None:  # type: ignore[override]
		try:
			if self._stream is not None:
				self._stream.stop()
				self._stream.close()
		except Exception as e:
			logger.debug("sounddevice input close failed: %s", e)
		finally:
			self._stream = None
			super().stop()


def _try_create_player(preferred: Optional[AudioDevice] = None) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	"""Try to create a microphone capture player.

	A preferred device is tried first, then the common Linux defaults.
	"""
	candidates = []
	if preferred is not None and preferred.backend != "sounddevice":
		candidates.append((preferred.device, preferred.backend))
	candidates += [("default", "pulse"), ("default", "alsa")]

	for device, backend in candidates:
		try:
			return MediaPlayer(device, format=backend), backend
		except Exception as e:
			logger.debug("audio capture %s:%s unavailable: %s", backend, device, e)
	return None, None


@dataclass
class LocalAudio:
	"""Owns the capture source so its track stays alive until `close()`."""

	track: Optional[LocalMicTrack]
	player: Optional[MediaPlayer] = None
	backend: Optional[str] = None

	@classmethod
	def open(cls, preferred_input: Optional[AudioDevice] = None, *, on_level: Optional[LevelCallback] = None) -> "LocalAudio":
		if preferred_input is not None and preferred_input.backend == "sounddevice" and sd is not None:
			try:
				source = SoundDeviceAudioTrack(device=preferred_input.device)
				return cls(track=LocalMicTrack(source, on_level=on_level), backend="sounddevice")
			except Exception as e:
				logger.warning("sounddevice capture init failed: %s", e)

		player, backend = _try_create_player(preferred_input)
		if player is None or player.audio is None:
			raise MediaAccessError(
				"Microphone unavailable",
				device=preferred_input.device_id if preferred_input else None,
			)
		logger.info("local audio backend=%s", backend)
		return cls(track=LocalMicTrack(player.audio, on_level=on_level), player=player, backend=backend)

	def close(self) -> None:
		"""Stop capture. Safe to call more than once."""
		track, self.track = self.track, None
		player, self.player = self.player, None
		if track is not None:
			track.stop()
		if player is not None:
			# MediaPlayer stops its worker thread once its tracks are stopped.
			audio = player.audio
			if audio is not None and audio.readyState == "live":
				audio.stop()


async def open_microphone(device_id: Optional[str] = None, *, on_level: Optional[LevelCallback] = None) -> LocalAudio:
	"""Acquire exclusive microphone capture.

	Raises MediaAccessError when no backend can open a capture device.
	"""
	loop = asyncio.get_running_loop()
	preferred = await loop.run_in_executor(None, find_input_device, device_id)
	return await loop.run_in_executor(None, lambda: LocalAudio.open(preferred, on_level=on_level))


@dataclass
class RemoteAudioSink:
	"""Consumes the remote audio track.

	If playback to a device isn't supported, falls back to discarding.
	"""

	_recorder: Optional[Any] = None
	_task: Optional[asyncio.Task[None]] = None
	_started: bool = False

	async def start(self, track: MediaStreamTrack) -> None:
		if self._started:
			return

		if sd is not None:
			try:
				stream = sd.RawOutputStream(samplerate=48000, channels=1, dtype="int16", blocksize=960)
				stream.start()
			except Exception as e:
				logger.info("sounddevice output unavailable: %s", e)
			else:
				logger.info("remote audio sink=sounddevice:default")
				self._task = asyncio.create_task(self._pump(track, stream), name="remote-audio-pump")
				self._started = True
				return

		sink = "blackhole"
		recorder: Any = None
		for backend in ("pulse", "alsa"):
			try:
				recorder = MediaRecorder("default", format=backend)
				sink = f"{backend}:default"
				break
			except Exception:
				continue
		if recorder is None:
			recorder = MediaBlackhole()

		logger.info("remote audio sink=%s", sink)
		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		self._started = True

	@staticmethod
	async def _pump(track: MediaStreamTrack, stream: Any) -> None:
		try:
			while True:
				frame = await track.recv()
				if not isinstance(frame, av.AudioFrame):
					continue
				arr = frame.to_ndarray()
				# Shape can be (channels, samples) for planar.
				if arr.ndim == 2 and arr.shape[0] in (1, 2) and arr.shape[0] < arr.shape[1]:
					arr = arr.T
				if arr.ndim == 2 and arr.shape[1] > 1:
					arr = arr.mean(axis=1, keepdims=True)
				if arr.dtype != np.int16:
					arr = np.clip(arr, -32768, 32767).astype(np.int16, copy=False)
				stream.write(arr.tobytes(order="C"))
		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.info("remote audio pump stopped: %s", e)
		finally:
			try:
				stream.stop()
				stream.close()
			except Exception:
				pass

	async def stop(self) -> None:
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		if self._recorder is not None:
			try:
				await self._recorder.stop()
			finally:
				self._recorder = None
		self._started = False
