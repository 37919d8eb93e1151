from fractions import Fraction

import av
import numpy as np

from frikords_call.rtc import audio


def _frame(value: int, samples: int = 960) -> av.AudioFrame:
    data = np.full((1, samples), value, dtype=np.int16)
    frame = av.AudioFrame.from_ndarray(data, format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 0
    frame.time_base = Fraction(1, 48000)
    return frame


class _Source:
    def __init__(self, frame):
        self.frame = frame
        self.stopped = False

    async def recv(self):
        return self.frame

    def stop(self):
        self.stopped = True


def test_rms_and_level():
    assert audio.compute_rms_int16(_frame(4000)) == 4000
    assert audio.rms_to_level(4000) == 50
    assert audio.rms_to_level(0) == 0
    assert audio.rms_to_level(100000) == 100


def test_silence_like_keeps_shape():
    silent = audio.silence_like(_frame(1234))
    arr = silent.to_ndarray()
    assert arr.shape == (1, 960)
    assert not arr.any()
    assert silent.sample_rate == 48000


async def test_mic_track_reports_level_and_mutes():
    levels = []
    track = audio.LocalMicTrack(_Source(_frame(8000)), on_level=levels.append, level_interval=0.0)

    frame = await track.recv()
    assert frame.to_ndarray().any()
    assert levels == [100]

    track.enabled = False
    frame = await track.recv()
    assert not frame.to_ndarray().any()
    assert levels == [100, 0]


def test_device_ids():
    assert audio.DEFAULT_INPUT.device_id == "pulse:default"
    assert audio.find_input_device(None) is None
    assert audio.find_input_device("pulse:default") == audio.DEFAULT_INPUT
    assert audio.find_input_device("sounddevice:does-not-exist") is None
