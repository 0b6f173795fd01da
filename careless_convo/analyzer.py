"""Loudness metric for the voice-activity pipeline.

One LoudnessSample per rendered frame: centre the raw buffer, take the RMS of
the whole buffer, then smooth it exponentially against the previous sample.
"""

from __future__ import annotations

import numpy as np


def to_unit_frame(frame: np.ndarray) -> np.ndarray:
    """Centre *frame* around zero and scale it to [-1, 1] as float32.

    Unsigned 8-bit buffers (analyser-node style) are centred on 128,
    signed 16-bit PCM is scaled by 32768, float input is passed through.
    Multi-channel frames keep the first channel only.
    """
    data = np.asarray(frame)
    if data.ndim == 2:
        data = data[:, 0]
    if data.dtype == np.uint8:
        unit = (data.astype(np.float32) - 128.0) / 128.0
    elif data.dtype == np.int16:
        unit = data.astype(np.float32) / 32768.0
    else:
        unit = data.astype(np.float32)
    return np.clip(unit, -1.0, 1.0)


def frame_rms(frame: np.ndarray) -> float:
    """Root-mean-square over the full buffer (0.0 for an empty frame)."""
    unit = to_unit_frame(frame)
    if unit.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(unit, dtype=np.float64))))


class LevelAnalyzer:
    """Owns the current LoudnessSample.

    ``sample()`` is called once per frame.  It never assumes a fixed frame
    period; the smoothing is per frame, not per unit of time.
    """

    def __init__(self, smoothing: float = 0.15):
        if not 0.0 < smoothing <= 1.0:
            raise ValueError(f"smoothing must be in (0, 1], got {smoothing}")
        self.smoothing = smoothing
        self._level = 0.0

    @property
    def level(self) -> float:
        return self._level

    def reset(self) -> None:
        self._level = 0.0

    def sample(self, frame: np.ndarray) -> float:
        raw = frame_rms(frame)
        self._level = self.smoothing * raw + (1.0 - self.smoothing) * self._level
        return self._level
