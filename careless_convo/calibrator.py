"""Ambient noise floor estimation during the warm-up window."""

from __future__ import annotations

import logging

log = logging.getLogger("careless_convo.calibrator")


class AmbientCalibrator:
    """Collect LoudnessSamples for a fixed window, then report their mean.

    The window is measured against the timestamps handed to ``observe()``,
    so the caller's clock is the only clock.  A sample arriving at or after
    the deadline is not collected; ``observe()`` returns False and the caller
    is expected to ``finish()`` and route that frame to the activity machine.
    """

    def __init__(self, window_sec: float = 1.5, default_floor: float = 0.005):
        self.window_sec = window_sec
        self.default_floor = default_floor
        self._samples: list[float] = []
        self._deadline: float | None = None

    @property
    def calibrating(self) -> bool:
        return self._deadline is not None

    @property
    def samples(self) -> list[float]:
        return list(self._samples)

    def begin(self, now: float) -> None:
        self._samples = []
        self._deadline = now + self.window_sec
        log.debug("event=calibration_start window_ms=%d", int(self.window_sec * 1000))

    def observe(self, sample: float, now: float) -> bool:
        """Collect *sample* if the window is still open; return whether it was."""
        if self._deadline is None or now >= self._deadline:
            return False
        self._samples.append(sample)
        return True

    def finish(self) -> float:
        """Close the window and return the ambient level."""
        self._deadline = None
        if not self._samples:
            log.info("event=calibration_underrun default_floor=%.4f", self.default_floor)
            return self.default_floor
        ambient = sum(self._samples) / len(self._samples)
        log.info("event=calibration_done ambient=%.4f frames=%d", ambient, len(self._samples))
        if ambient <= 0.0:
            log.info("event=calibration_silent default_floor=%.4f", self.default_floor)
            return self.default_floor
        return ambient

    def cancel(self) -> None:
        self._deadline = None
        self._samples = []
