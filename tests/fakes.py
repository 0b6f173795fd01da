"""Test doubles for the session collaborators."""

from __future__ import annotations

import asyncio

import numpy as np

from careless_convo.capture import CaptureUnavailable
from careless_convo.transcription import Recognizer


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeStream:
    def __init__(self, frame_size: int = 1024):
        self.frame = np.zeros(frame_size, dtype=np.int16)

    def latest_frame(self) -> np.ndarray:
        return self.frame.copy()


class FakeCapture:
    def __init__(self, fail: str | None = None, gate: asyncio.Event | None = None):
        self.fail = fail
        self.gate = gate
        self.opened: list[FakeStream] = []
        self.torn_down: list[FakeStream] = []

    async def open(self, constraints) -> FakeStream:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise CaptureUnavailable(self.fail)
        stream = FakeStream(constraints.frame_size)
        self.opened.append(stream)
        return stream

    def teardown(self, stream: FakeStream) -> None:
        self.torn_down.append(stream)


class FakeRecognizer(Recognizer):
    """Recognizer driven by hand from a test."""

    def __init__(self):
        super().__init__()
        self.runs = []
        self.halted = 0

    def _begin(self, run, audio) -> None:
        self.runs.append(run)
        self.audio = audio
        self._emit_start(run)

    def _halt(self, run) -> None:
        self.halted += 1

    @property
    def run(self):
        return self.runs[-1]

    def say(self, finals: list[str], interim: str = "") -> None:
        self.run.final_segments = list(finals)
        self.run.interim = interim
        self._emit_result(self.run)

    def fail(self, reason: str) -> None:
        self._emit_error(self.run, reason)

    def end(self) -> None:
        self._emit_end(self.run)
