"""Session controller: microphone → loudness → activity → end of utterance.

    capture ──► LevelAnalyzer ──► AmbientCalibrator   (first calibration_sec)
                              └─► activity.advance()  (afterwards)
                                     │ ACTIVATED   → cancel UtteranceTimer
                                     │ DEACTIVATED → start UtteranceTimer (if text)
                                     └ STALLED     → finish
    recognizer ──► TranscriptionBridge ──► transcript, last speech time,
                                           end-of-stream safety net

Everything runs on one asyncio loop.  The frame loop, the utterance timer and
the recognizer callbacks may interleave in any order; ``_finish()`` is the
single latch that makes the finished signal exactly-once per session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

import numpy as np
from pydantic import BaseModel

from .activity import ActivityEvent, ActivityState, FrameInput, advance, initial_state, note_speech
from .analyzer import LevelAnalyzer
from .calibrator import AmbientCalibrator
from .capture import CaptureConstraints, CaptureUnavailable
from .config import ConvoConfig
from .transcription import Recognizer, TranscriptionBridge
from .utterance_timer import UtteranceTimer

log = logging.getLogger("careless_convo.session")


class SessionPhase(Enum):
    IDLE = "IDLE"
    CALIBRATING = "CALIBRATING"
    LISTENING = "LISTENING"
    FINISHED = "FINISHED"


class SessionSnapshot(BaseModel):
    """Everything a chat layer needs to render or react to the session."""
    phase: str
    transcript: str
    is_listening: bool
    is_calibrating: bool
    ambient_level: float
    has_finished: bool
    voice_active: bool
    error: Optional[str] = None


class VoiceSession:
    def __init__(
        self,
        config: ConvoConfig,
        capture,
        recognizer: Recognizer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._vad = config.vad
        self._capture = capture
        self._constraints = CaptureConstraints.from_config(config.capture)
        self._clock = clock

        self._analyzer = LevelAnalyzer(self._vad.smoothing)
        self._calibrator = AmbientCalibrator(self._vad.calibration_sec, self._vad.default_ambient)
        self._activity: ActivityState = initial_state(0.0)
        self._timer = UtteranceTimer(self._vad.silence_sec, self._on_silence_elapsed)
        self._bridge = TranscriptionBridge(
            recognizer,
            on_transcript=self._on_transcript,
            on_ended=self._on_recognition_end,
            on_error=self._on_recognition_error,
            clock=clock,
        )

        self._phase = SessionPhase.IDLE
        self._stream = None
        self._frame_task: asyncio.Task | None = None
        self._starting = False
        self._abort_start = False

        self._ambient = 0.0
        self._error: str | None = None
        self._finished = False
        self._finished_transcript: str | None = None
        self._settled = asyncio.Event()
        self._finished_listeners: list[Callable[[str], None]] = []

    # -- observable surface ----------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def transcript(self) -> str:
        return self._bridge.transcript

    @property
    def is_listening(self) -> bool:
        return self._phase in (SessionPhase.CALIBRATING, SessionPhase.LISTENING)

    @property
    def is_calibrating(self) -> bool:
        return self._phase is SessionPhase.CALIBRATING

    @property
    def ambient_level(self) -> float:
        return self._ambient

    @property
    def has_finished(self) -> bool:
        return self._finished

    @property
    def voice_active(self) -> bool:
        return self._activity.active

    @property
    def error(self) -> str | None:
        return self._error

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self._phase.value,
            transcript=self.transcript,
            is_listening=self.is_listening,
            is_calibrating=self.is_calibrating,
            ambient_level=self._ambient,
            has_finished=self._finished,
            voice_active=self.voice_active,
            error=self._error,
        )

    def add_finished_listener(self, listener: Callable[[str], None]) -> None:
        """Call *listener(transcript)* each time the finished flag latches."""
        self._finished_listeners.append(listener)

    async def wait_finished(self) -> str | None:
        """Wait until listening stops.

        Returns the finished transcript, or None when the session went idle
        without finishing (stopped with no speech, or an error).
        """
        await self._settled.wait()
        return self._finished_transcript

    # -- commands ----------------------------------------------------------------

    async def start_listening(self) -> None:
        if self.is_listening or self._starting:
            log.debug("event=start_ignored reason=already_listening phase=%s", self._phase.value)
            return
        self._starting = True
        self._abort_start = False
        self._bridge.reset()
        self._error = None
        self._finished = False
        self._finished_transcript = None
        self._settled.clear()
        self._ambient = 0.0
        self._timer.cancel()

        try:
            stream = await self._capture.open(self._constraints)
        except CaptureUnavailable as exc:
            self._error = f"Microphone access denied: {exc}"
            log.error("event=session_start_failed error=%s", exc)
            self._set_phase(SessionPhase.IDLE)
            return
        finally:
            self._starting = False

        if self._abort_start:
            log.info("event=session_start_aborted reason=stopped_while_opening")
            self._capture.teardown(stream)
            self._set_phase(SessionPhase.IDLE)
            return

        now = self._clock()
        self._stream = stream
        self._analyzer.reset()
        self._activity = initial_state(now)
        self._calibrator.begin(now)
        self._set_phase(SessionPhase.CALIBRATING)
        self._frame_task = asyncio.create_task(self._frame_loop(stream), name="vad_frame_loop")
        self._bridge.start(stream)

    def stop_listening(self) -> None:
        """Stop now.  No timer or frame callback fires after this returns."""
        if self._starting:
            self._abort_start = True
            return
        if not self.is_listening:
            return
        if self.transcript.strip():
            self._finish("manual_stop")
        else:
            self._set_phase(SessionPhase.IDLE)
            self._teardown()

    def reset_transcript(self) -> None:
        """Clear transcript and finished flag; listening state is untouched."""
        self._bridge.reset()
        self._finished = False
        if self._phase is SessionPhase.FINISHED:
            self._set_phase(SessionPhase.IDLE)

    # -- per-frame pipeline --------------------------------------------------------

    def process_frame(self, frame: np.ndarray, now: float | None = None) -> list[ActivityEvent]:
        """Analyze one captured frame and run it through the decision engine."""
        if not self.is_listening:
            return []
        level = self._analyzer.sample(frame)
        return self.process_level(level, self._clock() if now is None else now)

    def process_level(self, level: float, now: float) -> list[ActivityEvent]:
        """Feed one smoothed loudness sample to calibration or the activity machine."""
        if not self.is_listening:
            return []

        if self._phase is SessionPhase.CALIBRATING:
            if self._calibrator.observe(level, now):
                return []
            self._ambient = self._calibrator.finish()
            self._set_phase(SessionPhase.LISTENING)

        has_text = bool(self.transcript.strip())
        self._activity, events = advance(
            self._activity,
            FrameInput(loudness=level, now=now, ambient=self._ambient, has_transcript=has_text),
            self._vad,
        )
        for event in events:
            if event is ActivityEvent.ACTIVATED:
                self._timer.cancel()
            elif event is ActivityEvent.DEACTIVATED:
                if has_text:
                    self._timer.start()
            elif event is ActivityEvent.STALLED:
                log.info(
                    "event=stall_fallback silence_ms=%.0f",
                    (now - self._activity.last_speech_at) * 1000,
                )
                self._finish("stall_fallback")
        return events

    async def _frame_loop(self, stream) -> None:
        interval = self._vad.frame_interval_sec
        while self._stream is stream:
            await asyncio.sleep(interval)
            if self._stream is not stream:
                break
            self.process_frame(stream.latest_frame())

    # -- timer & recognizer callbacks ------------------------------------------------

    def _on_silence_elapsed(self) -> None:
        if self.is_listening and self.transcript.strip():
            self._finish("silence_timer")

    def _on_transcript(self, text: str, spoken_at: float | None) -> None:
        if spoken_at is not None:
            self._activity = note_speech(self._activity, spoken_at)

    def _on_recognition_end(self) -> None:
        if self.transcript.strip() and not self._finished:
            self._finish("recognition_ended")
        elif self.is_listening:
            self._set_phase(SessionPhase.IDLE)
            self._teardown()

    def _on_recognition_error(self, reason: str) -> None:
        self._error = f"Speech recognition error: {reason}"
        log.error("event=session_recognition_error reason=%s", reason)
        if self.is_listening:
            self._set_phase(SessionPhase.IDLE)
        self._teardown()

    # -- internals ---------------------------------------------------------------------

    def _finish(self, reason: str) -> None:
        if self._finished:
            log.debug("event=finish_ignored reason=%s latched=True", reason)
            return
        self._finished = True
        self._finished_transcript = self.transcript
        log.info(
            "event=utterance_finished reason=%s transcript_len=%d",
            reason, len(self.transcript),
        )
        self._set_phase(SessionPhase.FINISHED)
        self._teardown()
        transcript = self._finished_transcript
        for listener in list(self._finished_listeners):
            listener(transcript)

    def _teardown(self) -> None:
        self._timer.cancel()
        self._calibrator.cancel()
        task, self._frame_task = self._frame_task, None
        if task is not None and not task.done():
            task.cancel()
        stream, self._stream = self._stream, None
        self._bridge.stop()
        if stream is not None:
            self._capture.teardown(stream)

    def _set_phase(self, new_phase: SessionPhase) -> None:
        prev = self._phase
        if new_phase in (SessionPhase.IDLE, SessionPhase.FINISHED):
            self._settled.set()
        if prev is new_phase:
            return
        self._phase = new_phase
        log.info(
            "event=state_change from=%s to=%s ambient=%.4f",
            prev.value, new_phase.value, self._ambient,
        )
