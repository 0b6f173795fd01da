"""Voice-activity state machine.

A pure reducer: ``advance()`` takes the current ``ActivityState`` plus one
post-calibration frame and returns the next state together with the events
the frame produced.  Nothing here touches audio devices, timers or clocks, so
every transition can be driven from a plain list of loudness values.

Two thresholds give hysteresis:

    start = ambient + start_margin      (must be exceeded to count "loud")
    stop  = ambient + stop_margin       (must be undercut to count "quiet")

and two counters give debouncing.  A counter only grows over an unbroken run;
any frame that does not extend the run resets it to zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from .config import VadConfig

log = logging.getLogger("careless_convo.activity")


class Activity(Enum):
    INACTIVE = "INACTIVE"
    ACTIVE = "ACTIVE"


class ActivityEvent(Enum):
    ACTIVATED = "ACTIVATED"
    DEACTIVATED = "DEACTIVATED"
    STALLED = "STALLED"   # inactive too long with pending text; force a finish


@dataclass(frozen=True)
class ActivityState:
    activity: Activity = Activity.INACTIVE
    above_count: int = 0
    below_count: int = 0
    last_speech_at: float = 0.0

    @property
    def active(self) -> bool:
        return self.activity is Activity.ACTIVE


@dataclass(frozen=True)
class FrameInput:
    loudness: float
    now: float
    ambient: float
    has_transcript: bool = False


@dataclass(frozen=True)
class Thresholds:
    start: float
    stop: float

    @classmethod
    def for_ambient(cls, ambient: float, config: VadConfig) -> "Thresholds":
        return cls(start=ambient + config.start_margin, stop=ambient + config.stop_margin)


def initial_state(now: float) -> ActivityState:
    return ActivityState(last_speech_at=now)


def note_speech(state: ActivityState, now: float) -> ActivityState:
    """Record that the recognizer produced text at *now*."""
    return replace(state, last_speech_at=now)


def advance(
    state: ActivityState,
    frame: FrameInput,
    config: VadConfig,
) -> tuple[ActivityState, list[ActivityEvent]]:
    """Evaluate one frame.  Returns (next_state, events)."""
    thresholds = Thresholds.for_ambient(frame.ambient, config)
    events: list[ActivityEvent] = []

    above, below = state.above_count, state.below_count
    if frame.loudness > thresholds.start:
        above, below = above + 1, 0
    elif frame.loudness < thresholds.stop:
        above, below = 0, below + 1
    else:
        above, below = 0, 0

    activity = state.activity
    last_speech_at = state.last_speech_at

    if activity is Activity.INACTIVE and above >= config.activate_frames:
        activity = Activity.ACTIVE
        above, below = 0, 0
        last_speech_at = frame.now
        events.append(ActivityEvent.ACTIVATED)
        log.debug(
            "event=voice_activated loudness=%.4f start=%.4f",
            frame.loudness, thresholds.start,
        )
    elif activity is Activity.ACTIVE and below >= config.deactivate_frames:
        activity = Activity.INACTIVE
        above, below = 0, 0
        events.append(ActivityEvent.DEACTIVATED)
        log.debug(
            "event=voice_deactivated loudness=%.4f stop=%.4f",
            frame.loudness, thresholds.stop,
        )

    if (
        activity is Activity.INACTIVE
        and frame.has_transcript
        and frame.now - last_speech_at > config.stall_factor * config.silence_sec
    ):
        events.append(ActivityEvent.STALLED)

    next_state = ActivityState(
        activity=activity,
        above_count=above,
        below_count=below,
        last_speech_at=last_speech_at,
    )
    return next_state, events
