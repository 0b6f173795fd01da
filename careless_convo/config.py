"""
config.py — Careless Convo · Runtime Configuration
===================================================
Pydantic models for every tunable parameter of the voice chat client.
Serialises to / deserialises from JSON.  Used by:
  • session.py        — VAD thresholds, calibration window, frame cadence
  • capture.py        — microphone constraints
  • transcription.py  — Deepgram live options
  • conversation.py   — Groq model + demo-mode behaviour
  • speech_output.py  — reply voice settings
  • server.py         — GET/PUT /config endpoints
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

log = logging.getLogger("careless_convo.config")

# ---------------------------------------------------------------------------
# Default system prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are Careless Convo, a friendly voice companion.
Your replies are spoken aloud, so keep them short, conversational and natural.
No markdown, no lists, no code blocks.
"""


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class VadConfig(BaseModel):
    """Voice-activity detection and end-of-utterance tuning.

    The margins and frame counts were tuned by ear; treat them as starting
    points rather than laws.
    """
    smoothing: float = Field(default=0.15, gt=0.0, le=1.0, description="Exponential smoothing factor for RMS")
    calibration_sec: float = Field(default=1.5, ge=0.0, le=10.0, description="Ambient calibration window (seconds)")
    default_ambient: float = Field(default=0.005, gt=0.0, le=1.0, description="Noise floor used when calibration saw no frames")
    start_margin: float = Field(default=0.03, gt=0.0, le=1.0, description="Voice start threshold above ambient")
    stop_margin: float = Field(default=0.015, gt=0.0, le=1.0, description="Voice stop threshold above ambient")
    activate_frames: int = Field(default=6, ge=1, le=600, description="Consecutive loud frames to activate (~100 ms)")
    deactivate_frames: int = Field(default=18, ge=1, le=600, description="Consecutive quiet frames to deactivate (~300 ms)")
    silence_sec: float = Field(default=1.2, gt=0.0, le=30.0, description="Silence before an utterance is finished (seconds)")
    stall_factor: float = Field(default=2.0, ge=1.0, le=10.0, description="Fallback finish after stall_factor × silence_sec")
    frame_interval_sec: float = Field(default=1 / 60, gt=0.0, description="Frame loop cadence (seconds)")

    @model_validator(mode="after")
    def _check_hysteresis(self) -> "VadConfig":
        if self.stop_margin >= self.start_margin:
            raise ValueError("stop_margin must be smaller than start_margin")
        return self


class CaptureConfig(BaseModel):
    """Microphone input parameters (passed to sounddevice.InputStream)."""
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture sample rate (Hz)")
    channels: int = Field(default=1, ge=1, le=2, description="Input channels (first one is analysed)")
    frame_size: int = Field(default=1024, ge=64, le=16384, description="Samples per analysed frame")
    block_size: int = Field(default=1280, ge=64, le=16384, description="Samples per capture callback")
    device: Optional[int] = Field(default=None, description="sounddevice input device index")


class RecognitionConfig(BaseModel):
    """Deepgram live transcription parameters."""
    url: str = Field(default="wss://api.deepgram.com/v1/listen", description="Live listen endpoint")
    model: str = Field(default="nova-3", description="Deepgram model")
    language: str = Field(default="en-US", description="Recognition language")
    interim_results: bool = Field(default=True, description="Stream partial results")
    smart_format: bool = Field(default=True, description="Auto-formatting")
    punctuate: bool = Field(default=True, description="Add punctuation")


class LLMConfig(BaseModel):
    """Groq chat completion parameters."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")
    max_history_turns: int = Field(default=10, ge=1, le=100, description="User+assistant pairs kept in context")
    demo_token_delay_sec: float = Field(default=0.03, ge=0.0, le=1.0, description="Base per-character delay in demo mode")
    demo_token_jitter_sec: float = Field(default=0.04, ge=0.0, le=1.0, description="Random extra delay in demo mode")


class TTSConfig(BaseModel):
    """Spoken reply parameters.

    ``provider`` picks the voice: ``groq`` streams Groq audio.speech, ``system``
    drives the operating system's speech engine through pyttsx3, and ``auto``
    uses Groq when a key is configured and the system voice otherwise.
    """
    enabled: bool = Field(default=True, description="Speak assistant replies")
    provider: Literal["auto", "groq", "system"] = Field(default="auto", description="Speech backend")
    model: str = Field(default="canopylabs/orpheus-v1-english", description="Groq TTS model")
    voice: str = Field(default="troy", description="Groq TTS voice")
    system_voice: Optional[str] = Field(default=None, description="Substring of a system voice name or id")
    rate: float = Field(default=1.0, description="Speaking rate (clamped to 0.1–2.0)")
    pitch: float = Field(default=1.0, description="Voice pitch, system voice only (clamped to 0.0–2.0)")
    volume: float = Field(default=0.8, description="Playback volume (clamped to 0.0–1.0)")
    chunk_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="Per-sentence synthesis timeout")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class ConvoConfig(BaseModel):
    """Complete runtime configuration for the voice chat client."""
    vad: VadConfig = Field(default_factory=VadConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "ConvoConfig":
        """Read a saved config.  A missing or unreadable file yields the defaults."""
        p = Path(path)
        try:
            raw = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_load_defaults path=%s reason=missing", p)
            return cls()
        except OSError as exc:
            log.warning("event=config_load_error path=%s error=%s", p, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_invalid path=%s errors=%d first=%s",
                        p, exc.error_count(), exc.errors()[0]["msg"])
            return cls()
        log.info("event=config_loaded path=%s", p)
        return config

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON, replacing the file in one step."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        staging = p.with_name(p.name + ".tmp")
        staging.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        staging.replace(p)
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "ConvoConfig":
        """Apply a partial update such as ``{"vad": {"silence_sec": 0.9}}``.

        Sections and fields absent from *patch* keep their current values.
        The result is validated as a whole, so a patch that breaks an
        invariant raises ``ValidationError`` and leaves ``self`` untouched.
        """
        return type(self).model_validate(_overlay(self.model_dump(), patch))


def _overlay(base: dict, patch: dict) -> dict:
    """A copy of *base* with *patch* laid over it, section by section."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        merged[key] = _overlay(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged
