"""Microphone capture collaborator.

``MicrophoneCapture.open()`` hands back a ``CaptureStream`` that plays two
roles at once:

  • analyser — ``latest_frame()`` returns the most recent ``frame_size``
    samples, read once per frame by the level analyzer;
  • feed     — ``chunks()`` yields raw int16 PCM blocks for the recognizer.

The sounddevice callback runs on the PortAudio thread.  It only copies data
into the frame buffer (under a lock) and schedules the chunk hand-off on the
event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import numpy as np

from .config import CaptureConfig

log = logging.getLogger("careless_convo.capture")

CHUNK_QUEUE_MAX = 64   # ~5 s of 80 ms blocks before the oldest is dropped


class CaptureUnavailable(Exception):
    """Microphone permission denied or device error."""


@dataclass(frozen=True)
class CaptureConstraints:
    sample_rate: int = 16000
    channels: int = 1
    frame_size: int = 1024
    block_size: int = 1280
    device: Optional[int] = None

    @classmethod
    def from_config(cls, config: CaptureConfig) -> "CaptureConstraints":
        return cls(
            sample_rate=config.sample_rate,
            channels=config.channels,
            frame_size=config.frame_size,
            block_size=config.block_size,
            device=config.device,
        )


class CaptureStream:
    """A live, exclusively owned input stream."""

    def __init__(self, constraints: CaptureConstraints, loop: asyncio.AbstractEventLoop):
        self.constraints = constraints
        self._loop = loop
        self._frame = np.zeros(constraints.frame_size, dtype=np.int16)
        self._lock = threading.Lock()
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=CHUNK_QUEUE_MAX)
        self._stream = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # -- lifecycle (called by MicrophoneCapture) --

    def _open(self) -> None:
        try:
            import sounddevice as sd
        except OSError as exc:   # PortAudio library not installed
            raise CaptureUnavailable(str(exc)) from exc

        c = self.constraints
        try:
            self._stream = sd.InputStream(
                samplerate=c.sample_rate,
                channels=c.channels,
                dtype="int16",
                blocksize=c.block_size,
                device=c.device,
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise CaptureUnavailable(str(exc)) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as exc:  # PortAudioError or a vanished device
                log.warning("event=capture_close_error error=%s", exc)
            self._stream = None
        self._push_chunk(None)

    # -- consumer side --

    def latest_frame(self) -> np.ndarray:
        with self._lock:
            return self._frame.copy()

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield mono int16 PCM blocks until the stream is closed."""
        while True:
            item = await self._chunks.get()
            if item is None:
                return
            yield item

    # -- producer side --

    def feed(self, block: np.ndarray) -> None:
        """Accept one captured block (frames × channels, int16)."""
        mono = np.ascontiguousarray(block[:, 0] if block.ndim == 2 else block, dtype=np.int16)
        size = self.constraints.frame_size
        with self._lock:
            if len(mono) >= size:
                self._frame = mono[-size:].copy()
            else:
                self._frame = np.concatenate((self._frame[len(mono):], mono))
        try:
            self._loop.call_soon_threadsafe(self._push_chunk, mono.tobytes())
        except RuntimeError:
            pass  # loop already closed during teardown

    def _push_chunk(self, data: bytes | None) -> None:
        if data is not None and self._closed:
            return
        if self._chunks.full():
            try:
                self._chunks.get_nowait()
            except asyncio.QueueEmpty:
                pass
            log.debug("event=capture_chunk_dropped")
        self._chunks.put_nowait(data)

    def _callback(self, indata, frames, time_info, status):
        if status:
            log.warning("event=mic_status status=%s", status)
        self.feed(indata)


class MicrophoneCapture:
    """Opens and tears down ``CaptureStream``s on the default (or given) device."""

    async def open(self, constraints: CaptureConstraints) -> CaptureStream:
        loop = asyncio.get_running_loop()
        stream = CaptureStream(constraints, loop)
        try:
            await loop.run_in_executor(None, stream._open)
        except CaptureUnavailable as exc:
            log.error("event=capture_open_failed error=%s", exc)
            raise
        log.info(
            "event=mic_started sample_rate=%d frame_size=%d device=%s",
            constraints.sample_rate, constraints.frame_size, constraints.device,
        )
        return stream

    def teardown(self, stream: CaptureStream) -> None:
        stream.close()
        log.info("event=mic_stopped")
