"""Spoken replies: Groq text-to-speech or the system voice."""

from __future__ import annotations

import asyncio
import io
import logging
import re
import threading
from collections import deque

import groq
import numpy as np
import soundfile as sf
from groq import AsyncGroq

from .config import TTSConfig

log = logging.getLogger("careless_convo.speech_output")

SENTENCE_END_RE = re.compile(r'[.!?](?:\s|$)')
COMMA_SPLIT_RE = re.compile(r',\s')
MIN_CHUNK_CHARS = 20
LONG_CLAUSE_CHARS = 60
MAX_TTS_INPUT_CHARS = 200


def _split_pending(pending: str) -> tuple[str | None, str]:
    """Try to extract a speakable chunk from *pending*.

    Returns (chunk, remaining) on success, (None, pending) otherwise.

    Triggers, in priority order:
      1. the first sentence boundary [.!?] whose prefix is at least
         MIN_CHUNK_CHARS long
      2. long clause: len > LONG_CLAUSE_CHARS and a comma-space to split at
    """
    for m in SENTENCE_END_RE.finditer(pending):
        sentence = pending[:m.end()].strip()
        if len(sentence) >= MIN_CHUNK_CHARS:
            return sentence, pending[m.end():]

    if len(pending) > LONG_CLAUSE_CHARS:
        # Split at the *last* comma-space so the chunk is as large as possible.
        parts = list(COMMA_SPLIT_RE.finditer(pending))
        if parts:
            split_at = parts[-1].end()
            sentence = pending[:split_at].strip()
            if len(sentence) >= MIN_CHUNK_CHARS:
                return sentence, pending[split_at:]

    return None, pending


def split_sentences(text: str) -> list[str]:
    """Cut a reply into TTS-sized chunks, in order, losing no text."""
    chunks: list[str] = []
    pending = text
    while True:
        chunk, pending = _split_pending(pending)
        if chunk is None:
            break
        chunks.append(chunk)
    leftover = pending.strip()
    if leftover:
        chunks.append(leftover)
    return chunks


def decode_wav_bytes(wav_bytes: bytes) -> tuple[np.ndarray, int]:
    """Decode WAV bytes to mono float32 samples and their sample rate."""
    data, sample_rate = sf.read(io.BytesIO(wav_bytes), dtype="float32")
    if data.ndim == 2:
        data = data[:, 0]
    return data, sample_rate


class StreamingPlayback:
    """Mono float32 output fed from the event loop and drained by PortAudio.

    ``write()`` queues sample blocks; the sounddevice callback copies them
    into each output buffer on the audio thread and pads with silence.
    """

    BLOCK_SIZE = 1024

    def __init__(self):
        self._queue: deque[np.ndarray] = deque()
        self._offset = 0  # samples of _queue[0] already played
        self._lock = threading.Lock()
        self._stream = None
        self._sample_rate: int | None = None
        self._playing = False

    @property
    def is_active(self) -> bool:
        return self._playing

    @property
    def pending(self) -> bool:
        with self._lock:
            return bool(self._queue)

    def open(self, sample_rate: int) -> None:
        if self._stream is not None:
            if sample_rate != self._sample_rate:
                log.warning("event=playback_rate_mismatch open=%d requested=%d", self._sample_rate, sample_rate)
            return
        import sounddevice as sd  # PortAudio loads on first playback

        stream = None
        try:
            stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.BLOCK_SIZE,
                callback=self._callback,
                finished_callback=self._on_finished,
            )
            stream.start()
        except sd.PortAudioError as exc:
            if stream is not None:
                stream.close()
            raise OSError(f"audio output unavailable: {exc}") from exc
        self._stream = stream
        self._sample_rate = sample_rate
        self._playing = True
        log.debug("event=playback_open sample_rate=%d", sample_rate)

    def write(self, samples: np.ndarray) -> None:
        """Queue float32 mono samples; ignored once playback has stopped."""
        if not self._playing:
            return
        block = np.ascontiguousarray(samples, dtype=np.float32).reshape(-1)
        if block.size:
            with self._lock:
                self._queue.append(block)

    async def drain(self, poll_sec: float = 0.05) -> None:
        while self._playing and self.pending:
            await asyncio.sleep(poll_sec)

    def stop(self) -> None:
        self._playing = False
        with self._lock:
            self._queue.clear()
            self._offset = 0
        stream, self._stream = self._stream, None
        self._sample_rate = None
        if stream is None:
            return
        import sounddevice as sd

        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=playback_close_error error=%s", exc)

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        with self._lock:
            written = self._fill(outdata[:, 0], frames)
        outdata[written:, 0] = 0.0

    def _fill(self, out: np.ndarray, frames: int) -> int:
        """Copy queued samples into *out*; return how many were copied.  Lock held."""
        written = 0
        while written < frames and self._queue:
            available = self._queue[0][self._offset:]
            n = min(frames - written, available.size)
            out[written:written + n] = available[:n]
            written += n
            if n == available.size:
                self._queue.popleft()
                self._offset = 0
            else:
                self._offset += n
        return written

    def _on_finished(self) -> None:
        self._playing = False


class SystemVoice:
    """The operating system's speech engine (SAPI5, NSSpeech or eSpeak) via pyttsx3.

    ``say()`` blocks until the utterance is spoken, so callers run it on a
    worker thread.  ``stop()`` may be called from any thread to cut it short.
    """

    BASE_RATE_WPM = 200

    def __init__(self, voice: str | None = None):
        self.voice = voice
        self._engine = None
        self._lock = threading.Lock()

    def say(self, text: str, rate: float = 1.0, volume: float = 1.0, pitch: float = 1.0) -> None:
        with self._lock:
            engine = self._get_engine()
            engine.setProperty("rate", int(self.BASE_RATE_WPM * rate))
            engine.setProperty("volume", volume)
            # Drivers without a pitch property report it through on_error.
            engine.setProperty("pitch", pitch)
            engine.say(text)
            engine.runAndWait()

    def stop(self) -> None:
        if self._engine is not None:
            self._engine.stop()

    def _get_engine(self):
        if self._engine is None:
            import pyttsx3

            engine = pyttsx3.init()
            engine.connect("error", self._on_error)
            if self.voice:
                self._select_voice(engine)
            self._engine = engine
        return self._engine

    def _select_voice(self, engine) -> None:
        wanted = self.voice.lower()
        for v in engine.getProperty("voices"):
            if wanted in (v.name or "").lower() or wanted in (v.id or "").lower():
                engine.setProperty("voice", v.id)
                log.info("event=system_voice_selected voice=%s", v.name)
                return
        log.warning("event=system_voice_missing wanted=%s", self.voice)

    def _on_error(self, name, exception) -> None:
        log.warning("event=system_voice_error utterance=%s error=%s", name, exception)


class Speaker:
    """Speak finished reply text.  One utterance at a time; a new one cuts the old."""

    def __init__(
        self,
        config: TTSConfig,
        api_key: str | None = None,
        client: AsyncGroq | None = None,
        playback: StreamingPlayback | None = None,
        system_voice: SystemVoice | None = None,
    ):
        self.config = config
        self._client = client if client is not None else (AsyncGroq(api_key=api_key) if api_key else None)
        self._playback = playback or StreamingPlayback()
        self._system = system_voice or SystemVoice(config.system_voice)
        self._task: asyncio.Task | None = None

    @property
    def backend(self) -> str | None:
        """``groq``, ``system``, or None when the configured provider can't run."""
        provider = self.config.provider
        if provider == "auto":
            return "groq" if self._client is not None else "system"
        if provider == "groq" and self._client is None:
            return None
        return provider

    @property
    def rate(self) -> float:
        return max(0.1, min(2.0, self.config.rate))

    @property
    def pitch(self) -> float:
        return max(0.0, min(2.0, self.config.pitch))

    @property
    def volume(self) -> float:
        return max(0.0, min(1.0, self.config.volume))

    @property
    def is_speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    def speak(self, text: str) -> asyncio.Task | None:
        if not self.config.enabled or not text.strip():
            return None
        backend = self.backend
        if backend is None:
            log.info("event=tts_skipped reason=no_api_key provider=%s", self.config.provider)
            return None
        self.stop()
        run = self._speak if backend == "groq" else self._speak_system
        self._task = asyncio.create_task(run(text), name=f"tts_{backend}")
        return self._task

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._system.stop()
        if self._playback.is_active:
            self._playback.stop()
            log.info("event=playback_interrupted")

    async def _speak(self, text: str) -> None:
        chunks = split_sentences(text)
        log.info("event=tts_stream_start backend=groq chunks=%d", len(chunks))
        try:
            for index, chunk in enumerate(chunks, start=1):
                try:
                    wav_bytes = await asyncio.wait_for(
                        self._synthesize(chunk), timeout=self.config.chunk_timeout_sec,
                    )
                except asyncio.TimeoutError:
                    log.warning(
                        "event=timeout scope=tts_chunk chunk=%d limit=%.1fs",
                        index, self.config.chunk_timeout_sec,
                    )
                    continue
                except groq.APIError as exc:
                    log.warning("event=tts_chunk_error chunk=%d error=%s", index, exc)
                    continue

                try:
                    samples, sample_rate = decode_wav_bytes(wav_bytes)
                except RuntimeError as exc:   # soundfile.LibsndfileError
                    log.warning("event=tts_decode_error chunk=%d error=%s", index, exc)
                    continue
                try:
                    self._playback.open(sample_rate)
                except OSError as exc:
                    log.error("event=playback_unavailable error=%s", exc)
                    return
                self._playback.write(samples * self.volume)
                log.debug("event=tts_chunk chunk=%d text=%.60s", index, chunk)

            await self._playback.drain()
            log.info("event=tts_stream_end backend=groq chunks=%d", len(chunks))
        finally:
            self._playback.stop()

    async def _speak_system(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        chunks = split_sentences(text)
        log.info("event=tts_stream_start backend=system chunks=%d", len(chunks))
        for index, chunk in enumerate(chunks, start=1):
            try:
                await loop.run_in_executor(None, self._system.say, chunk, self.rate, self.volume, self.pitch)
            except (RuntimeError, OSError) as exc:   # no speech engine on this machine
                log.error("event=system_voice_unavailable error=%s", exc)
                return
            log.debug("event=tts_chunk chunk=%d text=%.60s", index, chunk)
        log.info("event=tts_stream_end backend=system chunks=%d", len(chunks))

    async def _synthesize(self, text: str) -> bytes:
        response = await self._client.audio.speech.create(
            model=self.config.model,
            voice=self.config.voice,
            input=text[:MAX_TTS_INPUT_CHARS],
            response_format="wav",
            speed=self.rate,
        )
        return await response.read()
