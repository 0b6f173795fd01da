"""Continuous speech recognition and the transcript bridge.

A ``Recognizer`` reports four events, mirroring a browser-style continuous
recognition service:

    on_start()                               stream opened
    on_result(final_segments, interim)       full hypothesis so far
    on_error(reason)                         provider / network failure
    on_end()                                 stream closed (always last)

``TranscriptionBridge`` turns results into the session's transcript and
forwards start/end/error.  ``DeepgramRecognizer`` is the production
recognizer: it streams captured PCM to Deepgram's live endpoint over a
websocket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Callable, Optional
from urllib.parse import urlencode

import websockets

from .config import RecognitionConfig

log = logging.getLogger("careless_convo.transcription")

CLOSE_STREAM = json.dumps({"type": "CloseStream"})
CLOSE_TIMEOUT_SEC = 2.0


def build_transcript(final_segments: list[str], interim: str) -> str:
    """Final segments in arrival order, then the interim segment."""
    parts = [s.strip() for s in final_segments] + [interim.strip()]
    return " ".join(p for p in parts if p)


class _Run:
    """Bookkeeping for one start()…end cycle."""

    def __init__(self) -> None:
        self.final_segments: list[str] = []
        self.interim = ""
        self.ended = False


class Recognizer:
    """Base class for continuous recognizers.

    Subclasses implement ``_begin(run, audio)`` and ``_halt(run)`` and report
    through the ``_emit_*`` helpers, which guarantee that ``on_end`` fires
    exactly once per run and that nothing fires for a run after its end.
    """

    def __init__(self) -> None:
        self.on_start: Callable[[], None] = lambda: None
        self.on_result: Callable[[list[str], str], None] = lambda finals, interim: None
        self.on_error: Callable[[str], None] = lambda reason: None
        self.on_end: Callable[[], None] = lambda: None
        self._run: _Run | None = None

    @property
    def running(self) -> bool:
        return self._run is not None and not self._run.ended

    def start(self, audio) -> None:
        if self.running:
            log.debug("event=recognizer_start_ignored reason=running")
            return
        run = _Run()
        self._run = run
        self._begin(run, audio)

    def stop(self) -> None:
        run = self._run
        if run is None or run.ended:
            return
        self._halt(run)
        self._emit_end(run)

    # -- subclass hooks --

    def _begin(self, run: _Run, audio) -> None:
        raise NotImplementedError

    def _halt(self, run: _Run) -> None:
        raise NotImplementedError

    # -- event delivery --

    def _emit_start(self, run: _Run) -> None:
        if not run.ended:
            self.on_start()

    def _emit_result(self, run: _Run) -> None:
        if not run.ended:
            self.on_result(list(run.final_segments), run.interim)

    def _emit_error(self, run: _Run, reason: str) -> None:
        if not run.ended:
            self.on_error(reason)

    def _emit_end(self, run: _Run) -> None:
        if run.ended:
            return
        run.ended = True
        self.on_end()


class TranscriptionBridge:
    """Own the TranscriptBuffer and translate recognizer events for the session."""

    def __init__(
        self,
        recognizer: Recognizer,
        on_transcript: Callable[[str, Optional[float]], None],
        on_ended: Callable[[], None],
        on_error: Callable[[str], None],
        on_started: Callable[[], None] = lambda: None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.recognizer = recognizer
        self._on_transcript = on_transcript
        self._on_ended = on_ended
        self._on_error = on_error
        self._on_started = on_started
        self._clock = clock
        self._transcript = ""
        self.last_speech_at: float | None = None

        recognizer.on_start = self._handle_start
        recognizer.on_result = self._handle_result
        recognizer.on_error = self._handle_error
        recognizer.on_end = self._handle_end

    @property
    def transcript(self) -> str:
        return self._transcript

    def start(self, audio) -> None:
        self.recognizer.start(audio)

    def stop(self) -> None:
        self.recognizer.stop()

    def reset(self) -> None:
        self._transcript = ""
        self.last_speech_at = None

    def _handle_start(self) -> None:
        log.info("event=recognition_started")
        self._on_started()

    def _handle_result(self, final_segments: list[str], interim: str) -> None:
        text = build_transcript(final_segments, interim)
        self._transcript = text
        if text:
            self.last_speech_at = self._clock()
        log.debug(
            "event=transcript_update finals=%d interim_len=%d transcript=%.60r",
            len(final_segments), len(interim), text,
        )
        self._on_transcript(text, self.last_speech_at if text else None)

    def _handle_error(self, reason: str) -> None:
        log.warning("event=recognition_error reason=%s", reason)
        self._on_error(reason)

    def _handle_end(self) -> None:
        log.info("event=recognition_ended transcript_len=%d", len(self._transcript))
        self._on_ended()


class DeepgramRecognizer(Recognizer):
    """Deepgram live transcription over a websocket.

    Audio comes from ``audio.chunks()`` (mono int16 PCM).  Results with
    ``is_final`` are appended to the run's final segments; everything else
    replaces the interim segment.  Stopping a connected run sends
    ``CloseStream`` before the session task is cancelled.
    """

    def __init__(self, config: RecognitionConfig, api_key: str | None, sample_rate: int = 16000):
        super().__init__()
        self.config = config
        self.api_key = api_key
        self.sample_rate = sample_rate
        self._task: asyncio.Task | None = None
        self._ws = None
        self._closing: asyncio.Task | None = None

    @property
    def url(self) -> str:
        c = self.config
        params = {
            "model": c.model,
            "language": c.language,
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "interim_results": str(c.interim_results).lower(),
            "smart_format": str(c.smart_format).lower(),
            "punctuate": str(c.punctuate).lower(),
        }
        return f"{c.url}?{urlencode(params)}"

    def _begin(self, run: _Run, audio) -> None:
        self._task = asyncio.create_task(self._session(run, audio), name="deepgram_session")

    def _halt(self, run: _Run) -> None:
        task, self._task = self._task, None
        ws, self._ws = self._ws, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        if ws is None:
            task.cancel()
            return
        self._closing = asyncio.create_task(self._close_stream(ws, task), name="deepgram_close")

    async def _close_stream(self, ws, task: asyncio.Task) -> None:
        try:
            await asyncio.wait_for(ws.send(CLOSE_STREAM), timeout=CLOSE_TIMEOUT_SEC)
            log.info("event=ws_close_stream_sent")
        except (websockets.WebSocketException, OSError, asyncio.TimeoutError) as exc:
            log.debug("event=ws_close_stream_failed error=%s", exc)
        finally:
            task.cancel()

    async def _session(self, run: _Run, audio) -> None:
        if not self.api_key:
            self._emit_error(run, "not-allowed: missing DEEPGRAM_API_KEY")
            self._emit_end(run)
            return
        headers = {"Authorization": f"Token {self.api_key}"}
        try:
            async with websockets.connect(self.url, additional_headers=headers) as ws:
                log.info("event=ws_connected model=%s", self.config.model)
                if not run.ended:
                    self._ws = ws
                self._emit_start(run)
                sender = asyncio.create_task(self._send_audio(ws, audio))
                try:
                    async for message in ws:
                        self._handle_message(run, message)
                finally:
                    sender.cancel()
                    try:
                        await sender
                    except asyncio.CancelledError:
                        pass
            log.info("event=ws_closed reason=server")
        except (websockets.WebSocketException, OSError) as exc:
            log.warning("event=ws_disconnected error=%s", exc)
            self._emit_error(run, f"network: {exc}")
        except Exception as exc:
            log.error("event=recognizer_failed error=%s", exc, exc_info=True)
            self._emit_error(run, f"recognizer: {exc}")
        finally:
            if not run.ended:
                self._ws = None
            self._emit_end(run)

    async def _send_audio(self, ws, audio) -> None:
        async for chunk in audio.chunks():
            await ws.send(chunk)
        await ws.send(CLOSE_STREAM)

    def _handle_message(self, run: _Run, message) -> None:
        try:
            msg = json.loads(message)
        except (TypeError, ValueError):
            log.debug("event=ws_message_ignored reason=not_json")
            return
        if msg.get("type") != "Results":
            log.debug("event=ws_message_ignored type=%s", msg.get("type"))
            return
        alternatives = msg.get("channel", {}).get("alternatives") or [{}]
        text = alternatives[0].get("transcript", "")
        if msg.get("is_final"):
            if text.strip():
                run.final_segments.append(text)
            run.interim = ""
        else:
            run.interim = text
        self._emit_result(run)
