"""Voice chat loop: a finished utterance becomes a chat turn.

    VoiceSession ──finished──► Conversation.send_message ──reply──► Speaker
         ▲                                                             │
         └──────────────── start_listening (continuous mode) ◄─────────┘
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Optional

from .capture import MicrophoneCapture
from .config import ConvoConfig
from .conversation import Conversation
from .session import VoiceSession
from .speech_output import Speaker
from .transcription import DeepgramRecognizer

log = logging.getLogger("careless_convo.chat")


class VoiceChat:
    def __init__(
        self,
        session: VoiceSession,
        conversation: Conversation,
        speaker: Speaker | None = None,
        continuous: bool = False,
        on_token: Optional[Callable[[str], None]] = None,
    ):
        self.session = session
        self.conversation = conversation
        self.speaker = speaker
        self.continuous = continuous
        self._on_token = on_token
        self._turn_task: asyncio.Task | None = None
        self._closed = False
        session.add_finished_listener(self._on_finished)

    @property
    def busy(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    async def start(self) -> None:
        self._closed = False
        if self.speaker is not None:
            self.speaker.stop()
        await self.session.start_listening()

    async def wait_turn(self) -> None:
        """Wait for the chat turn currently in flight, if any."""
        if self._turn_task is not None:
            await self._turn_task

    async def close(self) -> None:
        self._closed = True
        self.session.stop_listening()
        if self.speaker is not None:
            self.speaker.stop()
        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("event=voice_chat_closed messages=%d", len(self.conversation.messages))

    def _on_finished(self, transcript: str) -> None:
        if self._closed or not transcript.strip():
            return
        if self.busy:
            log.warning("event=state_guard msg=turn_already_running")
            return
        self._turn_task = asyncio.create_task(self._handle_turn(transcript), name="chat_turn")

    async def _handle_turn(self, transcript: str) -> None:
        log.info("event=turn_start transcript=%.80r", transcript)
        self.session.reset_transcript()
        reply = await self.conversation.send_message(transcript, on_token=self._on_token)
        if reply and self.speaker is not None:
            speaking = self.speaker.speak(reply)
            if speaking is not None:
                await speaking
        log.info("event=turn_complete reply_len=%d", len(reply or ""))
        if self.continuous and not self._closed:
            await self.session.start_listening()


def build_voice_chat(
    config: ConvoConfig,
    *,
    continuous: bool = True,
    on_token: Optional[Callable[[str], None]] = None,
) -> VoiceChat:
    """Wire microphone, Deepgram, Groq and TTS from config plus API keys in the environment."""
    groq_key = os.getenv("GROQ_API_KEY")
    deepgram_key = os.getenv("DEEPGRAM_API_KEY")
    if not groq_key:
        log.warning("event=demo_mode reason=missing_GROQ_API_KEY")

    recognizer = DeepgramRecognizer(
        config.recognition, deepgram_key, sample_rate=config.capture.sample_rate,
    )
    session = VoiceSession(config, MicrophoneCapture(), recognizer)
    conversation = Conversation(config.llm, api_key=groq_key)
    speaker = Speaker(config.tts, api_key=groq_key) if config.tts.enabled else None
    return VoiceChat(session, conversation, speaker, continuous=continuous, on_token=on_token)
