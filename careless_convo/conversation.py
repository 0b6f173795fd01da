"""Chat history and streamed replies from the language model.

Replies stream from Groq chat completions.  Without an API key, or when the
API call fails, a canned demo reply is streamed character by character so the
rest of the voice loop still has something to speak.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

import groq
from groq import AsyncGroq
from pydantic import BaseModel, Field

from .config import LLMConfig

log = logging.getLogger("careless_convo.conversation")

DEMO_RESPONSES: tuple[str, ...] = (
    "I can hear you! This is Careless Convo running in demo mode. "
    "I pick up your speech, notice when you stop talking, and answer out loud.",
    "That's an interesting point. I'm still in demo mode, but once a Groq API key "
    "is configured I'll be answering with a real language model.",
    "Looks like you're testing the voice features. Speech recognition is working, "
    "so the next step is connecting a model for real conversations.",
    "Thanks for trying Careless Convo! Speak naturally, pause when you're done, "
    "and I'll take it from there.",
)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Conversation:
    def __init__(
        self,
        config: LLMConfig,
        api_key: str | None = None,
        client: AsyncGroq | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config
        self._client = client if client is not None else (AsyncGroq(api_key=api_key) if api_key else None)
        self._rng = rng or random.Random()
        self.messages: list[ChatMessage] = []
        self.is_generating = False
        self.streaming_content = ""
        self.error: str | None = None

    @property
    def demo_mode(self) -> bool:
        return self._client is None

    async def send_message(
        self,
        content: str,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> str | None:
        """Append a user turn and stream the assistant reply.

        Returns the full reply, or None when the message was ignored (empty,
        or a reply is already being generated) or generation failed.
        """
        text = content.strip()
        if not text:
            log.debug("event=message_ignored reason=empty")
            return None
        if self.is_generating:
            log.warning("event=state_guard msg=llm_already_running")
            return None

        self.messages.append(ChatMessage(role="user", content=text))
        self.is_generating = True
        self.streaming_content = ""
        self.error = None
        tokens: list[str] = []

        def _emit(token: str) -> None:
            tokens.append(token)
            self.streaming_content += token
            if on_token is not None:
                on_token(token)

        llm_start = time.perf_counter()
        try:
            history = self._build_messages()
            if self._client is None:
                await self._stream_demo(_emit)
            else:
                try:
                    await self._stream_groq(history, _emit)
                except groq.APIError as exc:
                    log.warning("event=llm_error error=%s fallback=demo", exc)
                    tokens.clear()
                    self.streaming_content = ""
                    await self._stream_demo(_emit)

            reply = "".join(tokens)
            self.messages.append(ChatMessage(role="assistant", content=reply))
            log.info(
                "event=llm_complete chars=%d duration_ms=%.1f demo=%s",
                len(reply), (time.perf_counter() - llm_start) * 1000, self.demo_mode,
            )
            return reply
        except Exception as exc:
            log.error("event=llm_error error=%s", exc, exc_info=True)
            self.error = str(exc) or "Failed to generate response"
            return None
        finally:
            self.streaming_content = ""
            self.is_generating = False

    def clear(self) -> None:
        self.messages = []
        self.streaming_content = ""
        self.error = None

    def _build_messages(self) -> list[dict]:
        """System prompt + the most recent max_history_turns user/assistant pairs."""
        recent = self.messages[-self.config.max_history_turns * 2:]
        return [{"role": "system", "content": self.config.system_prompt}] + [
            {"role": m.role, "content": m.content} for m in recent
        ]

    async def _stream_groq(self, messages: list[dict], emit: Callable[[str], None]) -> None:
        params = {}
        if self.config.temperature is not None:
            params["temperature"] = self.config.temperature
        if self.config.max_tokens is not None:
            params["max_tokens"] = self.config.max_tokens

        log.info("event=llm_start model=%s history=%d", self.config.model, len(messages))
        stream = await self._client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            stream=True,
            **params,
        )
        first = True
        async for chunk in stream:
            if not chunk.choices:
                continue
            token = chunk.choices[0].delta.content
            if not token:
                continue
            if first:
                first = False
                log.debug("event=llm_first_token")
            emit(token)

    async def _stream_demo(self, emit: Callable[[str], None]) -> None:
        reply = self._rng.choice(DEMO_RESPONSES)
        log.info("event=demo_reply chars=%d", len(reply))
        for ch in reply:
            await asyncio.sleep(
                self.config.demo_token_delay_sec + self._rng.random() * self.config.demo_token_jitter_sec
            )
            emit(ch)
