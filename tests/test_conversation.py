import random
import unittest
from types import SimpleNamespace
from unittest import mock

import groq
import httpx

from careless_convo.config import LLMConfig
from careless_convo.conversation import DEMO_RESPONSES, ChatMessage, Conversation


def instant_config(**overrides) -> LLMConfig:
    return LLMConfig(demo_token_delay_sec=0.0, demo_token_jitter_sec=0.0, **overrides)


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


def fake_client(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestDemoMode(unittest.IsolatedAsyncioTestCase):
    async def test_streams_a_canned_reply(self):
        conv = Conversation(instant_config(), rng=random.Random(7))
        self.assertTrue(conv.demo_mode)
        tokens = []
        reply = await conv.send_message("  hi there ", on_token=tokens.append)

        self.assertIn(reply, DEMO_RESPONSES)
        self.assertEqual("".join(tokens), reply)
        self.assertEqual([m.role for m in conv.messages], ["user", "assistant"])
        self.assertEqual(conv.messages[0].content, "hi there")
        self.assertEqual(conv.messages[1].content, reply)
        self.assertFalse(conv.is_generating)
        self.assertEqual(conv.streaming_content, "")
        self.assertIsNone(conv.error)

    async def test_empty_input_is_ignored(self):
        conv = Conversation(instant_config())
        self.assertIsNone(await conv.send_message("   "))
        self.assertEqual(conv.messages, [])

    async def test_ignored_while_generating(self):
        conv = Conversation(instant_config())
        conv.is_generating = True
        self.assertIsNone(await conv.send_message("hello"))
        self.assertEqual(conv.messages, [])

    async def test_clear(self):
        conv = Conversation(instant_config())
        await conv.send_message("hello")
        conv.clear()
        self.assertEqual(conv.messages, [])


class TestGroqStreaming(unittest.IsolatedAsyncioTestCase):
    async def test_streams_tokens_from_groq(self):
        create = mock.AsyncMock(return_value=FakeStream([_chunk("Hel"), _chunk(None), _chunk("lo!")]))
        conv = Conversation(instant_config(temperature=0.5), client=fake_client(create))
        self.assertFalse(conv.demo_mode)

        tokens = []
        reply = await conv.send_message("greet me", on_token=tokens.append)

        self.assertEqual(reply, "Hello!")
        self.assertEqual(tokens, ["Hel", "lo!"])
        kwargs = create.await_args.kwargs
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["temperature"], 0.5)
        self.assertNotIn("max_tokens", kwargs)
        self.assertEqual(kwargs["messages"][0]["role"], "system")
        self.assertEqual(kwargs["messages"][-1], {"role": "user", "content": "greet me"})

    async def test_api_error_falls_back_to_demo(self):
        request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
        create = mock.AsyncMock(side_effect=groq.APIConnectionError(request=request))
        conv = Conversation(instant_config(), client=fake_client(create))

        reply = await conv.send_message("hello")

        self.assertIn(reply, DEMO_RESPONSES)
        self.assertIsNone(conv.error)
        self.assertEqual(conv.messages[-1].content, reply)

    async def test_unexpected_error_is_surfaced(self):
        create = mock.AsyncMock(side_effect=RuntimeError("boom"))
        conv = Conversation(instant_config(), client=fake_client(create))

        self.assertIsNone(await conv.send_message("hello"))
        self.assertEqual(conv.error, "boom")
        self.assertFalse(conv.is_generating)
        self.assertEqual([m.role for m in conv.messages], ["user"])


class TestHistory(unittest.TestCase):
    def test_context_keeps_recent_turns(self):
        conv = Conversation(instant_config(max_history_turns=1))
        for i in range(3):
            conv.messages.append(ChatMessage(role="user", content=f"q{i}"))
            conv.messages.append(ChatMessage(role="assistant", content=f"a{i}"))

        context = conv._build_messages()
        self.assertEqual([m["content"] for m in context[1:]], ["q2", "a2"])
        self.assertEqual(len(conv.messages), 6)

    def test_message_ids_are_unique(self):
        a = ChatMessage(role="user", content="x")
        b = ChatMessage(role="user", content="x")
        self.assertNotEqual(a.id, b.id)


if __name__ == "__main__":
    unittest.main()
