import asyncio
import unittest

from careless_convo.utterance_timer import UtteranceTimer


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    def __init__(self):
        self.handles: list[FakeHandle] = []

    def call_later(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle


class TestUtteranceTimer(unittest.TestCase):
    def setUp(self):
        self.loop = FakeLoop()
        self.fired = 0
        self.timer = UtteranceTimer(1.2, self._on_fire, loop=self.loop)

    def _on_fire(self):
        self.fired += 1

    def test_restart_while_pending_keeps_original_deadline(self):
        self.assertTrue(self.timer.start())
        self.assertFalse(self.timer.start())
        self.assertEqual(len(self.loop.handles), 1)
        self.assertEqual(self.loop.handles[0].delay, 1.2)

        self.loop.handles[0].callback()
        self.assertEqual(self.fired, 1)
        self.assertFalse(self.timer.pending)

    def test_can_start_again_after_firing(self):
        self.timer.start()
        self.loop.handles[0].callback()
        self.assertTrue(self.timer.start())
        self.assertEqual(len(self.loop.handles), 2)

    def test_cancel_is_idempotent(self):
        self.timer.start()
        self.timer.cancel()
        self.timer.cancel()
        self.assertTrue(self.loop.handles[0].cancelled)
        self.assertFalse(self.timer.pending)
        self.assertEqual(self.fired, 0)

    def test_cancel_without_start(self):
        self.timer.cancel()
        self.assertFalse(self.timer.pending)


class TestUtteranceTimerOnLoop(unittest.IsolatedAsyncioTestCase):
    async def test_fires_once_on_running_loop(self):
        fired = []
        timer = UtteranceTimer(0.01, lambda: fired.append(True))
        timer.start()
        await asyncio.sleep(0.05)
        self.assertEqual(fired, [True])
        self.assertFalse(timer.pending)

    async def test_cancelled_timer_does_not_fire(self):
        fired = []
        timer = UtteranceTimer(0.01, lambda: fired.append(True))
        timer.start()
        timer.cancel()
        await asyncio.sleep(0.05)
        self.assertEqual(fired, [])


if __name__ == "__main__":
    unittest.main()
