"""One-shot end-of-utterance countdown on the asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger("careless_convo.utterance_timer")


class UtteranceTimer:
    """At most one pending deadline; fires ``on_fire`` once, then clears.

    ``start()`` while a deadline is pending is a no-op, so the original
    deadline is kept.  ``cancel()`` is safe to call at any time.
    """

    def __init__(
        self,
        duration: float,
        on_fire: Callable[[], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.duration = duration
        self._on_fire = on_fire
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def start(self) -> bool:
        """Schedule the deadline.  Returns False if one was already pending."""
        if self._handle is not None:
            log.debug("event=utterance_timer_start_ignored reason=pending")
            return False
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.duration, self._fire)
        log.debug("event=utterance_timer_start delay_ms=%d", int(self.duration * 1000))
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            log.debug("event=utterance_timer_cancel")

    def _fire(self) -> None:
        self._handle = None
        log.debug("event=utterance_timer_fired")
        self._on_fire()
