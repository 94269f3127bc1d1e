# ==============================================================================
# FILE: core/coalescer.py
# PURPOSE: Single-slot mailbox that flushes the latest snapshot once per frame.
# ==============================================================================
import asyncio
import logging
from typing import Any, Callable, Optional

log = logging.getLogger("connscope.coalescer")

FRAME_INTERVAL_S = 1 / 60
HIDDEN_FLUSH_DELAY_S = 0.016


class RenderCoalescer:
    """
    Holds at most one pending value. push() overwrites it and schedules a
    flush on the event loop if none is scheduled yet; the flush hands the
    latest value to `sink`. Intermediate values are dropped on purpose.
    """

    def __init__(self, sink: Callable[[Any], None], loop: Optional[asyncio.AbstractEventLoop] = None,
                 frame_interval: float = FRAME_INTERVAL_S, hidden_delay: float = HIDDEN_FLUSH_DELAY_S):
        self._sink = sink
        self._loop = loop
        self.frame_interval = frame_interval
        self.hidden_delay = hidden_delay
        self.hidden = False
        self._pending: Any = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self.flushes = 0

    @property
    def pending(self) -> Any:
        return self._pending

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def push(self, value: Any):
        self._pending = value
        self._schedule()

    def _schedule(self):
        if self._handle is not None:
            return
        delay = self.hidden_delay if self.hidden else self.frame_interval
        self._handle = self._get_loop().call_later(delay, self.flush)

    def flush(self):
        """Delivers the pending value now, if any."""
        self._cancel_handle()
        value = self._pending
        self._pending = None
        if value is None:
            return
        self.flushes += 1
        try:
            self._sink(value)
        except Exception:
            log.exception("render flush failed")

    def set_hidden(self, hidden: bool):
        """Switches between frame pacing and the hidden-tab fallback timer."""
        hidden = bool(hidden)
        if hidden == self.hidden:
            return
        self.hidden = hidden
        if self._handle is not None:
            self._cancel_handle()
            if self._pending is not None:
                self._schedule()

    def _cancel_handle(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def cancel(self):
        """Discards the pending value and any scheduled flush."""
        self._cancel_handle()
        self._pending = None
