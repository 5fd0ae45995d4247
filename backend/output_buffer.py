"""Time-windowed batching of streamed agent text.

Agents emit text a few characters at a time. Forwarding every fragment as
its own event floods observers, so fragments are collected and delivered
as one ordered batch per flush window.
"""

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_FLUSH_INTERVAL_SECONDS = 0.05


class OutputBuffer:
    """Collects text fragments and delivers them in batches.

    The first push after a flush arms a timer on the running event loop;
    when it fires, every fragment queued so far is handed to ``on_flush`` as
    a single list, in push order.

    Attributes:
        flush_interval: Seconds between the first queued fragment and delivery.
    """

    def __init__(
        self,
        on_flush: Callable[[list[str]], None],
        flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
    ) -> None:
        self._on_flush = on_flush
        self.flush_interval = flush_interval
        self._queue: list[str] = []
        self._handle: asyncio.TimerHandle | None = None
        self._destroyed = False

    @property
    def pending(self) -> int:
        """Number of fragments waiting for delivery."""
        return len(self._queue)

    def push(self, fragment: str) -> None:
        """Queue a fragment and arm the flush timer if it is not armed."""
        if self._destroyed:
            return
        self._queue.append(fragment)
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.flush_interval, self.flush)

    def flush(self) -> None:
        """Deliver every queued fragment now. No-op when nothing is queued."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._queue:
            return
        batch = self._queue
        self._queue = []
        try:
            self._on_flush(batch)
        except Exception as e:
            logger.error("output_flush_failed", fragments=len(batch), error=str(e))

    def destroy(self) -> None:
        """Cancel any pending flush and discard queued fragments."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._queue:
            logger.debug("output_buffer_discarded", fragments=len(self._queue))
        self._queue = []
        self._destroyed = True
