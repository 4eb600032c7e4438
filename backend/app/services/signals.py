"""
Process-wide "feedback ready" signal.

When a capture has reached the processing server, the lifecycle controller
announces it here so live clients can jump straight to the new feedback.
Each consumer gets its own bounded asyncio.Queue; publishing never blocks
and drops the event for a consumer whose queue is full.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_MAXSIZE = 100


@dataclass(frozen=True)
class FeedbackReady:
    feedback_id: str
    user_id: str


class FeedbackSignals:
    """Broadcasts FeedbackReady events to every subscribed queue."""

    def __init__(self, queue_maxsize: int = DEFAULT_QUEUE_MAXSIZE):
        self._subscribers: list[asyncio.Queue] = []
        self._queue_maxsize = queue_maxsize

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers.append(queue)
        logger.debug("Signal subscriber added (total: %d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            return
        logger.debug("Signal subscriber removed (remaining: %d)", len(self._subscribers))

    def publish_feedback_ready(self, feedback_id: str, user_id: str) -> FeedbackReady:
        event = FeedbackReady(feedback_id=feedback_id, user_id=user_id)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Signal queue full, dropping feedback_ready for %s", feedback_id)
        logger.info("Feedback %s ready for viewing", feedback_id)
        return event


# Global singleton instance
_signals: Optional[FeedbackSignals] = None


def get_feedback_signals() -> FeedbackSignals:
    """Get the global feedback signal broadcaster."""
    global _signals
    if _signals is None:
        _signals = FeedbackSignals()
    return _signals
