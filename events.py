# events.py
"""In-process event bus carrying worker lifecycle events.

Events are keyed by a ``Channel``: the event kind plus the handle id of the
worker process that produced it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class Channel:
    kind: str
    handle_id: str

    def __str__(self):
        return f"{self.kind}-{self.handle_id}"


@dataclass(frozen=True)
class ProgressEvent:
    handle_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    kind = PROGRESS


@dataclass(frozen=True)
class CompleteEvent:
    handle_id: str
    exit_code: int
    kind = COMPLETE


@dataclass(frozen=True)
class ErrorEvent:
    handle_id: str
    message: str
    kind = ERROR


def channel_for(event):
    return Channel(event.kind, event.handle_id)


class Subscription:
    """Handle returned by ``EventBus.subscribe``; ``cancel()`` is idempotent."""

    def __init__(self, bus, channel, callback):
        self._bus = bus
        self.channel = channel
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._bus._remove(self)


class EventBus:
    """Simple in-memory pub/sub with synchronous delivery."""

    def __init__(self) -> None:
        self._subs: Dict[Channel, List[Subscription]] = {}

    def subscribe(self, channel: Channel, callback: Callable[[Any], None]) -> Subscription:
        sub = Subscription(self, channel, callback)
        self._subs.setdefault(channel, []).append(sub)
        logger.debug("Subscribed %s to %s", getattr(callback, "__name__", repr(callback)), channel)
        return sub

    def publish(self, event) -> int:
        """Deliver *event* to the subscribers of its channel; returns how many got it."""
        channel = channel_for(event)
        # Copy: a callback may cancel subscriptions while we iterate
        subs = list(self._subs.get(channel, []))
        delivered = 0
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub.callback(event)
                delivered += 1
            except Exception:
                logger.exception("Handler error for channel=%s", channel)
        if not subs:
            logger.debug("No subscribers for %s", channel)
        return delivered

    def subscriber_count(self, channel: Channel) -> int:
        return len(self._subs.get(channel, []))

    def _remove(self, sub):
        subs = self._subs.get(sub.channel, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.channel, None)
