"""Live parser-log stream with bounded, time-boxed retention.

The channel keeps only the most recent entries for "live tail" subscribers and
drops each one after a fixed TTL, telling subscribers so they can clean up.
The permanent copy of a job's log lives in its ``JobLog`` transcript.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from showparser.models import LogEntry, LogLevel

TOPIC = "parser-logs"

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ChannelEventType(str, Enum):
    HISTORY = "parser-logs-history"
    ENTRY = "parser-log"
    EXPIRED = "parser-log-expired"
    CLEARED = "parser-logs-cleared"


@dataclass(frozen=True)
class ChannelEvent:
    type: ChannelEventType
    entries: tuple[LogEntry, ...] = ()
    entry_id: Optional[str] = None

    def to_message(self) -> dict:
        """Wire format used by the WebSocket endpoint."""
        if self.type == ChannelEventType.HISTORY:
            data = [e.model_dump(mode="json") for e in self.entries]
        elif self.type == ChannelEventType.ENTRY:
            data = self.entries[0].model_dump(mode="json")
        elif self.type == ChannelEventType.EXPIRED:
            data = self.entry_id
        else:
            data = None
        return {"topic": TOPIC, "event": self.type.value, "data": data}


class _Subscriber:
    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[Optional[ChannelEvent]] = asyncio.Queue(maxsize)

    def deliver(self, event: Optional[ChannelEvent]) -> None:
        # Publishers may run on another thread or loop.
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            pass  # subscriber loop already closed

    def _put(self, event: Optional[ChannelEvent]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Slow parser-log subscriber, dropping %s event", event.type.value if event else "close")


class LogChannel:
    def __init__(
        self,
        *,
        max_entries: int = 50,
        ttl_seconds: float = 10.0,
        subscriber_queue_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._queue_size = subscriber_queue_size
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: deque[tuple[LogEntry, float]] = deque()
        self._subscribers: set[_Subscriber] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timers: dict[str, asyncio.TimerHandle] = {}

    # -- lifecycle ---------------------------------------------------------

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Bind expiry timers to *loop* (the running loop by default)."""
        self._loop = loop or asyncio.get_running_loop()

    async def close(self) -> None:
        """Cancel pending expiry timers and end every subscription."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._loop = None
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for sub in subscribers:
            sub.deliver(None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # -- producers ---------------------------------------------------------

    def publish(self, message: str, level: LogLevel = LogLevel.INFO) -> LogEntry:
        entry = LogEntry(level=level, message=message)
        with self._lock:
            self._entries.append((entry, self._clock() + self._ttl))
            while len(self._entries) > self._max_entries:
                self._entries.popleft()
            subscribers = list(self._subscribers)
        event = ChannelEvent(ChannelEventType.ENTRY, (entry,))
        for sub in subscribers:
            sub.deliver(event)
        self._schedule_expiry(entry.id)
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            subscribers = list(self._subscribers)
        event = ChannelEvent(ChannelEventType.CLEARED)
        for sub in subscribers:
            sub.deliver(event)

    # -- readers -----------------------------------------------------------

    def snapshot(self) -> list[LogEntry]:
        """Entries still inside the live window, oldest first."""
        with self._lock:
            return self._live_entries_locked()

    async def subscribe(self) -> AsyncIterator[ChannelEvent]:
        """Yield the backlog, then live entries, expiries and clears until close()."""
        sub = _Subscriber(asyncio.get_running_loop(), self._queue_size)
        with self._lock:
            backlog = self._live_entries_locked()
            self._subscribers.add(sub)
        try:
            yield ChannelEvent(ChannelEventType.HISTORY, tuple(backlog))
            while True:
                event = await sub.queue.get()
                if event is None:
                    return
                yield event
        finally:
            with self._lock:
                self._subscribers.discard(sub)

    # -- internals ---------------------------------------------------------

    def _live_entries_locked(self) -> list[LogEntry]:
        now = self._clock()
        # TTL is constant, so entries expire in insertion order.
        while self._entries and self._entries[0][1] <= now:
            self._entries.popleft()
        return [entry for entry, _ in self._entries]

    def _schedule_expiry(self, entry_id: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._arm_timer, entry_id)
        except RuntimeError:
            pass

    def _arm_timer(self, entry_id: str) -> None:
        if self._loop is None:
            return
        self._timers[entry_id] = self._loop.call_later(self._ttl, self._expire, entry_id)

    def _expire(self, entry_id: str) -> None:
        self._timers.pop(entry_id, None)
        with self._lock:
            self._entries = deque(item for item in self._entries if item[0].id != entry_id)
            subscribers = list(self._subscribers)
        event = ChannelEvent(ChannelEventType.EXPIRED, entry_id=entry_id)
        for sub in subscribers:
            sub.deliver(event)


class JobLog:
    """Permanent transcript of one job that mirrors every line to the channel."""

    def __init__(
        self,
        channel: Optional[LogChannel] = None,
        transcript: Optional[list[LogEntry]] = None,
    ) -> None:
        self._channel = channel
        self.entries: list[LogEntry] = transcript if transcript is not None else []

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> LogEntry:
        if self._channel is not None:
            entry = self._channel.publish(message, level)
        else:
            entry = LogEntry(level=level, message=message)
        self.entries.append(entry)
        logger.log(_PY_LEVELS[level], message)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.log(message, LogLevel.INFO)

    def success(self, message: str) -> LogEntry:
        return self.log(message, LogLevel.SUCCESS)

    def warning(self, message: str) -> LogEntry:
        return self.log(message, LogLevel.WARNING)

    def error(self, message: str) -> LogEntry:
        return self.log(message, LogLevel.ERROR)
