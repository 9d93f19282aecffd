"""
log_stream.py: per-profile broadcast of server output lines
-------------------------------------------------------------
Every published line goes to all current subscribers in publish order.
A subscriber sees only lines published after it attached, unless it asks
for a bounded backlog. A subscriber whose buffer overflows is dropped;
the others and the publisher are not affected.
"""

from __future__ import annotations
import threading
from collections import deque
from typing import Deque, Iterator, List, Optional

from .logging_setup import get_logger

log = get_logger("reforger.launcher.logstream")


class LogSubscription:
    def __init__(self, owner: "LogBroadcaster", limit: int):
        self._owner = owner
        self._limit = limit
        self._lines: Deque[str] = deque()
        self._cond = threading.Condition()
        self.closed = False
        self.dropped = False

    def _offer(self, line: str) -> bool:
        with self._cond:
            if self.closed:
                return False
            if len(self._lines) >= self._limit:
                self.closed = True
                self.dropped = True
                self._cond.notify_all()
                return False
            self._lines.append(line)
            self._cond.notify()
            return True

    def _end(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next line, or None on timeout or once the subscription has ended and is drained."""
        with self._cond:
            if not self._lines and not self.closed:
                self._cond.wait(timeout)
            if self._lines:
                return self._lines.popleft()
            return None

    @property
    def finished(self) -> bool:
        with self._cond:
            return self.closed and not self._lines

    def __iter__(self) -> Iterator[str]:
        while True:
            with self._cond:
                while not self._lines and not self.closed:
                    self._cond.wait()
                if not self._lines:
                    return
                line = self._lines.popleft()
            yield line

    def close(self) -> None:
        self._owner.unsubscribe(self)
        self._end()

    def __enter__(self) -> "LogSubscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class LogBroadcaster:
    def __init__(self, backlog_lines: int = 500, subscriber_limit: int = 1000):
        self._backlog: Deque[str] = deque(maxlen=backlog_lines if backlog_lines > 0 else 0)
        self._subscriber_limit = subscriber_limit
        self._subscribers: List[LogSubscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, line: str) -> None:
        with self._lock:
            self._backlog.append(line)
            alive = []
            for sub in self._subscribers:
                if sub._offer(line):
                    alive.append(sub)
                elif sub.dropped:
                    log.warning("Dropping log subscriber that fell %d lines behind", self._subscriber_limit)
            self._subscribers = alive

    def subscribe(self, backlog: int = 0) -> LogSubscription:
        if backlog < 0:
            raise ValueError("backlog must be >= 0")
        with self._lock:
            replay = list(self._backlog)[-backlog:] if backlog else []
            sub = LogSubscription(self, max(self._subscriber_limit, len(replay)))
            for line in replay:
                sub._offer(line)
            self._subscribers.append(sub)
            return sub

    def unsubscribe(self, sub: LogSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def tail(self, n: int) -> List[str]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._backlog)[-n:]

    def close(self) -> None:
        with self._lock:
            subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub._end()
