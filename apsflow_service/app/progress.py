"""
Session-keyed progress channel.

Every progress line a route or background job emits is appended to the
history of the caller's session with a per-session sequence number. Clients
read it either by polling ``GET /api/progress/{session}?since=N`` or over the
``/ws/progress/{session}`` WebSocket, which pushes new events as they arrive.

Requests without a session id publish nowhere; their lines still go to the
log through LoggingSink.

Sessions idle for longer than the TTL are forgotten whenever a new session
opens and on every health check.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from apsflow.progress import FanoutSink, LoggingSink, ProgressEvent, ProgressSink


class _Session:
    def __init__(self, history: int):
        self.seq = 0
        self.events: Deque[Dict[str, Any]] = deque(maxlen=history)
        self.touched = 0.0


class SessionSink(ProgressSink):
    """ProgressSink bound to one session of a hub."""

    def __init__(self, hub: "ProgressHub", session_id: str):
        self.hub = hub
        self.session_id = session_id

    def emit(self, step: str, message: str) -> None:
        self.hub.publish(self.session_id, step, message)


class ProgressHub:
    """
    Thread-safe store of recent progress events per session.

    Args:
        history: Events kept per session; older ones are dropped
        ttl: Seconds of inactivity after which ``prune`` forgets a session
        clock: Time source, replaceable in tests
    """

    def __init__(self, history: int = 500, ttl: float = 3600, clock: Callable[[], float] = time.time):
        self._history = max(1, history)
        self._ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, _Session] = {}
        self._cond = threading.Condition()

    def publish(self, session_id: str, step: str, message: str) -> Dict[str, Any]:
        """Append one event and wake any waiters. Returns the stored event."""
        event = ProgressEvent(step, message).to_dict()
        with self._cond:
            now = self._clock()
            session = self._sessions.get(session_id)
            if session is None:
                self._drop_idle(now)
                session = self._sessions[session_id] = _Session(self._history)
            session.seq += 1
            event["seq"] = session.seq
            session.events.append(event)
            session.touched = now
            self._cond.notify_all()
        return event

    def since(self, session_id: str, seq: int = 0) -> List[Dict[str, Any]]:
        """Events with a sequence number greater than ``seq``, oldest first."""
        with self._cond:
            session = self._sessions.get(session_id)
            if session is None:
                return []
            return [e for e in session.events if e["seq"] > seq]

    def last_seq(self, session_id: str) -> int:
        with self._cond:
            session = self._sessions.get(session_id)
            return session.seq if session else 0

    def wait(self, session_id: str, seq: int, timeout: float) -> List[Dict[str, Any]]:
        """Block until an event newer than ``seq`` exists or ``timeout`` passes."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                session = self._sessions.get(session_id)
                if session is not None and session.seq > seq:
                    return [e for e in session.events if e["seq"] > seq]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(remaining)

    def sink(self, session_id: Optional[str]) -> ProgressSink:
        """Sink for one request: the session channel (if any) plus the log."""
        if not session_id:
            return LoggingSink()
        return FanoutSink(SessionSink(self, session_id), LoggingSink())

    def _drop_idle(self, now: float) -> int:
        cutoff = now - self._ttl
        stale = [sid for sid, s in self._sessions.items() if s.touched < cutoff]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def prune(self) -> int:
        """Forget idle sessions. Returns how many were dropped."""
        with self._cond:
            return self._drop_idle(self._clock())

    def clear(self) -> None:
        with self._cond:
            self._sessions.clear()

    @property
    def session_count(self) -> int:
        with self._cond:
            return len(self._sessions)
