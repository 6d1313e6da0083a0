"""
Progress reporting

Workflows report human-readable progress lines through a ProgressSink. The
sink is purely observational: a failing or slow sink never changes the
outcome of a workflow step. The web service implements it with a
session-keyed push channel; the CLI prints; tests collect into memory.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass
class ProgressEvent:
    """One emitted progress line."""
    step: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "message": self.message,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
        }


class ProgressSink(ABC):
    """Receiver of progress lines."""

    @abstractmethod
    def emit(self, step: str, message: str) -> None:
        pass

    def step(self, step: str) -> None:
        """Announce the start of a workflow step."""
        self.emit(step, f"--- Step: {step.upper()} ---")

    def error(self, step: str, message: str) -> None:
        self.emit(step, f"--- ERROR ---\n{message}")


class NullSink(ProgressSink):
    def emit(self, step: str, message: str) -> None:
        return None


class LoggingSink(ProgressSink):
    """Writes every line to a logger at INFO."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("apsflow.progress")

    def emit(self, step: str, message: str) -> None:
        self._logger.info("[%s] %s", step, message)


class MemorySink(ProgressSink):
    """Thread-safe, ordered in-memory sink."""

    def __init__(self):
        self._events: List[ProgressEvent] = []
        self._lock = threading.Lock()

    def emit(self, step: str, message: str) -> None:
        with self._lock:
            self._events.append(ProgressEvent(step, message))

    @property
    def events(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._events)

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.events]


class FanoutSink(ProgressSink):
    """Forwards each line to several sinks."""

    def __init__(self, *sinks: ProgressSink):
        self._sinks = sinks

    def emit(self, step: str, message: str) -> None:
        for sink in self._sinks:
            sink.emit(step, message)


NULL_SINK = NullSink()
