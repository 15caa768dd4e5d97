from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("guard.run")


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


_MARKERS: Dict[Severity, str] = {
    Severity.DEBUG: "·",
    Severity.INFO: "ℹ️",
    Severity.SUCCESS: "✅",
    Severity.WARN: "⚠️",
    Severity.ERROR: "❌",
    Severity.CRITICAL: "🔥",
}

_LOG_LEVELS: Dict[Severity, int] = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class LogEvent:
    offset: int
    timestamp: float
    severity: Severity
    message: str
    entry_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "offset": self.offset,
            "timestamp": self.timestamp,
            "level": self.severity.value,
            "message": self.message,
            "entry": self.entry_id,
        }


def render(event: LogEvent) -> str:
    prefix = f"[{event.entry_id}] " if event.entry_id else ""
    return f"{_MARKERS[event.severity]} {prefix}{event.message}"


def classify(line: str) -> Severity:
    """Best-effort severity for untagged text lines (e.g. captured from a subprocess)."""
    if "🔥" in line or "DATA LOSS" in line:
        return Severity.CRITICAL
    if "✅" in line or "PASSED" in line or "success" in line.lower():
        return Severity.SUCCESS
    if "❌" in line or "FAILED" in line or "Error:" in line:
        return Severity.ERROR
    if "⚠️" in line or "WARNING" in line or "warn" in line.lower():
        return Severity.WARN
    if "ℹ️" in line or "🚀" in line or "📋" in line or "✓" in line:
        return Severity.INFO
    return Severity.DEBUG


class RunLog:
    """
    Append-only, line-oriented event stream for one run.

    Readers poll with ``since(offset)``; subscribers get each event as it is
    emitted. Safe to read from another thread while a run is writing.
    """

    def __init__(self, echo: bool = True) -> None:
        self._events: List[LogEvent] = []
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[LogEvent], None]] = []
        self.echo = echo

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def subscribe(self, callback: Callable[[LogEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def emit(self, severity: Severity, message: str, entry_id: Optional[str] = None) -> LogEvent:
        with self._lock:
            event = LogEvent(
                offset=len(self._events),
                timestamp=time.time(),
                severity=severity,
                message=message,
                entry_id=entry_id,
            )
            self._events.append(event)
            subscribers = list(self._subscribers)
        if self.echo:
            logger.log(_LOG_LEVELS[severity], render(event))
        for callback in subscribers:
            callback(event)
        return event

    def emit_line(self, line: str) -> LogEvent:
        return self.emit(classify(line), line)

    def since(self, offset: int = 0) -> List[LogEvent]:
        with self._lock:
            return self._events[max(offset, 0):]

    def events(self) -> List[LogEvent]:
        return self.since(0)
