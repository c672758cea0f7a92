"""Structured channel for degraded-but-valid conditions.

Ranking code never raises for a missing embedding or an absent ANN backend; it
emits a :class:`DiagnosticEvent` instead. Callers subscribe to the channel to
collect those events (for metrics, request traces or tests) and every event is
also written to the component's logger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


def get_logger(name: str) -> logging.Logger:
    component_logger = logging.getLogger(name)
    # Ensure INFO-level messages surface unless overridden globally.
    if component_logger.level == logging.NOTSET:
        component_logger.setLevel(logging.INFO)
    if not component_logger.handlers and not logging.getLogger().handlers:
        _stream: logging.Handler = logging.StreamHandler()
        _stream.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
        component_logger.addHandler(_stream)
    return component_logger


@dataclass(frozen=True)
class DiagnosticEvent:
    code: str
    component: str
    message: str
    level: int = logging.WARNING
    details: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[DiagnosticEvent], None]


class DiagnosticsChannel:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; the returned function removes it again."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(
        self,
        code: str,
        component: str,
        message: str,
        *,
        level: int = logging.WARNING,
        **details: Any,
    ) -> DiagnosticEvent:
        event = DiagnosticEvent(
            code=code,
            component=component,
            message=message,
            level=level,
            details=dict(details),
        )
        logging.getLogger(component).log(level, "[%s] %s", code, message)

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # pragma: no cover
                logger.exception("Diagnostics subscriber failed for event %s", code)
        return event


default_channel = DiagnosticsChannel()


class EventRecorder:
    """Subscriber that keeps every event it sees, mostly for tests and traces."""

    def __init__(self) -> None:
        self.events: List[DiagnosticEvent] = []

    def __call__(self, event: DiagnosticEvent) -> None:
        self.events.append(event)

    def codes(self) -> List[str]:
        return [event.code for event in self.events]
