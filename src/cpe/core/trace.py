"""Per-session real-time trace stream for observing clients."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from cpe.core.types import TraceEvent

logger = logging.getLogger(__name__)

TraceSubscriber = Callable[[TraceEvent], None]

PROPOSAL_EMITTED = "proposal.emitted"
PLUGIN_SKIPPED = "plugin.skipped"
PLUGIN_FAILED = "plugin.failed"
PLUGIN_DONE = "plugin.done"
BUDGET_EXHAUSTED = "budget.exhausted"
DECISION_FINALIZED = "decision.finalized"
SESSION_STARTED = "session.started"
SESSION_CANCELLED = "session.cancelled"
SESSION_COMPLETED = "session.completed"


class TraceStream:
    """Ordered event stream with a bounded replay buffer.

    Events carry a monotonically increasing sequence number per stream, so a
    late subscriber can replay `history()` and then continue live without gaps.
    """

    def __init__(self, session_id: str, max_events: int = 200) -> None:
        self.session_id = session_id
        self._events: deque[TraceEvent] = deque(maxlen=max_events)
        self._subscribers: list[TraceSubscriber] = []
        self._seq = 0
        self._lock = threading.Lock()

    def subscribe(self, subscriber: TraceSubscriber) -> Callable[[], None]:
        """Register a live subscriber and return its unsubscribe callable."""
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, kind: str, **payload: Any) -> TraceEvent:
        with self._lock:
            self._seq += 1
            event = TraceEvent(kind=kind, session_id=self.session_id, seq=self._seq, payload=payload)
            self._events.append(event)
            subscribers = list(self._subscribers)

        logger.debug("trace session_id=%s seq=%s kind=%s", self.session_id, event.seq, kind)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as exc:  # pragma: no cover
                logger.warning(
                    "trace_subscriber_failed session_id=%s kind=%s error=%s",
                    self.session_id,
                    kind,
                    exc,
                )
        return event

    def history(self, since_seq: int = 0) -> list[TraceEvent]:
        with self._lock:
            return [event for event in self._events if event.seq > since_seq]

    def kinds(self) -> list[str]:
        return [event.kind for event in self.history()]
