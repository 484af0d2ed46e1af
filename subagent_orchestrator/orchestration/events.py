"""
State-change notifications for the orchestrator.

Every mutation publishes an ``OrchestratorEvent``. Subscribers are called
synchronously once the publishing operation has released its locks; a bounded
history lets polling clients catch up with ``events_since``.
"""

import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from ..utils.logging import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    """Kinds of state changes."""
    AGENT_REGISTERED = "agent.registered"
    AGENT_STARTED = "agent.started"
    AGENT_STOPPED = "agent.stopped"
    AGENT_DEREGISTERED = "agent.deregistered"
    AGENT_STATUS_CHANGED = "agent.status_changed"
    TASK_SUBMITTED = "task.submitted"
    TASK_DELEGATED = "task.delegated"
    TASK_RUNNING = "task.running"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_CANCELLED = "task.cancelled"
    TASK_REQUEUED = "task.requeued"
    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_STEP_CHANGED = "workflow.step_changed"
    WORKFLOW_STATUS_CHANGED = "workflow.status_changed"
    MESSAGE_SENT = "message.sent"


@dataclass(frozen=True)
class OrchestratorEvent:
    """An immutable record of a state change."""
    kind: EventKind
    entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "data": self.data,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat()
        }


EventHandler = Callable[[OrchestratorEvent], None]


class EventPublisher:
    """Publishes state-change events to subscribers and keeps a bounded history."""

    def __init__(self, history_size: int = 1000):
        self._handlers: Dict[str, tuple] = {}
        self._history: Deque[OrchestratorEvent] = deque(maxlen=history_size or None)
        self._keep_history = history_size > 0
        self._sequence = 0
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, kinds: Optional[Iterable[EventKind]] = None) -> str:
        """
        Register a handler for events.

        Args:
            handler: Callable invoked with each matching event
            kinds: Event kinds to receive; all kinds when omitted

        Returns:
            Subscription id for ``unsubscribe``
        """
        subscription_id = str(uuid.uuid4())
        kind_filter: Optional[Set[EventKind]] = set(kinds) if kinds else None
        with self._lock:
            self._handlers[subscription_id] = (handler, kind_filter)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._handlers.pop(subscription_id, None) is not None

    def publish(self, kind: EventKind, entity_id: str, **data: Any) -> OrchestratorEvent:
        """Record an event and notify matching subscribers."""
        with self._lock:
            self._sequence += 1
            event = OrchestratorEvent(kind=kind, entity_id=entity_id, data=data, sequence=self._sequence)
            if self._keep_history:
                self._history.append(event)
            handlers = list(self._handlers.values())

        for handler, kind_filter in handlers:
            if kind_filter is not None and kind not in kind_filter:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_kind=kind.value,
                    entity_id=entity_id,
                    error=str(e),
                    exc_info=True
                )
        return event

    def publish_all(self, events: Iterable[tuple]) -> None:
        """Publish ``(kind, entity_id, data)`` tuples collected under a lock."""
        for kind, entity_id, data in events:
            self.publish(kind, entity_id, **data)

    def events_since(self, sequence: int = 0, limit: Optional[int] = None) -> List[OrchestratorEvent]:
        """Events with a sequence number greater than ``sequence``, oldest first."""
        with self._lock:
            events = [event for event in self._history if event.sequence > sequence]
        if limit is not None:
            events = events[:limit]
        return events

    @property
    def last_sequence(self) -> int:
        return self._sequence
