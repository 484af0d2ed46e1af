"""
Communication Bus: append-only message log plus per-agent mailboxes.
"""

import threading
from typing import Any, Dict, Iterator, List, Optional

from ..models.core import Message, MessageKind
from ..models.errors import NotFoundError, ValidationError
from ..utils.logging import get_logger
from .events import EventKind, EventPublisher
from .registry import AgentRegistry

SYSTEM_SENDER_ID = "orchestrator"


class CommunicationBus:
    """
    Relays messages between agents.

    Every message is appended to a global log and to the recipient's mailbox;
    its ``offset`` is its position in that mailbox. Each recipient also has a
    read cursor into its mailbox. Ordering is FIFO per (sender, recipient)
    pair because appends are serialized by the bus lock.
    """

    def __init__(self, registry: AgentRegistry, events: Optional[EventPublisher] = None):
        self.registry = registry
        self.events = events or registry.events
        self._log: List[Message] = []
        self._mailboxes: Dict[str, List[Message]] = {}
        self._cursors: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(f"{__name__}.CommunicationBus")

    def _append(self, from_agent_id: str, to_agent_id: str, payload: Any, kind: MessageKind) -> Message:
        with self._lock:
            mailbox = self._mailboxes.setdefault(to_agent_id, [])
            message = Message(
                from_agent_id=from_agent_id,
                to_agent_id=to_agent_id,
                payload=payload,
                kind=kind,
                offset=len(mailbox)
            )
            mailbox.append(message)
            self._log.append(message)

        self.events.publish(
            EventKind.MESSAGE_SENT,
            message.id,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            message_kind=kind.value,
            offset=message.offset
        )
        return message

    def _require_agent(self, agent_id: str, role: str) -> None:
        if not self.registry.exists(agent_id):
            raise NotFoundError(f"Unknown {role} agent: {agent_id}", agent_id=agent_id)

    def send(self, from_agent_id: str, to_agent_id: str, payload: Any) -> Message:
        """
        Send a direct message from one agent to another.

        Raises:
            NotFoundError: If either agent is unknown
        """
        self._require_agent(from_agent_id, "sender")
        self._require_agent(to_agent_id, "recipient")

        message = self._append(from_agent_id, to_agent_id, payload, MessageKind.DIRECT)
        self.logger.debug(
            "Message sent",
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            offset=message.offset
        )
        return message

    def broadcast(self, from_agent_id: str, payload: Any) -> List[Message]:
        """Send one message to every other registered agent."""
        self._require_agent(from_agent_id, "sender")

        messages = [
            self._append(from_agent_id, agent.id, payload, MessageKind.BROADCAST)
            for agent in self.registry.list()
            if agent.id != from_agent_id
        ]
        self.logger.info("Broadcast sent", from_agent_id=from_agent_id, recipients=len(messages))
        return messages

    def deliver(self, to_agent_id: str, payload: Any, kind: MessageKind = MessageKind.DELEGATION) -> Message:
        """Deliver an orchestrator-originated message (delegation, cancellation)."""
        return self._append(SYSTEM_SENDER_ID, to_agent_id, payload, kind)

    def receive(self, agent_id: str, since_offset: Optional[int] = None) -> Iterator[Message]:
        """
        Lazily iterate over an agent's mailbox.

        Without ``since_offset`` iteration resumes after the last message this
        agent consumed, and the cursor advances as messages are yielded. With
        an explicit offset, messages at or after it are replayed and the
        cursor is left untouched.

        Raises:
            NotFoundError: If the agent is unknown
            ValidationError: If ``since_offset`` is negative
        """
        self._require_agent(agent_id, "recipient")
        if since_offset is not None and since_offset < 0:
            raise ValidationError("since_offset cannot be negative", since_offset=since_offset)

        return self._iterate(agent_id, since_offset)

    def _iterate(self, agent_id: str, since_offset: Optional[int]) -> Iterator[Message]:
        with self._lock:
            start = self._cursors.get(agent_id, 0) if since_offset is None else since_offset
            pending = self._mailboxes.get(agent_id, [])[start:]

        for message in pending:
            if since_offset is None:
                with self._lock:
                    self._cursors[agent_id] = max(self._cursors.get(agent_id, 0), message.offset + 1)
            yield message

    def mailbox_size(self, agent_id: str) -> int:
        return len(self._mailboxes.get(agent_id, ()))

    def list_messages(self, agent_id: Optional[str] = None, limit: Optional[int] = 100) -> List[Message]:
        """
        Get the communications log, newest last.

        Args:
            agent_id: Only messages sent by or addressed to this agent
            limit: Maximum number of most recent messages
        """
        with self._lock:
            messages = list(self._log)
        if agent_id is not None:
            messages = [m for m in messages if agent_id in (m.from_agent_id, m.to_agent_id)]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    @property
    def total_messages(self) -> int:
        return len(self._log)
