"""
Agent Registry with lifecycle management for the Subagent Orchestrator.

The registry exclusively owns Agent records. Every mutation of an agent runs
under that agent's lock; membership changes (and the capability index that
derives from membership) run under the registry write lock. Queries return
copies of the records and take no locks.
"""

import itertools
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from ..models.core import (
    Agent, AgentFilter, AgentSpec, AgentSpecialization, AgentStatus, new_id
)
from ..models.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..utils.logging import get_logger
from ..utils.validation import normalize_tags, parse_model
from .capabilities import CapabilityIndex
from .events import EventKind, EventPublisher
from .templates import build_agent_spec

logger = get_logger(__name__)

PendingEvents = Optional[List[tuple]]


class AgentRegistry:
    """
    Registry of agents and their lifecycle state machine.

    State machine::

        offline <-> idle -> working -> {idle | error | waiting}
        waiting -> working
        error -> idle            (reset)
        any -> offline           (stop)
    """

    def __init__(
        self,
        events: Optional[EventPublisher] = None,
        auto_start_agents: bool = True,
        default_max_concurrent_tasks: int = 3
    ):
        self.events = events or EventPublisher()
        self.auto_start_agents = auto_start_agents
        self.default_max_concurrent_tasks = default_max_concurrent_tasks
        self._agents: Dict[str, Agent] = {}
        self._agent_locks: Dict[str, threading.RLock] = {}
        self._write_lock = threading.RLock()
        self._sequence = itertools.count(1)
        self._stop_listeners: List[Callable[[str], None]] = []
        self._deregister_listeners: List[Callable[[str], None]] = []
        self.capability_index = CapabilityIndex(self._agents)
        self.logger = get_logger(f"{__name__}.AgentRegistry")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_live(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}", agent_id=agent_id)
        return agent

    @contextmanager
    def _locked(self, agent_id: str) -> Iterator[Agent]:
        """Hold the agent's lock and yield its live record."""
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            raise NotFoundError(f"Agent not found: {agent_id}", agent_id=agent_id)
        with lock:
            yield self._get_live(agent_id)

    def _set_status(self, agent: Agent, status: AgentStatus, pending: List[tuple]) -> None:
        previous = agent.status
        if previous == status:
            return
        agent.status = status
        pending.append((
            EventKind.AGENT_STATUS_CHANGED,
            agent.id,
            {"previous": previous.value, "status": status.value, "active_task_count": agent.active_task_count}
        ))

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(self, spec: Union[AgentSpec, Dict[str, Any]]) -> Agent:
        """
        Register a new agent.

        Args:
            spec: Agent specification (model or dict)

        Returns:
            Agent: Copy of the registered agent

        Raises:
            ValidationError: Unknown role/specialization/priority or capacity below 1
            ConflictError: An agent with the same id already exists
        """
        spec = parse_model(AgentSpec, spec, "agent spec")

        max_tasks = spec.max_concurrent_tasks
        if max_tasks is None:
            max_tasks = self.default_max_concurrent_tasks
        if max_tasks < 1:
            raise ValidationError(
                f"max_concurrent_tasks must be at least 1, got {max_tasks}",
                field="max_concurrent_tasks"
            )
        if not spec.name.strip():
            raise ValidationError("Agent name cannot be empty", field="name")

        capabilities = normalize_tags(spec.capabilities)
        now = datetime.now()

        with self._write_lock:
            agent_id = spec.id or new_id()
            if agent_id in self._agents:
                raise ConflictError(f"Agent already registered: {agent_id}", agent_id=agent_id)

            agent = Agent(
                id=agent_id,
                name=spec.name.strip(),
                description=spec.description,
                role=spec.role,
                specializations=set(spec.specializations),
                capabilities=capabilities,
                max_concurrent_tasks=max_tasks,
                priority=spec.priority,
                status=AgentStatus.IDLE if self.auto_start_agents else AgentStatus.OFFLINE,
                registered_at=now,
                started_at=now if self.auto_start_agents else None,
                sequence=next(self._sequence)
            )
            self._agent_locks[agent_id] = threading.RLock()
            self._agents[agent_id] = agent
            self.capability_index.add(agent)
            snapshot = agent.model_copy(deep=True)

        self.logger.info(
            "Registered agent",
            agent_id=agent_id,
            name=snapshot.name,
            role=snapshot.role.value,
            max_concurrent_tasks=max_tasks
        )
        self.events.publish(
            EventKind.AGENT_REGISTERED,
            agent_id,
            name=snapshot.name,
            role=snapshot.role.value,
            status=snapshot.status.value
        )
        return snapshot

    def register_from_template(self, template_name: str, **overrides: Any) -> Agent:
        """Register an agent from a predefined template."""
        return self.register(build_agent_spec(template_name, **overrides))

    def deregister(self, agent_id: str) -> Agent:
        """
        Remove an agent. Only allowed while it has no active tasks.

        Raises:
            NotFoundError: Unknown agent
            ConflictError: The agent still has active tasks
        """
        with self._write_lock:
            with self._locked(agent_id) as agent:
                if agent.active_task_count > 0:
                    raise ConflictError(
                        f"Agent {agent_id} has {agent.active_task_count} active task(s); stop it first",
                        agent_id=agent_id,
                        active_task_count=agent.active_task_count
                    )
                self.capability_index.remove(agent)
                del self._agents[agent_id]
                del self._agent_locks[agent_id]
                snapshot = agent.model_copy(deep=True)

        self.logger.info("Deregistered agent", agent_id=agent_id)
        self.events.publish(EventKind.AGENT_DEREGISTERED, agent_id, name=snapshot.name)

        for listener in list(self._deregister_listeners):
            listener(agent_id)
        return snapshot

    def update_capabilities(
        self,
        agent_id: str,
        capabilities: Optional[List[str]] = None,
        specializations: Optional[List[Union[str, AgentSpecialization]]] = None
    ) -> Agent:
        """Replace an agent's capability and/or specialization sets."""
        new_capabilities = normalize_tags(capabilities) if capabilities is not None else None
        new_specializations = None
        if specializations is not None:
            try:
                new_specializations = {AgentSpecialization(s) for s in specializations}
            except ValueError as e:
                raise ValidationError(f"Unknown specialization: {e}", field="specializations") from e

        with self._write_lock:
            with self._locked(agent_id) as agent:
                self.capability_index.remove(agent)
                if new_capabilities is not None:
                    agent.capabilities = new_capabilities
                if new_specializations is not None:
                    agent.specializations = new_specializations
                self.capability_index.add(agent)
                snapshot = agent.model_copy(deep=True)

        self.logger.info(
            "Updated agent capabilities",
            agent_id=agent_id,
            capabilities=sorted(snapshot.capabilities)
        )
        return snapshot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, agent_id: str) -> Agent:
        """
        Bring an agent online: offline/idle/completed -> idle.

        Raises:
            NotFoundError: Unknown agent
            InvalidStateError: Agent is working, waiting or in error
        """
        pending: List[tuple] = []
        with self._locked(agent_id) as agent:
            if agent.status not in (AgentStatus.OFFLINE, AgentStatus.IDLE, AgentStatus.COMPLETED):
                raise InvalidStateError(
                    f"Cannot start agent {agent_id} while {agent.status.value}",
                    agent_id=agent_id,
                    status=agent.status.value
                )
            if agent.status == AgentStatus.OFFLINE:
                agent.started_at = datetime.now()
            target = AgentStatus.WORKING if agent.active_task_count > 0 else AgentStatus.IDLE
            self._set_status(agent, target, pending)
            snapshot = agent.model_copy(deep=True)

        self.logger.info("Started agent", agent_id=agent_id)
        pending.append((EventKind.AGENT_STARTED, agent_id, {"status": snapshot.status.value}))
        self.events.publish_all(pending)
        return snapshot

    def stop(self, agent_id: str) -> Agent:
        """
        Take an agent offline. In-flight tasks are cancelled (best-effort) by
        the stop listeners; capacity is freed before this returns.

        Raises:
            NotFoundError: Unknown agent
        """
        pending: List[tuple] = []
        with self._locked(agent_id) as agent:
            self._set_status(agent, AgentStatus.OFFLINE, pending)

        self.events.publish_all(pending)

        for listener in list(self._stop_listeners):
            listener(agent_id)

        snapshot = self.get(agent_id)
        self.logger.info("Stopped agent", agent_id=agent_id, active_task_count=snapshot.active_task_count)
        self.events.publish(EventKind.AGENT_STOPPED, agent_id, status=snapshot.status.value)
        return snapshot

    def reset(self, agent_id: str) -> Agent:
        """
        Manual recovery from a fatal task failure: error -> idle (or working
        if other tasks are still active).
        """
        pending: List[tuple] = []
        with self._locked(agent_id) as agent:
            if agent.status != AgentStatus.ERROR:
                raise InvalidStateError(
                    f"Only agents in error can be reset; {agent_id} is {agent.status.value}",
                    agent_id=agent_id,
                    status=agent.status.value
                )
            agent.last_error = None
            target = AgentStatus.WORKING if agent.active_task_count > 0 else AgentStatus.IDLE
            self._set_status(agent, target, pending)
            snapshot = agent.model_copy(deep=True)

        self.logger.info("Reset agent", agent_id=agent_id, status=snapshot.status.value)
        self.events.publish_all(pending)
        return snapshot

    def mark_waiting(self, agent_id: str) -> Agent:
        """Agent reports being blocked on a dependency: working -> waiting."""
        pending: List[tuple] = []
        with self._locked(agent_id) as agent:
            if agent.status != AgentStatus.WORKING:
                raise InvalidStateError(
                    f"Only working agents can wait; {agent_id} is {agent.status.value}",
                    agent_id=agent_id,
                    status=agent.status.value
                )
            self._set_status(agent, AgentStatus.WAITING, pending)
            snapshot = agent.model_copy(deep=True)

        self.events.publish_all(pending)
        return snapshot

    def mark_resumed(self, agent_id: str) -> Agent:
        """Agent reports it is unblocked: waiting -> working."""
        pending: List[tuple] = []
        with self._locked(agent_id) as agent:
            if agent.status != AgentStatus.WAITING:
                raise InvalidStateError(
                    f"Agent {agent_id} is not waiting ({agent.status.value})",
                    agent_id=agent_id,
                    status=agent.status.value
                )
            target = AgentStatus.WORKING if agent.active_task_count > 0 else AgentStatus.IDLE
            self._set_status(agent, target, pending)
            snapshot = agent.model_copy(deep=True)

        self.events.publish_all(pending)
        return snapshot

    def add_stop_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the agent id after it goes offline."""
        self._stop_listeners.append(listener)

    def add_deregister_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the agent id after it is removed."""
        self._deregister_listeners.append(listener)

    # ------------------------------------------------------------------
    # Slot accounting (dispatcher only)
    # ------------------------------------------------------------------

    def reserve(self, agent_id: str, pending: PendingEvents = None) -> bool:
        """
        Take one task slot on an agent if it can accept work.

        Returns:
            True if a slot was reserved
        """
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            return False
        events: List[tuple] = []
        with lock:
            agent = self._agents.get(agent_id)
            if agent is None or not agent.can_accept_task():
                return False
            agent.active_task_count += 1
            if agent.status == AgentStatus.IDLE:
                self._set_status(agent, AgentStatus.WORKING, events)

        self._flush(events, pending)
        return True

    def release(
        self,
        agent_id: str,
        fatal: bool = False,
        error: Optional[str] = None,
        pending: PendingEvents = None
    ) -> None:
        """Free one task slot; a fatal failure puts the agent in error."""
        lock = self._agent_locks.get(agent_id)
        if lock is None:
            return
        events: List[tuple] = []
        with lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return
            agent.active_task_count = max(0, agent.active_task_count - 1)
            if fatal and agent.status != AgentStatus.OFFLINE:
                agent.last_error = error
                self._set_status(agent, AgentStatus.ERROR, events)
            elif agent.status in (AgentStatus.WORKING, AgentStatus.WAITING) and agent.active_task_count == 0:
                self._set_status(agent, AgentStatus.IDLE, events)

        self._flush(events, pending)

    def _flush(self, events: List[tuple], pending: PendingEvents) -> None:
        if pending is None:
            self.events.publish_all(events)
        else:
            pending.extend(events)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def get(self, agent_id: str) -> Agent:
        """Get a copy of an agent record."""
        return self._get_live(agent_id).model_copy(deep=True)

    def list(self, agent_filter: Optional[AgentFilter] = None) -> List[Agent]:
        """List copies of agents in registration order."""
        agents = sorted(list(self._agents.values()), key=lambda a: a.sequence)
        if agent_filter is not None:
            agents = [a for a in agents if agent_filter.matches(a)]
        return [a.model_copy(deep=True) for a in agents]

    def find_eligible(self, *args: Any, **kwargs: Any) -> List[Agent]:
        """Eligible agents (copies) for a requirement set; see ``CapabilityIndex``."""
        return [a.model_copy(deep=True) for a in self.capability_index.find_eligible(*args, **kwargs)]

    def count(self) -> int:
        return len(self._agents)

    def get_registry_status(self) -> Dict[str, Any]:
        """Get overall registry status and statistics."""
        agents = list(self._agents.values())
        by_status: Dict[str, int] = {}
        for agent in agents:
            by_status[agent.status.value] = by_status.get(agent.status.value, 0) + 1
        return {
            "total_agents": len(agents),
            "agents_by_status": by_status,
            "total_capacity": sum(a.max_concurrent_tasks for a in agents),
            "active_tasks": sum(a.active_task_count for a in agents),
            "available_agents": len([a for a in agents if a.can_accept_task()])
        }
