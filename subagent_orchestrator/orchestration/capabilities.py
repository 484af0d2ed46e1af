"""
Capability index: maps capability and specialization tags to agents.

The index is a read-mostly structure. Membership changes are applied by the
registry under its write lock; lookups read live agent records without
locking and may observe slightly stale load figures.
"""

from typing import Dict, Iterable, List, Optional, Set

from ..models.core import Agent, AgentSpecialization, Priority
from ..utils.logging import get_logger


class CapabilityIndex:
    """Selects eligible agents for a set of required tags."""

    def __init__(self, agents: Dict[str, Agent]):
        self._agents = agents
        self._by_capability: Dict[str, Set[str]] = {}
        self._by_specialization: Dict[AgentSpecialization, Set[str]] = {}
        self.logger = get_logger(f"{__name__}.CapabilityIndex")

    def add(self, agent: Agent) -> None:
        for capability in agent.capabilities:
            self._by_capability.setdefault(capability, set()).add(agent.id)
        for specialization in agent.specializations:
            self._by_specialization.setdefault(specialization, set()).add(agent.id)

    def remove(self, agent: Agent) -> None:
        for capability in agent.capabilities:
            members = self._by_capability.get(capability)
            if members is not None:
                members.discard(agent.id)
                if not members:
                    del self._by_capability[capability]
        for specialization in agent.specializations:
            members = self._by_specialization.get(specialization)
            if members is not None:
                members.discard(agent.id)
                if not members:
                    del self._by_specialization[specialization]

    def rebuild(self) -> None:
        """Rebuild the index from scratch."""
        self._by_capability = {}
        self._by_specialization = {}
        for agent in list(self._agents.values()):
            self.add(agent)

    def agents_with(self, capability: str) -> Set[str]:
        return set(self._by_capability.get(capability, ()))

    def _candidate_ids(
        self,
        required_capabilities: Iterable[str],
        required_specializations: Iterable[AgentSpecialization]
    ) -> Optional[Set[str]]:
        """Intersect tag memberships; None means no tag constraint."""
        candidates: Optional[Set[str]] = None
        for capability in required_capabilities:
            members = self._by_capability.get(capability, set())
            candidates = set(members) if candidates is None else candidates & members
            if not candidates:
                return set()
        for specialization in required_specializations:
            members = self._by_specialization.get(specialization, set())
            candidates = set(members) if candidates is None else candidates & members
            if not candidates:
                return set()
        return candidates

    def find_eligible(
        self,
        required_capabilities: Iterable[str] = (),
        min_priority: Priority = Priority.LOW,
        required_specializations: Iterable[AgentSpecialization] = (),
        agent_id: Optional[str] = None
    ) -> List[Agent]:
        """
        Find agents able to take a task right now.

        Args:
            required_capabilities: Tags the agent's capabilities must include
            min_priority: Lowest agent priority accepted
            required_specializations: Specializations the agent must declare
            agent_id: Restrict the search to one pinned agent

        Returns:
            Live agent records ordered by descending priority, ascending
            active task count, then registration order. Empty when nothing
            qualifies.
        """
        required_capabilities = tuple(required_capabilities)
        required_specializations = tuple(required_specializations)
        candidate_ids = self._candidate_ids(required_capabilities, required_specializations)

        if agent_id is not None:
            if candidate_ids is not None and agent_id not in candidate_ids:
                return []
            agent = self._agents.get(agent_id)
            pool = [agent] if agent is not None else []
        elif candidate_ids is None:
            pool = list(self._agents.values())
        else:
            pool = [self._agents[i] for i in candidate_ids if i in self._agents]

        eligible = [
            agent for agent in pool
            if agent.can_accept_task() and agent.priority.rank >= min_priority.rank
        ]
        eligible.sort(key=lambda a: (-a.priority.rank, a.active_task_count, a.sequence))

        if not eligible:
            self.logger.debug(
                "No eligible agents",
                required_capabilities=sorted(required_capabilities),
                pinned_agent=agent_id
            )
        return eligible
