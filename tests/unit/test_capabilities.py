"""
Unit tests for the capability index.
"""

import pytest

from subagent_orchestrator.models.core import AgentSpecialization, Priority


class TestCapabilityIndex:

    @pytest.fixture
    def index(self, registry, make_agent_spec):
        registry.register(make_agent_spec("low", capabilities=["python", "sql"], priority=Priority.LOW))
        registry.register(make_agent_spec("high", capabilities=["python"], priority=Priority.HIGH))
        registry.register(make_agent_spec(
            "frontend",
            capabilities=["react"],
            specializations={AgentSpecialization.FRONTEND}
        ))
        return registry.capability_index

    def test_orders_by_priority(self, index):
        assert [a.id for a in index.find_eligible(["python"])] == ["high", "low"]

    def test_requires_all_capabilities(self, index):
        assert [a.id for a in index.find_eligible(["python", "sql"])] == ["low"]
        assert index.find_eligible(["python", "react"]) == []

    def test_unknown_capability_yields_empty_list(self, index):
        assert index.find_eligible(["cobol"]) == []

    def test_empty_requirements_match_everyone(self, index):
        assert [a.id for a in index.find_eligible([])] == ["high", "frontend", "low"]

    def test_min_priority_filter(self, index):
        assert [a.id for a in index.find_eligible(["python"], Priority.MEDIUM)] == ["high"]

    def test_specialization_filter(self, index):
        found = index.find_eligible([], required_specializations=[AgentSpecialization.FRONTEND])
        assert [a.id for a in found] == ["frontend"]

    def test_pinned_agent(self, index):
        assert [a.id for a in index.find_eligible(["python"], agent_id="low")] == ["low"]
        assert index.find_eligible(["react"], agent_id="low") == []
        assert index.find_eligible([], agent_id="missing") == []

    def test_load_then_registration_order_breaks_ties(self, registry, make_agent_spec):
        registry.register(make_agent_spec("first", max_tasks=2))
        registry.register(make_agent_spec("second", max_tasks=2))
        registry.register(make_agent_spec("third", max_tasks=2))
        registry.reserve("first")

        found = registry.capability_index.find_eligible(["python"])
        assert [a.id for a in found] == ["second", "third", "first"]

    def test_excludes_unavailable_agents(self, registry, make_agent_spec):
        registry.register(make_agent_spec("busy", max_tasks=1))
        registry.register(make_agent_spec("stopped"))
        registry.register(make_agent_spec("free"))
        registry.reserve("busy")
        registry.stop("stopped")

        assert [a.id for a in registry.capability_index.find_eligible(["python"])] == ["free"]

    def test_deregistered_agent_removed_from_index(self, registry, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        registry.deregister("a1")

        assert registry.capability_index.agents_with("python") == set()
        assert registry.capability_index.find_eligible(["python"]) == []

    def test_rebuild(self, registry, make_agent_spec):
        registry.register(make_agent_spec("a1", capabilities=["go"]))
        index = registry.capability_index
        index.rebuild()

        assert index.agents_with("go") == {"a1"}
