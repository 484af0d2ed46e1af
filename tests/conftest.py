"""
Pytest configuration and fixtures for Subagent Orchestrator tests.
"""

import pytest

from subagent_orchestrator.models.core import AgentSpec, Priority
from subagent_orchestrator.orchestration.dispatcher import TaskDispatcher
from subagent_orchestrator.orchestration.events import EventPublisher
from subagent_orchestrator.orchestration.message_bus import CommunicationBus
from subagent_orchestrator.orchestration.orchestrator import SubagentOrchestrator
from subagent_orchestrator.orchestration.registry import AgentRegistry
from subagent_orchestrator.utils.config import (
    MonitoringConfig, OrchestrationConfig, SystemConfig, set_config
)


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep tests independent of the global configuration."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def system_config() -> SystemConfig:
    """Configuration with event-driven dispatch and no process sampling."""
    return SystemConfig(
        orchestration=OrchestrationConfig(tick_interval_seconds=0.05),
        monitoring=MonitoringConfig(include_process_metrics=False)
    )


@pytest.fixture
def orchestrator(system_config) -> SubagentOrchestrator:
    """Orchestrator that dispatches immediately after each command."""
    return SubagentOrchestrator(system_config)


@pytest.fixture
def manual_orchestrator(system_config) -> SubagentOrchestrator:
    """Orchestrator that only dispatches on explicit ``tick()`` calls."""
    config = system_config.model_copy(update={
        "orchestration": OrchestrationConfig(auto_dispatch=False, tick_interval_seconds=0.05)
    })
    return SubagentOrchestrator(config)


@pytest.fixture
def events() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def registry(events) -> AgentRegistry:
    return AgentRegistry(events)


@pytest.fixture
def bus(registry) -> CommunicationBus:
    return CommunicationBus(registry)


@pytest.fixture
def dispatcher(registry, bus) -> TaskDispatcher:
    return TaskDispatcher(registry, bus)


@pytest.fixture
def make_agent_spec():
    """Factory for agent specifications."""
    def _make(agent_id: str, capabilities=("python",), max_tasks: int = 1,
              priority: Priority = Priority.MEDIUM, **kwargs) -> AgentSpec:
        return AgentSpec(
            id=agent_id,
            name=kwargs.pop("name", agent_id),
            capabilities=set(capabilities),
            max_concurrent_tasks=max_tasks,
            priority=priority,
            **kwargs
        )
    return _make
