"""
Subagent orchestration engine.

This package provides:
- Agent registry with lifecycle management and a capability index
- Priority-ordered task dispatching under per-agent concurrency limits
- Dependency-driven workflows spanning multiple agents
- Inter-agent messaging, performance monitoring and state-change events
"""

from .capabilities import CapabilityIndex
from .classification import (
    CallableComplexityClassifier,
    ComplexityAssessment,
    ComplexityCategory,
    ComplexityClassifier,
    KeywordComplexityClassifier,
    LengthComplexityClassifier
)
from .dispatcher import TaskDispatcher
from .events import EventKind, EventPublisher, OrchestratorEvent
from .message_bus import SYSTEM_SENDER_ID, CommunicationBus
from .orchestrator import SubagentOrchestrator
from .performance import PerformanceMonitor
from .registry import AgentRegistry
from .templates import AGENT_TEMPLATES, build_agent_spec, list_templates
from .workflow import WorkflowEngine

__all__ = [
    "AGENT_TEMPLATES",
    "AgentRegistry",
    "CallableComplexityClassifier",
    "CapabilityIndex",
    "CommunicationBus",
    "ComplexityAssessment",
    "ComplexityCategory",
    "ComplexityClassifier",
    "EventKind",
    "EventPublisher",
    "KeywordComplexityClassifier",
    "LengthComplexityClassifier",
    "OrchestratorEvent",
    "PerformanceMonitor",
    "SYSTEM_SENDER_ID",
    "SubagentOrchestrator",
    "TaskDispatcher",
    "WorkflowEngine",
    "build_agent_spec",
    "list_templates",
]
