"""
API routes for the Subagent Orchestrator.

Orchestrator exceptions propagate to the handlers registered in ``main`` and
are rendered there as ``ErrorResponse`` bodies.
"""

import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request

from .models import (
    AgentActionRequest, CapabilityUpdateRequest, ClassifyRequest, CompleteTaskRequest,
    DelegateRequest, EventList, EventRecord, FailTaskRequest, HealthCheck, MessageList,
    MessageRequest, ProgressRequest, TaskSubmissionResponse, TemplateAgentRequest,
    TickResponse, WorkflowCreatedResponse
)
from .. import __version__
from ..models.core import (
    Agent, AgentFilter, AgentMetricsUpdate, AgentPerformance, AgentRole, AgentSpec,
    AgentSpecialization, AgentStatus, PerformanceSample, PerformanceSnapshot, Priority,
    Task, TaskFilter, TaskSpec, TaskStatus, Workflow, WorkflowSpec, WorkflowStatus
)
from ..orchestration.classification import ComplexityAssessment
from ..orchestration.events import OrchestratorEvent
from ..orchestration.orchestrator import SubagentOrchestrator
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Service start time for uptime calculation
_service_start_time = time.time()


def get_orchestrator(request: Request) -> SubagentOrchestrator:
    """Orchestrator bound to the running application."""
    return request.app.state.orchestrator


def _event_record(event: OrchestratorEvent) -> EventRecord:
    return EventRecord(
        kind=event.kind.value,
        entity_id=event.entity_id,
        data=event.data,
        sequence=event.sequence,
        timestamp=event.timestamp
    )


@router.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check(orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    return HealthCheck(
        status="healthy",
        version=__version__,
        uptime_seconds=time.time() - _service_start_time,
        dispatch_loop_running=orchestrator.is_running,
        agents=orchestrator.registry.count(),
        pending_tasks=orchestrator.dispatcher.pending_count
    )


# ----------------------------------------------------------------------
# Agents
# ----------------------------------------------------------------------

@router.get("/agents", response_model=List[Agent], tags=["Agents"])
async def list_agents(
    status: Optional[AgentStatus] = Query(None),
    role: Optional[AgentRole] = Query(None),
    specialization: Optional[AgentSpecialization] = Query(None),
    capability: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Substring of name or role"),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """List agents, optionally filtered."""
    agent_filter = AgentFilter(
        status=status,
        role=role,
        specialization=specialization,
        capability=capability,
        search=search
    )
    return orchestrator.list_agents(agent_filter)


@router.post("/agents", response_model=Agent, status_code=201, tags=["Agents"])
async def register_agent(spec: AgentSpec, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Register a new agent."""
    agent = orchestrator.register_agent(spec)
    logger.info("Agent registered via API", agent_id=agent.id)
    return agent


@router.get("/templates", response_model=Dict[str, AgentSpec], tags=["Agents"])
async def list_templates(orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Predefined agent profiles."""
    return orchestrator.list_templates()


@router.post("/agents/from-template/{template_name}", response_model=Agent, status_code=201, tags=["Agents"])
async def register_agent_from_template(
    template_name: str,
    request: Optional[TemplateAgentRequest] = None,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """Register an agent from a predefined template."""
    overrides = request.model_dump(exclude_none=True) if request else {}
    return orchestrator.register_agent_from_template(template_name, **overrides)


@router.get("/agents/{agent_id}", response_model=Agent, tags=["Agents"])
async def get_agent(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_agent(agent_id)


@router.delete("/agents/{agent_id}", response_model=Agent, tags=["Agents"])
async def deregister_agent(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Remove an agent that has no active tasks."""
    return orchestrator.deregister_agent(agent_id)


@router.post("/agents/{agent_id}/start", response_model=Agent, tags=["Agents"])
async def start_agent(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.start_agent(agent_id)


@router.post("/agents/{agent_id}/stop", response_model=Agent, tags=["Agents"])
async def stop_agent(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.stop_agent(agent_id)


@router.post("/agents/{agent_id}/reset", response_model=Agent, tags=["Agents"])
async def reset_agent(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Recover an agent from error."""
    return orchestrator.reset_agent(agent_id)


@router.post("/agents/{agent_id}/waiting", response_model=Agent, tags=["Agents"])
async def mark_agent_waiting(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.mark_agent_waiting(agent_id)


@router.post("/agents/{agent_id}/resume", response_model=Agent, tags=["Agents"])
async def mark_agent_resumed(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.mark_agent_resumed(agent_id)


@router.put("/agents/{agent_id}/capabilities", response_model=Agent, tags=["Agents"])
async def update_agent_capabilities(
    agent_id: str,
    request: CapabilityUpdateRequest,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.update_agent_capabilities(agent_id, request.capabilities, request.specializations)


@router.post("/agents/{agent_id}/metrics", response_model=PerformanceSample, tags=["Performance"])
async def sample_agent(
    agent_id: str,
    metrics: AgentMetricsUpdate,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """Report resource counters for an agent."""
    return orchestrator.sample_agent(agent_id, metrics)


@router.get("/agents/{agent_id}/performance", response_model=AgentPerformance, tags=["Performance"])
async def get_agent_performance(agent_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_agent_performance(agent_id)


@router.get("/agents/{agent_id}/messages", response_model=MessageList, tags=["Communication"])
async def receive_messages(
    agent_id: str,
    since_offset: Optional[int] = Query(None, description="Replay from this mailbox offset"),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """Read an agent's mailbox; without an offset only unread messages are returned."""
    messages = list(orchestrator.receive_messages(agent_id, since_offset))
    return MessageList(messages=messages, total=len(messages))


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------

@router.get("/tasks", response_model=List[Task], tags=["Tasks"])
async def list_tasks(
    status: Optional[TaskStatus] = Query(None),
    agent_id: Optional[str] = Query(None),
    workflow_id: Optional[str] = Query(None),
    priority: Optional[Priority] = Query(None),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    task_filter = TaskFilter(status=status, agent_id=agent_id, workflow_id=workflow_id, priority=priority)
    return orchestrator.list_tasks(task_filter)


@router.post("/tasks", response_model=TaskSubmissionResponse, status_code=201, tags=["Tasks"])
async def submit_task(spec: TaskSpec, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Submit a task for dispatch."""
    task_id = orchestrator.submit_task(spec)
    return TaskSubmissionResponse(task_id=task_id, task=orchestrator.get_task(task_id))


@router.post("/delegate", response_model=TaskSubmissionResponse, status_code=201, tags=["Tasks"])
async def delegate_task(request: DelegateRequest, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Submit a task pinned to one agent."""
    task_id = orchestrator.delegate_task(request.agent_id, request.task)
    return TaskSubmissionResponse(task_id=task_id, task=orchestrator.get_task(task_id))


@router.get("/tasks/{task_id}", response_model=Task, tags=["Tasks"])
async def get_task(task_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_task(task_id)


@router.post("/tasks/{task_id}/acknowledge", response_model=Task, tags=["Tasks"])
async def acknowledge_task(
    task_id: str,
    request: AgentActionRequest,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.acknowledge_task(task_id, request.agent_id)


@router.post("/tasks/{task_id}/progress", response_model=Task, tags=["Tasks"])
async def report_progress(
    task_id: str,
    request: ProgressRequest,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.report_progress(task_id, request.agent_id, request.progress)


@router.post("/tasks/{task_id}/complete", response_model=Task, tags=["Tasks"])
async def complete_task(
    task_id: str,
    request: CompleteTaskRequest,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.complete_task(task_id, request.agent_id, request.result)


@router.post("/tasks/{task_id}/fail", response_model=Task, tags=["Tasks"])
async def fail_task(
    task_id: str,
    request: FailTaskRequest,
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.fail_task(task_id, request.agent_id, request.error, fatal=request.fatal)


@router.post("/tasks/{task_id}/cancel", response_model=Task, tags=["Tasks"])
async def cancel_task(task_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.cancel_task(task_id)


@router.post("/tick", response_model=TickResponse, tags=["Tasks"])
async def tick(orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Run one dispatch pass now."""
    return TickResponse(delegated=orchestrator.tick())


# ----------------------------------------------------------------------
# Workflows
# ----------------------------------------------------------------------

@router.get("/workflows", response_model=List[Workflow], tags=["Workflows"])
async def list_workflows(
    status: Optional[WorkflowStatus] = Query(None),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    return orchestrator.list_workflows(status)


@router.post("/workflows", response_model=WorkflowCreatedResponse, status_code=201, tags=["Workflows"])
async def create_workflow(spec: WorkflowSpec, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return WorkflowCreatedResponse(workflow_id=orchestrator.create_workflow(spec))


@router.get("/workflows/{workflow_id}", response_model=Workflow, tags=["Workflows"])
async def get_workflow(workflow_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_workflow(workflow_id)


@router.post("/workflows/{workflow_id}/cancel", response_model=Workflow, tags=["Workflows"])
async def cancel_workflow(workflow_id: str, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.cancel_workflow(workflow_id)


# ----------------------------------------------------------------------
# Communication, performance and events
# ----------------------------------------------------------------------

@router.post("/communicate", response_model=MessageList, status_code=201, tags=["Communication"])
async def communicate(request: MessageRequest, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Send a direct message, or broadcast when no recipient is given."""
    if request.to_agent_id:
        messages = [orchestrator.send_message(request.from_agent_id, request.to_agent_id, request.payload)]
    else:
        messages = orchestrator.broadcast_message(request.from_agent_id, request.payload)
    return MessageList(messages=messages, total=len(messages))


@router.get("/communications", response_model=MessageList, tags=["Communication"])
async def list_communications(
    agent_id: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=10000),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """Communications log, newest last."""
    messages = orchestrator.list_messages(agent_id, limit)
    return MessageList(messages=messages, total=len(messages))


@router.get("/performance", response_model=PerformanceSnapshot, tags=["Performance"])
async def get_performance(orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_performance_snapshot()


@router.get("/events", response_model=EventList, tags=["Events"])
async def list_events(
    since: int = Query(0, ge=0, description="Return events after this sequence number"),
    limit: Optional[int] = Query(None, ge=1, le=10000),
    orchestrator: SubagentOrchestrator = Depends(get_orchestrator)
):
    """Polling fallback for the event stream."""
    events = orchestrator.events_since(since, limit)
    return EventList(
        events=[_event_record(event) for event in events],
        last_sequence=orchestrator.events.last_sequence
    )


@router.post("/classify", response_model=ComplexityAssessment, tags=["Tasks"])
async def classify_task(request: ClassifyRequest, orchestrator: SubagentOrchestrator = Depends(get_orchestrator)):
    """Suggest a priority and capabilities for a task description."""
    return orchestrator.classify_task(request.description)
