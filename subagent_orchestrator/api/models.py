"""
API request and response models for the Subagent Orchestrator.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime

from ..models.core import Message, TaskSpec, Task


class TemplateAgentRequest(BaseModel):
    """Overrides applied when registering an agent from a template."""
    id: Optional[str] = Field(None, description="Agent id; generated when omitted")
    name: Optional[str] = Field(None, min_length=1, max_length=200, description="Display name")
    max_concurrent_tasks: Optional[int] = Field(None, description="Capacity override")


class CapabilityUpdateRequest(BaseModel):
    """Replacement capability and specialization sets."""
    capabilities: Optional[List[str]] = None
    specializations: Optional[List[str]] = None


class AgentActionRequest(BaseModel):
    """Identifies the agent performing an action on a task."""
    agent_id: str = Field(..., min_length=1)


class ProgressRequest(AgentActionRequest):
    progress: int = Field(..., description="Progress percentage (0-100)")


class CompleteTaskRequest(AgentActionRequest):
    result: Any = None


class FailTaskRequest(AgentActionRequest):
    error: str = Field(..., min_length=1)
    fatal: bool = False


class DelegateRequest(BaseModel):
    """Task pinned to a specific agent."""
    agent_id: str = Field(..., min_length=1)
    task: TaskSpec


class TaskSubmissionResponse(BaseModel):
    task_id: str
    task: Task


class WorkflowCreatedResponse(BaseModel):
    workflow_id: str


class MessageRequest(BaseModel):
    """Direct message, or broadcast when no recipient is given."""
    from_agent_id: str = Field(..., min_length=1)
    to_agent_id: Optional[str] = None
    payload: Any = None


class MessageList(BaseModel):
    messages: List[Message] = Field(default_factory=list)
    total: int = 0


class ClassifyRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=20000)


class TickResponse(BaseModel):
    delegated: List[str] = Field(default_factory=list)


class EventRecord(BaseModel):
    kind: str
    entity_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sequence: int
    timestamp: datetime


class EventList(BaseModel):
    events: List[EventRecord] = Field(default_factory=list)
    last_sequence: int = 0


class HealthCheck(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=datetime.now, description="Health check timestamp")
    version: str = Field(..., description="API version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    dispatch_loop_running: bool = False
    agents: int = 0
    pending_tasks: int = 0
