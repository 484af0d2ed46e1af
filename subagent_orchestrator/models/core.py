"""
Core Pydantic data models for the Subagent Orchestrator.
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any, Set
from datetime import datetime
from enum import Enum
import uuid


def new_id() -> str:
    """Generate an opaque entity id."""
    return str(uuid.uuid4())


class AgentRole(str, Enum):
    """Declared role of an agent."""
    ORCHESTRATOR = "orchestrator"
    WORKER = "worker"
    SPECIALIST = "specialist"
    COORDINATOR = "coordinator"
    MONITOR = "monitor"


class AgentSpecialization(str, Enum):
    """Recognized specialization tags."""
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    ARCHITECTURE = "architecture"
    SECURITY = "security"
    PERFORMANCE = "performance"
    DEVOPS = "devops"
    UI_UX = "ui-ux"


class AgentStatus(str, Enum):
    """Agent lifecycle status."""
    IDLE = "idle"
    WORKING = "working"
    WAITING = "waiting"
    COMPLETED = "completed"
    ERROR = "error"
    OFFLINE = "offline"


class Priority(str, Enum):
    """Priority shared by agents and tasks."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


class TaskStatus(str, Enum):
    """Status of a delegated task."""
    PENDING = "pending"
    DELEGATED = "delegated"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class WorkflowStatus(str, Enum):
    """Aggregate workflow status derived from its steps."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageKind(str, Enum):
    """Kinds of messages carried by the communication bus."""
    DIRECT = "direct"
    BROADCAST = "broadcast"
    DELEGATION = "delegation"


class AgentSpec(BaseModel):
    """Registration request for a new agent."""
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    role: AgentRole = AgentRole.WORKER
    specializations: Set[AgentSpecialization] = Field(default_factory=set)
    capabilities: Set[str] = Field(default_factory=set)
    max_concurrent_tasks: Optional[int] = None
    priority: Priority = Priority.MEDIUM


class Agent(BaseModel):
    """A registered executor with declared role, capabilities and capacity."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    role: AgentRole
    specializations: Set[AgentSpecialization] = Field(default_factory=set)
    capabilities: Set[str] = Field(default_factory=set)
    max_concurrent_tasks: int = Field(..., ge=1)
    priority: Priority = Priority.MEDIUM
    status: AgentStatus = AgentStatus.IDLE
    active_task_count: int = Field(default=0, ge=0)
    registered_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sequence: int = 0

    @property
    def spare_capacity(self) -> int:
        return self.max_concurrent_tasks - self.active_task_count

    def can_accept_task(self) -> bool:
        """Check if the agent may take one more delegation."""
        return (
            self.status in (AgentStatus.IDLE, AgentStatus.WORKING) and
            self.spare_capacity > 0
        )


class TaskSpec(BaseModel):
    """Submission request for a task."""
    id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    required_capabilities: Set[str] = Field(default_factory=set)
    required_specializations: Set[AgentSpecialization] = Field(default_factory=set)
    priority: Optional[Priority] = None
    min_agent_priority: Priority = Priority.LOW
    target_agent_id: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)
    auto_classify: bool = False


class Task(BaseModel):
    """A unit of work delegated to a single agent."""
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = ""
    required_capabilities: Set[str] = Field(default_factory=set)
    required_specializations: Set[AgentSpecialization] = Field(default_factory=set)
    priority: Priority = Priority.MEDIUM
    min_agent_priority: Priority = Priority.LOW
    target_agent_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent_id: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None
    fatal: bool = False
    workflow_id: Optional[str] = None
    step_key: Optional[str] = None
    attempt: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=datetime.now)
    delegated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds() * 1000
        return None


class WorkflowStepSpec(BaseModel):
    """Template for one workflow step."""
    key: str = Field(..., min_length=1, max_length=200)
    title: Optional[str] = None
    description: str = ""
    required_capabilities: Set[str] = Field(default_factory=set)
    required_specializations: Set[AgentSpecialization] = Field(default_factory=set)
    priority: Priority = Priority.MEDIUM
    depends_on: List[str] = Field(default_factory=list)
    max_retries: int = Field(default=0, ge=0, le=10)
    target_agent_id: Optional[str] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class WorkflowSpec(BaseModel):
    """Creation request for a workflow."""
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    steps: List[WorkflowStepSpec] = Field(..., min_length=1)


class WorkflowStep(BaseModel):
    """Runtime record of a workflow step."""
    key: str
    template: WorkflowStepSpec
    status: TaskStatus = TaskStatus.PENDING
    task_id: Optional[str] = None
    task_ids: List[str] = Field(default_factory=list)
    attempts: int = 0
    remaining_dependencies: int = 0
    dependents: List[str] = Field(default_factory=list)
    result: Optional[Any] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


class Workflow(BaseModel):
    """An ordered dependency graph of tasks treated as one logical unit."""
    id: str
    name: str
    description: str = ""
    status: WorkflowStatus = WorkflowStatus.PENDING
    steps: List[WorkflowStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def get_step(self, key: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.key == key:
                return step
        return None

    def calculate_progress_percentage(self) -> float:
        if not self.steps:
            return 0.0
        completed = len([s for s in self.steps if s.status == TaskStatus.COMPLETED])
        return (completed / len(self.steps)) * 100


class Message(BaseModel):
    """An immutable message between agents (or from the orchestrator)."""
    id: str = Field(default_factory=new_id)
    from_agent_id: str
    to_agent_id: str
    payload: Any = None
    kind: MessageKind = MessageKind.DIRECT
    timestamp: datetime = Field(default_factory=datetime.now)
    offset: int = 0

    model_config = ConfigDict(frozen=True)


class AgentMetricsUpdate(BaseModel):
    """Resource counters reported for an agent."""
    cpu_usage: Optional[float] = Field(None, ge=0.0)
    memory_usage: Optional[float] = Field(None, ge=0.0)
    uptime_seconds: Optional[float] = Field(None, ge=0.0)


class PerformanceSample(BaseModel):
    """Latest rolling counters for one agent."""
    agent_id: str
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    uptime_seconds: float = 0.0
    completed_task_count: int = 0
    failed_task_count: int = 0
    sampled_at: Optional[datetime] = None

    @property
    def efficiency(self) -> float:
        total = self.completed_task_count + self.failed_task_count
        if total == 0:
            return 0.0
        return self.completed_task_count / total


class AgentPerformance(BaseModel):
    """Per-agent row of a performance snapshot."""
    agent_id: str
    name: str
    status: AgentStatus
    active_task_count: int
    max_concurrent_tasks: int
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    uptime_seconds: float = 0.0
    completed_task_count: int = 0
    failed_task_count: int = 0
    efficiency: float = 0.0
    sampled_at: Optional[datetime] = None


class PerformanceSnapshot(BaseModel):
    """Process-wide performance rollup."""
    total_agents: int = 0
    active_agents: int = 0
    agents_by_status: Dict[str, int] = Field(default_factory=dict)
    tasks_by_status: Dict[str, int] = Field(default_factory=dict)
    completed_tasks: int = 0
    failed_tasks: int = 0
    efficiency: float = 0.0
    throughput_per_minute: float = 0.0
    average_task_duration_ms: Optional[float] = None
    agents: List[AgentPerformance] = Field(default_factory=list)
    process: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class AgentFilter(BaseModel):
    """Filter for agent listings."""
    status: Optional[AgentStatus] = None
    role: Optional[AgentRole] = None
    specialization: Optional[AgentSpecialization] = None
    capability: Optional[str] = None
    search: Optional[str] = None

    def matches(self, agent: Agent) -> bool:
        if self.status is not None and agent.status != self.status:
            return False
        if self.role is not None and agent.role != self.role:
            return False
        if self.specialization is not None and self.specialization not in agent.specializations:
            return False
        if self.capability is not None and self.capability not in agent.capabilities:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in agent.name.lower() and needle not in agent.role.value:
                return False
        return True


class TaskFilter(BaseModel):
    """Filter for task listings."""
    status: Optional[TaskStatus] = None
    agent_id: Optional[str] = None
    workflow_id: Optional[str] = None
    priority: Optional[Priority] = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status != self.status:
            return False
        if self.agent_id is not None and task.assigned_agent_id != self.agent_id:
            return False
        if self.workflow_id is not None and task.workflow_id != self.workflow_id:
            return False
        if self.priority is not None and task.priority != self.priority:
            return False
        return True
