"""
Subagent Orchestrator facade.

Wires the registry, capability index, dispatcher, workflow engine,
communication bus and performance monitor together behind a single
command/query interface, and runs the fallback dispatch loop.
"""

import asyncio
from typing import Any, Dict, Iterator, List, Optional, Set, Union

from ..models.core import (
    Agent, AgentFilter, AgentMetricsUpdate, AgentPerformance, AgentSpec, Message,
    PerformanceSample, PerformanceSnapshot, Task, TaskFilter, TaskSpec, Workflow,
    WorkflowSpec, WorkflowStatus
)
from ..utils.config import SystemConfig, get_config
from ..utils.logging import LoggerMixin, bind_log_context
from ..utils.monitoring import MetricsCollector
from ..utils.validation import parse_model
from .classification import ComplexityAssessment, ComplexityClassifier, KeywordComplexityClassifier
from .dispatcher import TaskDispatcher
from .events import EventHandler, EventKind, EventPublisher, OrchestratorEvent
from .message_bus import CommunicationBus
from .performance import PerformanceMonitor
from .registry import AgentRegistry
from .templates import AGENT_TEMPLATES
from .workflow import WorkflowEngine


class SubagentOrchestrator(LoggerMixin):
    """
    Command/query interface of the orchestration engine.

    With ``auto_dispatch`` enabled every command that can free capacity or add
    work triggers a dispatch tick immediately; the background loop started by
    ``start()`` ticks every ``tick_interval_seconds`` as a fallback.
    """

    def __init__(
        self,
        config: Optional[SystemConfig] = None,
        classifier: Optional[ComplexityClassifier] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or get_config()
        settings = self.config.orchestration

        self.classifier = classifier or KeywordComplexityClassifier()
        self.events = EventPublisher(history_size=settings.event_history_size)
        self.registry = AgentRegistry(
            self.events,
            auto_start_agents=settings.auto_start_agents,
            default_max_concurrent_tasks=settings.default_max_concurrent_tasks
        )
        self.bus = CommunicationBus(self.registry, self.events)
        self.dispatcher = TaskDispatcher(
            self.registry,
            self.bus,
            self.events,
            require_acknowledgement=settings.require_acknowledgement,
            classifier=self.classifier
        )
        self.workflows = WorkflowEngine(self.dispatcher, self.events)
        self.metrics = metrics or MetricsCollector(max_history=self.config.monitoring.metrics_history_size)
        self.monitor = PerformanceMonitor(
            self.registry,
            self.dispatcher,
            self.events,
            metrics=self.metrics,
            include_process_metrics=self.config.monitoring.include_process_metrics
        )

        self._background_tasks: Set[asyncio.Task] = set()
        self._shutdown_event: Optional[asyncio.Event] = None

    def _auto_tick(self) -> None:
        if self.config.orchestration.auto_dispatch:
            self.dispatcher.tick()

    # ------------------------------------------------------------------
    # Agent commands
    # ------------------------------------------------------------------

    def register_agent(self, spec: Union[AgentSpec, Dict[str, Any]]) -> Agent:
        agent = self.registry.register(spec)
        self._auto_tick()
        return self.registry.get(agent.id)

    def register_agent_from_template(self, template_name: str, **overrides: Any) -> Agent:
        agent = self.registry.register_from_template(template_name, **overrides)
        self._auto_tick()
        return self.registry.get(agent.id)

    def start_agent(self, agent_id: str) -> Agent:
        self.registry.start(agent_id)
        self._auto_tick()
        return self.registry.get(agent_id)

    def stop_agent(self, agent_id: str) -> Agent:
        agent = self.registry.stop(agent_id)
        # Requeued tasks may fit on other agents
        self._auto_tick()
        return agent

    def deregister_agent(self, agent_id: str) -> Agent:
        return self.registry.deregister(agent_id)

    def reset_agent(self, agent_id: str) -> Agent:
        self.registry.reset(agent_id)
        self._auto_tick()
        return self.registry.get(agent_id)

    def mark_agent_waiting(self, agent_id: str) -> Agent:
        return self.registry.mark_waiting(agent_id)

    def mark_agent_resumed(self, agent_id: str) -> Agent:
        self.registry.mark_resumed(agent_id)
        self._auto_tick()
        return self.registry.get(agent_id)

    def update_agent_capabilities(
        self,
        agent_id: str,
        capabilities: Optional[List[str]] = None,
        specializations: Optional[List[str]] = None
    ) -> Agent:
        agent = self.registry.update_capabilities(agent_id, capabilities, specializations)
        self._auto_tick()
        return agent

    def sample_agent(
        self,
        agent_id: str,
        metrics: Union[AgentMetricsUpdate, Dict[str, Any]]
    ) -> PerformanceSample:
        return self.monitor.sample(agent_id, metrics)

    # ------------------------------------------------------------------
    # Task commands
    # ------------------------------------------------------------------

    def submit_task(self, spec: Union[TaskSpec, Dict[str, Any]]) -> str:
        task_id = self.dispatcher.submit(spec)
        self._auto_tick()
        return task_id

    def delegate_task(self, agent_id: str, spec: Union[TaskSpec, Dict[str, Any]]) -> str:
        """Submit a task pinned to one agent."""
        spec = parse_model(TaskSpec, spec, "task spec").model_copy(update={"target_agent_id": agent_id})
        return self.submit_task(spec)

    def acknowledge_task(self, task_id: str, agent_id: str) -> Task:
        with bind_log_context(task_id=task_id, agent_id=agent_id):
            return self.dispatcher.acknowledge(task_id, agent_id)

    def report_progress(self, task_id: str, agent_id: str, progress: int) -> Task:
        with bind_log_context(task_id=task_id, agent_id=agent_id):
            return self.dispatcher.report_progress(task_id, agent_id, progress)

    def complete_task(self, task_id: str, agent_id: str, result: Any = None) -> Task:
        with bind_log_context(task_id=task_id, agent_id=agent_id):
            task = self.dispatcher.complete(task_id, agent_id, result)
        self._auto_tick()
        return task

    def fail_task(self, task_id: str, agent_id: str, error: str, fatal: bool = False) -> Task:
        with bind_log_context(task_id=task_id, agent_id=agent_id):
            task = self.dispatcher.fail(task_id, agent_id, error, fatal=fatal)
        self._auto_tick()
        return task

    def cancel_task(self, task_id: str) -> Task:
        task = self.dispatcher.cancel(task_id)
        self._auto_tick()
        return task

    def tick(self) -> List[str]:
        return self.dispatcher.tick()

    # ------------------------------------------------------------------
    # Workflow commands
    # ------------------------------------------------------------------

    def create_workflow(self, spec: Union[WorkflowSpec, Dict[str, Any]]) -> str:
        workflow_id = self.workflows.create_workflow(spec)
        self._auto_tick()
        return workflow_id

    def cancel_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.workflows.cancel_workflow(workflow_id)
        self._auto_tick()
        return self.workflows.get_workflow(workflow.id)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_message(self, from_agent_id: str, to_agent_id: str, payload: Any) -> Message:
        return self.bus.send(from_agent_id, to_agent_id, payload)

    def broadcast_message(self, from_agent_id: str, payload: Any) -> List[Message]:
        return self.bus.broadcast(from_agent_id, payload)

    def receive_messages(self, agent_id: str, since_offset: Optional[int] = None) -> Iterator[Message]:
        return self.bus.receive(agent_id, since_offset)

    def list_messages(self, agent_id: Optional[str] = None, limit: Optional[int] = None) -> List[Message]:
        if limit is None:
            limit = self.config.orchestration.message_history_limit
        return self.bus.list_messages(agent_id, limit)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Agent:
        return self.registry.get(agent_id)

    def list_agents(self, agent_filter: Optional[AgentFilter] = None) -> List[Agent]:
        return self.registry.list(agent_filter)

    def get_task(self, task_id: str) -> Task:
        return self.dispatcher.get(task_id)

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        return self.dispatcher.list(task_filter)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.workflows.get_workflow(workflow_id)

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[Workflow]:
        return self.workflows.list_workflows(status)

    def get_performance_snapshot(self) -> PerformanceSnapshot:
        return self.monitor.aggregate()

    def get_agent_performance(self, agent_id: str) -> AgentPerformance:
        return self.monitor.get_agent_performance(agent_id)

    def classify_task(self, description: str) -> ComplexityAssessment:
        return self.classifier.classify(description)

    def list_templates(self) -> Dict[str, AgentSpec]:
        return {name: spec.model_copy(deep=True) for name, spec in sorted(AGENT_TEMPLATES.items())}

    def events_since(self, sequence: int = 0, limit: Optional[int] = None) -> List[OrchestratorEvent]:
        return self.events.events_since(sequence, limit)

    def subscribe(self, handler: EventHandler, kinds: Optional[List[EventKind]] = None) -> str:
        return self.events.subscribe(handler, kinds)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.events.unsubscribe(subscription_id)

    def get_status(self) -> Dict[str, Any]:
        """Get overall orchestrator status."""
        return {
            "running": self.is_running,
            "registry": self.registry.get_registry_status(),
            "tasks": self.dispatcher.counts_by_status(),
            "workflows": len(self.workflows.list_workflows()),
            "messages": self.bus.total_messages,
            "last_event_sequence": self.events.last_sequence
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._background_tasks)

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self.is_running:
            return
        self._shutdown_event = asyncio.Event()
        loop_task = asyncio.create_task(self._tick_loop())
        self._background_tasks.add(loop_task)
        loop_task.add_done_callback(self._background_tasks.discard)
        self.log_operation_start(
            "dispatch_loop",
            interval_seconds=self.config.orchestration.tick_interval_seconds
        )

    async def _tick_loop(self) -> None:
        interval = self.config.orchestration.tick_interval_seconds
        while not self._shutdown_event.is_set():
            try:
                self.dispatcher.tick()
            except Exception as e:
                self.log_operation_error("dispatch_tick", e)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        """Stop the background loop and wait for it to exit."""
        with self.timed_operation("shutdown", background_tasks=len(self._background_tasks)):
            if self._shutdown_event is not None:
                self._shutdown_event.set()

            for task in list(self._background_tasks):
                task.cancel()
            if self._background_tasks:
                await asyncio.gather(*self._background_tasks, return_exceptions=True)
            self._background_tasks.clear()
