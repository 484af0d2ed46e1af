"""
Performance Monitor: per-agent samples and aggregate statistics.

Samples are replaced wholesale, never mutated in place, so readers always see
a complete sample without locking. Task outcomes are observed through
dispatcher events.
"""

import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional, Union

from ..models.core import (
    Agent, AgentMetricsUpdate, AgentPerformance, AgentStatus, PerformanceSample,
    PerformanceSnapshot
)
from ..models.errors import NotFoundError
from ..utils.logging import get_logger
from ..utils.monitoring import MetricsCollector, sample_process_resources
from ..utils.validation import parse_model
from .dispatcher import TaskDispatcher
from .events import EventKind, EventPublisher, OrchestratorEvent
from .registry import AgentRegistry

THROUGHPUT_WINDOW = timedelta(minutes=1)


class PerformanceMonitor:
    """Tracks agent activity and derives orchestrator-wide statistics."""

    def __init__(
        self,
        registry: AgentRegistry,
        dispatcher: TaskDispatcher,
        events: Optional[EventPublisher] = None,
        metrics: Optional[MetricsCollector] = None,
        include_process_metrics: bool = True
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.events = events or registry.events
        self.metrics = metrics or MetricsCollector()
        self.include_process_metrics = include_process_metrics

        self._samples: Dict[str, PerformanceSample] = {}
        self._completed: Counter = Counter()
        self._failed: Counter = Counter()
        self._finished_at: Deque[datetime] = deque(maxlen=10000)
        self._counts_lock = threading.Lock()
        self.logger = get_logger(f"{__name__}.PerformanceMonitor")

        self.events.subscribe(
            self._on_task_event,
            kinds=[
                EventKind.TASK_DELEGATED,
                EventKind.TASK_COMPLETED,
                EventKind.TASK_FAILED,
                EventKind.TASK_CANCELLED,
            ]
        )
        self.events.subscribe(self._on_agent_deregistered, kinds=[EventKind.AGENT_DEREGISTERED])

    def _on_task_event(self, event: OrchestratorEvent) -> None:
        agent_id = event.data.get("agent_id")
        if event.kind == EventKind.TASK_DELEGATED:
            self.metrics.increment_counter("tasks.delegated")
            if event.data.get("latency_ms") is not None:
                self.metrics.record_timer("dispatch.latency_ms", event.data["latency_ms"])
            return

        if event.kind == EventKind.TASK_CANCELLED:
            self.metrics.increment_counter("tasks.cancelled")
            return

        completed = event.kind == EventKind.TASK_COMPLETED
        self.metrics.increment_counter("tasks.completed" if completed else "tasks.failed")
        with self._counts_lock:
            if agent_id:
                (self._completed if completed else self._failed)[agent_id] += 1
            self._finished_at.append(event.timestamp)

        if event.data.get("duration_ms") is not None:
            self.metrics.record_timer("task.duration_ms", event.data["duration_ms"])

    def _on_agent_deregistered(self, event: OrchestratorEvent) -> None:
        self._samples.pop(event.entity_id, None)

    def sample(self, agent_id: str, metrics: Union[AgentMetricsUpdate, Dict[str, Any]]) -> PerformanceSample:
        """
        Replace the latest resource counters for an agent.

        Fields left unset keep their previous value; uptime defaults to the
        time since the agent was last started.

        Raises:
            NotFoundError: Unknown agent
            ValidationError: Negative or malformed values
        """
        if not self.registry.exists(agent_id):
            raise NotFoundError(f"Agent not found: {agent_id}", agent_id=agent_id)
        update = parse_model(AgentMetricsUpdate, metrics, "agent metrics")

        previous = self._samples.get(agent_id) or PerformanceSample(agent_id=agent_id)
        uptime = update.uptime_seconds
        if uptime is None:
            uptime = self._uptime_from_registry(agent_id)

        sample = PerformanceSample(
            agent_id=agent_id,
            cpu_usage=update.cpu_usage if update.cpu_usage is not None else previous.cpu_usage,
            memory_usage=update.memory_usage if update.memory_usage is not None else previous.memory_usage,
            uptime_seconds=uptime,
            completed_task_count=self._completed[agent_id],
            failed_task_count=self._failed[agent_id],
            sampled_at=datetime.now()
        )
        self._samples[agent_id] = sample
        self.metrics.set_gauge(f"agent.{agent_id}.cpu_usage", sample.cpu_usage)
        self.metrics.set_gauge(f"agent.{agent_id}.memory_usage", sample.memory_usage)
        return sample

    def _uptime_from_registry(self, agent_id: str) -> float:
        try:
            agent = self.registry.get(agent_id)
        except NotFoundError:
            return 0.0
        return self._uptime(agent)

    @staticmethod
    def _uptime(agent: Agent) -> float:
        if agent.status == AgentStatus.OFFLINE or agent.started_at is None:
            return 0.0
        return max(0.0, (datetime.now() - agent.started_at).total_seconds())

    def _performance_row(self, agent: Agent) -> AgentPerformance:
        sample = self._samples.get(agent.id)
        with self._counts_lock:
            completed = self._completed[agent.id]
            failed = self._failed[agent.id]
        return AgentPerformance(
            agent_id=agent.id,
            name=agent.name,
            status=agent.status,
            active_task_count=agent.active_task_count,
            max_concurrent_tasks=agent.max_concurrent_tasks,
            cpu_usage=sample.cpu_usage if sample else 0.0,
            memory_usage=sample.memory_usage if sample else 0.0,
            uptime_seconds=sample.uptime_seconds if sample else self._uptime(agent),
            completed_task_count=completed,
            failed_task_count=failed,
            efficiency=completed / (completed + failed) if completed + failed else 0.0,
            sampled_at=sample.sampled_at if sample else None
        )

    def get_sample(self, agent_id: str) -> Optional[PerformanceSample]:
        return self._samples.get(agent_id)

    def get_agent_performance(self, agent_id: str) -> AgentPerformance:
        """Performance row for one agent."""
        return self._performance_row(self.registry.get(agent_id))

    def aggregate(self) -> PerformanceSnapshot:
        """
        Build an approximately consistent snapshot from registry and
        dispatcher state. Takes no locks.
        """
        agents = self.registry.list()
        tasks_by_status = self.dispatcher.counts_by_status()
        agents_by_status = Counter(agent.status.value for agent in agents)

        completed = tasks_by_status.get("completed", 0)
        failed = tasks_by_status.get("failed", 0)

        cutoff = datetime.now() - THROUGHPUT_WINDOW
        with self._counts_lock:
            finished_at = list(self._finished_at)
        recent = len([ts for ts in finished_at if ts >= cutoff])

        durations = self.metrics.get_timer_stats("task.duration_ms")

        snapshot = PerformanceSnapshot(
            total_agents=len(agents),
            active_agents=len([a for a in agents if a.status in (AgentStatus.WORKING, AgentStatus.WAITING)]),
            agents_by_status=dict(agents_by_status),
            tasks_by_status=tasks_by_status,
            completed_tasks=completed,
            failed_tasks=failed,
            efficiency=completed / (completed + failed) if completed + failed else 0.0,
            throughput_per_minute=float(recent),
            average_task_duration_ms=durations.get("mean"),
            agents=[self._performance_row(agent) for agent in agents],
            process=sample_process_resources() if self.include_process_metrics else {}
        )
        self.metrics.set_gauge("agents.total", snapshot.total_agents)
        self.metrics.set_gauge("agents.active", snapshot.active_agents)
        return snapshot
