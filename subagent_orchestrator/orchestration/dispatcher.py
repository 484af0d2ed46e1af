"""
Task Dispatcher: accepts task submissions and delegates them to agents.

Locking follows a single order, queue lock -> task lock -> agent lock, so a
tick can never deadlock with completions or agent shutdowns. Events gathered
while locks are held are published once they are released.
"""

import heapq
import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..models.core import (
    MessageKind, Priority, Task, TaskFilter, TaskSpec, TaskStatus, new_id
)
from ..models.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..utils.logging import get_logger
from ..utils.validation import normalize_tags, parse_model
from .classification import ComplexityClassifier, KeywordComplexityClassifier
from .events import EventKind, EventPublisher
from .message_bus import CommunicationBus
from .registry import AgentRegistry

logger = get_logger(__name__)


class TaskDispatcher:
    """
    Matches pending tasks to eligible agents under capacity and priority
    constraints.

    Pending tasks live in a heap ordered by descending priority then
    submission order. Entries of tasks that left ``pending`` (cancelled,
    dispatched) are discarded lazily when popped.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        bus: CommunicationBus,
        events: Optional[EventPublisher] = None,
        require_acknowledgement: bool = False,
        classifier: Optional[ComplexityClassifier] = None
    ):
        self.registry = registry
        self.bus = bus
        self.events = events or registry.events
        self.require_acknowledgement = require_acknowledgement
        self.classifier = classifier or KeywordComplexityClassifier()

        self._tasks: Dict[str, Task] = {}
        self._task_locks: Dict[str, threading.RLock] = {}
        self._agent_tasks: Dict[str, Set[str]] = {}
        self._agent_tasks_lock = threading.Lock()
        self._queue: List[Tuple[int, int, str]] = []
        self._queue_lock = threading.RLock()
        self._sequence = itertools.count(1)
        self._clock_lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None

        self.registry.add_stop_listener(self._on_agent_offline)
        self.registry.add_deregister_listener(self._on_agent_deregistered)
        self.logger = get_logger(f"{__name__}.TaskDispatcher")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        """Strictly increasing timestamps for task transitions."""
        with self._clock_lock:
            now = datetime.now()
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return now

    def _lock_for(self, task_id: str) -> threading.RLock:
        lock = self._task_locks.get(task_id)
        if lock is None:
            raise NotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return lock

    def _push(self, task: Task) -> None:
        heapq.heappush(self._queue, (-task.priority.rank, task.sequence, task.id))

    def _assign(self, task: Task, agent_id: Optional[str]) -> None:
        self._unindex(task)
        task.assigned_agent_id = agent_id
        if agent_id is not None:
            with self._agent_tasks_lock:
                self._agent_tasks.setdefault(agent_id, set()).add(task.id)

    def _unindex(self, task: Task) -> None:
        """Forget a task in its agent's live set; the assignee stays on the record."""
        if task.assigned_agent_id is None:
            return
        with self._agent_tasks_lock:
            live = self._agent_tasks.get(task.assigned_agent_id)
            if live is not None:
                live.discard(task.id)
                if not live:
                    del self._agent_tasks[task.assigned_agent_id]

    def tasks_of(self, agent_id: str) -> Set[str]:
        """Ids of the delegated or running tasks held by an agent."""
        with self._agent_tasks_lock:
            return set(self._agent_tasks.get(agent_id, ()))

    @staticmethod
    def _event(kind: EventKind, task: Task, **data: Any) -> tuple:
        payload = {
            "agent_id": task.assigned_agent_id,
            "status": task.status.value,
            "workflow_id": task.workflow_id,
            "step_key": task.step_key,
        }
        payload.update(data)
        return (kind, task.id, payload)

    def _check_assignee(self, task: Task, agent_id: str, expected: TaskStatus, action: str) -> None:
        if task.status != expected:
            raise InvalidStateError(
                f"Cannot {action} task {task.id} while {task.status.value}",
                task_id=task.id,
                status=task.status.value
            )
        if task.assigned_agent_id != agent_id:
            raise InvalidStateError(
                f"Agent {agent_id} is not assigned to task {task.id}",
                task_id=task.id,
                agent_id=agent_id,
                assigned_agent_id=task.assigned_agent_id
            )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        spec: Union[TaskSpec, Dict[str, Any]],
        workflow_id: Optional[str] = None,
        step_key: Optional[str] = None,
        attempt: int = 1
    ) -> str:
        """
        Submit a task; it is stored as pending until a tick delegates it.

        Args:
            spec: Task specification (model or dict)
            workflow_id: Owning workflow, set by the workflow engine
            step_key: Owning workflow step
            attempt: Attempt number for retried workflow steps

        Returns:
            str: Task id

        Raises:
            ValidationError: Malformed specification
            NotFoundError: ``target_agent_id`` names an unknown agent
            ConflictError: A task with the same id already exists
        """
        spec = parse_model(TaskSpec, spec, "task spec")
        if not spec.title.strip():
            raise ValidationError("Task title cannot be empty", field="title")

        required_capabilities = normalize_tags(spec.required_capabilities)
        priority = spec.priority

        if spec.auto_classify and priority is None:
            assessment = self.classifier.classify(spec.description or spec.title)
            priority = assessment.suggested_priority
            if not required_capabilities:
                required_capabilities = set(assessment.suggested_capabilities)
            self.logger.info(
                "Classified task",
                title=spec.title,
                category=assessment.category.value,
                priority=priority.value,
                confidence=assessment.confidence
            )

        if spec.target_agent_id is not None and not self.registry.exists(spec.target_agent_id):
            raise NotFoundError(
                f"Target agent not found: {spec.target_agent_id}",
                agent_id=spec.target_agent_id
            )

        with self._queue_lock:
            task_id = spec.id or new_id()
            if task_id in self._tasks:
                raise ConflictError(f"Task already exists: {task_id}", task_id=task_id)

            task = Task(
                id=task_id,
                title=spec.title.strip(),
                description=spec.description,
                required_capabilities=required_capabilities,
                required_specializations=set(spec.required_specializations),
                priority=priority or Priority.MEDIUM,
                min_agent_priority=spec.min_agent_priority,
                target_agent_id=spec.target_agent_id,
                inputs=dict(spec.inputs),
                workflow_id=workflow_id,
                step_key=step_key,
                attempt=attempt,
                created_at=self._now(),
                sequence=next(self._sequence)
            )
            self._task_locks[task_id] = threading.RLock()
            self._tasks[task_id] = task
            self._push(task)
            event = self._event(EventKind.TASK_SUBMITTED, task, priority=task.priority.value, attempt=attempt)

        self.logger.info(
            "Submitted task",
            task_id=task_id,
            title=task.title,
            priority=task.priority.value,
            workflow_id=workflow_id
        )
        self.events.publish_all([event])
        return task_id

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def tick(self) -> List[str]:
        """
        Delegate as many pending tasks as current capacity allows.

        Returns:
            List[str]: Ids of the tasks delegated during this tick
        """
        pending_events: List[tuple] = []
        delegations: List[Tuple[str, str]] = []

        with self._queue_lock:
            deferred: List[Tuple[int, int, str]] = []
            while self._queue:
                entry = heapq.heappop(self._queue)
                task_id = entry[2]
                task = self._tasks.get(task_id)
                if task is None:
                    continue

                with self._task_locks[task_id]:
                    if task.status != TaskStatus.PENDING:
                        continue
                    if task.target_agent_id is not None and not self.registry.exists(task.target_agent_id):
                        # submitted while its target was being deregistered
                        self._cancel_locked(task, "target agent deregistered", pending_events)
                        continue

                    candidates = self.registry.capability_index.find_eligible(
                        task.required_capabilities,
                        task.min_agent_priority,
                        task.required_specializations,
                        task.target_agent_id
                    )
                    agent_id = None
                    for candidate in candidates:
                        if self.registry.reserve(candidate.id, pending_events):
                            agent_id = candidate.id
                            break

                    if agent_id is None:
                        deferred.append(entry)
                        continue

                    task.status = TaskStatus.DELEGATED
                    task.delegated_at = self._now()
                    self._assign(task, agent_id)
                    latency_ms = (task.delegated_at - task.created_at).total_seconds() * 1000
                    pending_events.append(self._event(EventKind.TASK_DELEGATED, task, latency_ms=latency_ms))
                    delegations.append((task_id, agent_id))

            for entry in deferred:
                heapq.heappush(self._queue, entry)

        self.events.publish_all(pending_events)

        for task_id, agent_id in delegations:
            task = self._tasks[task_id]
            self.bus.deliver(
                agent_id,
                {
                    "type": "delegation",
                    "task_id": task_id,
                    "title": task.title,
                    "description": task.description,
                    "inputs": task.inputs,
                    "workflow_id": task.workflow_id,
                    "step_key": task.step_key,
                },
                MessageKind.DELEGATION
            )
            if not self.require_acknowledgement:
                self._mark_running(task_id, agent_id)

        if delegations:
            self.logger.info("Dispatch tick delegated tasks", count=len(delegations))
        return [task_id for task_id, _ in delegations]

    def _mark_running(self, task_id: str, agent_id: str) -> bool:
        with self._lock_for(task_id):
            task = self._tasks[task_id]
            if task.status != TaskStatus.DELEGATED or task.assigned_agent_id != agent_id:
                return False
            task.status = TaskStatus.RUNNING
            task.started_at = self._now()
            event = self._event(EventKind.TASK_RUNNING, task)

        self.events.publish_all([event])
        return True

    # ------------------------------------------------------------------
    # Agent-side transitions
    # ------------------------------------------------------------------

    def acknowledge(self, task_id: str, agent_id: str) -> Task:
        """Assigned agent accepts a delegation: delegated -> running."""
        with self._lock_for(task_id):
            task = self._tasks[task_id]
            self._check_assignee(task, agent_id, TaskStatus.DELEGATED, "acknowledge")

        self._mark_running(task_id, agent_id)
        return self.get(task_id)

    def report_progress(self, task_id: str, agent_id: str, progress: int) -> Task:
        """
        Record progress for a running task.

        Raises:
            ValidationError: Progress outside 0-100 or lower than the last report
            InvalidStateError: Task not running or caller not assigned
        """
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValidationError(f"Progress must be an integer between 0 and 100, got {progress!r}")

        with self._lock_for(task_id):
            task = self._tasks[task_id]
            self._check_assignee(task, agent_id, TaskStatus.RUNNING, "report progress on")
            if progress < task.progress:
                raise ValidationError(
                    f"Progress cannot decrease ({task.progress} -> {progress})",
                    task_id=task_id
                )
            task.progress = progress
            snapshot = task.model_copy(deep=True)
            event = self._event(EventKind.TASK_PROGRESS, task, progress=progress)

        self.events.publish_all([event])
        return snapshot

    def complete(self, task_id: str, agent_id: str, result: Any = None) -> Task:
        """
        Mark a running task completed and free the agent's slot.

        A late completion of a task cancelled under the same agent is ignored.

        Raises:
            InvalidStateError: Task not running (including already completed)
                or the caller is not the assigned agent
        """
        pending_events: List[tuple] = []
        with self._lock_for(task_id):
            task = self._tasks[task_id]
            if task.status == TaskStatus.CANCELLED and task.assigned_agent_id == agent_id:
                self.logger.info("Ignoring late completion of cancelled task", task_id=task_id, agent_id=agent_id)
                return task.model_copy(deep=True)
            self._check_assignee(task, agent_id, TaskStatus.RUNNING, "complete")

            task.status = TaskStatus.COMPLETED
            task.progress = 100
            task.result = result
            task.completed_at = self._now()
            self.registry.release(agent_id, pending=pending_events)
            self._unindex(task)
            pending_events.append(self._event(EventKind.TASK_COMPLETED, task, duration_ms=task.duration_ms))
            snapshot = task.model_copy(deep=True)

        self.logger.info("Task completed", task_id=task_id, agent_id=agent_id, duration_ms=snapshot.duration_ms)
        self.events.publish_all(pending_events)
        return snapshot

    def fail(self, task_id: str, agent_id: str, error: str, fatal: bool = False) -> Task:
        """
        Mark a running task failed; a fatal failure puts the agent in error.

        Raises:
            InvalidStateError: Task not running or the caller is not assigned
        """
        pending_events: List[tuple] = []
        with self._lock_for(task_id):
            task = self._tasks[task_id]
            if task.status == TaskStatus.CANCELLED and task.assigned_agent_id == agent_id:
                self.logger.info("Ignoring late failure of cancelled task", task_id=task_id, agent_id=agent_id)
                return task.model_copy(deep=True)
            self._check_assignee(task, agent_id, TaskStatus.RUNNING, "fail")

            task.status = TaskStatus.FAILED
            task.error = error
            task.fatal = fatal
            task.completed_at = self._now()
            self.registry.release(agent_id, fatal=fatal, error=error, pending=pending_events)
            self._unindex(task)
            pending_events.append(self._event(
                EventKind.TASK_FAILED, task, error=error, fatal=fatal, duration_ms=task.duration_ms
            ))
            snapshot = task.model_copy(deep=True)

        self.logger.warning("Task failed", task_id=task_id, agent_id=agent_id, error=error, fatal=fatal)
        self.events.publish_all(pending_events)
        return snapshot

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, task_id: str, reason: str = "cancelled") -> Task:
        """
        Cancel a pending, delegated or running task. Capacity is freed
        immediately; the agent is told through a cancellation message.

        Raises:
            NotFoundError: Unknown task
            InvalidStateError: Task already terminal
        """
        pending_events: List[tuple] = []
        with self._lock_for(task_id):
            task = self._tasks[task_id]
            if task.is_terminal:
                raise InvalidStateError(
                    f"Cannot cancel task {task_id}: already {task.status.value}",
                    task_id=task_id,
                    status=task.status.value
                )
            notify_agent = self._cancel_locked(task, reason, pending_events)
            snapshot = task.model_copy(deep=True)

        self.logger.info("Task cancelled", task_id=task_id, reason=reason)
        self.events.publish_all(pending_events)
        if notify_agent:
            self._send_cancellation(notify_agent, task_id, reason)
        return snapshot

    def _cancel_locked(self, task: Task, reason: str, pending_events: List[tuple]) -> Optional[str]:
        """Cancel under the task lock; returns the agent to notify, if any."""
        agent_id = None
        if task.status in (TaskStatus.DELEGATED, TaskStatus.RUNNING):
            agent_id = task.assigned_agent_id
            self.registry.release(agent_id, pending=pending_events)
            self._unindex(task)
        task.status = TaskStatus.CANCELLED
        task.error = reason
        task.completed_at = self._now()
        pending_events.append(self._event(EventKind.TASK_CANCELLED, task, reason=reason))
        return agent_id

    def _send_cancellation(self, agent_id: str, task_id: str, reason: str) -> None:
        if self.registry.exists(agent_id):
            self.bus.deliver(
                agent_id,
                {"type": "cancellation", "task_id": task_id, "reason": reason},
                MessageKind.DELEGATION
            )

    def _on_agent_offline(self, agent_id: str) -> None:
        """Requeue delegated tasks and cancel running ones of a stopped agent."""
        pending_events: List[tuple] = []
        cancelled: List[str] = []
        requeued: List[str] = []

        with self._queue_lock:
            for task_id in sorted(self.tasks_of(agent_id)):
                task = self._tasks[task_id]
                with self._task_locks[task_id]:
                    if task.assigned_agent_id != agent_id:
                        continue
                    if task.status == TaskStatus.DELEGATED:
                        self.registry.release(agent_id, pending=pending_events)
                        task.status = TaskStatus.PENDING
                        task.delegated_at = None
                        self._assign(task, None)
                        self._push(task)
                        pending_events.append(self._event(
                            EventKind.TASK_REQUEUED, task, previous_agent_id=agent_id
                        ))
                        requeued.append(task_id)
                    elif task.status == TaskStatus.RUNNING:
                        self._cancel_locked(task, "agent stopped", pending_events)
                        cancelled.append(task_id)

        if requeued or cancelled:
            self.logger.info(
                "Released tasks of stopped agent",
                agent_id=agent_id,
                requeued=len(requeued),
                cancelled=len(cancelled)
            )
        self.events.publish_all(pending_events)
        for task_id in cancelled:
            self._send_cancellation(agent_id, task_id, "agent stopped")

    def _on_agent_deregistered(self, agent_id: str) -> None:
        """Cancel pending tasks pinned to an agent that no longer exists."""
        pinned = [
            task.id for task in list(self._tasks.values())
            if task.target_agent_id == agent_id and task.status == TaskStatus.PENDING
        ]
        for task_id in pinned:
            try:
                self.cancel(task_id, reason="target agent deregistered")
            except InvalidStateError:
                # cancelled concurrently
                continue

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Task:
        """Get a copy of a task record."""
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return task.model_copy(deep=True)

    def list(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """List copies of tasks in submission order."""
        tasks = sorted(list(self._tasks.values()), key=lambda t: t.sequence)
        if task_filter is not None:
            tasks = [t for t in tasks if task_filter.matches(t)]
        return [t.model_copy(deep=True) for t in tasks]

    def counts_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in list(self._tasks.values()):
            counts[task.status.value] += 1
        return counts

    @property
    def pending_count(self) -> int:
        return len([t for t in list(self._tasks.values()) if t.status == TaskStatus.PENDING])
