"""
Workflow Engine: runs a dependency graph of tasks as one logical unit.
"""

import threading
from collections import Counter, deque
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from ..models.core import (
    TaskSpec, TaskStatus, Workflow, WorkflowSpec, WorkflowStatus, WorkflowStep, new_id
)
from ..models.errors import (
    ConflictError, InvalidStateError, NotFoundError, OrchestratorError, ValidationError
)
from ..utils.logging import get_logger
from ..utils.validation import parse_model
from .dispatcher import TaskDispatcher
from .events import EventKind, EventPublisher, OrchestratorEvent

logger = get_logger(__name__)

_STEP_STATUS_BY_EVENT = {
    EventKind.TASK_DELEGATED: TaskStatus.DELEGATED,
    EventKind.TASK_RUNNING: TaskStatus.RUNNING,
    EventKind.TASK_REQUEUED: TaskStatus.PENDING,
}

TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED
})


def derive_workflow_status(counts: Counter) -> WorkflowStatus:
    """Aggregate step status counts into a workflow status."""
    if counts[TaskStatus.FAILED]:
        return WorkflowStatus.FAILED
    if counts[TaskStatus.DELEGATED] or counts[TaskStatus.RUNNING]:
        return WorkflowStatus.RUNNING
    if counts[TaskStatus.PENDING]:
        return WorkflowStatus.PENDING
    if counts[TaskStatus.CANCELLED]:
        return WorkflowStatus.CANCELLED
    return WorkflowStatus.COMPLETED


class _Plan:
    """Side effects decided under a workflow lock, applied after release."""

    def __init__(self):
        self.events: List[tuple] = []
        self.submissions: List[Tuple[str, str, TaskSpec, int]] = []
        self.cancellations: List[str] = []


class WorkflowEngine:
    """
    Feeds workflow steps to the dispatcher as their dependencies complete.

    Step and workflow state is driven by task events: every constituent task
    transition updates one step and the workflow's per-status counters.
    """

    def __init__(self, dispatcher: TaskDispatcher, events: Optional[EventPublisher] = None):
        self.dispatcher = dispatcher
        self.events = events or dispatcher.events
        self._workflows: Dict[str, Workflow] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._counts: Dict[str, Counter] = {}
        self._task_index: Dict[str, Tuple[str, str]] = {}
        self._write_lock = threading.Lock()
        self.logger = get_logger(f"{__name__}.WorkflowEngine")

        self.events.subscribe(
            self._on_task_event,
            kinds=[
                EventKind.TASK_DELEGATED,
                EventKind.TASK_RUNNING,
                EventKind.TASK_REQUEUED,
                EventKind.TASK_COMPLETED,
                EventKind.TASK_FAILED,
                EventKind.TASK_CANCELLED,
            ]
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_graph(spec: WorkflowSpec) -> List[str]:
        """Check step keys and dependencies; returns a topological order."""
        keys = [step.key for step in spec.steps]
        duplicates = sorted(key for key, count in Counter(keys).items() if count > 1)
        if duplicates:
            raise ValidationError(f"Duplicate step keys: {', '.join(duplicates)}", steps=duplicates)

        known = set(keys)
        for step in spec.steps:
            if step.key in step.depends_on:
                raise ValidationError(f"Step {step.key} depends on itself", step=step.key)
            unknown = [dep for dep in step.depends_on if dep not in known]
            if unknown:
                raise ValidationError(
                    f"Step {step.key} depends on unknown steps: {', '.join(unknown)}",
                    step=step.key
                )

        in_degree = {step.key: len(set(step.depends_on)) for step in spec.steps}
        dependents: Dict[str, List[str]] = {key: [] for key in keys}
        for step in spec.steps:
            for dep in set(step.depends_on):
                dependents[dep].append(step.key)

        ready = deque(key for key in keys if in_degree[key] == 0)
        order = []
        while ready:
            key = ready.popleft()
            order.append(key)
            for dependent in dependents[key]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(keys):
            cyclic = sorted(key for key in keys if key not in order)
            raise ValidationError(f"Workflow dependencies contain a cycle: {', '.join(cyclic)}", steps=cyclic)
        return order

    def create_workflow(self, spec: Union[WorkflowSpec, Dict[str, Any]]) -> str:
        """
        Create a workflow and submit its root steps.

        Raises:
            ValidationError: Duplicate keys, unknown or cyclic dependencies
            NotFoundError: A step pins an unknown agent
            ConflictError: A workflow with the same id exists
        """
        spec = parse_model(WorkflowSpec, spec, "workflow spec")
        self._validate_graph(spec)

        for template in spec.steps:
            if template.target_agent_id and not self.dispatcher.registry.exists(template.target_agent_id):
                raise NotFoundError(
                    f"Step {template.key} targets unknown agent {template.target_agent_id}",
                    agent_id=template.target_agent_id
                )

        steps = []
        for template in spec.steps:
            steps.append(WorkflowStep(
                key=template.key,
                template=template.model_copy(deep=True),
                remaining_dependencies=len(set(template.depends_on)),
                dependents=[s.key for s in spec.steps if template.key in s.depends_on]
            ))

        plan = _Plan()
        with self._write_lock:
            workflow_id = spec.id or new_id()
            if workflow_id in self._workflows:
                raise ConflictError(f"Workflow already exists: {workflow_id}", workflow_id=workflow_id)
            workflow = Workflow(
                id=workflow_id,
                name=spec.name,
                description=spec.description,
                steps=steps
            )
            self._workflows[workflow_id] = workflow
            self._locks[workflow_id] = threading.RLock()
            self._counts[workflow_id] = Counter({TaskStatus.PENDING: len(steps)})

        with self._locks[workflow_id]:
            plan.events.append((
                EventKind.WORKFLOW_CREATED,
                workflow_id,
                {"name": workflow.name, "steps": len(steps)}
            ))
            for step in workflow.steps:
                if step.remaining_dependencies == 0:
                    self._plan_submission(workflow, step, {}, plan)

        self.logger.info("Created workflow", workflow_id=workflow_id, name=workflow.name, steps=len(steps))
        self._apply(workflow_id, plan)
        return workflow_id

    # ------------------------------------------------------------------
    # Planning helpers (workflow lock held)
    # ------------------------------------------------------------------

    def _plan_submission(self, workflow: Workflow, step: WorkflowStep, inputs: Dict[str, Any], plan: _Plan) -> None:
        template = step.template
        task_id = new_id()
        step.task_id = task_id
        step.task_ids.append(task_id)
        step.attempts += 1
        self._task_index[task_id] = (workflow.id, step.key)

        task_spec = TaskSpec(
            id=task_id,
            title=template.title or template.key,
            description=template.description,
            required_capabilities=set(template.required_capabilities),
            required_specializations=set(template.required_specializations),
            priority=template.priority,
            target_agent_id=template.target_agent_id,
            inputs={**template.inputs, **inputs}
        )
        plan.submissions.append((task_id, step.key, task_spec, step.attempts))

    def _set_step_status(self, workflow: Workflow, step: WorkflowStep, status: TaskStatus, plan: _Plan) -> None:
        if step.status == status:
            return
        counts = self._counts[workflow.id]
        counts[step.status] -= 1
        counts[status] += 1
        step.status = status
        if status.is_terminal:
            step.completed_at = datetime.now()
        plan.events.append((
            EventKind.WORKFLOW_STEP_CHANGED,
            workflow.id,
            {"step_key": step.key, "status": status.value, "task_id": step.task_id, "attempts": step.attempts}
        ))

    def _refresh_status(self, workflow: Workflow, plan: _Plan) -> None:
        status = derive_workflow_status(self._counts[workflow.id])
        if status == workflow.status:
            return
        previous = workflow.status
        workflow.status = status
        workflow.completed_at = datetime.now() if status in TERMINAL_WORKFLOW_STATUSES else None
        plan.events.append((
            EventKind.WORKFLOW_STATUS_CHANGED,
            workflow.id,
            {"previous": previous.value, "status": status.value}
        ))
        self.logger.info(
            "Workflow status changed",
            workflow_id=workflow.id,
            previous=previous.value,
            status=status.value
        )

    def _cancel_step(self, workflow: Workflow, step: WorkflowStep, reason: str, plan: _Plan) -> None:
        if step.status.is_terminal:
            return
        if step.task_id is not None:
            plan.cancellations.append(step.task_id)
        step.error = reason
        self._set_step_status(workflow, step, TaskStatus.CANCELLED, plan)

    def _cancel_descendants(self, workflow: Workflow, step: WorkflowStep, plan: _Plan) -> None:
        queue = deque(step.dependents)
        seen = set()
        while queue:
            key = queue.popleft()
            if key in seen:
                continue
            seen.add(key)
            descendant = workflow.get_step(key)
            self._cancel_step(workflow, descendant, f"dependency {step.key} did not complete", plan)
            queue.extend(descendant.dependents)

    # ------------------------------------------------------------------
    # Task event handling
    # ------------------------------------------------------------------

    def _on_task_event(self, event: OrchestratorEvent) -> None:
        location = self._task_index.get(event.entity_id)
        if location is None:
            return
        workflow_id, step_key = location

        plan = _Plan()
        with self._locks[workflow_id]:
            workflow = self._workflows[workflow_id]
            step = workflow.get_step(step_key)
            if step.task_id != event.entity_id or step.status.is_terminal:
                return

            if event.kind in _STEP_STATUS_BY_EVENT:
                self._set_step_status(workflow, step, _STEP_STATUS_BY_EVENT[event.kind], plan)
            elif event.kind == EventKind.TASK_COMPLETED:
                self._handle_completed(workflow, step, plan)
            elif event.kind == EventKind.TASK_FAILED:
                self._handle_failed(workflow, step, event.data.get("error"), plan)
            elif event.kind == EventKind.TASK_CANCELLED:
                step.error = event.data.get("reason")
                self._set_step_status(workflow, step, TaskStatus.CANCELLED, plan)
                self._cancel_descendants(workflow, step, plan)

            self._refresh_status(workflow, plan)

        self._apply(workflow_id, plan)

    def _handle_completed(self, workflow: Workflow, step: WorkflowStep, plan: _Plan) -> None:
        step.result = self.dispatcher.get(step.task_id).result
        self._set_step_status(workflow, step, TaskStatus.COMPLETED, plan)

        for key in step.dependents:
            dependent = workflow.get_step(key)
            if dependent.status != TaskStatus.PENDING or dependent.task_id is not None:
                continue
            dependent.remaining_dependencies -= 1
            if dependent.remaining_dependencies == 0:
                inputs = {
                    dep: workflow.get_step(dep).result
                    for dep in dependent.template.depends_on
                }
                self._plan_submission(workflow, dependent, inputs, plan)

    def _handle_failed(self, workflow: Workflow, step: WorkflowStep, error: Optional[str], plan: _Plan) -> None:
        step.error = error
        if step.attempts <= step.template.max_retries:
            self.logger.info(
                "Retrying workflow step",
                workflow_id=workflow.id,
                step_key=step.key,
                attempt=step.attempts + 1
            )
            inputs = {dep: workflow.get_step(dep).result for dep in step.template.depends_on}
            self._plan_submission(workflow, step, inputs, plan)
            self._set_step_status(workflow, step, TaskStatus.PENDING, plan)
            return

        self._set_step_status(workflow, step, TaskStatus.FAILED, plan)
        self._cancel_descendants(workflow, step, plan)

    def _apply(self, workflow_id: str, plan: _Plan) -> None:
        """Publish planned events and perform dispatcher calls outside the lock."""
        self.events.publish_all(plan.events)

        for task_id in plan.cancellations:
            try:
                self.dispatcher.cancel(task_id, reason="workflow step cancelled")
            except InvalidStateError:
                self.logger.debug("Workflow task already finished", workflow_id=workflow_id, task_id=task_id)

        for task_id, step_key, task_spec, attempt in plan.submissions:
            try:
                self.dispatcher.submit(task_spec, workflow_id=workflow_id, step_key=step_key, attempt=attempt)
            except OrchestratorError as e:
                self.logger.warning(
                    "Workflow step submission failed",
                    workflow_id=workflow_id,
                    step_key=step_key,
                    error=e.message
                )
                self._fail_unsubmitted(workflow_id, step_key, task_id, e.message)

    def _fail_unsubmitted(self, workflow_id: str, step_key: str, task_id: str, error: str) -> None:
        plan = _Plan()
        with self._locks[workflow_id]:
            workflow = self._workflows[workflow_id]
            step = workflow.get_step(step_key)
            if step.task_id != task_id or step.status.is_terminal:
                return
            step.error = error
            step.task_id = None
            self._set_step_status(workflow, step, TaskStatus.FAILED, plan)
            self._cancel_descendants(workflow, step, plan)
            self._refresh_status(workflow, plan)
        self._apply(workflow_id, plan)

    # ------------------------------------------------------------------
    # Commands and queries
    # ------------------------------------------------------------------

    def cancel_workflow(self, workflow_id: str) -> Workflow:
        """
        Cancel every non-terminal step of a workflow.

        Raises:
            NotFoundError: Unknown workflow
            InvalidStateError: No step left to cancel
        """
        lock = self._locks.get(workflow_id)
        if lock is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)

        plan = _Plan()
        with lock:
            workflow = self._workflows[workflow_id]
            live = [step for step in workflow.steps if not step.status.is_terminal]
            if not live:
                raise InvalidStateError(
                    f"Workflow {workflow_id} has no steps left to cancel",
                    workflow_id=workflow_id,
                    status=workflow.status.value
                )
            for step in live:
                self._cancel_step(workflow, step, "workflow cancelled", plan)
            self._refresh_status(workflow, plan)
            snapshot = workflow.model_copy(deep=True)

        self.logger.info("Cancelled workflow", workflow_id=workflow_id, steps_cancelled=len(live))
        self._apply(workflow_id, plan)
        return snapshot

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)
        with self._locks[workflow_id]:
            return workflow.model_copy(deep=True)

    def list_workflows(self, status: Optional[WorkflowStatus] = None) -> List[Workflow]:
        workflows = [self.get_workflow(workflow_id) for workflow_id in list(self._workflows)]
        if status is not None:
            workflows = [w for w in workflows if w.status == status]
        return sorted(workflows, key=lambda w: w.created_at)
