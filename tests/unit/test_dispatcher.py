"""
Unit tests for the task dispatcher.
"""

import pytest

from subagent_orchestrator.models.core import (
    AgentStatus, MessageKind, Priority, TaskFilter, TaskStatus
)
from subagent_orchestrator.models.errors import (
    ConflictError, InvalidStateError, NotFoundError, ValidationError
)
from subagent_orchestrator.orchestration.dispatcher import TaskDispatcher
from subagent_orchestrator.orchestration.events import EventKind


def _task(title="Task", capabilities=("python",), **kwargs):
    data = {"title": title, "required_capabilities": list(capabilities)}
    data.update(kwargs)
    return data


class TestSubmission:

    def test_submit_stores_pending(self, dispatcher):
        task_id = dispatcher.submit(_task())
        task = dispatcher.get(task_id)

        assert task.status == TaskStatus.PENDING
        assert task.priority == Priority.MEDIUM
        assert task.assigned_agent_id is None

    def test_submit_invalid_priority(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.submit(_task(priority="urgent"))

    def test_submit_blank_title(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.submit(_task(title="  "))

    def test_submit_duplicate_id(self, dispatcher):
        dispatcher.submit(_task(id="t1"))
        with pytest.raises(ConflictError):
            dispatcher.submit(_task(id="t1"))

    def test_submit_unknown_target_agent(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.submit(_task(target_agent_id="ghost"))

    def test_auto_classify_sets_priority_and_capabilities(self, dispatcher):
        task_id = dispatcher.submit({
            "title": "Tune",
            "description": "Optimize the database query algorithm",
            "auto_classify": True,
        })
        task = dispatcher.get(task_id)

        assert task.priority == Priority.HIGH
        assert task.required_capabilities == {"databases"}

    def test_explicit_priority_wins_over_classification(self, dispatcher):
        task_id = dispatcher.submit(_task(
            description="Research a novel breakthrough",
            priority="low",
            auto_classify=True
        ))
        assert dispatcher.get(task_id).priority == Priority.LOW

    def test_get_unknown_task(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.get("missing")


class TestTick:

    def test_no_agent_keeps_task_pending(self, dispatcher):
        task_id = dispatcher.submit(_task())
        assert dispatcher.tick() == []
        assert dispatcher.get(task_id).status == TaskStatus.PENDING

    def test_delegates_to_capable_agent(self, registry, bus, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())

        assert dispatcher.tick() == [task_id]

        task = dispatcher.get(task_id)
        agent = registry.get("a1")
        assert task.status == TaskStatus.RUNNING
        assert task.assigned_agent_id == "a1"
        assert task.delegated_at < task.started_at
        assert agent.status == AgentStatus.WORKING
        assert agent.active_task_count == 1

        messages = list(bus.receive("a1"))
        assert len(messages) == 1
        assert messages[0].kind == MessageKind.DELEGATION
        assert messages[0].payload["task_id"] == task_id

    def test_high_priority_dispatched_first(self, registry, dispatcher, make_agent_spec):
        low_id = dispatcher.submit(_task("low", priority="low"))
        high_id = dispatcher.submit(_task("high", priority="high"))
        registry.register(make_agent_spec("a1", max_tasks=1))

        assert dispatcher.tick() == [high_id]
        assert dispatcher.get(low_id).status == TaskStatus.PENDING

    def test_fifo_within_priority(self, registry, dispatcher, make_agent_spec):
        first = dispatcher.submit(_task("first"))
        second = dispatcher.submit(_task("second"))
        registry.register(make_agent_spec("a1", max_tasks=2))

        assert dispatcher.tick() == [first, second]

    def test_respects_capacity(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1", max_tasks=2))
        ids = [dispatcher.submit(_task(str(i))) for i in range(3)]

        assert dispatcher.tick() == ids[:2]
        assert registry.get("a1").active_task_count == 2
        assert dispatcher.get(ids[2]).status == TaskStatus.PENDING

    def test_skips_task_without_candidates(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1", capabilities=["python"]))
        blocked = dispatcher.submit(_task("rust", capabilities=["rust"], priority="high"))
        runnable = dispatcher.submit(_task("python"))

        assert dispatcher.tick() == [runnable]
        assert dispatcher.get(blocked).status == TaskStatus.PENDING

    def test_pinned_task_waits_for_its_agent(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        registry.register(make_agent_spec("a2"))
        registry.reserve("a2")
        task_id = dispatcher.submit(_task(target_agent_id="a2"))

        assert dispatcher.tick() == []
        registry.release("a2")
        assert dispatcher.tick() == [task_id]
        assert dispatcher.get(task_id).assigned_agent_id == "a2"

    def test_min_agent_priority(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("junior", priority=Priority.LOW))
        task_id = dispatcher.submit(_task(min_agent_priority="medium"))

        assert dispatcher.tick() == []
        registry.register(make_agent_spec("senior", priority=Priority.HIGH))
        assert dispatcher.tick() == [task_id]
        assert dispatcher.get(task_id).assigned_agent_id == "senior"

    def test_require_acknowledgement(self, registry, bus, make_agent_spec):
        dispatcher = TaskDispatcher(registry, bus, require_acknowledgement=True)
        registry.register(make_agent_spec("a1"))
        registry.register(make_agent_spec("a2"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()

        assert dispatcher.get(task_id).status == TaskStatus.DELEGATED
        with pytest.raises(InvalidStateError):
            dispatcher.complete(task_id, "a1")
        with pytest.raises(InvalidStateError):
            dispatcher.acknowledge(task_id, "a2")

        task = dispatcher.acknowledge(task_id, "a1")
        assert task.status == TaskStatus.RUNNING
        with pytest.raises(InvalidStateError):
            dispatcher.acknowledge(task_id, "a1")

    def test_delegation_events(self, events, registry, dispatcher, make_agent_spec):
        received = []
        events.subscribe(received.append, kinds=[
            EventKind.TASK_SUBMITTED, EventKind.TASK_DELEGATED, EventKind.TASK_RUNNING
        ])
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()

        assert [(e.kind, e.entity_id) for e in received] == [
            (EventKind.TASK_SUBMITTED, task_id),
            (EventKind.TASK_DELEGATED, task_id),
            (EventKind.TASK_RUNNING, task_id),
        ]
        assert received[1].data["agent_id"] == "a1"
        assert received[1].data["latency_ms"] >= 0


class TestCompletion:

    @pytest.fixture
    def running(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1", max_tasks=2))
        registry.register(make_agent_spec("a2"))
        task_id = dispatcher.submit(_task(target_agent_id="a1"))
        dispatcher.tick()
        return task_id

    def test_complete(self, registry, dispatcher, running):
        task = dispatcher.complete(running, "a1", {"answer": 42})

        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100
        assert task.result == {"answer": 42}
        assert task.completed_at > task.started_at
        agent = registry.get("a1")
        assert agent.active_task_count == 0
        assert agent.status == AgentStatus.IDLE

    def test_second_complete_rejected_without_double_decrement(self, registry, dispatcher, running):
        other = dispatcher.submit(_task(target_agent_id="a1"))
        dispatcher.tick()
        assert registry.get("a1").active_task_count == 2

        dispatcher.complete(running, "a1")
        with pytest.raises(InvalidStateError):
            dispatcher.complete(running, "a1")

        assert registry.get("a1").active_task_count == 1
        assert dispatcher.get(other).status == TaskStatus.RUNNING

    def test_complete_by_wrong_agent(self, dispatcher, running):
        with pytest.raises(InvalidStateError):
            dispatcher.complete(running, "a2")

    def test_complete_pending_task_rejected(self, dispatcher):
        task_id = dispatcher.submit(_task())
        with pytest.raises(InvalidStateError):
            dispatcher.complete(task_id, "a1")

    def test_fail_non_fatal(self, registry, dispatcher, running):
        task = dispatcher.fail(running, "a1", "timeout")

        assert task.status == TaskStatus.FAILED
        assert task.error == "timeout"
        assert registry.get("a1").status == AgentStatus.IDLE

    def test_fail_fatal_puts_agent_in_error(self, registry, dispatcher, running):
        dispatcher.fail(running, "a1", "crashed", fatal=True)

        agent = registry.get("a1")
        assert agent.status == AgentStatus.ERROR
        assert agent.active_task_count == 0
        assert agent.last_error == "crashed"

        task_id = dispatcher.submit(_task(target_agent_id="a1"))
        assert dispatcher.tick() == []
        assert dispatcher.get(task_id).status == TaskStatus.PENDING

    def test_terminal_status_never_changes(self, dispatcher, running):
        dispatcher.fail(running, "a1", "boom")

        with pytest.raises(InvalidStateError):
            dispatcher.complete(running, "a1")
        with pytest.raises(InvalidStateError):
            dispatcher.cancel(running)
        assert dispatcher.get(running).status == TaskStatus.FAILED

    def test_progress_monotonic(self, dispatcher, running):
        assert dispatcher.report_progress(running, "a1", 30).progress == 30
        assert dispatcher.report_progress(running, "a1", 30).progress == 30

        with pytest.raises(ValidationError):
            dispatcher.report_progress(running, "a1", 10)
        with pytest.raises(ValidationError):
            dispatcher.report_progress(running, "a1", 101)
        with pytest.raises(InvalidStateError):
            dispatcher.report_progress(running, "a2", 50)

        assert dispatcher.get(running).progress == 30


class TestCancellation:

    def test_cancel_pending(self, dispatcher):
        task_id = dispatcher.submit(_task())
        task = dispatcher.cancel(task_id)

        assert task.status == TaskStatus.CANCELLED
        assert dispatcher.tick() == []

    def test_cancel_running_frees_capacity_and_notifies_agent(self, registry, bus, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()
        list(bus.receive("a1"))

        dispatcher.cancel(task_id)

        assert registry.get("a1").active_task_count == 0
        assert registry.get("a1").status == AgentStatus.IDLE
        messages = list(bus.receive("a1"))
        assert [m.payload["type"] for m in messages] == ["cancellation"]

    def test_late_completion_after_cancel_is_noop(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()
        dispatcher.cancel(task_id)

        task = dispatcher.complete(task_id, "a1", "late")
        assert task.status == TaskStatus.CANCELLED
        assert task.result is None
        assert dispatcher.fail(task_id, "a1", "late").status == TaskStatus.CANCELLED
        assert registry.get("a1").active_task_count == 0

    def test_cancel_twice(self, dispatcher):
        task_id = dispatcher.submit(_task())
        dispatcher.cancel(task_id)
        with pytest.raises(InvalidStateError):
            dispatcher.cancel(task_id)

    def test_cancel_unknown(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.cancel("missing")


class TestAgentOffline:

    def test_running_task_cancelled_when_agent_stops(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()

        agent = registry.stop("a1")

        assert agent.status == AgentStatus.OFFLINE
        assert agent.active_task_count == 0
        assert dispatcher.get(task_id).status == TaskStatus.CANCELLED

    def test_delegated_task_requeued_when_agent_stops(self, registry, bus, make_agent_spec):
        dispatcher = TaskDispatcher(registry, bus, require_acknowledgement=True)
        registry.register(make_agent_spec("a1"))
        task_id = dispatcher.submit(_task())
        dispatcher.tick()

        registry.stop("a1")

        task = dispatcher.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.assigned_agent_id is None
        assert registry.get("a1").active_task_count == 0

        registry.register(make_agent_spec("a2"))
        assert dispatcher.tick() == [task_id]
        assert dispatcher.get(task_id).assigned_agent_id == "a2"

    def test_finished_tasks_leave_agent_index(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1", max_tasks=3))
        task_ids = [dispatcher.submit(_task(title=f"t{n}")) for n in range(3)]
        dispatcher.tick()
        assert dispatcher.tasks_of("a1") == set(task_ids)

        dispatcher.complete(task_ids[0], "a1")
        dispatcher.fail(task_ids[1], "a1", "boom")
        dispatcher.cancel(task_ids[2])

        assert dispatcher.tasks_of("a1") == set()
        assert dispatcher.get(task_ids[0]).assigned_agent_id == "a1"

        registry.stop("a1")
        assert dispatcher.get(task_ids[0]).status == TaskStatus.COMPLETED


class TestDeregisteredTarget:

    def test_pending_pinned_task_cancelled(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        registry.register(make_agent_spec("a2"))
        registry.stop("a2")
        pinned = dispatcher.submit(_task(target_agent_id="a2"))
        other = dispatcher.submit(_task())

        registry.deregister("a2")

        task = dispatcher.get(pinned)
        assert task.status == TaskStatus.CANCELLED
        assert task.error == "target agent deregistered"
        assert dispatcher.get(other).status == TaskStatus.PENDING

    def test_tick_cancels_task_whose_target_is_gone(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        registry.register(make_agent_spec("a2"))
        registry.stop("a2")
        pinned = dispatcher.submit(_task(target_agent_id="a2"))
        registry._deregister_listeners.clear()
        registry.deregister("a2")

        assert dispatcher.get(pinned).status == TaskStatus.PENDING
        assert dispatcher.tick() == []
        assert dispatcher.get(pinned).status == TaskStatus.CANCELLED
        assert registry.get("a1").active_task_count == 0


class TestQueries:

    def test_list_and_counts(self, registry, dispatcher, make_agent_spec):
        registry.register(make_agent_spec("a1"))
        first = dispatcher.submit(_task("first"))
        second = dispatcher.submit(_task("second"))
        dispatcher.tick()

        assert [t.id for t in dispatcher.list()] == [first, second]
        assert [t.id for t in dispatcher.list(TaskFilter(status=TaskStatus.PENDING))] == [second]
        assert [t.id for t in dispatcher.list(TaskFilter(agent_id="a1"))] == [first]

        counts = dispatcher.counts_by_status()
        assert counts["running"] == 1
        assert counts["pending"] == 1
        assert dispatcher.pending_count == 1

    def test_get_returns_copy(self, dispatcher):
        task_id = dispatcher.submit(_task(inputs={"x": [1]}))
        task = dispatcher.get(task_id)
        task.inputs["x"].append(2)

        assert dispatcher.get(task_id).inputs == {"x": [1]}
