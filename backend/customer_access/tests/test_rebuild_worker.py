"""
Tests for the closure rebuild worker.

CRITICAL: These tests verify that:
1. Claimed tasks recompute and swap closures from the current graph
2. Recoverable failures are retried with backoff, then dead-lettered
3. Tenant isolation violations are dead-lettered at once with a critical alert
4. A failed or expired attempt never touches existing closure rows
5. A user with a running task is not claimed twice
6. Tasks left running by a crashed worker are recovered
7. A failure never leaves two pending tasks for one user
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from customer_access.config.rebuild_settings import RebuildSettings
from customer_access.errors import GraphReadError
from customer_access.hierarchy.graph import GraphReader
from customer_access.hierarchy.invalidation import ChangeEvent
from customer_access.jobs.rebuild_scheduler import RebuildScheduler
from customer_access.jobs.rebuild_worker import RebuildWorker
from customer_access.models.base import utcnow
from customer_access.models.rebuild_task import RebuildTask, RebuildTaskStatus
from customer_access.monitoring.rebuild_alerts import AlertSeverity, AlertType
from customer_access.repositories.closure_repo import ClosureTable
from customer_access.services.access_engine import AccessEngine
from customer_access.services.hierarchy_mutation_service import HierarchyMutationService


def _tasks_for(db_session, tenant_id, user_id):
    return (
        db_session.query(RebuildTask)
        .filter(RebuildTask.tenant_id == tenant_id, RebuildTask.user_id == user_id)
        .order_by(RebuildTask.enqueued_at)
        .all()
    )


def _sent_alerts(alert_manager):
    return [call.args[0] for call in alert_manager.send_alert.await_args_list]


@pytest.fixture
def worker(db_session, settings, alert_manager):
    return RebuildWorker(db_session, settings=settings, alert_manager=alert_manager)


@pytest.fixture
def engine(db_session, settings):
    return AccessEngine(db_session, settings=settings)


class TestProcessReadyTasks:
    """Happy path: recompute and swap."""

    @pytest.mark.asyncio
    async def test_tenant_rebuild_materializes_closures(self, db_session, seed, tenant_id, engine, worker):
        seed.scenario_a(tenant_id)
        engine.request_tenant_rebuild(tenant_id)

        result = await worker.process_ready_tasks()

        assert result.claimed == 3
        assert result.succeeded == 3
        closures = ClosureTable(db_session, tenant_id)
        assert closures.get_user_closure("C") == {"X"}
        assert closures.get_user_closure("B") == {"X", "Y"}
        assert closures.get_user_closure("A") == {"X", "Y"}
        for user_id in ("A", "B", "C"):
            assert _tasks_for(db_session, tenant_id, user_id)[0].status == RebuildTaskStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_removed_edge_clears_manager_closure(
        self, db_session, seed, tenant_id, engine, worker, settings
    ):
        """Before the rebuild the stale closure is still visible; after it, it is gone."""
        seed.scenario_a(tenant_id)
        engine.request_tenant_rebuild(tenant_id)
        await worker.process_ready_tasks()

        service = HierarchyMutationService(db_session, tenant_id, engine=engine)
        assert service.remove_manager("B", "A")

        closures = ClosureTable(db_session, tenant_id)
        assert closures.get_user_closure("A") == {"X", "Y"}
        assert closures.staleness("A").pending

        await worker.process_ready_tasks()

        assert closures.get_user_closure("A") == frozenset()
        assert closures.get_user_closure("B") == {"X", "Y"}
        assert closures.get_state("A").version == 2

    @pytest.mark.asyncio
    async def test_two_managers_both_see_shared_report(self, db_session, seed, tenant_id, engine, worker):
        seed.users(tenant_id, "D", "E", "F")
        seed.customers(tenant_id, "Z")
        seed.manages(tenant_id, ("D", "E"), ("D", "F"))
        seed.assign(tenant_id, ("D", "Z"))
        engine.request_tenant_rebuild(tenant_id)

        await worker.process_ready_tasks()

        closures = ClosureTable(db_session, tenant_id)
        assert "Z" in closures.get_user_closure("E")
        assert "Z" in closures.get_user_closure("F")

    @pytest.mark.asyncio
    async def test_cycle_is_rebuilt_and_alerted(self, db_session, seed, tenant_id, engine, worker, alert_manager):
        seed.users(tenant_id, "P", "Q")
        seed.customers(tenant_id, "W")
        seed.manages(tenant_id, ("P", "Q"), ("Q", "P"))
        seed.assign(tenant_id, ("P", "W"))
        engine.request_tenant_rebuild(tenant_id)

        result = await worker.process_ready_tasks()

        assert result.succeeded == 2
        closures = ClosureTable(db_session, tenant_id)
        assert closures.get_user_closure("P") == {"W"}
        assert closures.get_user_closure("Q") == {"W"}
        alert_types = {alert.alert_type for alert in _sent_alerts(alert_manager)}
        assert alert_types == {AlertType.HIERARCHY_CYCLE_DETECTED}

    @pytest.mark.asyncio
    async def test_removed_user_closure_is_cleared(self, db_session, seed, tenant_id, engine, worker):
        seed.scenario_a(tenant_id)
        engine.request_tenant_rebuild(tenant_id)
        await worker.process_ready_tasks()

        HierarchyMutationService(db_session, tenant_id, engine=engine).remove_user("C")
        await worker.process_ready_tasks()

        closures = ClosureTable(db_session, tenant_id)
        assert closures.get_user_closure("C") == frozenset()
        assert closures.get_user_closure("A") == {"Y"}

    @pytest.mark.asyncio
    async def test_no_ready_tasks(self, worker):
        result = await worker.process_ready_tasks()

        assert result.claimed == 0


class TestClaiming:
    """Ready selection and per-user ordering."""

    def test_debounced_task_not_claimed(self, db_session, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=300)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        worker = RebuildWorker(db_session, settings=settings, alert_manager=alert_manager)

        assert worker.claim_ready_tasks() == []

    def test_claim_marks_running(self, db_session, tenant_id, settings, worker):
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])

        claimed = worker.claim_ready_tasks()

        assert len(claimed) == 1
        assert claimed[0].status == RebuildTaskStatus.RUNNING
        assert claimed[0].attempt == 1
        assert claimed[0].started_at is not None

    def test_user_with_running_task_is_skipped(self, db_session, tenant_id, settings, worker):
        scheduler = RebuildScheduler(db_session, settings)
        scheduler.enqueue(tenant_id, ["A", "B"])
        running = worker.claim_ready_tasks()
        assert len(running) == 2

        scheduler.enqueue(tenant_id, ["A", "B", "C"])
        running_a = next(t for t in running if t.user_id == "A")
        running_b = next(t for t in running if t.user_id == "B")
        running_b.mark_succeeded()
        db_session.commit()

        claimed = worker.claim_ready_tasks()

        assert sorted(t.user_id for t in claimed) == ["B", "C"]
        assert running_a.status == RebuildTaskStatus.RUNNING

    def test_limit_respected_in_enqueue_order(self, db_session, tenant_id, settings, worker):
        scheduler = RebuildScheduler(db_session, settings)
        scheduler.enqueue(tenant_id, ["A"])
        older = _tasks_for(db_session, tenant_id, "A")[0]
        older.enqueued_at = utcnow() - timedelta(minutes=5)
        db_session.commit()
        scheduler.enqueue(tenant_id, ["B"])

        claimed = worker.claim_ready_tasks(limit=1)

        assert [t.user_id for t in claimed] == ["A"]


class TestFailureHandling:
    """Retry, dead letter and alerting."""

    @pytest.mark.asyncio
    async def test_graph_read_failure_is_retried(self, db_session, seed, tenant_id, settings, alert_manager):
        seed.scenario_a(tenant_id)
        ClosureTable(db_session, tenant_id).replace_user_closure("A", ["Y"], utcnow())
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])

        reader = MagicMock(spec=GraphReader)
        reader.load_tenant.side_effect = GraphReadError("connection reset", tenant_id=tenant_id)
        worker = RebuildWorker(db_session, settings=settings, graph_reader=reader, alert_manager=alert_manager)

        result = await worker.process_ready_tasks()

        assert result.failed == 1
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.FAILED
        assert task.error_code == "graph_read"
        assert task.next_retry_at is not None
        assert ClosureTable(db_session, tenant_id).get_user_closure("A") == {"Y"}
        alert_manager.send_alert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_exhausted_moves_to_dead_letter(self, db_session, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=0, max_attempts=2)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        reader = MagicMock(spec=GraphReader)
        reader.load_tenant.side_effect = GraphReadError("store down", tenant_id=tenant_id)
        worker = RebuildWorker(db_session, settings=settings, graph_reader=reader, alert_manager=alert_manager)

        await worker.process_ready_tasks()
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.FAILED
        task.next_retry_at = utcnow() - timedelta(seconds=1)
        db_session.commit()

        result = await worker.process_ready_tasks()

        assert result.dead_lettered == 1
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.DEAD_LETTER
        assert task.attempt == 2
        alerts = _sent_alerts(alert_manager)
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.REBUILD_DEAD_LETTERED
        assert alerts[0].metadata["user_id"] == "A"

    @pytest.mark.asyncio
    @pytest.mark.security
    async def test_tenant_violation_dead_letters_immediately(
        self, db_session, seed, tenant_id, other_tenant_id, worker, settings, alert_manager
    ):
        """An assignment pointing at another tenant's customer is never materialized."""
        seed.users(tenant_id, "A")
        seed.customers(tenant_id, "X")
        seed.customers(other_tenant_id, "FOREIGN")
        seed.assign(tenant_id, ("A", "X"), ("A", "FOREIGN"))
        ClosureTable(db_session, tenant_id).replace_user_closure("A", ["X"], utcnow())
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])

        result = await worker.process_ready_tasks()

        assert result.dead_lettered == 1
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.DEAD_LETTER
        assert task.attempt == 1
        assert task.error_code == "tenant_violation"
        assert ClosureTable(db_session, tenant_id).get_user_closure("A") == {"X"}

        alerts = _sent_alerts(alert_manager)
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.TENANT_ISOLATION_VIOLATION
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].metadata["offending_tenant_id"] == other_tenant_id

    @pytest.mark.asyncio
    async def test_expired_deadline_never_swaps(self, db_session, seed, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=0, task_timeout_seconds=-1)
        seed.scenario_a(tenant_id)
        ClosureTable(db_session, tenant_id).replace_user_closure("A", ["Y"], utcnow())
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        worker = RebuildWorker(db_session, settings=settings, alert_manager=alert_manager)

        result = await worker.process_ready_tasks()

        assert result.failed == 1
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.FAILED
        assert task.error_code == "timeout"
        closures = ClosureTable(db_session, tenant_id)
        assert closures.get_user_closure("A") == {"Y"}
        assert closures.get_state("A").version == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_other_users(self, db_session, seed, tenant_id, other_tenant_id,
                                                         worker, settings):
        seed.scenario_a(tenant_id)
        seed.users(tenant_id, "G")
        seed.customers(other_tenant_id, "FOREIGN")
        seed.assign(tenant_id, ("C", "FOREIGN"), ("G", "X"))
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["C", "G"])

        result = await worker.process_ready_tasks()

        assert result.claimed == 2
        assert result.dead_lettered == 1
        assert result.succeeded == 1
        assert _tasks_for(db_session, tenant_id, "C")[0].status == RebuildTaskStatus.DEAD_LETTER
        assert ClosureTable(db_session, tenant_id).get_user_closure("G") == {"X"}


class TestFailureWithNewerPendingTask:
    """A change for the user lands while its task is running, then the attempt fails."""

    def _reader_enqueueing_during_load(self, db_session, settings, tenant_id, error=None):
        graphs = GraphReader.for_session(db_session)
        reader = MagicMock(spec=GraphReader)

        def load_tenant(requested_tenant_id):
            RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"], reason="manager_added")
            if error is not None:
                raise error
            return graphs.load_tenant(requested_tenant_id)

        reader.load_tenant.side_effect = load_tenant
        return reader

    @pytest.mark.asyncio
    async def test_graph_read_failure_absorbs_newer_task(self, db_session, seed, tenant_id, settings, alert_manager):
        seed.scenario_a(tenant_id)
        ClosureTable(db_session, tenant_id).replace_user_closure("A", ["Y"], utcnow())
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        reader = self._reader_enqueueing_during_load(
            db_session, settings, tenant_id, GraphReadError("store down", tenant_id=tenant_id)
        )
        worker = RebuildWorker(db_session, settings=settings, graph_reader=reader, alert_manager=alert_manager)

        result = await worker.process_ready_tasks()

        assert result.failed == 1
        tasks = _tasks_for(db_session, tenant_id, "A")
        assert len(tasks) == 1
        assert tasks[0].status == RebuildTaskStatus.FAILED
        assert tasks[0].error_code == "graph_read"
        assert tasks[0].enqueue_count == 2
        assert tasks[0].reason == "manager_added"
        assert RebuildScheduler(db_session, settings).pending_count(tenant_id) == 1
        assert ClosureTable(db_session, tenant_id).get_user_closure("A") == {"Y"}

    @pytest.mark.asyncio
    async def test_expired_deadline_absorbs_newer_task(self, db_session, seed, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=0, task_timeout_seconds=-1)
        seed.scenario_a(tenant_id)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A", "B"])
        reader = self._reader_enqueueing_during_load(db_session, settings, tenant_id)
        worker = RebuildWorker(db_session, settings=settings, graph_reader=reader, alert_manager=alert_manager)

        result = await worker.process_ready_tasks()

        assert result.claimed == 2
        assert result.failed == 2
        tasks = _tasks_for(db_session, tenant_id, "A")
        assert [t.status for t in tasks] == [RebuildTaskStatus.FAILED]
        assert tasks[0].error_code == "timeout"
        assert _tasks_for(db_session, tenant_id, "B")[0].status == RebuildTaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_dead_letter_leaves_newer_task_queued(self, db_session, seed, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=0, max_attempts=1)
        seed.scenario_a(tenant_id)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        reader = self._reader_enqueueing_during_load(
            db_session, settings, tenant_id, GraphReadError("store down", tenant_id=tenant_id)
        )
        worker = RebuildWorker(db_session, settings=settings, graph_reader=reader, alert_manager=alert_manager)

        result = await worker.process_ready_tasks()

        assert result.dead_lettered == 1
        statuses = sorted(t.status.value for t in _tasks_for(db_session, tenant_id, "A"))
        assert statuses == ["dead_letter", "queued"]
        assert RebuildScheduler(db_session, settings).pending_count(tenant_id) == 1
        alert_manager.send_alert.assert_awaited_once()


class TestSnapshotGuard:

    @pytest.mark.asyncio
    async def test_newer_stored_snapshot_wins(self, db_session, seed, tenant_id, settings, worker):
        seed.scenario_a(tenant_id)
        ClosureTable(db_session, tenant_id).replace_user_closure(
            "A", ["Y"], utcnow() + timedelta(minutes=5)
        )
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])

        result = await worker.process_ready_tasks()

        assert result.skipped_stale_snapshot == 1
        assert _tasks_for(db_session, tenant_id, "A")[0].status == RebuildTaskStatus.SUCCEEDED
        assert ClosureTable(db_session, tenant_id).get_user_closure("A") == {"Y"}


class TestStalledRecovery:
    """Tasks left running by a crashed worker."""

    def _stalled_task(self, db_session, tenant_id, user_id, settings, attempt=1):
        RebuildScheduler(db_session, settings).enqueue(tenant_id, [user_id])
        task = _tasks_for(db_session, tenant_id, user_id)[0]
        task.mark_running()
        task.attempt = attempt
        task.started_at = utcnow() - timedelta(hours=1)
        db_session.commit()
        return task

    @pytest.mark.asyncio
    async def test_stalled_task_returns_to_retry(self, db_session, tenant_id, settings, worker):
        self._stalled_task(db_session, tenant_id, "A", settings)

        recovered = await worker.recover_stalled_tasks()

        assert recovered == 1
        task = _tasks_for(db_session, tenant_id, "A")[0]
        assert task.status == RebuildTaskStatus.FAILED
        assert task.error_code == "timeout"

    @pytest.mark.asyncio
    async def test_stalled_task_absorbs_newer_pending_task(self, db_session, tenant_id, settings, worker):
        self._stalled_task(db_session, tenant_id, "A", settings)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"], reason="manager_added")

        await worker.recover_stalled_tasks()

        tasks = _tasks_for(db_session, tenant_id, "A")
        assert len(tasks) == 1
        assert tasks[0].status == RebuildTaskStatus.FAILED
        assert tasks[0].enqueue_count == 2
        assert tasks[0].reason == "manager_added"

    @pytest.mark.asyncio
    async def test_stalled_task_out_of_attempts_is_dead_lettered(
        self, db_session, tenant_id, settings, worker, alert_manager
    ):
        self._stalled_task(db_session, tenant_id, "A", settings, attempt=settings.max_attempts)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])

        await worker.recover_stalled_tasks()

        statuses = sorted(t.status.value for t in _tasks_for(db_session, tenant_id, "A"))
        assert statuses == ["dead_letter", "queued"]
        alert_manager.send_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recent_running_task_left_alone(self, db_session, tenant_id, settings, worker):
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        worker.claim_ready_tasks()

        assert await worker.recover_stalled_tasks() == 0


class TestRunCycle:

    @pytest.mark.asyncio
    async def test_cycle_summary(self, db_session, seed, tenant_id, engine, worker):
        seed.scenario_a(tenant_id)
        engine.enqueue_invalidation(tenant_id, ChangeEvent.assignment_added(tenant_id, "C", "X"))

        summary = await worker.run_cycle()

        assert summary["recovered"] == 0
        assert summary["claimed"] == 3
        assert summary["succeeded"] == 3
        assert summary["pending"] == 0
        assert summary["healthy"] is True
        assert ClosureTable(db_session, tenant_id).get_user_closure("A") == {"X", "Y"}

    @pytest.mark.asyncio
    async def test_staleness_alert_when_backlog_is_old(self, db_session, tenant_id, alert_manager):
        settings = RebuildSettings(debounce_seconds=300, staleness_alert_seconds=60)
        RebuildScheduler(db_session, settings).enqueue(tenant_id, ["A"])
        task = _tasks_for(db_session, tenant_id, "A")[0]
        task.enqueued_at = utcnow() - timedelta(minutes=10)
        db_session.commit()
        worker = RebuildWorker(db_session, settings=settings, alert_manager=alert_manager)

        summary = await worker.run_cycle()

        assert summary["healthy"] is False
        alerts = _sent_alerts(alert_manager)
        assert [a.alert_type for a in alerts] == [AlertType.CLOSURE_STALENESS_HIGH]
