"""Tests for the durable task scheduler and the worker's task runner."""

from datetime import timedelta

from sqlalchemy import update

from spendgate.models import ScheduledTask
from spendgate.services.scheduler import TaskRunner, TaskScheduler, commit_and_notify
from spendgate.tasks import build_task_handlers, run_sweeps
from tests.conftest import drain


def _runner(session_factory, clock, handlers):
    return TaskRunner(session_factory, handlers, clock=clock, batch_size=10, lease_seconds=60)


async def _tasks(session_factory):
    async with session_factory() as session:
        return {t.task_id: t for t in await TaskScheduler(session).list_tasks()}


class TestScheduling:
    async def test_tasks_survive_only_with_commit(self, session_factory, clock, no_redis):
        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.task", {"n": 1})
            await session.rollback()
        assert await _tasks(session_factory) == {}
        assert no_redis == []

    async def test_commit_wakes_worker_once(self, session_factory, clock, no_redis):
        async with session_factory() as session:
            scheduler = TaskScheduler(session, clock=clock)
            await scheduler.schedule_now("demo.task", {"n": 1})
            await scheduler.schedule_after(5000, "demo.task", {"n": 2})
            await commit_and_notify(session)
            await commit_and_notify(session)

        tasks = list((await _tasks(session_factory)).values())
        assert [t.run_at for t in tasks] == [clock.now, clock.now + timedelta(seconds=5)]
        assert all(t.task_id.startswith("TASK-") for t in tasks)
        assert no_redis == [1]

    async def test_list_tasks_filters(self, session_factory, clock):
        async with session_factory() as session:
            scheduler = TaskScheduler(session, clock=clock)
            await scheduler.schedule_now("a", {})
            await scheduler.schedule_now("b", {})
            await session.commit()
            assert len(await scheduler.list_tasks(task_name="a")) == 1
            assert len(await scheduler.list_tasks(status="pending")) == 2
            assert await scheduler.list_tasks(status="done") == []


class TestRunner:
    async def test_runs_due_tasks_in_order(self, session_factory, clock):
        seen = []

        async def record(session, payload):
            seen.append(payload["n"])

        async with session_factory() as session:
            scheduler = TaskScheduler(session, clock=clock)
            await scheduler.schedule_after(2000, "demo.record", {"n": 2})
            await scheduler.schedule_now("demo.record", {"n": 1})
            await scheduler.schedule_after(60_000, "demo.record", {"n": 3})
            await session.commit()

        runner = _runner(session_factory, clock, {"demo.record": record})
        assert await runner.run_due() == 1
        clock.advance(seconds=2)
        assert await runner.run_due() == 1
        assert seen == [1, 2]

        statuses = sorted(t.status for t in (await _tasks(session_factory)).values())
        assert statuses == ["done", "done", "pending"]

    async def test_handler_failure_is_recorded(self, session_factory, clock):
        async def explode(session, payload):
            raise RuntimeError("boom")

        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.explode", {})
            await session.commit()

        runner = _runner(session_factory, clock, {"demo.explode": explode})
        assert await runner.run_due() == 1
        assert await runner.run_due() == 0

        (task,) = (await _tasks(session_factory)).values()
        assert task.status == "failed"
        assert task.last_error == "boom"
        assert task.attempts == 1

    async def test_unknown_task_name_fails(self, session_factory, clock):
        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.nobody", {})
            await session.commit()

        await _runner(session_factory, clock, {}).run_due()
        (task,) = (await _tasks(session_factory)).values()
        assert task.status == "failed"
        assert "No handler registered" in task.last_error

    async def test_handler_writes_roll_back_on_failure(self, session_factory, clock):
        async def half_done(session, payload):
            await TaskScheduler(session, clock=clock).schedule_now("demo.followup", {})
            raise RuntimeError("after scheduling")

        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.half", {})
            await session.commit()

        await _runner(session_factory, clock, {"demo.half": half_done}).run_due()
        names = {t.task_name for t in (await _tasks(session_factory)).values()}
        assert names == {"demo.half"}

    async def test_claimed_task_not_run_twice(self, session_factory, clock):
        calls = []

        async def record(session, payload):
            calls.append(1)

        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.record", {})
            await session.commit()

        runner = _runner(session_factory, clock, {"demo.record": record})
        (task_id,) = (await _tasks(session_factory)).keys()
        assert await runner._claim(task_id) is True
        assert await runner._claim(task_id) is False
        assert calls == []

    async def test_expired_lease_is_reclaimed(self, session_factory, clock):
        calls = []

        async def record(session, payload):
            calls.append(1)

        async with session_factory() as session:
            await TaskScheduler(session, clock=clock).schedule_now("demo.record", {})
            await session.commit()
            # Simulate a worker that crashed mid-run
            await session.execute(
                update(ScheduledTask).values(status="running", started_at=clock.now)
            )
            await session.commit()

        runner = _runner(session_factory, clock, {"demo.record": record})
        assert await runner.run_due() == 0
        clock.advance(seconds=61)
        assert await runner.run_due() == 1
        assert calls == [1]


class TestSweeps:
    async def test_run_sweeps_reports_counts(self, session_factory, clock):
        async with session_factory() as session:
            swept = await run_sweeps(session, clock=clock)
        assert swept == {"approvals_expired": 0, "signing_timed_out": 0, "settlements_recovered": 0}

    async def test_handler_registry(self, collaborators):
        handlers = build_task_handlers(collaborators)
        assert set(handlers) == {
            "approvals.process_auto_approval",
            "execution.execute_plan",
            "settlement.submit_signed_transaction",
            "signing.watchdog",
        }

    async def test_drain_stops_when_idle(self, runner):
        assert await drain(runner) == 0
