"""Tests for the SchedulerEngine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from figaro_scheduler.config import Settings
from figaro_scheduler.errors import ConfigError, RemovalConflict
from figaro_scheduler.models.execution import ExecutionStatus, HistoryStatus, RunResult
from figaro_scheduler.models.task import OnceDaily, RepeatEvery, TaskDefinition
from figaro_scheduler.services.scheduler import SchedulerEngine

from conftest import GatedRunner, wait_until


def _hourly(**kwargs) -> TaskDefinition:
    kwargs.setdefault("recurrence", RepeatEvery("1 hour"))
    kwargs.setdefault("timezone", "UTC")
    kwargs.setdefault("message", "hello")
    return TaskDefinition(agent_type="worker", **kwargs)


def _recently_run(**kwargs) -> TaskDefinition:
    """An hourly task that ran a minute ago, so it is not due during the test."""
    return _hourly(last_run_time=datetime.now(timezone.utc) - timedelta(minutes=1), **kwargs)


@pytest.fixture
def engine(runner, settings):
    """Create a SchedulerEngine with a gated runner."""
    return SchedulerEngine(runner, settings=settings)


class TestTaskManagement:
    """Tests for adding, replacing and removing tasks."""

    @pytest.mark.asyncio
    async def test_add_before_start_does_not_arm(self, engine):
        await engine.add_task("news", _recently_run())
        assert engine.ledger.get_pending("news") is None
        assert (await engine.get_task_status("news")).status == ExecutionStatus.IDLE

    @pytest.mark.asyncio
    async def test_start_arms_pending_tasks(self, engine):
        await engine.add_task("news", _recently_run())
        await engine.start()
        try:
            pending = engine.ledger.get_pending("news")
            assert pending is not None
            assert pending.timer is not None
            status = await engine.get_task_status("news")
            assert status.status == ExecutionStatus.PENDING
            assert status.next_run_time == pending.next_run_time
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_add_from_config_mapping(self, engine):
        task = await engine.add_task(
            "news", {"agentType": "browser", "message": "Read", "every": "2 hours"}
        )
        assert task.recurrence == RepeatEvery("2 hours")
        assert await engine.get_task("news") == task

    @pytest.mark.asyncio
    async def test_invalid_task_is_not_registered(self, engine):
        with pytest.raises(ConfigError):
            await engine.add_task("bad", {"agentType": "w", "message": "m", "every": "often"})
        with pytest.raises(ConfigError):
            await engine.add_task("bad", _hourly(recurrence=RepeatEvery("often")))
        assert await engine.list_tasks() == {}

    @pytest.mark.asyncio
    async def test_add_tasks_is_all_or_nothing(self, engine):
        with pytest.raises(ConfigError):
            await engine.add_tasks(
                {
                    "good": _recently_run(),
                    "bad": {"agentType": "w", "message": "m", "from": "25:00"},
                }
            )
        assert await engine.list_tasks() == {}

        await engine.add_tasks({"a": _recently_run(), "b": _recently_run()})
        assert set(await engine.list_tasks()) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_add_replaces_and_rearms(self, engine):
        last_run = datetime.now(timezone.utc) - timedelta(minutes=1)
        await engine.start()
        try:
            await engine.add_task("news", _hourly(last_run_time=last_run))
            first = engine.ledger.get_pending("news")
            assert first.next_run_time == last_run + timedelta(hours=1)

            await engine.add_task(
                "news", _hourly(recurrence=RepeatEvery("2 hours"), last_run_time=last_run)
            )
            second = engine.ledger.get_pending("news")
            assert second is not first
            assert first.timer is None
            assert second.next_run_time == last_run + timedelta(hours=2)
            assert list(await engine.list_tasks()) == ["news"]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_remove_pending_task(self, engine):
        await engine.add_task("news", _recently_run())
        await engine.start()
        try:
            pending = engine.ledger.get_pending("news")
            removed = await engine.remove_task("news")
            assert removed.message == "hello"
            assert engine.ledger.get_pending("news") is None
            assert pending.timer is None
            assert await engine.get_task("news") is None
            assert await engine.get_task_status("news") is None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_remove_unknown_task(self, engine):
        with pytest.raises(RemovalConflict):
            await engine.remove_task("ghost")
        with pytest.raises(KeyError):
            await engine.remove_task("ghost")

    @pytest.mark.asyncio
    async def test_remove_running_task_discards_its_result(self, engine, runner):
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: runner.started("news") == 1)
            await engine.remove_task("news")

            assert runner.cancel_events[0].is_set()
            await wait_until(lambda: engine.ledger.all_running() == [])
            assert await engine.get_history() == []

            await engine.add_task("news", _recently_run())
            assert await engine.get_history(task_name="news") == []
        finally:
            await engine.stop()


    @pytest.mark.asyncio
    async def test_readd_while_removed_run_drains(self, settings):
        """A task re-added under a removed name is armed while the old run winds down."""
        settings = settings.model_copy(update={"cancel_grace_period": 0.3})
        stubborn = GatedRunner(honor_cancel=False)
        engine = SchedulerEngine(stubborn, settings=settings)
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: stubborn.started("news") == 1)
            await engine.remove_task("news")
            await engine.add_task("news", _recently_run())

            status = await engine.get_task_status("news")
            assert status.status == ExecutionStatus.PENDING
            assert engine.ledger.get_pending("news") is not None

            await wait_until(lambda: engine.ledger.all_running() == [])
            status = await engine.get_task_status("news")
            assert status.status == ExecutionStatus.PENDING
            assert await engine.get_history(task_name="news") == []
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_edit_keeps_last_run(self, engine, runner):
        runner.release("report")
        await engine.add_task("report", _hourly(recurrence=OnceDaily()))
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("report")) == 1)
            [record] = engine.ledger.history("report")

            await engine.add_task("report", _hourly(recurrence=OnceDaily(), message="v2"))
            await asyncio.sleep(0.1)

            assert runner.started("report") == 1
            task = await engine.get_task("report")
            assert task.message == "v2"
            assert task.last_run_time == record.start_time
            next_day = record.start_time.date() + timedelta(days=1)
            pending = engine.ledger.get_pending("report")
            assert pending.next_run_time >= datetime.combine(
                next_day, datetime.min.time(), tzinfo=timezone.utc
            )
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_edit_interval_keeps_last_run(self, engine, runner):
        runner.release("news")
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            [record] = engine.ledger.history("news")

            await engine.add_tasks({"news": _hourly(recurrence=RepeatEvery("2 hours"))})

            pending = engine.ledger.get_pending("news")
            assert pending.next_run_time == record.start_time + timedelta(hours=2)
            assert runner.started("news") == 1
        finally:
            await engine.stop()


class TestExecution:
    """Tests for running tasks and recording their outcome."""

    @pytest.mark.asyncio
    async def test_completed_run_is_recorded_once(self, engine, runner):
        runner.release("news")
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            [record] = await engine.get_history()
            assert record.task_name == "news"
            assert record.status == HistoryStatus.COMPLETED
            assert record.message == "done"
            assert record.end_time >= record.start_time

            task = await engine.get_task("news")
            assert task.last_run_time == record.start_time

            pending = engine.ledger.get_pending("news")
            assert pending.next_run_time == record.start_time + timedelta(hours=1)
            assert runner.started("news") == 1
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_failed_run_is_recorded_with_message(self, engine, runner):
        runner.results["news"] = RunResult.failure("Browser crashed")
        runner.release("news")
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            [record] = engine.ledger.history("news")
            assert record.status == HistoryStatus.FAILED
            assert record.message == "Browser crashed"
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_failure_without_message_gets_one(self, engine, runner):
        runner.results["news"] = RunResult.failure("")
        runner.release("news")
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            assert engine.ledger.history("news")[0].message
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_runner_exception_is_a_failed_run(self, engine, runner):
        runner.results["news"] = RuntimeError("agent unavailable")
        runner.release("news")
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            [record] = engine.ledger.history("news")
            assert record.status == HistoryStatus.FAILED
            assert record.message == "agent unavailable"
            # The scheduler keeps going after a failure
            assert engine.ledger.get_pending("news") is not None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_spaced_task_measures_from_completion(self, engine, runner):
        runner.release("news")
        await engine.add_task("news", _hourly(recurrence=RepeatEvery("1 hour", spaced=True)))
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            [record] = engine.ledger.history("news")
            task = await engine.get_task("news")
            assert task.last_run_time == record.end_time
            pending = engine.ledger.get_pending("news")
            assert pending.next_run_time == record.end_time + timedelta(hours=1)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_unscheduled_task_is_never_armed(self, engine):
        await engine.add_task("manual", _hourly(recurrence=None))
        await engine.start()
        try:
            assert engine.ledger.get_pending("manual") is None
            status = await engine.get_task_status("manual")
            assert status.status == ExecutionStatus.IDLE
            assert status.schedule == "not scheduled"
        finally:
            await engine.stop()


class TestOverlap:
    """Tests for the single-run rule and overlapping runs."""

    @pytest.mark.asyncio
    async def test_no_second_run_while_running(self, engine, runner):
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: runner.started("news") == 1)
            assert engine.ledger.get_pending("news") is None
            assert await engine.trigger_task("news") is False

            status = await engine.get_task_status("news")
            assert status.status == ExecutionStatus.RUNNING
            assert status.running_since is not None

            runner.release("news")
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            assert runner.started("news") == 1
            assert engine.ledger.get_pending("news") is not None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_timer_fire_while_running_is_skipped(self, engine, runner):
        await engine.add_task("news", _hourly())
        await engine.start()
        try:
            await wait_until(lambda: runner.started("news") == 1)
            async with engine._lock:
                entry = engine.ledger.arm("news", datetime.now(timezone.utc))
            await engine._fire(entry)

            assert runner.started("news") == 1
            assert len(engine.ledger.get_running("news")) == 1
            assert engine.ledger.get_pending("news") is None
            runner.release("news")
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_overlapping_runs_when_allowed(self, engine, runner):
        await engine.add_task("news", _hourly(allow_overlap=True))
        await engine.start()
        try:
            await wait_until(lambda: runner.started("news") == 1)
            # The next run is armed as soon as this one starts
            pending = engine.ledger.get_pending("news")
            running = engine.ledger.get_running("news")
            assert pending.next_run_time == running[0].start_time + timedelta(hours=1)

            assert await engine.trigger_task("news") is True
            await wait_until(lambda: runner.started("news") == 2)
            assert len(engine.ledger.get_running("news")) == 2

            runner.release("news")
            await wait_until(lambda: len(engine.ledger.history("news")) == 2)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_stale_timer_is_ignored(self, engine, runner):
        await engine.add_task("news", _recently_run())
        await engine.start()
        try:
            stale = engine.ledger.get_pending("news")
            await engine.add_task("news", _recently_run(recurrence=RepeatEvery("3 hours")))
            await engine._fire(stale)
            assert runner.calls == []
            assert engine.ledger.get_pending("news") is not stale
        finally:
            await engine.stop()


class TestTrigger:
    @pytest.mark.asyncio
    async def test_trigger_runs_now(self, engine, runner):
        runner.release("news")
        await engine.add_task("news", _recently_run())
        await engine.start()
        try:
            assert await engine.trigger_task("news") is True
            await wait_until(lambda: len(engine.ledger.history("news")) == 1)
            assert runner.started("news") == 1
            assert engine.ledger.get_pending("news") is not None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_trigger_unknown(self, engine):
        await engine.start()
        try:
            with pytest.raises(RemovalConflict):
                await engine.trigger_task("ghost")
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_trigger_when_stopped(self, engine, runner):
        await engine.add_task("news", _recently_run())
        assert await engine.trigger_task("news") is False
        assert runner.calls == []


class TestOverrun:
    """Tests for the max runtime watchdog."""

    @pytest.mark.asyncio
    async def test_overrun_is_reported(self, engine, runner, caplog):
        await engine.add_task("slow", _hourly(max_runtime="1 second"))
        await engine.start()
        try:
            await wait_until(lambda: runner.started("slow") == 1)
            await wait_until(lambda: engine.overrun_count == 1, timeout=3.0)

            status = await engine.get_task_status("slow")
            assert status.overrun is True
            assert status.status == ExecutionStatus.RUNNING
            assert not runner.cancel_events[0].is_set()
            assert "OverrunWarning" in caplog.text

            runner.release("slow")
            await wait_until(lambda: len(engine.ledger.history("slow")) == 1)
            assert engine.ledger.history("slow")[0].status == HistoryStatus.COMPLETED
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_overrun_cancels_when_configured(self, runner, settings):
        settings = settings.model_copy(update={"cancel_on_overrun": True})
        engine = SchedulerEngine(runner, settings=settings)
        await engine.add_task("slow", _hourly(max_runtime="1 second"))
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("slow")) == 1, timeout=3.0)
            [record] = engine.ledger.history("slow")
            assert record.status == HistoryStatus.FAILED
            assert runner.cancel_events[0].is_set()
        finally:
            await engine.stop()


class TestLifecycle:
    """Tests for start/stop and the reconcile loop."""

    @pytest.mark.asyncio
    async def test_stop_disarms_and_drains(self, engine, runner):
        await engine.add_task("a", _recently_run())
        await engine.add_task("b", _hourly())
        await engine.start()
        await wait_until(lambda: runner.started("b") == 1)
        pending_a = engine.ledger.get_pending("a")

        await engine.stop()

        assert not engine.is_running
        assert engine.ledger.get_pending("a") is None
        assert pending_a.timer is None
        assert engine.ledger.all_pending() == []
        assert engine.ledger.all_running() == []
        assert runner.cancel_events[0].is_set()
        [record] = engine.ledger.history("b")
        assert record.status == HistoryStatus.FAILED
        assert runner.started("a") == 0

    @pytest.mark.asyncio
    async def test_stop_force_cancels_runs_that_ignore_the_signal(self, settings):
        runner = GatedRunner(honor_cancel=False)
        engine = SchedulerEngine(runner, settings=settings)
        await engine.add_task("stubborn", _hourly())
        await engine.start()
        await wait_until(lambda: runner.started("stubborn") == 1)

        await asyncio.wait_for(engine.stop(), timeout=2.0)

        assert engine.ledger.all_running() == []
        [record] = engine.ledger.history("stubborn")
        assert record.status == HistoryStatus.FAILED
        assert "Scheduler stopped" in record.message

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, engine):
        await engine.start()
        await engine.stop()
        await engine.stop()
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_reconcile_rearms_idle_tasks(self, runner):
        settings = Settings(default_timezone="UTC", check_interval=0.05)
        engine = SchedulerEngine(runner, settings=settings)
        await engine.add_task("news", _recently_run())
        await engine.start()
        try:
            engine.ledger.disarm("news")
            await wait_until(lambda: engine.ledger.get_pending("news") is not None)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_get_status(self, engine, runner):
        runner.release("a")
        await engine.add_task("a", _hourly())
        await engine.add_task("b", _recently_run())
        await engine.start()
        try:
            await wait_until(lambda: len(engine.ledger.history("a")) == 1)
            status = await engine.get_status()
            assert status.running is True
            assert {t.name for t in status.tasks} == {"a", "b"}
            assert all(t.status == ExecutionStatus.PENDING for t in status.tasks)
            assert [h.task_name for h in status.history] == ["a"]
            assert status.model_dump(mode="json")["history"][0]["status"] == "completed"
        finally:
            await engine.stop()
