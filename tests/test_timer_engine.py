# tests/test_timer_engine.py

from __future__ import annotations

import asyncio

import pytest

from taskpulse.core.events import (
    EventBus,
    TimerPaused,
    TimerResumed,
    TimersUpdated,
    TimerStarted,
    TimerStopped,
    TimerUp,
)
from taskpulse.errors import InvalidStateError, NotFoundError, PersistenceError
from taskpulse.notifications.scheduler import NotificationScheduler
from taskpulse.storage.models import TaskStatus
from taskpulse.tracking.timer_engine import TimerEngine

from .fakes import FakeNotifier


def assert_running_flag_consistent(store, engine, task_id: str) -> None:
    task = store.get_task(task_id)
    assert task.is_timer_running == engine.is_timer_running(task_id)
    assert (task.timer_start_time is not None) == engine.has_timer(task_id)


@pytest.mark.asyncio
async def test_start_sets_running_state_and_snapshot(store, engine, clock) -> None:
    task = store.create_task(title="Write report")

    result = await engine.start_timer(task.id)

    assert result.ok
    t = store.get_task(task.id)
    assert t.status == TaskStatus.IN_PROGRESS
    assert t.is_timer_running
    assert t.timer_start_time == clock.now
    snap = store.get_active_timer(task.id)
    assert snap is not None and snap.is_running and snap.start_time == clock.now
    assert_running_flag_consistent(store, engine, task.id)


@pytest.mark.asyncio
async def test_start_unknown_task_raises(engine) -> None:
    with pytest.raises(NotFoundError):
        await engine.start_timer("task_missing")


@pytest.mark.asyncio
async def test_stop_records_entry_and_folds_time(store, engine, clock) -> None:
    task = store.create_task(title="Code review", time_spent=5.0)
    await engine.start_timer(task.id)
    start = clock.now
    clock.advance(minutes=25)

    result = await engine.stop_timer(task.id)

    assert result.ok
    assert result.elapsed_minutes == pytest.approx(25.0)
    entry = result.time_entry
    assert entry is not None
    assert entry.start_time == start and entry.end_time == clock.now
    assert entry.duration == pytest.approx(25.0)

    t = store.get_task(task.id)
    assert t.time_spent == pytest.approx(30.0)
    assert not t.is_timer_running and t.timer_start_time is None
    assert store.get_active_timer(task.id) is None
    assert store.list_time_entries(task_id=task.id) == [entry]
    assert_running_flag_consistent(store, engine, task.id)


@pytest.mark.asyncio
async def test_restart_running_timer_yields_exactly_one_entry(store, engine, clock) -> None:
    task = store.create_task(title="Restart me", time_spent=3.0)
    await engine.start_timer(task.id)
    clock.advance(minutes=10)

    result = await engine.start_timer(task.id)

    assert result.ok
    entries = store.list_time_entries(task_id=task.id)
    assert len(entries) == 1
    assert entries[0].duration == pytest.approx(10.0)
    t = store.get_task(task.id)
    assert t.time_spent == pytest.approx(13.0)
    assert t.is_timer_running and t.timer_start_time == clock.now
    assert engine.get_active_timer(task.id).start_time == clock.now
    assert_running_flag_consistent(store, engine, task.id)


@pytest.mark.asyncio
async def test_instant_restart_does_not_fabricate_entry(store, engine) -> None:
    task = store.create_task(title="Double click")
    await engine.start_timer(task.id)
    await engine.start_timer(task.id)

    assert store.list_time_entries(task_id=task.id) == []
    assert engine.is_timer_running(task.id)


@pytest.mark.asyncio
async def test_second_stop_is_failure_noop(store, engine, clock) -> None:
    task = store.create_task(title="Stop twice")
    await engine.start_timer(task.id)
    clock.advance(minutes=4)
    await engine.stop_timer(task.id)
    spent = store.get_task(task.id).time_spent

    clock.advance(minutes=4)
    again = await engine.stop_timer(task.id)

    assert not again.ok
    assert again.reason
    assert store.get_task(task.id).time_spent == spent
    assert len(store.list_time_entries(task_id=task.id)) == 1
    with pytest.raises(InvalidStateError):
        again.raise_for_state()


@pytest.mark.asyncio
async def test_pause_resume_stop_accounts_both_segments(store, engine, clock) -> None:
    task = store.create_task(title="Interrupted")
    await engine.start_timer(task.id)

    clock.advance(minutes=10)
    paused = await engine.pause_timer(task.id)
    assert paused.ok and paused.elapsed_minutes == pytest.approx(10.0)
    assert store.get_task(task.id).time_spent == pytest.approx(10.0)
    assert_running_flag_consistent(store, engine, task.id)

    clock.advance(minutes=30)  # paused time is not tracked
    resumed = await engine.resume_timer(task.id)
    assert resumed.ok
    assert_running_flag_consistent(store, engine, task.id)

    clock.advance(minutes=7)
    stopped = await engine.stop_timer(task.id)

    assert stopped.time_entry.duration + paused.elapsed_minutes == pytest.approx(17.0)
    assert store.get_task(task.id).time_spent == pytest.approx(17.0)
    assert_running_flag_consistent(store, engine, task.id)


@pytest.mark.asyncio
async def test_stop_while_paused_does_not_double_count(store, engine, clock) -> None:
    task = store.create_task(title="Paused stop")
    await engine.start_timer(task.id)
    start = clock.now
    clock.advance(minutes=10)
    await engine.pause_timer(task.id)
    paused_at = clock.now
    clock.advance(minutes=20)

    result = await engine.stop_timer(task.id)

    assert result.time_entry.start_time == start
    assert result.time_entry.end_time == paused_at
    assert result.time_entry.duration == pytest.approx(10.0)
    assert store.get_task(task.id).time_spent == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_pause_and_resume_reject_wrong_state(store, engine) -> None:
    task = store.create_task(title="Idle")

    assert not (await engine.pause_timer(task.id)).ok
    assert not (await engine.resume_timer(task.id)).ok

    await engine.start_timer(task.id)
    assert not (await engine.resume_timer(task.id)).ok
    await engine.pause_timer(task.id)
    assert not (await engine.pause_timer(task.id)).ok


@pytest.mark.asyncio
async def test_tick_never_adds_cumulatively(store, engine, clock) -> None:
    task = store.create_task(title="Long run", time_spent=2.0)
    await engine.start_timer(task.id)

    for _ in range(3):
        clock.advance(minutes=5)
        await engine.tick()

    assert store.get_task(task.id).time_spent == pytest.approx(17.0)
    assert store.get_active_timer(task.id).elapsed_time == pytest.approx(15.0)


@pytest.mark.asyncio
async def test_time_up_marks_overdue_exactly_once(store, engine, notifier, bus, clock) -> None:
    ups: list[TimerUp] = []
    bus.subscribe(ups.append, TimerUp)
    task = store.create_task(title="Estimated", estimated_duration=30.0)
    await engine.start_timer(task.id)

    clock.advance(minutes=31)
    await engine.tick()
    clock.advance(minutes=1)
    await engine.tick()

    assert store.get_task(task.id).status == TaskStatus.OVERDUE
    assert len(ups) == 1
    time_up_notices = [c for c in notifier.immediate() if c.title == "Time Up!"]
    assert len(time_up_notices) == 1
    assert store.get_active_timer(task.id).time_up_fired


@pytest.mark.asyncio
async def test_start_schedules_and_stop_cancels_time_up(store, engine, notifier, clock) -> None:
    task = store.create_task(title="Timed", estimated_duration=45.0)
    await engine.start_timer(task.id)

    nid = f"time_up_{task.id}"
    assert notifier.scheduled[nid].fire_at == clock.now + 45 * 60
    assert store.get_notification(nid).is_active

    clock.advance(minutes=5)
    await engine.stop_timer(task.id)

    assert nid in notifier.cancelled
    assert not store.get_notification(nid).is_active


@pytest.mark.asyncio
async def test_notifier_failure_does_not_roll_back_timer(store, clock) -> None:
    scheduler = NotificationScheduler(store, FakeNotifier(fail=True), clock=clock)
    engine = TimerEngine(store, scheduler, clock=clock)
    task = store.create_task(title="No platform", estimated_duration=10.0)

    result = await engine.start_timer(task.id)
    clock.advance(minutes=11)
    await engine.tick()
    stopped = await engine.stop_timer(task.id)

    assert result.ok and stopped.ok
    assert store.get_task(task.id).time_spent == pytest.approx(11.0)


@pytest.mark.asyncio
async def test_store_failure_is_retried_once(store, engine, clock) -> None:
    task = store.create_task(title="Flaky")
    await engine.start_timer(task.id)
    clock.advance(minutes=3)

    store.fail_next["update_task"] = 1
    result = await engine.stop_timer(task.id)

    assert result.ok
    assert store.get_task(task.id).time_spent == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_failed_entry_restores_task_and_keeps_timer(store, engine, clock) -> None:
    task = store.create_task(title="Atomic", time_spent=1.0)
    await engine.start_timer(task.id)
    clock.advance(minutes=8)

    store.fail_next["create_time_entry"] = 2
    with pytest.raises(PersistenceError):
        await engine.stop_timer(task.id)

    t = store.get_task(task.id)
    assert t.time_spent == pytest.approx(1.0)
    assert t.is_timer_running
    assert engine.is_timer_running(task.id)
    assert store.list_time_entries(task_id=task.id) == []

    result = await engine.stop_timer(task.id)
    assert result.ok
    assert store.get_task(task.id).time_spent == pytest.approx(9.0)
    assert len(store.list_time_entries(task_id=task.id)) == 1


@pytest.mark.asyncio
async def test_events_follow_transition_order(store, engine, bus, clock) -> None:
    seen: list[type] = []
    bus.subscribe(lambda e: seen.append(type(e)))
    task = store.create_task(title="Events")

    await engine.start_timer(task.id)
    clock.advance(minutes=1)
    await engine.pause_timer(task.id)
    await engine.resume_timer(task.id)
    clock.advance(minutes=1)
    await engine.stop_timer(task.id)

    assert seen == [TimerStarted, TimerPaused, TimerResumed, TimerStopped]


@pytest.mark.asyncio
async def test_concurrent_commands_on_one_task_are_serialized(store, engine, clock) -> None:
    task = store.create_task(title="Race")
    await engine.start_timer(task.id)
    clock.advance(minutes=6)

    results = await asyncio.gather(engine.stop_timer(task.id), engine.stop_timer(task.id))

    assert sorted(r.ok for r in results) == [False, True]
    assert len(store.list_time_entries(task_id=task.id)) == 1
    assert store.get_task(task.id).time_spent == pytest.approx(6.0)


@pytest.mark.asyncio
async def test_current_elapsed_time(store, engine, clock) -> None:
    task = store.create_task(title="Elapsed")
    assert engine.get_current_elapsed_time(task.id) == 0.0

    await engine.start_timer(task.id)
    clock.advance(minutes=12)
    assert engine.get_current_elapsed_time(task.id) == pytest.approx(12.0)

    await engine.pause_timer(task.id)
    clock.advance(minutes=50)
    assert engine.get_current_elapsed_time(task.id) == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_task_and_project_statistics(store, engine, clock) -> None:
    project = store.create_project(name="Stats")
    task = store.create_task(title="Measured", project_id=project.id, estimated_duration=20.0)
    await engine.start_timer(task.id)
    clock.advance(minutes=15)
    await engine.stop_timer(task.id)
    await engine.start_timer(task.id)
    clock.advance(minutes=10)

    stats = engine.get_task_time_statistics(task.id)
    assert stats.sessions_count == 2
    assert stats.total_time == pytest.approx(25.0)
    assert stats.is_overtime
    assert stats.remaining_time == 0.0

    pstats = engine.get_project_time_statistics(project.id)
    assert pstats.total_time == pytest.approx(25.0)
    assert pstats.active_timers_count == 1
    assert pstats.tasks_count == 1


@pytest.mark.asyncio
async def test_shutdown_keeps_or_stops_timers(store, engine, clock) -> None:
    keep = store.create_task(title="Keep")
    await engine.start_timer(keep.id)
    clock.advance(minutes=2)

    await engine.shutdown()

    assert store.get_active_timer(keep.id) is not None
    assert store.get_task(keep.id).time_spent == pytest.approx(2.0)

    await engine.shutdown(stop_timers=True)

    assert store.get_active_timer(keep.id) is None
    assert not store.get_task(keep.id).is_timer_running
    assert len(store.list_time_entries(task_id=keep.id)) == 1


@pytest.mark.asyncio
async def test_update_loop_publishes_timers_updated(store, scheduler, bus, clock) -> None:
    engine = TimerEngine(store, scheduler, bus=bus, clock=clock, tick_interval_seconds=0.01)
    updates: list[TimersUpdated] = []
    bus.subscribe(updates.append, TimersUpdated)
    task = store.create_task(title="Loop")
    await engine.start_timer(task.id)

    engine.start_updates()
    await asyncio.sleep(0.05)
    await engine.stop_updates()

    assert updates
    assert updates[-1].active_timers[0].task_id == task.id


@pytest.mark.asyncio
async def test_engine_publishes_on_the_injected_bus(store, scheduler, clock) -> None:
    bus = EventBus()
    assert len(bus) == 0
    engine = TimerEngine(store, scheduler, bus=bus, clock=clock)
    seen: list[object] = []
    bus.subscribe(seen.append, TimerStarted)

    task = store.create_task(title="Heard")
    await engine.start_timer(task.id)

    assert engine.bus is bus
    assert [e.task_id for e in seen] == [task.id]


@pytest.mark.asyncio
async def test_locks_are_released_with_their_timer(store, engine, clock) -> None:
    task = store.create_task(title="Short lived")
    await engine.start_timer(task.id)
    assert task.id in engine._locks

    clock.advance(minutes=1)
    await engine.stop_timer(task.id)
    await engine.pause_timer("task_never_seen")

    assert engine._locks == {}
    assert engine._lock_users == {}


@pytest.mark.asyncio
async def test_refresh_time_up_follows_new_estimate(store, engine, clock) -> None:
    task = store.create_task(title="Stretch", estimated_duration=30.0)
    await engine.start_timer(task.id)
    started = clock.now
    clock.advance(minutes=10)

    store.update_task(task.id, estimated_duration=120.0)
    assert await engine.refresh_time_up(task.id) is True
    assert store.get_notification(f"time_up_{task.id}").scheduled_time == started + 120 * 60

    store.update_task(task.id, estimated_duration=None)
    assert await engine.refresh_time_up(task.id) is False
    assert not store.get_notification(f"time_up_{task.id}").is_active
