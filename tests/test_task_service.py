# tests/test_task_service.py

from __future__ import annotations

import pytest

from taskpulse.errors import NotFoundError
from taskpulse.storage.models import TaskStatus


@pytest.mark.asyncio
async def test_create_task_schedules_future_reminders(store, task_service, notifier, clock) -> None:
    task = await task_service.create_task(
        title="Demo",
        start_time=clock.now + 3600,
        due_date=clock.now + 4 * 3600,
    )

    ids = {n.id for n in store.list_notifications(active_only=True)}
    assert ids == {f"task_start_{task.id}", f"task_due_{task.id}"}
    assert f"task_due_{task.id}" in notifier.scheduled


@pytest.mark.asyncio
async def test_past_reminders_are_skipped_not_raised(store, task_service, clock) -> None:
    # Due in 30 minutes: the 60-minute-ahead reminder would already be in the past.
    task = await task_service.create_task(title="Tight", due_date=clock.now + 30 * 60)

    assert task.id
    assert store.list_notifications() == []


@pytest.mark.asyncio
async def test_create_task_in_unknown_project_fails(task_service) -> None:
    with pytest.raises(NotFoundError):
        await task_service.create_task(title="Orphan", project_id="project_missing")


@pytest.mark.asyncio
async def test_update_due_date_reschedules_and_clear_cancels(store, task_service, clock) -> None:
    task = await task_service.create_task(title="Moving", due_date=clock.now + 5 * 3600)

    await task_service.update_task(task.id, due_date=clock.now + 10 * 3600)
    record = store.get_notification(f"task_due_{task.id}")
    assert record.is_active
    assert record.scheduled_time == clock.now + 9 * 3600

    await task_service.update_task(task.id, due_date=None)
    assert not store.get_notification(f"task_due_{task.id}").is_active


@pytest.mark.asyncio
async def test_complete_task_stops_timer_and_cancels(store, task_service, engine, clock) -> None:
    task = await task_service.create_task(title="Finish", due_date=clock.now + 5 * 3600)
    await engine.start_timer(task.id)
    clock.advance(minutes=20)

    done = await task_service.complete_task(task.id)

    assert done.status == TaskStatus.COMPLETED
    assert done.time_spent == pytest.approx(20.0)
    assert not done.is_timer_running
    assert not engine.has_timer(task.id)
    assert len(store.list_time_entries(task_id=task.id)) == 1
    assert store.list_notifications(active_only=True, task_id=task.id) == []


@pytest.mark.asyncio
async def test_delete_task_with_running_timer(store, task_service, engine, clock) -> None:
    task = await task_service.create_task(title="Gone", estimated_duration=30.0)
    await engine.start_timer(task.id)
    clock.advance(minutes=1)

    assert await task_service.delete_task(task.id) is True

    assert not engine.has_timer(task.id)
    assert store.get_active_timer(task.id) is None
    assert store.list_notifications(active_only=True) == []
    assert await task_service.delete_task(task.id) is False


@pytest.mark.asyncio
async def test_project_stats_follow_task_changes(store, task_service) -> None:
    project = await task_service.create_project(name="Stats")
    a = await task_service.create_task(title="a", project_id=project.id, estimated_duration=30.0)
    await task_service.create_task(title="b", project_id=project.id, estimated_duration=60.0)
    await task_service.create_task(title="c", project_id=project.id)

    await task_service.complete_task(a.id)

    refreshed = store.get_project(project.id)
    assert refreshed.total_estimated_time == 90.0
    assert refreshed.progress == 33


@pytest.mark.asyncio
async def test_project_deadline_lifecycle(store, task_service, clock) -> None:
    project = await task_service.create_project(name="Deadline", end_date=clock.now + 3 * 86400)
    nid = f"project_deadline_{project.id}"
    assert store.get_notification(nid).scheduled_time == clock.now + 2 * 86400

    await task_service.update_project(project.id, end_date=None)
    assert not store.get_notification(nid).is_active


@pytest.mark.asyncio
async def test_delete_project_stops_timers_and_cancels(store, task_service, engine, clock) -> None:
    project = await task_service.create_project(name="Doomed", end_date=clock.now + 3 * 86400)
    task = await task_service.create_task(title="t", project_id=project.id, due_date=clock.now + 5 * 3600)
    await engine.start_timer(task.id)

    assert await task_service.delete_project(project.id) is True

    assert not engine.has_timer(task.id)
    assert store.get_task(task.id) is None
    assert store.list_notifications(active_only=True) == []


@pytest.mark.asyncio
async def test_due_date_moved_inside_lead_drops_old_reminder(store, task_service, notifier, clock) -> None:
    task = await task_service.create_task(title="Sooner", due_date=clock.now + 5 * 3600)
    nid = f"task_due_{task.id}"

    await task_service.update_task(task.id, due_date=clock.now + 30 * 60)

    assert not store.get_notification(nid).is_active
    assert nid not in notifier.scheduled


@pytest.mark.asyncio
async def test_start_moved_inside_lead_drops_old_reminder(store, task_service, notifier, clock) -> None:
    task = await task_service.create_task(title="Kickoff", start_time=clock.now + 3 * 3600)
    nid = f"task_start_{task.id}"

    await task_service.update_task(task.id, start_time=clock.now + 5 * 60)

    assert not store.get_notification(nid).is_active
    assert nid not in notifier.scheduled


@pytest.mark.asyncio
async def test_end_date_moved_inside_lead_drops_old_deadline(store, task_service, notifier, clock) -> None:
    project = await task_service.create_project(name="Crunch", end_date=clock.now + 3 * 86400)
    nid = f"project_deadline_{project.id}"

    await task_service.update_project(project.id, end_date=clock.now + 6 * 3600)

    assert not store.get_notification(nid).is_active
    assert nid not in notifier.scheduled


@pytest.mark.asyncio
async def test_estimate_change_moves_time_up(store, task_service, engine, clock) -> None:
    task = await task_service.create_task(title="Bigger", estimated_duration=30.0)
    await engine.start_timer(task.id)
    started = clock.now
    nid = f"time_up_{task.id}"

    await task_service.update_task(task.id, estimated_duration=120.0)
    assert store.get_notification(nid).scheduled_time == started + 120 * 60

    await task_service.update_task(task.id, estimated_duration=None)
    assert not store.get_notification(nid).is_active
