# tests/test_notification_scheduler.py

from __future__ import annotations

from datetime import datetime

import pytest

from taskpulse.core.events import NotificationTapped
from taskpulse.errors import PastTimeError
from taskpulse.notifications.scheduler import (
    NotificationRequest,
    NotificationScheduler,
    notification_id,
    repeat_type,
)
from taskpulse.storage.models import NotificationPrefs, NotificationType, UserSettings

from .fakes import FakeNotifier


def _request(clock, *, minutes: float = 30, nid: str = "task_due_t1", **kw) -> NotificationRequest:
    return NotificationRequest(
        id=nid,
        title="Task Due Soon",
        message="soon",
        scheduled_time=clock.now + minutes * 60,
        task_id=kw.pop("task_id", "t1"),
        **kw,
    )


@pytest.mark.parametrize(
    ("minutes", "expected"),
    [
        (None, None),
        (0, None),
        (30, "minute"),
        (60, "hour"),
        (90, "hour"),
        (24 * 60, "day"),
        (3 * 24 * 60, "day"),
        (7 * 24 * 60, "week"),
        (10 * 24 * 60, "week"),
    ],
)
def test_repeat_type_rounds_down(minutes, expected) -> None:
    assert repeat_type(minutes) == expected


def test_notification_id_is_deterministic() -> None:
    assert notification_id(NotificationType.TASK_START, "abc") == "task_start_abc"
    assert notification_id("time_up", "abc") == "time_up_abc"


@pytest.mark.asyncio
async def test_past_instant_raises_and_persists_nothing(store, scheduler, notifier, clock) -> None:
    with pytest.raises(PastTimeError):
        await scheduler.schedule_notification(_request(clock, minutes=0))
    with pytest.raises(PastTimeError):
        await scheduler.schedule_notification(_request(clock, minutes=-5))

    assert store.list_notifications() == []
    assert notifier.history == []
    assert scheduler.get_scheduled_notifications() == []


@pytest.mark.asyncio
async def test_rescheduling_same_id_supersedes(store, scheduler, notifier, clock) -> None:
    await scheduler.schedule_notification(_request(clock, minutes=30))
    await scheduler.schedule_notification(_request(clock, minutes=90))

    active = store.list_notifications(active_only=True)
    assert len(active) == 1
    assert active[0].scheduled_time == clock.now + 90 * 60
    assert "task_due_t1" in notifier.cancelled
    assert notifier.scheduled["task_due_t1"].fire_at == clock.now + 90 * 60


@pytest.mark.asyncio
async def test_cancel_is_idempotent(scheduler, clock) -> None:
    assert await scheduler.cancel_notification("nope") is False

    await scheduler.schedule_notification(_request(clock))
    assert await scheduler.cancel_notification("task_due_t1") is True
    assert await scheduler.cancel_notification("task_due_t1") is False


@pytest.mark.asyncio
async def test_cancel_by_task_and_project(store, scheduler, clock) -> None:
    await scheduler.schedule_notification(_request(clock, nid="task_start_t1", project_id="p1"))
    await scheduler.schedule_notification(_request(clock, nid="task_due_t1", project_id="p1"))
    await scheduler.schedule_notification(_request(clock, nid="task_due_t2", task_id="t2", project_id="p1"))

    assert await scheduler.cancel_task_notifications("t1") == 2
    assert [n.id for n in store.list_notifications(active_only=True)] == ["task_due_t2"]
    assert await scheduler.cancel_project_notifications("p1") == 1
    assert store.list_notifications(active_only=True) == []


@pytest.mark.asyncio
async def test_platform_failure_keeps_record(store, clock) -> None:
    scheduler = NotificationScheduler(store, FakeNotifier(fail=True), clock=clock)

    record = await scheduler.schedule_notification(_request(clock))

    assert store.get_notification(record.id).is_active


@pytest.mark.asyncio
async def test_immediate_notification_honours_settings(store, scheduler, notifier) -> None:
    assert await scheduler.send_immediate_notification(title="Hi", message="there") is True
    assert len(notifier.immediate()) == 1
    assert notifier.immediate()[0].payload["type"] == NotificationType.TASK_DUE.value

    store.update_settings(UserSettings(notifications=NotificationPrefs(enabled=False)))
    assert await scheduler.send_immediate_notification(title="Hi", message="again") is False
    assert len(notifier.immediate()) == 1


@pytest.mark.asyncio
async def test_task_start_and_due_use_lead_times(store, scheduler, notifier, clock) -> None:
    task = store.create_task(
        title="Meeting",
        start_time=clock.now + 2 * 3600,
        due_date=clock.now + 5 * 3600,
    )

    start = await scheduler.schedule_task_start(task)
    due = await scheduler.schedule_task_due(task)

    assert start.id == f"task_start_{task.id}"
    assert start.scheduled_time == task.start_time - 15 * 60
    assert due.id == f"task_due_{task.id}"
    assert due.scheduled_time == task.due_date - 60 * 60


@pytest.mark.asyncio
async def test_daily_reminder_only_with_pending_tasks(store, scheduler, notifier, clock) -> None:
    assert await scheduler.schedule_daily_reminder() is None

    store.create_task(title="Pending")
    record = await scheduler.schedule_daily_reminder()

    assert record.id == "daily_reminder"
    assert record.is_recurring and record.recurring_interval == 24 * 60
    fire = datetime.fromtimestamp(record.scheduled_time)
    assert fire.hour == 9 and fire.minute == 0
    assert fire.date() > datetime.fromtimestamp(clock.now).date()
    assert notifier.scheduled["daily_reminder"].repeat == "day"


@pytest.mark.asyncio
async def test_check_due_tasks_sends_overdue_and_starting_soon(store, scheduler, notifier, clock) -> None:
    store.create_task(title="Late", due_date=clock.now - 60)
    store.create_task(title="Soon", start_time=clock.now + 5 * 60)
    store.create_task(title="Done late", due_date=clock.now - 60, status="completed")

    assert await scheduler.check_due_tasks() == 2
    titles = sorted(c.title for c in notifier.immediate())
    assert titles == ["Task Overdue", "Task Starting Soon"]


@pytest.mark.asyncio
async def test_load_deactivates_missed_and_advances_recurring(store, scheduler, clock) -> None:
    await scheduler.schedule_notification(_request(clock, minutes=10, nid="one_shot"))
    await scheduler.schedule_notification(
        _request(clock, minutes=10, nid="every_hour", is_recurring=True, recurring_interval=60)
    )
    clock.advance(minutes=75)

    fresh = NotificationScheduler(store, FakeNotifier(), clock=clock)
    assert await fresh.load_scheduled_notifications() == 1

    assert not store.get_notification("one_shot").is_active
    recurring = store.get_notification("every_hour")
    assert recurring.is_active
    assert recurring.scheduled_time > clock.now
    assert [r.id for r in fresh.get_scheduled_notifications()] == ["every_hour"]


@pytest.mark.asyncio
async def test_mark_fired(store, scheduler, clock) -> None:
    await scheduler.schedule_notification(_request(clock, minutes=1, nid="once"))
    await scheduler.schedule_notification(
        _request(clock, minutes=1, nid="daily", is_recurring=True, recurring_interval=1440)
    )
    clock.advance(minutes=2)

    scheduler.mark_fired("once")
    scheduler.mark_fired("daily")
    scheduler.mark_fired("immediate_whatever")

    assert not store.get_notification("once").is_active
    assert store.get_notification("daily").scheduled_time > clock.now


def test_tap_publishes_event(scheduler, bus) -> None:
    taps: list[NotificationTapped] = []
    bus.subscribe(taps.append, NotificationTapped)

    scheduler.handle_notification_tap({"id": "task_due_t1", "type": "task_due", "task_id": "t1"})

    assert len(taps) == 1
    assert taps[0].task_id == "t1" and taps[0].type == "task_due"


@pytest.mark.asyncio
async def test_clear_all(store, scheduler, notifier, clock) -> None:
    await scheduler.schedule_notification(_request(clock, nid="a"))
    await scheduler.schedule_notification(_request(clock, nid="b"))

    assert await scheduler.clear_all_notifications() == 2
    assert store.list_notifications(active_only=True) == []
    assert notifier.cancel_all_calls == 1
    assert scheduler.get_scheduled_notifications() == []
