# src/taskpulse/cli/commands.py

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime

from ..core.state import AppState
from ..errors import TaskPulseError
from ..services.project_service import TEMPLATES, AutomationRules, DeadlineAlerts
from ..storage.models import ActiveTimer, Task, TaskPriority

CommandHandler = Callable[[AppState, list[str]], Awaitable[str]]

logger = logging.getLogger(__name__)

_RELATIVE = re.compile(r"^\+(\d+(?:\.\d+)?)([mhd])$")
_UNIT_SECONDS = {"m": 60.0, "h": 3600.0, "d": 86400.0}


class CommandRegistry:
    """Slash-command registry used by connectors (/help, /start, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(state, args)
        except (TaskPulseError, ValueError) as e:
            logger.info("/%s failed: %s", name, e)
            return f"Error: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- formatting / parsing helpers ----

def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M")


def _fmt_minutes(minutes: float) -> str:
    total = int(minutes)
    hours, mins = divmod(total, 60)
    return f"{hours}h {mins:02d}m" if hours else f"{mins}m"


def _parse_when(raw: str, now: float) -> float:
    """Accept "+30m" / "+2h" / "+1d" or a local ISO datetime like 2026-05-01T09:00."""
    m = _RELATIVE.match(raw)
    if m:
        return now + float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
    try:
        return datetime.fromisoformat(raw).timestamp()
    except ValueError as e:
        raise ValueError(f"bad time {raw!r} (use +30m, +2h, +1d or YYYY-MM-DDTHH:MM)") from e


def _split_options(args: list[str]) -> tuple[str, dict[str, str]]:
    """Words become the title; key=value pairs become options."""
    words: list[str] = []
    opts: dict[str, str] = {}
    for a in args:
        if "=" in a:
            k, v = a.split("=", 1)
            opts[k.lower()] = v
        else:
            words.append(a)
    return " ".join(words).strip(), opts


def _task_line(task: Task, timer: ActiveTimer | None) -> str:
    marker = ""
    if timer is not None:
        marker = " [RUNNING]" if timer.is_running else " [PAUSED]"
    est = f"/{_fmt_minutes(task.estimated_duration)}" if task.estimated_duration else ""
    return (
        f"{task.id}  {task.status.value:<11} {task.priority.value:<6} "
        f"{_fmt_minutes(task.time_spent)}{est}  {task.title}{marker}"
    )


def _need(args: list[str], usage: str) -> str:
    if not args:
        raise ValueError(f"usage: {usage}")
    return args[0]


# ---- commands ----

async def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


async def cmd_tasks(state: AppState, args: list[str]) -> str:
    project_id = args[0] if args else None
    tasks = state.store.list_tasks(project_id=project_id)
    if not tasks:
        return "No tasks."
    return "\n".join(_task_line(t, state.engine.get_active_timer(t.id)) for t in tasks)


async def cmd_add(state: AppState, args: list[str]) -> str:
    """
    /add <title> [est=30] [due=+2h] [start=+30m] [project=<id>] [priority=high]
    """
    title, opts = _split_options(args)
    if not title:
        raise ValueError("usage: /add <title> [est=MIN] [due=WHEN] [start=WHEN] [project=ID] [priority=P]")

    now = state.clock()
    fields: dict[str, object] = {}
    if "est" in opts:
        fields["estimated_duration"] = float(opts["est"])
    if "due" in opts:
        fields["due_date"] = _parse_when(opts["due"], now)
    if "start" in opts:
        fields["start_time"] = _parse_when(opts["start"], now)
    if "project" in opts:
        fields["project_id"] = opts["project"]
    if "priority" in opts:
        fields["priority"] = TaskPriority(opts["priority"].lower())

    task = await state.tasks.create_task(title=title, **fields)
    return f"Task created: {task.id} ({task.title})"


async def cmd_done(state: AppState, args: list[str]) -> str:
    task = await state.tasks.complete_task(_need(args, "/done <task_id>"))
    return f"Completed: {task.title} ({_fmt_minutes(task.time_spent)} spent)"


async def cmd_rm(state: AppState, args: list[str]) -> str:
    task_id = _need(args, "/rm <task_id>")
    if await state.tasks.delete_task(task_id):
        return f"Task {task_id} deleted."
    return f"No task with id {task_id}."


async def cmd_start(state: AppState, args: list[str]) -> str:
    result = await state.engine.start_timer(_need(args, "/start <task_id>"))
    return f"Timer started for {result.task_id}."


async def cmd_stop(state: AppState, args: list[str]) -> str:
    result = await state.engine.stop_timer(_need(args, "/stop <task_id>"))
    if not result:
        return f"Cannot stop {result.task_id}: {result.reason}."
    return f"Timer stopped for {result.task_id}: {_fmt_minutes(result.elapsed_minutes)} recorded."


async def cmd_pause(state: AppState, args: list[str]) -> str:
    result = await state.engine.pause_timer(_need(args, "/pause <task_id>"))
    if not result:
        return f"Cannot pause {result.task_id}: {result.reason}."
    return f"Timer paused for {result.task_id} after {_fmt_minutes(result.elapsed_minutes)}."


async def cmd_resume(state: AppState, args: list[str]) -> str:
    result = await state.engine.resume_timer(_need(args, "/resume <task_id>"))
    if not result:
        return f"Cannot resume {result.task_id}: {result.reason}."
    return f"Timer resumed for {result.task_id}."


async def cmd_timers(state: AppState, args: list[str]) -> str:
    timers = state.engine.get_all_active_timers()
    if not timers:
        return "No active timers."
    lines = ["Active timers:"]
    for t in timers:
        status = "running" if t.is_running else "paused"
        elapsed = state.engine.get_current_elapsed_time(t.task_id)
        lines.append(f"  {t.task_id}  {status:<7} {_fmt_minutes(elapsed)} (since {_fmt_ts(t.start_time)})")
    return "\n".join(lines)


async def cmd_stats(state: AppState, args: list[str]) -> str:
    task_id = _need(args, "/stats <task_id>")
    stats = state.engine.get_task_time_statistics(task_id)
    lines = [
        f"Task {task_id}:",
        f"  Total time: {_fmt_minutes(stats.total_time)} in {stats.sessions_count} sessions",
        f"  Current session: {_fmt_minutes(stats.current_session_time)}",
    ]
    if stats.estimated_time:
        over = " (OVERTIME)" if stats.is_overtime else ""
        lines.append(
            f"  Estimate: {_fmt_minutes(stats.estimated_time)}, "
            f"remaining {_fmt_minutes(stats.remaining_time)}{over}"
        )
    return "\n".join(lines)


async def cmd_projects(state: AppState, args: list[str]) -> str:
    projects = state.store.list_projects()
    if not projects:
        return "No projects."
    return "\n".join(
        f"{p.id}  {p.status.value:<9} {p.progress:>3}%  {p.name}  (due {_fmt_ts(p.end_date)})"
        for p in projects
    )


async def cmd_project(state: AppState, args: list[str]) -> str:
    """
    /project new <name> [end=+7d]
    /project template <template> [name...]
    /project rm <id>
    /project auto <id> [standup=HH:MM] [weekly=1] [alerts=1] [autostatus=1]
    /project export <id> [json|csv]
    """
    usage = (
        "Usage:\n"
        "  /project new <name> [end=WHEN]\n"
        f"  /project template <{'|'.join(TEMPLATES)}> [name]\n"
        "  /project rm <id>\n"
        "  /project auto <id> [standup=HH:MM] [weekly=1] [alerts=1] [autostatus=1]\n"
        "  /project export <id> [json|csv]"
    )
    if not args:
        return usage

    sub, rest = args[0].lower(), args[1:]

    if sub == "new":
        name, opts = _split_options(rest)
        if not name:
            return usage
        fields: dict[str, object] = {}
        if "end" in opts:
            fields["end_date"] = _parse_when(opts["end"], state.clock())
            fields["start_date"] = state.clock()
        project = await state.tasks.create_project(name=name, **fields)
        return f"Project created: {project.id} ({project.name})"

    if sub == "template":
        if not rest:
            return usage
        name = " ".join(rest[1:]) or None
        project, tasks = await state.projects.create_project_from_template(rest[0], name=name)
        return f"Project created: {project.id} ({project.name}) with {len(tasks)} tasks"

    if sub == "rm":
        project_id = _need(rest, "/project rm <id>")
        if await state.tasks.delete_project(project_id):
            return f"Project {project_id} deleted."
        return f"No project with id {project_id}."

    if sub == "auto":
        project_id = _need(rest, "/project auto <id> ...")
        _, opts = _split_options(rest[1:])
        rules = AutomationRules(
            daily_standup_time=opts.get("standup"),
            weekly_progress_report=opts.get("weekly") == "1",
            deadline_alerts=DeadlineAlerts() if opts.get("alerts") == "1" else None,
            auto_status_updates=opts.get("autostatus") == "1",
        )
        await state.projects.setup_project_automation(project_id, rules)
        return f"Automation configured for {project_id}."

    if sub == "export":
        project_id = _need(rest, "/project export <id> [json|csv]")
        fmt = rest[1].lower() if len(rest) > 1 else "json"
        return state.projects.export_project(project_id, fmt)

    return usage


async def cmd_report(state: AppState, args: list[str]) -> str:
    a = state.projects.get_project_analytics(_need(args, "/report <project_id>"))
    ts, tm, tl = a.task_stats, a.time_stats, a.timeline
    lines = [
        f"Project {a.project_name} ({a.project_id})",
        f"  Health: {a.health_score}/100",
        f"  Tasks: {ts.total} total, {ts.completed} done, {ts.in_progress} in progress, "
        f"{ts.pending} pending, {ts.overdue} overdue ({ts.completion_rate}% complete)",
        f"  Time: {_fmt_minutes(tm.total_actual)} of {_fmt_minutes(tm.total_estimated)} estimated "
        f"(efficiency {tm.efficiency}%)",
        f"  Timeline: {tl.status.value}",
    ]
    if tl.days_remaining is not None:
        lines.append(f"  Days remaining: {tl.days_remaining}")
    if tl.days_overdue is not None:
        lines.append(f"  Days overdue: {tl.days_overdue}")
    return "\n".join(lines)


async def cmd_notifications(state: AppState, args: list[str]) -> str:
    if args and args[0].lower() == "clear":
        cleared = await state.scheduler.clear_all_notifications()
        return f"Cleared {cleared} notifications."
    records = state.scheduler.get_scheduled_notifications()
    if not records:
        return "No scheduled notifications."
    lines = ["Scheduled notifications:"]
    for r in records:
        repeat = f" every {_fmt_minutes(r.recurring_interval)}" if r.is_recurring and r.recurring_interval else ""
        lines.append(f"  {_fmt_ts(r.scheduled_time)}  {r.id}  {r.title}{repeat}")
    return "\n".join(lines)


async def cmd_tap(state: AppState, args: list[str]) -> str:
    notification_id = _need(args, "/tap <notification_id>")
    record = state.store.get_notification(notification_id)
    if record is None:
        return f"No notification with id {notification_id}."

    payload = {
        **record.data,
        "id": record.id,
        "type": record.type.value,
        "task_id": record.task_id,
        "project_id": record.project_id,
    }
    event = state.scheduler.handle_notification_tap(payload)
    if event.task_id:
        task = state.store.get_task(event.task_id)
        if task is not None:
            return _task_line(task, state.engine.get_active_timer(task.id))
    if event.project_id:
        return await cmd_report(state, [event.project_id])
    return f"Opened {record.title}."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [project_id].", aliases=["ls"])
registry.register("add", cmd_add, help_text="Create a task: /add <title> [est=MIN] [due=WHEN] [project=ID].")
registry.register("done", cmd_done, help_text="Complete a task (stops its timer): /done <task_id>.")
registry.register("rm", cmd_rm, help_text="Delete a task: /rm <task_id>.")
registry.register("start", cmd_start, help_text="Start (or restart) a task timer: /start <task_id>.")
registry.register("stop", cmd_stop, help_text="Stop a timer and record a time entry: /stop <task_id>.")
registry.register("pause", cmd_pause, help_text="Pause a running timer: /pause <task_id>.")
registry.register("resume", cmd_resume, help_text="Resume a paused timer: /resume <task_id>.")
registry.register("timers", cmd_timers, help_text="List active timers.")
registry.register("stats", cmd_stats, help_text="Time statistics for a task: /stats <task_id>.")
registry.register("projects", cmd_projects, help_text="List projects.")
registry.register("project", cmd_project, help_text="Project management: /project new|template|rm|auto|export.")
registry.register("report", cmd_report, help_text="Project analytics: /report <project_id>.")
registry.register("notifications", cmd_notifications, help_text="List or clear notifications: /notifications [clear].")
registry.register("tap", cmd_tap, help_text="Open a notification as if tapped: /tap <notification_id>.")
