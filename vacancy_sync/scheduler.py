"""Time-based triggering of import tasks.

Schedules are anchored on the task's `schedule_time` (UTC) and expressed as
APScheduler cron triggers:

- hourly: every hour at the configured minute
- twicedaily: at HH:MM and twelve hours later
- daily: at HH:MM
- weekly: Mondays at HH:MM

`tick(now)` runs every task whose most recent slot has not been served by a
scheduled run yet, so an external timer (cron, systemd, `run_forever`) can call
it as often as it likes. Missed slots collapse into one run.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .logging import get_logger
from .models import ImportResult, ImportRun, ImportTask, ScheduleFrequency, TaskStatus, TriggerType
from .storage import TaskStore
from .utils import ensure_utc, utc_now

log = get_logger("scheduler")

INTERVALS: Dict[ScheduleFrequency, timedelta] = {
    ScheduleFrequency.HOURLY: timedelta(hours=1),
    ScheduleFrequency.TWICEDAILY: timedelta(hours=12),
    ScheduleFrequency.DAILY: timedelta(days=1),
    ScheduleFrequency.WEEKLY: timedelta(days=7),
}

_TICK_JOB_ID = "vacancy-sync-tick"
_EPSILON = timedelta(microseconds=1)


class _Runner(Protocol):
    def run_import(self, task_id: str, trigger: TriggerType = TriggerType.MANUAL) -> ImportResult: ...

    def is_running(self, task_id: str) -> bool: ...


class _RunHistory(Protocol):
    def list_runs(self, task_id: Optional[str] = None, limit: Optional[int] = None) -> List[ImportRun]: ...


def _parse_time(value: str) -> Tuple[int, int]:
    hour, _, minute = value.partition(":")
    return int(hour), int(minute or 0)


def cron_trigger(task: ImportTask) -> CronTrigger:
    """The task's schedule as a UTC cron trigger."""
    hour, minute = _parse_time(task.schedule_time)
    freq = task.schedule_frequency
    if freq is ScheduleFrequency.HOURLY:
        return CronTrigger(minute=minute, timezone="UTC")
    if freq is ScheduleFrequency.TWICEDAILY:
        return CronTrigger(hour=f"{hour % 12},{hour % 12 + 12}", minute=minute, timezone="UTC")
    if freq is ScheduleFrequency.WEEKLY:
        return CronTrigger(day_of_week="mon", hour=hour, minute=minute, timezone="UTC")
    return CronTrigger(hour=hour, minute=minute, timezone="UTC")


def _first_fire_from(trigger: CronTrigger, start: datetime) -> datetime:
    fire = trigger.get_next_fire_time(None, start)
    if fire is None:
        raise ValueError(f"Trigger {trigger} has no fire time after {start.isoformat()}")
    return ensure_utc(fire)


def last_occurrence(task: ImportTask, now: datetime) -> datetime:
    """Most recent scheduled slot at or before `now`."""
    # Exactly one slot falls in any window of one interval.
    window_start = ensure_utc(now) - INTERVALS[task.schedule_frequency] + _EPSILON
    return _first_fire_from(cron_trigger(task), window_start)


def next_run(task: ImportTask, now: datetime) -> datetime:
    """First scheduled slot strictly after `now`."""
    return _first_fire_from(cron_trigger(task), ensure_utc(now) + _EPSILON)


class Scheduler:
    """Decides which tasks are due and hands them to the orchestrator."""

    def __init__(
        self,
        runner: _Runner,
        tasks: TaskStore,
        history: _RunHistory,
        *,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.runner = runner
        self.tasks = tasks
        self.history = history
        self._executor = executor
        self._clock = clock
        self._fired: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def is_scheduled(self, task: ImportTask) -> bool:
        return task.schedule_enabled and task.status is TaskStatus.ACTIVE

    def is_due(self, task: ImportTask, now: datetime) -> bool:
        if not self.is_scheduled(task):
            return False
        slot = last_occurrence(task, now)
        if self._fired.get(task.id) == slot:
            return False
        for run in self.history.list_runs(task.id):
            if run.trigger is TriggerType.SCHEDULED and ensure_utc(run.started_at) >= slot:
                return False
        return True

    def due_tasks(self, now: Optional[datetime] = None) -> List[ImportTask]:
        now = now or self._clock()
        return [t for t in self.tasks.all() if self.is_due(t, now)]

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Union[ImportResult, Future]]:
        """Trigger every due task once. Returns results (or futures) by task id.

        A run the orchestrator refuses (no run id) does not use up the slot, so
        the next tick tries again.
        """
        now = now or self._clock()
        triggered: Dict[str, Union[ImportResult, Future]] = {}
        for task in self.due_tasks(now):
            if self.runner.is_running(task.id):
                log.info(f"Task '{task.id}' is due but already running; will retry next tick")
                continue
            slot = last_occurrence(task, now)
            with self._lock:
                self._fired[task.id] = slot
            log.info(f"Triggering scheduled run for task '{task.id}' ({task.schedule_frequency.value})")
            if self._executor is not None:
                future = self._executor.submit(self.runner.run_import, task.id, TriggerType.SCHEDULED)
                future.add_done_callback(lambda f, task_id=task.id, slot=slot: self._settle(task_id, slot, f))
                triggered[task.id] = future
            else:
                result = self.runner.run_import(task.id, TriggerType.SCHEDULED)
                self._settle(task.id, slot, result)
                triggered[task.id] = result
        return triggered

    def _settle(self, task_id: str, slot: datetime, outcome: Union[ImportResult, Future]) -> None:
        if isinstance(outcome, Future):
            if outcome.cancelled() or outcome.exception() is not None:
                reason = "was cancelled" if outcome.cancelled() else f"raised {outcome.exception()!r}"
                self._release(task_id, slot, reason)
                return
            outcome = outcome.result()
        if outcome.run_id is None:
            self._release(task_id, slot, f"was refused: {outcome.message}")

    def _release(self, task_id: str, slot: datetime, reason: str) -> None:
        log.warning(f"Scheduled run for task '{task_id}' {reason}; slot {slot.isoformat()} stays due")
        with self._lock:
            if self._fired.get(task_id) == slot:
                del self._fired[task_id]

    def trigger(self, task_id: str) -> ImportResult:
        """Manual run: ignores timing, still subject to single-flight."""
        return self.runner.run_import(task_id, TriggerType.MANUAL)

    def schedule_info(self, now: Optional[datetime] = None) -> List[Dict[str, object]]:
        now = now or self._clock()
        info = []
        for task in self.tasks.all():
            scheduled = self.is_scheduled(task)
            info.append(
                {
                    "task_id": task.id,
                    "name": task.name,
                    "enabled": scheduled,
                    "frequency": task.schedule_frequency.value,
                    "schedule_time": task.schedule_time,
                    "next_run": next_run(task, now).isoformat() if scheduled else None,
                }
            )
        return info

    def run_forever(self, stop: threading.Event, poll_interval_s: float = 60.0) -> None:
        """Tick on a background interval job until `stop` is set."""
        background = BackgroundScheduler(timezone="UTC")
        background.add_job(
            self.tick,
            IntervalTrigger(seconds=poll_interval_s, timezone="UTC"),
            id=_TICK_JOB_ID,
            next_run_time=utc_now(),
            max_instances=1,
            coalesce=True,
        )
        background.start()
        log.info(f"Scheduler started (tick every {poll_interval_s:.0f}s)")
        try:
            stop.wait()
        finally:
            background.shutdown(wait=True)
        log.info("Scheduler stopped")
