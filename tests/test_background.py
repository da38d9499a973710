import asyncio
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from birthday_notifier.background import (
    REFRESH_TASK_ID,
    BackgroundRefreshCoordinator,
    BackgroundTaskSchedulerError,
    InMemoryBackgroundTaskScheduler,
    JobQueueBackgroundTaskScheduler,
    RefreshState,
    RefreshTask,
    compute_next_wake_instant,
    needs_resubmission,
)
from birthday_notifier.config_store import TomlConfigStore
from birthday_notifier.delivery import InMemoryNotificationDeliveryService
from birthday_notifier.models import NotificationSettings, RefreshRequest
from birthday_notifier.reminder_service import ReminderService

UTC = timezone.utc


@dataclass
class FakeSettingsStore:
    notification_time: time = time(9, 0)

    def load_settings(self) -> NotificationSettings:
        return NotificationSettings(
            timezone="UTC",
            notification_time=self.notification_time,
            horizon_days=30,
            leap_day_rule="feb28",
        )


@dataclass
class RecordingRefresh:
    scheduler: InMemoryBackgroundTaskScheduler
    delay: float = 0.0
    error: Exception | None = None
    calls: list[datetime] = field(default_factory=list)
    pending_at_start: list[RefreshRequest] = field(default_factory=list)
    cancelled: bool = False

    async def __call__(self, now: datetime) -> None:
        self.calls.append(now)
        self.pending_at_start = self.scheduler.get_pending()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error


def _coordinator(scheduler, refresh, now: datetime, settings=None) -> BackgroundRefreshCoordinator:
    coordinator = BackgroundRefreshCoordinator(
        task_scheduler=scheduler,
        settings_store=settings or FakeSettingsStore(),
        refresh=refresh,
        clock=lambda: now,
    )
    scheduler.register(REFRESH_TASK_ID, coordinator.on_wake)
    return coordinator


def test_next_wake_is_today_when_time_is_ahead() -> None:
    now = datetime(2024, 3, 3, 8, 0, tzinfo=UTC)

    assert compute_next_wake_instant(time(9, 0), now) == datetime(2024, 3, 3, 8, 59, tzinfo=UTC)


def test_next_wake_moves_to_tomorrow_when_time_passed() -> None:
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)

    assert compute_next_wake_instant(time(9, 0), now) == datetime(2024, 3, 4, 8, 59, tzinfo=UTC)


def test_next_wake_moves_to_tomorrow_inside_buffer() -> None:
    now = datetime(2024, 3, 3, 8, 59, 30, tzinfo=UTC)

    assert compute_next_wake_instant(time(9, 0), now) == datetime(2024, 3, 4, 8, 59, tzinfo=UTC)


def test_next_wake_is_never_earlier_than_now_near_midnight() -> None:
    now = datetime(2024, 3, 3, 23, 59, 0, 500000, tzinfo=UTC)

    wake = compute_next_wake_instant(time(0, 0), now)

    assert wake == datetime(2024, 3, 4, 23, 59, tzinfo=UTC)
    assert wake > now


def test_needs_resubmission_tolerance() -> None:
    target = datetime(2024, 3, 4, 8, 59, tzinfo=UTC)

    assert needs_resubmission(None, target) is True
    assert needs_resubmission(RefreshRequest(REFRESH_TASK_ID, target + timedelta(seconds=60)), target) is False
    assert needs_resubmission(RefreshRequest(REFRESH_TASK_ID, target - timedelta(seconds=61)), target) is True


def test_schedule_next_submits_when_nothing_pending() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)
    coordinator = _coordinator(scheduler, RecordingRefresh(scheduler), now)

    request = coordinator.schedule_next()

    assert request == RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC))
    assert scheduler.get_pending() == [request]
    assert coordinator.state is RefreshState.SCHEDULED


def test_schedule_next_within_tolerance_leaves_request_untouched() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)
    existing = RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, 30, tzinfo=UTC))
    scheduler.submit(existing)
    scheduler.submitted.clear()
    coordinator = _coordinator(scheduler, RecordingRefresh(scheduler), now)

    assert coordinator.schedule_next() == existing
    assert scheduler.submitted == []
    assert scheduler.cancelled == []


def test_schedule_next_replaces_request_after_time_change() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)
    scheduler.submit(RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC)))
    coordinator = _coordinator(scheduler, RecordingRefresh(scheduler), now, FakeSettingsStore(time(18, 30)))

    request = coordinator.schedule_next()

    assert scheduler.cancelled == [REFRESH_TASK_ID]
    assert request.earliest_begin == datetime(2024, 3, 3, 18, 29, tzinfo=UTC)
    assert scheduler.get_pending() == [request]


def test_schedule_next_logs_submission_failure_without_raising() -> None:
    scheduler = InMemoryBackgroundTaskScheduler(fail_submissions=True)
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)
    coordinator = _coordinator(scheduler, RecordingRefresh(scheduler), now)

    assert coordinator.schedule_next() is None
    assert scheduler.get_pending() == []
    assert coordinator.state is RefreshState.IDLE


def test_on_wake_schedules_next_before_running_pipeline() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 8, 59, 5, tzinfo=UTC)
    refresh = RecordingRefresh(scheduler)
    coordinator = _coordinator(scheduler, refresh, now)
    scheduler.submit(RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 3, 8, 59, tzinfo=UTC)))

    task = asyncio.run(scheduler.fire(REFRESH_TASK_ID))

    assert task.success is True
    assert coordinator.state is RefreshState.COMPLETED
    assert refresh.calls == [now]
    assert refresh.pending_at_start == [RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC))]


def test_on_wake_expires_when_budget_runs_out() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 8, 59, 5, tzinfo=UTC)
    refresh = RecordingRefresh(scheduler, delay=10)
    coordinator = _coordinator(scheduler, refresh, now)

    task = asyncio.run(scheduler.fire(REFRESH_TASK_ID, budget_seconds=0.01))

    assert task.success is False
    assert coordinator.state is RefreshState.EXPIRED
    assert refresh.cancelled is True
    assert len(scheduler.get_pending()) == 1


def test_on_wake_reports_pipeline_failure() -> None:
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 8, 59, 5, tzinfo=UTC)
    refresh = RecordingRefresh(scheduler, error=RuntimeError("store offline"))
    coordinator = _coordinator(scheduler, refresh, now)

    task = asyncio.run(scheduler.fire(REFRESH_TASK_ID))

    assert task.success is False
    assert coordinator.state is RefreshState.FAILED
    assert len(scheduler.get_pending()) == 1


def test_on_wake_with_wrongly_shaped_config_still_schedules_next(tmp_path: Path) -> None:
    config_path = tmp_path / "birthdays.toml"
    config_path.write_text("events = [1, 2]\n", encoding="utf-8")
    store = TomlConfigStore(config_path)
    delivery = InMemoryNotificationDeliveryService()
    service = ReminderService(event_store=store, settings_store=store, delivery=delivery)
    scheduler = InMemoryBackgroundTaskScheduler()
    now = datetime(2024, 3, 3, 8, 59, 5, tzinfo=UTC)
    coordinator = _coordinator(scheduler, service.refresh, now, settings=store)

    task = asyncio.run(scheduler.fire(REFRESH_TASK_ID))

    assert task.success is True
    assert coordinator.state is RefreshState.COMPLETED
    assert scheduler.get_pending() == [RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC))]
    assert delivery.entries == {}


def test_on_foreground_recovers_after_failed_submission() -> None:
    scheduler = InMemoryBackgroundTaskScheduler(fail_submissions=True)
    now = datetime(2024, 3, 3, 10, 0, tzinfo=UTC)
    refresh = RecordingRefresh(scheduler)
    coordinator = _coordinator(scheduler, refresh, now)
    assert coordinator.schedule_next() is None

    scheduler.fail_submissions = False
    asyncio.run(coordinator.on_foreground())

    assert len(scheduler.get_pending()) == 1
    assert refresh.calls == [now]


def test_refresh_task_first_report_wins() -> None:
    task = RefreshTask(REFRESH_TASK_ID)
    task.set_task_completed(True)
    task.expire()

    assert task.success is True


@dataclass
class FakeJob:
    name: str
    data: Any
    callback: Any
    removed: bool = False

    def schedule_removal(self) -> None:
        self.removed = True


@dataclass
class FakeJobQueue:
    scheduled: list[FakeJob] = field(default_factory=list)

    def run_once(self, callback, when, data=None, name=None) -> FakeJob:
        job = FakeJob(name=name, data=data, callback=callback)
        self.scheduled.append(job)
        return job

    def jobs(self) -> tuple[FakeJob, ...]:
        return tuple(job for job in self.scheduled if not job.removed)

    def get_jobs_by_name(self, name: str) -> tuple[FakeJob, ...]:
        return tuple(job for job in self.jobs() if job.name == name)


@dataclass
class FakeContext:
    job: FakeJob


def test_job_queue_scheduler_requires_registered_handler() -> None:
    scheduler = JobQueueBackgroundTaskScheduler(FakeJobQueue(), budget_seconds=1)

    with pytest.raises(BackgroundTaskSchedulerError):
        scheduler.submit(RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC)))


def test_job_queue_scheduler_submit_and_cancel() -> None:
    job_queue = FakeJobQueue()
    scheduler = JobQueueBackgroundTaskScheduler(job_queue, budget_seconds=1)

    async def handler(task: RefreshTask) -> None:
        task.set_task_completed(True)

    scheduler.register(REFRESH_TASK_ID, handler)
    request = RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC))
    scheduler.submit(request)

    assert scheduler.get_pending() == [request]

    scheduler.cancel(REFRESH_TASK_ID)

    assert scheduler.get_pending() == []


def test_job_queue_scheduler_expires_task_after_budget() -> None:
    job_queue = FakeJobQueue()
    scheduler = JobQueueBackgroundTaskScheduler(job_queue, budget_seconds=0.01)
    seen: list[RefreshTask] = []

    async def handler(task: RefreshTask) -> None:
        seen.append(task)
        await asyncio.sleep(0.1)

    scheduler.register(REFRESH_TASK_ID, handler)
    scheduler.submit(RefreshRequest(REFRESH_TASK_ID, datetime(2024, 3, 4, 8, 59, tzinfo=UTC)))
    job = job_queue.jobs()[0]

    asyncio.run(job.callback(FakeContext(job=job)))

    assert seen[0].success is False
