from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Awaitable, Callable, Protocol

from telegram.ext import CallbackContext, JobQueue

from birthday_notifier.models import RefreshRequest
from birthday_notifier.reminder_service import SettingsStore, now_in_timezone

LOGGER = logging.getLogger(__name__)

REFRESH_TASK_ID = "birthday-notifier.daily-notification-check"
WAKE_BUFFER = timedelta(seconds=60)
RESCHEDULE_TOLERANCE = timedelta(seconds=60)


class RefreshState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class BackgroundTaskSchedulerError(RuntimeError):
    pass


class RefreshTask:
    """One wake-up handed to the launch handler.

    The scheduler calls ``expire()`` when the execution budget runs out; the
    handler reports back through ``set_task_completed``. Only the first
    report counts.
    """

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        self.expiration_handler: Callable[[], None] | None = None
        self.success: bool | None = None

    @property
    def completed(self) -> bool:
        return self.success is not None

    def set_task_completed(self, success: bool) -> None:
        if self.success is None:
            self.success = success

    def expire(self) -> None:
        if self.completed:
            return
        if self.expiration_handler is not None:
            self.expiration_handler()
        else:
            self.set_task_completed(False)


LaunchHandler = Callable[[RefreshTask], Awaitable[None]]


class BackgroundTaskScheduler(Protocol):
    def register(self, identifier: str, launch_handler: LaunchHandler) -> None: ...

    def submit(self, request: RefreshRequest) -> None: ...

    def cancel(self, identifier: str) -> None: ...

    def get_pending(self) -> list[RefreshRequest]: ...


def compute_next_wake_instant(notification_time: time, now: datetime, *, buffer: timedelta = WAKE_BUFFER) -> datetime:
    # A wake instant at or before now would fire immediately and loop until the target passes.
    day = now.date()
    while True:
        wake = datetime.combine(day, notification_time, tzinfo=now.tzinfo) - buffer
        if wake > now:
            return wake
        day += timedelta(days=1)


def needs_resubmission(
    existing: RefreshRequest | None,
    target: datetime,
    *,
    tolerance: timedelta = RESCHEDULE_TOLERANCE,
) -> bool:
    if existing is None:
        return True
    return abs(existing.earliest_begin - target) > tolerance


class BackgroundRefreshCoordinator:
    def __init__(
        self,
        *,
        task_scheduler: BackgroundTaskScheduler,
        settings_store: SettingsStore,
        refresh: Callable[[datetime], Awaitable[object]],
        clock: Callable[[], datetime] | None = None,
        identifier: str = REFRESH_TASK_ID,
        tolerance: timedelta = RESCHEDULE_TOLERANCE,
    ) -> None:
        self._task_scheduler = task_scheduler
        self._settings_store = settings_store
        self._refresh = refresh
        self._clock = clock
        self._identifier = identifier
        self._tolerance = tolerance
        self.state = RefreshState.IDLE

    @property
    def identifier(self) -> str:
        return self._identifier

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return now_in_timezone(self._settings_store.load_settings().timezone)

    def _existing_request(self) -> RefreshRequest | None:
        try:
            pending = self._task_scheduler.get_pending()
        except BackgroundTaskSchedulerError:
            LOGGER.exception("Could not read pending background requests")
            return None
        for request in pending:
            if request.identifier == self._identifier:
                return request
        return None

    def schedule_next(self, now: datetime | None = None) -> RefreshRequest | None:
        """Make sure exactly one wake-up is queued for the next notification time.

        An existing request within the tolerance window is left alone. Returns
        the request that is now pending, or None if submission failed.
        """
        settings = self._settings_store.load_settings()
        now = now or self.now()
        target = compute_next_wake_instant(settings.notification_time, now)

        existing = self._existing_request()
        if not needs_resubmission(existing, target, tolerance=self._tolerance):
            LOGGER.info(
                "Background refresh already scheduled for %s (within tolerance of %s)",
                existing.earliest_begin.isoformat(),
                target.isoformat(),
            )
            self.state = RefreshState.SCHEDULED
            return existing

        if existing is not None:
            LOGGER.info(
                "Cancelling background refresh at %s, expected %s",
                existing.earliest_begin.isoformat(),
                target.isoformat(),
            )
            self._task_scheduler.cancel(self._identifier)

        request = RefreshRequest(identifier=self._identifier, earliest_begin=target)
        try:
            self._task_scheduler.submit(request)
        except BackgroundTaskSchedulerError:
            LOGGER.exception("Failed to schedule background refresh for %s", target.isoformat())
            return None

        LOGGER.info("Background refresh scheduled for %s", target.isoformat())
        self.state = RefreshState.SCHEDULED
        return request

    async def on_wake(self, task: RefreshTask) -> None:
        LOGGER.info("Background refresh %s woke up", task.identifier)
        self.schedule_next()
        self.state = RefreshState.RUNNING

        expired = asyncio.Event()

        def handle_expiration() -> None:
            self.on_expire(task)
            expired.set()

        task.expiration_handler = handle_expiration

        work = asyncio.create_task(self._refresh(self.now()))
        expiry = asyncio.create_task(expired.wait())
        await asyncio.wait({work, expiry}, return_when=asyncio.FIRST_COMPLETED)
        expiry.cancel()

        if expired.is_set():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            return

        try:
            work.result()
        except Exception:
            LOGGER.exception("Background refresh %s failed", task.identifier)
            self.state = RefreshState.FAILED
            task.set_task_completed(False)
            return

        self.state = RefreshState.COMPLETED
        task.set_task_completed(True)
        LOGGER.info("Background refresh %s completed", task.identifier)

    def on_expire(self, task: RefreshTask) -> None:
        LOGGER.warning("Background refresh %s expired before completion", task.identifier)
        self.state = RefreshState.EXPIRED
        task.set_task_completed(False)

    async def on_foreground(self, now: datetime | None = None) -> None:
        now = now or self.now()
        self.schedule_next(now)
        try:
            await self._refresh(now)
        except Exception:
            LOGGER.exception("Foreground refresh failed")


class JobQueueBackgroundTaskScheduler:
    """Wake-up requests as one-shot JobQueue jobs with an execution budget.

    When the budget elapses before the launch handler reports completion the
    task is expired, which lets the handler abandon its work.
    """

    def __init__(self, job_queue: JobQueue, *, budget_seconds: float) -> None:
        self._job_queue = job_queue
        self._budget_seconds = budget_seconds
        self._handlers: dict[str, LaunchHandler] = {}

    def register(self, identifier: str, launch_handler: LaunchHandler) -> None:
        self._handlers[identifier] = launch_handler

    def submit(self, request: RefreshRequest) -> None:
        if request.identifier not in self._handlers:
            raise BackgroundTaskSchedulerError(f"No launch handler registered for {request.identifier}")
        try:
            self._job_queue.run_once(
                self._launch,
                when=request.earliest_begin,
                data=request,
                name=request.identifier,
            )
        except (RuntimeError, ValueError) as exc:
            raise BackgroundTaskSchedulerError(str(exc)) from exc

    def cancel(self, identifier: str) -> None:
        for job in self._job_queue.get_jobs_by_name(identifier):
            job.schedule_removal()

    def get_pending(self) -> list[RefreshRequest]:
        return [job.data for job in self._job_queue.jobs() if isinstance(job.data, RefreshRequest)]

    async def _launch(self, context: CallbackContext) -> None:
        request: RefreshRequest = context.job.data
        task = RefreshTask(request.identifier)
        timer = asyncio.get_running_loop().call_later(self._budget_seconds, task.expire)
        try:
            await self._handlers[request.identifier](task)
        finally:
            timer.cancel()
        LOGGER.info("Background task %s finished, success=%s", task.identifier, task.success)


class InMemoryBackgroundTaskScheduler:
    """Scheduler double: keeps requests in a dict and fires them on demand."""

    def __init__(self, *, fail_submissions: bool = False) -> None:
        self.fail_submissions = fail_submissions
        self.requests: dict[str, RefreshRequest] = {}
        self.submitted: list[RefreshRequest] = []
        self.cancelled: list[str] = []
        self._handlers: dict[str, LaunchHandler] = {}

    def register(self, identifier: str, launch_handler: LaunchHandler) -> None:
        self._handlers[identifier] = launch_handler

    def submit(self, request: RefreshRequest) -> None:
        if self.fail_submissions:
            raise BackgroundTaskSchedulerError("Submission rejected")
        self.submitted.append(request)
        self.requests[request.identifier] = request

    def cancel(self, identifier: str) -> None:
        self.cancelled.append(identifier)
        self.requests.pop(identifier, None)

    def get_pending(self) -> list[RefreshRequest]:
        return list(self.requests.values())

    async def fire(self, identifier: str, *, budget_seconds: float | None = None) -> RefreshTask:
        self.requests.pop(identifier, None)
        task = RefreshTask(identifier)
        timer = None
        if budget_seconds is not None:
            timer = asyncio.get_running_loop().call_later(budget_seconds, task.expire)
        try:
            await self._handlers[identifier](task)
        finally:
            if timer is not None:
                timer.cancel()
        return task
