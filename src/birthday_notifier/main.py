from __future__ import annotations

import logging
from pathlib import Path

from telegram.ext import Application

from birthday_notifier.background import (
    REFRESH_TASK_ID,
    BackgroundRefreshCoordinator,
    JobQueueBackgroundTaskScheduler,
)
from birthday_notifier.bot_handlers import HandlerDependencies, build_handlers
from birthday_notifier.config_store import TomlConfigStore, ensure_default_config
from birthday_notifier.delivery import TelegramNotificationDeliveryService
from birthday_notifier.reminder_service import ReminderService
from birthday_notifier.settings import load_settings


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


async def on_startup(application: Application) -> None:
    coordinator: BackgroundRefreshCoordinator = application.bot_data["coordinator"]
    await coordinator.on_foreground()


def main() -> None:
    configure_logging()

    settings = load_settings()
    _ensure_parent(settings.birthday_config_path)
    ensure_default_config(settings.birthday_config_path)

    store = TomlConfigStore(settings.birthday_config_path)

    application = Application.builder().token(settings.telegram_bot_token).build()

    delivery = TelegramNotificationDeliveryService(application.job_queue, settings.telegram_allowed_chat_id)
    reminder_service = ReminderService(event_store=store, settings_store=store, delivery=delivery)

    task_scheduler = JobQueueBackgroundTaskScheduler(
        application.job_queue,
        budget_seconds=settings.refresh_budget_seconds,
    )
    coordinator = BackgroundRefreshCoordinator(
        task_scheduler=task_scheduler,
        settings_store=store,
        refresh=reminder_service.refresh,
    )
    task_scheduler.register(REFRESH_TASK_ID, coordinator.on_wake)

    application.bot_data["settings"] = settings
    application.bot_data["coordinator"] = coordinator
    application.bot_data["handler_deps"] = HandlerDependencies(
        settings=settings,
        store=store,
        delivery=delivery,
        reminder_service=reminder_service,
        coordinator=coordinator,
    )

    for handler in build_handlers():
        application.add_handler(handler)

    application.post_init = on_startup
    application.run_polling()


if __name__ == "__main__":
    main()
