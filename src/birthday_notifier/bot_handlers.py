from __future__ import annotations

import logging
from dataclasses import dataclass
from telegram import Update
from telegram.ext import CallbackContext, CommandHandler

from birthday_notifier.background import BackgroundRefreshCoordinator
from birthday_notifier.config_store import TomlConfigStore
from birthday_notifier.delivery import NotificationDeliveryService
from birthday_notifier.models import PendingReminder
from birthday_notifier.reminder_service import ReminderService
from birthday_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerDependencies:
    settings: Settings
    store: TomlConfigStore
    delivery: NotificationDeliveryService
    reminder_service: ReminderService
    coordinator: BackgroundRefreshCoordinator


def is_authorized(update: Update, settings: Settings) -> bool:
    effective_user = update.effective_user
    effective_chat = update.effective_chat
    if effective_user is None or effective_chat is None:
        return False
    return (
        effective_user.id == settings.telegram_allowed_user_id
        and effective_chat.id == settings.telegram_allowed_chat_id
    )


async def _deny_unauthorized(update: Update) -> None:
    if update.effective_message:
        await update.effective_message.reply_text("This bot is restricted to its configured owner.")


def _render_help() -> str:
    return (
        "Commands:\n"
        "/notifications - Show scheduled birthday notifications\n"
        "/remove N - Remove the N-th scheduled notification\n"
        "/clear - Remove all scheduled notifications\n"
        "/settime HH:MM - Set the time of day notifications are sent\n"
        "/refresh - Recompute notifications now\n"
        "/help - Show this help message\n\n"
        "Reminders are sent 7 days before, the day before, and on each birthday.\n"
        "Removed notifications come back on the next refresh while the birthday is tracked."
    )


def sort_pending(pending: list[PendingReminder]) -> list[PendingReminder]:
    return sorted(pending, key=lambda reminder: (reminder.trigger_instant, reminder.id))


def _render_notifications(pending: list[PendingReminder]) -> str:
    if not pending:
        return "No scheduled notifications!"

    lines = [f"Scheduled notifications ({len(pending)})"]
    for index, reminder in enumerate(pending, start=1):
        lines.append(f"{index}. {reminder.title or reminder.id}")
        if reminder.body:
            lines.append(f"   {reminder.body}")
        lines.append(f"   Scheduled: {reminder.trigger_instant.strftime('%Y-%m-%d %H:%M')}")
        lines.append("")

    return "\n".join(lines).rstrip()


async def help_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return
    await update.effective_message.reply_text(_render_help())


async def notifications_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    pending = sort_pending(await deps.delivery.get_pending())
    await update.effective_message.reply_text(_render_notifications(pending))


async def remove_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    args = context.args or []
    if len(args) != 1 or not args[0].isdigit():
        await update.effective_message.reply_text("Usage: /remove N (see /notifications for numbers)")
        return

    pending = sort_pending(await deps.delivery.get_pending())
    index = int(args[0])
    if index < 1 or index > len(pending):
        await update.effective_message.reply_text(f"Choose a number between 1 and {len(pending)}.")
        return

    reminder = pending[index - 1]
    await deps.delivery.remove_by_id([reminder.id])
    LOGGER.info("Removed pending notification %s on request", reminder.id)
    await update.effective_message.reply_text(f"Removed: {reminder.title or reminder.id}")


async def clear_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    await deps.delivery.remove_all()
    LOGGER.info("Cleared all pending notifications on request")
    await update.effective_message.reply_text("All scheduled notifications removed.")


async def settime_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    args = context.args or []
    if len(args) != 1:
        await update.effective_message.reply_text("Usage: /settime HH:MM")
        return

    try:
        saved = deps.store.save_notification_time(args[0])
    except ValueError as exc:
        await update.effective_message.reply_text(f"Invalid time: {exc}")
        return

    now = deps.coordinator.now()
    deps.coordinator.schedule_next(now)
    diff = await deps.reminder_service.refresh(now)
    await update.effective_message.reply_text(
        f"Notification time saved: {saved}\n"
        f"Rescheduled {len(diff.to_add)} notifications, removed {len(diff.to_remove)}."
    )


async def refresh_command(update: Update, context: CallbackContext) -> None:
    deps: HandlerDependencies = context.application.bot_data["handler_deps"]
    if not is_authorized(update, deps.settings):
        await _deny_unauthorized(update)
        return

    diff = await deps.reminder_service.refresh(deps.coordinator.now())
    if diff.is_empty:
        await update.effective_message.reply_text("Notifications are already up to date.")
        return
    await update.effective_message.reply_text(
        f"Scheduled {len(diff.to_add)} notifications, removed {len(diff.to_remove)}."
    )


def build_handlers() -> list:
    return [
        CommandHandler("help", help_command),
        CommandHandler("start", help_command),
        CommandHandler("notifications", notifications_command),
        CommandHandler("remove", remove_command),
        CommandHandler("clear", clear_command),
        CommandHandler("settime", settime_command),
        CommandHandler("refresh", refresh_command),
    ]
