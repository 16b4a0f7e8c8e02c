"""
guardbot entrypoint.

Runs a webhook listener when WEBHOOK_URL is set, long polling otherwise.
"""
import sys
import traceback

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import config
from guardbot.engine.orchestrator import create_orchestrator
from guardbot.handlers.commands import report_command, spam_action_callback, stats_command
from guardbot.handlers.messages import handle_group_message, handle_new_members
from guardbot.logging import configure_logging
from guardbot.services.classifier import ClassifierService
from guardbot.services.gateway import TelegramGateway
from guardbot.storage import TrackerStore

logger = configure_logging(config.LOG_LEVEL)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Log errors that escape a handler without crashing the bot."""
    logger.error(f"Error while handling update {update}: {context.error}")
    if context.error:
        logger.error(
            "".join(traceback.format_exception(type(context.error), context.error, context.error.__traceback__))
        )


async def sweep_job(context: ContextTypes.DEFAULT_TYPE):
    orchestrator = context.bot_data["orchestrator"]
    result = orchestrator.sweep()
    logger.debug(f"Periodic sweep: {result}")


def build_application() -> Application:
    application = Application.builder().token(config.BOT_TOKEN).build()

    classifier = ClassifierService(
        endpoint=config.CLASSIFIER_API_ENDPOINT,
        analysis_key=config.ANALYSIS_API_KEY,
        analysis_backup_key=config.ANALYSIS_API_KEY_BACKUP,
        secondary_key=config.SECONDARY_API_KEY,
        secondary_backup_key=config.SECONDARY_API_KEY_BACKUP,
        translation_key=config.TRANSLATION_API_KEY,
        analysis_timeout=config.ANALYSIS_TIMEOUT_SECONDS,
        secondary_timeout=config.SECONDARY_TIMEOUT_SECONDS,
        avatar_timeout=config.AVATAR_TIMEOUT_SECONDS,
        translation_timeout=config.TRANSLATION_TIMEOUT_SECONDS,
    )
    gateway = TelegramGateway(application.bot, classifier)
    store = TrackerStore(config.TRACKER_DB_PATH)
    application.bot_data["orchestrator"] = create_orchestrator(gateway, classifier, store)

    group_content = (filters.TEXT | filters.CAPTION | filters.PHOTO) & ~filters.COMMAND & filters.ChatType.GROUPS
    application.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, handle_new_members))
    application.add_handler(MessageHandler(group_content, handle_group_message))
    application.add_handler(CommandHandler("report", report_command))
    application.add_handler(CommandHandler("stats", stats_command))
    application.add_handler(CallbackQueryHandler(spam_action_callback, pattern=r"^spam_action:"))
    application.add_error_handler(error_handler)

    if application.job_queue:
        application.job_queue.run_repeating(
            sweep_job, interval=config.SWEEP_INTERVAL_SECONDS, first=config.SWEEP_INTERVAL_SECONDS
        )
    else:
        logger.warning("Job queue unavailable, periodic sweeps disabled")

    return application


def main():
    try:
        config.validate_config()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    application = build_application()

    if config.WEBHOOK_URL:
        base_url = config.WEBHOOK_URL.rstrip("/")
        url_path = f"webhook/{config.BOT_TOKEN}"
        logger.info(f"Starting guardbot in webhook mode on port {config.PORT}...")
        application.run_webhook(
            listen="0.0.0.0",
            port=config.PORT,
            url_path=url_path,
            webhook_url=f"{base_url}/{url_path}",
            allowed_updates=Update.ALL_TYPES,
        )
    else:
        logger.info("Starting guardbot in polling mode...")
        application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
