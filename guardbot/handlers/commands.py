from __future__ import annotations

import logging

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from config import PRIVILEGED_USER_IDS, STATS_MESSAGE
from guardbot.engine.orchestrator import spam_action_buttons
from guardbot.handlers.messages import GROUP_CHAT_TYPES, event_from_message, member_from_user
from guardbot.services.gateway import build_buttons
from guardbot.services.metrics import stats_summary

logger = logging.getLogger(__name__)


async def report_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Reply to a message with /report to have it removed as spam.
    Usage: /report (as a reply)
    """
    message = update.effective_message
    if not message or message.chat.type not in GROUP_CHAT_TYPES:
        return

    original = message.reply_to_message
    if not original or not original.from_user:
        await message.reply_text("Please reply to the message you want to report, then send /report.")
        return

    orchestrator = context.bot_data["orchestrator"]
    await orchestrator.on_manual_report(
        message.chat_id,
        member_from_user(update.effective_user),
        event_from_message(original),
    )


async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """
    Displays the moderation dashboard for privileged users.
    Triggered by the /stats command.
    """
    if update.effective_user.id not in PRIVILEGED_USER_IDS:
        await update.effective_message.reply_text("⚠️ Admin only command.")
        return

    await update.effective_message.reply_text(STATS_MESSAGE.format(**stats_summary()), parse_mode="Markdown")


def parse_spam_action(data: str):
    """'spam_action:<ban|unban>:<chat>:<user>' -> (action, chat_id, user_id), or None."""
    parts = (data or "").split(":")
    if len(parts) < 4 or parts[0] != "spam_action":
        return None
    try:
        return parts[1], int(parts[2]), int(parts[3])
    except ValueError:
        return None


async def spam_action_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Ban/Unban buttons attached to spam reports."""
    query = update.callback_query
    parsed = parse_spam_action(query.data)
    if parsed is None:
        await query.answer("❌ Invalid moderation action", show_alert=True)
        return

    action, chat_id, user_id = parsed
    gateway = context.bot_data["orchestrator"].gateway
    actor = query.from_user
    if actor.id not in PRIVILEGED_USER_IDS and not await gateway.is_actor_privileged(chat_id, actor.id):
        await query.answer("⚠️ Admins only.", show_alert=True)
        return

    if action == "ban":
        success = await gateway.ban(chat_id, user_id)
        success_text, fail_text = "✅ User banned", "❌ Failed to ban user (check bot admin rights)"
    elif action == "unban":
        success = await gateway.unban(chat_id, user_id)
        success_text, fail_text = "✅ User unbanned", "❌ Failed to unban user (check bot admin rights)"
    else:
        await query.answer("❌ Unsupported action", show_alert=True)
        return

    if success and query.message and query.message.text:
        actor_name = f"@{actor.username}" if actor.username else (actor.first_name or "admin")
        status_line = f"Action: {'banned' if action == 'ban' else 'unbanned'} by {actor_name}"
        text = query.message.text
        if status_line not in text:
            text = f"{text}\n\n{status_line}"
        # After a ban keep an Unban button for quick reversal
        buttons = spam_action_buttons(chat_id, user_id, show_unban=True) if action == "ban" else None
        try:
            await query.edit_message_text(text, reply_markup=build_buttons(buttons))
        except TelegramError as e:
            logger.warning(f"Failed to update spam report message: {e}")

    logger.info(f"Spam report action {action} on {user_id} in {chat_id} by {actor.id}: success={success}")
    await query.answer(success_text if success else fail_text, show_alert=not success)
