from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from telegram import Message, Update, User
from telegram.constants import ChatType
from telegram.ext import ContextTypes

from guardbot.models import MemberInfo, MessageEvent

logger = logging.getLogger(__name__)


_processed_messages = {}
_MESSAGE_DEDUP_WINDOW = 300  # seconds

GROUP_CHAT_TYPES = (ChatType.GROUP, ChatType.SUPERGROUP)


def member_from_user(user: User) -> MemberInfo:
    return MemberInfo(
        user_id=user.id,
        first_name=user.first_name or "",
        last_name=user.last_name or "",
        username=user.username,
        is_bot=bool(user.is_bot),
    )


def event_from_message(message: Message, sender: Optional[User] = None) -> MessageEvent:
    sender = sender or message.from_user
    image_file_ids = []
    if message.photo:
        image_file_ids.append(message.photo[-1].file_id)
    elif message.document and (message.document.mime_type or "").startswith("image/"):
        image_file_ids.append(message.document.file_id)

    return MessageEvent(
        group_id=message.chat_id,
        message_id=message.message_id,
        sender=member_from_user(sender),
        text=message.text or message.caption or "",
        group_title=message.chat.title or "",
        image_file_ids=image_file_ids,
    )


def is_duplicate_update(chat_id: int, message_id: int, now: Optional[float] = None) -> bool:
    """Remember (chat, message) pairs for a few minutes and report repeats."""
    now = datetime.now().timestamp() if now is None else now
    for key, ts in list(_processed_messages.items()):
        if now - ts > _MESSAGE_DEDUP_WINDOW:
            _processed_messages.pop(key, None)
    key = (chat_id, message_id)
    if key in _processed_messages:
        return True
    _processed_messages[key] = now
    return False


async def handle_group_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Feed group text, captions and photos to the moderation pipelines."""
    message = update.effective_message
    user = update.effective_user
    if not message or not user or message.chat.type not in GROUP_CHAT_TYPES:
        return
    if is_duplicate_update(message.chat_id, message.message_id):
        logger.debug(f"Duplicate update for message {message.message_id} in {message.chat_id}, ignored")
        return

    # Failures propagate to the application error handler
    orchestrator = context.bot_data["orchestrator"]
    await orchestrator.on_message(event_from_message(message, user))


async def handle_new_members(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.effective_message
    if not message or not message.new_chat_members:
        return

    members = [member_from_user(user) for user in message.new_chat_members]
    orchestrator = context.bot_data["orchestrator"]
    rejected = await orchestrator.on_members_joined(message.chat_id, members, join_message_id=message.message_id)
    if rejected:
        logger.info(f"Rejected {rejected} of {len(members)} new member(s) in {message.chat_id}")
