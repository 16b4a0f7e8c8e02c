"""
Messaging gateway over python-telegram-bot.

Every Telegram call is wrapped so that a TelegramError (missing rights,
network trouble, user gone) is logged and turned into False/None for the
caller instead of propagating into the moderation pipelines.
"""
from __future__ import annotations

import io
import logging
from typing import List, Optional

from PIL import Image, ImageOps
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ChatMemberStatus
from telegram.error import TelegramError

from guardbot.models import AdminInfo

logger = logging.getLogger(__name__)

PRIVILEGED_STATUSES = (ChatMemberStatus.OWNER, ChatMemberStatus.ADMINISTRATOR)
DHASH_SIZE = 8


def compute_dhash(image_bytes: bytes, hash_size: int = DHASH_SIZE) -> Optional[str]:
    """64-bit difference hash of an image, as 16 hex characters."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        if getattr(img, "is_animated", False):
            img.seek(0)
        img = ImageOps.exif_transpose(img).convert("L")
        img = img.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
    except (OSError, ValueError) as e:
        logger.error(f"Image processing failed: {e}")
        return None

    pixels = list(img.getdata())
    value = 0
    for row in range(hash_size):
        offset = row * (hash_size + 1)
        for col in range(hash_size):
            value = (value << 1) | int(pixels[offset + col] > pixels[offset + col + 1])
    return f"{value:0{hash_size * hash_size // 4}x}"


def build_buttons(buttons) -> Optional[InlineKeyboardMarkup]:
    """[[(label, callback_data), ...], ...] -> InlineKeyboardMarkup."""
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(label, callback_data=data) for label, data in row] for row in buttons]
    )


class TelegramGateway:
    def __init__(self, bot: Bot, classifier=None):
        self.bot = bot
        self.classifier = classifier

    async def list_admins(self, group_id: int) -> List[AdminInfo]:
        try:
            members = await self.bot.get_chat_administrators(group_id)
        except TelegramError as e:
            logger.error(f"Failed to fetch administrators of {group_id}: {e}")
            return []

        admins = []
        for member in members:
            user = member.user
            if user.is_bot:
                continue
            full_name = f"{user.first_name or ''} {user.last_name or ''}".strip()
            admins.append(AdminInfo(
                user_id=user.id,
                full_name=full_name,
                username=user.username.lower() if user.username else None,
            ))
        return admins

    async def get_file_url(self, file_id: str) -> Optional[str]:
        try:
            tg_file = await self.bot.get_file(file_id)
        except TelegramError as e:
            logger.warning(f"Failed to resolve file {file_id}: {e}")
            return None
        return tg_file.file_path

    async def get_avatar_ref(self, user_id: int) -> Optional[str]:
        """URL of the largest size of the user's newest profile photo."""
        try:
            photos = await self.bot.get_user_profile_photos(user_id, limit=1)
        except TelegramError as e:
            logger.warning(f"Failed to fetch profile photos for {user_id}: {e}")
            return None
        if not photos or not photos.photos:
            return None
        return await self.get_file_url(photos.photos[0][-1].file_id)

    async def compare_avatars(self, avatar_ref_a: str, avatar_ref_b: str, actor_id: int) -> Optional[bool]:
        if self.classifier is None:
            return None
        return await self.classifier.compare_avatars(avatar_ref_a, avatar_ref_b, actor_id)

    async def is_actor_privileged(self, group_id: int, actor_id: Optional[int] = None) -> bool:
        """Whether the actor (the bot itself by default) is creator or administrator."""
        if actor_id is None:
            actor_id = self.bot.id
        try:
            member = await self.bot.get_chat_member(group_id, actor_id)
        except TelegramError as e:
            logger.warning(f"Failed to check privileges of {actor_id} in {group_id}: {e}")
            return False
        return member.status in PRIVILEGED_STATUSES

    async def get_member_full_name(self, group_id: int, user_id: int) -> Optional[str]:
        try:
            member = await self.bot.get_chat_member(group_id, user_id)
        except TelegramError as e:
            logger.debug(f"Failed to fetch member {user_id} of {group_id}: {e}")
            return None
        user = member.user
        return f"{user.first_name or ''} {user.last_name or ''}".strip() or None

    async def ban(self, group_id: int, user_id: int) -> bool:
        try:
            await self.bot.ban_chat_member(group_id, user_id)
            return True
        except TelegramError as e:
            logger.error(f"Failed to ban {user_id} in {group_id}: {e}")
            return False

    async def unban(self, group_id: int, user_id: int) -> bool:
        try:
            await self.bot.unban_chat_member(group_id, user_id, only_if_banned=True)
            return True
        except TelegramError as e:
            logger.error(f"Failed to unban {user_id} in {group_id}: {e}")
            return False

    async def kick(self, group_id: int, user_id: int) -> bool:
        """Remove the user but let them rejoin later."""
        if not await self.ban(group_id, user_id):
            return False
        return await self.unban(group_id, user_id)

    async def delete_message(self, group_id: int, message_id: int) -> bool:
        try:
            await self.bot.delete_message(group_id, message_id)
            return True
        except TelegramError as e:
            logger.warning(f"Failed to delete message {message_id} in {group_id}: {e}")
            return False

    async def send_message(self, chat_id: int, text: str, reply_to: Optional[int] = None,
                           buttons=None, parse_mode: Optional[str] = None):
        try:
            return await self.bot.send_message(
                chat_id,
                text,
                reply_to_message_id=reply_to,
                reply_markup=build_buttons(buttons),
                parse_mode=parse_mode,
            )
        except TelegramError as e:
            logger.error(f"Failed to send message to {chat_id}: {e}")
            return None

    async def forward_message(self, chat_id: int, from_chat_id: int, message_id: int) -> bool:
        try:
            await self.bot.forward_message(chat_id, from_chat_id, message_id)
            return True
        except TelegramError as e:
            logger.warning(f"Failed to forward message {message_id} from {from_chat_id}: {e}")
            return False

    async def fingerprint_image(self, file_id: str) -> Optional[str]:
        try:
            tg_file = await self.bot.get_file(file_id)
            data = await tg_file.download_as_bytearray()
        except TelegramError as e:
            logger.warning(f"Failed to download image {file_id}: {e}")
            return None
        return compute_dhash(bytes(data))
