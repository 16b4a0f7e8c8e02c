"""
Moderation orchestrator.

Sequences the trackers, caches and policies for every inbound group event
and issues the final action through the messaging gateway. Spam and
impersonation run as independent pipelines over the same message; a failure
in one is logged and never stops the other.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Tuple

import config
from guardbot.engine.policies import (
    KICK,
    WARN,
    calculate_spam_score,
    decide_disciplinary_action,
    decide_secondary_spam_check,
    is_spam_message,
    looks_non_english,
)
from guardbot.models import ImpersonationResult, MemberInfo, MessageEvent, SpamOutcome
from guardbot.services.impersonation import ImpersonationCache, check_impersonation
from guardbot.services.metrics import record_spam_removed, stats, touch_group
from guardbot.services.offenses import OffenseTracker
from guardbot.services.rate_limiter import RateLimiter
from guardbot.services.shield import FloodShield
from guardbot.services.similarity_cache import SpamImageCache, SpamTextCache
from guardbot.services.trust import TrustTracker
from guardbot.storage import TrackerStore

logger = logging.getLogger(__name__)


def spam_action_buttons(group_id: int, user_id: int, show_ban: bool = False, show_unban: bool = False):
    row = []
    if show_ban:
        row.append(("🚫 Ban", f"spam_action:ban:{group_id}:{user_id}"))
    if show_unban:
        row.append(("♻️ Unban", f"spam_action:unban:{group_id}:{user_id}"))
    return [row] if row else None


class ModerationOrchestrator:
    def __init__(
        self,
        gateway,
        classifier,
        rate_limiter: RateLimiter,
        text_cache: SpamTextCache,
        image_cache: SpamImageCache,
        trust: TrustTracker,
        offenses: OffenseTracker,
        impersonation: ImpersonationCache,
        shield: FloodShield,
        spam_threshold: float,
        relevant_keywords: Iterable[str] = (),
        min_word_count: int = 1,
        username_length_threshold: int = 30,
        similarity_threshold: float = 95.0,
        privileged_user_ids: Iterable[int] = (),
        translation_group_ids: Iterable[int] = (),
        notification_chat_id: Optional[int] = None,
        analysis_timeout: float = 30.0,
        secondary_timeout: float = 30.0,
        avatar_timeout: float = 30.0,
        translation_timeout: float = 5.0,
    ):
        self.gateway = gateway
        self.classifier = classifier
        self.rate_limiter = rate_limiter
        self.text_cache = text_cache
        self.image_cache = image_cache
        self.trust = trust
        self.offenses = offenses
        self.impersonation = impersonation
        self.shield = shield

        self.spam_threshold = spam_threshold
        self.relevant_keywords = list(relevant_keywords)
        self.min_word_count = min_word_count
        self.username_length_threshold = username_length_threshold
        self.similarity_threshold = similarity_threshold
        self.privileged_user_ids = set(privileged_user_ids)
        self.translation_group_ids = set(translation_group_ids)
        self.notification_chat_id = notification_chat_id

        self.analysis_timeout = analysis_timeout
        self.secondary_timeout = secondary_timeout
        self.avatar_timeout = avatar_timeout
        self.translation_timeout = translation_timeout

        self._subject_locks: Dict[Tuple[int, int], asyncio.Lock] = {}
        self._subject_waiters: Dict[Tuple[int, int], int] = {}

    # ==================== Entry points ====================

    async def on_message(self, event: MessageEvent, now: Optional[float] = None):
        """Run the spam and impersonation pipelines for one group message."""
        touch_group(event.group_id)
        spam_outcome, impersonation_result = await asyncio.gather(
            self._guarded(self.process_spam(event, now), "spam"),
            self._guarded(self.process_impersonation(event, now), "impersonation"),
        )
        return spam_outcome, impersonation_result

    async def on_members_joined(self, group_id: int, members: List[MemberInfo],
                                join_message_id: Optional[int] = None, now: Optional[float] = None) -> int:
        """Shield check and display-name screening for a join batch. Returns how many joiners were removed."""
        if not members:
            return 0
        touch_group(group_id)
        try:
            if self.shield.record_joins(group_id, len(members), now):
                return await self._reject_joiners(group_id, members)

            rejected = 0
            for member in members:
                if await self._screen_display_name(group_id, member, join_message_id):
                    rejected += 1
            return rejected
        except Exception as e:
            logger.error(f"Join pipeline failed for chat {group_id}: {e}", exc_info=True)
            return 0

    async def on_manual_report(self, group_id: int, reporter: MemberInfo, reported: MessageEvent,
                               now: Optional[float] = None) -> bool:
        """A member replied /report to a message: remove it and remember it as spam."""
        if not await self.gateway.is_actor_privileged(group_id):
            await self.gateway.send_message(
                group_id, "I need admin rights to delete messages. Please make me an admin first."
            )
            return False

        if self.notification_chat_id:
            await self.gateway.forward_message(self.notification_chat_id, group_id, reported.message_id)
        await self.gateway.delete_message(group_id, reported.message_id)

        if reported.text:
            self.text_cache.add_spam_message(reported.text)
        for fingerprint in await self._fingerprints(reported):
            self.image_cache.add_spam_image(fingerprint, group_id, reported.message_id)
        self.trust.reset_streak(group_id, reported.sender.user_id, now)
        record_spam_removed()

        await self.gateway.send_message(group_id, config.REPORT_THANKS_MESSAGE.format(reporter=reporter.mention))
        await self._notify(
            f"Reported message from {reported.sender.mention} deleted in \"{reported.group_title or group_id}\", "
            f"report by {reporter.mention}"
        )
        logger.info(f"Manual report handled in {group_id}: message {reported.message_id} by {reporter.user_id}")
        return True

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        now = time.time() if now is None else now
        result = {
            "trust": self.trust.sweep(now),
            "offenses": self.offenses.sweep(now),
            "impersonation": self.impersonation.sweep(now),
            "shield": self.shield.sweep(now),
            "rate_limiter": self.rate_limiter.sweep(now),
        }
        logger.debug(f"Sweep finished: {result}")
        return result

    # ==================== Spam pipeline ====================

    async def process_spam(self, event: MessageEvent, now: Optional[float] = None) -> SpamOutcome:
        if event.sender.is_bot or (not event.text.strip() and not event.image_file_ids):
            return SpamOutcome(verdict="skipped")

        async with self._subject_lock(event.group_id, event.sender.user_id):
            return await self._process_spam_locked(event, now)

    async def _process_spam_locked(self, event: MessageEvent, now: Optional[float]) -> SpamOutcome:
        group_id = event.group_id
        user_id = event.sender.user_id
        text = event.text.strip()
        stats["checked"] += 1

        if self.trust.is_trusted(group_id, user_id):
            stats["trusted_skips"] += 1
            logger.debug(f"Trusted user {user_id} in {group_id}, skipping classification")
            if text and looks_non_english(text):
                await self._maybe_translate(event)
            return SpamOutcome(verdict="trusted")

        fingerprints = await self._fingerprints(event)
        text_hit = bool(text) and self.text_cache.is_similar_to_spam(text, self.similarity_threshold)
        image_hit = any(self.image_cache.is_spam_image(fp) for fp in fingerprints)
        if text_hit or image_hit:
            stats["similarity_hits"] += 1
            logger.info(f"Message from {user_id} in {group_id} matches cached spam (text={text_hit}, image={image_hit})")
            return await self._handle_confirmed_spam(event, fingerprints, "similar", now, remember_text=not text_hit)

        if not text:
            return SpamOutcome(verdict="skipped")

        limit = self.rate_limiter.check_and_consume(
            user_id, bypass=user_id in self.privileged_user_ids, now=now
        )
        if not limit.allowed:
            stats["rate_limited"] += 1
            logger.debug(f"Classification for {user_id} rate limited ({limit.reason})")
            return SpamOutcome(verdict="rate_limited")

        verdict = await self._classify(event)
        if verdict is None:
            logger.info(f"No analysis result for message {event.message_id} in {group_id}, skipping")
            return SpamOutcome(verdict="inconclusive")

        score = calculate_spam_score(verdict.deviation, verdict.suspicion, verdict.inducement)
        primary_spam = is_spam_message(
            verdict.spam, score, self.spam_threshold, text, self.relevant_keywords, self.min_word_count
        )

        secondary_checked = False
        if decide_secondary_spam_check(primary_spam):
            secondary_checked = True
            confirmed = await self._call_gated(
                lambda: self.classifier.secondary_check(text, user_id), self.secondary_timeout, "secondary check"
            )
            if confirmed is True:
                return await self._handle_confirmed_spam(
                    event, fingerprints, "spam", now, secondary_checked=True
                )
            if confirmed is None:
                return SpamOutcome(verdict="inconclusive", secondary_checked=True)

        self.trust.record_normal_message(group_id, user_id, now)
        if verdict.is_english is False:
            await self._maybe_translate(event)
        return SpamOutcome(verdict="clean", secondary_checked=secondary_checked)

    async def _classify(self, event: MessageEvent):
        user_id = event.sender.user_id
        if event.image_file_ids:
            urls = [url for url in [await self.gateway.get_file_url(f) for f in event.image_file_ids] if url]
            if urls:
                return await self._call_gated(
                    lambda: self.classifier.analyze_with_images(event.text, urls, user_id),
                    self.analysis_timeout, "image analysis",
                )
        return await self._call_gated(
            lambda: self.classifier.analyze(event.text, user_id), self.analysis_timeout, "message analysis"
        )

    async def _call_gated(self, make_call, timeout: float, label: str):
        """Run a classifier call through the bounded queue. Timeouts and failures give None."""
        try:
            return await self.rate_limiter.enqueue(lambda: asyncio.wait_for(make_call(), timeout=timeout))
        except asyncio.TimeoutError:
            logger.warning(f"{label} timed out after {timeout:g}s")
        except Exception as e:
            logger.error(f"{label} failed: {e}")
        return None

    async def _handle_confirmed_spam(self, event: MessageEvent, fingerprints: List[str], verdict: str,
                                     now: Optional[float], secondary_checked: bool = False,
                                     remember_text: bool = True) -> SpamOutcome:
        group_id = event.group_id
        sender = event.sender
        text = event.text.strip()

        if text and remember_text:
            self.text_cache.add_spam_message(text)
        for fingerprint in fingerprints:
            self.image_cache.add_spam_image(fingerprint, group_id, event.message_id)

        if self.notification_chat_id:
            await self._notify(f"Spam detected from {sender.mention} in \"{event.group_title or group_id}\"")
            await self.gateway.forward_message(self.notification_chat_id, group_id, event.message_id)

        if await self.gateway.is_actor_privileged(group_id, sender.user_id):
            logger.info(f"Spam-like message from admin {sender.user_id} in {group_id}, no action taken")
            return SpamOutcome(verdict=verdict, secondary_checked=secondary_checked)

        self.trust.reset_streak(group_id, sender.user_id, now)
        record = self.offenses.record_offense(sender.user_id, now)
        action = decide_disciplinary_action(record.count)
        outcome = SpamOutcome(
            verdict=verdict, action=action, offense_count=record.count, secondary_checked=secondary_checked
        )

        if not await self.gateway.is_actor_privileged(group_id):
            logger.warning(f"Cannot act on spam from {sender.user_id} in {group_id}: bot lacks admin rights")
            await self.gateway.send_message(group_id, config.ENFORCEMENT_FAILED_MESSAGE.format(user=sender.mention))
            await self._notify(
                f"Spam detected in \"{event.group_title or group_id}\" - cannot act on {sender.mention}, "
                f"bot is not an admin ({record.count} spam message(s) in window)"
            )
            return outcome

        await self.gateway.delete_message(group_id, event.message_id)
        record_spam_removed()

        if action == WARN:
            outcome.enforced = await self.gateway.kick(group_id, sender.user_id)
            await self.gateway.send_message(group_id, config.WARNING_MESSAGE.format(user=sender.mention))
            stats["warned"] += 1
            action_taken = f"warned and removed {sender.mention} (first spam offense)"
            buttons = spam_action_buttons(group_id, sender.user_id, show_ban=True)
        else:
            outcome.enforced = await self.gateway.ban(group_id, sender.user_id)
            if outcome.enforced:
                await self.gateway.send_message(group_id, config.KICK_MESSAGE.format(user=sender.mention))
                stats["kicked"] += 1
                action_taken = f"banned {sender.mention} ({record.count} spam messages in window)"
            else:
                action_taken = f"cannot ban {sender.mention} ({record.count} spam messages in window)"
            buttons = spam_action_buttons(group_id, sender.user_id, show_unban=outcome.enforced)

        logger.info(f"Spam from {sender.user_id} in {group_id}: {action} (offense #{record.count})")
        await self._notify(f"Spam detected in \"{event.group_title or group_id}\" - {action_taken}", buttons)
        return outcome

    async def _fingerprints(self, event: MessageEvent) -> List[str]:
        fingerprints = []
        for file_id in event.image_file_ids:
            fingerprint = await self.gateway.fingerprint_image(file_id)
            if fingerprint:
                fingerprints.append(fingerprint)
        return fingerprints

    async def _maybe_translate(self, event: MessageEvent) -> None:
        if event.group_id not in self.translation_group_ids:
            return
        try:
            translated = await asyncio.wait_for(
                self.classifier.translate(event.text, event.sender.user_id), timeout=self.translation_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Translation of message {event.message_id} timed out")
            return
        if translated:
            await self.gateway.send_message(
                event.group_id, f"🔄 Translation: {translated}", reply_to=event.message_id
            )

    # ==================== Impersonation pipeline ====================

    async def process_impersonation(self, event: MessageEvent, now: Optional[float] = None) -> ImpersonationResult:
        sender = event.sender
        if sender.is_bot:
            return ImpersonationResult(is_impersonation=False)

        result = await check_impersonation(
            self.impersonation, self.gateway, event.group_id, sender, self.avatar_timeout, now
        )
        if result.is_impersonation:
            await self._remove_impersonator(event, result)
        return result

    async def _remove_impersonator(self, event: MessageEvent, result: ImpersonationResult) -> bool:
        group_id = event.group_id
        sender = event.sender
        admin = result.impersonated_admin
        admin_ref = f"@{admin.username}" if admin.username else f"ID: {admin.user_id}"

        if not await self.gateway.ban(group_id, sender.user_id):
            await self.gateway.send_message(
                group_id,
                config.IMPERSONATION_FAILED_MESSAGE.format(user=sender.mention, admin_name=admin.full_name, admin=admin_ref),
            )
            return False

        await self.gateway.delete_message(group_id, event.message_id)
        stats["impersonators"] += 1
        await self.gateway.send_message(
            group_id,
            config.IMPERSONATION_MESSAGE.format(user=sender.mention, admin_name=admin.full_name, admin=admin_ref),
        )
        await self._notify(
            "🚨 Impersonation Detected\n\n"
            f"Group: {event.group_title or group_id}\n"
            f"Impersonator: {sender.mention} (ID: {sender.user_id})\n"
            f"Display Name: \"{result.impersonator_display_name}\"\n"
            f"Impersonated Admin: \"{admin.full_name}\" ({admin_ref})\n"
            "Action: User banned and message deleted",
            spam_action_buttons(group_id, sender.user_id, show_unban=True),
        )
        logger.info(f"Impersonator {sender.user_id} removed from {group_id}")
        return True

    # ==================== Join pipeline ====================

    async def _reject_joiners(self, group_id: int, members: List[MemberInfo]) -> int:
        logger.warning(f"Shield active: rejecting {len(members)} new member(s) in {group_id}")
        rejected = 0
        for member in members:
            if await self.gateway.kick(group_id, member.user_id):
                rejected += 1
        stats["joins_rejected"] += rejected
        return rejected

    async def _screen_display_name(self, group_id: int, member: MemberInfo,
                                   join_message_id: Optional[int]) -> bool:
        if member.is_bot:
            return False
        display_name = member.display_name
        if len(display_name) < self.username_length_threshold:
            return False

        query = f"New user joined with display name: \"{display_name}\""
        logger.info(f"Checking long display name of new member {member.user_id}: \"{display_name}\"")
        verdict = await self._call_gated(
            lambda: self.classifier.analyze(query, member.user_id), self.analysis_timeout, "display name check"
        )
        if verdict is None:
            return False

        score = calculate_spam_score(verdict.deviation, verdict.suspicion, verdict.inducement)
        if not is_spam_message(verdict.spam, score, self.spam_threshold, query,
                               self.relevant_keywords, self.min_word_count):
            return False

        if not await self.gateway.kick(group_id, member.user_id):
            return False
        if join_message_id:
            await self.gateway.delete_message(group_id, join_message_id)
        stats["joins_rejected"] += 1

        user_ref = f"@{member.username}" if member.username else f"User (ID: {member.user_id})"
        await self.gateway.send_message(group_id, config.SUSPICIOUS_NAME_MESSAGE.format(user=user_ref))
        await self._notify(
            "🚨 Suspicious Display Name Detected (New Member)\n\n"
            f"Chat ID: {group_id}\n"
            f"User: {user_ref} (ID: {member.user_id})\n"
            f"Display Name: \"{display_name}\"\n"
            f"Name Length: {len(display_name)} characters\n"
            "Action: New member kicked from group"
        )
        logger.info(f"New member {member.user_id} kicked from {group_id} for suspicious display name")
        return True

    # ==================== Helpers ====================

    async def _notify(self, text: str, buttons=None) -> None:
        if self.notification_chat_id:
            await self.gateway.send_message(self.notification_chat_id, text, buttons=buttons)

    async def _guarded(self, coro, label: str):
        try:
            return await coro
        except Exception as e:
            logger.error(f"{label} pipeline failed: {e}", exc_info=True)
            return None

    @asynccontextmanager
    async def _subject_lock(self, group_id: int, user_id: int):
        key = (group_id, user_id)
        lock = self._subject_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[key] = lock
        self._subject_waiters[key] = self._subject_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._subject_waiters[key] -= 1
            if self._subject_waiters[key] == 0:
                del self._subject_waiters[key]
                del self._subject_locks[key]


def create_orchestrator(gateway, classifier, store: Optional[TrackerStore] = None) -> ModerationOrchestrator:
    """Wire every component from the settings in config.py."""
    if store is not None:
        store.init_db()
    return ModerationOrchestrator(
        gateway=gateway,
        classifier=classifier,
        rate_limiter=RateLimiter(
            concurrency=config.GLOBAL_CONCURRENCY,
            request_interval=config.REQUEST_INTERVAL_SECONDS,
            daily_limit=config.DAILY_LIMIT,
            daily_window=config.DAILY_WINDOW_SECONDS,
        ),
        text_cache=SpamTextCache(config.SIMILARITY_CACHE_SIZE, config.SIMILARITY_THRESHOLD),
        image_cache=SpamImageCache(config.SIMILARITY_CACHE_SIZE, config.IMAGE_HASH_MAX_DISTANCE),
        trust=TrustTracker(config.NORMAL_STREAK_THRESHOLD, config.TRUST_RECORD_TTL_SECONDS, store),
        offenses=OffenseTracker(config.OFFENSE_WINDOW_SECONDS, store),
        impersonation=ImpersonationCache(config.ADMIN_CACHE_TTL_SECONDS, config.WHITELIST_TTL_SECONDS),
        shield=FloodShield(
            config.SHIELD_JOIN_THRESHOLD, config.SHIELD_JOIN_WINDOW_SECONDS, config.SHIELD_IDLE_RESET_SECONDS
        ),
        spam_threshold=config.SPAM_THRESHOLD,
        relevant_keywords=config.RELEVANT_KEYWORDS,
        min_word_count=config.MIN_WORD_COUNT,
        username_length_threshold=config.USERNAME_LENGTH_THRESHOLD,
        similarity_threshold=config.SIMILARITY_THRESHOLD,
        privileged_user_ids=config.PRIVILEGED_USER_IDS,
        translation_group_ids=config.TRANSLATION_GROUP_IDS,
        notification_chat_id=config.NOTIFICATION_CHAT_ID,
        analysis_timeout=config.ANALYSIS_TIMEOUT_SECONDS,
        secondary_timeout=config.SECONDARY_TIMEOUT_SECONDS,
        avatar_timeout=config.AVATAR_TIMEOUT_SECONDS,
        translation_timeout=config.TRANSLATION_TIMEOUT_SECONDS,
    )
