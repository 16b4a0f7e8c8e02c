"""
Admin-impersonation detection.

Keeps a lazily refreshed admin roster per group and a short-lived whitelist of
users who share an admin's display name but were cleared by avatar comparison.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from guardbot.engine.policies import (
    decide_after_avatar_check,
    is_admin_name_collision,
    is_display_name_empty,
    is_whitelist_valid,
)
from guardbot.models import AdminCacheEntry, AdminInfo, ImpersonationResult, MemberInfo, WhitelistEntry

logger = logging.getLogger(__name__)


class ImpersonationCache:
    def __init__(self, admin_ttl: float, whitelist_ttl: float):
        self.admin_ttl = admin_ttl
        self.whitelist_ttl = whitelist_ttl
        self._admins: Dict[int, AdminCacheEntry] = {}
        self._whitelist: Dict[Tuple[int, int], WhitelistEntry] = {}

    # ==================== Admin roster ====================

    def get_cached_admins(self, group_id: int, now: Optional[float] = None) -> Optional[List[AdminInfo]]:
        """Admins for the group while the cache is fresh, else None."""
        now = time.time() if now is None else now
        entry = self._admins.get(group_id)
        if entry is not None and now - entry.cached_at < self.admin_ttl:
            return entry.admins
        return None

    def set_cached_admins(self, group_id: int, admins: List[AdminInfo], now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self._admins[group_id] = AdminCacheEntry(admins=list(admins), cached_at=now)
        logger.info(f"Admin cache updated: group {group_id} ({len(admins)} admins)")

    async def ensure_admin_cache(self, group_id: int, gateway, now: Optional[float] = None) -> bool:
        """
        Refresh the group's admin roster if it is missing or stale.

        An empty or failed fetch never replaces cached data and reports False,
        so a transient API glitch cannot silently switch protection off.
        """
        now = time.time() if now is None else now
        if self.get_cached_admins(group_id, now) is not None:
            return True

        try:
            admins = await gateway.list_admins(group_id)
        except Exception as e:
            logger.error(f"Failed to fetch admins for group {group_id}: {e}")
            admins = []

        if not admins:
            logger.warning(f"Admin list for group {group_id} came back empty, skipping impersonation check")
            return False

        self.set_cached_admins(group_id, admins, now)
        return True

    def get_stored_admins(self, group_id: int) -> List[AdminInfo]:
        entry = self._admins.get(group_id)
        return list(entry.admins) if entry else []

    # ==================== Whitelist ====================

    def is_whitelisted(self, group_id: int, user_id: int, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        key = (group_id, user_id)
        entry = self._whitelist.get(key)
        if entry is None:
            return False
        if is_whitelist_valid(entry.timestamp, now, self.whitelist_ttl):
            return True
        del self._whitelist[key]
        return False

    def add_to_whitelist(self, group_id: int, user_id: int, reason: str = "avatar_check_passed",
                         now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        self._whitelist[(group_id, user_id)] = WhitelistEntry(reason=reason, timestamp=now)
        logger.info(f"User added to whitelist: {group_id}_{user_id} (reason: {reason})")

    def get_whitelist_stats(self, now: Optional[float] = None) -> dict:
        now = time.time() if now is None else now
        return {
            "total_users": len(self._whitelist),
            "users": [
                {
                    "key": f"{group_id}_{user_id}",
                    "reason": entry.reason,
                    "timestamp": entry.timestamp,
                    "age": now - entry.timestamp,
                }
                for (group_id, user_id), entry in self._whitelist.items()
            ],
        }

    # ==================== Housekeeping ====================

    def sweep(self, now: float) -> int:
        expired_groups = [group_id for group_id, entry in self._admins.items()
                          if now - entry.cached_at > self.admin_ttl]
        for group_id in expired_groups:
            del self._admins[group_id]
            logger.debug(f"Cleaned expired admin cache: group {group_id}")

        expired_users = [key for key, entry in self._whitelist.items()
                         if now - entry.timestamp > self.whitelist_ttl]
        for key in expired_users:
            del self._whitelist[key]
            logger.debug(f"Cleaned expired whitelist entry: {key[0]}_{key[1]}")

        return len(expired_groups) + len(expired_users)


async def _with_timeout(coro, timeout: Optional[float]):
    if timeout is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout)


async def check_impersonation(
    cache: ImpersonationCache,
    gateway,
    group_id: int,
    subject: MemberInfo,
    avatar_timeout: Optional[float] = None,
    now: Optional[float] = None,
) -> ImpersonationResult:
    """Name collision with an admin, confirmed by avatar similarity."""
    now = time.time() if now is None else now

    if cache.is_whitelisted(group_id, subject.user_id, now):
        logger.debug(f"User {subject.user_id} is whitelisted in {group_id}, skipping impersonation check")
        return ImpersonationResult(is_impersonation=False, in_whitelist=True)

    if not await cache.ensure_admin_cache(group_id, gateway, now):
        return ImpersonationResult(is_impersonation=False)

    full_name = subject.full_name
    if is_display_name_empty(full_name):
        # Message payloads sometimes omit the name, ask for the member record
        try:
            full_name = (await gateway.get_member_full_name(group_id, subject.user_id)) or ""
        except Exception as e:
            logger.debug(f"Could not fetch member name for {subject.user_id}: {e}")
            full_name = ""
    if is_display_name_empty(full_name):
        return ImpersonationResult(is_impersonation=False)

    for admin in cache.get_cached_admins(group_id, now) or []:
        if not is_admin_name_collision(full_name, subject.user_id, subject.username, admin):
            continue

        logger.info(
            f"Display name match, comparing avatars: {subject.mention} vs admin \"{admin.full_name}\""
        )
        try:
            subject_avatar = await _with_timeout(gateway.get_avatar_ref(subject.user_id), avatar_timeout)
            admin_avatar = await _with_timeout(gateway.get_avatar_ref(admin.user_id), avatar_timeout)
        except Exception as e:
            logger.warning(f"Avatar lookup failed for {subject.user_id}/{admin.user_id}: {e}")
            continue

        if not subject_avatar or not admin_avatar:
            logger.info(
                f"Avatar unavailable, skipping comparison: user={bool(subject_avatar)}, admin={bool(admin_avatar)}"
            )
            continue

        try:
            avatars_similar = await _with_timeout(
                gateway.compare_avatars(subject_avatar, admin_avatar, subject.user_id), avatar_timeout
            )
        except Exception as e:
            logger.warning(f"Avatar comparison failed for {subject.user_id}: {e}")
            continue
        if avatars_similar is None:
            logger.info(f"No avatar verdict for {subject.user_id} vs admin {admin.user_id}, pair skipped")
            continue

        decision = decide_after_avatar_check(bool(avatars_similar))
        if decision["is_impersonation"]:
            logger.warning(
                f"Avatar similarity confirms impersonation: {subject.mention} impersonating \"{admin.full_name}\""
            )
            return ImpersonationResult(
                is_impersonation=True,
                impersonated_admin=admin,
                impersonator_display_name=full_name,
                avatar_comparison=True,
            )

        logger.info(f"Avatars differ, not impersonation: {subject.mention} vs admin \"{admin.full_name}\"")
        if decision["add_to_whitelist"]:
            cache.add_to_whitelist(group_id, subject.user_id, "avatar_check_passed", now)
        return ImpersonationResult(
            is_impersonation=False,
            avatar_comparison=False,
            added_to_whitelist=decision["add_to_whitelist"],
        )

    return ImpersonationResult(is_impersonation=False)
