"""
Moderation policies.
Pure functions only: no IO, no clock reads, no configuration lookups.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from guardbot.models import AdminInfo

WARN = "warn"
KICK = "kick"

_LATIN_LETTER = re.compile(r"[A-Za-z]")


# ============================================================================
# SPAM POLICY
# ============================================================================

def contains_relevant_keywords(text: str, relevant_keywords: Optional[Iterable[str]]) -> bool:
    """Case-insensitive substring match against the allowlisted keywords."""
    text_lower = (text or "").lower()
    return any(str(keyword).lower() in text_lower for keyword in (relevant_keywords or []) if keyword)


def calculate_spam_score(deviation: float, suspicion: float, inducement: float) -> float:
    return float(deviation or 0) + float(suspicion or 0) + float(inducement or 0)


def count_words(text: str) -> int:
    return len((text or "").split())


def is_spam_message(
    spam_flag: bool,
    score: float,
    spam_threshold: float,
    text: str,
    relevant_keywords: Optional[Iterable[str]] = None,
    min_word_count: int = 1,
) -> bool:
    """
    Fuse the classifier output with local heuristics.

    Spam only when the classifier flag is set, the score is strictly above
    the threshold, the message is long enough and it mentions none of the
    relevant keywords. A keyword hit always wins.
    """
    if spam_flag is not True:
        return False
    if not score > spam_threshold:
        return False
    if count_words(text) < min_word_count:
        return False
    return not contains_relevant_keywords(text, relevant_keywords)


def decide_secondary_spam_check(is_primary_spam: bool) -> bool:
    return bool(is_primary_spam)


def decide_disciplinary_action(offense_count_in_window: int) -> str:
    """First offense in the window is a warning (kick + unban), anything after is a ban."""
    return WARN if offense_count_in_window == 1 else KICK


def looks_non_english(text: str, min_letters: int = 3) -> bool:
    """Cheap language heuristic: most letters are outside the Latin alphabet."""
    letters = [ch for ch in (text or "") if ch.isalpha()]
    if len(letters) < min_letters:
        return False
    latin = sum(1 for ch in letters if _LATIN_LETTER.match(ch))
    return latin / len(letters) < 0.5


# ============================================================================
# IMPERSONATION POLICY
# ============================================================================

def is_display_name_empty(name: Optional[str]) -> bool:
    return not name or not "".join(name.split())


def is_potential_name_impersonation(
    subject_full_name: Optional[str],
    subject_user_id: int,
    subject_username: Optional[str],
    admin_full_name: Optional[str],
    admin_user_id: int,
    admin_username: Optional[str],
) -> bool:
    if is_display_name_empty(subject_full_name) or is_display_name_empty(admin_full_name):
        return False
    if subject_full_name != admin_full_name:
        return False
    if subject_user_id == admin_user_id:
        return False

    subject_handle = subject_username.lower() if subject_username else None
    admin_handle = admin_username.lower() if admin_username else None
    if subject_handle and admin_handle and subject_handle == admin_handle:
        # Same person, not impersonation
        return False
    return True


def is_admin_name_collision(subject_full_name: str, subject_user_id: int,
                            subject_username: Optional[str], admin: AdminInfo) -> bool:
    return is_potential_name_impersonation(
        subject_full_name, subject_user_id, subject_username,
        admin.full_name, admin.user_id, admin.username,
    )


def decide_after_avatar_check(avatars_similar: bool) -> dict:
    if avatars_similar:
        return {"is_impersonation": True, "add_to_whitelist": False}
    return {"is_impersonation": False, "add_to_whitelist": True}


def is_whitelist_valid(entry_timestamp: Optional[float], now: float, ttl: float) -> bool:
    if entry_timestamp is None:
        return False
    return (now - entry_timestamp) < ttl
