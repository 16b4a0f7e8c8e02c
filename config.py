"""
Configuration for the guardbot moderation engine.
All values come from environment variables (or a local .env file).
"""
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_id_list(name: str) -> List[int]:
    ids = []
    for item in _env_list(name):
        try:
            ids.append(int(item))
        except ValueError:
            raise ValueError(f"{name} must be a comma separated list of ids, got {item!r}")
    return ids


# Bot Configuration
BOT_TOKEN = os.getenv("BOT_TOKEN")
WEBHOOK_URL = os.getenv("WEBHOOK_URL")
PORT = _env_int("PORT", 5000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Where spam/impersonation reports are sent (optional)
NOTIFICATION_CHAT_ID = _env_int("NOTIFICATION_CHAT_ID", None)

# Users that bypass the classification rate limiter and may use /stats
PRIVILEGED_USER_IDS = _env_id_list("PRIVILEGED_USER_IDS")

# Groups where non-English messages get a translation reply
TRANSLATION_GROUP_IDS = _env_id_list("TRANSLATION_GROUP_IDS")

# Classifier service
CLASSIFIER_API_ENDPOINT = os.getenv("CLASSIFIER_API_ENDPOINT", "")
ANALYSIS_API_KEY = os.getenv("ANALYSIS_API_KEY", "")
ANALYSIS_API_KEY_BACKUP = os.getenv("ANALYSIS_API_KEY_BACKUP", "")
SECONDARY_API_KEY = os.getenv("SECONDARY_API_KEY", "")
SECONDARY_API_KEY_BACKUP = os.getenv("SECONDARY_API_KEY_BACKUP", "")
TRANSLATION_API_KEY = os.getenv("TRANSLATION_API_KEY", "")

ANALYSIS_TIMEOUT_SECONDS = _env_float("ANALYSIS_TIMEOUT_SECONDS", 30.0)
SECONDARY_TIMEOUT_SECONDS = _env_float("SECONDARY_TIMEOUT_SECONDS", 30.0)
AVATAR_TIMEOUT_SECONDS = _env_float("AVATAR_TIMEOUT_SECONDS", 30.0)
TRANSLATION_TIMEOUT_SECONDS = _env_float("TRANSLATION_TIMEOUT_SECONDS", 5.0)

# Rate limiting / concurrency for classifier calls
GLOBAL_CONCURRENCY = _env_int("GLOBAL_CONCURRENCY", 20)
REQUEST_INTERVAL_SECONDS = _env_float("REQUEST_INTERVAL_SECONDS", 10.0)
DAILY_LIMIT = _env_int("DAILY_LIMIT", 10)
DAILY_WINDOW_SECONDS = _env_float("DAILY_WINDOW_SECONDS", 24 * 60 * 60.0)

# Spam decision
SPAM_THRESHOLD = _env_float("SPAM_THRESHOLD", None)
MIN_WORD_COUNT = _env_int("MIN_WORD_COUNT", 1)
RELEVANT_KEYWORDS = _env_list("RELEVANT_KEYWORDS")
USERNAME_LENGTH_THRESHOLD = _env_int("USERNAME_LENGTH_THRESHOLD", 30)

# Similarity cache
SIMILARITY_THRESHOLD = _env_float("SIMILARITY_THRESHOLD", 95.0)
SIMILARITY_CACHE_SIZE = _env_int("SIMILARITY_CACHE_SIZE", 200)
IMAGE_HASH_MAX_DISTANCE = _env_int("IMAGE_HASH_MAX_DISTANCE", 6)

# Impersonation
ADMIN_CACHE_TTL_SECONDS = _env_float("ADMIN_CACHE_TTL_SECONDS", 60 * 60.0)
WHITELIST_TTL_SECONDS = _env_float("WHITELIST_TTL_SECONDS", 24 * 60 * 60.0)

# Trust / offenses
NORMAL_STREAK_THRESHOLD = _env_int("NORMAL_STREAK_THRESHOLD", 5)
TRUST_RECORD_TTL_SECONDS = _env_float("TRUST_RECORD_TTL_SECONDS", 24 * 60 * 60.0)
OFFENSE_WINDOW_SECONDS = _env_float("OFFENSE_WINDOW_SECONDS", 3 * 60 * 60.0)

# Join-flood shield
SHIELD_JOIN_THRESHOLD = _env_int("SHIELD_JOIN_THRESHOLD", 5)
SHIELD_JOIN_WINDOW_SECONDS = _env_float("SHIELD_JOIN_WINDOW_SECONDS", 10.0)
SHIELD_IDLE_RESET_SECONDS = _env_float("SHIELD_IDLE_RESET_SECONDS", 60.0)

# Housekeeping
SWEEP_INTERVAL_SECONDS = _env_float("SWEEP_INTERVAL_SECONDS", 10 * 60.0)
TRACKER_DB_PATH = os.getenv("TRACKER_DB_PATH", "guardbot.db")

# User-facing messages
WARNING_MESSAGE = (
    "{user} your last message was marked as spam and removed. "
    "Another message of this kind will lead to a ban."
)
KICK_MESSAGE = "{user} was banned for spam."
ENFORCEMENT_FAILED_MESSAGE = (
    "⚠️ Spam from {user} detected, but I lack the admin rights to act. "
    "Please check manually."
)
IMPERSONATION_MESSAGE = (
    "⚠️ {user} has been removed for impersonating administrator "
    "\"{admin_name}\" ({admin}). Their message has been deleted."
)
IMPERSONATION_FAILED_MESSAGE = (
    "⚠️ Detected {user} impersonating \"{admin_name}\" ({admin}), "
    "but failed to remove. Please check manually."
)
SUSPICIOUS_NAME_MESSAGE = "⚠️ {user} has been removed for having a suspicious display name."
REPORT_THANKS_MESSAGE = "Thanks for the report {reporter}, I've removed the spam message."

STATS_MESSAGE = """
📊 **Moderation Statistics**

**Messages checked:** {checked}
**Spam removed:** {spam_removed} ({last_24h} in last 24h)
**Users warned:** {warned}
**Users banned:** {kicked}
**Impersonators removed:** {impersonators}
**Joins rejected:** {joins_rejected}
**Rate limited:** {rate_limited}
**Similarity hits:** {similarity_hits}
**Trusted skips:** {trusted_skips}
**Groups monitored:** {groups}
"""


def validate_config() -> None:
    """Fail fast on missing or invalid settings. Raises ValueError."""
    problems = []
    if not BOT_TOKEN:
        problems.append("BOT_TOKEN is not set")
    if SPAM_THRESHOLD is None:
        problems.append("SPAM_THRESHOLD is not set")
    if not CLASSIFIER_API_ENDPOINT:
        problems.append("CLASSIFIER_API_ENDPOINT is not set")

    positive = {
        "GLOBAL_CONCURRENCY": GLOBAL_CONCURRENCY,
        "REQUEST_INTERVAL_SECONDS": REQUEST_INTERVAL_SECONDS,
        "DAILY_LIMIT": DAILY_LIMIT,
        "DAILY_WINDOW_SECONDS": DAILY_WINDOW_SECONDS,
        "ADMIN_CACHE_TTL_SECONDS": ADMIN_CACHE_TTL_SECONDS,
        "WHITELIST_TTL_SECONDS": WHITELIST_TTL_SECONDS,
        "NORMAL_STREAK_THRESHOLD": NORMAL_STREAK_THRESHOLD,
        "TRUST_RECORD_TTL_SECONDS": TRUST_RECORD_TTL_SECONDS,
        "OFFENSE_WINDOW_SECONDS": OFFENSE_WINDOW_SECONDS,
        "SHIELD_JOIN_THRESHOLD": SHIELD_JOIN_THRESHOLD,
        "SHIELD_JOIN_WINDOW_SECONDS": SHIELD_JOIN_WINDOW_SECONDS,
        "SHIELD_IDLE_RESET_SECONDS": SHIELD_IDLE_RESET_SECONDS,
        "SIMILARITY_CACHE_SIZE": SIMILARITY_CACHE_SIZE,
        "USERNAME_LENGTH_THRESHOLD": USERNAME_LENGTH_THRESHOLD,
        "MIN_WORD_COUNT": MIN_WORD_COUNT,
        "SWEEP_INTERVAL_SECONDS": SWEEP_INTERVAL_SECONDS,
    }
    for name, value in positive.items():
        if value is None or value <= 0:
            problems.append(f"{name} must be positive, got {value}")

    if SIMILARITY_THRESHOLD is None or not 0 < SIMILARITY_THRESHOLD <= 100:
        problems.append(f"SIMILARITY_THRESHOLD must be in (0, 100], got {SIMILARITY_THRESHOLD}")

    if problems:
        raise ValueError("Invalid configuration: " + "; ".join(problems))
