from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class TrustRecord:
    streak: int
    trusted: bool
    last_updated: float  # epoch seconds


@dataclass
class OffenseRecord:
    count: int
    window_started_at: float  # epoch seconds


@dataclass
class AdminInfo:
    user_id: int
    full_name: str
    username: Optional[str] = None  # lower-cased handle without "@"


@dataclass
class AdminCacheEntry:
    admins: List[AdminInfo]
    cached_at: float


@dataclass
class WhitelistEntry:
    reason: str
    timestamp: float


@dataclass
class ShieldState:
    active: bool = False
    join_timestamps: List[float] = field(default_factory=list)
    last_join_at: float = 0.0


@dataclass
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None  # "cooldown" | "quota"
    seconds_left: Optional[int] = None
    seconds_until_reset: Optional[float] = None
    remaining: Optional[int] = None


@dataclass
class ClassifierVerdict:
    spam: bool
    deviation: float = 0.0
    suspicion: float = 0.0
    inducement: float = 0.0
    is_english: Optional[bool] = None


@dataclass
class ImpersonationResult:
    is_impersonation: bool
    in_whitelist: bool = False
    impersonated_admin: Optional[AdminInfo] = None
    impersonator_display_name: Optional[str] = None
    avatar_comparison: Optional[bool] = None
    added_to_whitelist: bool = False


@dataclass
class SpamImageEntry:
    fingerprint: str
    source_chat_id: Optional[int] = None
    source_message_id: Optional[int] = None


@dataclass
class MemberInfo:
    user_id: int
    first_name: str = ""
    last_name: str = ""
    username: Optional[str] = None
    is_bot: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or ""

    @property
    def mention(self) -> str:
        if self.username:
            return f"@{self.username}"
        return self.first_name or f"User (ID: {self.user_id})"


@dataclass
class MessageEvent:
    group_id: int
    message_id: int
    sender: MemberInfo
    text: str = ""
    group_title: str = ""
    image_file_ids: List[str] = field(default_factory=list)


@dataclass
class SpamOutcome:
    verdict: str  # "trusted" | "similar" | "rate_limited" | "inconclusive" | "spam" | "clean" | "skipped"
    action: Optional[str] = None  # "warn" | "kick" | None
    enforced: bool = False
    offense_count: Optional[int] = None
    secondary_checked: bool = False
