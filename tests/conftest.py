import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guardbot.handlers import messages
from guardbot.models import AdminInfo, ClassifierVerdict
from guardbot.services import metrics
from guardbot.services.impersonation import ImpersonationCache
from guardbot.services.offenses import OffenseTracker
from guardbot.services.rate_limiter import RateLimiter
from guardbot.services.shield import FloodShield
from guardbot.services.similarity_cache import SpamImageCache, SpamTextCache
from guardbot.services.trust import TrustTracker
from guardbot.engine.orchestrator import ModerationOrchestrator

BOT_ID = 999
GROUP_ID = -100123


class FakeGateway:
    """Records every call; behaviour is driven by plain attributes."""

    def __init__(self):
        self.admins = {}
        self.avatars = {}
        self.similar_avatars = set()
        self.admin_members = set()
        self.bot_privileged = True
        self.ban_ok = True
        self.member_names = {}
        self.fingerprints = {}
        self.file_urls = {}
        self.fail_avatar_for = set()

        self.list_admins_calls = 0
        self.deleted = []
        self.banned = []
        self.unbanned = []
        self.kicked = []
        self.sent = []
        self.forwarded = []

    async def list_admins(self, group_id):
        self.list_admins_calls += 1
        return list(self.admins.get(group_id, []))

    async def get_avatar_ref(self, user_id):
        if user_id in self.fail_avatar_for:
            raise ConnectionError("avatar fetch failed")
        return self.avatars.get(user_id)

    async def compare_avatars(self, ref_a, ref_b, actor_id):
        return (ref_a, ref_b) in self.similar_avatars or (ref_b, ref_a) in self.similar_avatars

    async def is_actor_privileged(self, group_id, actor_id=None):
        if actor_id is None or actor_id == BOT_ID:
            return self.bot_privileged
        return (group_id, actor_id) in self.admin_members

    async def get_member_full_name(self, group_id, user_id):
        return self.member_names.get(user_id)

    async def ban(self, group_id, user_id):
        if self.ban_ok:
            self.banned.append((group_id, user_id))
        return self.ban_ok

    async def unban(self, group_id, user_id):
        self.unbanned.append((group_id, user_id))
        return True

    async def kick(self, group_id, user_id):
        if not self.ban_ok:
            return False
        self.kicked.append((group_id, user_id))
        return True

    async def delete_message(self, group_id, message_id):
        self.deleted.append((group_id, message_id))
        return True

    async def send_message(self, chat_id, text, reply_to=None, buttons=None, parse_mode=None):
        self.sent.append({"chat_id": chat_id, "text": text, "reply_to": reply_to, "buttons": buttons})
        return object()

    async def forward_message(self, chat_id, from_chat_id, message_id):
        self.forwarded.append((chat_id, from_chat_id, message_id))
        return True

    async def get_file_url(self, file_id):
        return self.file_urls.get(file_id, f"https://files.example/{file_id}.jpg")

    async def fingerprint_image(self, file_id):
        return self.fingerprints.get(file_id)

    def texts_to(self, chat_id):
        return [m["text"] for m in self.sent if m["chat_id"] == chat_id]


class FakeClassifier:
    def __init__(self, verdict=None, secondary=True, translation=None):
        self.verdict = verdict
        self.secondary = secondary
        self.translation = translation
        self.analyze_calls = []
        self.image_calls = []
        self.secondary_calls = []
        self.translate_calls = []

    async def analyze(self, text, actor_id):
        self.analyze_calls.append((text, actor_id))
        return self.verdict

    async def analyze_with_images(self, text, image_urls, actor_id):
        self.image_calls.append((text, list(image_urls), actor_id))
        return self.verdict

    async def secondary_check(self, text, actor_id):
        self.secondary_calls.append((text, actor_id))
        return self.secondary

    async def translate(self, text, actor_id):
        self.translate_calls.append((text, actor_id))
        return self.translation

    async def compare_avatars(self, ref_a, ref_b, actor_id):
        return False


def spam_verdict(deviation=5, suspicion=5, inducement=5, spam=True, is_english=True):
    return ClassifierVerdict(spam=spam, deviation=deviation, suspicion=suspicion,
                             inducement=inducement, is_english=is_english)


def admin(user_id, full_name, username=None):
    return AdminInfo(user_id=user_id, full_name=full_name, username=username)


@pytest.fixture(autouse=True)
def _reset_process_state():
    metrics.reset_stats()
    messages._processed_messages.clear()
    yield
    metrics.reset_stats()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def make_orchestrator(gateway, classifier):
    def _make(**overrides):
        options = dict(
            gateway=gateway,
            classifier=classifier,
            rate_limiter=RateLimiter(concurrency=4, request_interval=10, daily_limit=10, daily_window=86400),
            text_cache=SpamTextCache(capacity=50, default_threshold=95.0),
            image_cache=SpamImageCache(capacity=50, max_distance=6),
            trust=TrustTracker(threshold=3, record_ttl=86400),
            offenses=OffenseTracker(window=3 * 3600),
            impersonation=ImpersonationCache(admin_ttl=3600, whitelist_ttl=86400),
            shield=FloodShield(threshold=5, window=10, idle_reset=60),
            spam_threshold=10,
            relevant_keywords=["ecash", "xec"],
            min_word_count=1,
            username_length_threshold=30,
            privileged_user_ids=[],
            translation_group_ids=[],
            notification_chat_id=None,
        )
        options.update(overrides)
        return ModerationOrchestrator(**options)

    return _make
