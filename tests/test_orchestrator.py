import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from conftest import GROUP_ID, FakeClassifier, admin, spam_verdict
from guardbot.engine import orchestrator as orchestrator_module
from guardbot.engine.orchestrator import ModerationOrchestrator, create_orchestrator
from guardbot.engine.policies import KICK, WARN
from guardbot.models import MemberInfo, MessageEvent
from guardbot.services.rate_limiter import RateLimiter
from guardbot.services.metrics import stats
from guardbot.storage import TrackerStore

SPAMMER = MemberInfo(user_id=42, first_name="Spam", last_name="Bot", username="spammer")


def make_event(text="buy cheap followers now", sender=SPAMMER, message_id=1, **kwargs):
    return MessageEvent(
        group_id=GROUP_ID,
        message_id=message_id,
        sender=sender,
        text=text,
        group_title="Test Group",
        **kwargs,
    )


# ==================== End-to-end scenarios ====================

@pytest.mark.asyncio
async def test_scenario_a_primary_spam_triggers_secondary_check(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    classifier.secondary = True
    orch = make_orchestrator(spam_threshold=10)

    outcome = await orch.process_spam(make_event("buy cheap followers"), now=1000)

    assert len(classifier.secondary_calls) == 1
    assert outcome.secondary_checked
    assert outcome.verdict == "spam"
    assert outcome.action == WARN
    assert (GROUP_ID, 1) in gateway.deleted


@pytest.mark.asyncio
async def test_scenario_a_secondary_negative_counts_as_clean(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    classifier.secondary = False
    orch = make_orchestrator(spam_threshold=10)

    outcome = await orch.process_spam(make_event("buy cheap followers"), now=1000)

    assert outcome.verdict == "clean"
    assert outcome.secondary_checked
    assert gateway.deleted == []
    assert orch.trust.get_record(GROUP_ID, 42).streak == 1


@pytest.mark.asyncio
async def test_scenario_b_keyword_blocks_secondary_and_action(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    orch = make_orchestrator(spam_threshold=10, relevant_keywords=["ecash"])

    outcome = await orch.process_spam(make_event("buy eCash now"), now=1000)

    assert outcome.verdict == "clean"
    assert classifier.secondary_calls == []
    assert gateway.deleted == []
    assert gateway.kicked == [] and gateway.banned == []
    assert orch.offenses.get_offense(42) is None


@pytest.mark.asyncio
async def test_scenario_c_warn_then_permanent_ban(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    orch = make_orchestrator(spam_threshold=10)

    first = await orch.process_spam(make_event("buy cheap followers", message_id=1), now=1000)
    assert first.action == WARN
    assert first.offense_count == 1
    assert gateway.kicked == [(GROUP_ID, 42)]
    assert gateway.banned == []
    assert config.WARNING_MESSAGE.format(user="@spammer") in gateway.texts_to(GROUP_ID)

    second = await orch.process_spam(make_event("totally different promo text", message_id=2), now=1100)
    assert second.action == KICK
    assert second.offense_count == 2
    assert second.enforced
    assert gateway.banned == [(GROUP_ID, 42)]
    assert gateway.unbanned == []
    assert config.KICK_MESSAGE.format(user="@spammer") in gateway.texts_to(GROUP_ID)
    assert stats["warned"] == 1
    assert stats["kicked"] == 1
    assert stats["spam_removed"] == 2


@pytest.mark.asyncio
async def test_offense_window_elapsed_warns_again(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    orch = make_orchestrator(spam_threshold=10)

    await orch.process_spam(make_event("buy cheap followers", message_id=1), now=1000)
    later = await orch.process_spam(make_event("another promo here", message_id=2), now=1000 + 3 * 3600 + 1)
    assert later.action == WARN
    assert later.offense_count == 1


# ==================== Fast paths ====================

@pytest.mark.asyncio
async def test_trusted_user_skips_classification(make_orchestrator, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False)
    orch = make_orchestrator()

    for i in range(3):
        outcome = await orch.process_spam(make_event(f"hello there friend {i}", message_id=i), now=1000 + i * 20)
        assert outcome.verdict == "clean"
    assert orch.trust.is_trusted(GROUP_ID, 42)

    outcome = await orch.process_spam(make_event("buy cheap followers", message_id=9), now=1100)
    assert outcome.verdict == "trusted"
    assert len(classifier.analyze_calls) == 3
    assert stats["trusted_skips"] == 1


@pytest.mark.asyncio
async def test_trusted_user_still_gets_translation(make_orchestrator, gateway, classifier):
    classifier.translation = "hello everyone"
    orch = make_orchestrator(translation_group_ids=[GROUP_ID])
    orch.trust.record_normal_message(GROUP_ID, 42, now=0)
    orch.trust.record_normal_message(GROUP_ID, 42, now=1)
    orch.trust.record_normal_message(GROUP_ID, 42, now=2)

    outcome = await orch.process_spam(make_event("Привет всем, как дела?", message_id=5), now=10)

    assert outcome.verdict == "trusted"
    assert classifier.analyze_calls == []
    assert gateway.sent[-1] == {
        "chat_id": GROUP_ID, "text": "🔄 Translation: hello everyone", "reply_to": 5, "buttons": None,
    }


@pytest.mark.asyncio
async def test_similar_text_is_spam_without_classifier(make_orchestrator, gateway, classifier):
    orch = make_orchestrator()
    orch.text_cache.add_spam_message("Claim your FREE airdrop now")

    outcome = await orch.process_spam(make_event("claim your free airdrop NOW!"), now=1000)

    assert outcome.verdict == "similar"
    assert outcome.action == WARN
    assert classifier.analyze_calls == []
    assert stats["similarity_hits"] == 1
    assert len(orch.text_cache) == 1


@pytest.mark.asyncio
async def test_known_spam_image_is_spam_without_classifier(make_orchestrator, gateway, classifier):
    gateway.fingerprints["photo-1"] = "f0f0f0f0f0f0f0f1"
    orch = make_orchestrator()
    orch.image_cache.add_spam_image("f0f0f0f0f0f0f0f0", GROUP_ID, 1)

    outcome = await orch.process_spam(make_event("", image_file_ids=["photo-1"], message_id=3), now=1000)

    assert outcome.verdict == "similar"
    assert (GROUP_ID, 3) in gateway.deleted
    assert classifier.analyze_calls == [] and classifier.image_calls == []


@pytest.mark.asyncio
async def test_image_without_caption_is_not_classified(make_orchestrator, gateway, classifier):
    gateway.fingerprints["photo-1"] = "0000000000000000"
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event("", image_file_ids=["photo-1"]), now=1000)

    assert outcome.verdict == "skipped"
    assert classifier.analyze_calls == [] and classifier.image_calls == []


@pytest.mark.asyncio
async def test_captioned_image_is_classified_with_image(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    gateway.fingerprints["photo-1"] = "00000000000000ff"
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event("buy cheap followers", image_file_ids=["photo-1"]), now=1000)

    assert outcome.verdict == "spam"
    assert classifier.image_calls == [("buy cheap followers", ["https://files.example/photo-1.jpg"], 42)]
    assert orch.image_cache.is_spam_image("00000000000000ff")


# ==================== Rate limiting and inconclusive results ====================

@pytest.mark.asyncio
async def test_rapid_messages_are_rate_limited(make_orchestrator, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False)
    orch = make_orchestrator()

    await orch.process_spam(make_event("first message", message_id=1), now=1000)
    outcome = await orch.process_spam(make_event("second message", message_id=2), now=1001)

    assert outcome.verdict == "rate_limited"
    assert len(classifier.analyze_calls) == 1
    assert stats["rate_limited"] == 1


@pytest.mark.asyncio
async def test_privileged_user_bypasses_rate_limit(make_orchestrator, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False)
    orch = make_orchestrator(privileged_user_ids=[42])

    await orch.process_spam(make_event("first message", message_id=1), now=1000)
    outcome = await orch.process_spam(make_event("second message", message_id=2), now=1001)

    assert outcome.verdict == "clean"
    assert len(classifier.analyze_calls) == 2


@pytest.mark.asyncio
async def test_missing_analysis_is_inconclusive(make_orchestrator, gateway, classifier):
    classifier.verdict = None
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event(), now=1000)

    assert outcome.verdict == "inconclusive"
    assert orch.trust.get_record(GROUP_ID, 42) is None
    assert gateway.deleted == []


@pytest.mark.asyncio
async def test_inconclusive_secondary_check_takes_no_action(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    classifier.secondary = None
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event(), now=1000)

    assert outcome.verdict == "inconclusive"
    assert outcome.secondary_checked
    assert orch.offenses.get_offense(42) is None
    assert orch.trust.get_record(GROUP_ID, 42) is None


class SlowClassifier(FakeClassifier):
    async def analyze(self, text, actor_id):
        await asyncio.sleep(1)
        return spam_verdict()


@pytest.mark.asyncio
async def test_classifier_timeout_is_inconclusive(make_orchestrator, gateway):
    orch = make_orchestrator(classifier=SlowClassifier(), analysis_timeout=0.01)

    outcome = await orch.process_spam(make_event(), now=1000)

    assert outcome.verdict == "inconclusive"
    assert gateway.deleted == []


# ==================== Enforcement edge cases ====================

@pytest.mark.asyncio
async def test_missing_bot_rights_still_records_offense(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    gateway.bot_privileged = False
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event(), now=1000)

    assert outcome.verdict == "spam"
    assert outcome.offense_count == 1
    assert not outcome.enforced
    assert gateway.deleted == [] and gateway.kicked == []
    assert orch.offenses.get_offense(42).count == 1
    assert config.ENFORCEMENT_FAILED_MESSAGE.format(user="@spammer") in gateway.texts_to(GROUP_ID)


@pytest.mark.asyncio
async def test_admin_sender_is_never_punished(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    gateway.admin_members.add((GROUP_ID, 42))
    orch = make_orchestrator()

    outcome = await orch.process_spam(make_event(), now=1000)

    assert outcome.verdict == "spam"
    assert outcome.action is None
    assert orch.offenses.get_offense(42) is None
    assert gateway.deleted == []


@pytest.mark.asyncio
async def test_spam_report_goes_to_notification_chat(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    orch = make_orchestrator(notification_chat_id=-500)

    await orch.process_spam(make_event(), now=1000)

    assert (-500, GROUP_ID, 1) in gateway.forwarded
    reports = [m for m in gateway.sent if m["chat_id"] == -500]
    assert any("Spam detected from @spammer" in m["text"] for m in reports)
    assert reports[-1]["buttons"] == [[("🚫 Ban", f"spam_action:ban:{GROUP_ID}:42")]]


@pytest.mark.asyncio
async def test_non_english_clean_message_is_translated(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False, is_english=False)
    classifier.translation = "good morning"
    orch = make_orchestrator(translation_group_ids=[GROUP_ID])

    await orch.process_spam(make_event("доброе утро", message_id=8), now=1000)

    assert gateway.sent[-1]["text"] == "🔄 Translation: good morning"
    assert gateway.sent[-1]["reply_to"] == 8


@pytest.mark.asyncio
async def test_translation_only_in_configured_groups(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False, is_english=False)
    classifier.translation = "good morning"
    orch = make_orchestrator()

    await orch.process_spam(make_event("доброе утро"), now=1000)

    assert classifier.translate_calls == []


# ==================== Impersonation and pipeline isolation ====================

@pytest.mark.asyncio
async def test_on_message_removes_impersonator(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False)
    gateway.admins[GROUP_ID] = [admin(1, "Alice Admin", "alice")]
    gateway.avatars = {1: "admin.jpg", 66: "copy.jpg"}
    gateway.similar_avatars.add(("copy.jpg", "admin.jpg"))
    orch = make_orchestrator()
    impostor = MemberInfo(user_id=66, first_name="Alice", last_name="Admin", username="alice_help")

    spam_outcome, impersonation = await orch.on_message(make_event("hi, DM me for support", sender=impostor), now=1000)

    assert impersonation.is_impersonation
    assert spam_outcome.verdict == "clean"
    assert (GROUP_ID, 66) in gateway.banned
    assert (GROUP_ID, 1) in gateway.deleted
    expected = config.IMPERSONATION_MESSAGE.format(user="@alice_help", admin_name="Alice Admin", admin="@alice")
    assert expected in gateway.texts_to(GROUP_ID)
    assert stats["impersonators"] == 1


@pytest.mark.asyncio
async def test_failed_impersonator_ban_is_reported(make_orchestrator, gateway, classifier):
    gateway.admins[GROUP_ID] = [admin(1, "Alice Admin", "alice")]
    gateway.avatars = {1: "admin.jpg", 66: "copy.jpg"}
    gateway.similar_avatars.add(("copy.jpg", "admin.jpg"))
    gateway.ban_ok = False
    orch = make_orchestrator()
    impostor = MemberInfo(user_id=66, first_name="Alice", last_name="Admin", username="alice_help")

    result = await orch.process_impersonation(make_event("hi", sender=impostor), now=1000)

    assert result.is_impersonation
    expected = config.IMPERSONATION_FAILED_MESSAGE.format(user="@alice_help", admin_name="Alice Admin", admin="@alice")
    assert expected in gateway.texts_to(GROUP_ID)
    assert gateway.deleted == []


@pytest.mark.asyncio
async def test_failing_pipeline_does_not_break_the_other(make_orchestrator, classifier, monkeypatch):
    classifier.verdict = spam_verdict(0, 0, 0, spam=False)

    async def _boom(*args, **kwargs):
        raise RuntimeError("impersonation check exploded")

    monkeypatch.setattr(orchestrator_module, "check_impersonation", _boom)
    orch = make_orchestrator()

    spam_outcome, impersonation = await orch.on_message(make_event(), now=1000)

    assert spam_outcome.verdict == "clean"
    assert impersonation is None


# ==================== Joins ====================

@pytest.mark.asyncio
async def test_join_flood_rejects_new_members(make_orchestrator, gateway):
    orch = make_orchestrator()
    members = [MemberInfo(user_id=100 + i, first_name=f"User{i}") for i in range(6)]

    rejected = await orch.on_members_joined(GROUP_ID, members, now=1000)

    assert rejected == 6
    assert gateway.kicked == [(GROUP_ID, 100 + i) for i in range(6)]
    assert stats["joins_rejected"] == 6
    assert orch.shield.is_active(GROUP_ID)


@pytest.mark.asyncio
async def test_small_join_batch_is_admitted(make_orchestrator, gateway, classifier):
    orch = make_orchestrator()
    members = [MemberInfo(user_id=100 + i, first_name=f"User{i}") for i in range(3)]

    assert await orch.on_members_joined(GROUP_ID, members, now=1000) == 0
    assert gateway.kicked == []
    # short names are not screened
    assert classifier.analyze_calls == []


@pytest.mark.asyncio
async def test_long_spammy_display_name_is_kicked(make_orchestrator, gateway, classifier):
    classifier.verdict = spam_verdict(5, 5, 5)
    orch = make_orchestrator(username_length_threshold=30)
    long_name = MemberInfo(user_id=77, first_name="FREE CRYPTO SIGNALS JOIN NOW", last_name="t.me/scam")
    bot_member = MemberInfo(user_id=78, first_name="x" * 40, is_bot=True)

    rejected = await orch.on_members_joined(GROUP_ID, [long_name, bot_member], join_message_id=55, now=1000)

    assert rejected == 1
    assert gateway.kicked == [(GROUP_ID, 77)]
    assert (GROUP_ID, 55) in gateway.deleted
    assert classifier.analyze_calls == [
        ('New user joined with display name: "FREE CRYPTO SIGNALS JOIN NOW t.me/scam"', 77)
    ]
    assert config.SUSPICIOUS_NAME_MESSAGE.format(user="User (ID: 77)") in gateway.texts_to(GROUP_ID)


# ==================== Manual reports and sweeps ====================

@pytest.mark.asyncio
async def test_manual_report_removes_and_remembers_spam(make_orchestrator, gateway):
    orch = make_orchestrator(notification_chat_id=-500)
    orch.trust.record_normal_message(GROUP_ID, 42, now=0)
    reporter = MemberInfo(user_id=5, first_name="Rita", username="rita")

    handled = await orch.on_manual_report(GROUP_ID, reporter, make_event("join my pump group", message_id=12), now=10)

    assert handled
    assert (GROUP_ID, 12) in gateway.deleted
    assert (-500, GROUP_ID, 12) in gateway.forwarded
    assert orch.text_cache.is_similar_to_spam("join my pump group")
    assert orch.trust.get_record(GROUP_ID, 42).streak == 0
    assert config.REPORT_THANKS_MESSAGE.format(reporter="@rita") in gateway.texts_to(GROUP_ID)


@pytest.mark.asyncio
async def test_manual_report_needs_bot_rights(make_orchestrator, gateway):
    gateway.bot_privileged = False
    orch = make_orchestrator()
    reporter = MemberInfo(user_id=5, first_name="Rita", username="rita")

    assert not await orch.on_manual_report(GROUP_ID, reporter, make_event(message_id=12))
    assert gateway.deleted == []


def test_sweep_runs_every_component(make_orchestrator):
    orch = make_orchestrator()
    orch.trust.record_normal_message(GROUP_ID, 42, now=0)
    orch.offenses.record_offense(42, now=0)
    orch.impersonation.add_to_whitelist(GROUP_ID, 42, now=0)
    orch.shield.record_joins(GROUP_ID, 1, now=0)
    orch.rate_limiter.check_and_consume(42, now=0)

    result = orch.sweep(now=10 ** 6)

    assert result == {"trust": 1, "offenses": 1, "impersonation": 1, "shield": 1, "rate_limiter": 1}
    assert len(orch.trust) == 0 and len(orch.offenses) == 0


# ==================== Concurrency ====================

class TrackingClassifier(FakeClassifier):
    def __init__(self):
        super().__init__(verdict=spam_verdict(0, 0, 0, spam=False))
        self.in_flight = 0
        self.peak = 0

    async def analyze(self, text, actor_id):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return self.verdict


@pytest.mark.asyncio
async def test_same_subject_is_processed_one_at_a_time(make_orchestrator):
    tracking = TrackingClassifier()
    orch = make_orchestrator(classifier=tracking, privileged_user_ids=[42])

    await asyncio.gather(
        orch.process_spam(make_event("message one", message_id=1), now=1000),
        orch.process_spam(make_event("message two", message_id=2), now=1000),
    )

    assert tracking.peak == 1
    assert orch.trust.get_record(GROUP_ID, 42).streak == 2
    assert orch._subject_locks == {}


@pytest.mark.asyncio
async def test_different_subjects_run_concurrently(make_orchestrator):
    tracking = TrackingClassifier()
    orch = make_orchestrator(classifier=tracking)
    other = MemberInfo(user_id=43, first_name="Other")

    await asyncio.gather(
        orch.process_spam(make_event("message one", message_id=1), now=1000),
        orch.process_spam(make_event("message two", sender=other, message_id=2), now=1000),
    )

    assert tracking.peak == 2


@pytest.mark.asyncio
async def test_join_screening_respects_classifier_queue_bound(make_orchestrator):
    tracking = TrackingClassifier()
    limiter = RateLimiter(concurrency=1, request_interval=10, daily_limit=10, daily_window=86400)
    orch = make_orchestrator(classifier=tracking, rate_limiter=limiter)
    groups = [-1001, -1002, -1003, -1004]

    await asyncio.gather(*[
        orch.on_members_joined(group_id, [MemberInfo(user_id=200 + i, first_name="x" * 40)], now=1000)
        for i, group_id in enumerate(groups)
    ])

    assert tracking.peak == 1
    assert limiter.get_running_count() == 0


# ==================== Wiring ====================

def test_create_orchestrator_reads_config(monkeypatch, tmp_path, gateway, classifier):
    monkeypatch.setattr(config, "SPAM_THRESHOLD", 12.5)
    monkeypatch.setattr(config, "NORMAL_STREAK_THRESHOLD", 7)
    monkeypatch.setattr(config, "RELEVANT_KEYWORDS", ["ecash"])

    orch = create_orchestrator(gateway, classifier, TrackerStore(str(tmp_path / "wired.db")))

    assert isinstance(orch, ModerationOrchestrator)
    assert orch.spam_threshold == 12.5
    assert orch.trust.threshold == 7
    assert orch.relevant_keywords == ["ecash"]
    assert orch.rate_limiter.get_config()["concurrency"] == config.GLOBAL_CONCURRENCY
