"""Tests for referral creation, tracking, expiry and cancellation."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from feedback_rewards.errors import (
    DuplicatePendingReferral,
    GenerationExhausted,
    InvalidEmail,
    ReferralNotFound,
    ReferralNotPending,
    ReferralsDisabled,
    SelfReferral,
    SettingsNotFound,
    UnknownUser,
)
from feedback_rewards.gamification.codes import CODE_ALPHABET, CodeGenerator
from feedback_rewards.gamification.models import Referral, ReferralStatus, SocialShare
from feedback_rewards.gamification.referrals import ReferralStore
from feedback_rewards.gamification.service import GamificationService
from tests.conftest import BUSINESS_ID, OTHER_BUSINESS_ID


def test_create_referral(service, users, clock):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "  Friend@Example.com ")

    assert referral.status == ReferralStatus.PENDING.value
    assert referral.referred_email == "friend@example.com"
    assert len(referral.code) == 8
    assert set(referral.code) <= set(CODE_ALPHABET)
    assert referral.created_at == clock.now()
    assert referral.expires_at == clock.now() + timedelta(days=30)
    assert referral.completed_at is None
    assert referral.completed_by_user_id is None


def test_codes_are_unique_across_referrals(service, users):
    codes = {
        service.create_referral(users["alice"], BUSINESS_ID, f"friend{i}@example.com").code
        for i in range(25)
    }
    assert len(codes) == 25


@pytest.mark.parametrize("email", ["", "not-an-email", "a@b", "a b@example.com", "@example.com"])
def test_invalid_email(service, users, email):
    with pytest.raises(InvalidEmail):
        service.create_referral(users["alice"], BUSINESS_ID, email)


def test_self_referral_is_case_insensitive(service, users):
    with pytest.raises(SelfReferral):
        service.create_referral(users["bob"], BUSINESS_ID, "bob@example.COM")


@pytest.mark.parametrize("user_id", [999, 4])
def test_unknown_or_inactive_referrer(service, user_id):
    with pytest.raises(UnknownUser):
        service.create_referral(user_id, BUSINESS_ID, "friend@example.com")


def test_referrals_disabled(service, users):
    service.update_settings(BUSINESS_ID, {"referral_enabled": False})

    with pytest.raises(ReferralsDisabled):
        service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")


def test_unprovisioned_business(service, users):
    with pytest.raises(SettingsNotFound):
        service.create_referral(users["alice"], OTHER_BUSINESS_ID, "friend@example.com")


def test_duplicate_pending_referral(service, users):
    first = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    with pytest.raises(DuplicatePendingReferral):
        service.create_referral(users["alice"], BUSINESS_ID, "FRIEND@example.com")

    # Other referrers may refer the same person
    service.create_referral(users["carol"], BUSINESS_ID, "friend@example.com")

    service.cancel_referral(first.code, users["alice"])
    again = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    assert again.code != first.code


class LockstepCodeGenerator(CodeGenerator):
    """Holds every caller at a barrier after its duplicate check has passed."""

    def __init__(self, barrier: threading.Barrier):
        super().__init__()
        self.barrier = barrier

    def generate(self, business_id, is_taken):
        self.barrier.wait(timeout=10)
        return super().generate(business_id, is_taken)


def test_concurrent_duplicate_referrals_create_one(database, clock, users):
    workers = 2
    service = GamificationService(
        database=database,
        clock=clock,
        code_generator=LockstepCodeGenerator(threading.Barrier(workers)),
    )
    service.provision_business(BUSINESS_ID)

    def attempt(_):
        try:
            service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
        except DuplicatePendingReferral:
            return "duplicate"
        return "created"

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = sorted(pool.map(attempt, range(workers)))

    assert outcomes == ["created", "duplicate"]
    with database.session() as session:
        pending = session.scalar(
            select(func.count(Referral.id)).where(
                Referral.referring_user_id == users["alice"],
                Referral.status == ReferralStatus.PENDING.value,
            )
        )
    assert pending == 1


def test_lookup_by_code_ignores_case(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    found = service.referrals.get_by_code(f" {referral.code.lower()} ")

    assert found.id == referral.id
    assert service.referrals.get_by_code("NOPE2345") is None
    assert service.referrals.get_by_code("") is None


def test_custom_email_lookup(database, clock):
    service = GamificationService(
        database=database,
        clock=clock,
        user_email_lookup={42: "owner@shop.test"}.get,
    )
    service.provision_business(BUSINESS_ID)

    referral = service.create_referral(42, BUSINESS_ID, "friend@shop.test")
    assert referral.referring_user_id == 42

    with pytest.raises(SelfReferral):
        service.create_referral(42, BUSINESS_ID, "owner@shop.test")


def test_generation_exhausted(database, clock, users, monkeypatch):
    generator = CodeGenerator(max_attempts=3)
    monkeypatch.setattr(generator, "_random_code", lambda: "SAMECODE")
    service = GamificationService(database=database, clock=clock, code_generator=generator)
    service.provision_business(BUSINESS_ID)

    service.create_referral(users["alice"], BUSINESS_ID, "one@example.com")
    with pytest.raises(GenerationExhausted):
        service.create_referral(users["alice"], BUSINESS_ID, "two@example.com")


def test_validity_window_must_be_positive(database):
    with pytest.raises(ValueError):
        ReferralStore(database, validity_days=-1)


# ==================== TRACKING ====================


def test_click_tracking(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    assert service.record_click(referral.code.lower(), ip_address="203.0.113.5", user_agent="pytest") is True
    assert service.record_click(referral.code) is True

    assert service.referrals.count_clicks(referral.id) == 2
    assert service.referrals.get(referral.id).status == ReferralStatus.PENDING.value


def test_click_on_unknown_code_is_ignored(service):
    assert service.record_click("UNKNOWN9") is False


def test_clicks_on_expired_referral_are_kept(service, users, clock):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    clock.advance(days=31)
    service.expire_stale_referrals()

    assert service.record_click(referral.code) is True

    assert service.referrals.count_clicks(referral.id) == 1
    assert service.referrals.get(referral.id).status == ReferralStatus.EXPIRED.value


def test_share_tracking(service, users, database):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    assert service.record_share(referral.code, "WhatsApp", "https://wa.me/?text=hi", user_id=users["alice"])
    assert service.record_share(referral.code, "myspace", "https://myspace.test/")
    assert service.record_share("UNKNOWN9", "twitter", "https://x.test/") is False

    with database.session() as session:
        platforms = sorted(session.scalars(select(SocialShare.platform)))
    assert platforms == ["other", "whatsapp"]


# ==================== EXPIRY ====================


def test_expire_stale(service, users, clock):
    old = service.create_referral(users["alice"], BUSINESS_ID, "old@example.com")
    clock.advance(days=20)
    fresh = service.create_referral(users["alice"], BUSINESS_ID, "fresh@example.com")
    clock.advance(days=11)

    assert service.expire_stale_referrals() == 1
    assert service.expire_stale_referrals() == 0

    assert service.referrals.get(old.id).status == ReferralStatus.EXPIRED.value
    assert service.referrals.get(fresh.id).status == ReferralStatus.PENDING.value


def test_expiry_boundary(service, users, clock):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    assert service.expire_stale_referrals(now=referral.expires_at) == 0
    assert service.expire_stale_referrals(now=referral.expires_at + timedelta(seconds=1)) == 1


def test_expiry_leaves_terminal_referrals_alone(service, users, clock):
    completed = service.create_referral(users["alice"], BUSINESS_ID, "done@example.com")
    cancelled = service.create_referral(users["alice"], BUSINESS_ID, "gone@example.com")
    service.complete_referral(completed.code, 100)
    service.cancel_referral(cancelled.code, users["alice"])
    clock.advance(days=60)

    assert service.expire_stale_referrals() == 0
    assert service.referrals.get(completed.id).status == ReferralStatus.COMPLETED.value
    assert service.referrals.get(cancelled.id).status == ReferralStatus.CANCELLED.value


# ==================== CANCELLATION ====================


def test_cancel(service, users, clock):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    cancelled = service.cancel_referral(referral.code, users["alice"])

    assert cancelled.status == ReferralStatus.CANCELLED.value
    assert cancelled.cancelled_at == clock.now()
    with pytest.raises(ReferralNotPending) as excinfo:
        service.cancel_referral(referral.code, users["alice"])
    assert excinfo.value.status == ReferralStatus.CANCELLED.value


def test_only_referrer_can_cancel(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    with pytest.raises(ReferralNotFound):
        service.cancel_referral(referral.code, users["carol"])
    with pytest.raises(ReferralNotFound):
        service.cancel_referral("UNKNOWN9", users["alice"])

    assert service.referrals.get(referral.id).status == ReferralStatus.PENDING.value


def test_list_for_user_is_newest_first(service, users, clock):
    first = service.create_referral(users["alice"], BUSINESS_ID, "a@example.com")
    clock.advance(minutes=5)
    second = service.create_referral(users["alice"], BUSINESS_ID, "b@example.com")
    service.create_referral(users["carol"], BUSINESS_ID, "c@example.com")

    listed = service.referrals.list_for_user(users["alice"], BUSINESS_ID)

    assert [r.id for r in listed] == [second.id, first.id]