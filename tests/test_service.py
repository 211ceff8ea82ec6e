"""End-to-end scenarios through the gamification service."""

from feedback_rewards.gamification.models import ReferralStatus
from tests.conftest import BUSINESS_ID

FRIEND = 100


def _badge_keys(service, user_id):
    return [badge["badge_key"] for badge in service.ledger.get_badges(user_id, BUSINESS_ID)]


def test_feedback_completes_referral(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    service.record_click(referral.code)

    outcome = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=1, referral_code=referral.code)

    assert outcome.points.amount == 10
    assert outcome.points.new_badges == ["first_feedback"]
    assert outcome.referral.status == ReferralStatus.COMPLETED.value
    assert outcome.referral_error is None
    assert service.ledger.get_balance(FRIEND, BUSINESS_ID) == 10
    assert service.ledger.get_balance(users["alice"], BUSINESS_ID) == 50


def test_feedback_with_unknown_code_still_counts(service):
    outcome = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=1, referral_code="UNKNOWN9")

    assert outcome.referral is None
    assert outcome.referral_error == "referral_not_found"
    assert service.ledger.get_balance(FRIEND, BUSINESS_ID) == 10


def test_feedback_on_own_referral_is_not_applied(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")

    outcome = service.record_feedback(users["alice"], BUSINESS_ID, feedback_id=1, referral_code=referral.code)

    assert outcome.referral_error == "self_referral"
    assert service.ledger.get_balance(users["alice"], BUSINESS_ID) == 10
    assert service.referrals.get(referral.id).status == ReferralStatus.PENDING.value


def test_feedback_on_used_referral_is_not_applied(service, users):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=1, referral_code=referral.code)

    outcome = service.record_feedback(FRIEND + 1, BUSINESS_ID, feedback_id=2, referral_code=referral.code)

    assert outcome.referral_error == "referral_not_pending"
    assert service.ledger.get_balance(users["alice"], BUSINESS_ID) == 50
    assert service.ledger.get_balance(FRIEND + 1, BUSINESS_ID) == 10


def test_feedback_is_rewarded_once_per_submission(service):
    first = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id="f-1")
    again = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id="f-1")

    assert first.points.applied
    assert again.points.duplicate
    assert service.ledger.get_balance(FRIEND, BUSINESS_ID) == 10


def test_feedback_badges(service):
    for feedback_id in range(5):
        service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=feedback_id)

    assert _badge_keys(service, FRIEND) == ["first_feedback", "feedback_champion"]


def test_feedback_badges_without_feedback_points(service):
    service.update_settings(BUSINESS_ID, {"points_per_feedback": 0})

    outcome = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=1)

    assert outcome.points.amount == 0
    assert service.ledger.get_balance(FRIEND, BUSINESS_ID) == 0
    # Without a points event there is no feedback to count
    assert outcome.points.new_badges == []


def test_super_referrer(service, users):
    for i in range(3):
        referral = service.create_referral(users["alice"], BUSINESS_ID, f"friend{i}@example.com")
        service.record_feedback(FRIEND + i, BUSINESS_ID, feedback_id=i, referral_code=referral.code)

    assert service.ledger.get_balance(users["alice"], BUSINESS_ID) == 150
    # 100 points arrive with the second referral, the third unlocks super_referrer
    assert _badge_keys(service, users["alice"]) == ["points_collector", "super_referrer"]


def test_welcome_bonus_is_awarded_once(service):
    first = service.award_welcome_bonus(FRIEND, BUSINESS_ID)
    second = service.award_welcome_bonus(FRIEND, BUSINESS_ID)

    assert first.applied
    assert second.duplicate
    assert service.ledger.get_balance(FRIEND, BUSINESS_ID) == 25


def test_user_rewards(service, users, clock):
    referral = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    service.complete_referral(referral.code, FRIEND)

    rewards = service.get_user_rewards(users["alice"], BUSINESS_ID)

    assert rewards["points"]["balance"] == 50
    assert rewards["points"]["recent"] == [
        {"amount": 50, "reason": "referral", "created_at": clock.now().isoformat()},
    ]
    assert rewards["badges"] == []
    assert len(rewards["referrals"]) == 1
    listed = rewards["referrals"][0]
    assert listed["referral_code"] == referral.code
    assert listed["status"] == "completed"
    assert listed["link"].endswith(f"/ref/{referral.code}")
    assert rewards["settings"]["points_per_referral"] == 50


def test_referral_lifecycle_scenario(service, users, clock):
    """Create, expire, and re-refer the same person."""
    stale = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    clock.advance(days=31)

    assert service.expire_stale_referrals() == 1
    assert service.record_click(stale.code)

    fresh = service.create_referral(users["alice"], BUSINESS_ID, "friend@example.com")
    outcome = service.record_feedback(FRIEND, BUSINESS_ID, feedback_id=1, referral_code=fresh.code)

    assert outcome.referral.id == fresh.id
    assert service.referrals.get(stale.id).status == ReferralStatus.EXPIRED.value
    entries = service.get_leaderboard(BUSINESS_ID, "referral_count", 10)
    assert [(e.user_id, e.value) for e in entries] == [(users["alice"], 1)]
