"""Tests for point awards, badges and ledger reconciliation."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select, update

from feedback_rewards.errors import InvalidAmount, SettingsNotFound
from feedback_rewards.gamification.models import PointsBalance, PointsEvent, PointsReason, UserBadge
from tests.conftest import BUSINESS_ID, OTHER_BUSINESS_ID

USER = 500

TIERS = [
    {"badge_key": "gold", "metric": "points", "threshold": 100},
    {"badge_key": "bronze", "metric": "points", "threshold": 10},
    {"badge_key": "silver", "metric": "points", "threshold": 50},
]


@pytest.fixture
def ledger(service):
    return service.ledger


def test_award_adds_to_balance(ledger, clock):
    first = ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK)
    clock.advance(minutes=1)
    second = ledger.award(USER, BUSINESS_ID, 15, "welcome_bonus")

    assert (first.balance, second.balance) == (10, 25)
    assert second.applied
    assert ledger.get_balance(USER, BUSINESS_ID) == 25

    events = ledger.get_events(USER, BUSINESS_ID)
    assert [(e.amount, e.reason) for e in events] == [(15, "welcome_bonus"), (10, "feedback")]


@pytest.mark.parametrize("amount", [-1, 1.5, "10", True, None])
def test_invalid_amounts(ledger, amount):
    with pytest.raises(InvalidAmount):
        ledger.award(USER, BUSINESS_ID, amount, PointsReason.FEEDBACK)

    assert ledger.get_balance(USER, BUSINESS_ID) == 0


def test_zero_award_is_a_no_op(ledger):
    result = ledger.award(USER, BUSINESS_ID, 0, PointsReason.FEEDBACK)

    assert result.balance == 0
    assert not result.applied
    assert ledger.get_events(USER, BUSINESS_ID) == []


def test_award_requires_provisioned_business(ledger):
    with pytest.raises(SettingsNotFound):
        ledger.award(USER, OTHER_BUSINESS_ID, 10, PointsReason.FEEDBACK)


def test_repeated_reference_is_counted_once(ledger):
    first = ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK, reference="feedback:1")
    second = ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK, reference="feedback:1")

    assert not first.duplicate
    assert second.duplicate
    assert not second.applied
    assert second.balance == 10
    assert len(ledger.get_events(USER, BUSINESS_ID)) == 1


def test_balances_are_per_business(service, ledger):
    service.provision_business(OTHER_BUSINESS_ID)

    ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK, reference="x")
    ledger.award(USER, OTHER_BUSINESS_ID, 30, PointsReason.FEEDBACK, reference="x")

    assert ledger.get_balance(USER, BUSINESS_ID) == 10
    assert ledger.get_balance(USER, OTHER_BUSINESS_ID) == 30


def test_badges_unlock_in_threshold_order(service, ledger):
    service.update_settings(BUSINESS_ID, {"badge_rules": TIERS})

    result = ledger.award(USER, BUSINESS_ID, 100, PointsReason.FEEDBACK)

    assert result.new_badges == ["bronze", "silver", "gold"]


def test_badges_are_awarded_once(service, ledger, database):
    service.update_settings(BUSINESS_ID, {"badge_rules": TIERS})

    assert ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK).new_badges == ["bronze"]
    assert ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK).new_badges == []
    assert ledger.award(USER, BUSINESS_ID, 30, PointsReason.FEEDBACK).new_badges == ["silver"]
    assert ledger.evaluate_badges(USER, BUSINESS_ID) == []

    with database.session() as session:
        keys = sorted(session.scalars(select(UserBadge.badge_key).where(UserBadge.user_id == USER)))
    assert keys == ["bronze", "silver"]


def test_badges_survive_rule_changes(service, ledger):
    service.update_settings(BUSINESS_ID, {"badge_rules": TIERS})
    ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK)

    service.update_settings(BUSINESS_ID, {"badge_rules": []})

    badges = ledger.get_badges(USER, BUSINESS_ID)
    assert [badge["badge_key"] for badge in badges] == ["bronze"]
    assert badges[0]["badge_name"] == "bronze"


def test_get_badges_uses_rule_display_details(ledger, clock):
    ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK)

    badges = ledger.get_badges(USER, BUSINESS_ID)

    assert badges == [{
        "badge_key": "first_feedback",
        "badge_name": "First Feedback",
        "badge_description": "Submit 1 feedback",
        "badge_icon": "🎉",
        "awarded_at": clock.now().isoformat(),
    }]


def test_concurrent_awards_never_lose_updates(ledger, database):
    workers = 8
    awards_per_worker = 5
    barrier = threading.Barrier(workers)

    def award_many(worker):
        barrier.wait()
        for i in range(awards_per_worker):
            ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK, reference=f"feedback:{worker}:{i}")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(award_many, range(workers)))

    assert ledger.get_balance(USER, BUSINESS_ID) == workers * awards_per_worker * 10
    assert ledger.reconcile(BUSINESS_ID) == []

    with database.session() as session:
        badge_rows = session.scalar(
            select(func.count(UserBadge.id)).where(
                UserBadge.user_id == USER,
                UserBadge.badge_key == "points_collector",
            )
        )
    assert badge_rows == 1


def test_concurrent_duplicate_references_apply_once(ledger):
    workers = 8
    barrier = threading.Barrier(workers)

    def award(_):
        barrier.wait()
        return ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK, reference="feedback:42")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(award, range(workers)))

    assert sum(1 for result in results if result.applied) == 1
    assert ledger.get_balance(USER, BUSINESS_ID) == 10


def test_reconcile_reports_tampered_balance(ledger, database):
    ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK)
    ledger.award(USER + 1, BUSINESS_ID, 20, PointsReason.FEEDBACK)

    with database.session() as session:
        session.execute(
            update(PointsBalance).where(PointsBalance.user_id == USER).values(balance=999)
        )

    mismatches = ledger.reconcile(BUSINESS_ID)

    assert len(mismatches) == 1
    assert (mismatches[0].user_id, mismatches[0].balance, mismatches[0].events_total) == (USER, 999, 10)


def test_reconcile_reports_altered_events(ledger, database):
    ledger.award(USER, BUSINESS_ID, 10, PointsReason.FEEDBACK)

    with database.session() as session:
        session.execute(update(PointsEvent).values(amount=15))

    assert [m.events_total for m in ledger.reconcile(BUSINESS_ID)] == [15]
