"""Gamification service: the operations exposed to the API and CLI."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from feedback_rewards.clock import Clock, system_clock
from feedback_rewards.errors import GamificationError
from feedback_rewards.gamification.codes import CodeGenerator
from feedback_rewards.gamification.completion import CompletionCoordinator
from feedback_rewards.gamification.leaderboard import LeaderboardEntry, LeaderboardMetric, LeaderboardRanker
from feedback_rewards.gamification.ledger import AwardResult, BalanceMismatch, PointsLedger
from feedback_rewards.gamification.models import PointsReason, Referral
from feedback_rewards.gamification.referrals import ReferralStore, UserEmailLookup
from feedback_rewards.gamification.settings_gate import SettingsGate, SettingsSnapshot
from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings
from feedback_rewards.storage.db import Database, db

logger = get_logger(__name__)


@dataclass
class FeedbackOutcome:
    """Result of rewarding a feedback submission.

    ``referral_error`` holds the error code when the attached referral could
    not be completed; the submission itself still counts.
    """

    points: AwardResult
    referral: Referral | None = None
    referral_error: str | None = None


class GamificationService:
    """Facade over the referral and gamification components."""

    def __init__(
        self,
        database: Database | None = None,
        clock: Clock | None = None,
        user_email_lookup: UserEmailLookup | None = None,
        code_generator: CodeGenerator | None = None,
    ):
        self.db = database or db
        self.clock = clock or system_clock
        self.settings_gate = SettingsGate(self.db, self.clock)
        self.referrals = ReferralStore(
            self.db,
            self.clock,
            self.settings_gate,
            code_generator=code_generator,
            user_email_lookup=user_email_lookup,
        )
        self.ledger = PointsLedger(self.db, self.clock, self.settings_gate)
        self.coordinator = CompletionCoordinator(
            self.db,
            self.clock,
            store=self.referrals,
            ledger=self.ledger,
            settings_gate=self.settings_gate,
        )
        self.leaderboard = LeaderboardRanker(self.db)
        self.logger = get_logger(__name__)

    # ==================== REFERRALS ====================

    def create_referral(self, referring_user_id: int, business_id: int, referred_email: str) -> Referral:
        """Create a referral and return it with its shareable code."""
        return self.referrals.create(referring_user_id, business_id, referred_email)

    @staticmethod
    def referral_link(code: str) -> str:
        return f"{settings.public_base_url.rstrip('/')}/ref/{code}"

    def record_click(
        self,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        referer: str | None = None,
    ) -> bool:
        """Track a visit to a referral link.

        Unknown codes are ignored.

        Returns:
            True if the click was recorded
        """
        referral = self.referrals.get_by_code(code)
        if referral is None:
            self.logger.debug("referral_click_unknown_code", code=code)
            return False
        self.referrals.record_click(referral.id, ip_address=ip_address, user_agent=user_agent, referer=referer)
        return True

    def record_share(self, code: str, platform: str, url: str, user_id: int | None = None) -> bool:
        """Track a social share of a referral link. Unknown codes are ignored."""
        referral = self.referrals.get_by_code(code)
        if referral is None:
            return False
        self.referrals.record_share(referral.id, platform, url, user_id=user_id)
        return True

    def complete_referral(self, code: str, completing_user_id: int) -> Referral:
        """Complete a referral and award the referrer. See CompletionCoordinator."""
        return self.coordinator.complete(code, completing_user_id)

    def cancel_referral(self, code: str, referring_user_id: int) -> Referral:
        return self.referrals.cancel(code, referring_user_id)

    def expire_stale_referrals(self, now: datetime | None = None) -> int:
        return self.referrals.expire_stale(now)

    # ==================== SETTINGS ====================

    def provision_business(self, business_id: int) -> SettingsSnapshot:
        return self.settings_gate.provision(business_id)

    def get_settings(self, business_id: int) -> SettingsSnapshot:
        return self.settings_gate.get(business_id)

    def update_settings(self, business_id: int, values: dict[str, Any]) -> SettingsSnapshot:
        return self.settings_gate.update(business_id, values)

    # ==================== POINTS ====================

    def award_welcome_bonus(self, user_id: int, business_id: int) -> AwardResult:
        """Award the business's welcome bonus. Only the first call pays out."""
        snapshot = self.settings_gate.get(business_id)
        return self.ledger.award(
            user_id,
            business_id,
            snapshot.welcome_bonus_points,
            PointsReason.WELCOME_BONUS,
            reference=f"welcome:{user_id}",
            settings=snapshot,
        )

    def record_feedback(
        self,
        user_id: int,
        business_id: int,
        feedback_id: int | str,
        referral_code: str | None = None,
    ) -> FeedbackOutcome:
        """Reward a feedback submission and complete its referral, if any.

        The feedback award is idempotent per feedback_id. Referral completion
        is best-effort: any failure is logged and reported in the outcome but
        never raised, so it cannot fail the submission that triggered it.

        Args:
            user_id: User who submitted the feedback
            business_id: Business that received it
            feedback_id: Feedback submission ID
            referral_code: Referral code the user arrived with

        Returns:
            Feedback outcome
        """
        snapshot = self.settings_gate.get(business_id)
        points = self.ledger.award(
            user_id,
            business_id,
            snapshot.points_per_feedback,
            PointsReason.FEEDBACK,
            reference=f"feedback:{feedback_id}",
            settings=snapshot,
        )
        if points.amount == 0:
            points.new_badges = self.ledger.evaluate_badges(user_id, business_id, settings=snapshot)
        outcome = FeedbackOutcome(points=points)

        if referral_code:
            try:
                outcome.referral = self.coordinator.complete(referral_code, user_id)
            except GamificationError as e:
                self.logger.warning(
                    "feedback_referral_not_applied",
                    user_id=user_id,
                    business_id=business_id,
                    referral_code=referral_code,
                    reason=e.code,
                )
                outcome.referral_error = e.code

        return outcome

    # ==================== READS ====================

    def get_leaderboard(
        self,
        business_id: int,
        metric: LeaderboardMetric | str = LeaderboardMetric.POINTS,
        limit: int = 10,
    ) -> list[LeaderboardEntry]:
        return self.leaderboard.rank(business_id, metric, limit)

    def get_user_rewards(self, user_id: int, business_id: int) -> dict[str, Any]:
        """Points, badges and referrals of a user within a business.

        Returns:
            Dict with points, badges, referrals and settings
        """
        snapshot = self.settings_gate.get(business_id)
        referrals = self.referrals.list_for_user(user_id, business_id)
        return {
            "points": {
                "balance": self.ledger.get_balance(user_id, business_id),
                "recent": [
                    {
                        "amount": event.amount,
                        "reason": event.reason,
                        "created_at": event.created_at.isoformat(),
                    }
                    for event in self.ledger.get_events(user_id, business_id, limit=10)
                ],
            },
            "badges": self.ledger.get_badges(user_id, business_id, settings=snapshot),
            "referrals": [
                {**referral.to_dict(), "link": self.referral_link(referral.code)}
                for referral in referrals
            ],
            "settings": snapshot.to_dict(),
        }

    def reconcile_ledger(self, business_id: int) -> list[BalanceMismatch]:
        return self.ledger.reconcile(business_id)


# Singleton instance
gamification_service = GamificationService()
