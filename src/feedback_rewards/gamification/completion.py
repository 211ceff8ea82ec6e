"""Referral completion.

A referral moves pending -> completed at most once. The status check and the
status write happen in a single conditional UPDATE (``WHERE status =
'pending'``), and the referrer's point award runs in the same transaction, so
N concurrent completions of one code produce exactly one success and one
award; the others fail with ReferralNotPending.
"""

from sqlalchemy import select, update

from feedback_rewards.clock import Clock, system_clock
from feedback_rewards.errors import ReferralExpired, ReferralNotFound, ReferralNotPending, SelfReferral
from feedback_rewards.gamification.codes import normalize_code
from feedback_rewards.gamification.ledger import PointsLedger
from feedback_rewards.gamification.models import PointsReason, Referral, ReferralStatus
from feedback_rewards.gamification.referrals import ReferralStore
from feedback_rewards.gamification.settings_gate import SettingsGate
from feedback_rewards.logging_config import get_logger
from feedback_rewards.storage.db import Database, db

logger = get_logger(__name__)


class CompletionCoordinator:
    """Enforces at-most-once completion and pays out the referral reward."""

    def __init__(
        self,
        database: Database | None = None,
        clock: Clock | None = None,
        store: ReferralStore | None = None,
        ledger: PointsLedger | None = None,
        settings_gate: SettingsGate | None = None,
    ):
        self.db = database or db
        self.clock = clock or system_clock
        self.settings_gate = settings_gate or SettingsGate(self.db, self.clock)
        self.store = store or ReferralStore(self.db, self.clock, self.settings_gate)
        self.ledger = ledger or PointsLedger(self.db, self.clock, self.settings_gate)
        self.logger = get_logger(__name__)

    def complete(self, code: str, completing_user_id: int) -> Referral:
        """Complete a referral and award the referrer.

        Args:
            code: Referral code
            completing_user_id: The referred user performing the qualifying action

        Returns:
            The completed referral

        Raises:
            ReferralNotFound: If no referral has this code
            ReferralNotPending: If the referral is completed, expired or
                cancelled, including losing a race to a concurrent completion
            ReferralExpired: If the referral's expiry has passed
            SelfReferral: If the referrer tries to complete their own referral
            SettingsNotFound: If the business was never provisioned
        """
        code = normalize_code(code)
        referral = self.store.get_by_code(code)
        if referral is None:
            raise ReferralNotFound(f"Referral {code} not found")

        if not referral.is_pending:
            raise ReferralNotPending(code, referral.status)

        now = self.clock.now()
        if referral.expires_at < now:
            self.store.mark_expired(referral.id)
            self.logger.info("referral_completion_expired", referral_id=referral.id, code=code)
            raise ReferralExpired(f"Referral {code} expired at {referral.expires_at.isoformat()}")

        if completing_user_id == referral.referring_user_id:
            self.logger.info("self_referral_completion_blocked", referral_id=referral.id, user_id=completing_user_id)
            raise SelfReferral()

        with self.db.session() as session:
            result = session.execute(
                update(Referral)
                .where(
                    Referral.id == referral.id,
                    Referral.status == ReferralStatus.PENDING.value,
                )
                .values(
                    status=ReferralStatus.COMPLETED.value,
                    completed_at=now,
                    completed_by_user_id=completing_user_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = session.scalar(select(Referral.status).where(Referral.id == referral.id))
                self.logger.info("referral_completion_lost_race", referral_id=referral.id, status=current)
                raise ReferralNotPending(code, current)

            snapshot = self.settings_gate.get(referral.business_id, session=session)
            award = self.ledger.award(
                referral.referring_user_id,
                referral.business_id,
                snapshot.points_per_referral,
                PointsReason.REFERRAL,
                reference=f"referral:{referral.id}",
                settings=snapshot,
                session=session,
            )
            if award.amount == 0:
                # Referral-count badges still apply when referrals earn no points
                award.new_badges = self.ledger.evaluate_badges(
                    referral.referring_user_id, referral.business_id, settings=snapshot, session=session
                )

            completed = session.get(Referral, referral.id)

        self.logger.info(
            "referral_completed",
            referral_id=referral.id,
            code=code,
            business_id=referral.business_id,
            referring_user_id=referral.referring_user_id,
            completed_by_user_id=completing_user_id,
            points_awarded=award.amount,
            new_badges=award.new_badges,
        )
        return completed
