"""Points and badges ledger.

Balances change only through an atomic ``balance = balance + amount`` upsert
and every award is recorded as a PointsEvent, so concurrent awards never lose
an update and a balance can always be audited against its events. Badges are
inserted with ON CONFLICT DO NOTHING on (user, business, badge_key): when two
awards cross the same threshold at once, one insert wins and the other is a
harmless no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from feedback_rewards.clock import Clock, system_clock
from feedback_rewards.errors import InvalidAmount
from feedback_rewards.gamification.models import (
    PointsBalance,
    PointsEvent,
    PointsReason,
    Referral,
    ReferralStatus,
    UserBadge,
)
from feedback_rewards.gamification.settings_gate import BadgeMetric, SettingsGate, SettingsSnapshot
from feedback_rewards.logging_config import get_logger
from feedback_rewards.storage.db import Database, db, dialect_insert

logger = get_logger(__name__)


@dataclass
class AwardResult:
    """Outcome of a single award."""

    user_id: int
    business_id: int
    amount: int
    balance: int
    new_badges: list[str] = field(default_factory=list)
    duplicate: bool = False

    @property
    def applied(self) -> bool:
        return self.amount > 0 and not self.duplicate


@dataclass(frozen=True)
class BalanceMismatch:
    """A balance that disagrees with the sum of its events."""

    user_id: int
    business_id: int
    balance: int
    events_total: int


class PointsLedger:
    """Awards points and unlocks badges."""

    def __init__(
        self,
        database: Database | None = None,
        clock: Clock | None = None,
        settings_gate: SettingsGate | None = None,
    ):
        self.db = database or db
        self.clock = clock or system_clock
        self.settings_gate = settings_gate or SettingsGate(self.db, self.clock)
        self.logger = get_logger(__name__)

    # ==================== AWARDING ====================

    def award(
        self,
        user_id: int,
        business_id: int,
        amount: int,
        reason: PointsReason | str,
        reference: str | None = None,
        settings: SettingsSnapshot | None = None,
        session: Session | None = None,
    ) -> AwardResult:
        """Award points to a user and unlock any newly crossed badges.

        Args:
            user_id: User receiving the points
            business_id: Business the points belong to
            amount: Points to add (0 is a no-op)
            reason: Why the points are awarded
            reference: Idempotency reference; a repeated reference is a no-op
            settings: Settings snapshot already read by the caller
            session: Join the caller's transaction

        Returns:
            Award result with the new balance and newly unlocked badges

        Raises:
            InvalidAmount: If amount is not a non-negative integer
            SettingsNotFound: If the business was never provisioned
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidAmount(f"Invalid point amount: {amount!r}", amount=amount)
        reason = PointsReason(reason)

        if session is not None:
            return self._award(session, user_id, business_id, amount, reason, reference, settings)
        with self.db.session() as own_session:
            return self._award(own_session, user_id, business_id, amount, reason, reference, settings)

    def _award(
        self,
        session: Session,
        user_id: int,
        business_id: int,
        amount: int,
        reason: PointsReason,
        reference: str | None,
        settings: SettingsSnapshot | None,
    ) -> AwardResult:
        snapshot = settings or self.settings_gate.get(business_id, session=session)

        if amount == 0:
            return AwardResult(user_id, business_id, 0, self._balance(session, user_id, business_id))

        now = self.clock.now()

        events = PointsEvent.__table__
        stmt = dialect_insert(session, events).values(
            user_id=user_id,
            business_id=business_id,
            amount=amount,
            reason=reason.value,
            reference=reference,
            created_at=now,
        )
        if reference is not None:
            stmt = stmt.on_conflict_do_nothing(index_elements=[events.c.business_id, events.c.reference])
        if session.execute(stmt).rowcount == 0:
            self.logger.info(
                "points_award_duplicate",
                user_id=user_id,
                business_id=business_id,
                reference=reference,
            )
            return AwardResult(
                user_id, business_id, amount, self._balance(session, user_id, business_id), duplicate=True
            )

        balances = PointsBalance.__table__
        upsert = dialect_insert(session, balances).values(
            user_id=user_id,
            business_id=business_id,
            balance=amount,
            updated_at=now,
        )
        upsert = upsert.on_conflict_do_update(
            index_elements=[balances.c.user_id, balances.c.business_id],
            set_={
                "balance": balances.c.balance + upsert.excluded.balance,
                "updated_at": upsert.excluded.updated_at,
            },
        )
        session.execute(upsert)

        balance = self._balance(session, user_id, business_id)
        new_badges = self._evaluate(session, user_id, business_id, snapshot, now)

        self.logger.info(
            "points_awarded",
            user_id=user_id,
            business_id=business_id,
            amount=amount,
            reason=reason.value,
            new_balance=balance,
            new_badges=new_badges,
        )
        return AwardResult(user_id, business_id, amount, balance, new_badges)

    # ==================== BADGES ====================

    def evaluate_badges(
        self,
        user_id: int,
        business_id: int,
        settings: SettingsSnapshot | None = None,
        session: Session | None = None,
    ) -> list[str]:
        """Unlock every badge whose threshold the user has reached.

        Returns:
            Keys of badges unlocked by this call
        """
        if session is not None:
            snapshot = settings or self.settings_gate.get(business_id, session=session)
            return self._evaluate(session, user_id, business_id, snapshot, self.clock.now())
        with self.db.session() as own_session:
            snapshot = settings or self.settings_gate.get(business_id, session=own_session)
            return self._evaluate(own_session, user_id, business_id, snapshot, self.clock.now())

    def _evaluate(
        self,
        session: Session,
        user_id: int,
        business_id: int,
        snapshot: SettingsSnapshot,
        now: datetime,
    ) -> list[str]:
        rules = snapshot.rules_in_order()
        if not rules:
            return []

        owned = set(session.scalars(
            select(UserBadge.badge_key).where(
                UserBadge.user_id == user_id,
                UserBadge.business_id == business_id,
            )
        ))

        values: dict[BadgeMetric, int] = {}
        badges = UserBadge.__table__
        unlocked = []
        for rule in rules:
            if rule.badge_key in owned:
                continue
            if rule.metric not in values:
                values[rule.metric] = self._metric(session, rule.metric, user_id, business_id)
            if values[rule.metric] < rule.threshold:
                continue

            stmt = dialect_insert(session, badges).values(
                user_id=user_id,
                business_id=business_id,
                badge_key=rule.badge_key,
                awarded_at=now,
            ).on_conflict_do_nothing(
                index_elements=[badges.c.user_id, badges.c.business_id, badges.c.badge_key]
            )
            if session.execute(stmt).rowcount == 1:
                unlocked.append(rule.badge_key)
                self.logger.info(
                    "badge_awarded",
                    user_id=user_id,
                    business_id=business_id,
                    badge_key=rule.badge_key,
                    metric=rule.metric.value,
                    threshold=rule.threshold,
                )
        return unlocked

    def _metric(self, session: Session, metric: BadgeMetric, user_id: int, business_id: int) -> int:
        if metric is BadgeMetric.POINTS:
            return self._balance(session, user_id, business_id)
        if metric is BadgeMetric.REFERRAL_COUNT:
            return session.scalar(
                select(func.count(Referral.id)).where(
                    Referral.referring_user_id == user_id,
                    Referral.business_id == business_id,
                    Referral.status == ReferralStatus.COMPLETED.value,
                )
            ) or 0
        return session.scalar(
            select(func.count(PointsEvent.id)).where(
                PointsEvent.user_id == user_id,
                PointsEvent.business_id == business_id,
                PointsEvent.reason == PointsReason.FEEDBACK.value,
            )
        ) or 0

    # ==================== READS ====================

    def _balance(self, session: Session, user_id: int, business_id: int) -> int:
        return session.scalar(
            select(PointsBalance.balance).where(
                PointsBalance.user_id == user_id,
                PointsBalance.business_id == business_id,
            )
        ) or 0

    def get_balance(self, user_id: int, business_id: int) -> int:
        """Current point balance (0 if the user never earned points)."""
        with self.db.session() as session:
            return self._balance(session, user_id, business_id)

    def get_badges(
        self,
        user_id: int,
        business_id: int,
        settings: SettingsSnapshot | None = None,
    ) -> list[dict[str, Any]]:
        """Badges a user holds, oldest first, with display details.

        Args:
            user_id: User ID
            business_id: Business ID
            settings: Settings snapshot used to look up badge names

        Returns:
            List of badge dicts
        """
        with self.db.session() as session:
            snapshot = settings or self.settings_gate.get(business_id, session=session)
            rows = session.scalars(
                select(UserBadge).where(
                    UserBadge.user_id == user_id,
                    UserBadge.business_id == business_id,
                ).order_by(UserBadge.awarded_at.asc(), UserBadge.id.asc())
            ).all()

        rules = {rule.badge_key: rule for rule in snapshot.badge_rules}
        badges = []
        for row in rows:
            rule = rules.get(row.badge_key)
            badges.append({
                "badge_key": row.badge_key,
                "badge_name": rule.name if rule else row.badge_key,
                "badge_description": rule.description if rule else "",
                "badge_icon": rule.icon if rule else "",
                "awarded_at": row.awarded_at.isoformat(),
            })
        return badges

    def get_events(
        self,
        user_id: int,
        business_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PointsEvent]:
        """Point award history, newest first."""
        with self.db.session() as session:
            return list(session.scalars(
                select(PointsEvent).where(
                    PointsEvent.user_id == user_id,
                    PointsEvent.business_id == business_id,
                ).order_by(
                    PointsEvent.created_at.desc(), PointsEvent.id.desc()
                ).offset(offset).limit(limit)
            ))

    # ==================== AUDIT ====================

    def reconcile(self, business_id: int) -> list[BalanceMismatch]:
        """Compare every balance in a business with the sum of its events.

        Args:
            business_id: Business ID

        Returns:
            Mismatches, empty when the ledger is consistent
        """
        with self.db.session() as session:
            balances = dict(session.execute(
                select(PointsBalance.user_id, PointsBalance.balance).where(
                    PointsBalance.business_id == business_id
                )
            ).all())
            totals = dict(session.execute(
                select(PointsEvent.user_id, func.sum(PointsEvent.amount)).where(
                    PointsEvent.business_id == business_id
                ).group_by(PointsEvent.user_id)
            ).all())

        mismatches = []
        for user_id in sorted(set(balances) | set(totals)):
            balance = int(balances.get(user_id) or 0)
            total = int(totals.get(user_id) or 0)
            if balance != total:
                mismatches.append(BalanceMismatch(user_id, business_id, balance, total))

        if mismatches:
            self.logger.error("ledger_mismatch", business_id=business_id, count=len(mismatches))
        else:
            self.logger.info("ledger_reconciled", business_id=business_id, users=len(balances))
        return mismatches
