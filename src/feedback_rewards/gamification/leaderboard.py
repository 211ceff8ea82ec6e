"""Leaderboards derived from the points ledger and completed referrals."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import func, select

from feedback_rewards.errors import InvalidLeaderboardQuery
from feedback_rewards.gamification.models import PointsBalance, Referral, ReferralStatus
from feedback_rewards.logging_config import get_logger
from feedback_rewards.storage.db import Database, db

logger = get_logger(__name__)

MAX_LIMIT = 100


class LeaderboardMetric(str, Enum):
    """Value a leaderboard ranks by."""
    POINTS = "points"
    REFERRAL_COUNT = "referral_count"

    @classmethod
    def parse(cls, value: "LeaderboardMetric | str") -> "LeaderboardMetric":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        if normalized == "referrals":
            return cls.REFERRAL_COUNT
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidLeaderboardQuery(f"Unknown leaderboard metric: {value!r}") from None


@dataclass(frozen=True)
class LeaderboardEntry:
    """One ranked user."""

    rank: int
    user_id: int
    value: int
    achieved_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "user_id": self.user_id,
            "value": self.value,
            "achieved_at": self.achieved_at.isoformat() if self.achieved_at else None,
        }


class LeaderboardRanker:
    """Ranks users of a business by points or completed referrals.

    Ties go to whoever reached the value first, then to the lower user ID, so
    repeated queries over unchanged data return the same order.
    """

    def __init__(self, database: Database | None = None):
        self.db = database or db

    def rank(
        self,
        business_id: int,
        metric: LeaderboardMetric | str,
        limit: int,
    ) -> list[LeaderboardEntry]:
        """Rank users for a business.

        Args:
            business_id: Business ID
            metric: "points" or "referral_count"
            limit: Maximum entries (1..100)

        Returns:
            Entries ordered best first

        Raises:
            InvalidLeaderboardQuery: If the metric is unknown or limit is not positive
        """
        metric = LeaderboardMetric.parse(metric)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidLeaderboardQuery(f"Leaderboard limit must be a positive integer, got {limit!r}")
        limit = min(limit, MAX_LIMIT)

        if metric is LeaderboardMetric.POINTS:
            query = (
                select(PointsBalance.user_id, PointsBalance.balance, PointsBalance.updated_at)
                .where(
                    PointsBalance.business_id == business_id,
                    PointsBalance.balance > 0,
                )
                .order_by(
                    PointsBalance.balance.desc(),
                    PointsBalance.updated_at.asc(),
                    PointsBalance.user_id.asc(),
                )
                .limit(limit)
            )
        else:
            value = func.count(Referral.id).label("value")
            achieved_at = func.max(Referral.completed_at).label("achieved_at")
            query = (
                select(Referral.referring_user_id, value, achieved_at)
                .where(
                    Referral.business_id == business_id,
                    Referral.status == ReferralStatus.COMPLETED.value,
                )
                .group_by(Referral.referring_user_id)
                .order_by(value.desc(), achieved_at.asc(), Referral.referring_user_id.asc())
                .limit(limit)
            )

        with self.db.session() as session:
            rows = session.execute(query).all()

        return [
            LeaderboardEntry(rank=position, user_id=user_id, value=int(value), achieved_at=achieved)
            for position, (user_id, value, achieved) in enumerate(rows, start=1)
        ]
