"""Referral and gamification database models."""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from feedback_rewards.storage.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ReferralStatus(str, Enum):
    """Referral lifecycle states. Everything except PENDING is terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PointsReason(str, Enum):
    """Why points were awarded."""
    REFERRAL = "referral"
    FEEDBACK = "feedback"
    WELCOME_BONUS = "welcome_bonus"


class Referral(Base):
    """A tracked introduction from a user to a prospective user.

    Status leaves PENDING at most once, always through a conditional update.
    Rows are never deleted; completed rows feed the referral leaderboard.
    """
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True)
    referring_user_id = Column(Integer, nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    referred_email = Column(String(255), nullable=False)
    code = Column(String(32), unique=True, nullable=False, index=True)

    status = Column(String(16), nullable=False, default=ReferralStatus.PENDING.value, index=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    completed_by_user_id = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Relationships
    clicks = relationship("ReferralClick", back_populates="referral", cascade="all, delete-orphan")
    shares = relationship("SocialShare", back_populates="referral", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_referrals_business_status", "business_id", "status"),
        # At most one pending referral per referrer and email
        Index(
            "uq_referrals_pending_email",
            "business_id",
            "referring_user_id",
            "referred_email",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == ReferralStatus.PENDING.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "referring_user_id": self.referring_user_id,
            "business_id": self.business_id,
            "referred_email": self.referred_email,
            "referral_code": self.code,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by_user_id": self.completed_by_user_id,
        }

    def __repr__(self):
        return f"<Referral(code={self.code}, status={self.status})>"


class ReferralClick(Base):
    """A visit to a referral link. Append-only."""
    __tablename__ = "referral_clicks"

    id = Column(Integer, primary_key=True)
    referral_id = Column(Integer, ForeignKey("referrals.id", ondelete="CASCADE"), nullable=False, index=True)
    occurred_at = Column(DateTime, nullable=False, default=_utcnow)

    # Origin metadata, stored as given
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    referer = Column(String(1024), nullable=True)

    referral = relationship("Referral", back_populates="clicks")


class SocialShare(Base):
    """A share of a referral link on a social platform. Append-only."""
    __tablename__ = "referral_shares"

    id = Column(Integer, primary_key=True)
    referral_id = Column(Integer, ForeignKey("referrals.id", ondelete="CASCADE"), nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    platform = Column(String(32), nullable=False)
    url = Column(String(1024), nullable=False)
    occurred_at = Column(DateTime, nullable=False, default=_utcnow)

    referral = relationship("Referral", back_populates="shares")


class PointsBalance(Base):
    """Per-user, per-business point accumulator.

    balance is only ever changed by an atomic ``balance = balance + n``.
    updated_at is the time the current balance was reached.
    """
    __tablename__ = "points_balances"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "business_id", name="uq_points_balances_user_business"),
    )

    def __repr__(self):
        return f"<PointsBalance(user={self.user_id}, business={self.business_id}, balance={self.balance})>"


class PointsEvent(Base):
    """A single point award. Append-only; balances are the sum of these."""
    __tablename__ = "points_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(String(32), nullable=False)
    reference = Column(String(128), nullable=True)  # Idempotency reference, e.g. "referral:42"
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("business_id", "reference", name="uq_points_events_business_reference"),
        Index("ix_points_events_user_business_reason", "user_id", "business_id", "reason"),
    )


class UserBadge(Base):
    """A badge unlocked by a user. Awarded at most once per key."""
    __tablename__ = "user_badges"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    business_id = Column(Integer, nullable=False, index=True)
    badge_key = Column(String(64), nullable=False)
    awarded_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "business_id", "badge_key", name="uq_user_badges_user_business_key"),
    )

    def __repr__(self):
        return f"<UserBadge(user={self.user_id}, key={self.badge_key})>"


class GamificationSettings(Base):
    """Per-business gamification configuration.

    badge_rules is an ordered list of
    ``{"badge_key", "metric", "threshold", "name", "description", "icon"}``.
    """
    __tablename__ = "gamification_settings"

    business_id = Column(Integer, primary_key=True, autoincrement=False)
    referral_enabled = Column(Boolean, nullable=False, default=True)
    points_per_feedback = Column(Integer, nullable=False, default=10)
    points_per_referral = Column(Integer, nullable=False, default=50)
    welcome_bonus_points = Column(Integer, nullable=False, default=25)
    badge_rules = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<GamificationSettings(business={self.business_id}, referral_enabled={self.referral_enabled})>"
