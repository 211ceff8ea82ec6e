"""User account model."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from feedback_rewards.storage.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserAccount(Base):
    """Customer account.

    The engine only needs the email, to reject self-referrals.
    """
    __tablename__ = "user_accounts"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self):
        return f"<UserAccount(id={self.id}, email={self.email})>"
