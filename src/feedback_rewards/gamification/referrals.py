"""Referral store: creation, lookup, click tracking and status sweeps."""

import re
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feedback_rewards.auth.models import UserAccount
from feedback_rewards.clock import Clock, system_clock
from feedback_rewards.errors import (
    DuplicatePendingReferral,
    InvalidEmail,
    ReferralNotFound,
    ReferralNotPending,
    ReferralsDisabled,
    SelfReferral,
    UnknownUser,
)
from feedback_rewards.gamification.codes import CodeGenerator, normalize_code
from feedback_rewards.gamification.models import Referral, ReferralClick, ReferralStatus, SocialShare
from feedback_rewards.gamification.settings_gate import SettingsGate
from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings
from feedback_rewards.storage.db import Database, db

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SHARE_PLATFORMS = {"facebook", "twitter", "linkedin", "whatsapp", "email", "other"}

UserEmailLookup = Callable[[int], str | None]


def _clip(value: str | None, length: int) -> str | None:
    return value[:length] if value else None


class ReferralStore:
    """Owns referral records and their status transitions.

    Every transition out of PENDING is a conditional UPDATE guarded by
    ``status = 'pending'``, so concurrent sweeps, cancellations and
    completions can never both succeed on the same referral.
    """

    def __init__(
        self,
        database: Database | None = None,
        clock: Clock | None = None,
        settings_gate: SettingsGate | None = None,
        code_generator: CodeGenerator | None = None,
        user_email_lookup: UserEmailLookup | None = None,
        validity_days: int | None = None,
    ):
        self.db = database or db
        self.clock = clock or system_clock
        self.settings_gate = settings_gate or SettingsGate(self.db, self.clock)
        self.code_generator = code_generator or CodeGenerator()
        self.user_email_lookup = user_email_lookup or self._lookup_user_email
        self.validity = timedelta(days=validity_days or settings.referral_validity_days)
        if self.validity <= timedelta(0):
            raise ValueError("Referral validity window must be positive")
        self.logger = get_logger(__name__)

    def _lookup_user_email(self, user_id: int) -> str | None:
        with self.db.session() as session:
            return session.scalar(
                select(UserAccount.email).where(
                    UserAccount.id == user_id,
                    UserAccount.is_active == True,  # noqa: E712
                )
            )

    # ==================== CREATION ====================

    def create(self, referring_user_id: int, business_id: int, referred_email: str) -> Referral:
        """Create a pending referral.

        Args:
            referring_user_id: User sending the referral
            business_id: Business the referral is for
            referred_email: Email of the person being referred

        Returns:
            The new referral

        Raises:
            InvalidEmail: If referred_email is malformed
            UnknownUser: If the referring user does not exist
            SelfReferral: If referred_email is the referring user's own email
            SettingsNotFound: If the business was never provisioned
            ReferralsDisabled: If the business has referrals switched off
            DuplicatePendingReferral: If an identical referral is still pending
            GenerationExhausted: If no unique code could be generated
        """
        email = (referred_email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise InvalidEmail(f"Invalid email format: {referred_email!r}")

        referrer_email = self.user_email_lookup(referring_user_id)
        if not referrer_email:
            raise UnknownUser(f"User {referring_user_id} not found")
        if referrer_email.strip().lower() == email:
            self.logger.info("self_referral_blocked", user_id=referring_user_id, business_id=business_id)
            raise SelfReferral()

        snapshot = self.settings_gate.get(business_id)
        if not snapshot.referral_enabled:
            raise ReferralsDisabled()

        try:
            with self.db.session() as session:
                duplicate = self._find_pending(session, business_id, referring_user_id, email)
                if duplicate is not None:
                    raise DuplicatePendingReferral(
                        f"A pending referral to {email} already exists",
                        referral_id=duplicate,
                    )

                code = self.code_generator.generate(
                    business_id,
                    lambda candidate: self._code_exists(session, candidate),
                )

                now = self.clock.now()
                expires_at = now + self.validity

                referral = Referral(
                    referring_user_id=referring_user_id,
                    business_id=business_id,
                    referred_email=email,
                    code=code,
                    status=ReferralStatus.PENDING.value,
                    created_at=now,
                    expires_at=expires_at,
                )
                session.add(referral)
                session.flush()
        except IntegrityError as exc:
            # A concurrent request inserted the same pending referral first
            with self.db.session() as session:
                duplicate = self._find_pending(session, business_id, referring_user_id, email)
            if duplicate is None:
                raise
            self.logger.info(
                "duplicate_referral_race_lost",
                referring_user_id=referring_user_id,
                business_id=business_id,
            )
            raise DuplicatePendingReferral(
                f"A pending referral to {email} already exists",
                referral_id=duplicate,
            ) from exc

        self.logger.info(
            "referral_created",
            referral_id=referral.id,
            referring_user_id=referring_user_id,
            business_id=business_id,
            code=code,
            expires_at=expires_at.isoformat(),
        )
        return referral

    def _find_pending(self, session: Session, business_id: int, referring_user_id: int, email: str) -> int | None:
        return session.scalar(
            select(Referral.id).where(
                Referral.business_id == business_id,
                Referral.referring_user_id == referring_user_id,
                Referral.referred_email == email,
                Referral.status == ReferralStatus.PENDING.value,
            ).limit(1)
        )

    def _code_exists(self, session: Session, code: str) -> bool:
        return session.scalar(select(Referral.id).where(Referral.code == code).limit(1)) is not None

    # ==================== LOOKUP ====================

    def get(self, referral_id: int) -> Referral | None:
        """Get referral by ID."""
        with self.db.session() as session:
            return session.get(Referral, referral_id)

    def get_by_code(self, code: str) -> Referral | None:
        """Look up a referral by code.

        Args:
            code: Referral code (case and surrounding whitespace ignored)

        Returns:
            Referral, or None if no referral has this code
        """
        code = normalize_code(code)
        if not code:
            return None
        with self.db.session() as session:
            return session.scalar(select(Referral).where(Referral.code == code))

    def list_for_user(self, user_id: int, business_id: int) -> list[Referral]:
        """Referrals sent by a user, newest first."""
        with self.db.session() as session:
            return list(session.scalars(
                select(Referral).where(
                    Referral.referring_user_id == user_id,
                    Referral.business_id == business_id,
                ).order_by(Referral.created_at.desc(), Referral.id.desc())
            ))

    def count_clicks(self, referral_id: int) -> int:
        with self.db.session() as session:
            return session.scalar(
                select(func.count(ReferralClick.id)).where(ReferralClick.referral_id == referral_id)
            ) or 0

    # ==================== TRACKING ====================

    def record_click(
        self,
        referral_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        referer: str | None = None,
    ) -> ReferralClick:
        """Append a click. Clicks on expired or completed referrals are kept too."""
        with self.db.session() as session:
            click = ReferralClick(
                referral_id=referral_id,
                occurred_at=self.clock.now(),
                ip_address=_clip(ip_address, 64),
                user_agent=_clip(user_agent, 512),
                referer=_clip(referer, 1024),
            )
            session.add(click)
            session.flush()

        self.logger.info("referral_click_tracked", referral_id=referral_id)
        return click

    def record_share(
        self,
        referral_id: int,
        platform: str,
        url: str,
        user_id: int | None = None,
    ) -> SocialShare:
        """Append a social share of a referral link."""
        platform = (platform or "").strip().lower()
        if platform not in SHARE_PLATFORMS:
            platform = "other"

        with self.db.session() as session:
            referral = session.get(Referral, referral_id)
            if referral is None:
                raise ReferralNotFound(f"Referral {referral_id} not found")
            share = SocialShare(
                referral_id=referral_id,
                business_id=referral.business_id,
                user_id=user_id,
                platform=platform,
                url=url[:1024],
                occurred_at=self.clock.now(),
            )
            session.add(share)
            session.flush()

        self.logger.info("referral_share_tracked", referral_id=referral_id, platform=platform)
        return share

    # ==================== TRANSITIONS ====================

    def expire_stale(self, now: datetime | None = None) -> int:
        """Expire every pending referral whose expiry has passed.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            Number of referrals expired by this run
        """
        now = now or self.clock.now()
        with self.db.session() as session:
            result = session.execute(
                update(Referral)
                .where(
                    Referral.status == ReferralStatus.PENDING.value,
                    Referral.expires_at < now,
                )
                .values(status=ReferralStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        self.logger.info("stale_referrals_expired", count=count, as_of=now.isoformat())
        return count

    def mark_expired(self, referral_id: int) -> bool:
        """Expire a single referral if it is still pending.

        Returns:
            True if this call performed the transition
        """
        with self.db.session() as session:
            result = session.execute(
                update(Referral)
                .where(
                    Referral.id == referral_id,
                    Referral.status == ReferralStatus.PENDING.value,
                )
                .values(status=ReferralStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            flipped = result.rowcount == 1

        if flipped:
            self.logger.info("referral_expired", referral_id=referral_id)
        return flipped

    def cancel(self, code: str, referring_user_id: int) -> Referral:
        """Cancel a pending referral. Only its sender may cancel it.

        Raises:
            ReferralNotFound: If the code is unknown or belongs to another user
            ReferralNotPending: If the referral already left PENDING
        """
        referral = self.get_by_code(code)
        if referral is None or referral.referring_user_id != referring_user_id:
            raise ReferralNotFound(f"Referral {normalize_code(code)} not found")

        now = self.clock.now()
        with self.db.session() as session:
            result = session.execute(
                update(Referral)
                .where(
                    Referral.id == referral.id,
                    Referral.status == ReferralStatus.PENDING.value,
                )
                .values(status=ReferralStatus.CANCELLED.value, cancelled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = session.scalar(select(Referral.status).where(Referral.id == referral.id))
                raise ReferralNotPending(referral.code, current)

        self.logger.info("referral_cancelled", referral_id=referral.id, user_id=referring_user_id)
        return self.get(referral.id)
