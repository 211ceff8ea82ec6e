"""Referral and gamification engine.

- Businesses configure points and badges through the settings gate
- Users send referrals; each gets a unique code valid for 30 days
- Completing a referral awards the referrer exactly once
- Points unlock badges and feed the leaderboards
"""

from feedback_rewards.gamification.models import (
    GamificationSettings,
    PointsBalance,
    PointsEvent,
    PointsReason,
    Referral,
    ReferralClick,
    ReferralStatus,
    SocialShare,
    UserBadge,
)
from feedback_rewards.gamification.service import FeedbackOutcome, GamificationService, gamification_service

__all__ = [
    "FeedbackOutcome",
    "GamificationService",
    "GamificationSettings",
    "PointsBalance",
    "PointsEvent",
    "PointsReason",
    "Referral",
    "ReferralClick",
    "ReferralStatus",
    "SocialShare",
    "UserBadge",
    "gamification_service",
]
