"""Typed errors raised by the referral and gamification engine.

Every error carries a stable ``code`` and the HTTP status the API renders it
with. Callers branch on the category classes:

- ValidationFailed: the input is malformed, fix it and call again
- PolicyViolation: the request is well formed but not allowed
- ReferralStateError: the referral is not in a state that allows the action
- SettingsNotFound: the business was never provisioned
- InfrastructureError: the store or code space failed, retry with backoff
"""

from typing import Any


class GamificationError(Exception):
    """Base class for all engine errors."""

    code = "gamification_error"
    http_status = 500

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)


# ==================== VALIDATION ====================


class ValidationFailed(GamificationError):
    """Invalid input."""

    code = "validation_failed"
    http_status = 400


class InvalidSettings(ValidationFailed):
    """Invalid gamification settings."""

    code = "invalid_settings"

    def __init__(self, errors: list[dict[str, Any]]):
        self.errors = errors
        fields = ", ".join(".".join(str(p) for p in e.get("loc", ())) or "?" for e in errors)
        super().__init__(f"Invalid gamification settings: {fields}", errors=errors)


class InvalidEmail(ValidationFailed):
    """Invalid email format."""

    code = "invalid_email"


class InvalidAmount(ValidationFailed):
    """Point amounts must be non-negative integers."""

    code = "invalid_amount"


class InvalidLeaderboardQuery(ValidationFailed):
    """Invalid leaderboard query."""

    code = "invalid_leaderboard_query"


class UnknownUser(ValidationFailed):
    """User not found."""

    code = "unknown_user"
    http_status = 404


# ==================== POLICY ====================


class PolicyViolation(GamificationError):
    """Action not allowed."""

    code = "policy_violation"
    http_status = 403


class SelfReferral(PolicyViolation):
    """You cannot refer yourself."""

    code = "self_referral"
    http_status = 400


class ReferralsDisabled(PolicyViolation):
    """Referrals are not enabled for this business."""

    code = "referrals_disabled"


class DuplicatePendingReferral(PolicyViolation):
    """A pending referral to this email already exists."""

    code = "duplicate_pending_referral"
    http_status = 409


# ==================== STATE ====================


class ReferralStateError(GamificationError):
    """Referral is not in a usable state."""

    code = "referral_state"
    http_status = 409


class ReferralNotFound(ReferralStateError):
    """Invalid referral code."""

    code = "referral_not_found"
    http_status = 404


class ReferralNotPending(ReferralStateError):
    """Referral already completed, expired or cancelled."""

    code = "referral_not_pending"

    def __init__(self, code: str, status: str | None = None):
        self.referral_code = code
        self.status = status
        super().__init__(
            f"Referral {code} is not pending" + (f" (status: {status})" if status else ""),
            referral_code=code,
            status=status,
        )


class ReferralExpired(ReferralStateError):
    """Referral has expired."""

    code = "referral_expired"
    http_status = 410


# ==================== PROVISIONING ====================


class SettingsNotFound(GamificationError):
    """Business has no gamification settings."""

    code = "settings_not_found"
    http_status = 500

    def __init__(self, business_id: int):
        self.business_id = business_id
        super().__init__(
            f"No gamification settings for business {business_id}",
            business_id=business_id,
        )


# ==================== INFRASTRUCTURE ====================


class InfrastructureError(GamificationError):
    """Infrastructure failure."""

    code = "infrastructure_error"
    http_status = 503


class StoreUnavailable(InfrastructureError):
    """The database is unavailable or timed out."""

    code = "store_unavailable"


class GenerationExhausted(InfrastructureError):
    """Could not generate a unique referral code."""

    code = "generation_exhausted"

    def __init__(self, business_id: int, attempts: int):
        self.business_id = business_id
        self.attempts = attempts
        super().__init__(
            f"No unique referral code for business {business_id} after {attempts} attempts",
            business_id=business_id,
            attempts=attempts,
        )
