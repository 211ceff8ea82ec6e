"""Referral API v1 endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from feedback_rewards.api.dependencies import get_current_identity, get_service, require_identity
from feedback_rewards.api.rate_limit import limiter
from feedback_rewards.auth.tokens import Identity
from feedback_rewards.gamification.service import GamificationService
from feedback_rewards.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])


# ==================== MODELS ====================


class CreateReferralRequest(BaseModel):
    """Request to refer someone to a business."""
    business_id: int
    referred_email: str = Field(min_length=3, max_length=255)


class ReferralResponse(BaseModel):
    """A referral as returned to its sender."""
    id: int
    referral_code: str
    link: str
    status: str
    referred_email: str
    business_id: int
    created_at: str
    expires_at: str
    completed_at: str | None = None


class TrackRequest(BaseModel):
    """Request to track a referral action."""
    action: Literal["click", "complete", "share"]
    referral_code: str = Field(min_length=1, max_length=64)
    platform: str | None = None
    url: str | None = Field(default=None, max_length=1024)


def _referral_response(service: GamificationService, referral) -> ReferralResponse:
    data = referral.to_dict()
    return ReferralResponse(
        id=data["id"],
        referral_code=data["referral_code"],
        link=service.referral_link(referral.code),
        status=data["status"],
        referred_email=data["referred_email"],
        business_id=data["business_id"],
        created_at=data["created_at"],
        expires_at=data["expires_at"],
        completed_at=data["completed_at"],
    )


# ==================== ENDPOINTS ====================


@router.post("", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_referral(
    request: Request,
    body: CreateReferralRequest,
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Refer someone to a business.

    Returns the referral with its shareable code and link.
    """
    referral = service.create_referral(identity.user_id, body.business_id, body.referred_email)
    return _referral_response(service, referral)


@router.get("")
def get_my_referrals(
    business_id: int = Query(...),
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Get the caller's referrals, points and badges for a business.

    Includes the business's gamification settings so clients can show
    how many points the next referral is worth.
    """
    return service.get_user_rewards(identity.user_id, business_id)


@router.post("/track")
@limiter.limit("60/minute")
def track_referral(
    request: Request,
    body: TrackRequest,
    identity: Identity | None = Depends(get_current_identity),
    service: GamificationService = Depends(get_service),
):
    """Track a referral action.

    - click: someone opened a referral link (anonymous, unknown codes ignored)
    - share: the sender shared the link on a platform
    - complete: the referred user performed the qualifying action
    """
    if body.action == "click":
        tracked = service.record_click(
            body.referral_code,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            referer=request.headers.get("referer"),
        )
        return {"success": True, "tracked": tracked}

    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if body.action == "share":
        if not body.platform or not body.url:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="platform and url are required to track a share",
            )
        tracked = service.record_share(body.referral_code, body.platform, body.url, user_id=identity.user_id)
        return {"success": True, "tracked": tracked}

    referral = service.complete_referral(body.referral_code, identity.user_id)
    return {"success": True, "referral": _referral_response(service, referral)}


@router.post("/{code}/cancel", response_model=ReferralResponse)
def cancel_referral(
    code: str,
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Cancel one of the caller's pending referrals."""
    referral = service.cancel_referral(code, identity.user_id)
    return _referral_response(service, referral)
