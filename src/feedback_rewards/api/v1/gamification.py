"""Gamification API v1 endpoints."""

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from feedback_rewards.api.dependencies import get_service, require_business_access, require_identity
from feedback_rewards.api.rate_limit import limiter
from feedback_rewards.auth.tokens import Identity
from feedback_rewards.gamification.leaderboard import LeaderboardMetric
from feedback_rewards.gamification.service import GamificationService
from feedback_rewards.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/gamification", tags=["gamification"])

OVERVIEW_LIMIT = 5


# ==================== MODELS ====================


class LeaderboardEntryResponse(BaseModel):
    """One leaderboard row."""
    rank: int
    user_id: int
    value: int
    achieved_at: str | None = None


class LeaderboardResponse(BaseModel):
    """Ranked users of a business."""
    business_id: int
    metric: str
    entries: list[LeaderboardEntryResponse]


class UpdateSettingsRequest(BaseModel):
    """Request to change a business's gamification settings.

    ``settings`` is validated by the service so every caller gets the same
    rules and error format.
    """
    business_id: int
    settings: dict[str, Any]


def _leaderboard(service: GamificationService, business_id: int, metric: str, limit: int) -> LeaderboardResponse:
    entries = service.get_leaderboard(business_id, metric, limit)
    return LeaderboardResponse(
        business_id=business_id,
        metric=LeaderboardMetric.parse(metric).value,
        entries=[LeaderboardEntryResponse(**entry.to_dict()) for entry in entries],
    )


# ==================== ENDPOINTS ====================


@router.get("")
@limiter.limit("60/minute")
def get_gamification(
    request: Request,
    business_id: int = Query(...),
    action: Literal["overview", "leaderboard", "settings"] = Query("overview"),
    board: str = Query("points", alias="type"),
    limit: int = Query(10),
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Get a business's gamification overview, a leaderboard or its settings.

    The overview holds the settings and the top five of both leaderboards.
    ``type`` selects the leaderboard: points or referrals.
    """
    require_business_access(identity, business_id)
    if action == "settings":
        return {"settings": service.get_settings(business_id).to_dict()}
    if action == "leaderboard":
        return _leaderboard(service, business_id, board, limit)
    return {
        "settings": service.get_settings(business_id).to_dict(),
        "leaderboards": {
            "points": _leaderboard(service, business_id, LeaderboardMetric.POINTS.value, OVERVIEW_LIMIT),
            "referrals": _leaderboard(service, business_id, LeaderboardMetric.REFERRAL_COUNT.value, OVERVIEW_LIMIT),
        },
    }


@router.get("/leaderboard", response_model=LeaderboardResponse)
@limiter.limit("60/minute")
def get_leaderboard(
    request: Request,
    business_id: int = Query(...),
    metric: str = Query("points"),
    limit: int = Query(10),
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Leaderboard ranked by points or completed referrals."""
    require_business_access(identity, business_id)
    return _leaderboard(service, business_id, metric, limit)


@router.put("")
def update_settings(
    body: UpdateSettingsRequest,
    identity: Identity = Depends(require_identity),
    service: GamificationService = Depends(get_service),
):
    """Update a business's gamification settings.

    Only callers whose token is scoped to the business may do this.
    Omitted fields keep their current value.
    """
    require_business_access(identity, body.business_id)
    snapshot = service.update_settings(body.business_id, body.settings)
    logger.info("settings_updated_via_api", business_id=body.business_id, user_id=identity.user_id)
    return {"success": True, "settings": snapshot.to_dict()}
