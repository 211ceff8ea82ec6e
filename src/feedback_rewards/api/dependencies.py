"""Request dependencies: caller identity and the gamification service."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from feedback_rewards.auth.tokens import Identity, resolve_identity
from feedback_rewards.gamification.service import GamificationService, gamification_service
from feedback_rewards.logging_config import bind_caller, get_logger

logger = get_logger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def get_service() -> GamificationService:
    """Service used by the endpoints. Overridden in tests."""
    return gamification_service


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Identity | None:
    """Resolve the caller from the bearer token.

    Returns:
        Identity, or None if no valid token was sent
    """
    if not credentials:
        return None

    identity = resolve_identity(credentials.credentials)
    if identity:
        request.state.identity = identity
        bind_caller(identity.user_id, identity.business_id)
    return identity


def require_identity(identity: Identity | None = Depends(get_current_identity)) -> Identity:
    """Require an authenticated caller.

    Raises:
        HTTPException: 401 if not authenticated
    """
    if not identity:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_business_access(identity: Identity, business_id: int) -> None:
    """Only callers acting for a business may read or change its gamification data.

    Raises:
        HTTPException: 403 if the token is not scoped to business_id
    """
    if identity.business_id != business_id:
        logger.warning(
            "business_access_denied",
            user_id=identity.user_id,
            business_id=business_id,
            token_business_id=identity.business_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this business",
        )
