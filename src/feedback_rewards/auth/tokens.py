"""Identity resolution from bearer tokens."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings

logger = get_logger(__name__)

JWT_EXPIRE_HOURS = 2


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: int
    business_id: int | None = None


def create_token(user_id: int, business_id: int | None = None, expires_in_hours: int = JWT_EXPIRE_HOURS) -> str:
    """Create a signed access token.

    Args:
        user_id: User ID (stored in ``sub``)
        business_id: Business the user acts for, if any
        expires_in_hours: Token lifetime

    Returns:
        Encoded JWT
    """
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(hours=expires_in_hours),
        "type": "access",
    }
    if business_id is not None:
        payload["business_id"] = business_id
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def resolve_identity(token: str) -> Identity | None:
    """Resolve a bearer token to an identity.

    Args:
        token: Encoded JWT

    Returns:
        Identity, or None if the token is invalid or expired
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug("token_rejected", error=str(e))
        return None

    if payload.get("type") != "access":
        return None

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None

    business_id = payload.get("business_id")
    return Identity(
        user_id=user_id,
        business_id=int(business_id) if business_id is not None else None,
    )
