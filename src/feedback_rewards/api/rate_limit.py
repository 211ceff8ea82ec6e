"""Rate limiting configuration."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from feedback_rewards.settings import settings


def rate_limit_key(request: Request) -> str:
    """Authenticated callers are limited per user, anonymous ones per address.

    Identity is stored on request.state by the auth dependency, which runs
    before the limit is checked.
    """
    identity = getattr(request.state, "identity", None)
    if identity is not None:
        return f"user:{identity.user_id}"
    return get_remote_address(request)


# Shared limiter, only enforced in production
limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=["200/minute"],
    storage_uri="memory://",
    enabled=settings.env == "production",
)
