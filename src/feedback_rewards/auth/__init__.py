"""User directory and identity resolution."""

from feedback_rewards.auth.models import UserAccount
from feedback_rewards.auth.tokens import Identity, create_token, resolve_identity

__all__ = ["Identity", "UserAccount", "create_token", "resolve_identity"]
