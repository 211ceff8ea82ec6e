"""Referral code generation."""

import secrets
from typing import Callable

from feedback_rewards.errors import GenerationExhausted
from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings

logger = get_logger(__name__)

# Upper-case letters and digits without the confusable 0, O, 1, I and L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def normalize_code(value: str | None) -> str:
    """Canonical form of a user-supplied referral code."""
    return (value or "").strip().upper()


class CodeGenerator:
    """Produces random, URL-safe referral codes."""

    def __init__(self, length: int | None = None, max_attempts: int | None = None):
        self.length = length or settings.referral_code_length
        self.max_attempts = max_attempts or settings.referral_code_max_attempts

    def _random_code(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.length))

    def generate(self, business_id: int, is_taken: Callable[[str], bool]) -> str:
        """Generate a code not yet in use.

        Args:
            business_id: Business the code is for
            is_taken: Returns True if a candidate code already exists

        Returns:
            Unused referral code

        Raises:
            GenerationExhausted: If every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self._random_code()
            if not is_taken(code):
                return code
            logger.warning("referral_code_collision", business_id=business_id, attempt=attempt)

        logger.error("referral_code_space_exhausted", business_id=business_id, attempts=self.max_attempts)
        raise GenerationExhausted(business_id, self.max_attempts)
