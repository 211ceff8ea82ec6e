"""Per-business gamification settings.

Every component reads settings through SettingsGate and receives an immutable
SettingsSnapshot, so an operation sees one consistent configuration even if
the owner updates it concurrently.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, ValidationError, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feedback_rewards.clock import Clock, system_clock
from feedback_rewards.errors import InvalidSettings, SettingsNotFound
from feedback_rewards.gamification.models import GamificationSettings
from feedback_rewards.logging_config import get_logger
from feedback_rewards.settings import settings as app_settings
from feedback_rewards.storage.db import Database, db

logger = get_logger(__name__)


class BadgeMetric(str, Enum):
    """What a badge threshold is compared against."""
    POINTS = "points"
    REFERRAL_COUNT = "referral_count"
    FEEDBACK_COUNT = "feedback_count"


@dataclass(frozen=True)
class BadgeRule:
    """Unlock ``badge_key`` once ``metric`` reaches ``threshold``."""

    badge_key: str
    metric: BadgeMetric
    threshold: int
    name: str = ""
    description: str = ""
    icon: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "badge_key": self.badge_key,
            "metric": self.metric.value,
            "threshold": self.threshold,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BadgeRule":
        return cls(
            badge_key=data["badge_key"],
            metric=BadgeMetric(data["metric"]),
            threshold=int(data["threshold"]),
            name=data.get("name") or "",
            description=data.get("description") or "",
            icon=data.get("icon") or "",
        )


DEFAULT_BADGE_RULES: tuple[BadgeRule, ...] = (
    BadgeRule("first_feedback", BadgeMetric.FEEDBACK_COUNT, 1, "First Feedback", "Submit 1 feedback", "🎉"),
    BadgeRule("feedback_champion", BadgeMetric.FEEDBACK_COUNT, 5, "Feedback Champion", "Submit 5 feedbacks", "🏆"),
    BadgeRule("super_referrer", BadgeMetric.REFERRAL_COUNT, 3, "Super Referrer", "3 successful referrals", "🤝"),
    BadgeRule("points_collector", BadgeMetric.POINTS, 100, "Points Collector", "Earn 100 points", "⭐"),
)


@dataclass(frozen=True)
class SettingsSnapshot:
    """Read-only view of a business's gamification settings."""

    business_id: int
    referral_enabled: bool
    points_per_feedback: int
    points_per_referral: int
    welcome_bonus_points: int
    badge_rules: tuple[BadgeRule, ...] = field(default_factory=tuple)

    def rules_in_order(self) -> list[BadgeRule]:
        """Badge rules by ascending threshold, stable for equal thresholds."""
        return sorted(self.badge_rules, key=lambda rule: rule.threshold)

    def to_dict(self) -> dict[str, Any]:
        return {
            "business_id": self.business_id,
            "referral_enabled": self.referral_enabled,
            "points_per_feedback": self.points_per_feedback,
            "points_per_referral": self.points_per_referral,
            "welcome_bonus_points": self.welcome_bonus_points,
            "badge_rules": [rule.to_dict() for rule in self.badge_rules],
        }

    @classmethod
    def from_row(cls, row: GamificationSettings) -> "SettingsSnapshot":
        return cls(
            business_id=row.business_id,
            referral_enabled=bool(row.referral_enabled),
            points_per_feedback=row.points_per_feedback,
            points_per_referral=row.points_per_referral,
            welcome_bonus_points=row.welcome_bonus_points,
            badge_rules=tuple(BadgeRule.from_dict(r) for r in (row.badge_rules or [])),
        )


# ==================== VALIDATION ====================

NonNegativeInt = Annotated[StrictInt, Field(ge=0)]


class BadgeRuleInput(BaseModel):
    """Badge rule as submitted by a business owner."""
    model_config = ConfigDict(extra="forbid")

    badge_key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    metric: Literal["points", "referral_count", "feedback_count"]
    threshold: StrictInt = Field(ge=1)
    name: str = ""
    description: str = ""
    icon: str = ""


class SettingsUpdate(BaseModel):
    """Partial settings update. Omitted fields keep their value."""
    model_config = ConfigDict(extra="forbid")

    referral_enabled: StrictBool | None = None
    points_per_feedback: NonNegativeInt | None = None
    points_per_referral: NonNegativeInt | None = None
    welcome_bonus_points: NonNegativeInt | None = None
    badge_rules: list[BadgeRuleInput] | None = None

    @field_validator("badge_rules")
    @classmethod
    def unique_badge_keys(cls, rules):
        if rules is not None:
            keys = [r.badge_key for r in rules]
            if len(keys) != len(set(keys)):
                raise ValueError("badge_key values must be unique")
        return rules


# ==================== GATE ====================


class SettingsGate:
    """Reads, provisions and updates per-business settings."""

    def __init__(self, database: Database | None = None, clock: Clock | None = None):
        self.db = database or db
        self.clock = clock or system_clock
        self.logger = get_logger(__name__)

    def _load(self, session: Session, business_id: int) -> GamificationSettings:
        row = session.get(GamificationSettings, business_id)
        if row is None:
            self.logger.error("gamification_settings_missing", business_id=business_id)
            raise SettingsNotFound(business_id)
        return row

    def get(self, business_id: int, session: Session | None = None) -> SettingsSnapshot:
        """Get settings for a business.

        Args:
            business_id: Business ID
            session: Join an existing transaction instead of opening one

        Returns:
            Settings snapshot

        Raises:
            SettingsNotFound: If the business was never provisioned
        """
        if session is not None:
            return SettingsSnapshot.from_row(self._load(session, business_id))
        with self.db.session() as own_session:
            return SettingsSnapshot.from_row(self._load(own_session, business_id))

    def provision(self, business_id: int) -> SettingsSnapshot:
        """Create default settings for a new business. Idempotent."""
        now = self.clock.now()
        try:
            with self.db.session() as session:
                if session.get(GamificationSettings, business_id) is None:
                    session.add(GamificationSettings(
                        business_id=business_id,
                        referral_enabled=app_settings.default_referral_enabled,
                        points_per_feedback=app_settings.default_points_per_feedback,
                        points_per_referral=app_settings.default_points_per_referral,
                        welcome_bonus_points=app_settings.default_welcome_bonus_points,
                        badge_rules=[rule.to_dict() for rule in DEFAULT_BADGE_RULES],
                        created_at=now,
                        updated_at=now,
                    ))
                    self.logger.info("gamification_settings_provisioned", business_id=business_id)
        except IntegrityError:
            # Provisioned concurrently, the other writer's row stands
            self.logger.debug("gamification_settings_provision_race", business_id=business_id)
        return self.get(business_id)

    def update(self, business_id: int, values: dict[str, Any]) -> SettingsSnapshot:
        """Apply a partial settings update.

        Args:
            business_id: Business ID
            values: Fields to change

        Returns:
            Updated settings snapshot

        Raises:
            InvalidSettings: If any value fails validation
            SettingsNotFound: If the business was never provisioned
        """
        try:
            update = SettingsUpdate.model_validate(values)
        except ValidationError as e:
            raise InvalidSettings(
                [{"loc": err["loc"], "msg": err["msg"], "type": err["type"]} for err in e.errors()]
            ) from e

        changes = update.model_dump(exclude_none=True)

        with self.db.session() as session:
            row = self._load(session, business_id)
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = self.clock.now()
            session.flush()
            snapshot = SettingsSnapshot.from_row(row)

        self.logger.info(
            "gamification_settings_updated",
            business_id=business_id,
            fields=sorted(changes),
        )
        return snapshot
