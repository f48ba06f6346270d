"""Data models for the reputation module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from calibr.reputation.tiers import Tier

TierDirection = Literal["up", "down", "none"]


@dataclass(frozen=True)
class TierChange:
    """Outcome of comparing a stored tier with a newly earned one.

    Attributes:
        changed: Whether the tier differs.
        direction: "up" for promotions, "down" for demotions, else "none".
        delta: Absolute distance between the tiers in the fixed ordering.
        should_celebrate: True only for promotions.
    """

    changed: bool
    direction: TierDirection
    delta: int
    should_celebrate: bool
    previous_tier: Tier
    new_tier: Tier

    def to_dict(self) -> dict[str, object]:
        return {
            "changed": self.changed,
            "direction": self.direction,
            "delta": self.delta,
            "shouldCelebrate": self.should_celebrate,
            "previousTier": self.previous_tier.value,
            "newTier": self.new_tier.value,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    """Rounded per-component view of a composite score."""

    brier_component: int
    calibration_component: int
    volume_bonus: int
    base_bonus: int
    total: int

    @property
    def base_score(self) -> int:
        return self.brier_component + self.calibration_component

    def to_dict(self) -> dict[str, int]:
        return {
            "baseScore": self.base_score,
            "brierComponent": self.brier_component,
            "calibrationComponent": self.calibration_component,
            "volumeBonus": self.volume_bonus,
            "baseBonus": self.base_bonus,
            "total": self.total,
        }


@dataclass(frozen=True)
class TierBadge:
    """Badge data attested on-chain after a tier change."""

    tier: Tier
    score: int
    period: int
    category: str
    rank: int
    should_celebrate: bool
    tier_delta: int
    previous_tier: Tier

    def attestation_data(self) -> dict[str, object]:
        """On-chain fields only; celebration metadata stays off-chain."""
        return {
            "tier": self.tier.value,
            "score": self.score,
            "period": self.period,
            "category": self.category,
            "rank": self.rank,
        }


@dataclass
class LeaderboardEntry:
    """A forecaster as seen by ranking, filtering and achievement checks."""

    user_id: str
    display_name: str
    tier: Tier
    composite_score: int
    brier_score: float | None
    calibration_score: float | None
    total_forecasts: int
    resolved_forecasts: int
    joined_at: datetime
    last_forecast_at: datetime | None = None
    streak_days: int = 0
    is_private: bool = False
    tier_progress: float = 0.0
    rank: int = 0
    previous_rank: int | None = None
    achievements: list[Achievement] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "rank": self.rank,
            "previousRank": self.previous_rank,
            "tier": self.tier.value,
            "tierProgress": self.tier_progress,
            "compositeScore": self.composite_score,
            "brierScore": self.brier_score,
            "calibrationScore": self.calibration_score,
            "totalForecasts": self.total_forecasts,
            "resolvedForecasts": self.resolved_forecasts,
            "streakDays": self.streak_days,
            "isPrivate": self.is_private,
        }


AchievementCategory = Literal["STREAK", "VOLUME", "ACCURACY", "CALIBRATION", "SPECIAL"]
AchievementTier = Literal["BRONZE", "SILVER", "GOLD", "PLATINUM", "DIAMOND"]


@dataclass(frozen=True)
class Achievement:
    id: str
    name: str
    description: str
    category: AchievementCategory
    tier: AchievementTier
    progress: float
    max_progress: float
    unlocked_at: datetime | None = None

    @property
    def is_unlocked(self) -> bool:
        return self.unlocked_at is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "tier": self.tier,
            "progress": self.progress,
            "maxProgress": self.max_progress,
            "unlockedAt": self.unlocked_at.isoformat() if self.unlocked_at else None,
        }
