"""Achievement definitions and unlock tracking."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from calibr.reputation.models import (
    Achievement,
    AchievementCategory,
    AchievementTier,
    LeaderboardEntry,
)
from calibr.reputation.tiers import Tier

ACHIEVEMENT_TIER_VALUES: dict[str, int] = {
    "BRONZE": 10,
    "SILVER": 25,
    "GOLD": 50,
    "PLATINUM": 100,
    "DIAMOND": 200,
}


@dataclass(frozen=True)
class AchievementDefinition:
    id: str
    name: str
    description: str
    category: AchievementCategory
    tier: AchievementTier
    max_progress: float
    check: Callable[[LeaderboardEntry], float]


def _streak(days: int) -> Callable[[LeaderboardEntry], float]:
    return lambda e: min(e.streak_days, days)


def _volume(count: int) -> Callable[[LeaderboardEntry], float]:
    return lambda e: min(e.total_forecasts, count)


def _brier_at_most(limit: float) -> Callable[[LeaderboardEntry], float]:
    return lambda e: 1 if e.brier_score is not None and e.brier_score <= limit else 0


def _calibration_at_least(limit: float) -> Callable[[LeaderboardEntry], float]:
    return lambda e: 1 if e.calibration_score is not None and e.calibration_score >= limit else 0


def _reached(tier: Tier) -> Callable[[LeaderboardEntry], float]:
    return lambda e: 1 if e.tier.ordinal >= tier.ordinal else 0


def _top(n: int) -> Callable[[LeaderboardEntry], float]:
    # Rank 0 means unranked.
    return lambda e: 1 if 1 <= e.rank <= n else 0


ACHIEVEMENT_DEFINITIONS: tuple[AchievementDefinition, ...] = (
    AchievementDefinition("STREAK_7", "Week Warrior", "Made forecasts for 7 consecutive days", "STREAK", "BRONZE", 7, _streak(7)),
    AchievementDefinition("STREAK_30", "Monthly Maven", "Made forecasts for 30 consecutive days", "STREAK", "SILVER", 30, _streak(30)),
    AchievementDefinition("STREAK_90", "Quarterly Quest", "Made forecasts for 90 consecutive days", "STREAK", "GOLD", 90, _streak(90)),
    AchievementDefinition("STREAK_365", "Year of Foresight", "Made forecasts for 365 consecutive days", "STREAK", "DIAMOND", 365, _streak(365)),
    AchievementDefinition("FORECASTS_10", "First Steps", "Make 10 forecasts", "VOLUME", "BRONZE", 10, _volume(10)),
    AchievementDefinition("FORECASTS_50", "Getting Serious", "Make 50 forecasts", "VOLUME", "SILVER", 50, _volume(50)),
    AchievementDefinition("FORECASTS_100", "Century Forecaster", "Make 100 forecasts", "VOLUME", "GOLD", 100, _volume(100)),
    AchievementDefinition("FORECASTS_500", "Prolific Predictor", "Make 500 forecasts", "VOLUME", "PLATINUM", 500, _volume(500)),
    AchievementDefinition("FORECASTS_1000", "Forecasting Legend", "Make 1000 forecasts", "VOLUME", "DIAMOND", 1000, _volume(1000)),
    AchievementDefinition("BRIER_GOOD", "Accurate Observer", "Achieve a Brier score of 0.25 or better", "ACCURACY", "BRONZE", 1, _brier_at_most(0.25)),
    AchievementDefinition("BRIER_GREAT", "Sharp Predictor", "Achieve a Brier score of 0.20 or better", "ACCURACY", "SILVER", 1, _brier_at_most(0.20)),
    AchievementDefinition("BRIER_EXCELLENT", "Precision Master", "Achieve a Brier score of 0.15 or better", "ACCURACY", "GOLD", 1, _brier_at_most(0.15)),
    AchievementDefinition("BRIER_ELITE", "Elite Forecaster", "Achieve a Brier score of 0.10 or better", "ACCURACY", "DIAMOND", 1, _brier_at_most(0.10)),
    AchievementDefinition("CALIBRATION_GOOD", "Calibrated Mind", "Achieve a calibration score of 0.70", "CALIBRATION", "BRONZE", 1, _calibration_at_least(0.70)),
    AchievementDefinition("CALIBRATION_GREAT", "Well Calibrated", "Achieve a calibration score of 0.80", "CALIBRATION", "SILVER", 1, _calibration_at_least(0.80)),
    AchievementDefinition("CALIBRATION_EXCELLENT", "Calibration Expert", "Achieve a calibration score of 0.90", "CALIBRATION", "GOLD", 1, _calibration_at_least(0.90)),
    AchievementDefinition("CALIBRATION_PERFECT", "Perfect Calibration", "Achieve a calibration score of 0.95", "CALIBRATION", "DIAMOND", 1, _calibration_at_least(0.95)),
    AchievementDefinition("TIER_JOURNEYMAN", "Rising Star", "Reach Journeyman tier", "SPECIAL", "BRONZE", 1, _reached(Tier.JOURNEYMAN)),
    AchievementDefinition("TIER_EXPERT", "Expert Status", "Reach Expert tier", "SPECIAL", "SILVER", 1, _reached(Tier.EXPERT)),
    AchievementDefinition("TIER_MASTER", "Master Forecaster", "Reach Master tier", "SPECIAL", "GOLD", 1, _reached(Tier.MASTER)),
    AchievementDefinition("TIER_GRANDMASTER", "Grandmaster", "Reach Grandmaster tier", "SPECIAL", "DIAMOND", 1, _reached(Tier.GRANDMASTER)),
    AchievementDefinition("TOP_10", "Top 10", "Reach top 10 on the leaderboard", "SPECIAL", "PLATINUM", 1, _top(10)),
    AchievementDefinition("TOP_100", "Top 100", "Reach top 100 on the leaderboard", "SPECIAL", "GOLD", 1, _top(100)),
)  # fmt: skip

_BY_ID = {d.id: d for d in ACHIEVEMENT_DEFINITIONS}


def get_definition(achievement_id: str) -> AchievementDefinition | None:
    return _BY_ID.get(achievement_id)


def definitions_for(category: AchievementCategory) -> list[AchievementDefinition]:
    return [d for d in ACHIEVEMENT_DEFINITIONS if d.category == category]


def check_achievements(
    entry: LeaderboardEntry, *, now: datetime | None = None
) -> list[Achievement]:
    """Evaluate every achievement for a forecaster.

    An achievement already unlocked on ``entry.achievements`` keeps its
    original ``unlocked_at``; a fresh unlock is stamped with ``now``.
    """
    now = now or datetime.now(UTC)
    existing = {a.id: a for a in entry.achievements}

    results: list[Achievement] = []
    for definition in ACHIEVEMENT_DEFINITIONS:
        progress = definition.check(entry)
        unlocked_at = None
        if progress >= definition.max_progress:
            previous = existing.get(definition.id)
            unlocked_at = previous.unlocked_at if previous and previous.unlocked_at else now
        results.append(
            Achievement(
                id=definition.id,
                name=definition.name,
                description=definition.description,
                category=definition.category,
                tier=definition.tier,
                progress=progress,
                max_progress=definition.max_progress,
                unlocked_at=unlocked_at,
            )
        )
    return results


def newly_unlocked(
    entry: LeaderboardEntry,
    previous: Iterable[Achievement],
    *,
    now: datetime | None = None,
) -> list[Achievement]:
    already = {a.id for a in previous if a.is_unlocked}
    return [a for a in check_achievements(entry, now=now) if a.is_unlocked and a.id not in already]


def achievement_score(achievements: Iterable[Achievement]) -> int:
    """Sum of tier values over unlocked achievements."""
    return sum(ACHIEVEMENT_TIER_VALUES[a.tier] for a in achievements if a.is_unlocked)


def advance_streak(last_forecast_at: datetime | None, streak_days: int, at: datetime) -> int:
    """Consecutive-day streak after a forecast made at ``at`` (UTC days)."""
    if last_forecast_at is None:
        return 1
    gap = (at.astimezone(UTC).date() - last_forecast_at.astimezone(UTC).date()).days
    if gap <= 0:
        return max(streak_days, 1)
    if gap == 1:
        return streak_days + 1
    return 1
