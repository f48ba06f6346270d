"""Reputation - composite scoring, tiers, ranking and achievements."""

from calibr.reputation.achievements import (
    ACHIEVEMENT_DEFINITIONS,
    AchievementDefinition,
    achievement_score,
    advance_streak,
    check_achievements,
    newly_unlocked,
)
from calibr.reputation.brier import (
    BrierResult,
    CalibrationAnalysis,
    CalibrationStats,
    ScoredForecast,
    analyze_calibration,
    brier_score,
    calibration_stats,
    time_weighted_brier,
)
from calibr.reputation.models import (
    Achievement,
    LeaderboardEntry,
    ScoreBreakdown,
    TierBadge,
    TierChange,
)
from calibr.reputation.ranking import (
    LeaderboardFilter,
    LeaderboardPosition,
    apply_privacy_filter,
    filter_leaderboard,
    find_position,
    mask_private_entries,
    rank_changes,
    rank_forecasters,
    top_forecasters,
)
from calibr.reputation.scorer import (
    ReputationScorer,
    ScoringWeights,
    composite_score,
    detect_tier_change,
    tier_progress,
)
from calibr.reputation.tiers import (
    TIER_DESCRIPTIONS,
    TIER_ORDER,
    TIER_THRESHOLDS,
    Tier,
    tier_for_score,
)

__all__ = [
    "ACHIEVEMENT_DEFINITIONS",
    "TIER_DESCRIPTIONS",
    "TIER_ORDER",
    "TIER_THRESHOLDS",
    "Achievement",
    "AchievementDefinition",
    "BrierResult",
    "CalibrationAnalysis",
    "CalibrationStats",
    "LeaderboardEntry",
    "LeaderboardFilter",
    "LeaderboardPosition",
    "ReputationScorer",
    "ScoreBreakdown",
    "ScoredForecast",
    "ScoringWeights",
    "Tier",
    "TierBadge",
    "TierChange",
    "achievement_score",
    "advance_streak",
    "analyze_calibration",
    "apply_privacy_filter",
    "brier_score",
    "calibration_stats",
    "check_achievements",
    "composite_score",
    "detect_tier_change",
    "filter_leaderboard",
    "find_position",
    "mask_private_entries",
    "newly_unlocked",
    "rank_changes",
    "rank_forecasters",
    "tier_for_score",
    "tier_progress",
    "time_weighted_brier",
]
