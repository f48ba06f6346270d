"""Composite reputation scoring and tier transitions.

Scoring Formula (0-1000 scale):
    brier       = (1 - avg_brier) * 1000 * 0.55
    calibration = (1 - avg_time_weighted_brier) * 1000 * 0.35
    volume      = min(resolved / 500, 1) * 1000 * 0.05   (only when resolved >= 50)
    base        = 0.05 * 1000 * 0.5                       (constant 25)

    score = min(round_half_up(brier + calibration + volume + base), 1000)

Missing Brier figures count as 0.5 (uninformative). Tiers are not derived
from the score on read; the stored tier is reported and this module only
measures progress toward the next one and classifies transitions.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from calibr.reputation.models import ScoreBreakdown, TierBadge, TierChange, TierDirection
from calibr.reputation.tiers import MAX_COMPOSITE_SCORE, TIER_THRESHOLDS, Tier

MISSING_BRIER_DEFAULT = 0.5
VOLUME_BONUS_THRESHOLD = 50
VOLUME_BONUS_MAX = 500


@dataclass(frozen=True)
class ScoringWeights:
    """Partition of the composite score across its four components."""

    brier: float = 0.55
    calibration: float = 0.35
    volume: float = 0.05
    remaining: float = 0.05

    def __post_init__(self) -> None:
        total = self.brier + self.calibration + self.volume + self.remaining
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"Scoring weights must sum to 1.0, got {total}")


DEFAULT_WEIGHTS = ScoringWeights()


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class _Components:
    brier: float
    calibration: float
    volume: float
    base: float

    @property
    def total(self) -> int:
        raw = _round_half_up(self.brier + self.calibration + self.volume + self.base)
        return max(0, min(raw, MAX_COMPOSITE_SCORE))


class ReputationScorer:
    """Turns calibration aggregates into a bounded score and tier views.

    Example:
        ```python
        scorer = ReputationScorer()
        score = scorer.composite_score(100, 80, 0.2, 0.18)   # 760
        progress = scorer.tier_progress(score, Tier.MASTER)  # 0.8
        change = scorer.detect_tier_change(Tier.JOURNEYMAN, Tier.EXPERT)
        if change.should_celebrate:
            ...
        ```
    """

    def __init__(self, *, weights: ScoringWeights | None = None) -> None:
        self._weights = weights or DEFAULT_WEIGHTS

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def _components(
        self,
        resolved_forecasts: int,
        avg_brier_score: float | None,
        avg_time_weighted_brier: float | None,
    ) -> _Components:
        w = self._weights
        brier = avg_brier_score if avg_brier_score is not None else MISSING_BRIER_DEFAULT
        weighted = (
            avg_time_weighted_brier
            if avg_time_weighted_brier is not None
            else MISSING_BRIER_DEFAULT
        )

        volume = 0.0
        # Below the floor a handful of lucky forecasts must not buy volume credit.
        if resolved_forecasts >= VOLUME_BONUS_THRESHOLD:
            ratio = min(resolved_forecasts / VOLUME_BONUS_MAX, 1.0)
            volume = ratio * MAX_COMPOSITE_SCORE * w.volume

        return _Components(
            brier=(1 - brier) * MAX_COMPOSITE_SCORE * w.brier,
            calibration=(1 - weighted) * MAX_COMPOSITE_SCORE * w.calibration,
            volume=volume,
            base=w.remaining * MAX_COMPOSITE_SCORE * 0.5,
        )

    def composite_score(
        self,
        total_forecasts: int,
        resolved_forecasts: int,
        avg_brier_score: float | None,
        avg_time_weighted_brier: float | None,
    ) -> int:
        """Blend calibration statistics into an integer score in [0, 1000]."""
        if total_forecasts == 0:
            return 0
        return self._components(resolved_forecasts, avg_brier_score, avg_time_weighted_brier).total

    def score_breakdown(
        self,
        total_forecasts: int,
        resolved_forecasts: int,
        avg_brier_score: float | None,
        avg_time_weighted_brier: float | None,
    ) -> ScoreBreakdown:
        if total_forecasts == 0:
            return ScoreBreakdown(0, 0, 0, 0, 0)
        parts = self._components(resolved_forecasts, avg_brier_score, avg_time_weighted_brier)
        return ScoreBreakdown(
            brier_component=_round_half_up(parts.brier),
            calibration_component=_round_half_up(parts.calibration),
            volume_bonus=_round_half_up(parts.volume),
            base_bonus=_round_half_up(parts.base),
            total=parts.total,
        )

    @staticmethod
    def tier_progress(composite_score: float, current_tier: Tier) -> float:
        """Linear progress from the current tier's threshold to the next one.

        At the top tier, progress keeps tracking the remaining distance to the
        scale maximum instead of reporting a fixed 1.0.
        """
        low = TIER_THRESHOLDS[current_tier]
        next_tier = current_tier.next_tier
        high = TIER_THRESHOLDS[next_tier] if next_tier is not None else MAX_COMPOSITE_SCORE
        progress = (composite_score - low) / (high - low)
        return max(0.0, min(progress, 1.0))

    @staticmethod
    def detect_tier_change(previous_tier: Tier | None, new_tier: Tier) -> TierChange:
        """Classify a tier transition; a missing previous tier counts as APPRENTICE."""
        previous = previous_tier or Tier.APPRENTICE
        signed = new_tier.ordinal - previous.ordinal

        direction: TierDirection = "none"
        if signed > 0:
            direction = "up"
        elif signed < 0:
            direction = "down"

        return TierChange(
            changed=previous != new_tier,
            direction=direction,
            delta=abs(signed),
            # Demotions are never surfaced as celebrations.
            should_celebrate=direction == "up",
            previous_tier=previous,
            new_tier=new_tier,
        )

    @staticmethod
    def create_tier_badge(
        change: TierChange,
        composite_score: int,
        *,
        rank: int,
        category: str = "OVERALL",
        period: int | None = None,
    ) -> TierBadge | None:
        """Badge payload for attesting a tier change, or None when unchanged."""
        if not change.changed:
            return None
        return TierBadge(
            tier=change.new_tier,
            score=composite_score,
            period=period if period is not None else int(time.time()),
            category=category,
            rank=rank,
            should_celebrate=change.should_celebrate,
            tier_delta=change.delta,
            previous_tier=change.previous_tier,
        )


_default_scorer = ReputationScorer()


def composite_score(
    total_forecasts: int,
    resolved_forecasts: int,
    avg_brier_score: float | None,
    avg_time_weighted_brier: float | None,
) -> int:
    return _default_scorer.composite_score(
        total_forecasts, resolved_forecasts, avg_brier_score, avg_time_weighted_brier
    )


def tier_progress(composite_score: float, current_tier: Tier) -> float:
    return ReputationScorer.tier_progress(composite_score, current_tier)


def detect_tier_change(previous_tier: Tier | None, new_tier: Tier) -> TierChange:
    return ReputationScorer.detect_tier_change(previous_tier, new_tier)
