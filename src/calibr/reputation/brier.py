"""Brier scoring and calibration analysis for resolved forecasts.

The Brier score is the mean squared error between forecast probability and
binary outcome: 0.0 is perfect, 0.25 is always saying 50%, 1.0 is always
wrong with full confidence. These functions produce the aggregates stored on
UserCalibration rows.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

REFERENCE_BRIER = 0.25
DEFAULT_HALF_LIFE_DAYS = 90.0
DEFAULT_BUCKETS = 10


@dataclass(frozen=True)
class ScoredForecast:
    """A forecast paired with its outcome (None while unresolved)."""

    probability: float
    outcome: bool | None
    timestamp: datetime | None = None
    weight: float | None = None
    category: str | None = None


@dataclass(frozen=True)
class BrierResult:
    score: float
    count: int
    skill_score: float
    weighted_score: float | None = None


@dataclass(frozen=True)
class CalibrationBucket:
    range_start: float
    range_end: float
    avg_prediction: float
    actual_frequency: float
    count: int

    @property
    def calibration_error(self) -> float:
        return abs(self.avg_prediction - self.actual_frequency)


@dataclass(frozen=True)
class CalibrationAnalysis:
    """Binned Murphy decomposition: brier ~= reliability - resolution + uncertainty."""

    brier_score: float
    reliability: float
    resolution: float
    uncertainty: float
    ece: float
    buckets: list[CalibrationBucket] = field(default_factory=list)


@dataclass(frozen=True)
class CalibrationStats:
    """Aggregates for a UserCalibration row."""

    total_forecasts: int
    resolved_forecasts: int
    avg_brier_score: float | None
    avg_time_weighted_brier: float | None


def single_brier(probability: float, outcome: bool) -> float:
    return (probability - (1.0 if outcome else 0.0)) ** 2


def _resolved(forecasts: Iterable[ScoredForecast]) -> list[ScoredForecast]:
    return [f for f in forecasts if f.outcome is not None]


def brier_score(forecasts: Iterable[ScoredForecast]) -> BrierResult:
    """Mean Brier score with skill relative to always forecasting 50%."""
    resolved = _resolved(forecasts)
    if not resolved:
        return BrierResult(score=0.0, count=0, skill_score=0.0)

    total = 0.0
    weighted_total = 0.0
    weight_sum = 0.0
    for f in resolved:
        s = single_brier(f.probability, bool(f.outcome))
        total += s
        if f.weight is not None:
            weighted_total += s * f.weight
            weight_sum += f.weight

    mean = total / len(resolved)
    return BrierResult(
        score=mean,
        count=len(resolved),
        skill_score=1 - mean / REFERENCE_BRIER,
        weighted_score=weighted_total / weight_sum if weight_sum > 0 else None,
    )


def time_weighted_brier(
    forecasts: Iterable[ScoredForecast],
    *,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    now: datetime | None = None,
) -> BrierResult:
    """Brier score with exponentially decaying weight by forecast age."""
    now = now or datetime.now(UTC)
    resolved = [(f, f.timestamp) for f in _resolved(forecasts) if f.timestamp is not None]
    if not resolved:
        return BrierResult(score=0.0, count=0, skill_score=0.0)

    weighted_total = 0.0
    weight_sum = 0.0
    for f, ts in resolved:
        age_days = (now - ts).total_seconds() / 86_400
        weight = 0.5 ** (age_days / half_life_days)
        weighted_total += single_brier(f.probability, bool(f.outcome)) * weight
        weight_sum += weight

    score = weighted_total / weight_sum
    return BrierResult(
        score=score,
        count=len(resolved),
        skill_score=1 - score / REFERENCE_BRIER,
        weighted_score=score,
    )


def analyze_calibration(
    forecasts: Iterable[ScoredForecast],
    *,
    num_buckets: int = DEFAULT_BUCKETS,
) -> CalibrationAnalysis:
    resolved = _resolved(forecasts)
    if not resolved:
        return CalibrationAnalysis(0.0, 0.0, 0.0, 0.0, 0.0)

    n = len(resolved)
    base_rate = sum(1 for f in resolved if f.outcome) / n
    width = 1 / num_buckets

    buckets: list[CalibrationBucket] = []
    for i in range(num_buckets):
        start, end = i * width, (i + 1) * width
        # The last bucket is closed so probability 1.0 is not dropped.
        members = [
            f
            for f in resolved
            if start <= f.probability < end or (i == num_buckets - 1 and f.probability == end)
        ]
        if not members:
            continue
        buckets.append(
            CalibrationBucket(
                range_start=start,
                range_end=end,
                avg_prediction=sum(f.probability for f in members) / len(members),
                actual_frequency=sum(1 for f in members if f.outcome) / len(members),
                count=len(members),
            )
        )

    reliability = sum(
        b.count / n * (b.avg_prediction - b.actual_frequency) ** 2 for b in buckets
    )
    resolution = sum(b.count / n * (b.actual_frequency - base_rate) ** 2 for b in buckets)
    return CalibrationAnalysis(
        brier_score=brier_score(resolved).score,
        reliability=reliability,
        resolution=resolution,
        uncertainty=base_rate * (1 - base_rate),
        ece=sum(b.count / n * b.calibration_error for b in buckets),
        buckets=buckets,
    )


def brier_by_category(forecasts: Iterable[ScoredForecast]) -> dict[str, BrierResult]:
    grouped: dict[str, list[ScoredForecast]] = {}
    for f in forecasts:
        grouped.setdefault(f.category or "uncategorized", []).append(f)
    return {category: brier_score(items) for category, items in grouped.items()}


def calibration_stats(
    forecasts: Iterable[ScoredForecast],
    *,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    now: datetime | None = None,
) -> CalibrationStats:
    """Summarize a user's forecasts into UserCalibration aggregates."""
    items = list(forecasts)
    mean = brier_score(items)
    weighted = time_weighted_brier(items, half_life_days=half_life_days, now=now)
    return CalibrationStats(
        total_forecasts=len(items),
        resolved_forecasts=mean.count,
        avg_brier_score=mean.score if mean.count else None,
        avg_time_weighted_brier=weighted.score if weighted.count else None,
    )
