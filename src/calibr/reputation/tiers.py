"""Forecaster tier table.

Tier order is the declaration order of the enum; thresholds are composite
scores on the 0-1000 scale.
"""

from __future__ import annotations

from enum import Enum

MAX_COMPOSITE_SCORE = 1000


class Tier(str, Enum):
    APPRENTICE = "APPRENTICE"
    JOURNEYMAN = "JOURNEYMAN"
    EXPERT = "EXPERT"
    MASTER = "MASTER"
    GRANDMASTER = "GRANDMASTER"

    @property
    def ordinal(self) -> int:
        return TIER_ORDER.index(self)

    @property
    def threshold(self) -> int:
        return TIER_THRESHOLDS[self]

    @property
    def next_tier(self) -> Tier | None:
        position = self.ordinal
        return TIER_ORDER[position + 1] if position + 1 < len(TIER_ORDER) else None


TIER_ORDER: tuple[Tier, ...] = tuple(Tier)

TIER_THRESHOLDS: dict[Tier, int] = {
    Tier.APPRENTICE: 0,
    Tier.JOURNEYMAN: 200,
    Tier.EXPERT: 400,
    Tier.MASTER: 600,
    Tier.GRANDMASTER: 800,
}

TIER_DESCRIPTIONS: dict[Tier, str] = {
    Tier.APPRENTICE: "Beginning forecaster",
    Tier.JOURNEYMAN: "Developing accuracy",
    Tier.EXPERT: "Consistently accurate",
    Tier.MASTER: "Exceptional calibration",
    Tier.GRANDMASTER: "Top-tier superforecaster",
}


def tier_for_score(score: float) -> Tier:
    """Highest tier whose threshold the score reaches.

    Only the tier-check flow uses this to decide what to store; read paths
    always report the stored tier.
    """
    for tier in reversed(TIER_ORDER):
        if score >= TIER_THRESHOLDS[tier]:
            return tier
    return Tier.APPRENTICE
