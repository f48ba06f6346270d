"""Kelly-criterion position sizing for binary prediction markets.

Buying YES at price P pays 1 on resolution, so the odds are
b = (1 - P) / P and the full-Kelly stake simplifies to

    f* = (p - P) / (1 - P)

where p is the forecaster's probability. Recommended stakes are fractional
Kelly (f* times a user multiplier) and are hard-capped at MAX_POSITION_SIZE
of bankroll.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from calibr.errors import ValidationError

MAX_POSITION_SIZE = 0.25

KELLY_MULTIPLIERS = {
    "FULL": 1.0,
    "THREE_QUARTER": 0.75,
    "HALF": 0.5,
    "QUARTER": 0.25,
    "CONSERVATIVE": 0.1,
}

Side = Literal["YES", "NO", "NONE"]


def _check_market_price(market_price: float) -> None:
    if not 0.0 <= market_price <= 1.0:
        raise ValidationError(f"Market price must be within [0, 1], got {market_price}")


def compute_edge(stated_probability: float, market_price: float) -> float:
    """Return the forecaster's edge over the market (positive = favorable)."""
    return stated_probability - market_price


def recommended_size(
    stated_probability: float,
    market_price: float,
    kelly_fraction: float,
) -> float | None:
    """Fractional-Kelly stake as a share of bankroll, or None without edge.

    The edge check runs before the Kelly denominator is touched, so a market
    price of exactly 1 (which no probability below 1 can beat) returns None
    rather than dividing by zero.
    """
    _check_market_price(market_price)
    edge = compute_edge(stated_probability, market_price)
    if edge <= 0:
        return None

    raw_kelly = edge / (1 - market_price)
    size = raw_kelly * kelly_fraction
    return max(0.0, min(size, MAX_POSITION_SIZE))


def edge_percentage(edge: float, market_price: float) -> float:
    """Edge relative to the market price, in percent (display only)."""
    if market_price > 0:
        return (edge / market_price) * 100
    return 0.0


@dataclass(frozen=True)
class KellyResult:
    """Full Kelly analysis for a single market.

    Attributes:
        recommended_fraction: Stake as a fraction of bankroll (0.0 to max size).
        edge: Edge on the recommended side (best of both sides when no edge).
        edge_percentage: Edge as a percentage of the effective price.
        has_positive_edge: Whether either side carries positive expectation.
        expected_value: Expected profit per dollar staked.
        kelly_multiplier: Fractional-Kelly multiplier that was applied.
        was_capped: Whether the stake hit the position-size cap.
        recommended_side: YES, NO, or NONE when there is no edge.
    """

    recommended_fraction: float
    edge: float
    edge_percentage: float
    has_positive_edge: bool
    expected_value: float
    kelly_multiplier: float
    was_capped: bool
    recommended_side: Side

    def to_dict(self) -> dict[str, object]:
        return {
            "recommendedFraction": self.recommended_fraction,
            "edge": self.edge,
            "edgePercentage": self.edge_percentage,
            "hasPositiveEdge": self.has_positive_edge,
            "expectedValue": self.expected_value,
            "kellyMultiplier": self.kelly_multiplier,
            "wasCapped": self.was_capped,
            "recommendedSide": self.recommended_side,
        }


def calculate_kelly(
    estimated_probability: float,
    market_price: float,
    *,
    fraction_multiplier: float = 1.0,
    max_position_size: float = MAX_POSITION_SIZE,
) -> KellyResult:
    """Size a position on whichever side of the market carries edge.

    Raises:
        ValidationError: If probability, price or multiplier are out of range.
    """
    if not 0.0 <= estimated_probability <= 1.0:
        raise ValidationError("Estimated probability must be between 0 and 1")
    if not 0.0 < market_price < 1.0:
        raise ValidationError("Market price must be between 0 and 1 (exclusive)")
    if not 0.0 < fraction_multiplier <= 1.0:
        raise ValidationError("Fraction multiplier must be between 0 and 1")

    yes_edge = estimated_probability - market_price
    no_price = 1 - market_price
    no_edge = (1 - estimated_probability) - no_price

    side: Side
    if yes_edge > no_edge and yes_edge > 0:
        side, edge = "YES", yes_edge
        effective_price, effective_probability = market_price, estimated_probability
    elif no_edge > 0:
        side, edge = "NO", no_edge
        effective_price, effective_probability = no_price, 1 - estimated_probability
    else:
        return KellyResult(
            recommended_fraction=0.0,
            edge=max(yes_edge, no_edge),
            edge_percentage=0.0,
            has_positive_edge=False,
            expected_value=0.0,
            kelly_multiplier=fraction_multiplier,
            was_capped=False,
            recommended_side="NONE",
        )

    raw_kelly = (effective_probability - effective_price) / (1 - effective_price)
    adjusted = raw_kelly * fraction_multiplier
    was_capped = adjusted > max_position_size
    if was_capped:
        adjusted = max_position_size

    return KellyResult(
        recommended_fraction=max(0.0, adjusted),
        edge=edge,
        edge_percentage=(edge / effective_price) * 100,
        has_positive_edge=True,
        # EV per dollar = p(1 - P) - (1 - p)P = p - P
        expected_value=edge,
        kelly_multiplier=fraction_multiplier,
        was_capped=was_capped,
        recommended_side=side,
    )


def describe_kelly_multiplier(multiplier: float) -> str:
    if multiplier >= 1.0:
        return "Full Kelly (aggressive)"
    if multiplier >= 0.75:
        return "Three-quarter Kelly"
    if multiplier >= 0.5:
        return "Half Kelly (recommended)"
    if multiplier >= 0.25:
        return "Quarter Kelly (conservative)"
    return "Very conservative"


def format_kelly_recommendation(result: KellyResult, bankroll: float | None = None) -> str:
    """Render a one-line recommendation, e.g. ``YES: 12.5% of bankroll (25.0% edge)``."""
    if not result.has_positive_edge:
        return "No edge - do not bet"

    text = (
        f"{result.recommended_side}: {result.recommended_fraction * 100:.1f}% of bankroll "
        f"({result.edge_percentage:.1f}% edge)"
    )
    if bankroll:
        text += f" = ${result.recommended_fraction * bankroll:.2f}"
    if result.was_capped:
        text += " (capped)"
    return text
