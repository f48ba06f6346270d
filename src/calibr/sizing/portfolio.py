"""Kelly allocation across a portfolio of markets.

Each market is sized at full Kelly first. The combined fractional allocation
is then scaled down whenever it would exceed MAX_TOTAL_ALLOCATION, and every
position is capped individually.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from calibr.sizing.kelly import Side, calculate_kelly

MAX_TOTAL_ALLOCATION = 0.8
DEFAULT_PORTFOLIO_FRACTION = 0.5
DEFAULT_PORTFOLIO_MAX_POSITION = 0.15


@dataclass(frozen=True)
class MarketEstimate:
    market_id: str
    question: str
    yes_price: float
    no_price: float
    estimated_probability: float


@dataclass(frozen=True)
class PortfolioPosition:
    market_id: str
    question: str
    side: Side
    edge: float
    raw_kelly_fraction: float
    adjusted_fraction: float
    dollar_amount: float
    expected_value: float


@dataclass(frozen=True)
class PortfolioKellyResult:
    total_allocation: float
    was_scaled: bool
    scale_factor: float
    positions: list[PortfolioPosition] = field(default_factory=list)


def calculate_portfolio_kelly(
    bankroll: float,
    markets: list[MarketEstimate],
    *,
    fraction_multiplier: float = DEFAULT_PORTFOLIO_FRACTION,
    max_position_size: float = DEFAULT_PORTFOLIO_MAX_POSITION,
) -> PortfolioKellyResult:
    """Allocate bankroll across markets with an 80% total ceiling."""
    raw = [
        (
            market,
            calculate_kelly(
                market.estimated_probability,
                market.yes_price,
                fraction_multiplier=1.0,
                max_position_size=1.0,
            ),
        )
        for market in markets
    ]

    total_raw = sum(
        result.recommended_fraction
        for _, result in raw
        if result.recommended_side != "NONE" and result.recommended_fraction > 0
    )
    target = total_raw * fraction_multiplier
    was_scaled = target > MAX_TOTAL_ALLOCATION
    scale_factor = MAX_TOTAL_ALLOCATION / target if was_scaled else 1.0

    positions: list[PortfolioPosition] = []
    for market, result in raw:
        adjusted = 0.0
        if result.recommended_side != "NONE" and result.recommended_fraction > 0:
            adjusted = min(
                result.recommended_fraction * fraction_multiplier * scale_factor,
                max_position_size,
            )
        positions.append(
            PortfolioPosition(
                market_id=market.market_id,
                question=market.question,
                side=result.recommended_side,
                edge=result.edge,
                raw_kelly_fraction=result.recommended_fraction,
                adjusted_fraction=adjusted,
                dollar_amount=adjusted * bankroll,
                expected_value=result.expected_value,
            )
        )

    return PortfolioKellyResult(
        total_allocation=sum(p.adjusted_fraction for p in positions),
        was_scaled=was_scaled,
        scale_factor=scale_factor,
        positions=positions,
    )
