"""Position sizing - edge and fractional Kelly stakes."""

from calibr.sizing.kelly import (
    KELLY_MULTIPLIERS,
    MAX_POSITION_SIZE,
    KellyResult,
    calculate_kelly,
    compute_edge,
    describe_kelly_multiplier,
    edge_percentage,
    format_kelly_recommendation,
    recommended_size,
)
from calibr.sizing.portfolio import (
    MarketEstimate,
    PortfolioKellyResult,
    PortfolioPosition,
    calculate_portfolio_kelly,
)

__all__ = [
    "KELLY_MULTIPLIERS",
    "MAX_POSITION_SIZE",
    "KellyResult",
    "MarketEstimate",
    "PortfolioKellyResult",
    "PortfolioPosition",
    "calculate_kelly",
    "calculate_portfolio_kelly",
    "compute_edge",
    "describe_kelly_multiplier",
    "edge_percentage",
    "format_kelly_recommendation",
    "recommended_size",
]
