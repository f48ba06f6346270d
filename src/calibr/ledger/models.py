"""Data models for the forecast ledger."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime


def new_forecast_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class MarketSnapshot:
    """Live market state captured right before a forecast is written.

    Attributes:
        yes_price: Best YES price, or None for illiquid markets.
        no_price: Best NO price, or None when unknown.
        is_active: False once the market is resolved or closed.
    """

    yes_price: float | None
    no_price: float | None
    is_active: bool


@dataclass(frozen=True)
class Forecast:
    """One immutable version in a per-(user, market) forecast chain.

    "Updating" a forecast appends a new version whose previous_forecast_id
    points at the old one; rows are never edited apart from the one-time
    attestation stamp.
    """

    id: str
    user_id: str
    market_id: str
    probability: float
    confidence: float
    kelly_fraction: float
    recommended_size: float | None
    market_yes_price: float | None
    market_no_price: float | None
    previous_forecast_id: str | None
    version: int
    created_at: datetime
    commit_message: str | None = None
    is_public: bool = True
    execute_rebalance: bool = False
    eas_attestation_uid: str | None = None
    eas_attested_at: datetime | None = None

    @property
    def is_attested(self) -> bool:
        return self.eas_attestation_uid is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "marketId": self.market_id,
            "probability": self.probability,
            "confidence": self.confidence,
            "kellyFraction": self.kelly_fraction,
            "recommendedSize": self.recommended_size,
            "marketYesPrice": self.market_yes_price,
            "marketNoPrice": self.market_no_price,
            "previousForecastId": self.previous_forecast_id,
            "version": self.version,
            "commitMessage": self.commit_message,
            "isPublic": self.is_public,
            "executeRebalance": self.execute_rebalance,
            "easAttestationUid": self.eas_attestation_uid,
            "easAttestedAt": self.eas_attested_at.isoformat() if self.eas_attested_at else None,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Calculated:
    """Edge and sizing figures returned with every forecast write."""

    edge: float
    edge_percentage: float
    has_positive_edge: bool
    recommended_size: float | None
    price_change: float | None

    def to_dict(self) -> dict[str, object]:
        # Field names and null semantics are part of the response contract.
        return {
            "edge": self.edge,
            "edgePercentage": self.edge_percentage,
            "hasPositiveEdge": self.has_positive_edge,
            "recommendedSize": self.recommended_size,
            "priceChange": self.price_change,
        }


@dataclass(frozen=True)
class AppendResult:
    forecast: Forecast
    calculated: Calculated

    @property
    def is_update(self) -> bool:
        return self.forecast.previous_forecast_id is not None


@dataclass(frozen=True)
class HistoryEntry:
    """A forecast positioned in its market timeline (oldest = version 1)."""

    forecast: Forecast
    version: int
    price_change: float | None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.forecast.id,
            "probability": self.forecast.probability,
            "confidence": self.forecast.confidence,
            "commitMessage": self.forecast.commit_message,
            "createdAt": self.forecast.created_at.isoformat(),
            "marketYesPrice": self.forecast.market_yes_price,
            "marketNoPrice": self.forecast.market_no_price,
            "isPublic": self.forecast.is_public,
            "easAttestationUid": self.forecast.eas_attestation_uid,
            "version": self.version,
            "priceChange": self.price_change,
        }


@dataclass(frozen=True)
class AttestationReceipt:
    """Callback payload from the client after an on-chain attestation."""

    uid: str
    chain_id: int
    tx_hash: str | None = None
    schema_uid: str | None = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))
