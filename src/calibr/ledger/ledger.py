"""Append-only forecast version chains.

The ledger is pure: it builds new Forecast versions from plain inputs and
enforces the attestation rules, while persistence (and the at-most-one-head
guarantee under concurrent writers) lives in ForecastRepository.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from calibr.errors import (
    AlreadyAttestedError,
    ChainIntegrityError,
    ImmutableForecastError,
    InactiveMarketError,
    ValidationError,
)
from calibr.ledger.models import (
    AppendResult,
    Calculated,
    Forecast,
    HistoryEntry,
    MarketSnapshot,
    new_forecast_id,
)
from calibr.sizing.kelly import compute_edge, edge_percentage, recommended_size

logger = logging.getLogger(__name__)

# Assumed YES price when the market has no quote (illiquid). This flips the
# sign of edge for any probability other than 0.5, so it is kept explicit.
DEFAULT_MARKET_PRICE = 0.5

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ForecastLedger:
    """Builds forecast versions and guards their lifecycle.

    Lifecycle per row: created -> attested (one-way, at most once).

    Example:
        ```python
        ledger = ForecastLedger()
        head = await repo.get_head(user_id, market_id)
        result = ledger.append(
            user_id, market_id, 0.72, 0.6, 0.5,
            MarketSnapshot(yes_price=0.55, no_price=0.45, is_active=True),
            head,
        )
        await repo.append(result.forecast, expected_head_id=head.id if head else None)
        ```
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or _utcnow

    def append(
        self,
        user_id: str,
        market_id: str,
        probability: float,
        confidence: float,
        kelly_fraction: float,
        market_snapshot: MarketSnapshot,
        previous_forecast: Forecast | None,
        *,
        commit_message: str | None = None,
        is_public: bool = True,
        execute_rebalance: bool = False,
        now: datetime | None = None,
    ) -> AppendResult:
        """Create the next forecast version for (user, market).

        Raises:
            InactiveMarketError: If the market is no longer open.
            ValidationError: If previous_forecast belongs to another chain.
        """
        if not market_snapshot.is_active:
            raise InactiveMarketError("Market is no longer active")
        if previous_forecast is not None and (
            previous_forecast.user_id != user_id or previous_forecast.market_id != market_id
        ):
            raise ValidationError("Previous forecast belongs to a different user or market")

        market_price = (
            market_snapshot.yes_price
            if market_snapshot.yes_price is not None
            else DEFAULT_MARKET_PRICE
        )
        edge = compute_edge(probability, market_price)
        size = recommended_size(probability, market_price, kelly_fraction)

        forecast = Forecast(
            id=new_forecast_id(),
            user_id=user_id,
            market_id=market_id,
            probability=probability,
            confidence=confidence,
            kelly_fraction=kelly_fraction,
            recommended_size=size,
            market_yes_price=market_snapshot.yes_price,
            market_no_price=market_snapshot.no_price,
            previous_forecast_id=previous_forecast.id if previous_forecast else None,
            version=previous_forecast.version + 1 if previous_forecast else 1,
            created_at=now or self._clock(),
            commit_message=commit_message,
            is_public=is_public,
            execute_rebalance=execute_rebalance,
        )
        calculated = Calculated(
            edge=edge,
            edge_percentage=edge_percentage(edge, market_price),
            has_positive_edge=edge > 0,
            recommended_size=size,
            price_change=(
                probability - previous_forecast.probability if previous_forecast else None
            ),
        )

        logger.debug(
            "Built forecast version: user=%s, market=%s, version=%d, edge=%.4f",
            user_id,
            market_id,
            forecast.version,
            edge,
        )
        return AppendResult(forecast=forecast, calculated=calculated)

    @staticmethod
    def can_delete(forecast: Forecast, head: Forecast | None = None) -> bool:
        """Only an unattested chain head may be removed.

        ``head`` is the chain's current head; when omitted the forecast is
        assumed to be it.
        """
        if forecast.eas_attestation_uid is not None:
            return False
        return head is None or head.id == forecast.id

    @classmethod
    def ensure_deletable(cls, forecast: Forecast, head: Forecast | None = None) -> None:
        if forecast.is_attested:
            raise ImmutableForecastError("Cannot delete attested forecast")
        if not cls.can_delete(forecast, head):
            raise ImmutableForecastError("Cannot delete a forecast that has newer versions")

    @staticmethod
    def can_mutate(forecast: Forecast) -> bool:
        """Forecast rows are never edited in place; append a new version instead."""
        return False

    def record_attestation(
        self,
        forecast: Forecast,
        attestation_uid: str,
        *,
        attested_at: datetime | None = None,
    ) -> Forecast:
        """Stamp an on-chain attestation onto a forecast (exactly once).

        Raises:
            ValidationError: If attestation_uid is empty.
            AlreadyAttestedError: If the forecast already has a UID.
        """
        if not attestation_uid:
            raise ValidationError("attestationUid is required")
        if forecast.is_attested:
            raise AlreadyAttestedError("Forecast already attested")
        return dataclasses.replace(
            forecast,
            eas_attestation_uid=attestation_uid,
            eas_attested_at=attested_at or self._clock(),
        )


def walk_chain(head: Forecast, lookup: Callable[[str], Forecast | None]) -> list[Forecast]:
    """Follow previous_forecast_id links from head back to the chain root.

    Returns versions newest first.

    Raises:
        ChainIntegrityError: On a cycle, a dangling link or a link that does
            not go strictly back in time.
    """
    chain = [head]
    seen = {head.id}
    current = head
    while current.previous_forecast_id is not None:
        previous = lookup(current.previous_forecast_id)
        if previous is None:
            raise ChainIntegrityError(
                f"Forecast {current.id} links to missing version {current.previous_forecast_id}"
            )
        if previous.id in seen:
            raise ChainIntegrityError(f"Cycle detected at forecast {previous.id}")
        if previous.created_at >= current.created_at:
            raise ChainIntegrityError(
                f"Forecast {current.id} is not newer than its predecessor {previous.id}"
            )
        seen.add(previous.id)
        chain.append(previous)
        current = previous
    return chain


def build_history(forecasts: Iterable[Forecast]) -> list[HistoryEntry]:
    """Number a market's forecasts oldest-first with per-step price changes."""
    ordered = sorted(forecasts, key=lambda f: f.created_at)
    history: list[HistoryEntry] = []
    for index, forecast in enumerate(ordered):
        previous = ordered[index - 1] if index > 0 else None
        history.append(
            HistoryEntry(
                forecast=forecast,
                version=index + 1,
                price_change=forecast.probability - previous.probability if previous else None,
            )
        )
    return history
