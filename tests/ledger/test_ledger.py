"""Tests for the append-only forecast ledger."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from calibr.errors import (
    AlreadyAttestedError,
    ChainIntegrityError,
    ImmutableForecastError,
    InactiveMarketError,
    ValidationError,
)
from calibr.ledger.ledger import ForecastLedger, build_history, walk_chain
from calibr.ledger.models import Forecast, MarketSnapshot

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

OPEN_MARKET = MarketSnapshot(yes_price=0.5, no_price=0.5, is_active=True)


@pytest.fixture
def ledger() -> ForecastLedger:
    return ForecastLedger(clock=lambda: T0)


def append_chain(ledger: ForecastLedger, probabilities: list[float]) -> list[Forecast]:
    chain: list[Forecast] = []
    previous = None
    for step, probability in enumerate(probabilities):
        result = ledger.append(
            "user_1",
            "market_1",
            probability,
            0.5,
            0.5,
            OPEN_MARKET,
            previous,
            now=T0 + timedelta(minutes=step),
        )
        previous = result.forecast
        chain.append(previous)
    return chain


class TestAppend:
    def test_first_version(self, ledger: ForecastLedger) -> None:
        result = ledger.append("user_1", "market_1", 0.75, 0.6, 0.5, OPEN_MARKET, None)

        forecast = result.forecast
        assert forecast.version == 1
        assert forecast.previous_forecast_id is None
        assert forecast.created_at == T0
        assert forecast.recommended_size == pytest.approx(0.25)
        assert result.is_update is False
        assert result.calculated.price_change is None
        assert result.calculated.edge == pytest.approx(0.25)
        assert result.calculated.edge_percentage == pytest.approx(50.0)

    def test_update_links_to_previous(self, ledger: ForecastLedger) -> None:
        first = ledger.append("user_1", "market_1", 0.6, 0.5, 0.5, OPEN_MARKET, None).forecast
        result = ledger.append(
            "user_1",
            "market_1",
            0.7,
            0.5,
            0.5,
            OPEN_MARKET,
            first,
            commit_message="New polling data",
        )

        assert result.is_update is True
        assert result.forecast.previous_forecast_id == first.id
        assert result.forecast.version == 2
        assert result.forecast.commit_message == "New polling data"
        assert result.calculated.price_change == pytest.approx(0.1)

    def test_negative_edge_has_no_size(self, ledger: ForecastLedger) -> None:
        result = ledger.append("user_1", "market_1", 0.45, 0.5, 0.5, OPEN_MARKET, None)

        assert result.calculated.edge == pytest.approx(-0.05)
        assert result.calculated.has_positive_edge is False
        assert result.calculated.recommended_size is None
        assert result.forecast.recommended_size is None

    def test_missing_quote_uses_default_price(self, ledger: ForecastLedger) -> None:
        illiquid = MarketSnapshot(yes_price=None, no_price=None, is_active=True)
        result = ledger.append("user_1", "market_1", 0.7, 0.5, 0.5, illiquid, None)

        assert result.calculated.edge == pytest.approx(0.2)
        assert result.forecast.market_yes_price is None

    def test_inactive_market_rejected(self, ledger: ForecastLedger) -> None:
        closed = MarketSnapshot(yes_price=0.5, no_price=0.5, is_active=False)
        with pytest.raises(InactiveMarketError):
            ledger.append("user_1", "market_1", 0.7, 0.5, 0.5, closed, None)

    def test_previous_from_other_chain_rejected(self, ledger: ForecastLedger) -> None:
        other = ledger.append("user_2", "market_1", 0.6, 0.5, 0.5, OPEN_MARKET, None).forecast
        with pytest.raises(ValidationError):
            ledger.append("user_1", "market_1", 0.7, 0.5, 0.5, OPEN_MARKET, other)

    def test_forecast_ids_are_unique(self, ledger: ForecastLedger) -> None:
        chain = append_chain(ledger, [0.5, 0.6, 0.7])
        assert len({f.id for f in chain}) == 3


class TestAttestationRules:
    def test_unattested_can_be_deleted(self, ledger: ForecastLedger) -> None:
        forecast = append_chain(ledger, [0.6])[0]
        assert ForecastLedger.can_delete(forecast) is True
        ForecastLedger.ensure_deletable(forecast)

    def test_attested_cannot_be_deleted(self, ledger: ForecastLedger) -> None:
        forecast = ledger.record_attestation(append_chain(ledger, [0.6])[0], "0xabc")

        assert ForecastLedger.can_delete(forecast) is False
        with pytest.raises(ImmutableForecastError):
            ForecastLedger.ensure_deletable(forecast)

    def test_only_head_can_be_deleted(self, ledger: ForecastLedger) -> None:
        first, second = append_chain(ledger, [0.6, 0.7])

        assert ForecastLedger.can_delete(second, second) is True
        assert ForecastLedger.can_delete(first, second) is False
        with pytest.raises(ImmutableForecastError, match="newer versions"):
            ForecastLedger.ensure_deletable(first, second)

    def test_attest_once(self, ledger: ForecastLedger) -> None:
        forecast = append_chain(ledger, [0.6])[0]
        attested = ledger.record_attestation(forecast, "0xabc")

        assert attested.eas_attestation_uid == "0xabc"
        assert attested.eas_attested_at == T0
        assert forecast.eas_attestation_uid is None
        with pytest.raises(AlreadyAttestedError):
            ledger.record_attestation(attested, "0xdef")

    def test_empty_uid_rejected(self, ledger: ForecastLedger) -> None:
        with pytest.raises(ValidationError):
            ledger.record_attestation(append_chain(ledger, [0.6])[0], "")

    def test_rows_are_never_mutable(self, ledger: ForecastLedger) -> None:
        assert ForecastLedger.can_mutate(append_chain(ledger, [0.6])[0]) is False


class TestWalkChain:
    def test_visits_every_version(self, ledger: ForecastLedger) -> None:
        chain = append_chain(ledger, [0.5, 0.55, 0.6, 0.65, 0.7])
        by_id = {f.id: f for f in chain}

        walked = walk_chain(chain[-1], by_id.get)

        assert [f.id for f in walked] == [f.id for f in reversed(chain)]
        assert all(a.created_at > b.created_at for a, b in zip(walked, walked[1:]))

    def test_dangling_link(self, ledger: ForecastLedger) -> None:
        chain = append_chain(ledger, [0.5, 0.6])
        with pytest.raises(ChainIntegrityError):
            walk_chain(chain[-1], {}.get)

    def test_cycle_detected(self, ledger: ForecastLedger) -> None:
        first, second = append_chain(ledger, [0.5, 0.6])
        looped = dataclasses.replace(
            first,
            previous_forecast_id=second.id,
            created_at=first.created_at - timedelta(minutes=5),
        )
        by_id = {looped.id: looped, second.id: second}

        with pytest.raises(ChainIntegrityError):
            walk_chain(second, by_id.get)

    def test_out_of_order_link(self, ledger: ForecastLedger) -> None:
        first, second = append_chain(ledger, [0.5, 0.6])
        late = dataclasses.replace(first, created_at=second.created_at + timedelta(minutes=1))

        with pytest.raises(ChainIntegrityError):
            walk_chain(second, {late.id: late}.get)


class TestBuildHistory:
    def test_versions_and_price_changes(self, ledger: ForecastLedger) -> None:
        chain = append_chain(ledger, [0.5, 0.6, 0.55])

        history = build_history(reversed(chain))

        assert [entry.version for entry in history] == [1, 2, 3]
        assert history[0].price_change is None
        assert history[1].price_change == pytest.approx(0.1)
        assert history[2].price_change == pytest.approx(-0.05)
        assert history[2].to_dict()["version"] == 3
