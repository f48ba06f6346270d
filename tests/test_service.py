"""Tests for the forecast and leaderboard services."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from calibr.errors import (
    AlreadyAttestedError,
    ImmutableForecastError,
    InactiveMarketError,
    NotFoundError,
    PrivateProfileError,
    ValidationError,
)
from calibr.ledger.ledger import ForecastLedger
from calibr.reputation.tiers import Tier
from calibr.service import ForecastService, LeaderboardService
from calibr.storage.cache import LeaderboardCache
from calibr.storage.repos import (
    AttestationRepository,
    CalibrationRepository,
    MarketDTO,
    MarketRepository,
    UserCalibrationDTO,
)

USER = "user_1"
NOW = datetime(2026, 6, 1, tzinfo=UTC)


@pytest.fixture
def forecasts(
    async_session: AsyncSession, ticking_clock: Callable[[], datetime]
) -> ForecastService:
    return ForecastService(async_session, ledger=ForecastLedger(clock=ticking_clock))


def create_payload(market_id: str, probability: float, **extra: object) -> dict[str, object]:
    return {"unifiedMarketId": market_id, "probability": probability, **extra}


# ============================================================================
# ForecastService Tests
# ============================================================================


class TestCreateForecast:
    @pytest.mark.asyncio
    async def test_first_forecast(self, forecasts: ForecastService, open_market: MarketDTO) -> None:
        result = await forecasts.create_forecast(
            USER, create_payload(open_market.id, 0.75, kellyFraction=0.5)
        )

        assert result.forecast.version == 1
        assert result.forecast.market_yes_price == 0.5
        assert result.calculated.to_dict() == {
            "edge": pytest.approx(0.25),
            "edgePercentage": pytest.approx(50.0),
            "hasPositiveEdge": True,
            "recommendedSize": pytest.approx(0.25),
            "priceChange": None,
        }

    @pytest.mark.asyncio
    async def test_defaults_from_settings(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))

        assert result.forecast.confidence == 0.5
        assert result.forecast.kelly_fraction == 0.5

    @pytest.mark.asyncio
    async def test_repeat_becomes_next_version(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        second = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.45))

        assert second.forecast.previous_forecast_id == first.forecast.id
        assert second.forecast.version == 2
        assert second.calculated.price_change == pytest.approx(-0.15)
        assert second.calculated.has_positive_edge is False
        assert second.calculated.recommended_size is None

    @pytest.mark.asyncio
    async def test_records_activity(
        self, async_session: AsyncSession, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))

        row = await CalibrationRepository(async_session).get(USER)
        assert row is not None
        assert row.streak_days == 1
        assert row.last_forecast_at == result.forecast.created_at

    @pytest.mark.asyncio
    async def test_unknown_market(self, forecasts: ForecastService) -> None:
        with pytest.raises(NotFoundError):
            await forecasts.create_forecast(USER, create_payload("missing", 0.6))

    @pytest.mark.asyncio
    async def test_resolved_market(
        self, async_session: AsyncSession, forecasts: ForecastService
    ) -> None:
        await MarketRepository(async_session).upsert(
            MarketDTO(
                id="closed",
                question="Done?",
                best_yes_price=1.0,
                best_no_price=0.0,
                is_active=False,
                resolution="YES",
            )
        )
        with pytest.raises(InactiveMarketError):
            await forecasts.create_forecast(USER, create_payload("closed", 0.6))

    @pytest.mark.asyncio
    async def test_invalid_probability(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        with pytest.raises(ValidationError):
            await forecasts.create_forecast(USER, create_payload(open_market.id, 1.2))

    @pytest.mark.asyncio
    async def test_illiquid_market_uses_default_price(
        self, async_session: AsyncSession, forecasts: ForecastService
    ) -> None:
        await MarketRepository(async_session).upsert(
            MarketDTO(id="thin", question="Thin?", best_yes_price=None, best_no_price=None)
        )
        result = await forecasts.create_forecast(USER, create_payload("thin", 0.7))

        assert result.calculated.edge == pytest.approx(0.2)
        assert result.forecast.market_yes_price is None


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_appends_to_head(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(
            USER, create_payload(open_market.id, 0.6, confidence=0.8, isPublic=False)
        )
        second = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.65))

        # Updating an older version still extends the current head.
        third = await forecasts.update_forecast(
            USER, first.forecast.id, {"probability": 0.7, "commitMessage": "More data"}
        )

        assert third.forecast.previous_forecast_id == second.forecast.id
        assert third.forecast.version == 3
        assert third.forecast.commit_message == "More data"
        assert third.forecast.is_public is True
        assert third.calculated.price_change == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_update_inherits_from_head(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(
            USER,
            create_payload(open_market.id, 0.6, confidence=0.8, kellyFraction=0.25, isPublic=False),
        )
        updated = await forecasts.update_forecast(USER, first.forecast.id, {"probability": 0.7})

        assert updated.forecast.confidence == 0.8
        assert updated.forecast.kelly_fraction == 0.25
        assert updated.forecast.is_public is False

    @pytest.mark.asyncio
    async def test_update_someone_elses_forecast(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        with pytest.raises(NotFoundError):
            await forecasts.update_forecast("intruder", first.forecast.id, {"probability": 0.7})

    @pytest.mark.asyncio
    async def test_delete(self, forecasts: ForecastService, open_market: MarketDTO) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))

        assert await forecasts.delete_forecast(USER, result.forecast.id) is True
        with pytest.raises(NotFoundError):
            await forecasts.get_forecast(USER, result.forecast.id)

    @pytest.mark.asyncio
    async def test_attested_forecast_is_immutable(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        await forecasts.record_attestation(USER, result.forecast.id, {"attestationUid": "0xabc"})

        with pytest.raises(ImmutableForecastError):
            await forecasts.delete_forecast(USER, result.forecast.id)
        stored = await forecasts.get_forecast(USER, result.forecast.id)
        assert stored.eas_attestation_uid == "0xabc"

    @pytest.mark.asyncio
    async def test_older_version_under_attested_successor_is_kept(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        second = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.7))
        await forecasts.record_attestation(USER, second.forecast.id, {"attestationUid": "0xdef"})

        with pytest.raises(ImmutableForecastError):
            await forecasts.delete_forecast(USER, first.forecast.id)

        successor = await forecasts.get_forecast(USER, second.forecast.id)
        assert successor.previous_forecast_id == first.forecast.id
        assert successor.eas_attestation_uid == "0xdef"
        assert (await forecasts.get_forecast(USER, first.forecast.id)).version == 1

    @pytest.mark.asyncio
    async def test_older_version_cannot_be_deleted(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.7))

        with pytest.raises(ImmutableForecastError):
            await forecasts.delete_forecast(USER, first.forecast.id)

    @pytest.mark.asyncio
    async def test_deleting_head_reopens_previous_version(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        second = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.7))

        assert await forecasts.delete_forecast(USER, second.forecast.id) is True
        third = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.8))

        assert third.forecast.previous_forecast_id == first.forecast.id
        assert third.forecast.version == 2

    @pytest.mark.asyncio
    async def test_execute_rebalance_is_stored_and_inherited(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        first = await forecasts.create_forecast(
            USER, create_payload(open_market.id, 0.6, executeRebalance=True)
        )
        inherited = await forecasts.update_forecast(USER, first.forecast.id, {"probability": 0.65})
        cleared = await forecasts.update_forecast(
            USER, first.forecast.id, {"probability": 0.7, "executeRebalance": False}
        )

        stored = await forecasts.get_forecast(USER, first.forecast.id)
        assert stored.execute_rebalance is True
        assert stored.to_dict()["executeRebalance"] is True
        assert inherited.forecast.execute_rebalance is True
        assert cleared.forecast.execute_rebalance is False

    @pytest.mark.asyncio
    async def test_writes_invalidate_leaderboard_cache(
        self,
        async_session: AsyncSession,
        ticking_clock: Callable[[], datetime],
        open_market: MarketDTO,
    ) -> None:
        cache = AsyncMock(spec=LeaderboardCache)
        service = ForecastService(
            async_session, ledger=ForecastLedger(clock=ticking_clock), cache=cache
        )

        result = await service.create_forecast(USER, create_payload(open_market.id, 0.6))
        await service.delete_forecast(USER, result.forecast.id)

        assert cache.invalidate.await_count == 2


class TestReads:
    @pytest.mark.asyncio
    async def test_get_forecast_visibility(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        hidden = await forecasts.create_forecast(
            USER, create_payload(open_market.id, 0.6, isPublic=False)
        )

        assert (await forecasts.get_forecast(USER, hidden.forecast.id)).id == hidden.forecast.id
        with pytest.raises(NotFoundError):
            await forecasts.get_forecast("someone_else", hidden.forecast.id)

    @pytest.mark.asyncio
    async def test_list_forecasts(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.7, isPublic=False))

        public_page = await forecasts.list_forecasts(USER)
        assert public_page.total == 1
        assert public_page.limit == 20

        page = await forecasts.list_forecasts(USER, {"includePrivate": True, "limit": 500})
        assert page.total == 2
        assert page.limit == 100
        newest = page.forecasts[0].to_dict()
        assert newest["probability"] == 0.7
        assert newest["calculated"]["priceChange"] == pytest.approx(0.1)  # type: ignore[index]
        assert "recommendedSize" not in newest["calculated"]  # type: ignore[operator]

    @pytest.mark.asyncio
    async def test_market_history(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        for probability in (0.5, 0.6, 0.55):
            await forecasts.create_forecast(USER, create_payload(open_market.id, probability))

        history = await forecasts.market_history(USER, open_market.id)
        data = history.to_dict()

        assert data["count"] == 3
        assert [h["version"] for h in data["history"]] == [1, 2, 3]  # type: ignore[union-attr]
        assert data["currentForecast"]["probability"] == 0.55  # type: ignore[index]
        assert data["market"]["bestYesPrice"] == 0.5  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_user_stats(self, forecasts: ForecastService, open_market: MarketDTO) -> None:
        first = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.7))
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6, isPublic=False))
        await forecasts.record_attestation(USER, first.forecast.id, {"attestationUid": "0xabc"})

        stats = await forecasts.user_stats(USER)

        assert stats.total_forecasts == 2
        assert stats.public_forecasts == 1
        assert stats.private_forecasts == 1
        assert stats.attested_forecasts == 1
        assert stats.average_edge == pytest.approx(0.15)
        assert stats.to_dict()["recentForecasts"][0]["marketQuestion"] == open_market.question  # type: ignore[index]


class TestAttestation:
    @pytest.mark.asyncio
    async def test_attestation_request(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(
            USER, create_payload(open_market.id, 0.72, commitMessage="Hunch")
        )
        payload = await forecasts.attestation_request(USER, result.forecast.id)

        assert payload["isAttested"] is False
        assert payload["market"] == {"id": open_market.id, "question": open_market.question}
        fields = payload["attestationData"]["fields"]  # type: ignore[index]
        assert fields["probability"] == 72
        assert fields["reasoning"] == "Hunch"

    @pytest.mark.asyncio
    async def test_record_attestation_once(
        self, async_session: AsyncSession, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.72))

        outcome = await forecasts.record_attestation(
            USER,
            result.forecast.id,
            {"attestationUid": "0xabc", "txHash": "0xtx", "chainId": 8453},
        )
        assert outcome.easscan_url == "https://base.easscan.org/attestation/view/0xabc"
        assert outcome.to_dict()["attestation"]["txHash"] == "0xtx"  # type: ignore[index]

        record = await AttestationRepository(async_session).get("0xabc")
        assert record is not None
        assert record.forecast_id == result.forecast.id
        assert record.payload is not None and record.payload["probability"] == 72

        with pytest.raises(AlreadyAttestedError):
            await forecasts.record_attestation(
                USER, result.forecast.id, {"attestationUid": "0xdef"}
            )

    @pytest.mark.asyncio
    async def test_record_attestation_defaults_to_sepolia(
        self, forecasts: ForecastService, open_market: MarketDTO
    ) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.72))
        outcome = await forecasts.record_attestation(
            USER, result.forecast.id, {"attestationUid": "0xabc"}
        )
        assert outcome.attestation.chain_id == 84532
        assert outcome.easscan_url.startswith("https://base-sepolia.easscan.org/")

    @pytest.mark.asyncio
    async def test_missing_uid(self, forecasts: ForecastService, open_market: MarketDTO) -> None:
        result = await forecasts.create_forecast(USER, create_payload(open_market.id, 0.72))
        with pytest.raises(ValidationError):
            await forecasts.record_attestation(USER, result.forecast.id, {})


# ============================================================================
# LeaderboardService Tests
# ============================================================================


async def seed_calibration(session: AsyncSession, user_id: str, **overrides: object) -> None:
    values: dict[str, object] = {
        "user_id": user_id,
        "avg_brier_score": 0.2,
        "avg_time_weighted_brier": 0.18,
        "total_forecasts": 100,
        "resolved_forecasts": 80,
        "current_tier": Tier.MASTER,
        "display_name": user_id.title(),
    }
    values.update(overrides)
    await CalibrationRepository(session).upsert(UserCalibrationDTO(**values))  # type: ignore[arg-type]


@pytest.fixture
def mock_cache() -> LeaderboardCache:
    redis = AsyncMock()
    redis.get.return_value = None
    return LeaderboardCache(redis)


class TestLeaderboard:
    @pytest.mark.asyncio
    async def test_ranked_page(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "bob", avg_brier_score=0.3)
        await seed_calibration(async_session, "carol", is_private=True, avg_brier_score=0.1)

        page = await LeaderboardService(async_session).leaderboard()

        entries = page["entries"]
        assert [e["rank"] for e in entries] == [1, 2, 3]
        assert entries[0]["userId"] == "anonymous"
        assert entries[0]["displayName"] == "Anonymous Forecaster"
        assert entries[1]["userId"] == "alice"
        assert entries[1]["compositeScore"] == 760
        assert entries[1]["calibrationScore"] == pytest.approx(0.82)
        assert page["pagination"] == {"total": 3, "limit": 50, "offset": 0, "hasMore": False}

    @pytest.mark.asyncio
    async def test_private_excluded_keeps_global_ranks(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "carol", is_private=True, avg_brier_score=0.1)

        page = await LeaderboardService(async_session).leaderboard({"includeAnonymous": False})

        assert [(e["userId"], e["rank"]) for e in page["entries"]] == [("alice", 2)]

    @pytest.mark.asyncio
    async def test_stored_tier_is_reported(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice", current_tier=Tier.JOURNEYMAN)

        page = await LeaderboardService(async_session).leaderboard()

        assert page["entries"][0]["tier"] == "JOURNEYMAN"
        assert page["entries"][0]["tierProgress"] == 1.0

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "bob", resolved_forecasts=2)
        await seed_calibration(async_session, "dave", current_tier=Tier.EXPERT)

        service = LeaderboardService(async_session)
        by_tier = await service.leaderboard({"tier": "EXPERT"})
        assert [e["userId"] for e in by_tier["entries"]] == ["dave"]

        active = await service.leaderboard({"minForecasts": 10})
        assert {e["userId"] for e in active["entries"]} == {"alice", "dave"}

        first_page = await service.leaderboard({"limit": 1})
        assert len(first_page["entries"]) == 1
        assert first_page["pagination"]["hasMore"] is True

    @pytest.mark.asyncio
    async def test_cached_page_served(self, async_session: AsyncSession) -> None:
        redis = AsyncMock()
        redis.get.side_effect = [None, b'{"entries": [], "cached": true}']
        service = LeaderboardService(async_session, cache=LeaderboardCache(redis))

        assert await service.leaderboard() == {"entries": [], "cached": True}

    @pytest.mark.asyncio
    async def test_tier_distribution(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "bob")

        data = await LeaderboardService(async_session).tier_distribution()

        master = next(t for t in data["tiers"] if t["tier"] == "MASTER")
        assert master["count"] == 2
        assert master["threshold"] == 600
        assert data["totalForecasters"] == 2


class TestProfile:
    @pytest.mark.asyncio
    async def test_profile(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "bob", avg_brier_score=0.3)

        profile = await LeaderboardService(async_session).user_profile("bob")

        assert profile["rank"] == 2
        assert profile["percentile"] == pytest.approx(50.0)
        assert profile["scoreBreakdown"]["volumeBonus"] == 8

    @pytest.mark.asyncio
    async def test_private_profile(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "carol", is_private=True)
        with pytest.raises(PrivateProfileError):
            await LeaderboardService(async_session).user_profile("carol")

    @pytest.mark.asyncio
    async def test_unknown_user(self, async_session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await LeaderboardService(async_session).user_profile("nobody")


class TestTierCheck:
    @pytest.mark.asyncio
    async def test_promotion(self, async_session: AsyncSession, mock_cache: LeaderboardCache) -> None:
        await seed_calibration(async_session, "alice", current_tier=Tier.JOURNEYMAN)
        service = LeaderboardService(async_session, cache=mock_cache)

        result = await service.check_tier("alice", now=NOW)

        assert result.composite_score == 760
        assert result.change.direction == "up"
        assert result.change.delta == 2
        assert result.change.should_celebrate is True
        assert result.badge is not None
        assert result.badge.attestation_data() == {
            "tier": "MASTER",
            "score": 760,
            "period": int(NOW.timestamp()),
            "category": "OVERALL",
            "rank": 1,
        }
        row = await CalibrationRepository(async_session).get("alice")
        assert row is not None
        assert row.current_tier == Tier.MASTER
        assert row.tier_promoted_at == NOW
        mock_cache._redis.incr.assert_awaited()  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_demotion(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice", current_tier=Tier.GRANDMASTER)

        result = await LeaderboardService(async_session).check_tier("alice", now=NOW)

        assert result.change.direction == "down"
        assert result.change.should_celebrate is False
        row = await CalibrationRepository(async_session).get("alice")
        assert row is not None
        assert row.current_tier == Tier.MASTER
        assert row.tier_promoted_at is None

    @pytest.mark.asyncio
    async def test_unchanged(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")

        result = await LeaderboardService(async_session).check_tier("alice", now=NOW)

        assert result.change.changed is False
        assert result.badge is None
        assert result.to_dict()["badge"] is None


class TestAchievementsAndRefresh:
    @pytest.mark.asyncio
    async def test_unlocks_are_persisted(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice", streak_days=8)
        service = LeaderboardService(async_session)

        first = {a.id: a for a in await service.achievements("alice", now=NOW)}
        later = NOW + timedelta(days=3)
        second = {a.id: a for a in await service.achievements("alice", now=later)}

        assert first["STREAK_7"].unlocked_at == NOW
        assert second["STREAK_7"].unlocked_at == NOW
        assert first["FORECASTS_100"].is_unlocked
        assert first["TIER_MASTER"].is_unlocked
        assert not first["STREAK_30"].is_unlocked

    @pytest.mark.asyncio
    async def test_refresh_calibration(
        self,
        async_session: AsyncSession,
        forecasts: ForecastService,
        open_market: MarketDTO,
    ) -> None:
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.6))
        await forecasts.create_forecast(USER, create_payload(open_market.id, 0.8))
        await MarketRepository(async_session).upsert(
            MarketDTO(
                id=open_market.id,
                question=open_market.question,
                best_yes_price=1.0,
                best_no_price=0.0,
                is_active=False,
                resolution="YES",
            )
        )

        row = await LeaderboardService(async_session).refresh_calibration(USER, now=NOW)

        # Every version counts; only the latest on the market is scored.
        assert row.total_forecasts == 2
        assert row.resolved_forecasts == 1
        assert row.avg_brier_score == pytest.approx(0.04)
        assert row.streak_days == 1

    @pytest.mark.asyncio
    async def test_refresh_ranks(self, async_session: AsyncSession) -> None:
        await seed_calibration(async_session, "alice")
        await seed_calibration(async_session, "bob", avg_brier_score=0.3)

        assert await LeaderboardService(async_session).refresh_ranks() == 2

        repo = CalibrationRepository(async_session)
        alice, bob = await repo.get("alice"), await repo.get("bob")
        assert alice is not None and bob is not None
        assert (alice.global_rank, bob.global_rank) == (1, 2)
