"""Forecast and leaderboard services.

Services play the request-handler role: they validate payloads, load state
through the repositories, apply the ledger and reputation rules and write
the results back inside the caller's session. They never commit.

Example:
    ```python
    db = DatabaseManager(settings.database.url)
    async with db.get_async_session() as session:
        forecasts = ForecastService(session, settings=settings)
        result = await forecasts.create_forecast(
            "user-1", {"unifiedMarketId": "m-1", "probability": 0.72}
        )
        print(result.calculated.to_dict())
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from calibr.config import AttestationSettings, ForecastSettings, LeaderboardSettings
from calibr.errors import InactiveMarketError, NotFoundError, PrivateProfileError
from calibr.ledger import (
    DEFAULT_MARKET_PRICE,
    AppendResult,
    AttestationReceipt,
    Forecast,
    ForecastLedger,
    HistoryEntry,
    build_history,
)
from calibr.ledger.attestation import attestation_fields, build_attestation_payload, easscan_url
from calibr.reputation import (
    Achievement,
    LeaderboardEntry,
    LeaderboardFilter,
    ReputationScorer,
    ScoredForecast,
    TierBadge,
    TierChange,
    achievement_score,
    apply_privacy_filter,
    calibration_stats,
    check_achievements,
    filter_leaderboard,
    find_position,
    rank_forecasters,
    tier_for_score,
)
from calibr.reputation.achievements import ACHIEVEMENT_DEFINITIONS
from calibr.reputation.tiers import TIER_DESCRIPTIONS, TIER_ORDER, TIER_THRESHOLDS
from calibr.schemas import (
    CreateForecastRequest,
    LeaderboardQuery,
    ListForecastsQuery,
    RecordAttestationRequest,
    UpdateForecastRequest,
    parse_payload,
)
from calibr.sizing.kelly import compute_edge, edge_percentage
from calibr.storage.cache import LeaderboardCache
from calibr.storage.repos import (
    AchievementRepository,
    AttestationDTO,
    AttestationRepository,
    CalibrationRepository,
    ForecastRepository,
    MarketDTO,
    MarketRepository,
    UserCalibrationDTO,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from calibr.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Forecaster"
ANONYMOUS_USER_ID = "anonymous"


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class ListedForecast:
    """A forecast with edge figures against the market's current price."""

    forecast: Forecast
    edge: float
    edge_percentage: float
    has_positive_edge: bool
    price_change: float | None

    def to_dict(self) -> dict[str, object]:
        data = self.forecast.to_dict()
        data["calculated"] = {
            "edge": self.edge,
            "edgePercentage": self.edge_percentage,
            "hasPositiveEdge": self.has_positive_edge,
            "priceChange": self.price_change,
        }
        return data


@dataclass(frozen=True)
class ForecastPage:
    forecasts: list[ListedForecast]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict[str, object]:
        return {
            "forecasts": [f.to_dict() for f in self.forecasts],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class MarketHistory:
    history: list[HistoryEntry]
    market: MarketDTO | None

    @property
    def current(self) -> HistoryEntry | None:
        return self.history[-1] if self.history else None

    def to_dict(self) -> dict[str, object]:
        return {
            "history": [h.to_dict() for h in self.history],
            "count": len(self.history),
            "currentForecast": self.current.to_dict() if self.current else None,
            "market": (
                {
                    "bestYesPrice": self.market.best_yes_price,
                    "bestNoPrice": self.market.best_no_price,
                    "isActive": self.market.is_active,
                    "resolution": self.market.resolution,
                }
                if self.market
                else None
            ),
        }


@dataclass(frozen=True)
class UserStats:
    total_forecasts: int
    public_forecasts: int
    private_forecasts: int
    attested_forecasts: int
    average_edge: float
    recent: list[tuple[Forecast, MarketDTO | None]]

    def to_dict(self) -> dict[str, object]:
        return {
            "totalForecasts": self.total_forecasts,
            "publicForecasts": self.public_forecasts,
            "privateForecasts": self.private_forecasts,
            "attestedForecasts": self.attested_forecasts,
            "averageEdge": self.average_edge,
            "recentForecasts": [
                {
                    "id": f.id,
                    "probability": f.probability,
                    "marketQuestion": m.question if m else None,
                    "marketPrice": m.best_yes_price if m else None,
                    "resolution": m.resolution if m else None,
                    "createdAt": f.created_at.isoformat(),
                }
                for f, m in self.recent
            ],
        }


@dataclass(frozen=True)
class AttestationOutcome:
    forecast: Forecast
    attestation: AttestationDTO
    easscan_url: str

    def to_dict(self) -> dict[str, object]:
        return {
            "forecast": {
                "id": self.forecast.id,
                "probability": self.forecast.probability,
                "easAttestationUid": self.forecast.eas_attestation_uid,
                "easAttestedAt": (
                    self.forecast.eas_attested_at.isoformat()
                    if self.forecast.eas_attested_at
                    else None
                ),
            },
            "attestation": {
                "uid": self.attestation.uid,
                "chainId": self.attestation.chain_id,
                "txHash": self.attestation.tx_hash,
                "easScanUrl": self.easscan_url,
            },
        }


@dataclass(frozen=True)
class TierCheckResult:
    composite_score: int
    change: TierChange
    badge: TierBadge | None

    def to_dict(self) -> dict[str, object]:
        return {
            "compositeScore": self.composite_score,
            "tierChange": self.change.to_dict(),
            "badge": self.badge.attestation_data() if self.badge else None,
        }


def _market_price(market: MarketDTO | None) -> float:
    if market is None or market.best_yes_price is None:
        return DEFAULT_MARKET_PRICE
    return market.best_yes_price


def _calibration_score(avg_time_weighted_brier: float | None) -> float | None:
    # Higher is better, unlike the Brier figure it is derived from.
    if avg_time_weighted_brier is None:
        return None
    return 1 - avg_time_weighted_brier


# =============================================================================
# Forecasts
# =============================================================================


class ForecastService:
    """Forecast journaling: create, version, delete, read and attest."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings | None = None,
        ledger: ForecastLedger | None = None,
        cache: LeaderboardCache | None = None,
    ) -> None:
        self._forecast_settings = settings.forecast if settings else ForecastSettings()
        self._attestation_settings = settings.attestation if settings else AttestationSettings()
        self._ledger = ledger or ForecastLedger()
        # Streaks and counts shown on the leaderboard move with every write.
        self._cache = cache or LeaderboardCache(None)
        self._markets = MarketRepository(session)
        self._forecasts = ForecastRepository(session)
        self._calibrations = CalibrationRepository(session)
        self._attestations = AttestationRepository(session)

    async def _active_market(self, market_id: str) -> MarketDTO:
        market = await self._markets.get(market_id)
        if market is None:
            raise NotFoundError("Market not found")
        if not market.is_active:
            raise InactiveMarketError("Market is no longer active")
        return market

    async def _owned_forecast(self, user_id: str, forecast_id: str) -> Forecast:
        forecast = await self._forecasts.get(forecast_id)
        if forecast is None or forecast.user_id != user_id:
            raise NotFoundError("Forecast not found")
        return forecast

    async def _persist(self, result: AppendResult, head: Forecast | None) -> AppendResult:
        forecast = result.forecast
        await self._forecasts.append(forecast, expected_head_id=head.id if head else None)
        await self._calibrations.record_activity(forecast.user_id, at=forecast.created_at)
        await self._cache.invalidate()
        logger.info(
            "Forecast appended: id=%s, user=%s, market=%s, version=%d",
            forecast.id,
            forecast.user_id,
            forecast.market_id,
            forecast.version,
        )
        return result

    async def create_forecast(
        self, user_id: str, payload: CreateForecastRequest | Mapping[str, Any]
    ) -> AppendResult:
        """Record a forecast; a repeat on the same market becomes the next version."""
        request = parse_payload(CreateForecastRequest, payload)
        market = await self._active_market(request.market_id)
        head = await self._forecasts.get_head(user_id, market.id)

        defaults = self._forecast_settings
        result = self._ledger.append(
            user_id,
            market.id,
            request.probability,
            request.confidence if request.confidence is not None else defaults.default_confidence,
            (
                request.kelly_fraction
                if request.kelly_fraction is not None
                else defaults.default_kelly_fraction
            ),
            market.snapshot(),
            head,
            commit_message=request.commit_message,
            is_public=request.is_public,
            execute_rebalance=request.execute_rebalance,
        )
        return await self._persist(result, head)

    async def update_forecast(
        self,
        user_id: str,
        forecast_id: str,
        payload: UpdateForecastRequest | Mapping[str, Any],
    ) -> AppendResult:
        """Append a new version to the chain that ``forecast_id`` belongs to.

        The new version always links to the chain's current head, so updating
        an older version never forks the chain. Omitted fields inherit from
        that head.
        """
        request = parse_payload(UpdateForecastRequest, payload)
        target = await self._owned_forecast(user_id, forecast_id)
        market = await self._active_market(target.market_id)
        head = await self._forecasts.get_head(user_id, target.market_id) or target

        result = self._ledger.append(
            user_id,
            market.id,
            request.probability,
            request.confidence if request.confidence is not None else head.confidence,
            request.kelly_fraction if request.kelly_fraction is not None else head.kelly_fraction,
            market.snapshot(),
            head,
            commit_message=request.commit_message,
            is_public=request.is_public if request.is_public is not None else head.is_public,
            execute_rebalance=(
                request.execute_rebalance
                if request.execute_rebalance is not None
                else head.execute_rebalance
            ),
        )
        return await self._persist(result, head)

    async def delete_forecast(self, user_id: str, forecast_id: str) -> bool:
        """Remove the newest, unattested version of a chain."""
        forecast = await self._owned_forecast(user_id, forecast_id)
        head = await self._forecasts.get_head(user_id, forecast.market_id)
        self._ledger.ensure_deletable(forecast, head)
        deleted = await self._forecasts.delete(forecast.id)
        await self._cache.invalidate()
        logger.info("Forecast deleted: id=%s, user=%s", forecast.id, user_id)
        return deleted

    async def get_forecast(self, user_id: str, forecast_id: str) -> Forecast:
        """A forecast visible to ``user_id``: their own, or anyone's public one."""
        forecast = await self._forecasts.get(forecast_id)
        if forecast is None or (forecast.user_id != user_id and not forecast.is_public):
            raise NotFoundError("Forecast not found")
        return forecast

    async def list_forecasts(
        self,
        user_id: str,
        query: ListForecastsQuery | Mapping[str, Any] | None = None,
    ) -> ForecastPage:
        params = parse_payload(ListForecastsQuery, query or {})
        settings = self._forecast_settings
        limit = min(params.limit or settings.default_page_size, settings.max_page_size)

        forecasts = await self._forecasts.list_for_user(
            user_id,
            market_id=params.market_id,
            include_private=params.include_private,
            limit=limit,
            offset=params.offset,
        )
        total = await self._forecasts.count_for_user(
            user_id, market_id=params.market_id, include_private=params.include_private
        )
        markets = await self._markets.get_many(f.market_id for f in forecasts)

        listed: list[ListedForecast] = []
        for forecast in forecasts:
            price = _market_price(markets.get(forecast.market_id))
            edge = compute_edge(forecast.probability, price)
            previous = (
                await self._forecasts.get(forecast.previous_forecast_id)
                if forecast.previous_forecast_id
                else None
            )
            listed.append(
                ListedForecast(
                    forecast=forecast,
                    edge=edge,
                    edge_percentage=edge_percentage(edge, price),
                    has_positive_edge=edge > 0,
                    price_change=(
                        forecast.probability - previous.probability if previous else None
                    ),
                )
            )
        return ForecastPage(forecasts=listed, total=total, limit=limit, offset=params.offset)

    async def market_history(self, user_id: str, market_id: str) -> MarketHistory:
        chain = await self._forecasts.list_chain(user_id, market_id)
        market = await self._markets.get(market_id)
        return MarketHistory(history=build_history(chain), market=market)

    async def user_stats(self, user_id: str) -> UserStats:
        counts = await self._forecasts.counts_for_user(user_id)
        recent = await self._forecasts.list_for_user(
            user_id, limit=self._forecast_settings.recent_window
        )
        markets = await self._markets.get_many(f.market_id for f in recent)

        average_edge = 0.0
        if recent:
            average_edge = sum(
                f.probability - _market_price(markets.get(f.market_id)) for f in recent
            ) / len(recent)

        return UserStats(
            total_forecasts=counts.total,
            public_forecasts=counts.public,
            private_forecasts=counts.private,
            attested_forecasts=counts.attested,
            average_edge=average_edge,
            recent=[(f, markets.get(f.market_id)) for f in recent],
        )

    async def attestation_request(self, user_id: str, forecast_id: str) -> dict[str, object]:
        """Fields the client signs to attest a forecast on-chain."""
        forecast = await self._owned_forecast(user_id, forecast_id)
        market = await self._markets.get(forecast.market_id)
        payload = build_attestation_payload(forecast)
        payload["market"] = {
            "id": forecast.market_id,
            "question": market.question if market else None,
        }
        return payload

    async def record_attestation(
        self,
        user_id: str,
        forecast_id: str,
        payload: RecordAttestationRequest | Mapping[str, Any],
    ) -> AttestationOutcome:
        """Stamp a client-made attestation onto a forecast, exactly once."""
        request = parse_payload(RecordAttestationRequest, payload)
        forecast = await self._owned_forecast(user_id, forecast_id)

        receipt = AttestationReceipt(
            uid=request.attestation_uid or "",
            chain_id=request.chain_id or self._attestation_settings.default_chain_id,
            tx_hash=request.tx_hash,
            schema_uid=request.schema_uid,
        )
        stamped = self._ledger.record_attestation(
            forecast, receipt.uid, attested_at=receipt.recorded_at
        )
        await self._forecasts.set_attestation(
            stamped.id, receipt.uid, attested_at=receipt.recorded_at
        )
        record = await self._attestations.insert(
            AttestationDTO(
                uid=receipt.uid,
                user_id=user_id,
                schema_name=self._attestation_settings.schema_name,
                chain_id=receipt.chain_id,
                forecast_id=stamped.id,
                schema_uid=receipt.schema_uid,
                tx_hash=receipt.tx_hash,
                attester=request.attester,
                recipient=request.recipient,
                payload=attestation_fields(stamped),
                is_private=not stamped.is_public,
            )
        )
        logger.info(
            "Attestation recorded: forecast=%s, uid=%s, chain=%d",
            stamped.id,
            receipt.uid,
            receipt.chain_id,
        )
        return AttestationOutcome(
            forecast=stamped,
            attestation=record,
            easscan_url=easscan_url(receipt.uid, receipt.chain_id),
        )


# =============================================================================
# Leaderboard
# =============================================================================


class LeaderboardService:
    """Leaderboard reads, tier checks and achievements over UserCalibration rows."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        cache: LeaderboardCache | None = None,
        settings: Settings | None = None,
        scorer: ReputationScorer | None = None,
    ) -> None:
        self._settings = settings.leaderboard if settings else LeaderboardSettings()
        self._cache = cache or LeaderboardCache(None)
        self._scorer = scorer or ReputationScorer()
        self._calibrations = CalibrationRepository(session)
        self._forecasts = ForecastRepository(session)
        self._markets = MarketRepository(session)
        self._achievements = AchievementRepository(session)

    def _entry(self, row: UserCalibrationDTO) -> LeaderboardEntry:
        score = self._scorer.composite_score(
            row.total_forecasts,
            row.resolved_forecasts,
            row.avg_brier_score,
            row.avg_time_weighted_brier,
        )
        return LeaderboardEntry(
            user_id=row.user_id,
            display_name=row.display_name or DEFAULT_DISPLAY_NAME,
            # Stored tier; resolution logic owns promotions.
            tier=row.current_tier,
            composite_score=score,
            brier_score=row.avg_brier_score,
            calibration_score=_calibration_score(row.avg_time_weighted_brier),
            total_forecasts=row.total_forecasts,
            resolved_forecasts=row.resolved_forecasts,
            joined_at=row.joined_at or datetime.now(UTC),
            last_forecast_at=row.last_forecast_at,
            streak_days=row.streak_days,
            is_private=row.is_private,
            tier_progress=self._scorer.tier_progress(score, row.current_tier),
            rank=row.global_rank or 0,
        )

    async def _ranked(self) -> list[LeaderboardEntry]:
        rows = await self._calibrations.list_all()
        return rank_forecasters(self._entry(row) for row in rows)

    async def _row(self, user_id: str) -> UserCalibrationDTO:
        row = await self._calibrations.get(user_id)
        if row is None:
            raise NotFoundError("User not found or has no calibration data")
        return row

    async def leaderboard(
        self, query: LeaderboardQuery | Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """One page of the ranked leaderboard, served from cache when possible."""
        params = parse_payload(LeaderboardQuery, query or {})
        limit = min(params.limit or self._settings.default_page_size, self._settings.max_page_size)
        cache_key = {
            "tier": params.tier.value if params.tier else "ALL",
            "min": params.min_forecasts,
            "limit": limit,
            "offset": params.offset,
            "anon": int(params.include_anonymous),
        }
        cached = await self._cache.get_page(cache_key)
        if cached is not None:
            return cached

        ranked = await self._ranked()
        filtered = filter_leaderboard(
            ranked,
            LeaderboardFilter(tier=params.tier, min_forecasts=params.min_forecasts or None),
        )
        visible = apply_privacy_filter(filtered, include_anonymous=params.include_anonymous)
        page_entries = visible[params.offset : params.offset + limit]

        entries = []
        for entry in page_entries:
            data = entry.to_dict()
            if entry.is_private:
                data["userId"] = ANONYMOUS_USER_ID
            entries.append(data)

        page: dict[str, Any] = {
            "entries": entries,
            "pagination": {
                "total": len(visible),
                "limit": limit,
                "offset": params.offset,
                "hasMore": params.offset + len(entries) < len(visible),
            },
            "category": "OVERALL",
            "updatedAt": datetime.now(UTC).isoformat(),
        }
        await self._cache.set_page(cache_key, page)
        return page

    async def user_profile(self, user_id: str) -> dict[str, Any]:
        row = await self._row(user_id)
        if row.is_private:
            raise PrivateProfileError("This user has a private profile")

        position = find_position(await self._ranked(), user_id)
        entry = position.entry if position else self._entry(row)
        breakdown = self._scorer.score_breakdown(
            row.total_forecasts,
            row.resolved_forecasts,
            row.avg_brier_score,
            row.avg_time_weighted_brier,
        )
        return {
            "userId": row.user_id,
            "displayName": entry.display_name,
            "rank": position.rank if position else None,
            "percentile": position.percentile if position else 0.0,
            "tier": entry.tier.value,
            "tierProgress": entry.tier_progress,
            "compositeScore": entry.composite_score,
            "scoreBreakdown": breakdown.to_dict(),
            "brierScore": row.avg_brier_score,
            "calibrationScore": entry.calibration_score,
            "totalForecasts": row.total_forecasts,
            "resolvedForecasts": row.resolved_forecasts,
            "streakDays": row.streak_days,
        }

    async def tier_distribution(self) -> dict[str, Any]:
        counts = await self._calibrations.tier_counts()
        return {
            "tiers": [
                {
                    "tier": tier.value,
                    "threshold": TIER_THRESHOLDS[tier],
                    "description": TIER_DESCRIPTIONS[tier],
                    "count": counts[tier],
                }
                for tier in TIER_ORDER
            ],
            "totalForecasters": sum(counts.values()),
        }

    async def check_tier(self, user_id: str, *, now: datetime | None = None) -> TierCheckResult:
        """Recompute the score, store the earned tier and build a badge on change."""
        row = await self._row(user_id)
        now = now or datetime.now(UTC)
        score = self._entry(row).composite_score
        change = self._scorer.detect_tier_change(row.current_tier, tier_for_score(score))

        badge = None
        if change.changed:
            await self._calibrations.set_tier(
                user_id,
                change.new_tier,
                promoted_at=now if change.direction == "up" else None,
            )
            await self._cache.invalidate()
            logger.info(
                "Tier changed: user=%s, %s -> %s (score=%d)",
                user_id,
                change.previous_tier.value,
                change.new_tier.value,
                score,
            )
            position = find_position(await self._ranked(), user_id)
            badge = self._scorer.create_tier_badge(
                change,
                score,
                rank=position.rank if position else 0,
                period=int(now.timestamp()),
            )
        return TierCheckResult(composite_score=score, change=change, badge=badge)

    async def achievements(
        self, user_id: str, *, now: datetime | None = None
    ) -> list[Achievement]:
        """Current achievement state; first unlock times are kept across calls."""
        row = await self._row(user_id)
        position = find_position(await self._ranked(), user_id)
        entry = position.entry if position else self._entry(row)

        unlocked = await self._achievements.unlocked_at(user_id)
        by_id = {d.id: d for d in ACHIEVEMENT_DEFINITIONS}
        entry.achievements = [
            Achievement(
                id=achievement_id,
                name=by_id[achievement_id].name,
                description=by_id[achievement_id].description,
                category=by_id[achievement_id].category,
                tier=by_id[achievement_id].tier,
                progress=by_id[achievement_id].max_progress,
                max_progress=by_id[achievement_id].max_progress,
                unlocked_at=unlocked_at,
            )
            for achievement_id, unlocked_at in unlocked.items()
            if achievement_id in by_id
        ]

        current = check_achievements(entry, now=now)
        added = await self._achievements.record_unlocked(user_id, current)
        if added:
            logger.info(
                "Achievements unlocked: user=%s, new=%d, score=%d",
                user_id,
                added,
                achievement_score(current),
            )
        return current

    async def refresh_calibration(
        self, user_id: str, *, now: datetime | None = None
    ) -> UserCalibrationDTO:
        """Recompute Brier aggregates from the latest forecast on each market.

        Scoring uses one forecast per market; total_forecasts counts every
        stored version.
        """
        heads = await self._forecasts.heads_for_user(user_id)
        markets = await self._markets.get_many(f.market_id for f in heads)

        scored = []
        for forecast in heads:
            market = markets.get(forecast.market_id)
            resolution = (market.resolution or "").upper() if market else ""
            outcome = {"YES": True, "NO": False}.get(resolution)
            scored.append(
                ScoredForecast(
                    probability=forecast.probability,
                    outcome=outcome,
                    timestamp=forecast.created_at,
                )
            )

        stats = calibration_stats(scored, now=now)
        counts = await self._forecasts.counts_for_user(user_id)
        stats = replace(stats, total_forecasts=counts.total)
        row = await self._calibrations.record_stats(user_id, stats)
        await self._cache.invalidate()
        logger.info(
            "Calibration refreshed: user=%s, total=%d, resolved=%d",
            user_id,
            stats.total_forecasts,
            stats.resolved_forecasts,
        )
        return row

    async def refresh_ranks(self) -> int:
        """Persist current ranks as global_rank; returns the number ranked."""
        ranked = await self._ranked()
        await self._calibrations.set_ranks({e.user_id: e.rank for e in ranked})
        await self._cache.invalidate()
        logger.info("Leaderboard ranks refreshed: %d forecasters", len(ranked))
        return len(ranked)
