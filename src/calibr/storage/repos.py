"""Repository pattern implementations for data access.

This module provides data access for markets, forecast chains, calibration
aggregates and attestation records. Repositories flush but never commit;
the caller owns the transaction.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from calibr.errors import AlreadyAttestedError, ConcurrentWriteError, ImmutableForecastError
from calibr.ledger.models import Forecast, MarketSnapshot
from calibr.reputation.achievements import advance_streak
from calibr.reputation.brier import CalibrationStats
from calibr.reputation.models import Achievement
from calibr.reputation.tiers import Tier
from calibr.storage.models import (
    AttestationModel,
    ForecastModel,
    MarketModel,
    UserAchievementModel,
    UserCalibrationModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class MarketDTO:
    """Data transfer object for markets."""

    id: str
    question: str
    best_yes_price: float | None
    best_no_price: float | None
    is_active: bool = True
    resolution: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: MarketModel) -> MarketDTO:
        return cls(
            id=model.id,
            question=model.question,
            best_yes_price=model.best_yes_price,
            best_no_price=model.best_no_price,
            is_active=model.is_active,
            resolution=model.resolution,
            resolved_at=_as_utc(model.resolved_at),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    def snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            yes_price=self.best_yes_price,
            no_price=self.best_no_price,
            is_active=self.is_active,
        )


class MarketRepository:
    """Repository for market lookups; syncing prices is someone else's job."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, market_id: str) -> MarketDTO | None:
        model = await self.session.get(MarketModel, market_id)
        return MarketDTO.from_model(model) if model else None

    async def get_many(self, market_ids: Iterable[str]) -> dict[str, MarketDTO]:
        ids = set(market_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(MarketModel).where(MarketModel.id.in_(ids)))
        return {m.id: MarketDTO.from_model(m) for m in result.scalars().all()}

    async def upsert(self, dto: MarketDTO, *, now: datetime | None = None) -> MarketDTO:
        now = now or datetime.now(UTC)
        values = {
            "id": dto.id,
            "question": dto.question,
            "best_yes_price": dto.best_yes_price,
            "best_no_price": dto.best_no_price,
            "is_active": dto.is_active,
            "resolution": dto.resolution,
            "resolved_at": dto.resolved_at,
        }
        stmt = _insert_for(self.session, MarketModel).values(
            **values, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "question": stmt.excluded.question,
                "best_yes_price": stmt.excluded.best_yes_price,
                "best_no_price": stmt.excluded.best_no_price,
                "is_active": stmt.excluded.is_active,
                "resolution": stmt.excluded.resolution,
                "resolved_at": stmt.excluded.resolved_at,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        self.session.expire_all()
        return dto


def forecast_from_model(model: ForecastModel) -> Forecast:
    return Forecast(
        id=model.id,
        user_id=model.user_id,
        market_id=model.market_id,
        probability=model.probability,
        confidence=model.confidence,
        kelly_fraction=model.kelly_fraction,
        recommended_size=model.recommended_size,
        market_yes_price=model.market_yes_price,
        market_no_price=model.market_no_price,
        previous_forecast_id=model.previous_forecast_id,
        version=model.version,
        created_at=_as_utc(model.created_at),  # type: ignore[arg-type]
        commit_message=model.commit_message,
        is_public=model.is_public,
        execute_rebalance=model.execute_rebalance,
        eas_attestation_uid=model.eas_attestation_uid,
        eas_attested_at=_as_utc(model.eas_attested_at),
    )


@dataclass(frozen=True)
class ForecastCounts:
    total: int
    public: int
    attested: int

    @property
    def private(self) -> int:
        return self.total - self.public


class ForecastRepository:
    """Create-only store for forecast version chains.

    ``append`` is the single write path for new versions. It checks that the
    caller's view of the chain head is still current, and the
    (user_id, market_id, version) unique constraint catches the race the
    check cannot see.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, forecast_id: str) -> Forecast | None:
        model = await self.session.get(ForecastModel, forecast_id)
        return forecast_from_model(model) if model else None

    async def get_head(self, user_id: str, market_id: str) -> Forecast | None:
        """Newest version in the (user, market) chain."""
        result = await self.session.execute(
            select(ForecastModel)
            .where(ForecastModel.user_id == user_id, ForecastModel.market_id == market_id)
            .order_by(ForecastModel.version.desc(), ForecastModel.created_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return forecast_from_model(model) if model else None

    async def append(self, forecast: Forecast, *, expected_head_id: str | None) -> Forecast:
        """Insert a new chain version on top of ``expected_head_id``.

        Raises:
            ConcurrentWriteError: If the head moved since the caller read it,
                or another writer inserted the same version first. The
                session must be rolled back after the latter.
        """
        head = await self.get_head(forecast.user_id, forecast.market_id)
        current_head_id = head.id if head else None
        if current_head_id != expected_head_id:
            raise ConcurrentWriteError(
                "Forecast chain was updated concurrently; reload and retry"
            )

        self.session.add(
            ForecastModel(
                id=forecast.id,
                user_id=forecast.user_id,
                market_id=forecast.market_id,
                probability=forecast.probability,
                confidence=forecast.confidence,
                kelly_fraction=forecast.kelly_fraction,
                recommended_size=forecast.recommended_size,
                market_yes_price=forecast.market_yes_price,
                market_no_price=forecast.market_no_price,
                previous_forecast_id=forecast.previous_forecast_id,
                version=forecast.version,
                commit_message=forecast.commit_message,
                is_public=forecast.is_public,
                execute_rebalance=forecast.execute_rebalance,
                eas_attestation_uid=forecast.eas_attestation_uid,
                eas_attested_at=forecast.eas_attested_at,
                created_at=forecast.created_at,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.info(
                "Lost append race: user=%s, market=%s, version=%d",
                forecast.user_id,
                forecast.market_id,
                forecast.version,
            )
            raise ConcurrentWriteError(
                "Forecast chain was updated concurrently; reload and retry"
            ) from e
        return forecast

    async def list_for_user(
        self,
        user_id: str,
        *,
        market_id: str | None = None,
        include_private: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Forecast]:
        """Forecasts newest first."""
        stmt = select(ForecastModel).where(ForecastModel.user_id == user_id)
        if market_id is not None:
            stmt = stmt.where(ForecastModel.market_id == market_id)
        if not include_private:
            stmt = stmt.where(ForecastModel.is_public.is_(True))
        stmt = stmt.order_by(ForecastModel.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [forecast_from_model(m) for m in result.scalars().all()]

    async def count_for_user(
        self,
        user_id: str,
        *,
        market_id: str | None = None,
        include_private: bool = True,
    ) -> int:
        stmt = select(func.count()).select_from(ForecastModel).where(
            ForecastModel.user_id == user_id
        )
        if market_id is not None:
            stmt = stmt.where(ForecastModel.market_id == market_id)
        if not include_private:
            stmt = stmt.where(ForecastModel.is_public.is_(True))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def heads_for_user(self, user_id: str) -> list[Forecast]:
        """Latest version per market the user has forecast on."""
        result = await self.session.execute(
            select(ForecastModel)
            .where(ForecastModel.user_id == user_id)
            .order_by(ForecastModel.market_id, ForecastModel.version.asc())
        )
        heads: dict[str, Forecast] = {}
        for model in result.scalars().all():
            heads[model.market_id] = forecast_from_model(model)
        return list(heads.values())

    async def list_chain(self, user_id: str, market_id: str) -> list[Forecast]:
        """All versions for (user, market), oldest first."""
        result = await self.session.execute(
            select(ForecastModel)
            .where(ForecastModel.user_id == user_id, ForecastModel.market_id == market_id)
            .order_by(ForecastModel.created_at.asc())
        )
        return [forecast_from_model(m) for m in result.scalars().all()]

    async def counts_for_user(self, user_id: str) -> ForecastCounts:
        result = await self.session.execute(
            select(
                func.count(),
                func.count().filter(ForecastModel.is_public.is_(True)),
                func.count(ForecastModel.eas_attestation_uid),
            ).where(ForecastModel.user_id == user_id)
        )
        total, public, attested = result.one()
        return ForecastCounts(total=int(total), public=int(public), attested=int(attested))

    async def delete(self, forecast_id: str) -> bool:
        """Remove one version. Only a chain head may go; successors are never rewritten.

        Raises:
            ImmutableForecastError: If a newer version links to this one.
        """
        successor = await self.session.execute(
            select(ForecastModel.id)
            .where(ForecastModel.previous_forecast_id == forecast_id)
            .limit(1)
        )
        if successor.scalar_one_or_none() is not None:
            raise ImmutableForecastError("Cannot delete a forecast that has newer versions")
        result = await self.session.execute(
            delete(ForecastModel).where(ForecastModel.id == forecast_id)
        )
        await self.session.flush()
        self.session.expire_all()
        return bool(result.rowcount)

    async def set_attestation(
        self, forecast_id: str, attestation_uid: str, *, attested_at: datetime
    ) -> None:
        """Stamp the attestation UID; only the first caller wins.

        Raises:
            AlreadyAttestedError: If the forecast already has a UID.
        """
        result = await self.session.execute(
            update(ForecastModel)
            .where(
                ForecastModel.id == forecast_id,
                ForecastModel.eas_attestation_uid.is_(None),
            )
            .values(eas_attestation_uid=attestation_uid, eas_attested_at=attested_at)
        )
        if not result.rowcount:
            raise AlreadyAttestedError("Forecast already attested")
        await self.session.flush()
        self.session.expire_all()


@dataclass
class UserCalibrationDTO:
    """Data transfer object for per-user calibration aggregates."""

    user_id: str
    avg_brier_score: float | None
    avg_time_weighted_brier: float | None
    total_forecasts: int
    resolved_forecasts: int
    current_tier: Tier
    global_rank: int | None = None
    tier_promoted_at: datetime | None = None
    streak_days: int = 0
    is_private: bool = False
    display_name: str | None = None
    joined_at: datetime | None = None
    last_forecast_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserCalibrationModel) -> UserCalibrationDTO:
        return cls(
            user_id=model.user_id,
            avg_brier_score=model.avg_brier_score,
            avg_time_weighted_brier=model.avg_time_weighted_brier,
            total_forecasts=model.total_forecasts,
            resolved_forecasts=model.resolved_forecasts,
            current_tier=Tier(model.current_tier),
            global_rank=model.global_rank,
            tier_promoted_at=_as_utc(model.tier_promoted_at),
            streak_days=model.streak_days,
            is_private=model.is_private,
            display_name=model.display_name,
            joined_at=_as_utc(model.joined_at),
            last_forecast_at=_as_utc(model.last_forecast_at),
            updated_at=_as_utc(model.updated_at),
        )


class CalibrationRepository:
    """Repository for UserCalibration rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> UserCalibrationDTO | None:
        model = await self.session.get(UserCalibrationModel, user_id)
        return UserCalibrationDTO.from_model(model) if model else None

    async def list_all(
        self,
        *,
        tier: Tier | None = None,
        min_resolved: int = 0,
        include_private: bool = True,
    ) -> list[UserCalibrationDTO]:
        stmt = select(UserCalibrationModel)
        if tier is not None:
            stmt = stmt.where(UserCalibrationModel.current_tier == tier.value)
        if min_resolved > 0:
            stmt = stmt.where(UserCalibrationModel.resolved_forecasts >= min_resolved)
        if not include_private:
            stmt = stmt.where(UserCalibrationModel.is_private.is_(False))
        result = await self.session.execute(stmt.order_by(UserCalibrationModel.joined_at.asc()))
        return [UserCalibrationDTO.from_model(m) for m in result.scalars().all()]

    async def tier_counts(self) -> dict[Tier, int]:
        result = await self.session.execute(
            select(UserCalibrationModel.current_tier, func.count()).group_by(
                UserCalibrationModel.current_tier
            )
        )
        counts = {tier: 0 for tier in Tier}
        for tier_value, count in result.all():
            counts[Tier(tier_value)] = int(count)
        return counts

    async def upsert(self, dto: UserCalibrationDTO) -> UserCalibrationDTO:
        model = await self.session.get(UserCalibrationModel, dto.user_id)
        if model is None:
            model = UserCalibrationModel(user_id=dto.user_id)
            if dto.joined_at is not None:
                model.joined_at = dto.joined_at
            self.session.add(model)
        model.display_name = dto.display_name
        model.avg_brier_score = dto.avg_brier_score
        model.avg_time_weighted_brier = dto.avg_time_weighted_brier
        model.total_forecasts = dto.total_forecasts
        model.resolved_forecasts = dto.resolved_forecasts
        model.current_tier = dto.current_tier.value
        model.tier_promoted_at = dto.tier_promoted_at
        model.global_rank = dto.global_rank
        model.streak_days = dto.streak_days
        model.is_private = dto.is_private
        model.last_forecast_at = dto.last_forecast_at
        await self.session.flush()
        await self.session.refresh(model)
        return UserCalibrationDTO.from_model(model)

    async def record_stats(self, user_id: str, stats: CalibrationStats) -> UserCalibrationDTO:
        """Write freshly computed Brier aggregates, creating the row if needed."""
        existing = await self.get(user_id)
        if existing is None:
            existing = UserCalibrationDTO(
                user_id=user_id,
                avg_brier_score=None,
                avg_time_weighted_brier=None,
                total_forecasts=0,
                resolved_forecasts=0,
                current_tier=Tier.APPRENTICE,
            )
        existing.avg_brier_score = stats.avg_brier_score
        existing.avg_time_weighted_brier = stats.avg_time_weighted_brier
        existing.total_forecasts = stats.total_forecasts
        existing.resolved_forecasts = stats.resolved_forecasts
        return await self.upsert(existing)

    async def record_activity(self, user_id: str, *, at: datetime) -> UserCalibrationDTO:
        """Bump last_forecast_at and the daily streak after a forecast write."""
        model = await self.session.get(UserCalibrationModel, user_id)
        if model is None:
            model = UserCalibrationModel(user_id=user_id, joined_at=at)
            self.session.add(model)
            model.streak_days = advance_streak(None, 0, at)
        else:
            model.streak_days = advance_streak(
                _as_utc(model.last_forecast_at), model.streak_days, at
            )
        model.last_forecast_at = at
        await self.session.flush()
        await self.session.refresh(model)
        return UserCalibrationDTO.from_model(model)

    async def set_tier(
        self, user_id: str, tier: Tier, *, promoted_at: datetime | None = None
    ) -> None:
        values: dict[str, Any] = {"current_tier": tier.value}
        if promoted_at is not None:
            values["tier_promoted_at"] = promoted_at
        await self.session.execute(
            update(UserCalibrationModel)
            .where(UserCalibrationModel.user_id == user_id)
            .values(**values)
        )
        await self.session.flush()
        self.session.expire_all()

    async def set_ranks(self, ranks: dict[str, int]) -> None:
        for user_id, rank in ranks.items():
            await self.session.execute(
                update(UserCalibrationModel)
                .where(UserCalibrationModel.user_id == user_id)
                .values(global_rank=rank)
            )
        await self.session.flush()
        self.session.expire_all()


@dataclass
class AttestationDTO:
    """Data transfer object for attestation tracking records."""

    uid: str
    user_id: str
    schema_name: str
    chain_id: int
    forecast_id: str | None = None
    schema_uid: str | None = None
    tx_hash: str | None = None
    attester: str | None = None
    recipient: str | None = None
    payload: dict[str, Any] | None = None
    is_offchain: bool = False
    is_private: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AttestationModel) -> AttestationDTO:
        return cls(
            uid=model.uid,
            user_id=model.user_id,
            schema_name=model.schema_name,
            chain_id=model.chain_id,
            forecast_id=model.forecast_id,
            schema_uid=model.schema_uid,
            tx_hash=model.tx_hash,
            attester=model.attester,
            recipient=model.recipient,
            payload=json.loads(model.payload_json) if model.payload_json else None,
            is_offchain=model.is_offchain,
            is_private=model.is_private,
            created_at=_as_utc(model.created_at),
        )


class AttestationRepository:
    """Repository for attestation tracking records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, uid: str) -> AttestationDTO | None:
        model = await self.session.get(AttestationModel, uid)
        return AttestationDTO.from_model(model) if model else None

    async def insert(self, dto: AttestationDTO) -> AttestationDTO:
        model = AttestationModel(
            uid=dto.uid,
            user_id=dto.user_id,
            schema_name=dto.schema_name,
            chain_id=dto.chain_id,
            forecast_id=dto.forecast_id,
            schema_uid=dto.schema_uid,
            tx_hash=dto.tx_hash,
            attester=dto.attester,
            recipient=dto.recipient,
            payload_json=json.dumps(dto.payload or {}, sort_keys=True),
            is_offchain=dto.is_offchain,
            is_private=dto.is_private,
        )
        if dto.created_at is not None:
            model.created_at = dto.created_at
        self.session.add(model)
        await self.session.flush()
        return AttestationDTO.from_model(model)

    async def list_for_forecast(self, forecast_id: str) -> list[AttestationDTO]:
        result = await self.session.execute(
            select(AttestationModel)
            .where(AttestationModel.forecast_id == forecast_id)
            .order_by(AttestationModel.created_at.asc())
        )
        return [AttestationDTO.from_model(m) for m in result.scalars().all()]


class AchievementRepository:
    """Repository for first-unlock times of user achievements."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def unlocked_at(self, user_id: str) -> dict[str, datetime]:
        result = await self.session.execute(
            select(UserAchievementModel).where(UserAchievementModel.user_id == user_id)
        )
        return {
            m.achievement_id: _as_utc(m.unlocked_at)  # type: ignore[misc]
            for m in result.scalars().all()
        }

    async def record_unlocked(self, user_id: str, achievements: Iterable[Achievement]) -> int:
        """Persist unlocks not stored yet; returns how many were new."""
        known = await self.unlocked_at(user_id)
        added = 0
        for achievement in achievements:
            if achievement.unlocked_at is None or achievement.id in known:
                continue
            self.session.add(
                UserAchievementModel(
                    user_id=user_id,
                    achievement_id=achievement.id,
                    unlocked_at=achievement.unlocked_at,
                )
            )
            added += 1
        if added:
            await self.session.flush()
        return added
