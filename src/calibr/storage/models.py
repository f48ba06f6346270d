"""SQLAlchemy models for persistent storage.

This module defines the database schema for markets, forecast version
chains, per-user calibration aggregates and attestation records.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class MarketModel(Base):
    """Prediction market with its latest quoted prices."""

    __tablename__ = "markets"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    best_yes_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    best_no_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_markets_active", "is_active"),)


class ForecastModel(Base):
    """One version in a per-(user, market) forecast chain.

    The (user_id, market_id, version) constraint is what keeps two writers
    from both appending on top of the same head.
    """

    __tablename__ = "forecasts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    market_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False
    )

    probability: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    kelly_fraction: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    recommended_size: Mapped[float | None] = mapped_column(Float, nullable=True)
    market_yes_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    market_no_price: Mapped[float | None] = mapped_column(Float, nullable=True)

    previous_forecast_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("forecasts.id"), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    commit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    execute_rebalance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    eas_attestation_uid: Mapped[str | None] = mapped_column(String(66), nullable=True)
    eas_attested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "market_id", "version", name="uq_forecasts_chain_version"),
        Index("idx_forecasts_user_market_created", "user_id", "market_id", "created_at"),
        Index("idx_forecasts_user_created", "user_id", "created_at"),
    )


class UserCalibrationModel(Base):
    """Per-user calibration aggregates and stored tier."""

    __tablename__ = "user_calibrations"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    avg_brier_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_time_weighted_brier: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_forecasts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_forecasts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="APPRENTICE")
    tier_promoted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    global_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_forecast_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_user_calibrations_tier", "current_tier"),)


class AttestationModel(Base):
    """Tracking copy of an EAS attestation made for a forecast."""

    __tablename__ = "attestations"

    uid: Mapped[str] = mapped_column(String(66), primary_key=True)
    forecast_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("forecasts.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    schema_uid: Mapped[str | None] = mapped_column(String(66), nullable=True)
    schema_name: Mapped[str] = mapped_column(String(64), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    attester: Mapped[str | None] = mapped_column(String(42), nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(42), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_offchain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_attestations_forecast", "forecast_id"),
        Index("idx_attestations_user", "user_id"),
    )


class UserAchievementModel(Base):
    """First unlock time of an achievement for a user."""

    __tablename__ = "user_achievements"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    achievement_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
