"""Initial schema for markets, forecast chains, calibration and attestations.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "markets",
        sa.Column("id", sa.String(128), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("best_yes_price", sa.Float(), nullable=True),
        sa.Column("best_no_price", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("resolution", sa.String(16), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_markets_active", "markets", ["is_active"])

    # Forecast version chains
    op.create_table(
        "forecasts",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("market_id", sa.String(128), nullable=False),
        sa.Column("probability", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("kelly_fraction", sa.Float(), nullable=False),
        sa.Column("recommended_size", sa.Float(), nullable=True),
        sa.Column("market_yes_price", sa.Float(), nullable=True),
        sa.Column("market_no_price", sa.Float(), nullable=True),
        sa.Column("previous_forecast_id", sa.String(32), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("commit_message", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column(
            "execute_rebalance", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("eas_attestation_uid", sa.String(66), nullable=True),
        sa.Column("eas_attested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["market_id"], ["markets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["previous_forecast_id"], ["forecasts.id"]),
        sa.UniqueConstraint(
            "user_id", "market_id", "version", name="uq_forecasts_chain_version"
        ),
    )
    op.create_index(
        "idx_forecasts_user_market_created",
        "forecasts",
        ["user_id", "market_id", "created_at"],
    )
    op.create_index("idx_forecasts_user_created", "forecasts", ["user_id", "created_at"])

    op.create_table(
        "user_calibrations",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("avg_brier_score", sa.Float(), nullable=True),
        sa.Column("avg_time_weighted_brier", sa.Float(), nullable=True),
        sa.Column("total_forecasts", sa.Integer(), nullable=False),
        sa.Column("resolved_forecasts", sa.Integer(), nullable=False),
        sa.Column("streak_days", sa.Integer(), nullable=False),
        sa.Column("current_tier", sa.String(16), nullable=False),
        sa.Column("tier_promoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("global_rank", sa.Integer(), nullable=True),
        sa.Column("is_private", sa.Boolean(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_forecast_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("idx_user_calibrations_tier", "user_calibrations", ["current_tier"])

    op.create_table(
        "attestations",
        sa.Column("uid", sa.String(66), nullable=False),
        sa.Column("forecast_id", sa.String(32), nullable=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("schema_uid", sa.String(66), nullable=True),
        sa.Column("schema_name", sa.String(64), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("attester", sa.String(42), nullable=True),
        sa.Column("recipient", sa.String(42), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("is_offchain", sa.Boolean(), nullable=False),
        sa.Column("is_private", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("uid"),
        sa.ForeignKeyConstraint(["forecast_id"], ["forecasts.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_attestations_forecast", "attestations", ["forecast_id"])
    op.create_index("idx_attestations_user", "attestations", ["user_id"])

    op.create_table(
        "user_achievements",
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("achievement_id", sa.String(64), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "achievement_id"),
    )


def downgrade() -> None:
    op.drop_table("user_achievements")

    op.drop_index("idx_attestations_user", table_name="attestations")
    op.drop_index("idx_attestations_forecast", table_name="attestations")
    op.drop_table("attestations")

    op.drop_index("idx_user_calibrations_tier", table_name="user_calibrations")
    op.drop_table("user_calibrations")

    op.drop_index("idx_forecasts_user_created", table_name="forecasts")
    op.drop_index("idx_forecasts_user_market_created", table_name="forecasts")
    op.drop_table("forecasts")

    op.drop_index("idx_markets_active", table_name="markets")
    op.drop_table("markets")
