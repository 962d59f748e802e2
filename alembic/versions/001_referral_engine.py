"""Referral engine schema - periods, links, bonus ledger, archives, codes

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ==================== PERIODS ====================

    op.create_table(
        "referral_periods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("strategy", sa.String(32), nullable=False),
        sa.Column("strategy_config", postgresql.JSONB(), nullable=False),
        sa.Column("reset_mode", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("reset_config", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("referee_benefits", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )
    op.create_index("ix_referral_periods_status", "referral_periods", ["status"])
    # At most one active period
    op.create_index(
        "uq_referral_periods_single_active",
        "referral_periods",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # ==================== LINKS ====================

    op.create_table(
        "referral_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("referral_periods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referrer_address", sa.String(42), nullable=False),
        sa.Column("referred_address", sa.String(42), nullable=False),
        sa.Column("referral_code", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("linked_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.Column("first_bet_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_bet_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lifetime_volume", sa.Float(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "referred_address", "period_id", name="uq_referral_links_referred_period"
        ),
        sa.CheckConstraint(
            "referrer_address <> referred_address", name="ck_referral_links_no_self_referral"
        ),
    )
    op.create_index(
        "idx_referral_links_referrer_period",
        "referral_links",
        ["referrer_address", "period_id"],
    )

    # ==================== BONUS LEDGER ====================

    op.create_table(
        "referral_bonuses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("recipient_address", sa.String(42), nullable=False),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("referral_periods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("bonus_type", sa.String(32), nullable=False),
        sa.Column("points", sa.BigInteger(), nullable=False),
        sa.Column("source_address", sa.String(42), nullable=True),
        sa.Column("award_key", sa.String(160), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("awarded_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
        sa.UniqueConstraint(
            "recipient_address", "period_id", "award_key", name="uq_referral_bonuses_award_key"
        ),
        sa.CheckConstraint("points >= 0", name="ck_referral_bonuses_points_non_negative"),
    )
    op.create_index(
        "idx_referral_bonuses_recipient_period",
        "referral_bonuses",
        ["recipient_address", "period_id"],
    )

    # ==================== ARCHIVES ====================

    op.create_table(
        "leaderboard_archives",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("referral_periods.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reset_mode", sa.String(32), nullable=False),
        sa.Column("rankings", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("stats", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )

    # ==================== CODES & REFERRALS ====================

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("address", sa.String(42), nullable=False, unique=True),
        sa.Column("code", sa.String(20), nullable=False, unique=True),
        sa.Column("uses", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("referrer_address", sa.String(42), nullable=False),
        sa.Column("referred_address", sa.String(42), nullable=False, unique=True),
        sa.Column("code_used", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )
    op.create_index("ix_referrals_referrer_address", "referrals", ["referrer_address"])

    # ==================== TRADING POINTS ====================

    op.create_table(
        "trading_points",
        sa.Column("address", sa.String(42), primary_key=True),
        sa.Column("points", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")),
    )


def downgrade() -> None:
    op.drop_table("trading_points")

    # Codes & referrals
    op.drop_table("referrals")
    op.drop_table("referral_codes")

    # Periods and everything scoped to them
    op.drop_table("leaderboard_archives")
    op.drop_table("referral_bonuses")
    op.drop_table("referral_links")
    op.drop_table("referral_periods")
