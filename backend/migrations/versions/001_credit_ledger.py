"""Create credit ledger tables.

Revision ID: 001_credit_ledger
Revises:
Create Date: 2026-10-19

Creates credit_grants (per-grant balances with category and expiry),
burn_events (append-only debit slices) and settlement_failures (creator
payouts awaiting reconciliation). User identity lives outside the ledger,
so owner and creator columns carry no foreign keys.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_credit_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Shared column types
_PG_UUID = sa.dialects.postgresql.UUID(as_uuid=True)
_UUID_DEFAULT = sa.text("gen_random_uuid()")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    """Create grant, burn event and settlement failure tables."""
    # pgcrypto provides gen_random_uuid() for UUID primary keys
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # 1. credit_grants
    op.create_table(
        "credit_grants",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("owner_id", _PG_UUID, nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("issued_amount", sa.BigInteger, nullable=False),
        sa.Column("remaining", sa.BigInteger, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_tag", sa.String(255), nullable=False),
        _created_at(),
        sa.CheckConstraint(
            "category IN ('purchased', 'bonus', 'referral')",
            name="ck_grant_category_valid",
        ),
        sa.CheckConstraint("issued_amount > 0", name="ck_grant_issued_positive"),
        sa.CheckConstraint(
            "remaining >= 0 AND remaining <= issued_amount",
            name="ck_grant_remaining_bounds",
        ),
    )

    # 2. burn_events
    op.create_table(
        "burn_events",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("charge_id", _PG_UUID, nullable=False),
        sa.Column("user_id", _PG_UUID, nullable=False),
        sa.Column("grant_id", _PG_UUID, nullable=False),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("model_id", sa.String(100), nullable=False),
        sa.Column("length_bucket", sa.String(10), nullable=True),
        sa.Column("creator_id", _PG_UUID, nullable=True),
        sa.Column(
            "creator_fee_share", sa.BigInteger, server_default="0", nullable=False
        ),
        sa.Column("item_type", sa.String(20), nullable=True),
        sa.Column("item_id", sa.String(255), nullable=True),
        _created_at(),
        sa.CheckConstraint("amount > 0", name="ck_burn_amount_positive"),
        sa.CheckConstraint(
            "creator_fee_share >= 0 AND creator_fee_share <= amount",
            name="ck_burn_creator_share_bounds",
        ),
        sa.CheckConstraint(
            "length_bucket IS NULL "
            "OR length_bucket IN ('short', 'medium', 'long')",
            name="ck_burn_length_bucket_valid",
        ),
    )

    # 3. settlement_failures
    op.create_table(
        "settlement_failures",
        sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True),
        sa.Column("charge_id", _PG_UUID, nullable=False),
        sa.Column("payer_id", _PG_UUID, nullable=False),
        sa.Column("creator_id", _PG_UUID, nullable=False),
        sa.Column("creator_share", sa.BigInteger, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("attempts", sa.Integer, server_default="1", nullable=False),
        _created_at(),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_grant_id", _PG_UUID, nullable=True),
        sa.CheckConstraint("creator_share > 0", name="ck_settlement_share_positive"),
        sa.CheckConstraint("attempts >= 1", name="ck_settlement_attempts_positive"),
    )

    # 4. Indexes
    op.create_index(
        "ix_credit_grants_owner_remaining",
        "credit_grants",
        ["owner_id", "remaining"],
    )
    op.create_index(
        "ix_burn_events_user_created",
        "burn_events",
        ["user_id", "created_at"],
    )
    op.create_index(
        "ix_burn_events_creator_created",
        "burn_events",
        ["creator_id", "created_at"],
    )
    op.create_index("ix_burn_events_charge", "burn_events", ["charge_id"])
    op.create_index(
        "ix_settlement_failures_unresolved",
        "settlement_failures",
        ["resolved_at", "created_at"],
    )


def downgrade() -> None:
    """Drop credit ledger tables."""
    op.drop_index(
        "ix_settlement_failures_unresolved", table_name="settlement_failures"
    )
    op.drop_index("ix_burn_events_charge", table_name="burn_events")
    op.drop_index("ix_burn_events_creator_created", table_name="burn_events")
    op.drop_index("ix_burn_events_user_created", table_name="burn_events")
    op.drop_index("ix_credit_grants_owner_remaining", table_name="credit_grants")

    op.drop_table("settlement_failures")
    op.drop_table("burn_events")
    op.drop_table("credit_grants")
