"""Credit ledger ORM models.

CreditGrant is a bucket of credits with its own balance, category and
optional expiry. Only burns mutate it, and only by lowering `remaining`.
BurnEvent is the append-only record of every slice taken from a grant.
SettlementFailure is the dead-letter record for creator payouts that could
not be issued and need reconciliation.
"""

import uuid
from datetime import datetime
from typing import Literal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base

_DEFAULT_UUID = text("gen_random_uuid()")

GrantCategory = Literal["purchased", "bonus", "referral"]
LengthBucket = Literal["short", "medium", "long"]

GRANT_CATEGORIES: tuple[GrantCategory, ...] = ("purchased", "bonus", "referral")
LENGTH_BUCKETS: tuple[LengthBucket, ...] = ("short", "medium", "long")

# Burn order: lower drains first.
CATEGORY_PRIORITY: dict[str, int] = {
    "purchased": 0,
    "bonus": 1,
    "referral": 2,
}


class CreditGrant(Base):
    """A credit bucket owned by one user.

    Attributes:
        id: UUID primary key.
        owner_id: User the grant belongs to (identity is external).
        category: purchased, bonus or referral. Sets burn priority.
        issued_amount: Face value at creation. Immutable.
        remaining: Unspent credits, 0 <= remaining <= issued_amount.
        expires_at: Expiry timestamp. NULL = never expires.
        source_tag: Free-text provenance (payment reference, payout charge).
        created_at: Issue time. FIFO key within a category.
    """

    __tablename__ = "credit_grants"
    __table_args__ = (
        CheckConstraint(
            "category IN ('purchased', 'bonus', 'referral')",
            name="ck_grant_category_valid",
        ),
        CheckConstraint("issued_amount > 0", name="ck_grant_issued_positive"),
        CheckConstraint(
            "remaining >= 0 AND remaining <= issued_amount",
            name="ck_grant_remaining_bounds",
        ),
        Index("ix_credit_grants_owner_remaining", "owner_id", "remaining"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    issued_amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    remaining: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    source_tag: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def priority(self) -> int:
        """Burn priority of this grant's category (lower burns first)."""
        return CATEGORY_PRIORITY[self.category]

    def is_eligible(self, now: datetime) -> bool:
        """Check whether the grant can be burned at `now`.

        Args:
            now: Reference time for the expiry check.

        Returns:
            True if the grant has credits left and has not expired.
        """
        if self.remaining <= 0:
            return False
        return self.expires_at is None or self.expires_at > now


class BurnEvent(Base):
    """One slice of a charge taken from a single grant. Never updated.

    Attributes:
        id: UUID primary key.
        charge_id: Groups every slice of the same burn call.
        user_id: Payer.
        grant_id: Grant the slice was taken from.
        amount: Credits taken (> 0).
        model_id: Model the charge paid for, or "admin_adjustment".
        length_bucket: short, medium or long. NULL for admin adjustments.
        creator_id: Creator named on the charge, if any.
        creator_fee_share: Portion of `amount` attributable to the creator fee.
            Floored on the charge's running total, so the shares of one
            charge sum to exactly its creator fee.
        item_type: Optional kind of item executed (prompt, flow, completion).
        item_id: Optional id of the executed item.
        created_at: When the slice was taken.
    """

    __tablename__ = "burn_events"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_burn_amount_positive"),
        CheckConstraint(
            "creator_fee_share >= 0 AND creator_fee_share <= amount",
            name="ck_burn_creator_share_bounds",
        ),
        CheckConstraint(
            "length_bucket IS NULL OR length_bucket IN ('short', 'medium', 'long')",
            name="ck_burn_length_bucket_valid",
        ),
        Index("ix_burn_events_user_created", "user_id", "created_at"),
        Index("ix_burn_events_creator_created", "creator_id", "created_at"),
        Index("ix_burn_events_charge", "charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    grant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    model_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    length_bucket: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
    )
    creator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    creator_fee_share: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        server_default=text("0"),
        default=0,
    )
    item_type: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    item_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class SettlementFailure(Base):
    """Creator payout that could not be issued and awaits reconciliation.

    Attributes:
        id: UUID primary key.
        charge_id: Charge whose creator fee was collected.
        payer_id: User who paid the charge.
        creator_id: Creator owed the payout.
        creator_share: Credits owed to the creator.
        error: Last failure message.
        attempts: Number of failed issue attempts.
        created_at: When the first failure was recorded.
        resolved_at: When a retry issued the grant. NULL = unresolved.
        resolved_grant_id: Grant issued by the successful retry.
    """

    __tablename__ = "settlement_failures"
    __table_args__ = (
        CheckConstraint("creator_share > 0", name="ck_settlement_share_positive"),
        CheckConstraint("attempts >= 1", name="ck_settlement_attempts_positive"),
        Index("ix_settlement_failures_unresolved", "resolved_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    charge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    creator_share: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    error: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default=text("1"),
        default=1,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolved_grant_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
