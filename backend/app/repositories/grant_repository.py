"""PostgreSQL-backed grant store.

Provides database access for the credit_grants, burn_events and
settlement_failures tables. Debits are single conditional UPDATEs so
concurrent burns can never drive a grant below zero.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, cast

from sqlalchemy import case, func, or_, select, text, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    InsufficientGrantBalanceError,
    NotFoundError,
    SettlementAlreadyResolvedError,
)
from app.models.credits import (
    CATEGORY_PRIORITY,
    BurnEvent,
    CreditGrant,
    SettlementFailure,
)
from app.repositories.grant_store import GrantStore

_PRIORITY_ORDER = case(
    CATEGORY_PRIORITY,
    value=CreditGrant.category,
    else_=len(CATEGORY_PRIORITY),
)

_CONDITIONAL_DEBIT = text(
    "UPDATE credit_grants SET remaining = remaining - :amount "
    "WHERE id = :grant_id AND remaining >= :amount "
    "AND (expires_at IS NULL OR expires_at > :now)"
)


class GrantRepository(GrantStore):
    """Grant store over an AsyncSession.

    The caller owns the outer transaction and commits the session;
    `transaction()` opens a SAVEPOINT so a failed scope rolls back only
    its own writes.

    Args:
        db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed writes inside a SAVEPOINT."""
        async with self._db.begin_nested():
            yield

    async def list_eligible(
        self, user_id: uuid.UUID, now: datetime
    ) -> list[CreditGrant]:
        """List burnable grants in burn order.

        Args:
            user_id: Grant owner.
            now: Reference time for the expiry filter.

        Returns:
            Grants ordered by (category priority, created_at, id).
        """
        stmt = (
            select(CreditGrant)
            .where(
                CreditGrant.owner_id == user_id,
                CreditGrant.remaining > 0,
                or_(CreditGrant.expires_at.is_(None), CreditGrant.expires_at > now),
            )
            .order_by(_PRIORITY_ORDER, CreditGrant.created_at.asc(), CreditGrant.id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_grants(self, user_id: uuid.UUID) -> list[CreditGrant]:
        """List every grant the user owns, oldest first."""
        stmt = (
            select(CreditGrant)
            .where(CreditGrant.owner_id == user_id)
            .order_by(CreditGrant.created_at.asc(), CreditGrant.id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_grant(self, grant_id: uuid.UUID) -> CreditGrant:
        """Fetch a grant by id with a fresh remaining balance.

        Raises:
            NotFoundError: If no grant has this id.
        """
        grant = await self._db.get(CreditGrant, grant_id, populate_existing=True)
        if grant is None:
            raise NotFoundError("CreditGrant", str(grant_id))
        return grant

    async def apply_debit(
        self, grant_id: uuid.UUID, amount: int, now: datetime
    ) -> None:
        """Conditionally decrement a grant's remaining balance.

        Uses WHERE remaining >= amount so a concurrent debit that got there
        first makes this one fail instead of overdrawing.

        Args:
            grant_id: Grant to debit.
            amount: Credits to take (positive).
            now: Reference time for the expiry check.

        Raises:
            ValueError: If amount is not positive.
            NotFoundError: If no grant has this id.
            InsufficientGrantBalanceError: If the grant cannot cover the debit.
        """
        if amount <= 0:
            raise ValueError("apply_debit amount must be positive")
        await self._db.flush()
        result = cast(
            CursorResult[Any],
            await self._db.execute(
                _CONDITIONAL_DEBIT,
                {"amount": amount, "grant_id": grant_id, "now": now},
            ),
        )
        rows_updated: int = result.rowcount
        if rows_updated > 0:
            return

        exists = await self._db.execute(
            select(CreditGrant.id).where(CreditGrant.id == grant_id)
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("CreditGrant", str(grant_id))
        raise InsufficientGrantBalanceError(str(grant_id), amount)

    async def create_grant(
        self,
        *,
        owner_id: uuid.UUID,
        category: str,
        amount: int,
        source_tag: str,
        expires_at: datetime | None,
        created_at: datetime,
    ) -> CreditGrant:
        """Insert a grant with remaining equal to its issued amount.

        Returns:
            Created CreditGrant.
        """
        grant = CreditGrant(
            id=uuid.uuid4(),
            owner_id=owner_id,
            category=category,
            issued_amount=amount,
            remaining=amount,
            expires_at=expires_at,
            source_tag=source_tag,
            created_at=created_at,
        )
        self._db.add(grant)
        await self._db.flush()
        return grant

    async def add_burn_event(
        self,
        *,
        charge_id: uuid.UUID,
        user_id: uuid.UUID,
        grant_id: uuid.UUID,
        amount: int,
        model_id: str,
        length_bucket: str | None,
        creator_id: uuid.UUID | None,
        creator_fee_share: int,
        item_type: str | None,
        item_id: str | None,
        created_at: datetime,
    ) -> BurnEvent:
        """Insert a burn event.

        Returns:
            Created BurnEvent.
        """
        event = BurnEvent(
            id=uuid.uuid4(),
            charge_id=charge_id,
            user_id=user_id,
            grant_id=grant_id,
            amount=amount,
            model_id=model_id,
            length_bucket=length_bucket,
            creator_id=creator_id,
            creator_fee_share=creator_fee_share,
            item_type=item_type,
            item_id=item_id,
            created_at=created_at,
        )
        self._db.add(event)
        await self._db.flush()
        return event

    async def list_burn_events(
        self, user_id: uuid.UUID, *, limit: int, offset: int
    ) -> list[BurnEvent]:
        """List burn events paid by or crediting the user, newest first.

        Args:
            user_id: Payer or creator to match.
            limit: Maximum records to return.
            offset: Number of records to skip.

        Returns:
            BurnEvent list ordered by created_at descending.
        """
        stmt = (
            select(BurnEvent)
            .where(or_(BurnEvent.user_id == user_id, BurnEvent.creator_id == user_id))
            .order_by(BurnEvent.created_at.desc(), BurnEvent.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def sum_burned(self, user_id: uuid.UUID, since: datetime) -> int:
        """Sum credits the user paid for model runs at or after `since`."""
        stmt = select(func.coalesce(func.sum(BurnEvent.amount), 0)).where(
            BurnEvent.user_id == user_id,
            BurnEvent.created_at >= since,
            BurnEvent.length_bucket.is_not(None),
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def record_settlement_failure(
        self,
        *,
        charge_id: uuid.UUID,
        payer_id: uuid.UUID,
        creator_id: uuid.UUID,
        creator_share: int,
        error: str,
        created_at: datetime,
    ) -> SettlementFailure:
        """Insert a dead-letter record for an unissued creator payout."""
        failure = SettlementFailure(
            id=uuid.uuid4(),
            charge_id=charge_id,
            payer_id=payer_id,
            creator_id=creator_id,
            creator_share=creator_share,
            error=error,
            attempts=1,
            created_at=created_at,
        )
        self._db.add(failure)
        await self._db.flush()
        return failure

    async def list_unresolved_settlement_failures(
        self, *, limit: int
    ) -> list[SettlementFailure]:
        """List unresolved payout failures, oldest first.

        Rows are locked FOR UPDATE SKIP LOCKED until the session's
        transaction ends, so a concurrent reconciliation run sees only
        the failures this one has not claimed.
        """
        stmt = (
            select(SettlementFailure)
            .where(SettlementFailure.resolved_at.is_(None))
            .order_by(SettlementFailure.created_at.asc(), SettlementFailure.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def mark_settlement_failure_resolved(
        self, failure_id: uuid.UUID, *, grant_id: uuid.UUID, now: datetime
    ) -> None:
        """Claim a payout failure for the grant that settled it.

        Only an unresolved row is updated, so two retries of the same
        failure cannot both resolve it.

        Raises:
            NotFoundError: If no failure has this id.
            SettlementAlreadyResolvedError: If the failure is already resolved.
        """
        await self._db.flush()
        result = cast(
            CursorResult[Any],
            await self._db.execute(
                update(SettlementFailure)
                .where(
                    SettlementFailure.id == failure_id,
                    SettlementFailure.resolved_at.is_(None),
                )
                .values(resolved_at=now, resolved_grant_id=grant_id)
                .execution_options(synchronize_session=False)
            ),
        )
        if result.rowcount > 0:
            return

        exists = await self._db.execute(
            select(SettlementFailure.id).where(SettlementFailure.id == failure_id)
        )
        if exists.scalar_one_or_none() is None:
            raise NotFoundError("SettlementFailure", str(failure_id))
        raise SettlementAlreadyResolvedError(str(failure_id))

    async def record_settlement_retry(
        self, failure_id: uuid.UUID, *, error: str
    ) -> None:
        """Increment the attempt counter and store the latest error.

        Raises:
            NotFoundError: If no failure has this id.
        """
        result = cast(
            CursorResult[Any],
            await self._db.execute(
                update(SettlementFailure)
                .where(SettlementFailure.id == failure_id)
                .values(attempts=SettlementFailure.attempts + 1, error=error)
                .execution_options(synchronize_session=False)
            ),
        )
        if result.rowcount == 0:
            raise NotFoundError("SettlementFailure", str(failure_id))
