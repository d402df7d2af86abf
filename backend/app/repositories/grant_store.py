"""Grant store interface for the credit ledger.

The ledger services depend on this interface only. GrantRepository backs it
with PostgreSQL; InMemoryGrantStore backs it with process memory for tests
and local tooling.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from app.models.credits import BurnEvent, CreditGrant, SettlementFailure


class GrantStore(ABC):
    """Durable storage for credit grants, burn events and payout failures.

    Mutations made inside `transaction()` commit or roll back together.
    Transactions nest: an inner scope that fails rolls back only its own
    work and leaves the outer scope usable.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Open an atomic scope for mutations."""
        ...

    @abstractmethod
    async def list_eligible(
        self, user_id: uuid.UUID, now: datetime
    ) -> list[CreditGrant]:
        """List grants that can be burned, in burn order.

        Args:
            user_id: Grant owner.
            now: Reference time for the expiry filter.

        Returns:
            Grants with remaining > 0 that are unexpired at `now`, ordered by
            (category priority, created_at ascending, id).
        """
        ...

    @abstractmethod
    async def list_grants(self, user_id: uuid.UUID) -> list[CreditGrant]:
        """List every grant a user owns, including depleted and expired ones.

        Args:
            user_id: Grant owner.

        Returns:
            Grants ordered by created_at ascending.
        """
        ...

    @abstractmethod
    async def get_grant(self, grant_id: uuid.UUID) -> CreditGrant:
        """Fetch a grant by id.

        Raises:
            NotFoundError: If no grant has this id.
        """
        ...

    @abstractmethod
    async def apply_debit(
        self, grant_id: uuid.UUID, amount: int, now: datetime
    ) -> None:
        """Atomically take `amount` credits from a grant.

        The decrement happens only if the grant still has at least `amount`
        remaining and has not expired at `now`, evaluated in one step.

        Args:
            grant_id: Grant to debit.
            amount: Credits to take (positive).
            now: Reference time for the expiry check.

        Raises:
            ValueError: If amount is not positive.
            NotFoundError: If no grant has this id.
            InsufficientGrantBalanceError: If the condition failed.
        """
        ...

    @abstractmethod
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
        """Create a grant with remaining equal to its issued amount."""
        ...

    @abstractmethod
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
        """Append a burn event."""
        ...

    @abstractmethod
    async def list_burn_events(
        self, user_id: uuid.UUID, *, limit: int, offset: int
    ) -> list[BurnEvent]:
        """List burn events where the user is payer or creator, newest first."""
        ...

    @abstractmethod
    async def sum_burned(self, user_id: uuid.UUID, since: datetime) -> int:
        """Sum credits the user paid for model runs at or after `since`.

        Admin adjustments (events with no length bucket) are excluded.
        """
        ...

    @abstractmethod
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
        """Write a dead-letter record for a payout that was not issued."""
        ...

    @abstractmethod
    async def list_unresolved_settlement_failures(
        self, *, limit: int
    ) -> list[SettlementFailure]:
        """List unresolved payout failures, oldest first."""
        ...

    @abstractmethod
    async def mark_settlement_failure_resolved(
        self, failure_id: uuid.UUID, *, grant_id: uuid.UUID, now: datetime
    ) -> None:
        """Mark an unresolved payout failure resolved by the grant a retry issued.

        Raises:
            NotFoundError: If no failure has this id.
            SettlementAlreadyResolvedError: If another run resolved it first.
        """
        ...

    @abstractmethod
    async def record_settlement_retry(
        self, failure_id: uuid.UUID, *, error: str
    ) -> None:
        """Count another failed attempt on a payout failure."""
        ...
