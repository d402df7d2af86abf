"""In-memory grant store for tests and local tooling.

Each operation yields to the event loop once, standing in for a database
round trip, so concurrent burns interleave the way they would against a
real database. Reads return detached copies that can go stale. Debits
check and decrement with no await in between, which makes them atomic
under asyncio.

Transactions keep a per-task log of compensating actions. A failed scope
replays its log in reverse; a successful nested scope hands its log to the
parent. Compensations are increments and row removals, so they commute
with concurrent work by other tasks.
"""

import asyncio
import itertools
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime

from app.core.errors import (
    InsufficientGrantBalanceError,
    NotFoundError,
    SettlementAlreadyResolvedError,
)
from app.models.credits import BurnEvent, CreditGrant, SettlementFailure
from app.repositories.grant_store import GrantStore

_undo_log: ContextVar[list[Callable[[], None]] | None] = ContextVar(
    "memory_grant_store_undo_log", default=None
)


def _remember(undo: Callable[[], None]) -> None:
    log = _undo_log.get()
    if log is not None:
        log.append(undo)


def _snapshot(grant: CreditGrant) -> CreditGrant:
    return CreditGrant(
        id=grant.id,
        owner_id=grant.owner_id,
        category=grant.category,
        issued_amount=grant.issued_amount,
        remaining=grant.remaining,
        expires_at=grant.expires_at,
        source_tag=grant.source_tag,
        created_at=grant.created_at,
    )


class InMemoryGrantStore(GrantStore):
    """Grant store held in process memory.

    Attributes:
        grants: Live grant rows keyed by id.
        burn_events: Burn events in insertion order.
        settlement_failures: Payout failure rows keyed by id.
    """

    def __init__(self) -> None:
        self.grants: dict[uuid.UUID, CreditGrant] = {}
        self.burn_events: list[BurnEvent] = []
        self.settlement_failures: dict[uuid.UUID, SettlementFailure] = {}
        self._sequence = itertools.count()
        self._grant_order: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed writes as one compensable unit."""
        parent = _undo_log.get()
        log: list[Callable[[], None]] = []
        token = _undo_log.set(log)
        try:
            yield
        except BaseException:
            for undo in reversed(log):
                undo()
            raise
        else:
            if parent is not None:
                parent.extend(log)
        finally:
            _undo_log.reset(token)

    async def list_eligible(
        self, user_id: uuid.UUID, now: datetime
    ) -> list[CreditGrant]:
        """List burnable grants in burn order as detached copies."""
        await asyncio.sleep(0)
        eligible = [
            g
            for g in self.grants.values()
            if g.owner_id == user_id and g.is_eligible(now)
        ]
        eligible.sort(key=lambda g: (g.priority, g.created_at, str(g.id)))
        return [_snapshot(g) for g in eligible]

    async def list_grants(self, user_id: uuid.UUID) -> list[CreditGrant]:
        """List every grant the user owns, oldest first, as detached copies."""
        await asyncio.sleep(0)
        owned = [g for g in self.grants.values() if g.owner_id == user_id]
        owned.sort(key=lambda g: (g.created_at, self._grant_order[g.id]))
        return [_snapshot(g) for g in owned]

    async def get_grant(self, grant_id: uuid.UUID) -> CreditGrant:
        """Fetch a detached copy of a grant.

        Raises:
            NotFoundError: If no grant has this id.
        """
        await asyncio.sleep(0)
        grant = self.grants.get(grant_id)
        if grant is None:
            raise NotFoundError("CreditGrant", str(grant_id))
        return _snapshot(grant)

    async def apply_debit(
        self, grant_id: uuid.UUID, amount: int, now: datetime
    ) -> None:
        """Check and decrement a grant in one uninterrupted step.

        Raises:
            ValueError: If amount is not positive.
            NotFoundError: If no grant has this id.
            InsufficientGrantBalanceError: If the grant cannot cover the debit.
        """
        if amount <= 0:
            raise ValueError("apply_debit amount must be positive")
        await asyncio.sleep(0)
        grant = self.grants.get(grant_id)
        if grant is None:
            raise NotFoundError("CreditGrant", str(grant_id))
        expired = grant.expires_at is not None and grant.expires_at <= now
        if grant.remaining < amount or expired:
            raise InsufficientGrantBalanceError(str(grant_id), amount)

        grant.remaining -= amount

        def _refund() -> None:
            grant.remaining += amount

        _remember(_refund)

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
        """Store a new grant and return a detached copy."""
        await asyncio.sleep(0)
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
        self.grants[grant.id] = grant
        self._grant_order[grant.id] = next(self._sequence)

        def _discard() -> None:
            self.grants.pop(grant.id, None)
            self._grant_order.pop(grant.id, None)

        _remember(_discard)
        return _snapshot(grant)

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
        await asyncio.sleep(0)
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
        self.burn_events.append(event)

        def _discard() -> None:
            self.burn_events.remove(event)

        _remember(_discard)
        return event

    async def list_burn_events(
        self, user_id: uuid.UUID, *, limit: int, offset: int
    ) -> list[BurnEvent]:
        """List burn events paid by or crediting the user, newest first."""
        await asyncio.sleep(0)
        matching = [
            (position, e)
            for position, e in enumerate(self.burn_events)
            if e.user_id == user_id or e.creator_id == user_id
        ]
        matching.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [e for _, e in matching[offset : offset + limit]]

    async def sum_burned(self, user_id: uuid.UUID, since: datetime) -> int:
        """Sum credits the user paid for model runs at or after `since`."""
        await asyncio.sleep(0)
        return sum(
            e.amount
            for e in self.burn_events
            if e.user_id == user_id
            and e.created_at >= since
            and e.length_bucket is not None
        )

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
        """Store a dead-letter record for an unissued creator payout."""
        await asyncio.sleep(0)
        failure = SettlementFailure(
            id=uuid.uuid4(),
            charge_id=charge_id,
            payer_id=payer_id,
            creator_id=creator_id,
            creator_share=creator_share,
            error=error,
            attempts=1,
            created_at=created_at,
            resolved_at=None,
            resolved_grant_id=None,
        )
        self.settlement_failures[failure.id] = failure

        def _discard() -> None:
            self.settlement_failures.pop(failure.id, None)

        _remember(_discard)
        return failure

    async def list_unresolved_settlement_failures(
        self, *, limit: int
    ) -> list[SettlementFailure]:
        """List unresolved payout failures, oldest first."""
        await asyncio.sleep(0)
        unresolved = [
            f for f in self.settlement_failures.values() if f.resolved_at is None
        ]
        unresolved.sort(key=lambda f: f.created_at)
        return unresolved[:limit]

    async def mark_settlement_failure_resolved(
        self, failure_id: uuid.UUID, *, grant_id: uuid.UUID, now: datetime
    ) -> None:
        """Claim a payout failure for the grant that settled it.

        Raises:
            NotFoundError: If no failure has this id.
            SettlementAlreadyResolvedError: If the failure is already resolved.
        """
        await asyncio.sleep(0)
        failure = self.settlement_failures.get(failure_id)
        if failure is None:
            raise NotFoundError("SettlementFailure", str(failure_id))
        if failure.resolved_at is not None:
            raise SettlementAlreadyResolvedError(str(failure_id))
        failure.resolved_at = now
        failure.resolved_grant_id = grant_id

        def _reopen() -> None:
            failure.resolved_at = None
            failure.resolved_grant_id = None

        _remember(_reopen)

    async def record_settlement_retry(
        self, failure_id: uuid.UUID, *, error: str
    ) -> None:
        """Increment the attempt counter and store the latest error.

        Raises:
            NotFoundError: If no failure has this id.
        """
        await asyncio.sleep(0)
        failure = self.settlement_failures.get(failure_id)
        if failure is None:
            raise NotFoundError("SettlementFailure", str(failure_id))
        previous_error = failure.error
        failure.attempts += 1
        failure.error = error

        def _revert() -> None:
            failure.attempts -= 1
            failure.error = previous_error

        _remember(_revert)
