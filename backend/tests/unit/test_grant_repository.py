"""Tests for GrantRepository: PostgreSQL grant store.

Verifies burn-order listing, the conditional debit, SAVEPOINT rollback,
burn history paging and the settlement dead-letter lifecycle.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    InsufficientGrantBalanceError,
    NotFoundError,
    SettlementAlreadyResolvedError,
)
from app.models.credits import CreditGrant, SettlementFailure
from app.repositories.grant_repository import GrantRepository
from tests.conftest import CREATOR_ID, FIXED_NOW, OTHER_USER_ID, TEST_USER_ID

# =============================================================================
# Helpers
# =============================================================================


async def _grant(
    repo: GrantRepository,
    *,
    owner_id: uuid.UUID = TEST_USER_ID,
    category: str = "purchased",
    amount: int = 1000,
    days_old: int = 0,
    expires_in_days: int | None = None,
) -> CreditGrant:
    """Create a grant for test setup."""
    created_at = FIXED_NOW - timedelta(days=days_old)
    expires_at = (
        FIXED_NOW + timedelta(days=expires_in_days)
        if expires_in_days is not None
        else None
    )
    return await repo.create_grant(
        owner_id=owner_id,
        category=category,
        amount=amount,
        source_tag="test",
        expires_at=expires_at,
        created_at=created_at,
    )


async def _event(
    repo: GrantRepository,
    grant: CreditGrant,
    *,
    user_id: uuid.UUID = TEST_USER_ID,
    amount: int = 100,
    creator_id: uuid.UUID | None = None,
    minutes_ago: int = 0,
    length_bucket: str | None = "short",
):
    return await repo.add_burn_event(
        charge_id=uuid.uuid4(),
        user_id=user_id,
        grant_id=grant.id,
        amount=amount,
        model_id="gpt-4o" if length_bucket else "admin_adjustment",
        length_bucket=length_bucket,
        creator_id=creator_id,
        creator_fee_share=0,
        item_type=None,
        item_id=None,
        created_at=FIXED_NOW - timedelta(minutes=minutes_ago),
    )


# =============================================================================
# TestListEligible
# =============================================================================


class TestListEligible:
    """Tests for GrantRepository.list_eligible()."""

    async def test_orders_by_category_then_age(self, repo: GrantRepository) -> None:
        """Purchased before bonus before referral, oldest first within each."""
        referral = await _grant(repo, category="referral", days_old=30)
        bonus = await _grant(repo, category="bonus", days_old=20)
        purchased_new = await _grant(repo, category="purchased", days_old=1)
        purchased_old = await _grant(repo, category="purchased", days_old=10)

        grants = await repo.list_eligible(TEST_USER_ID, FIXED_NOW)

        assert [g.id for g in grants] == [
            purchased_old.id,
            purchased_new.id,
            bonus.id,
            referral.id,
        ]

    async def test_excludes_expired_and_empty_grants(
        self, repo: GrantRepository
    ) -> None:
        """Expired and fully spent grants are not eligible."""
        live = await _grant(repo, expires_in_days=5)
        await _grant(repo, expires_in_days=-1)
        spent = await _grant(repo, amount=50)
        await repo.apply_debit(spent.id, 50, FIXED_NOW)

        grants = await repo.list_eligible(TEST_USER_ID, FIXED_NOW)

        assert [g.id for g in grants] == [live.id]

    async def test_excludes_other_owners(self, repo: GrantRepository) -> None:
        """Only the requested owner's grants are listed."""
        await _grant(repo, owner_id=OTHER_USER_ID)

        assert await repo.list_eligible(TEST_USER_ID, FIXED_NOW) == []


# =============================================================================
# TestApplyDebit
# =============================================================================


class TestApplyDebit:
    """Tests for GrantRepository.apply_debit()."""

    async def test_decrements_remaining(self, repo: GrantRepository) -> None:
        """Successful debit lowers remaining and keeps issued_amount."""
        grant = await _grant(repo, amount=1000)

        await repo.apply_debit(grant.id, 300, FIXED_NOW)

        fresh = await repo.get_grant(grant.id)
        assert fresh.remaining == 700
        assert fresh.issued_amount == 1000

    async def test_rejects_overdraft(self, repo: GrantRepository) -> None:
        """Debit larger than remaining raises and leaves the grant unchanged."""
        grant = await _grant(repo, amount=100)

        with pytest.raises(InsufficientGrantBalanceError):
            await repo.apply_debit(grant.id, 101, FIXED_NOW)

        assert (await repo.get_grant(grant.id)).remaining == 100

    async def test_rejects_expired_grant(self, repo: GrantRepository) -> None:
        """A grant that has expired cannot be debited."""
        grant = await _grant(repo, amount=100, expires_in_days=-1)

        with pytest.raises(InsufficientGrantBalanceError):
            await repo.apply_debit(grant.id, 10, FIXED_NOW)

    async def test_unknown_grant_raises_not_found(
        self, repo: GrantRepository
    ) -> None:
        """Debiting a missing grant raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await repo.apply_debit(uuid.uuid4(), 10, FIXED_NOW)

    async def test_rejects_non_positive_amount(self, repo: GrantRepository) -> None:
        """Zero and negative debits are programming errors."""
        grant = await _grant(repo)

        with pytest.raises(ValueError):
            await repo.apply_debit(grant.id, 0, FIXED_NOW)


# =============================================================================
# TestTransaction
# =============================================================================


class TestTransaction:
    """Tests for GrantRepository.transaction() SAVEPOINT scoping."""

    async def test_failed_scope_rolls_back_debit_and_event(
        self, repo: GrantRepository
    ) -> None:
        """An exception inside the scope undoes its debit and event."""
        grant = await _grant(repo, amount=1000)

        with pytest.raises(RuntimeError):
            async with repo.transaction():
                await repo.apply_debit(grant.id, 400, FIXED_NOW)
                await _event(repo, grant, amount=400)
                raise RuntimeError("boom")

        assert (await repo.get_grant(grant.id)).remaining == 1000
        assert await repo.list_burn_events(TEST_USER_ID, limit=10, offset=0) == []

    async def test_successful_scope_keeps_writes(
        self, repo: GrantRepository, db_session: AsyncSession
    ) -> None:
        """Writes in a completed scope survive a commit."""
        grant = await _grant(repo, amount=1000)

        async with repo.transaction():
            await repo.apply_debit(grant.id, 400, FIXED_NOW)
        await db_session.commit()

        assert (await repo.get_grant(grant.id)).remaining == 600


# =============================================================================
# TestBurnHistory
# =============================================================================


class TestBurnHistory:
    """Tests for list_burn_events() and sum_burned()."""

    async def test_lists_payer_and_creator_events_newest_first(
        self, repo: GrantRepository
    ) -> None:
        """History includes events paid by the user and events crediting them."""
        mine = await _grant(repo)
        theirs = await _grant(repo, owner_id=OTHER_USER_ID)
        older = await _event(repo, mine, minutes_ago=10)
        credited = await _event(
            repo, theirs, user_id=OTHER_USER_ID, creator_id=TEST_USER_ID, minutes_ago=5
        )
        await _event(repo, theirs, user_id=OTHER_USER_ID)

        events = await repo.list_burn_events(TEST_USER_ID, limit=10, offset=0)

        assert [e.id for e in events] == [credited.id, older.id]

    async def test_paginates(self, repo: GrantRepository) -> None:
        """Offset and limit slice the newest-first list."""
        grant = await _grant(repo)
        events = [await _event(repo, grant, minutes_ago=m) for m in range(5)]

        page = await repo.list_burn_events(TEST_USER_ID, limit=2, offset=1)

        assert [e.id for e in page] == [events[1].id, events[2].id]

    async def test_sum_burned_counts_window_only(self, repo: GrantRepository) -> None:
        """Only events at or after `since` are summed."""
        grant = await _grant(repo)
        await _event(repo, grant, amount=100, minutes_ago=0)
        await _event(repo, grant, amount=200, minutes_ago=60)

        total = await repo.sum_burned(TEST_USER_ID, FIXED_NOW - timedelta(minutes=30))

        assert total == 100

    async def test_sum_burned_skips_adjustments(self, repo: GrantRepository) -> None:
        """Events with no length bucket are stored but not summed."""
        grant = await _grant(repo)
        await _event(repo, grant, amount=100)
        adjustment = await _event(repo, grant, amount=250, length_bucket=None)

        total = await repo.sum_burned(TEST_USER_ID, FIXED_NOW - timedelta(hours=1))

        assert total == 100
        events = await repo.list_burn_events(TEST_USER_ID, limit=10, offset=0)
        assert adjustment.id in {e.id for e in events}

    async def test_sum_burned_empty_is_zero(self, repo: GrantRepository) -> None:
        """No events sums to zero, not None."""
        assert await repo.sum_burned(TEST_USER_ID, FIXED_NOW) == 0


# =============================================================================
# TestSettlementFailures
# =============================================================================


class TestSettlementFailures:
    """Tests for the settlement dead-letter records."""

    async def test_lifecycle(self, repo: GrantRepository) -> None:
        """Record, retry, then resolve a payout failure."""
        failure = await repo.record_settlement_failure(
            charge_id=uuid.uuid4(),
            payer_id=TEST_USER_ID,
            creator_id=CREATOR_ID,
            creator_share=4000,
            error="OperationalError: connection reset",
            created_at=FIXED_NOW,
        )
        assert failure.attempts == 1

        await repo.record_settlement_retry(failure.id, error="still down")
        unresolved = await repo.list_unresolved_settlement_failures(limit=10)
        assert [f.id for f in unresolved] == [failure.id]

        payout = await _grant(repo, owner_id=CREATOR_ID, category="bonus")
        await repo.mark_settlement_failure_resolved(
            failure.id, grant_id=payout.id, now=FIXED_NOW
        )

        assert await repo.list_unresolved_settlement_failures(limit=10) == []

    async def test_retry_unknown_failure_raises(self, repo: GrantRepository) -> None:
        """Bumping a missing failure raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await repo.record_settlement_retry(uuid.uuid4(), error="x")

    async def test_second_resolve_is_rejected(
        self, repo: GrantRepository, db_session: AsyncSession
    ) -> None:
        """Resolving an already resolved failure raises and keeps the first grant."""
        failure = await repo.record_settlement_failure(
            charge_id=uuid.uuid4(),
            payer_id=TEST_USER_ID,
            creator_id=CREATOR_ID,
            creator_share=4000,
            error="boom",
            created_at=FIXED_NOW,
        )
        first = await _grant(repo, owner_id=CREATOR_ID, category="bonus")
        second = await _grant(repo, owner_id=CREATOR_ID, category="bonus")
        await repo.mark_settlement_failure_resolved(
            failure.id, grant_id=first.id, now=FIXED_NOW
        )

        with pytest.raises(SettlementAlreadyResolvedError):
            await repo.mark_settlement_failure_resolved(
                failure.id, grant_id=second.id, now=FIXED_NOW
            )

        stored = await db_session.get(
            SettlementFailure, failure.id, populate_existing=True
        )
        assert stored.resolved_grant_id == first.id

    async def test_resolve_unknown_failure_raises(self, repo: GrantRepository) -> None:
        with pytest.raises(NotFoundError):
            await repo.mark_settlement_failure_resolved(
                uuid.uuid4(), grant_id=uuid.uuid4(), now=FIXED_NOW
            )
