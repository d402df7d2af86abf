"""Tests for InMemoryGrantStore.

Covers the same contract as GrantRepository without a database, plus the
compensation log behind transaction().
"""

import uuid
from datetime import timedelta

import pytest

from app.core.errors import InsufficientGrantBalanceError, NotFoundError
from app.models.credits import CreditGrant
from app.repositories.memory_grant_store import InMemoryGrantStore
from tests.conftest import CREATOR_ID, FIXED_NOW, TEST_USER_ID


async def _grant(
    store: InMemoryGrantStore,
    *,
    category: str = "purchased",
    amount: int = 1000,
    days_old: int = 0,
) -> CreditGrant:
    return await store.create_grant(
        owner_id=TEST_USER_ID,
        category=category,
        amount=amount,
        source_tag="test",
        expires_at=None,
        created_at=FIXED_NOW - timedelta(days=days_old),
    )


# =============================================================================
# TestReads
# =============================================================================


class TestReads:
    """Listing and snapshot semantics."""

    async def test_list_eligible_burn_order(self, store: InMemoryGrantStore) -> None:
        """Category priority first, then creation time."""
        bonus = await _grant(store, category="bonus", days_old=9)
        purchased = await _grant(store, category="purchased", days_old=1)
        referral = await _grant(store, category="referral", days_old=30)

        grants = await store.list_eligible(TEST_USER_ID, FIXED_NOW)

        assert [g.id for g in grants] == [purchased.id, bonus.id, referral.id]

    async def test_reads_are_detached_copies(self, store: InMemoryGrantStore) -> None:
        """Mutating a returned grant does not touch the stored row."""
        grant = await _grant(store, amount=500)

        copy = await store.get_grant(grant.id)
        copy.remaining = 0

        assert (await store.get_grant(grant.id)).remaining == 500

    async def test_get_missing_grant_raises(self, store: InMemoryGrantStore) -> None:
        """Unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.get_grant(uuid.uuid4())

    async def test_list_grants_includes_spent(self, store: InMemoryGrantStore) -> None:
        """list_grants returns every owned grant regardless of balance."""
        grant = await _grant(store, amount=10)
        await store.apply_debit(grant.id, 10, FIXED_NOW)

        assert [g.id for g in await store.list_grants(TEST_USER_ID)] == [grant.id]
        assert await store.list_eligible(TEST_USER_ID, FIXED_NOW) == []


# =============================================================================
# TestApplyDebit
# =============================================================================


class TestApplyDebit:
    """Conditional debit."""

    async def test_overdraft_rejected(self, store: InMemoryGrantStore) -> None:
        """A debit above remaining raises and changes nothing."""
        grant = await _grant(store, amount=100)

        with pytest.raises(InsufficientGrantBalanceError) as exc_info:
            await store.apply_debit(grant.id, 150, FIXED_NOW)

        assert exc_info.value.amount == 150
        assert store.grants[grant.id].remaining == 100

    async def test_missing_grant_raises(self, store: InMemoryGrantStore) -> None:
        """A vanished grant raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.apply_debit(uuid.uuid4(), 1, FIXED_NOW)


# =============================================================================
# TestTransaction
# =============================================================================


class TestTransaction:
    """Compensation log behind transaction()."""

    async def test_failure_undoes_all_writes(self, store: InMemoryGrantStore) -> None:
        """Debits, new grants and events inside a failed scope are reverted."""
        grant = await _grant(store, amount=1000)

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.apply_debit(grant.id, 600, FIXED_NOW)
                await store.create_grant(
                    owner_id=CREATOR_ID,
                    category="bonus",
                    amount=50,
                    source_tag="payout",
                    expires_at=None,
                    created_at=FIXED_NOW,
                )
                await store.add_burn_event(
                    charge_id=uuid.uuid4(),
                    user_id=TEST_USER_ID,
                    grant_id=grant.id,
                    amount=600,
                    model_id="gpt-4o",
                    length_bucket="short",
                    creator_id=None,
                    creator_fee_share=0,
                    item_type=None,
                    item_id=None,
                    created_at=FIXED_NOW,
                )
                raise RuntimeError("boom")

        assert store.grants[grant.id].remaining == 1000
        assert list(store.grants) == [grant.id]
        assert store.burn_events == []

    async def test_failed_inner_scope_keeps_outer_writes(
        self, store: InMemoryGrantStore
    ) -> None:
        """A nested failure reverts only its own writes."""
        grant = await _grant(store, amount=1000)

        async with store.transaction():
            await store.apply_debit(grant.id, 100, FIXED_NOW)
            with pytest.raises(RuntimeError):
                async with store.transaction():
                    await store.apply_debit(grant.id, 200, FIXED_NOW)
                    raise RuntimeError("inner")

        assert store.grants[grant.id].remaining == 900

    async def test_outer_failure_reverts_committed_inner_scope(
        self, store: InMemoryGrantStore
    ) -> None:
        """A completed nested scope is still undone when its parent fails."""
        grant = await _grant(store, amount=1000)

        with pytest.raises(RuntimeError):
            async with store.transaction():
                async with store.transaction():
                    await store.apply_debit(grant.id, 200, FIXED_NOW)
                raise RuntimeError("outer")

        assert store.grants[grant.id].remaining == 1000


# =============================================================================
# TestSettlementFailures
# =============================================================================


class TestSettlementFailures:
    """Dead-letter records."""

    async def test_retry_then_resolve(self, store: InMemoryGrantStore) -> None:
        """Retries bump attempts; resolution removes it from the queue."""
        failure = await store.record_settlement_failure(
            charge_id=uuid.uuid4(),
            payer_id=TEST_USER_ID,
            creator_id=CREATOR_ID,
            creator_share=4000,
            error="boom",
            created_at=FIXED_NOW,
        )

        await store.record_settlement_retry(failure.id, error="again")
        assert store.settlement_failures[failure.id].attempts == 2
        assert store.settlement_failures[failure.id].error == "again"

        grant_id = uuid.uuid4()
        await store.mark_settlement_failure_resolved(
            failure.id, grant_id=grant_id, now=FIXED_NOW
        )

        assert await store.list_unresolved_settlement_failures(limit=10) == []
        assert store.settlement_failures[failure.id].resolved_grant_id == grant_id
