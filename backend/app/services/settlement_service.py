"""Settlement service: creator payouts from collected creator fees.

A collected creator fee is split 80/20: the creator's share becomes a new
bonus grant on the creator's ledger, the platform's share is simply not
paid out. A payout that fails to issue never undoes the payer's debit.
It is logged and written to the settlement_failures dead-letter table,
and retry_failed() drains that table later.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from app.core.clock import Clock, utc_now
from app.core.config import Settings, settings as default_settings
from app.core.errors import SettlementAlreadyResolvedError
from app.models.credits import CreditGrant, SettlementFailure
from app.repositories.grant_store import GrantStore

logger = logging.getLogger(__name__)

CREATOR_FEE_SOURCE_PREFIX = "creator_fee:"
_PAYOUT_CATEGORY = "bonus"


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of settling one creator fee.

    Attributes:
        creator_id: Creator the fee belongs to.
        creator_fee: Fee collected from the payer.
        creator_share: Credits owed to the creator.
        platform_share: Credits retained by the platform.
        grant: Payout grant, if one was issued.
        failure: Dead-letter record, if the payout failed and was recorded.
    """

    creator_id: uuid.UUID
    creator_fee: int
    creator_share: int
    platform_share: int
    grant: CreditGrant | None = None
    failure: SettlementFailure | None = None

    @property
    def needs_reconciliation(self) -> bool:
        """True when a positive share was owed but no grant was issued."""
        return self.creator_share > 0 and self.grant is None


@dataclass
class ReconciliationStats:
    """Statistics from a dead-letter reconciliation run."""

    examined: int = 0
    resolved: int = 0
    already_resolved: int = 0
    still_failing: int = 0


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class SettlementService:
    """Issues creator payout grants and reconciles failed payouts.

    Args:
        store: Grant store shared with the ledger service.
        settings: Ledger settings (creator share, payout expiry).
        clock: Time source.
    """

    def __init__(
        self,
        store: GrantStore,
        *,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings or default_settings
        self._clock = clock

    def split(self, creator_fee: int) -> tuple[int, int]:
        """Split a creator fee into (creator_share, platform_share).

        The creator share is floored; the platform keeps the remainder.
        """
        share_percent = self._settings.ledger_creator_share_percent
        creator_share = creator_fee * share_percent // 100
        return creator_share, creator_fee - creator_share

    async def _issue(
        self, creator_id: uuid.UUID, amount: int, charge_id: uuid.UUID
    ) -> CreditGrant:
        now = self._clock()
        return await self._store.create_grant(
            owner_id=creator_id,
            category=_PAYOUT_CATEGORY,
            amount=amount,
            source_tag=f"{CREATOR_FEE_SOURCE_PREFIX}{charge_id}",
            expires_at=now
            + timedelta(days=self._settings.ledger_creator_payout_expiry_days),
            created_at=now,
        )

    async def settle(
        self,
        creator_id: uuid.UUID,
        creator_fee: int,
        *,
        payer_id: uuid.UUID,
        charge_id: uuid.UUID,
    ) -> SettlementOutcome:
        """Pay a creator their share of a collected fee.

        Never raises for a failed payout: the failure is logged and
        recorded for reconciliation instead.

        Args:
            creator_id: Creator to pay.
            creator_fee: Fee collected from the payer (credits).
            payer_id: User who paid the charge.
            charge_id: Charge the fee was collected on.

        Returns:
            SettlementOutcome with the issued grant or the failure record.
        """
        creator_share, platform_share = self.split(creator_fee)
        if creator_share <= 0:
            return SettlementOutcome(
                creator_id=creator_id,
                creator_fee=creator_fee,
                creator_share=creator_share,
                platform_share=platform_share,
            )

        try:
            async with self._store.transaction():
                grant = await self._issue(creator_id, creator_share, charge_id)
        except Exception as exc:
            # The payer's debit stands; park the payout for reconciliation.
            logger.exception(
                "Creator payout failed for charge %s (creator %s, %d credits)",
                charge_id,
                creator_id,
                creator_share,
            )
            failure = await self._dead_letter(
                charge_id=charge_id,
                payer_id=payer_id,
                creator_id=creator_id,
                creator_share=creator_share,
                error=_describe(exc),
            )
            return SettlementOutcome(
                creator_id=creator_id,
                creator_fee=creator_fee,
                creator_share=creator_share,
                platform_share=platform_share,
                failure=failure,
            )

        logger.info(
            "Paid creator %s %d credits for charge %s (platform share %d)",
            creator_id,
            creator_share,
            charge_id,
            platform_share,
        )
        return SettlementOutcome(
            creator_id=creator_id,
            creator_fee=creator_fee,
            creator_share=creator_share,
            platform_share=platform_share,
            grant=grant,
        )

    async def _dead_letter(
        self,
        *,
        charge_id: uuid.UUID,
        payer_id: uuid.UUID,
        creator_id: uuid.UUID,
        creator_share: int,
        error: str,
    ) -> SettlementFailure | None:
        try:
            async with self._store.transaction():
                return await self._store.record_settlement_failure(
                    charge_id=charge_id,
                    payer_id=payer_id,
                    creator_id=creator_id,
                    creator_share=creator_share,
                    error=error,
                    created_at=self._clock(),
                )
        except Exception:
            logger.exception(
                "Could not record payout failure for charge %s; "
                "manual reconciliation required (creator %s, %d credits)",
                charge_id,
                creator_id,
                creator_share,
            )
            return None

    async def retry_failed(self, *, limit: int = 100) -> ReconciliationStats:
        """Re-issue payouts parked in the dead-letter table.

        Each failure is retried in its own transaction. Success issues a
        fresh payout grant and claims the failure as resolved; another
        failure bumps its attempt counter. A failure that a concurrent run
        claimed first has its grant rolled back and is skipped.

        Args:
            limit: Maximum failures to process in this run.

        Returns:
            ReconciliationStats for the run.
        """
        stats = ReconciliationStats()
        failures = await self._store.list_unresolved_settlement_failures(limit=limit)

        for failure in failures:
            stats.examined += 1
            # Rows touched inside a rolled-back scope may be expired.
            failure_id, charge_id = failure.id, failure.charge_id
            attempt = failure.attempts + 1
            try:
                async with self._store.transaction():
                    grant = await self._issue(
                        failure.creator_id, failure.creator_share, charge_id
                    )
                    await self._store.mark_settlement_failure_resolved(
                        failure_id, grant_id=grant.id, now=self._clock()
                    )
            except SettlementAlreadyResolvedError:
                logger.info(
                    "Payout for charge %s already settled by another run", charge_id
                )
                stats.already_resolved += 1
            except Exception as exc:
                logger.exception(
                    "Payout retry failed for charge %s (attempt %d)",
                    charge_id,
                    attempt,
                )
                await self._store.record_settlement_retry(
                    failure_id, error=_describe(exc)
                )
                stats.still_failing += 1
            else:
                stats.resolved += 1

        logger.info(
            "Reconciliation complete: %d examined, %d resolved, "
            "%d already resolved, %d still failing",
            stats.examined,
            stats.resolved,
            stats.already_resolved,
            stats.still_failing,
        )
        return stats
