"""Ledger service: credit burns, grant issue, adjustments and balance reads.

A burn prices the run, checks the user's eligible balance, then debits
grants in burn order (purchased, bonus, referral; oldest first within a
category) inside one store transaction. Every slice taken from a grant is
written as a BurnEvent. A debit that loses a race re-reads the eligible
grants and retries only the unmet remainder, up to the configured attempt
limit. Any failure rolls back every debit and event of the charge, so a
charge either fully succeeds or leaves no trace.

Bundle purchases issue their purchased and bonus grants together. Admin
deductions run through the same debit path as a burn and are logged as
burn events, so every credit removed is accounted for.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.clock import Clock, utc_now
from app.core.config import Settings, settings as default_settings
from app.core.errors import (
    InsufficientCreditsError,
    InsufficientGrantBalanceError,
    LedgerContentionError,
    NotFoundError,
    ValidationError,
)
from app.models.credits import GRANT_CATEGORIES, BurnEvent, CreditGrant
from app.repositories.grant_store import GrantStore
from app.services.bundles import BundleCatalog, CreditBundle
from app.services.pricing import CostBreakdown, PricingTable
from app.services.settlement_service import (
    CREATOR_FEE_SOURCE_PREFIX,
    SettlementOutcome,
    SettlementService,
)

logger = logging.getLogger(__name__)

_DEFAULT_SOURCE_TAG = "manual_addition"
_PAYMENT_SOURCE_PREFIX = "payment:"
_PAYMENT_BONUS_SOURCE_PREFIX = "payment_bonus:"
_MONTHLY_BURN_WINDOW_DAYS = 30

ADJUSTMENT_MODEL_ID = "admin_adjustment"
ADJUSTMENT_ITEM_TYPE = "adjustment"


@dataclass(frozen=True)
class CreditBreakdown:
    """Eligible balance per grant category. Every category is always present.

    Attributes:
        purchased: Credits in purchased grants.
        bonus: Credits in bonus grants.
        referral: Credits in referral grants.
    """

    purchased: int = 0
    bonus: int = 0
    referral: int = 0

    @property
    def total(self) -> int:
        """Sum across categories."""
        return self.purchased + self.bonus + self.referral


@dataclass(frozen=True)
class BurnResult:
    """Outcome of a successful burn.

    Attributes:
        charge_id: Id shared by every burn event of this charge.
        cost: Priced charge.
        events: Burn events in debit order.
        settlement: Creator payout outcome, if a creator fee applied.
    """

    charge_id: uuid.UUID
    cost: CostBreakdown
    events: tuple[BurnEvent, ...]
    settlement: SettlementOutcome | None = None

    @property
    def amount(self) -> int:
        """Credits debited across all events."""
        return sum(e.amount for e in self.events)


@dataclass(frozen=True)
class DeductionResult:
    """Outcome of an admin deduction.

    Attributes:
        charge_id: Id shared by every burn event of this deduction.
        events: Burn events in debit order.
    """

    charge_id: uuid.UUID
    events: tuple[BurnEvent, ...]

    @property
    def amount(self) -> int:
        """Credits deducted across all events."""
        return sum(e.amount for e in self.events)


@dataclass(frozen=True)
class BundlePurchase:
    """Grants issued for a bundle purchase.

    Attributes:
        bundle: Bundle bought.
        purchased: Purchased grant holding the base credits.
        bonus: Bonus grant, if the bundle carries bonus credits.
    """

    bundle: CreditBundle
    purchased: CreditGrant
    bonus: CreditGrant | None = None


def _available(grants: list[CreditGrant]) -> int:
    return sum(g.remaining for g in grants)


def _check_credit_amount(amount: int, label: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"{label} must be a positive integer. Got: {amount}")


class LedgerService:
    """Burns credits against a user's grants and reads balances.

    Args:
        store: Grant store holding grants and burn events.
        pricing: Pricing table for model costs.
        bundles: Catalog of purchasable credit bundles.
        settlement: Settlement service for creator payouts. Built over the
            same store when omitted.
        settings: Ledger settings (retry bounds, page size).
        clock: Time source.
    """

    def __init__(
        self,
        store: GrantStore,
        pricing: PricingTable | None = None,
        *,
        bundles: BundleCatalog | None = None,
        settlement: SettlementService | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._pricing = pricing or PricingTable()
        self._bundles = bundles or BundleCatalog()
        self._settings = settings or default_settings
        self._clock = clock
        self._settlement = settlement or SettlementService(
            store, settings=self._settings, clock=clock
        )

    # =========================================================================
    # Burn
    # =========================================================================

    async def burn(
        self,
        user_id: uuid.UUID,
        model_id: str,
        length_bucket: str,
        creator_id: uuid.UUID | None = None,
        creator_fee_percentage: float | None = None,
        *,
        item_type: str | None = None,
        item_id: str | None = None,
    ) -> BurnResult:
        """Charge a user for one model run.

        Args:
            user_id: Payer.
            model_id: Model run.
            length_bucket: short, medium or long.
            creator_id: Creator of the prompt or flow, if any.
            creator_fee_percentage: Creator fee as percent of the base cost.
            item_type: Optional kind of item executed (prompt, flow, completion).
            item_id: Optional id of the executed item.

        Returns:
            BurnResult with the burn events and creator settlement.

        Raises:
            ValidationError: If arguments are invalid, including a creator
                fee with no creator to pay.
            UnknownModelError: If the model is not priced.
            InsufficientCreditsError: If the eligible balance is too low.
            LedgerContentionError: If concurrent debits exhausted retries.
        """
        if creator_fee_percentage and creator_id is None:
            raise ValidationError("creator_fee_percentage requires a creator_id")

        cost = self._pricing.quote(model_id, length_bucket, creator_fee_percentage)
        required = cost.total
        now = self._clock()

        grants = await self._store.list_eligible(user_id, now)
        available = _available(grants)
        if available < required:
            logger.info(
                "Insufficient credits for user %s: %d required, %d available",
                user_id,
                required,
                available,
            )
            raise InsufficientCreditsError(available=available, required=required)

        charge_id = uuid.uuid4()
        settlement: SettlementOutcome | None = None
        async with self._store.transaction():
            events = await self._debit(
                charge_id=charge_id,
                user_id=user_id,
                required=required,
                creator_fee=cost.creator_fee,
                model_id=cost.model_id,
                length_bucket=cost.length_bucket,
                grants=grants,
                now=now,
                creator_id=creator_id,
                item_type=item_type,
                item_id=item_id,
            )
            if creator_id is not None and cost.creator_fee > 0:
                settlement = await self._settlement.settle(
                    creator_id,
                    cost.creator_fee,
                    payer_id=user_id,
                    charge_id=charge_id,
                )

        logger.info(
            "Charged user %s %d credits for %s/%s across %d grant(s) (charge %s)",
            user_id,
            required,
            model_id,
            length_bucket,
            len(events),
            charge_id,
        )
        return BurnResult(
            charge_id=charge_id,
            cost=cost,
            events=tuple(events),
            settlement=settlement,
        )

    async def _debit(
        self,
        *,
        charge_id: uuid.UUID,
        user_id: uuid.UUID,
        required: int,
        creator_fee: int,
        model_id: str,
        length_bucket: str | None,
        grants: list[CreditGrant],
        now: datetime,
        creator_id: uuid.UUID | None,
        item_type: str | None,
        item_id: str | None,
    ) -> list[BurnEvent]:
        """Take `required` credits from grants in order, retrying races.

        Creator fee attribution per slice is the floor of the running
        total, so the slices of a charge sum to exactly the creator fee.
        """
        max_attempts = self._settings.ledger_burn_max_attempts
        taken = 0
        events: list[BurnEvent] = []
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                for grant in grants:
                    if taken == required:
                        break
                    take = min(grant.remaining, required - taken)
                    await self._store.apply_debit(grant.id, take, now)
                    fee_before = taken * creator_fee // required
                    taken += take
                    fee_after = taken * creator_fee // required
                    event = await self._store.add_burn_event(
                        charge_id=charge_id,
                        user_id=user_id,
                        grant_id=grant.id,
                        amount=take,
                        model_id=model_id,
                        length_bucket=length_bucket,
                        creator_id=creator_id,
                        creator_fee_share=fee_after - fee_before,
                        item_type=item_type,
                        item_id=item_id,
                        created_at=now,
                    )
                    events.append(event)
            except (NotFoundError, InsufficientGrantBalanceError) as exc:
                last_error = exc
                logger.warning(
                    "Debit raced for user %s on attempt %d of %d: %s",
                    user_id,
                    attempt,
                    max_attempts,
                    exc.message,
                )
            else:
                if taken == required:
                    return events

            if attempt == max_attempts:
                break
            await asyncio.sleep(self._settings.ledger_retry_backoff_seconds * attempt)
            grants = await self._store.list_eligible(user_id, now)
            still_needed = required - taken
            available = _available(grants)
            if available < still_needed:
                raise InsufficientCreditsError(
                    available=available + taken, required=required
                )

        raise LedgerContentionError(max_attempts) from last_error

    # =========================================================================
    # Grant issue
    # =========================================================================

    async def add_grant(
        self,
        user_id: uuid.UUID,
        amount: int,
        category: str = "purchased",
        source_tag: str = _DEFAULT_SOURCE_TAG,
        expiry_days: int | None = None,
    ) -> CreditGrant:
        """Issue a new grant to a user.

        Args:
            user_id: Grant owner.
            amount: Credits to grant (positive).
            category: purchased, bonus or referral.
            source_tag: Provenance (payment reference, promotion name).
            expiry_days: Days until expiry. None = never expires.

        Returns:
            The created CreditGrant.

        Raises:
            ValidationError: If amount, category or expiry is invalid.
        """
        _check_credit_amount(amount, "Grant amount")
        if category not in GRANT_CATEGORIES:
            raise ValidationError(
                f"Invalid grant category '{category}'. "
                f"Expected one of: {', '.join(GRANT_CATEGORIES)}"
            )
        if expiry_days is not None and expiry_days <= 0:
            raise ValidationError(f"expiry_days must be positive. Got: {expiry_days}")

        now = self._clock()
        async with self._store.transaction():
            grant = await self._issue(
                user_id, amount, category, source_tag, expiry_days, now
            )
        logger.info(
            "Granted user %s %d %s credits (%s)", user_id, amount, category, source_tag
        )
        return grant

    async def purchase_bundle(
        self, user_id: uuid.UUID, bundle_id: str, payment_ref: str
    ) -> BundlePurchase:
        """Fulfil a paid bundle: base credits plus any bonus credits.

        Both grants are issued in one transaction and tagged with the
        payment reference. Base credits expire after the configured
        purchase expiry, bonus credits after the bundle bonus expiry.

        Args:
            user_id: Buyer.
            bundle_id: Bundle bought.
            payment_ref: Payment provider reference (checkout session id).

        Returns:
            BundlePurchase with the issued grants.

        Raises:
            NotFoundError: If the bundle does not exist.
            ValidationError: If the payment reference is empty or the buyer
                does not burn enough credits monthly for the bundle.
        """
        bundle = self._bundles.get(bundle_id)
        if not payment_ref or not payment_ref.strip():
            raise ValidationError("payment_ref is required for a bundle purchase")
        if bundle.required_monthly_burn:
            monthly_burn = await self.get_monthly_burn(
                user_id, days=_MONTHLY_BURN_WINDOW_DAYS
            )
            if monthly_burn < bundle.required_monthly_burn:
                raise ValidationError(
                    f"Bundle '{bundle.id}' requires {bundle.required_monthly_burn} "
                    f"credits burned in the last {_MONTHLY_BURN_WINDOW_DAYS} days. "
                    f"Got: {monthly_burn}"
                )

        now = self._clock()
        bonus: CreditGrant | None = None
        async with self._store.transaction():
            purchased = await self._issue(
                user_id,
                bundle.base_credits,
                "purchased",
                f"{_PAYMENT_SOURCE_PREFIX}{payment_ref}",
                self._settings.ledger_purchase_expiry_days,
                now,
            )
            if bundle.bonus_credits > 0:
                bonus = await self._issue(
                    user_id,
                    bundle.bonus_credits,
                    "bonus",
                    f"{_PAYMENT_BONUS_SOURCE_PREFIX}{payment_ref}",
                    self._settings.ledger_bundle_bonus_expiry_days,
                    now,
                )

        logger.info(
            "User %s bought bundle %s: %d purchased + %d bonus credits (%s)",
            user_id,
            bundle.id,
            bundle.base_credits,
            bundle.bonus_credits,
            payment_ref,
        )
        return BundlePurchase(bundle=bundle, purchased=purchased, bonus=bonus)

    async def _issue(
        self,
        user_id: uuid.UUID,
        amount: int,
        category: str,
        source_tag: str,
        expiry_days: int | None,
        now: datetime,
    ) -> CreditGrant:
        expires_at = now + timedelta(days=expiry_days) if expiry_days else None
        return await self._store.create_grant(
            owner_id=user_id,
            category=category,
            amount=amount,
            source_tag=source_tag,
            expires_at=expires_at,
            created_at=now,
        )

    # =========================================================================
    # Adjustments
    # =========================================================================

    async def deduct_credits(
        self,
        user_id: uuid.UUID,
        amount: int,
        reason: str,
        *,
        actor_id: uuid.UUID | None = None,
    ) -> DeductionResult:
        """Remove credits from a user as an admin adjustment.

        Debits grants in burn order through the same conditional debit and
        retry path as a burn. Each slice is logged as a BurnEvent with
        model "admin_adjustment", no length bucket and the reason as its
        item id, so issued credits still equal remaining plus burned.
        Adjustments do not count toward monthly burn.

        Args:
            user_id: User to deduct from.
            amount: Credits to remove (positive).
            reason: Why the credits are removed.
            actor_id: Admin performing the adjustment, for the log.

        Returns:
            DeductionResult with the burn events.

        Raises:
            ValidationError: If amount or reason is invalid.
            InsufficientCreditsError: If the eligible balance is too low.
            LedgerContentionError: If concurrent debits exhausted retries.
        """
        _check_credit_amount(amount, "Deduction amount")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a credit deduction")

        now = self._clock()
        grants = await self._store.list_eligible(user_id, now)
        available = _available(grants)
        if available < amount:
            logger.info(
                "Cannot deduct %d credits from user %s: %d available",
                amount,
                user_id,
                available,
            )
            raise InsufficientCreditsError(available=available, required=amount)

        charge_id = uuid.uuid4()
        async with self._store.transaction():
            events = await self._debit(
                charge_id=charge_id,
                user_id=user_id,
                required=amount,
                creator_fee=0,
                model_id=ADJUSTMENT_MODEL_ID,
                length_bucket=None,
                grants=grants,
                now=now,
                creator_id=None,
                item_type=ADJUSTMENT_ITEM_TYPE,
                item_id=reason[:255],
            )

        logger.info(
            "Deducted %d credits from user %s by %s: %s (charge %s)",
            amount,
            user_id,
            actor_id or "system",
            reason,
            charge_id,
        )
        return DeductionResult(charge_id=charge_id, events=tuple(events))

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_balance(self, user_id: uuid.UUID) -> int:
        """Sum of remaining credits across eligible grants."""
        return _available(await self._store.list_eligible(user_id, self._clock()))

    async def get_breakdown(self, user_id: uuid.UUID) -> CreditBreakdown:
        """Eligible balance per category, zero-filled.

        Args:
            user_id: Grant owner.

        Returns:
            CreditBreakdown with purchased, bonus and referral totals.
        """
        totals = dict.fromkeys(GRANT_CATEGORIES, 0)
        for grant in await self._store.list_eligible(user_id, self._clock()):
            totals[grant.category] += grant.remaining
        return CreditBreakdown(
            purchased=totals["purchased"],
            bonus=totals["bonus"],
            referral=totals["referral"],
        )

    async def get_history(
        self, user_id: uuid.UUID, limit: int = 10, offset: int = 0
    ) -> list[BurnEvent]:
        """Burn events paid by the user or crediting them as creator.

        Args:
            user_id: Payer or creator.
            limit: Page size (1 to the configured maximum).
            offset: Records to skip.

        Returns:
            BurnEvent list, newest first.

        Raises:
            ValidationError: If limit or offset is out of range.
        """
        max_page = self._settings.ledger_history_max_page_size
        if not 1 <= limit <= max_page:
            raise ValidationError(
                f"limit must be between 1 and {max_page}. Got: {limit}"
            )
        if offset < 0:
            raise ValidationError(f"offset cannot be negative. Got: {offset}")
        return await self._store.list_burn_events(user_id, limit=limit, offset=offset)

    async def has_enough_credits(
        self,
        user_id: uuid.UUID,
        model_id: str,
        length_bucket: str,
        creator_fee_percentage: float | None = None,
    ) -> bool:
        """Check whether the eligible balance covers one run.

        Raises:
            UnknownModelError: If the model is not priced.
            ValidationError: If the bucket or percentage is invalid.
        """
        cost = self._pricing.quote(model_id, length_bucket, creator_fee_percentage)
        return await self.get_balance(user_id) >= cost.total

    async def get_monthly_burn(self, user_id: uuid.UUID, days: int = 30) -> int:
        """Credits the user spent in the trailing window."""
        since = self._clock() - timedelta(days=days)
        return await self._store.sum_burned(user_id, since)

    async def get_creator_earnings(self, creator_id: uuid.UUID) -> int:
        """Credits ever paid out to a creator from creator fees."""
        grants = await self._store.list_grants(creator_id)
        return sum(
            g.issued_amount
            for g in grants
            if g.source_tag.startswith(CREATOR_FEE_SOURCE_PREFIX)
        )

    async def list_expiring_grants(
        self, user_id: uuid.UUID, within_days: int = 7
    ) -> list[CreditGrant]:
        """Eligible grants that expire within the window, soonest first."""
        now = self._clock()
        horizon = now + timedelta(days=within_days)
        grants = await self._store.list_eligible(user_id, now)
        expiring = [
            g for g in grants if g.expires_at is not None and g.expires_at <= horizon
        ]
        expiring.sort(key=lambda g: g.expires_at or horizon)
        return expiring
