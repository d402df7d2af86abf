"""Credit bundle catalog.

A bundle is what a user buys with money: base credits issued as a
purchased grant, plus optional bonus credits issued as a separate bonus
grant. Larger bundles carry a bigger bonus. The enterprise bundle is only
sold to users who already burn enough credits each month.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.core.errors import NotFoundError


@dataclass(frozen=True)
class CreditBundle:
    """A purchasable credit bundle.

    Attributes:
        id: Bundle identifier used at checkout.
        name: User-facing name.
        price_usd: Price in US dollars.
        base_credits: Credits issued as a purchased grant.
        bonus_credits: Credits issued as a bonus grant (0 = none).
        required_monthly_burn: Credits the buyer must have burned in the
            trailing 30 days to be offered this bundle (0 = no requirement).
    """

    id: str
    name: str
    price_usd: Decimal
    base_credits: int
    bonus_credits: int = 0
    required_monthly_burn: int = 0

    @property
    def total_credits(self) -> int:
        """Base plus bonus credits."""
        return self.base_credits + self.bonus_credits

    @property
    def price_per_million(self) -> Decimal:
        """Effective USD price per million credits, to the cent."""
        per_million = self.price_usd * 1_000_000 / self.total_credits
        return per_million.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


DEFAULT_BUNDLES: tuple[CreditBundle, ...] = (
    CreditBundle(
        id="starter",
        name="Starter",
        price_usd=Decimal("10"),
        base_credits=10_000_000,
    ),
    CreditBundle(
        id="basic",
        name="Basic",
        price_usd=Decimal("25"),
        base_credits=25_000_000,
        bonus_credits=2_500_000,
    ),
    CreditBundle(
        id="pro",
        name="Pro",
        price_usd=Decimal("50"),
        base_credits=50_000_000,
        bonus_credits=7_500_000,
    ),
    CreditBundle(
        id="business",
        name="Business",
        price_usd=Decimal("100"),
        base_credits=100_000_000,
        bonus_credits=20_000_000,
    ),
    CreditBundle(
        id="enterprise",
        name="Enterprise",
        price_usd=Decimal("100"),
        base_credits=100_000_000,
        bonus_credits=40_000_000,
        required_monthly_burn=1_400_000,
    ),
)


class BundleCatalog:
    """Read-only lookup of purchasable bundles.

    Args:
        bundles: Bundles to offer. Ids must be unique.

    Raises:
        ValueError: If two bundles share an id or a bundle has no base credits.
    """

    def __init__(self, bundles: Iterable[CreditBundle] = DEFAULT_BUNDLES) -> None:
        by_id: dict[str, CreditBundle] = {}
        for bundle in bundles:
            if bundle.id in by_id:
                raise ValueError(f"Duplicate bundle id in catalog: {bundle.id}")
            if bundle.base_credits <= 0 or bundle.bonus_credits < 0:
                raise ValueError(f"Bundle {bundle.id} has invalid credit amounts")
            by_id[bundle.id] = bundle
        self._bundles = by_id

    def get(self, bundle_id: str) -> CreditBundle:
        """Look up a bundle.

        Raises:
            NotFoundError: If no bundle has this id.
        """
        bundle = self._bundles.get(bundle_id)
        if bundle is None:
            raise NotFoundError("CreditBundle", bundle_id)
        return bundle

    def bundles(self, monthly_burn: int | None = None) -> list[CreditBundle]:
        """List bundles, optionally only those a user with `monthly_burn` may buy."""
        return [
            b
            for b in self._bundles.values()
            if monthly_burn is None or monthly_burn >= b.required_monthly_burn
        ]
