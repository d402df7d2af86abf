"""Pricing table: per-model, per-length credit costs.

Static registry of marketplace models. Each model has a base inference
cost for short, medium and long prompts. A charge adds either a creator
fee (a percentage of the base cost) or a tiered platform markup, never
both. Unknown models are an error; there is no default cost.

Units: 1 credit = $0.000001, so $1 = 1,000,000 credits. All costs are
whole credits.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from app.core.errors import UnknownModelError, ValidationError
from app.models.credits import LENGTH_BUCKETS

CREDITS_PER_USD = 1_000_000

# Platform markup tiers (credits).
_LOW_COST_THRESHOLD = 10_000
_MID_COST_THRESHOLD = 100_000
_LOW_COST_MARKUP_PERCENT = 20
_MID_COST_MARKUP_PERCENT = 10
_FLAT_MARKUP = 500

# Prompt length thresholds (tokens) per provider: (short_max, medium_max).
_TOKEN_THRESHOLDS: dict[str, tuple[int, int]] = {
    "openai": (1000, 4000),
    "sonar": (800, 3000),
}
_DEFAULT_TOKEN_THRESHOLDS = (1000, 3500)

# Prompt length thresholds (characters) when only raw text is known.
_SHORT_TEXT_MAX_CHARS = 1500
_MEDIUM_TEXT_MAX_CHARS = 6000


@dataclass(frozen=True)
class ModelCost:
    """Base inference cost in credits per prompt length bucket."""

    short: int
    medium: int
    long: int

    def for_bucket(self, length_bucket: str) -> int:
        """Return the cost for a length bucket."""
        return int(getattr(self, length_bucket))


@dataclass(frozen=True)
class ModelDefinition:
    """A model offered in the marketplace.

    Attributes:
        id: Model identifier used by charges.
        provider: Provider family (openai, sonar).
        display_name: User-facing name.
        input_type: text, audio or image.
        output_type: text, audio or image.
        cost: Base inference cost per length bucket.
        description: Short description.
        is_available: Unavailable models cannot be priced.
    """

    id: str
    provider: str
    display_name: str
    input_type: str
    output_type: str
    cost: ModelCost
    description: str = ""
    is_available: bool = True


@dataclass(frozen=True)
class CostBreakdown:
    """Priced charge for one model run.

    Attributes:
        model_id: Model priced.
        length_bucket: short, medium or long.
        base_cost: Inference cost.
        creator_fee: Creator's fee on top of the base cost.
        platform_markup: Platform margin (0 when a creator fee applies).
        total: Credits the payer is charged.
    """

    model_id: str
    length_bucket: str
    base_cost: int
    creator_fee: int
    platform_markup: int

    @property
    def total(self) -> int:
        """Total credits charged."""
        return self.base_cost + self.creator_fee + self.platform_markup

    @property
    def usd(self) -> Decimal:
        """Total charge in USD."""
        return credits_to_usd(self.total)


DEFAULT_MODELS: tuple[ModelDefinition, ...] = (
    # OpenAI
    ModelDefinition(
        id="gpt-4o",
        provider="openai",
        display_name="GPT-4o",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=8500, medium=15000, long=23500),
        description="OpenAI's most capable multimodal model",
    ),
    ModelDefinition(
        id="gpt-4o-mini",
        provider="openai",
        display_name="GPT-4o Mini",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=1000, medium=1800, long=2800),
        description="Lightweight version of GPT-4o at a reduced cost",
    ),
    ModelDefinition(
        id="gpt-4o-audio",
        provider="openai",
        display_name="GPT-4o Audio",
        input_type="audio",
        output_type="text",
        cost=ModelCost(short=44000, medium=80000, long=124000),
        description="Process audio inputs with GPT-4o",
    ),
    ModelDefinition(
        id="gpt-4o-mini-audio",
        provider="openai",
        display_name="GPT-4o Mini Audio",
        input_type="audio",
        output_type="text",
        cost=ModelCost(short=11000, medium=20000, long=31000),
        description="Process audio at a reduced cost",
    ),
    ModelDefinition(
        id="gpt-image-1-text",
        provider="openai",
        display_name="GPT-Image-1",
        input_type="text",
        output_type="image",
        cost=ModelCost(short=5000, medium=5000, long=5000),
        description="Generate images from text prompts",
    ),
    ModelDefinition(
        id="gpt-image-1-image",
        provider="openai",
        display_name="GPT-Image-1 (Image Input)",
        input_type="image",
        output_type="image",
        cost=ModelCost(short=17000, medium=30000, long=47000),
        description="Edit or generate based on input images",
    ),
    ModelDefinition(
        id="o3",
        provider="openai",
        display_name="OpenAI o3",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=17000, medium=30000, long=47000),
        description="Advanced text generation model",
    ),
    ModelDefinition(
        id="o4-mini",
        provider="openai",
        display_name="OpenAI o4-mini",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=1900, medium=3300, long=5200),
        description="Efficient and cost-effective text generation",
    ),
    # Sonar
    ModelDefinition(
        id="sonar-pro-low",
        provider="sonar",
        display_name="Sonar Pro (Low)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=3400, medium=6000, long=9400),
        description="Sonar Pro optimized for efficiency",
    ),
    ModelDefinition(
        id="sonar-pro-medium",
        provider="sonar",
        display_name="Sonar Pro (Medium)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=700, medium=1200, long=1900),
        description="Balanced performance Sonar model",
    ),
    ModelDefinition(
        id="sonar-pro-high",
        provider="sonar",
        display_name="Sonar Pro (High)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=200, medium=300, long=500),
        description="Maximum capability Sonar model",
    ),
    ModelDefinition(
        id="sonar-low",
        provider="sonar",
        display_name="Sonar (Low)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=17000, medium=30000, long=47000),
        description="Standard Sonar model (low tier)",
    ),
    ModelDefinition(
        id="sonar-medium",
        provider="sonar",
        display_name="Sonar (Medium)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=1900, medium=3300, long=5200),
        description="Standard Sonar model (medium tier)",
    ),
    ModelDefinition(
        id="sonar-high",
        provider="sonar",
        display_name="Sonar (High)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=8500, medium=15000, long=23500),
        description="Standard Sonar model (high tier)",
    ),
    ModelDefinition(
        id="sonar-reasoning-pro-low",
        provider="sonar",
        display_name="Sonar Reasoning Pro (Low)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=1000, medium=1800, long=2800),
        description="Enhanced reasoning capabilities (low tier)",
    ),
    ModelDefinition(
        id="sonar-reasoning-pro-medium",
        provider="sonar",
        display_name="Sonar Reasoning Pro (Medium)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=44000, medium=80000, long=124000),
        description="Enhanced reasoning capabilities (medium tier)",
    ),
    ModelDefinition(
        id="sonar-reasoning-pro-high",
        provider="sonar",
        display_name="Sonar Reasoning Pro (High)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=11000, medium=20000, long=31000),
        description="Enhanced reasoning capabilities (high tier)",
    ),
    ModelDefinition(
        id="sonar-reasoning-low",
        provider="sonar",
        display_name="Sonar Reasoning (Low)",
        input_type="text",
        output_type="text",
        cost=ModelCost(short=17000, medium=30000, long=47000),
        description="Standard reasoning model (low tier)",
    ),
)


def _check_length_bucket(length_bucket: str) -> None:
    if length_bucket not in LENGTH_BUCKETS:
        raise ValidationError(
            f"Invalid length bucket '{length_bucket}'. "
            f"Expected one of: {', '.join(LENGTH_BUCKETS)}"
        )


class PricingTable:
    """Read-only lookup of model costs and charge composition.

    Args:
        models: Model definitions to serve. Ids must be unique.

    Raises:
        ValueError: If two models share an id.
    """

    def __init__(self, models: Iterable[ModelDefinition] = DEFAULT_MODELS) -> None:
        by_id: dict[str, ModelDefinition] = {}
        for model in models:
            if model.id in by_id:
                raise ValueError(f"Duplicate model id in pricing table: {model.id}")
            by_id[model.id] = model
        self._models = by_id

    def get_model(self, model_id: str) -> ModelDefinition:
        """Look up an available model.

        Raises:
            UnknownModelError: If the model is absent or unavailable.
        """
        model = self._models.get(model_id)
        if model is None or not model.is_available:
            raise UnknownModelError(model_id)
        return model

    def models(self, provider: str | None = None) -> list[ModelDefinition]:
        """List available models, optionally for one provider."""
        return [
            m
            for m in self._models.values()
            if m.is_available and (provider is None or m.provider == provider)
        ]

    def base_cost(self, model_id: str, length_bucket: str) -> int:
        """Base inference cost for a model at a prompt length.

        Args:
            model_id: Model identifier.
            length_bucket: short, medium or long.

        Returns:
            Cost in whole credits.

        Raises:
            UnknownModelError: If the model is absent or unavailable.
            ValidationError: If the length bucket is invalid.
        """
        _check_length_bucket(length_bucket)
        return self.get_model(model_id).cost.for_bucket(length_bucket)

    @staticmethod
    def platform_markup(base_cost: int, has_creator_fee: bool) -> int:
        """Platform margin for a charge.

        Zero when a creator fee applies. Otherwise 20% below 10,000
        credits, 10% below 100,000 credits, and a flat 500 above.
        """
        if has_creator_fee:
            return 0
        if base_cost < _LOW_COST_THRESHOLD:
            return base_cost * _LOW_COST_MARKUP_PERCENT // 100
        if base_cost < _MID_COST_THRESHOLD:
            return base_cost * _MID_COST_MARKUP_PERCENT // 100
        return _FLAT_MARKUP

    @staticmethod
    def creator_fee(base_cost: int, creator_fee_percentage: float | None) -> int:
        """Creator fee as a percentage of the base cost, floored.

        Raises:
            ValidationError: If the percentage is outside 0-100.
        """
        if creator_fee_percentage is None:
            return 0
        if not 0 <= creator_fee_percentage <= 100:
            raise ValidationError(
                "creator_fee_percentage must be between 0 and 100. "
                f"Got: {creator_fee_percentage}"
            )
        fee = Decimal(base_cost) * Decimal(str(creator_fee_percentage)) / 100
        return int(fee.to_integral_value(rounding=ROUND_FLOOR))

    def quote(
        self,
        model_id: str,
        length_bucket: str,
        creator_fee_percentage: float | None = None,
    ) -> CostBreakdown:
        """Price one run of a model.

        Args:
            model_id: Model identifier.
            length_bucket: short, medium or long.
            creator_fee_percentage: Creator fee as percent of base cost.

        Returns:
            CostBreakdown with base cost, creator fee and markup.

        Raises:
            UnknownModelError: If the model is absent or unavailable.
            ValidationError: If the bucket or percentage is invalid.
        """
        base = self.base_cost(model_id, length_bucket)
        fee = self.creator_fee(base, creator_fee_percentage)
        return CostBreakdown(
            model_id=model_id,
            length_bucket=length_bucket,
            base_cost=base,
            creator_fee=fee,
            platform_markup=self.platform_markup(base, fee > 0),
        )

    def runs_for_budget(
        self,
        model_id: str,
        length_bucket: str,
        usd: Decimal,
        creator_fee_percentage: float | None = None,
    ) -> int:
        """Number of whole runs a dollar budget buys."""
        total = self.quote(model_id, length_bucket, creator_fee_percentage).total
        if total <= 0:
            return 0
        return usd_to_credits(usd) // total


def classify_prompt_length(token_count: int, provider: str) -> str:
    """Map a prompt token count to a length bucket for a provider.

    Args:
        token_count: Prompt tokens.
        provider: Provider family; unknown providers use default thresholds.

    Returns:
        short, medium or long.
    """
    short_max, medium_max = _TOKEN_THRESHOLDS.get(provider, _DEFAULT_TOKEN_THRESHOLDS)
    if token_count <= short_max:
        return "short"
    if token_count <= medium_max:
        return "medium"
    return "long"


def length_bucket_for_text(prompt_text: str) -> str:
    """Map raw prompt text to a length bucket by character count."""
    length = len(prompt_text)
    if length < _SHORT_TEXT_MAX_CHARS:
        return "short"
    if length < _MEDIUM_TEXT_MAX_CHARS:
        return "medium"
    return "long"


def credits_to_usd(credits: int) -> Decimal:
    """Convert credits to USD."""
    return Decimal(credits) / CREDITS_PER_USD


def usd_to_credits(usd: Decimal) -> int:
    """Convert USD to whole credits, rounding down."""
    return int((usd * CREDITS_PER_USD).to_integral_value(rounding=ROUND_FLOOR))
