"""
Pricing calculations and rate management.

Holds immutable per-model pricing snapshots, the bundled offline table, and
the cost arithmetic used for every usage record.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .token_counter import TokenCounts


class Provenance(Enum):
    """Which tier supplied the active pricing table."""
    REMOTE = "remote"
    CACHED = "cached"
    BUNDLED = "bundled"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model.

    Cache prices are optional; a model without them charges nothing for
    cache tokens.
    """
    input_cost_per_token: Decimal
    output_cost_per_token: Decimal
    cache_creation_cost_per_token: Optional[Decimal] = None
    cache_read_cost_per_token: Optional[Decimal] = None

    def __post_init__(self):
        """Validate unit prices are non-negative."""
        for name in (
            "input_cost_per_token",
            "output_cost_per_token",
            "cache_creation_cost_per_token",
            "cache_read_cost_per_token",
        ):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Serialize prices as decimal strings for the cache file."""
        return {
            "input": str(self.input_cost_per_token),
            "output": str(self.output_cost_per_token),
            "cache_creation": _str_or_none(self.cache_creation_cost_per_token),
            "cache_read": _str_or_none(self.cache_read_cost_per_token),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelPricing":
        """Build pricing from a dict written by to_dict."""
        return cls(
            input_cost_per_token=Decimal(data["input"]),
            output_cost_per_token=Decimal(data["output"]),
            cache_creation_cost_per_token=_decimal_or_none(data.get("cache_creation")),
            cache_read_cost_per_token=_decimal_or_none(data.get("cache_read")),
        )


@dataclass(frozen=True)
class PricingTable:
    """Immutable pricing snapshot for a set of models.

    A table is never mutated once built; a refresh produces a new table that
    replaces the old one wholesale.
    """
    prices: Mapping[str, ModelPricing]
    provenance: Provenance
    fetched_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    def __len__(self) -> int:
        return len(self.prices)

    def __iter__(self) -> Iterator[str]:
        return iter(self.prices)

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Find pricing for a model, trying provider-prefixed variants.

        Args:
            model: Model identifier as written in the log

        Returns:
            ModelPricing for the model, or None if no variant is known
        """
        for candidate in _model_variants(model):
            pricing = self.prices.get(candidate)
            if pricing is not None:
                return pricing
        return None

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        pricing = self.lookup(model)
        if pricing is None:
            raise ValueError(f"Unsupported model: {model}")
        return pricing


def _model_variants(model: str) -> List[str]:
    variants = [model]
    if "/" in model:
        variants.append(model.split("/", 1)[1])
    else:
        variants.append(f"anthropic/{model}")
    return variants


def _per_million(amount: str) -> Decimal:
    return Decimal(amount) / Decimal(1_000_000)


def _bundled(input_: str, output: str, cache_creation: str, cache_read: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_token=_per_million(input_),
        output_cost_per_token=_per_million(output),
        cache_creation_cost_per_token=_per_million(cache_creation),
        cache_read_cost_per_token=_per_million(cache_read),
    )


# Offline fallback, prices in USD per million tokens
BUNDLED_PRICING_TABLE = PricingTable(
    {
        "claude-3-haiku-20240307": _bundled("0.25", "1.25", "0.30", "0.03"),
        "claude-3-sonnet-20240229": _bundled("3", "15", "3.75", "0.30"),
        "claude-3-opus-20240229": _bundled("15", "75", "18.75", "1.50"),
        "claude-3-5-haiku-20241022": _bundled("0.80", "4", "1", "0.08"),
        "claude-3-5-sonnet-20240620": _bundled("3", "15", "3.75", "0.30"),
        "claude-3-5-sonnet-20241022": _bundled("3", "15", "3.75", "0.30"),
        "claude-3-7-sonnet-20250219": _bundled("3", "15", "3.75", "0.30"),
        "claude-sonnet-4-20250514": _bundled("3", "15", "3.75", "0.30"),
        "claude-opus-4-20250514": _bundled("15", "75", "18.75", "1.50"),
        "claude-opus-4-1-20250805": _bundled("15", "75", "18.75", "1.50"),
        "claude-sonnet-4-5-20250929": _bundled("3", "15", "3.75", "0.30"),
        "claude-haiku-4-5-20251001": _bundled("1", "5", "1.25", "0.10"),
        "claude-opus-4-5-20251101": _bundled("5", "25", "6.25", "0.50"),
    },
    provenance=Provenance.BUNDLED,
)


def calculate_cost(pricing: ModelPricing, tokens: TokenCounts) -> Decimal:
    """Calculate the exact cost of a token-usage vector.

    cost = sum over categories of (count x unit price). No rounding is
    applied; Decimal keeps the result exact.

    Args:
        pricing: Unit prices for the model
        tokens: Token counts for one record

    Returns:
        Exact cost in USD
    """
    cost = Decimal(tokens.input) * pricing.input_cost_per_token
    cost += Decimal(tokens.output) * pricing.output_cost_per_token
    if pricing.cache_creation_cost_per_token is not None:
        cost += Decimal(tokens.cache_creation) * pricing.cache_creation_cost_per_token
    if pricing.cache_read_cost_per_token is not None:
        cost += Decimal(tokens.cache_read) * pricing.cache_read_cost_per_token
    return cost


def parse_remote_pricing(document: Any) -> Dict[str, ModelPricing]:
    """Parse the remote pricing document into per-model pricing.

    The document maps model identifiers to objects carrying
    ``input_cost_per_token`` and ``output_cost_per_token`` plus optional
    ``cache_creation_input_token_cost`` / ``cache_read_input_token_cost``.
    Entries without both input and output prices are skipped.

    Args:
        document: Decoded JSON document

    Returns:
        Mapping of model identifier to ModelPricing

    Raises:
        ValueError: If the document is not a JSON object
    """
    if not isinstance(document, dict):
        raise ValueError("Pricing document must be a JSON object")

    prices: Dict[str, ModelPricing] = {}
    for model, entry in document.items():
        if not isinstance(entry, dict):
            continue
        input_price = _price(entry.get("input_cost_per_token"))
        output_price = _price(entry.get("output_cost_per_token"))
        if input_price is None or output_price is None:
            continue
        try:
            prices[model] = ModelPricing(
                input_cost_per_token=input_price,
                output_cost_per_token=output_price,
                cache_creation_cost_per_token=_price(entry.get("cache_creation_input_token_cost")),
                cache_read_cost_per_token=_price(entry.get("cache_read_input_token_cost")),
            )
        except ValueError:
            continue
    return prices


def _price(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        # str() first so 3e-06 becomes Decimal("0.000003"), not its binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _decimal_or_none(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)
