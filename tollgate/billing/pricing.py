"""Model pricing table and cost computation.

Prices are per 1000 usage units (tokens) as reported by the upstream.  Unknown
models are billed at the explicit ``default`` entry rather than rejected;
the proxy never refuses to meter a response because the model name is new.

Costs are quantized to 6 decimal places and always rounded UP, so a request
can never be billed at zero because its exact cost underflows the precision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Mapping

logger = logging.getLogger(__name__)

COST_PRECISION = Decimal("0.000001")
_THOUSAND = Decimal(1000)


@dataclass(frozen=True)
class ModelPrice:
    """Price per 1000 units and the provider a model is attributed to."""

    model: str
    price_per_1k: Decimal
    provider: str


class PricingTable:
    """Registry of model prices with an explicit default fallback.

    The table is validated at construction: every price must be a
    non-negative Decimal and every entry must name a provider.
    """

    def __init__(self, prices: Mapping[str, ModelPrice], default: ModelPrice) -> None:
        for entry in (*prices.values(), default):
            if not isinstance(entry.price_per_1k, Decimal):
                raise TypeError(f"Price for {entry.model!r} must be a Decimal")
            if entry.price_per_1k < 0:
                raise ValueError(f"Price for {entry.model!r} cannot be negative")
            if not entry.provider:
                raise ValueError(f"Price for {entry.model!r} has no provider")
        for name, entry in prices.items():
            if name != entry.model:
                raise ValueError(f"Pricing key {name!r} does not match entry {entry.model!r}")
        self._prices = dict(prices)
        self.default = default

    def lookup(self, model: str | None) -> ModelPrice:
        """Return the price entry for ``model``, or the default entry."""
        if model and model in self._prices:
            return self._prices[model]
        logger.debug("No price for model %r, using default rate", model)
        return self.default

    def __contains__(self, model: str) -> bool:
        return model in self._prices

    def __len__(self) -> int:
        return len(self._prices)


def compute_cost(tokens: int, price_per_1k: Decimal) -> Decimal:
    """Return ``tokens * price_per_1k / 1000`` rounded up to micro-units."""
    if tokens < 0:
        raise ValueError("tokens cannot be negative")
    cost = Decimal(tokens) * price_per_1k / _THOUSAND
    return cost.quantize(COST_PRECISION, rounding=ROUND_UP)


def _entry(model: str, price: str, provider: str) -> ModelPrice:
    return ModelPrice(model=model, price_per_1k=Decimal(price), provider=provider)


DEFAULT_PRICING = PricingTable(
    {
        entry.model: entry
        for entry in (
            _entry("gpt-3.5-turbo", "0.002", "openai"),
            _entry("gpt-4", "0.06", "openai"),
            _entry("gpt-4o", "0.015", "openai"),
            _entry("claude-3-sonnet", "0.008", "anthropic"),
            _entry("claude-3-5-sonnet", "0.015", "anthropic"),
            _entry("gemini-pro", "0.001", "google"),
        )
    },
    default=_entry("default", "0.002", "unknown"),
)
