"""
Pricing calculations for provider usage.

Converts token usage into USD cost. USD is always ``Decimal`` and never
mixes with integer credits.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

# Cost telemetry precision: a millionth of a dollar
USD_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # USD per 1K prompt tokens
    completion_cost_per_1k: Decimal  # USD per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Rates for ``model``; raises ValueError for a model with no entry."""
        pricing = self.prices.get(model)
        if pricing is None:
            raise ValueError(f"Unsupported model: {model}")
        return pricing

    def supports(self, model: str) -> bool:
        return model in self.prices


# USD per 1K tokens: (prompt, completion)
_OPENAI_RATES = {
    "gpt-4o": ("0.0025", "0.01"),
    "gpt-4o-mini": ("0.00015", "0.0006"),
    "gpt-4.1-mini": ("0.0004", "0.0016"),
    "gpt-4": ("0.03", "0.06"),
    "gpt-3.5-turbo": ("0.0005", "0.0015"),
}

PRICING_TABLE = PricingTable({
    model: ModelPricing(Decimal(prompt), Decimal(completion))
    for model, (prompt, completion) in _OPENAI_RATES.items()
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> Decimal:
    """Calculate USD cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use

    Returns:
        Total cost rounded UP to the nearest millionth of a dollar

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    # Always round UP so telemetry never under-reports spend
    return (prompt_cost + completion_cost).quantize(USD_QUANTUM, rounding=ROUND_UP)
