"""
Per-request cost guardrail.

Blocks a provider call whose worst-case cost (estimated prompt tokens plus
the full completion budget) is above the configured ceiling. The check
runs before the call, so a blocked request costs nothing.
"""

from decimal import Decimal
from typing import Optional

import structlog

from .errors import CostCeilingExceeded
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .token_counter import TokenUsage

logger = structlog.get_logger()


def worst_case_cost(
    model: str,
    prompt_tokens: int,
    max_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> Decimal:
    """USD cost if the completion uses its entire token budget."""
    return calculate_cost(model, TokenUsage(prompt_tokens, max_tokens), table)


def enforce_request_ceiling(
    feature: str,
    model: str,
    prompt_tokens: int,
    max_tokens: int,
    max_cost_per_request: Optional[Decimal],
    table: PricingTable = PRICING_TABLE,
) -> Optional[Decimal]:
    """Raise if the worst-case cost of a request is above the ceiling.

    Models missing from the pricing table cannot be estimated; the request
    is allowed and a warning is logged.

    Returns:
        Worst-case cost, or None when no estimate was possible

    Raises:
        CostCeilingExceeded: If the estimate exceeds ``max_cost_per_request``
    """
    if not table.supports(model):
        logger.warning("No pricing for model, cost ceiling not enforced", model=model, feature=feature)
        return None

    estimate = worst_case_cost(model, prompt_tokens, max_tokens, table)
    if max_cost_per_request is not None and estimate > max_cost_per_request:
        logger.warning(
            "Request blocked by cost ceiling",
            feature=feature,
            model=model,
            estimate_usd=str(estimate),
            ceiling_usd=str(max_cost_per_request),
        )
        raise CostCeilingExceeded(
            f"Request cost ${estimate} exceeds maximum allowed "
            f"${max_cost_per_request} for {feature}/{model}"
        )
    return estimate
