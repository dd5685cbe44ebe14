"""
Credit policy: what each metered feature costs and what each package buys.

Pure lookups with no I/O.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import structlog

logger = structlog.get_logger()

# Charged for any feature missing from the cost table, so a new feature is
# never free by accident
DEFAULT_FEATURE_COST = 10

FEATURE_COSTS: Mapping[str, int] = MappingProxyType({
    "job_match": 10,
    "resume_enhancement": 15,
    "job_description_enhancement": 20,
})


@dataclass(frozen=True)
class CreditPackage:
    """A purchasable bundle of credits. Price is in USD cents."""
    package_id: str
    credits: int
    price_cents: int
    name: str

    def __post_init__(self):
        if self.credits <= 0:
            raise ValueError("package credits must be > 0")
        if self.price_cents <= 0:
            raise ValueError("package price_cents must be > 0")


CREDIT_PACKAGES: Mapping[str, CreditPackage] = MappingProxyType({
    "basic": CreditPackage("basic", 50, 499, "Basic AI Credits"),
    "standard": CreditPackage("standard", 150, 1299, "Standard AI Credits"),
    "premium": CreditPackage("premium", 500, 2999, "Premium AI Credits"),
})


@dataclass(frozen=True)
class CreditPolicy:
    """Feature cost and package tables loaded once at process start."""
    feature_costs: Mapping[str, int] = field(default_factory=lambda: FEATURE_COSTS)
    packages: Mapping[str, CreditPackage] = field(default_factory=lambda: CREDIT_PACKAGES)
    default_cost: int = DEFAULT_FEATURE_COST

    def __post_init__(self):
        if self.default_cost <= 0:
            raise ValueError("default_cost must be > 0")
        for feature, cost in self.feature_costs.items():
            if not isinstance(cost, int) or cost <= 0:
                raise ValueError(f"cost for feature '{feature}' must be a positive integer")

    def cost_of(self, feature: str) -> int:
        """Credit cost of a feature, falling back to the default cost."""
        cost = self.feature_costs.get(feature)
        if cost is None:
            logger.warning(
                "Feature cost fallback",
                feature=feature,
                default_cost=self.default_cost,
            )
            return self.default_cost
        return cost

    def can_afford(self, balance: int, feature: str) -> bool:
        return balance >= self.cost_of(feature)

    def package_credits(self, package_id: str) -> int:
        """Credits granted by a package.

        Raises:
            ValueError: If the package does not exist
        """
        package = self.packages.get(package_id)
        if package is None:
            raise ValueError(f"Invalid credit package: {package_id}")
        return package.credits
