"""
AI credit metering and usage accounting.

Decides whether a caller may use a metered AI feature, charges it
atomically, keeps an auditable ledger and caches identical AI requests.
"""

from .config.loader import DEFAULT_CONFIG, AISettings, MeterConfig, load_meter_config
from .core.charging import Caller, ChargeCoordinator, ChargeResult, CreditStatus
from .core.errors import (
    CostCeilingExceeded,
    CreditMeterError,
    FeatureDisabled,
    InsufficientCredits,
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
)
from .core.policy import DEFAULT_FEATURE_COST, CreditPolicy
from .core.response_cache import ResponseCache
from .sdk.gateway import AIGateway, AIResult, InvokeOptions
from .storage.repository import BalanceStore, initialize_schema

__all__ = [
    "AIGateway",
    "AIResult",
    "AISettings",
    "BalanceStore",
    "Caller",
    "ChargeCoordinator",
    "ChargeResult",
    "CostCeilingExceeded",
    "CreditMeterError",
    "CreditPolicy",
    "CreditStatus",
    "DEFAULT_CONFIG",
    "DEFAULT_FEATURE_COST",
    "FeatureDisabled",
    "InsufficientCredits",
    "InvokeOptions",
    "MalformedResponse",
    "MeterConfig",
    "ProviderError",
    "ProviderTimeout",
    "ResponseCache",
    "initialize_schema",
    "load_meter_config",
]
