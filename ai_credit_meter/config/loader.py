"""
Configuration management and loading.

Feature costs, packages, guest allowance, cache freshness and AI settings
are read once from YAML at process start. AI settings are handed to the
gateway as an immutable snapshot on every call, never read from a global.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Mapping, Optional

import yaml

from ai_credit_meter.core.charging import ChargeCoordinator
from ai_credit_meter.core.guest import DEFAULT_GUEST_ALLOTMENT, GUEST_CREDIT_COOKIE
from ai_credit_meter.core.policy import (
    CREDIT_PACKAGES,
    DEFAULT_FEATURE_COST,
    FEATURE_COSTS,
    CreditPackage,
    CreditPolicy,
)
from ai_credit_meter.core.response_cache import ResponseCache
from ai_credit_meter.storage.repository import BalanceStore


@dataclass(frozen=True)
class AISettings:
    """Snapshot of AI settings for a single request."""
    enabled: bool = True
    model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    max_cost_per_request: Optional[Decimal] = None
    timeout_seconds: float = 30.0
    latency_sensitive_timeout_seconds: float = 9.0
    model_overrides: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({
        "job_match": "gpt-4o-mini",
        "file_parsing": "gpt-4.1-mini",
    }))
    latency_sensitive_features: FrozenSet[str] = frozenset({"job_match", "file_parsing"})

    def __post_init__(self):
        """Validate AI setting values."""
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.latency_sensitive_timeout_seconds <= 0:
            raise ValueError("latency_sensitive_timeout_seconds must be > 0")
        if self.max_cost_per_request is not None and self.max_cost_per_request <= 0:
            raise ValueError("max_cost_per_request must be > 0")

    def model_for(self, feature: str) -> str:
        """Per-feature model override, else the configured default model."""
        return self.model_overrides.get(feature, self.model)

    def timeout_for(self, feature: str) -> float:
        if feature in self.latency_sensitive_features:
            return self.latency_sensitive_timeout_seconds
        return self.timeout_seconds


@dataclass(frozen=True)
class GuestConfig:
    """Cookie-backed allowance for unauthenticated callers."""
    cookie_name: str = GUEST_CREDIT_COOKIE
    allotment: int = DEFAULT_GUEST_ALLOTMENT
    max_age_days: int = 7

    def __post_init__(self):
        if not self.cookie_name:
            raise ValueError("cookie_name cannot be empty")
        if self.allotment < 0:
            raise ValueError("allotment must be >= 0")
        if self.max_age_days <= 0:
            raise ValueError("max_age_days must be > 0")

    @property
    def max_age_seconds(self) -> int:
        return self.max_age_days * 24 * 60 * 60


@dataclass(frozen=True)
class MeterConfig:
    """Complete credit meter configuration."""
    policy: CreditPolicy = field(default_factory=CreditPolicy)
    signup_bonus: int = 50
    guest: GuestConfig = field(default_factory=GuestConfig)
    cache_freshness: timedelta = timedelta(hours=24)
    ai: AISettings = field(default_factory=AISettings)

    def __post_init__(self):
        if self.signup_bonus <= 0:
            raise ValueError("signup_bonus must be > 0")
        if self.cache_freshness <= timedelta(0):
            raise ValueError("cache freshness must be > 0")

    def charge_coordinator(self, store: BalanceStore) -> ChargeCoordinator:
        """Coordinator charging with this config's costs, guest allowance and bonus."""
        return ChargeCoordinator(
            store,
            policy=self.policy,
            guest_allotment=self.guest.allotment,
            guest_cookie_name=self.guest.cookie_name,
            guest_cookie_max_age=self.guest.max_age_seconds,
            signup_bonus=self.signup_bonus,
        )

    def response_cache(self, db_path: str, clock: Optional[Callable[[], datetime]] = None) -> ResponseCache:
        """Response cache using the configured freshness window."""
        return ResponseCache(db_path, freshness=self.cache_freshness, clock=clock)

    def ai_settings(self, **overrides) -> AISettings:
        """Per-request AI settings snapshot, optionally with overrides."""
        if not overrides:
            return self.ai
        values = {name: getattr(self.ai, name) for name in self.ai.__dataclass_fields__}
        values.update(overrides)
        return AISettings(**values)


DEFAULT_CONFIG = MeterConfig()


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate credit meter configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    under-bill features or disable cost ceilings by accident. Sections that
    are omitted keep their built-in defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Credit meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(raw_config, {'credits', 'guest', 'cache', 'ai'}, "configuration")

    credits_data = _section(raw_config, 'credits')
    _check_keys(credits_data, {'default_cost', 'features', 'packages', 'signup_bonus'}, "credits")
    policy = _parse_policy(credits_data)
    signup_bonus = _positive_int(credits_data.get('signup_bonus', DEFAULT_CONFIG.signup_bonus), "credits.signup_bonus")

    guest_data = _section(raw_config, 'guest')
    _check_keys(guest_data, {'cookie_name', 'allotment', 'max_age_days'}, "guest")
    guest = GuestConfig(
        cookie_name=str(guest_data.get('cookie_name', GuestConfig.cookie_name)),
        allotment=_non_negative_int(guest_data.get('allotment', GuestConfig.allotment), "guest.allotment"),
        max_age_days=_positive_int(guest_data.get('max_age_days', GuestConfig.max_age_days), "guest.max_age_days"),
    )

    cache_data = _section(raw_config, 'cache')
    _check_keys(cache_data, {'freshness_hours'}, "cache")
    freshness_hours = cache_data.get('freshness_hours', 24)
    if not isinstance(freshness_hours, (int, float)) or isinstance(freshness_hours, bool) or freshness_hours <= 0:
        raise ValueError("'cache.freshness_hours' must be > 0")

    ai = _parse_ai_settings(_section(raw_config, 'ai'))

    return MeterConfig(
        policy=policy,
        signup_bonus=signup_bonus,
        guest=guest,
        cache_freshness=timedelta(hours=freshness_hours),
        ai=ai,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(value, path: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _non_negative_int(value, path: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValueError(f"'{path}' must be a non-negative integer")
    return value


def _parse_policy(data: Dict) -> CreditPolicy:
    """Parse feature costs and packages.

    Raises:
        ValueError: If a cost or package is invalid
    """
    default_cost = _positive_int(data.get('default_cost', DEFAULT_FEATURE_COST), "credits.default_cost")

    features_data = data.get('features')
    if features_data is None:
        feature_costs = FEATURE_COSTS
    else:
        if not isinstance(features_data, dict):
            raise ValueError("'credits.features' must be a dictionary")
        feature_costs = MappingProxyType({
            name: _positive_int(cost, f"credits.features.{name}")
            for name, cost in features_data.items()
        })

    packages_data = data.get('packages')
    if packages_data is None:
        packages = CREDIT_PACKAGES
    else:
        if not isinstance(packages_data, dict):
            raise ValueError("'credits.packages' must be a dictionary")
        parsed = {}
        for package_id, package_data in packages_data.items():
            path = f"credits.packages.{package_id}"
            if not isinstance(package_data, dict):
                raise ValueError(f"Package '{package_id}' must be a dictionary")
            _check_keys(package_data, {'credits', 'price_cents', 'name'}, path)
            for required in ('credits', 'price_cents'):
                if required not in package_data:
                    raise ValueError(f"Missing required '{required}' in {path}")
            parsed[package_id] = CreditPackage(
                package_id=package_id,
                credits=_positive_int(package_data['credits'], f"{path}.credits"),
                price_cents=_positive_int(package_data['price_cents'], f"{path}.price_cents"),
                name=str(package_data.get('name', package_id)),
            )
        packages = MappingProxyType(parsed)

    return CreditPolicy(feature_costs=feature_costs, packages=packages, default_cost=default_cost)


def _parse_ai_settings(data: Dict) -> AISettings:
    """Parse the ``ai`` section into a settings snapshot.

    Raises:
        ValueError: If a setting is invalid
    """
    _check_keys(data, {
        'enabled', 'model', 'max_tokens', 'max_cost_per_request', 'timeout_seconds',
        'latency_sensitive_timeout_seconds', 'model_overrides', 'latency_sensitive_features',
    }, "ai")
    defaults = AISettings()

    enabled = data.get('enabled', defaults.enabled)
    if not isinstance(enabled, bool):
        raise ValueError("'ai.enabled' must be true or false")

    max_cost = data.get('max_cost_per_request')
    if max_cost is not None:
        if not isinstance(max_cost, (int, float, str)) or isinstance(max_cost, bool):
            raise ValueError("'ai.max_cost_per_request' must be a number")
        max_cost = Decimal(str(max_cost))

    overrides = data.get('model_overrides')
    if overrides is None:
        model_overrides = defaults.model_overrides
    else:
        if not isinstance(overrides, dict):
            raise ValueError("'ai.model_overrides' must be a dictionary")
        model_overrides = MappingProxyType({str(k): str(v) for k, v in overrides.items()})

    sensitive = data.get('latency_sensitive_features')
    if sensitive is None:
        latency_sensitive = defaults.latency_sensitive_features
    else:
        if not isinstance(sensitive, list):
            raise ValueError("'ai.latency_sensitive_features' must be a list")
        latency_sensitive = frozenset(str(name) for name in sensitive)

    return AISettings(
        enabled=enabled,
        model=str(data.get('model', defaults.model)),
        max_tokens=_positive_int(data.get('max_tokens', defaults.max_tokens), "ai.max_tokens"),
        max_cost_per_request=max_cost,
        timeout_seconds=float(data.get('timeout_seconds', defaults.timeout_seconds)),
        latency_sensitive_timeout_seconds=float(
            data.get('latency_sensitive_timeout_seconds', defaults.latency_sensitive_timeout_seconds)
        ),
        model_overrides=model_overrides,
        latency_sensitive_features=latency_sensitive,
    )
