"""
AI invocation gateway.

The only caller of the upstream completion provider. Applies the kill
switch, the response cache, the optional credit charge and the cost
ceiling, then calls OpenAI and records usage telemetry.

Failures after a charge (timeout, malformed output, provider errors) are
raised to the calling endpoint, which decides whether to refund. The
gateway never retries.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Tuple

import openai
import structlog
from openai import OpenAI

from ..config.loader import AISettings
from ..core.charging import Caller, ChargeCoordinator
from ..core.errors import FeatureDisabled, MalformedResponse, ProviderError, ProviderTimeout
from ..core.guardrails import enforce_request_ceiling
from ..core.pricing import calculate_cost
from ..core.response_cache import ResponseCache, fingerprint
from ..core.token_counter import TokenUsage, estimate_tokens
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import AIUsageLogEntry
from ..storage.repository import insert_usage_log, utc_now

logger = structlog.get_logger()

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class InvokeOptions:
    """Per-call switches.

    ``skip_credit_check`` is set when the endpoint already charged through
    the coordinator. ``timeout`` overrides the per-feature timeout.
    """
    cache: bool = False
    skip_credit_check: bool = False
    timeout: Optional[float] = None
    temperature: float = 0.2


@dataclass(frozen=True)
class AIResult:
    """Parsed provider output plus how it was obtained."""
    data: Any
    raw: str
    model: str
    cached: bool
    usage: Optional[TokenUsage] = None
    cost_usd: Optional[Decimal] = None


def parse_structured(raw: Optional[str]) -> Any:
    """Normalize provider content and parse it as a JSON object or array.

    Surrounding whitespace and a Markdown code fence are stripped first.

    Raises:
        MalformedResponse: If the content is empty, not JSON, or a bare scalar
    """
    if raw is None or not raw.strip():
        raise MalformedResponse(raw, "empty response")

    text = raw.strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponse(raw, f"response is not valid JSON ({e.msg})") from e

    if not isinstance(data, (dict, list)):
        raise MalformedResponse(raw, "expected a JSON object or array")
    return data


class AIGateway:
    """Cached-or-fresh, metered access to OpenAI chat completions."""

    def __init__(
        self,
        coordinator: Optional[ChargeCoordinator] = None,
        cache: Optional[ResponseCache] = None,
        db_path: str = DEFAULT_DB_PATH,
        client: Optional[OpenAI] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the gateway.

        Args:
            coordinator: Used when the gateway itself must charge credits
            cache: Response cache; caching is unavailable without one
            db_path: Database file for the usage log
            client: OpenAI client; one without automatic retries is created if omitted
            clock: Returns the current time for usage log entries
        """
        self.coordinator = coordinator
        self.cache = cache
        self.db_path = db_path
        self.client = client or OpenAI(max_retries=0)
        self.clock = clock or utc_now

    def invoke(
        self,
        user_id: Optional[str],
        feature: str,
        system_prompt: str,
        user_prompt: str,
        settings: AISettings,
        options: Optional[InvokeOptions] = None,
    ) -> AIResult:
        """Return structured AI output for a prompt pair.

        Args:
            user_id: Registered user, or None for guests (never cached or charged here)
            feature: Metered feature identifier
            system_prompt: System message
            user_prompt: User message
            settings: AI settings snapshot for this request
            options: Per-call switches

        Returns:
            AIResult with the parsed output

        Raises:
            ValueError: If feature or prompts are missing
            FeatureDisabled: If AI features are switched off
            CostCeilingExceeded: If the worst-case request cost is above the ceiling
            InsufficientCredits: If the gateway charges and the user cannot pay
            ProviderTimeout: If the provider call exceeded its timeout
            MalformedResponse: If the provider output is not structured JSON
            ProviderError: For any other provider failure
        """
        options = options or InvokeOptions()
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")
        if not user_prompt:
            raise ValueError("user_prompt is required and cannot be empty")

        if not settings.enabled:
            logger.warning("AI request rejected, features disabled", feature=feature, user_id=user_id)
            raise FeatureDisabled()

        model = settings.model_for(feature)
        use_cache = options.cache and user_id is not None and self.cache is not None
        prompt_key = fingerprint(system_prompt, user_prompt)

        if use_cache:
            hit = self.cache.lookup(user_id, feature, prompt_key)
            if hit is not None:
                logger.info("Serving cached AI response", user_id=user_id, feature=feature)
                return AIResult(data=parse_structured(hit.response), raw=hit.response, model=model, cached=True)

        # Checked before charging so a blocked request costs the user nothing
        enforce_request_ceiling(
            feature,
            model,
            estimate_tokens(system_prompt, user_prompt),
            settings.max_tokens,
            settings.max_cost_per_request,
        )

        if not options.skip_credit_check and user_id is not None:
            if self.coordinator is None:
                raise ValueError("credit check requested but no charge coordinator is configured")
            self.coordinator.charge(Caller.registered(user_id), feature)

        timeout = options.timeout if options.timeout is not None else settings.timeout_for(feature)
        response = self._complete(
            model=model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=settings.max_tokens,
            temperature=options.temperature,
            timeout=timeout,
            feature=feature,
        )

        usage, cost = self._record_usage(user_id, feature, model, response)

        raw = _message_content(response)
        try:
            data = parse_structured(raw)
        except MalformedResponse:
            logger.warning("Malformed AI response", feature=feature, model=model, user_id=user_id)
            raise

        if use_cache:
            self._store_in_cache(user_id, feature, prompt_key, raw)

        return AIResult(data=data, raw=raw, model=model, cached=False, usage=usage, cost_usd=cost)

    def _complete(self, *, model, system_prompt, user_prompt, max_tokens, temperature, timeout, feature):
        logger.info("OpenAI request", feature=feature, model=model, timeout=timeout)
        try:
            return self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            logger.warning("OpenAI request timed out", feature=feature, model=model, timeout=timeout)
            raise ProviderTimeout(timeout) from e
        except openai.OpenAIError as e:
            logger.error("OpenAI request failed", feature=feature, model=model, error=str(e))
            raise ProviderError() from e

    def _record_usage(self, user_id, feature, model, response) -> Tuple[Optional[TokenUsage], Optional[Decimal]]:
        """Append a usage log entry. Telemetry failures never fail the request."""
        try:
            if response.usage is None:
                raise ValueError("OpenAI response missing usage information")
            usage = TokenUsage.from_response_usage(response.usage)
            cost = calculate_cost(model, usage)
            insert_usage_log(
                AIUsageLogEntry(
                    user_id=user_id,
                    endpoint=feature,
                    model=model,
                    token_count=usage.total_tokens,
                    cost_usd=cost,
                    created_at=self.clock(),
                ),
                self.db_path,
            )
            return usage, cost
        except Exception:
            logger.exception("Failed to record AI usage", feature=feature, model=model, user_id=user_id)
            return None, None

    def _store_in_cache(self, user_id, feature, prompt_key, raw) -> None:
        try:
            self.cache.store(user_id, feature, prompt_key, raw)
        except Exception:
            logger.exception("Failed to cache AI response", feature=feature, user_id=user_id)


def _message_content(response) -> Optional[str]:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return None
    message = choices[0].message
    return message.content if message is not None else None
