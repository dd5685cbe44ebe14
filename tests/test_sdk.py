"""
Unit tests for SDK layer.

Tests the AI gateway: kill switch, caching, charging, cost ceiling,
provider failure mapping and usage recording.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from ai_credit_meter.config.loader import AISettings
from ai_credit_meter.core.charging import ChargeCoordinator
from ai_credit_meter.core.errors import (
    CostCeilingExceeded,
    FeatureDisabled,
    InsufficientCredits,
    MalformedResponse,
    ProviderError,
    ProviderTimeout,
)
from ai_credit_meter.core.response_cache import ResponseCache, fingerprint
from ai_credit_meter.sdk.gateway import AIGateway, InvokeOptions, parse_structured
from ai_credit_meter.storage.models import TransactionType
from ai_credit_meter.storage.repository import BalanceStore, fetch_recent_usage_logs, initialize_schema

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SYSTEM = "You match resumes to jobs. Reply with JSON."
USER = "Resume: Python developer, 5 years"
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def make_response(content='{"matches": [1, 2]}', prompt_tokens=100, completion_tokens=50):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    return response


class TestParseStructured:
    """Test normalization and parsing of provider output."""

    def test_object(self):
        assert parse_structured('{"a": 1}') == {"a": 1}

    def test_array(self):
        assert parse_structured('[1, 2]') == [1, 2]

    def test_surrounding_whitespace(self):
        assert parse_structured('\n  {"a": 1}  \n') == {"a": 1}

    def test_code_fence_is_stripped(self):
        assert parse_structured('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_structured('```\n[true]\n```') == [True]

    def test_invalid_json(self):
        with pytest.raises(MalformedResponse, match="not valid JSON") as exc_info:
            parse_structured("Sure! Here are your matches")
        assert exc_info.value.raw == "Sure! Here are your matches"
        assert exc_info.value.code == "malformed_response"

    def test_scalar_rejected(self):
        with pytest.raises(MalformedResponse, match="object or array"):
            parse_structured("42")

    def test_empty_rejected(self):
        with pytest.raises(MalformedResponse, match="empty response"):
            parse_structured("   ")
        with pytest.raises(MalformedResponse, match="empty response"):
            parse_structured(None)


class TestAIGateway:
    """Test the metered AI gateway."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.store = BalanceStore(self.db_path)
        self.coordinator = ChargeCoordinator(self.store)
        self.cache = ResponseCache(self.db_path, clock=lambda: NOW)
        self.client = Mock()
        self.client.chat.completions.create.return_value = make_response()
        self.gateway = AIGateway(
            coordinator=self.coordinator,
            cache=self.cache,
            db_path=self.db_path,
            client=self.client,
            clock=lambda: NOW,
        )
        self.settings = AISettings()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, user_id="u1", feature="job_match", settings=None, **options):
        return self.gateway.invoke(
            user_id,
            feature,
            SYSTEM,
            USER,
            settings or self.settings,
            InvokeOptions(**options),
        )

    @patch('ai_credit_meter.sdk.gateway.OpenAI')
    def test_default_client_never_retries(self, mock_openai_class):
        gateway = AIGateway(db_path=self.db_path)
        mock_openai_class.assert_called_once_with(max_retries=0)
        assert gateway.client is mock_openai_class.return_value

    def test_success_returns_parsed_data(self):
        result = self._invoke(skip_credit_check=True)

        assert result.data == {"matches": [1, 2]}
        assert result.raw == '{"matches": [1, 2]}'
        assert result.model == "gpt-4o-mini"
        assert not result.cached
        assert result.usage.total_tokens == 150
        assert result.cost_usd == Decimal("0.000045")

    def test_provider_request_shape(self):
        self._invoke(skip_credit_check=True, temperature=0.5)

        self.client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=[
                {"role": "system", "content": SYSTEM},
                {"role": "user", "content": USER},
            ],
            temperature=0.5,
            max_tokens=1000,
            timeout=9.0,
        )

    def test_model_and_timeout_per_feature(self):
        self._invoke(feature="file_parsing", skip_credit_check=True)
        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4.1-mini"
        assert kwargs["timeout"] == 9.0

        self._invoke(feature="resume_enhancement", skip_credit_check=True)
        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["timeout"] == 30.0

    def test_explicit_timeout_wins(self):
        self._invoke(skip_credit_check=True, timeout=2.5)
        assert self.client.chat.completions.create.call_args.kwargs["timeout"] == 2.5

    def test_usage_is_logged(self):
        self._invoke(skip_credit_check=True)

        entries = fetch_recent_usage_logs(db_path=self.db_path)
        assert len(entries) == 1
        assert entries[0].user_id == "u1"
        assert entries[0].endpoint == "job_match"
        assert entries[0].model == "gpt-4o-mini"
        assert entries[0].token_count == 150
        assert entries[0].cost_usd == Decimal("0.000045")
        assert entries[0].created_at == NOW

    def test_usage_log_failure_does_not_fail_request(self):
        with patch('ai_credit_meter.sdk.gateway.insert_usage_log',
                   side_effect=sqlite3.OperationalError("database is locked")):
            result = self._invoke(skip_credit_check=True)

        assert result.data == {"matches": [1, 2]}
        assert result.usage is None

    def test_missing_usage_does_not_fail_request(self):
        response = make_response()
        response.usage = None
        self.client.chat.completions.create.return_value = response

        result = self._invoke(skip_credit_check=True)

        assert result.data == {"matches": [1, 2]}
        assert fetch_recent_usage_logs(db_path=self.db_path) == []

    def test_kill_switch_blocks_everything(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)

        with pytest.raises(FeatureDisabled):
            self._invoke(settings=AISettings(enabled=False))

        self.client.chat.completions.create.assert_not_called()
        assert self.store.get_balance("u1") == 50

    def test_gateway_charges_when_asked(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)

        self._invoke()

        assert self.store.get_balance("u1") == 40

    def test_skip_credit_check_does_not_charge(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)
        self._invoke(skip_credit_check=True)
        assert self.store.get_balance("u1") == 50

    def test_insufficient_credits_stops_before_provider(self):
        self.store.grant("u1", 5, TransactionType.PURCHASE)

        with pytest.raises(InsufficientCredits):
            self._invoke()

        self.client.chat.completions.create.assert_not_called()

    def test_charge_without_coordinator_is_an_error(self):
        gateway = AIGateway(db_path=self.db_path, client=self.client)
        with pytest.raises(ValueError, match="no charge coordinator"):
            gateway.invoke("u1", "job_match", SYSTEM, USER, self.settings)

    def test_cost_ceiling_blocks_before_charge(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)
        settings = AISettings(max_cost_per_request=Decimal("0.0001"))

        with pytest.raises(CostCeilingExceeded):
            self._invoke(settings=settings)

        self.client.chat.completions.create.assert_not_called()
        assert self.store.get_balance("u1") == 50

    def test_cache_hit_skips_provider_and_charge(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)
        self.cache.store("u1", "job_match", fingerprint(SYSTEM, USER), '{"matches": ["cached"]}')

        result = self._invoke(cache=True)

        assert result.cached
        assert result.data == {"matches": ["cached"]}
        self.client.chat.completions.create.assert_not_called()
        assert self.store.get_balance("u1") == 50

    def test_cache_miss_stores_response(self):
        self._invoke(cache=True, skip_credit_check=True)

        hit = self.cache.lookup("u1", "job_match", fingerprint(SYSTEM, USER))
        assert hit is not None
        assert hit.response == '{"matches": [1, 2]}'

        second = self._invoke(cache=True, skip_credit_check=True)
        assert second.cached
        assert self.client.chat.completions.create.call_count == 1

    def test_cache_not_used_unless_requested(self):
        self._invoke(skip_credit_check=True)
        assert self.cache.lookup("u1", "job_match", fingerprint(SYSTEM, USER)) is None

    def test_guest_is_never_cached_or_charged(self):
        self._invoke(user_id=None, cache=True)
        self._invoke(user_id=None, cache=True)

        assert self.client.chat.completions.create.call_count == 2
        assert fetch_recent_usage_logs(db_path=self.db_path)[0].user_id is None

    def test_timeout_maps_to_provider_timeout(self):
        self.store.grant("u1", 50, TransactionType.PURCHASE)
        self.client.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)

        with pytest.raises(ProviderTimeout) as exc_info:
            self._invoke()

        assert exc_info.value.timeout == 9.0
        assert str(exc_info.value) == "AI request timed out after 9s"
        # The endpoint decides on refunds; the gateway leaves the charge in place
        assert self.store.get_balance("u1") == 40

    def test_connection_error_maps_to_provider_error(self):
        self.client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)

        with pytest.raises(ProviderError) as exc_info:
            self._invoke(skip_credit_check=True)

        assert not isinstance(exc_info.value, ProviderTimeout)
        assert exc_info.value.code == "provider_error"

    def test_provider_called_once_on_failure(self):
        self.client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)

        with pytest.raises(ProviderError):
            self._invoke(skip_credit_check=True)

        assert self.client.chat.completions.create.call_count == 1

    def test_malformed_output_is_not_cached(self):
        self.client.chat.completions.create.return_value = make_response("I could not find matches.")

        with pytest.raises(MalformedResponse):
            self._invoke(cache=True, skip_credit_check=True)

        assert self.cache.lookup("u1", "job_match", fingerprint(SYSTEM, USER)) is None
        # Usage is still recorded for the tokens spent
        assert len(fetch_recent_usage_logs(db_path=self.db_path)) == 1

    def test_fenced_output_is_parsed(self):
        self.client.chat.completions.create.return_value = make_response('```json\n{"ok": true}\n```')
        assert self._invoke(skip_credit_check=True).data == {"ok": True}

    def test_missing_feature_or_prompt(self):
        with pytest.raises(ValueError, match="feature is required"):
            self.gateway.invoke("u1", " ", SYSTEM, USER, self.settings)
        with pytest.raises(ValueError, match="user_prompt is required"):
            self.gateway.invoke("u1", "job_match", SYSTEM, "", self.settings)
