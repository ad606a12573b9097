"""Tests for observability utilities."""

import json
import logging

from borrowmybike.observability.correlation import correlation_scope, get_correlation_id
from borrowmybike.observability.logging import JsonFormatter
from borrowmybike.observability.redaction import (
    id_prefix,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +1 416 555-0199")
        assert "555" not in result
        assert "[REDACTED]" in result

    def test_redact_email(self):
        result = redact_string("Email: rider@example.com")
        assert "rider@example.com" not in result
        assert "[REDACTED]" in result

    def test_redact_stripe_secrets(self):
        result = redact_string("key=sk_test_51Habc123 hook=whsec_abcDEF987")
        assert "sk_test_" not in result
        assert "whsec_" not in result
        assert result.count("[REDACTED]") == 2

    def test_ids_and_amounts_kept(self):
        assert redact_string("pi_3NxYz booking 15000") == "pi_3NxYz booking 15000"

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"card": "4242", "owner": "jane"})
        assert "4242" not in result
        assert "jane" not in result
        assert "card" in result

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "len=3" in result

    def test_redact_value_scalars(self):
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"
        assert redact_value(15000) == "15000"

    def test_id_prefix(self):
        assert id_prefix("evt_1NqXyZ2eZvKYlo2C") == "evt_1NqX"
        assert id_prefix(None) is None

    def test_safe_log_context(self):
        ctx = safe_log_context(email="rider@example.com", amount_cents=15000)
        assert ctx["email"] == "[REDACTED]"
        assert ctx["amount_cents"] == "15000"


def _record(message="settlement started", extra_fields=None):
    record = logging.LogRecord("borrowmybike.test", logging.INFO, __file__, 1, message, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


class TestJsonFormatter:
    def test_basic_fields(self):
        data = json.loads(JsonFormatter().format(_record()))
        assert data["service"] == "borrowmybike"
        assert data["level"] == "INFO"
        assert data["message"] == "settlement started"
        assert "correlationId" not in data

    def test_extra_fields_merged(self):
        data = json.loads(JsonFormatter().format(_record(extra_fields={"booking_id": "b-1"})))
        assert data["booking_id"] == "b-1"

    def test_reserved_keys_not_overridden(self):
        data = json.loads(JsonFormatter().format(_record(extra_fields={"level": "DEBUG"})))
        assert data["level"] == "INFO"

    def test_correlation_id_included(self):
        with correlation_scope("cid-42"):
            data = json.loads(JsonFormatter().format(_record()))
        assert data["correlationId"] == "cid-42"


class TestCorrelationScope:
    def test_scope_restores_previous_id(self):
        with correlation_scope("outer"):
            with correlation_scope() as inner:
                assert get_correlation_id() == inner
                assert inner != "outer"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() == ""
