"""Log processors: customer documents and secrets never reach the log sink."""

import json
import logging

import pytest
import structlog

from config.settings import LOGGING, mask_sensitive_data

pytestmark = pytest.mark.unit


class TestSensitiveDataMasking:
    def test_customer_document_masked(self):
        event_dict = {
            "event": "order.credit_check_failed",
            "customer_document": "598.601.842-75",
        }
        result = mask_sensitive_data(None, None, event_dict)
        assert result["customer_document"] == "***MASKED***"

    def test_unformatted_cpf_masked(self):
        result = mask_sensitive_data(None, None, {"event": "x", "document": "59860184275"})
        assert "59860184275" not in result["document"]

    def test_cnpj_masked(self):
        result = mask_sensitive_data(None, None, {"event": "x", "cnpj": "11.222.333/0001-81"})
        assert "***MASKED***" in result["cnpj"]

    def test_gateway_token_masked(self):
        event_dict = {"event": "order.payment_failed", "error": "gateway rejected token=tok_9f8e7d"}
        result = mask_sensitive_data(None, None, event_dict)
        assert "tok_9f8e7d" not in result["error"]

    def test_order_fields_untouched(self):
        event_dict = {
            "event": "order.created",
            "order_number": "2026-000001",
            "total_amount": "118.00",
            "status": "DRAFT",
        }
        assert mask_sensitive_data(None, None, dict(event_dict)) == event_dict

    def test_non_string_values_untouched(self):
        result = mask_sensitive_data(None, None, {"event": "x", "quantity": 59860184275})
        assert result["quantity"] == 59860184275


class TestJsonFormatter:
    def test_stdlib_records_rendered_as_masked_json(self):
        formatter_config = LOGGING["formatters"]["json"]
        formatter = formatter_config["()"](
            processors=formatter_config["processors"],
            foreign_pre_chain=formatter_config["foreign_pre_chain"],
        )
        record = logging.LogRecord(
            name="modules.orders",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="payment declined for 598.601.842-75",
            args=(),
            exc_info=None,
        )

        payload = json.loads(formatter.format(record))

        assert payload["level"] == "warning"
        assert payload["logger"] == "modules.orders"
        assert "598.601.842-75" not in payload["event"]
        assert "timestamp" in payload

    def test_structlog_configured_for_stdlib(self):
        assert structlog.is_configured()
