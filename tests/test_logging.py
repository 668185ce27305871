"""
Structured operation logging and payload sanitization.
"""

import logging

import pytest

from vaultfund.core.errors import CapacityExceeded
from vaultfund.util.logging import StructuredLogger, logger, sanitize_payload


class TestStructuredLogger:
    """Log lines emitted by the shared logger."""

    def test_log_operation_format(self, caplog):
        with caplog.at_level(logging.INFO, logger="vaultfund"):
            logger.log_operation("vault.create", "success", {"vault_id": 1})

        assert "Operation: vault.create, Status: success, Details: {'vault_id': 1}" in caplog.text

    def test_rejections_log_at_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger="vaultfund"):
            logger.log_rejection("vault.invest", "CAPACITY_EXCEEDED", "too much", {"vault_id": 3})

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "CAPACITY_EXCEEDED" in record.getMessage()

    def test_stale_upkeep_logs_at_debug(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="vaultfund"):
            logger.log_upkeep(1, 2, 0, status="stale")

        assert caplog.records[-1].levelno == logging.DEBUG

    def test_keeper_task_duration(self, caplog):
        with caplog.at_level(logging.INFO, logger="vaultfund"):
            logger.log_keeper_task("repayment_upkeep", 1.0, 1.25)

        assert "duration_ms': 250.0" in caplog.text

    def test_single_handler_per_name(self):
        first = StructuredLogger("vaultfund.test")
        second = StructuredLogger("vaultfund.test")
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1

    def test_engine_rejection_is_logged(self, engine, caplog):
        vault = engine.vaults.create_vault("0xBeneficiary", 100)

        with caplog.at_level(logging.INFO, logger="vaultfund"):
            with pytest.raises(CapacityExceeded):
                engine.vaults.invest(vault.id, "0xAlice", 101)

        assert "Operation: vault.invest, Status: rejected" in caplog.text


class TestSanitizePayload:
    """Payload cleanup before events are persisted."""

    def test_redacts_sensitive_fields(self):
        assert sanitize_payload({"private_key": "abc", "amount": 5}) == {"private_key": "[REDACTED]", "amount": 5}

    def test_nested_structures(self):
        payload = {"items": [{"signature": "x"}, "short"]}
        assert sanitize_payload(payload) == {"items": [{"signature": "[REDACTED]"}, "short"]}

    def test_custom_sensitive_fields(self):
        assert sanitize_payload({"investor": "0xA"}, ["investor"]) == {"investor": "[REDACTED]"}

    def test_long_strings_truncated(self):
        assert sanitize_payload("a" * 250) == "a" * 200 + "..."
