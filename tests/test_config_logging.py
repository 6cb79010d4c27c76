"""
Tests for configuration, structured logging and the error taxonomy
"""

import json
import logging
import sys
import pytest

from agriledger.config import AgriLedgerConfig, get_config, reload_config
from agriledger.errors import (
    BusyError, ConcurrentModificationError, InvalidTransitionError, LedgerError, NotFoundError,
    PersistenceError, ValidationError, persistence_guard
)
from agriledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self):
        config = AgriLedgerConfig()
        assert config.database_url == "memory://"
        assert config.lock_timeout_seconds == 5.0
        assert config.default_currency == "USD"
        assert config.max_page_size == 100
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AGRILEDGER_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("AGRILEDGER_DATABASE_URL", "sqlite:///ledger.db")
        try:
            config = reload_config()
            assert config.lock_timeout_seconds == 2.5
            assert config.database_url == "sqlite:///ledger.db"
            assert get_config() is config
        finally:
            monkeypatch.delenv("AGRILEDGER_LOCK_TIMEOUT_SECONDS")
            monkeypatch.delenv("AGRILEDGER_DATABASE_URL")
            reload_config()


class TestStructuredLogging:
    """Test JSON log output"""

    def test_log_action_writes_json(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging("INFO", logger_name="agriledger.test_json", log_file=str(log_file))

        log_action(logger, "info", "Payment applied", user_id="teller-1", action="record_payment",
                   resource="loan", correlation_id="req-1", loan_id="L1",
                   extra={"remaining_balance": "50.00"})
        log_action(logger, "debug", "Not emitted at INFO")

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["level"] == "INFO"
        assert entry["logger"] == "agriledger.test_json"
        assert entry["message"] == "Payment applied"
        assert entry["loan_id"] == "L1"
        assert entry["correlation_id"] == "req-1"
        assert entry["extra"] == {"remaining_balance": "50.00"}
        assert "user_id" in entry and "timestamp" in entry

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_formatter_includes_exception(self):
        try:
            raise ValueError("bad ledger row")
        except ValueError:
            record = get_logger("agriledger.test_fmt").makeRecord(
                "agriledger.test_fmt", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "ERROR"
        assert "bad ledger row" in entry["exception"]
        assert "loan_id" not in entry

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "text.log"
        logger = setup_logging("DEBUG", logger_name="agriledger.test_text", log_format="text",
                               log_file=str(log_file))
        logger.debug("sweep started")

        assert "| DEBUG    | agriledger.test_text | sweep started" in log_file.read_text()
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


class TestErrors:
    """Test error codes, kinds and retryability"""

    def test_taxonomy(self):
        assert ValidationError("bad", field="amount").to_dict() == {
            "kind": "validation_error", "code": 2001, "message": "bad",
            "retryable": False, "details": {"field": "amount"},
        }
        assert NotFoundError("loan", "L1").message == "Loan with ID L1 not found"
        assert InvalidTransitionError("PENDING", "record_payment").code == 3003
        assert BusyError("L1", 5.0).retryable
        assert isinstance(ConcurrentModificationError("L1", 2, 3), BusyError)
        assert PersistenceError("down").retryable
        assert not LedgerError("boom").retryable

    def test_persistence_guard(self):
        with pytest.raises(PersistenceError) as exc_info:
            with persistence_guard("loan save"):
                raise OSError("disk full")
        assert "loan save" in exc_info.value.message
        assert exc_info.value.details["cause"] == "OSError: disk full"
        assert isinstance(exc_info.value.__cause__, OSError)

        # Domain errors pass through unchanged
        with pytest.raises(NotFoundError):
            with persistence_guard("loan read"):
                raise NotFoundError("loan", "L1")
