"""
Tests for configuration, logging, currency helpers and error types
"""

import json
import logging
import sys
import pytest
from decimal import Decimal

from loan_ledger.config import LedgerConfig, get_config, reload_config
from loan_ledger.currency import Currency, get_currency, round_amount, to_decimal
from loan_ledger.errors import LedgerError, NotFoundError, ValidationError
from loan_ledger.ledger import LoanLedger
from loan_ledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Environment driven configuration"""

    def test_defaults(self):
        config = LedgerConfig()
        assert config.currency == "BRL"
        assert config.sweep_hour == 0
        assert config.sweep_minute == 1
        assert config.sweep_before_reads is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DATABASE_URL", "memory://")
        monkeypatch.setenv("LEDGER_SWEEP_HOUR", "3")
        monkeypatch.setenv("LEDGER_CURRENCY", "usd")

        config = LedgerConfig()

        assert config.database_url == "memory://"
        assert config.sweep_hour == 3
        ledger = LoanLedger(config=config)
        assert ledger.currency == Currency.USD

    def test_reload_replaces_global(self):
        config = reload_config()
        assert get_config() is config

    def test_unknown_currency(self):
        with pytest.raises(ValidationError):
            LoanLedger(config=LedgerConfig(database_url="memory://", currency="XYZ"))


class TestCurrency:
    """Decimal helpers"""

    def test_round_half_up(self):
        assert round_amount(Decimal("2.345")) == Decimal("2.35")
        assert round_amount("10", Currency.JPY) == Decimal("10")

    def test_to_decimal(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(" 12.50 ") == Decimal("12.50")
        for bad in [None, True, "abc", "NaN", "Infinity"]:
            with pytest.raises(ValidationError):
                to_decimal(bad)

    def test_get_currency(self):
        assert get_currency("eur") == Currency.EUR


class TestErrors:
    """Error hierarchy"""

    def test_not_found(self):
        error = NotFoundError("loan", "L1")
        assert isinstance(error, LedgerError)
        assert str(error).startswith("Loan L1 not found")
        assert error.to_dict()["kind"] == "not_found"
        assert error.to_dict()["details"] == {"entity_type": "loan", "entity_id": "L1"}

    def test_without_details(self):
        assert ValidationError("bad").to_dict() == {"kind": "validation_error", "message": "bad"}


class TestLogging:
    """Structured logging"""

    @pytest.fixture
    def ledger_logger(self):
        logger = logging.getLogger("loan_ledger")
        yield logger
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_get_logger_namespacing(self):
        assert get_logger("sweeper").name == "loan_ledger.sweeper"
        assert get_logger("loan_ledger.api").name == "loan_ledger.api"

    def test_json_output(self, ledger_logger, tmp_path):
        log_file = tmp_path / "ledger.log"
        setup_logging("INFO", log_format="json", log_file=str(log_file))

        log_action(get_logger("loans"), "info", "Loan L1 created",
                   action="create_loan", resource="loan:L1", extra={"installments": 4})
        for handler in ledger_logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "Loan L1 created"
        assert entry["action"] == "create_loan"
        assert entry["resource"] == "loan:L1"
        assert entry["extra"] == {"installments": 4}
        assert entry["level"] == "INFO"

    def test_level_filtering(self, ledger_logger, tmp_path):
        log_file = tmp_path / "ledger.log"
        setup_logging("WARNING", log_file=str(log_file))

        log_action(get_logger("loans"), "info", "hidden")
        for handler in ledger_logger.handlers:
            handler.flush()

        assert log_file.read_text() == ""

    def test_exception_is_formatted(self):
        formatter = JSONFormatter()
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.getLogger("loan_ledger.test").makeRecord(
                "loan_ledger.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(formatter.format(record))
        assert "ValueError: boom" in entry["exception"]
