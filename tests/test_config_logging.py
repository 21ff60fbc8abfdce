"""
Tests for configuration and structured logging
"""

import json
import logging
from datetime import date
from decimal import Decimal

import pytest

from lending_core.audit import AuditTrail
from lending_core.business_days import HolidayCalendar
from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.exceptions import LoanValidationError
from lending_core.loans import LoanManager
from lending_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from lending_core.options import LoanApplication
from lending_core.storage import InMemoryStorage, SQLiteStorage, create_storage


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self):
        config = LendingConfig()
        assert config.holiday_jurisdiction == "BR"
        assert config.rate_solver_iterations == 40
        assert config.elevated_reversal_types == ["advance"]
        assert config.score_base == 350

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LENDING_SCORE_BASE", "400")
        monkeypatch.setenv("LENDING_ELEVATED_REVERSAL_TYPES", '["advance", "discount"]')
        config = LendingConfig()
        assert config.score_base == 400
        assert config.elevated_reversal_types == ["advance", "discount"]

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("LENDING_LOG_LEVEL", "DEBUG")
        try:
            assert reload_config().log_level == "DEBUG"
            assert get_config().log_level == "DEBUG"
        finally:
            monkeypatch.delenv("LENDING_LOG_LEVEL")
            reload_config()


class TestLogging:
    """Test JSON log output"""

    def test_json_formatter(self):
        logger = get_logger("lending.test")
        record = logger.makeRecord("lending.test", logging.INFO, __name__, 0, "Payment applied", (), None)
        record.user_id = "u1"
        record.extra = {"amount": "220.00"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Payment applied"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "u1"
        assert entry["extra"] == {"amount": "220.00"}
        assert "action" not in entry

    def test_setup_logging_to_file(self, tmp_path):
        log_file = tmp_path / "lending.log"
        config = LendingConfig(log_file=str(log_file), log_level="INFO")
        logger = setup_logging(logger_name="lending.filetest", config=config)

        log_action(logger, "info", "Loan created", user_id="u1", action="create_loan",
                   resource="loan:l1", extra={"installments": 5})
        log_action(logger, "debug", "not written")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["action"] == "create_loan"
        assert entry["resource"] == "loan:l1"
        assert entry["extra"] == {"installments": 5}

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


class TestConfiguredDefaults:
    """Test that environment overrides reach the objects built from config"""

    def test_application_defaults_follow_environment(self, monkeypatch):
        monkeypatch.setenv("LENDING_DEFAULT_CURRENCY", "USD")
        monkeypatch.setenv("LENDING_ALLOW_SUNDAY", "true")
        monkeypatch.setenv("LENDING_ALLOW_SATURDAY", "false")
        try:
            reload_config()
            application = LoanApplication(borrower_id="cust_1", principal=Decimal("1000"),
                                          rate=Decimal("0.02"), installment_count=5,
                                          contract_date=date(2026, 2, 2))
            assert application.currency == "USD"
            rules = application.collection_rules
            assert rules.allow_sunday
            assert not rules.allow_saturday
        finally:
            for name in ("LENDING_DEFAULT_CURRENCY", "LENDING_ALLOW_SUNDAY", "LENDING_ALLOW_SATURDAY"):
                monkeypatch.delenv(name)
            reload_config()

    def test_explicit_values_win_over_config(self, monkeypatch):
        monkeypatch.setenv("LENDING_DEFAULT_CURRENCY", "USD")
        try:
            reload_config()
            application = LoanApplication(borrower_id="cust_1", principal=Decimal("1000"),
                                          rate=Decimal("0.02"), installment_count=5,
                                          contract_date=date(2026, 2, 2), currency="EUR")
            assert application.currency == "EUR"
        finally:
            monkeypatch.delenv("LENDING_DEFAULT_CURRENCY")
            reload_config()

    def test_storage_from_configured_url(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LENDING_DATABASE_URL", "memory://")
        try:
            reload_config()
            assert isinstance(create_storage(), InMemoryStorage)

            monkeypatch.setenv("LENDING_DATABASE_URL", f"sqlite:///{tmp_path / 'loans.db'}")
            reload_config()
            storage = create_storage()
            assert isinstance(storage, SQLiteStorage)
            storage.save("loans", "loan_1", {"id": "loan_1"})
            assert (tmp_path / "loans.db").exists()
            storage.close()
        finally:
            monkeypatch.delenv("LENDING_DATABASE_URL")
            reload_config()

    def test_adjustment_window_from_config(self, monkeypatch):
        """Weekend plus a Monday holiday needs three days of adjustment"""
        monkeypatch.setenv("LENDING_MAX_ADJUSTMENT_DAYS", "2")
        try:
            reload_config()
            holidays = HolidayCalendar([date(2026, 3, 9)])
            storage = InMemoryStorage()
            loans = LoanManager(storage, AuditTrail(storage), holidays=holidays)
            with pytest.raises(LoanValidationError, match="No collectable day within 2 days"):
                loans.create_loan(LoanApplication(borrower_id="cust_1", principal=Decimal("100"),
                                                  rate=Decimal("0"), installment_count=1,
                                                  contract_date=date(2026, 3, 1),
                                                  first_due_date=date(2026, 3, 7),
                                                  allow_saturday=False, allow_sunday=False))
        finally:
            monkeypatch.delenv("LENDING_MAX_ADJUSTMENT_DAYS")
            reload_config()
