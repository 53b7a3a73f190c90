"""
Tests for configuration loading and structured logging
"""

import json
import logging
import pytest

from loan_desk import config as config_module
from loan_desk.config import LoanDeskConfig, get_config, reload_config
from loan_desk.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Environment-driven configuration"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOANDESK_DATABASE_URL", raising=False)
        config = LoanDeskConfig(_env_file=None)

        assert config.default_interest_rate == "0.0375"
        assert config.default_penalty_amount == "500"
        assert config.default_penalty_reason == "EMI Overdue"
        assert config.payable_statuses == ["Verified", "Approved", "Active", "Overdue"]
        assert config.enforce_token_balance is True
        assert config.notification_webhook_url == ""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOANDESK_DATABASE_URL", "memory://")
        monkeypatch.setenv("LOANDESK_MAX_WRITE_RETRIES", "9")
        monkeypatch.setenv("LOANDESK_REQUIRE_REJECTION_REASON", "true")
        monkeypatch.setenv("LOANDESK_PAYABLE_STATUSES", '["Approved", "Active"]')

        config = LoanDeskConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.max_write_retries == 9
        assert config.require_rejection_reason is True
        assert config.payable_statuses == ["Approved", "Active"]

    def test_reload_replaces_global_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("LOANDESK_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestJSONFormatter:
    """Structured log lines"""

    def make_record(self, **extra):
        record = logging.LogRecord(
            "loan_desk.service", logging.INFO, __file__, 1, "Loan LN1 created", None, None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_base_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert entry["level"] == "INFO"
        assert entry["module"] == "loan_desk.service"
        assert entry["message"] == "Loan LN1 created"
        assert "timestamp" in entry
        assert "actor_id" not in entry

    def test_structured_fields(self):
        record = self.make_record(actor_id="shop-1", actor_role="shopkeeper",
                                  action="create_loan", loan_id="LN1")
        entry = json.loads(JSONFormatter().format(record))

        assert entry["actor_id"] == "shop-1"
        assert entry["actor_role"] == "shopkeeper"
        assert entry["action"] == "create_loan"
        assert entry["loan_id"] == "LN1"


class TestLogAction:
    """log_action attaches structured fields to the record"""

    def test_fields_reach_the_record(self, caplog):
        logger = get_logger("loan_desk.tests")
        with caplog.at_level(logging.INFO, logger="loan_desk.tests"):
            log_action(logger, "info", "Loan LN1 verify: Pending -> Verified",
                       actor_id="ver-1", actor_role="verifier", action="update_status", loan_id="LN1")

        record = caplog.records[-1]
        assert record.actor_id == "ver-1"
        assert record.loan_id == "LN1"
        assert not hasattr(record, "correlation_id")

    def test_warning_level(self, caplog):
        logger = get_logger("loan_desk.tests")
        with caplog.at_level(logging.INFO, logger="loan_desk.tests"):
            log_action(logger, "warning", "Version conflict")
        assert caplog.records[-1].levelno == logging.WARNING


class TestSetupLogging:
    """Handler installation"""

    @pytest.fixture
    def isolated_logger(self):
        name = "loan_desk_setup_test"
        yield name
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.propagate = True

    def test_json_handler(self, isolated_logger):
        logger = setup_logging("DEBUG", "json", logger_name=isolated_logger)

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate

    def test_repeated_setup_does_not_duplicate_handlers(self, isolated_logger):
        setup_logging("INFO", "text", logger_name=isolated_logger)
        logger = setup_logging("WARNING", "text", logger_name=isolated_logger)

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING
