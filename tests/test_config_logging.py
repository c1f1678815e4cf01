"""
Tests for configuration and structured logging
"""

import json
import logging

from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        """Test default configuration values"""
        config = LendingConfig()
        assert config.database_url == "memory://"
        assert config.transaction_max_attempts == 5
        assert config.lot_page_size == 50
        assert config.initial_cash == "0"
        assert config.enable_audit_movements is True

    def test_environment_override(self, monkeypatch):
        """Test environment variables override the defaults"""
        monkeypatch.setenv("LENDING_LOT_PAGE_SIZE", "10")
        monkeypatch.setenv("LENDING_INITIAL_CASH", "2500.50")
        try:
            config = reload_config()
            assert config is get_config()
            assert config.lot_page_size == 10
            assert config.initial_cash == "2500.50"
        finally:
            monkeypatch.delenv("LENDING_LOT_PAGE_SIZE")
            monkeypatch.delenv("LENDING_INITIAL_CASH")
            reload_config()

        assert get_config().lot_page_size == 50


class TestJSONFormatter:
    """Test structured log lines"""

    def test_format_includes_context(self):
        """Test JSON records carry the action context"""
        record = logging.LogRecord("lending.payments", logging.INFO, __file__, 1,
                                   "Payment recorded", (), None)
        record.user_id = "collector"
        record.action = "payment_create"
        record.extra = {"amount": "130000.00"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["module"] == "lending.payments"
        assert entry["message"] == "Payment recorded"
        assert entry["user_id"] == "collector"
        assert entry["action"] == "payment_create"
        assert entry["extra"] == {"amount": "130000.00"}
        assert "resource" not in entry
        assert "timestamp" in entry


class TestLogAction:
    """Test log_action against a configured file handler"""

    def setup_method(self):
        self.logger_name = "lending.test_log_action"

    def teardown_method(self):
        logger = logging.getLogger(self.logger_name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    def test_writes_json_line(self, tmp_path):
        """Test one JSON line is written per record"""
        log_file = tmp_path / "lending.log"
        logger = setup_logging("INFO", logger_name=self.logger_name, log_file=str(log_file))

        log_action(logger, "info", "Loan created", user_id="lender", action="loan_create",
                   resource="loan:l1", correlation_id="req-1", extra={"principal": "1000.00"})

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["message"] == "Loan created"
        assert entry["resource"] == "loan:l1"
        assert entry["correlation_id"] == "req-1"
        assert entry["extra"]["principal"] == "1000.00"

    def test_disabled_level_writes_nothing(self, tmp_path):
        """Test records below the configured level are dropped"""
        log_file = tmp_path / "lending.log"
        logger = setup_logging("WARNING", logger_name=self.logger_name, log_file=str(log_file))

        log_action(logger, "info", "Ignored", action="noop")
        log_action(logger, "error", "Kept", action="failure")

        lines = log_file.read_text().splitlines()
        assert [json.loads(line)["message"] for line in lines] == ["Kept"]

    def test_text_format(self, tmp_path):
        """Test the plain text log format"""
        log_file = tmp_path / "lending.log"
        logger = setup_logging("INFO", logger_name=self.logger_name, log_format="text",
                               log_file=str(log_file))

        logger.info("Plain line")
        assert "Plain line" in log_file.read_text()
