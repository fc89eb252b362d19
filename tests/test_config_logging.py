"""
Tests for configuration, structured logging and money helpers
"""

import io
import json
import logging
import pytest
from decimal import Decimal

from microlend import config as config_module
from microlend.config import MicrolendConfig, get_config, reload_config
from microlend.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from microlend.money import decimal_from_string, format_amount, money_equal, round_money, to_decimal


class TestConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        cfg = MicrolendConfig()
        assert cfg.default_late_fee_per_day == "50.00"
        assert cfg.default_overdue_threshold == 3
        assert cfg.loan_number_prefix == "LOAN"
        assert cfg.receipt_number_prefix == "REC"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MICROLEND_DEFAULT_LATE_FEE_PER_DAY", "20.00")
        monkeypatch.setenv("MICROLEND_SMS_ENABLED", "false")

        try:
            cfg = reload_config()
            assert cfg.default_late_fee_per_day == "20.00"
            assert cfg.sms_enabled is False
            assert get_config() is cfg
        finally:
            monkeypatch.delenv("MICROLEND_DEFAULT_LATE_FEE_PER_DAY")
            monkeypatch.delenv("MICROLEND_SMS_ENABLED")
            reload_config()

        assert config_module.config.default_late_fee_per_day == "50.00"


class TestLogging:
    """Test structured JSON logging"""

    def test_json_formatter_includes_action_fields(self):
        stream = io.StringIO()
        logger = logging.getLogger("microlend.test_json")
        logger.handlers = []
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False

        log_action(logger, "info", "Payment recorded", user_id="owner-1", action="record_payment",
                   resource="loan:L1", extra={"amount": "100.00"})

        entry = json.loads(stream.getvalue())
        assert entry["message"] == "Payment recorded"
        assert entry["level"] == "INFO"
        assert entry["action"] == "record_payment"
        assert entry["resource"] == "loan:L1"
        assert entry["user_id"] == "owner-1"
        assert entry["extra"] == {"amount": "100.00"}
        assert "correlation_id" not in entry

    def test_log_action_respects_level(self):
        logger = logging.getLogger("microlend.test_level")
        logger.setLevel(logging.WARNING)
        handler = logging.Handler()
        handler.emit = lambda record: pytest.fail("filtered record was emitted")
        logger.addHandler(handler)

        log_action(logger, "info", "ignored")

    def test_setup_logging_text_format(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging(level="DEBUG", logger_name="microlend.test_text",
                               log_format="text", log_file=str(log_file))

        logger.debug("sweep finished")
        for handler in logger.handlers:
            handler.flush()

        assert "sweep finished" in log_file.read_text()
        assert len(logger.handlers) == 1

    def test_get_logger_namespacing(self):
        assert get_logger("microlend.loans").name == "microlend.loans"


class TestMoney:
    """Test Decimal helpers"""

    def test_round_half_up(self):
        assert round_money(Decimal('0.125')) == Decimal('0.13')
        assert round_money(Decimal('2.675')) == Decimal('2.68')
        assert round_money(7) == Decimal('7.00')

    def test_floats_rejected(self):
        with pytest.raises(ValueError):
            to_decimal(0.1)
        with pytest.raises(ValueError):
            to_decimal(True)

    def test_parse_strings(self):
        assert decimal_from_string("1,250.50") == Decimal('1250.50')
        assert decimal_from_string("Rs. 100") == Decimal('100')
        assert decimal_from_string("12,5") == Decimal('12.5')

    @pytest.mark.parametrize("value", ["", "abc", "NaN"])
    def test_unparseable_strings(self, value):
        with pytest.raises(ValueError):
            decimal_from_string(value)

    def test_format_amount(self):
        assert format_amount(Decimal('1250')) == "Rs.1,250.00"

    def test_money_equal_within_a_cent(self):
        assert money_equal(Decimal('10.00'), Decimal('10.01'))
        assert not money_equal(Decimal('10.00'), Decimal('10.02'))
