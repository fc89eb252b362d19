"""
Tests for Notification Module

Tests message rendering, SMS delivery logging, opt-out handling and the
channel providers.
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import MagicMock, patch

import requests

from microlend.config import MicrolendConfig
from microlend.storage import InMemoryStorage
from microlend.borrowers import BorrowerRegistry
from microlend.notifications import (
    LogSMSProvider,
    SMSChannelProvider,
    SMSNotifier,
    SMSStatus,
    SMSType,
    WebhookSMSProvider,
    create_sms_provider,
    loan_approval_message,
    overdue_notice_message,
    payment_confirmation_message,
    payment_reminder_message
)


class MockSMSProvider(SMSChannelProvider):
    """Mock SMS provider for testing"""

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent = []

    def send(self, mobile: str, message: str) -> bool:
        self.sent.append((mobile, message))
        return self.should_succeed


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def borrower(storage):
    return BorrowerRegistry(storage).register_borrower("owner-1", "Ravi", "9876543210")


@pytest.fixture
def provider():
    return MockSMSProvider()


@pytest.fixture
def notifier(storage, provider):
    return SMSNotifier(storage, provider)


class TestMessages:
    """Test message text"""

    def test_payment_confirmation_text(self):
        assert payment_confirmation_message("Ravi", Decimal('150'), Decimal('850')) == (
            "Dear Ravi, we received your payment of Rs.150.00. "
            "Balance due: Rs.850.00. Thank you for your payment!"
        )

    def test_loan_approval_text(self):
        assert loan_approval_message("Ravi", Decimal('10333.33'), 100) == (
            "Congratulations Ravi! Your loan of Rs.10333.33 has been approved. "
            "Total installments: 100. Thank you for choosing us!"
        )

    def test_payment_reminder_text(self):
        assert payment_reminder_message("Ravi", Decimal('200'), date(2024, 1, 2)) == (
            "Dear Ravi, your loan installment of Rs.200.00 is due on 2024-01-02. "
            "Please pay on time to avoid late fees. Thank you!"
        )

    def test_overdue_notice_text(self):
        assert overdue_notice_message("Ravi", 4, Decimal('400'), Decimal('40')) == (
            "Dear Ravi, your payment is 4 days overdue. Amount: Rs.400.00. "
            "Late fee: Rs.40.00. Please pay immediately. Contact us for assistance."
        )


class TestSMSNotifier:
    """Test sending and logging"""

    def test_payment_confirmation_sent_and_logged(self, notifier, provider, borrower):
        notifier.notify_payment_confirmed(borrower, Decimal('150.00'), Decimal('850.00'))

        assert provider.sent == [("9876543210", payment_confirmation_message("Ravi", Decimal('150'), Decimal('850')))]
        logs = notifier.get_logs(borrower.id)
        assert len(logs) == 1
        assert logs[0].status == SMSStatus.SENT
        assert logs[0].sms_type == SMSType.PAYMENT_CONFIRMATION
        assert logs[0].sent_at is not None

    def test_loan_approval_logged(self, notifier, borrower):
        notifier.notify_loan_approved(borrower, Decimal('1000.00'), 10)
        assert notifier.get_logs(borrower.id)[0].sms_type == SMSType.LOAN_APPROVAL

    def test_reminder_and_overdue_notice_logged(self, notifier, provider, borrower):
        notifier.notify_payment_due(borrower, Decimal('200.00'), date(2024, 1, 2))
        notifier.notify_overdue(borrower, 2, Decimal('400.00'), Decimal('20.00'))

        logs = notifier.get_logs(borrower.id)
        assert [log.sms_type for log in logs] == [SMSType.REMINDER, SMSType.OVERDUE_NOTICE]
        assert [log.status for log in logs] == [SMSStatus.SENT, SMSStatus.SENT]
        assert provider.sent[1] == (
            "9876543210", overdue_notice_message("Ravi", 2, Decimal('400.00'), Decimal('20.00'))
        )

    def test_rejected_by_gateway(self, storage, borrower):
        notifier = SMSNotifier(storage, MockSMSProvider(should_succeed=False))
        notifier.notify_loan_approved(borrower, Decimal('1000.00'), 10)

        log = notifier.get_logs(borrower.id)[0]
        assert log.status == SMSStatus.FAILED
        assert log.provider_response == "rejected by gateway"

    def test_provider_exception_is_recorded_not_raised(self, storage, borrower):
        failing = MagicMock(spec=SMSChannelProvider)
        failing.send.side_effect = requests.ConnectionError("no route")
        notifier = SMSNotifier(storage, failing)

        notifier.notify_payment_confirmed(borrower, Decimal('10.00'), Decimal('90.00'))

        log = notifier.get_logs(borrower.id)[0]
        assert log.status == SMSStatus.FAILED
        assert "no route" in log.provider_response

    def test_opted_out_borrower_is_skipped(self, storage, provider):
        quiet = BorrowerRegistry(storage).register_borrower("owner-1", "Meena", "9123456780", sms_enabled=False)
        notifier = SMSNotifier(storage, provider)

        notifier.notify_payment_confirmed(quiet, Decimal('10.00'), Decimal('90.00'))

        assert provider.sent == []
        assert notifier.get_logs(quiet.id)[0].status == SMSStatus.SKIPPED

    def test_disabled_notifier_sends_nothing(self, storage, provider, borrower):
        notifier = SMSNotifier(storage, provider, enabled=False)
        notifier.notify_loan_approved(borrower, Decimal('1000.00'), 10)
        assert provider.sent == []


class TestProviders:
    """Test channel providers"""

    def test_log_provider(self):
        assert LogSMSProvider().send("9876543210", "hello") is True

    def test_webhook_provider_posts_json(self):
        provider = WebhookSMSProvider("https://sms.example.com/send", api_key="secret", timeout=3.0)

        with patch("microlend.notifications.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=202)
            assert provider.send("9876543210", "hello") is True

        mock_post.assert_called_once_with(
            "https://sms.example.com/send",
            json={"to": "9876543210", "message": "hello"},
            timeout=3.0,
            headers={"Content-Type": "application/json", "Authorization": "Bearer secret"}
        )

    def test_webhook_provider_error_status(self):
        provider = WebhookSMSProvider("https://sms.example.com/send")

        with patch("microlend.notifications.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=500)
            assert provider.send("9876543210", "hello") is False

    def test_provider_from_config(self):
        assert isinstance(create_sms_provider(MicrolendConfig(sms_gateway_url="")), LogSMSProvider)

        webhook = create_sms_provider(MicrolendConfig(sms_gateway_url="https://sms.example.com", sms_timeout=2.5))
        assert isinstance(webhook, WebhookSMSProvider)
        assert webhook.timeout == 2.5
