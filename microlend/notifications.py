"""
Notification Module

Borrower notifications (loan approval, payment confirmation, due-date
reminders and overdue notices), sent as SMS through a pluggable channel
provider. Every attempt is stored in the sms_logs table with its delivery
status.

Notifications are fire-and-forget for callers: a failed send is logged and
recorded, never raised.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
from abc import ABC, abstractmethod
import uuid
import requests

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action
from .money import round_money


class SMSType(Enum):
    """Kinds of borrower SMS"""
    PAYMENT_CONFIRMATION = "payment_confirmation"
    LOAN_APPROVAL = "loan_approval"
    OVERDUE_NOTICE = "overdue_notice"
    REMINDER = "reminder"


class SMSStatus(Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SMSLog(StorageRecord):
    """One SMS delivery attempt"""
    owner_id: str
    borrower_id: str
    mobile: str
    message: str
    sms_type: SMSType
    status: SMSStatus
    provider_response: Optional[str] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SMSLog':
        data = dict(data)
        data['sms_type'] = SMSType(data['sms_type'])
        data['status'] = SMSStatus(data['status'])
        if data.get('sent_at'):
            data['sent_at'] = datetime.fromisoformat(data['sent_at'])
        return super().from_dict(data)


class SMSChannelProvider(ABC):
    """Abstract base class for SMS gateways"""

    @abstractmethod
    def send(self, mobile: str, message: str) -> bool:
        """Send an SMS. Returns True if the gateway accepted it."""
        pass


class LogSMSProvider(SMSChannelProvider):
    """Logs messages instead of sending them; used when no gateway is configured"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("microlend.sms")

    def send(self, mobile: str, message: str) -> bool:
        self.logger.info(f"SMS to {mobile}: {message}")
        return True


class WebhookSMSProvider(SMSChannelProvider):
    """Posts messages to an HTTP SMS gateway"""

    def __init__(self, url: str, api_key: str = "", timeout: float = 5.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, mobile: str, message: str) -> bool:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = requests.post(
            self.url,
            json={"to": mobile, "message": message},
            timeout=self.timeout,
            headers=headers
        )
        return 200 <= response.status_code < 300


def create_sms_provider(app_config) -> SMSChannelProvider:
    """Gateway provider when a URL is configured, log provider otherwise"""
    if app_config.sms_gateway_url:
        return WebhookSMSProvider(
            url=app_config.sms_gateway_url,
            api_key=app_config.sms_gateway_api_key,
            timeout=app_config.sms_timeout
        )
    return LogSMSProvider()


class Notifier(ABC):
    """Borrower notifications consumed by the ledger"""

    @abstractmethod
    def notify_payment_confirmed(self, borrower, amount: Decimal, new_balance: Decimal) -> None:
        pass

    @abstractmethod
    def notify_loan_approved(self, borrower, total_amount: Decimal, installment_count: int) -> None:
        pass

    @abstractmethod
    def notify_payment_due(self, borrower, amount: Decimal, due_date: date) -> None:
        pass

    @abstractmethod
    def notify_overdue(self, borrower, days_overdue: int, amount: Decimal, late_fee: Decimal) -> None:
        pass


def payment_confirmation_message(name: str, amount: Decimal, balance_due: Decimal) -> str:
    return (
        f"Dear {name}, we received your payment of Rs.{round_money(amount)}. "
        f"Balance due: Rs.{round_money(balance_due)}. Thank you for your payment!"
    )


def loan_approval_message(name: str, total_amount: Decimal, installment_count: int) -> str:
    return (
        f"Congratulations {name}! Your loan of Rs.{round_money(total_amount)} has been approved. "
        f"Total installments: {installment_count}. Thank you for choosing us!"
    )


def payment_reminder_message(name: str, amount: Decimal, due_date: date) -> str:
    return (
        f"Dear {name}, your loan installment of Rs.{round_money(amount)} is due on {due_date.isoformat()}. "
        "Please pay on time to avoid late fees. Thank you!"
    )


def overdue_notice_message(name: str, days_overdue: int, amount: Decimal, late_fee: Decimal) -> str:
    return (
        f"Dear {name}, your payment is {days_overdue} days overdue. Amount: Rs.{round_money(amount)}. "
        f"Late fee: Rs.{round_money(late_fee)}. Please pay immediately. Contact us for assistance."
    )


class SMSNotifier(Notifier):
    """Sends borrower SMS and records each attempt"""

    def __init__(self, storage: StorageInterface, provider: Optional[SMSChannelProvider] = None,
                 enabled: bool = True):
        self.storage = storage
        self.provider = provider or LogSMSProvider()
        self.enabled = enabled
        self.table_name = "sms_logs"
        self.logger = get_logger("microlend.notifications")

    def notify_payment_confirmed(self, borrower, amount: Decimal, new_balance: Decimal) -> None:
        message = payment_confirmation_message(borrower.name, amount, new_balance)
        self._send(borrower, message, SMSType.PAYMENT_CONFIRMATION)

    def notify_loan_approved(self, borrower, total_amount: Decimal, installment_count: int) -> None:
        message = loan_approval_message(borrower.name, total_amount, installment_count)
        self._send(borrower, message, SMSType.LOAN_APPROVAL)

    def notify_payment_due(self, borrower, amount: Decimal, due_date: date) -> None:
        self._send(borrower, payment_reminder_message(borrower.name, amount, due_date), SMSType.REMINDER)

    def notify_overdue(self, borrower, days_overdue: int, amount: Decimal, late_fee: Decimal) -> None:
        message = overdue_notice_message(borrower.name, days_overdue, amount, late_fee)
        self._send(borrower, message, SMSType.OVERDUE_NOTICE)

    def get_logs(self, borrower_id: str) -> List[SMSLog]:
        return [SMSLog.from_dict(d) for d in self.storage.find(self.table_name, {"borrower_id": borrower_id})]

    def _send(self, borrower, message: str, sms_type: SMSType) -> SMSLog:
        now = datetime.now(timezone.utc)
        log = SMSLog(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=borrower.owner_id,
            borrower_id=borrower.id,
            mobile=borrower.mobile,
            message=message,
            sms_type=sms_type,
            status=SMSStatus.SKIPPED
        )

        if not self.enabled or not borrower.sms_enabled:
            log.provider_response = "sms disabled"
        else:
            try:
                accepted = self.provider.send(borrower.mobile, message)
            except Exception as e:
                accepted = False
                log.provider_response = str(e)
                log_action(
                    self.logger, "error", f"SMS send failed: {e}",
                    user_id=borrower.owner_id, action="send_sms",
                    resource=f"borrower:{borrower.id}", extra={"sms_type": sms_type.value}
                )
            if accepted:
                log.status = SMSStatus.SENT
                log.sent_at = datetime.now(timezone.utc)
            else:
                log.status = SMSStatus.FAILED
                log.provider_response = log.provider_response or "rejected by gateway"

        self.storage.save(self.table_name, log.id, log.to_dict())
        return log
