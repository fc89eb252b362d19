"""
Loan Ledger Module

Loan, Installment and Collection records, the status state machines that
govern them, and the repository that persists the loan aggregate.

State transitions are plain functions over current figures so they can be
tested without storage:

    Installment: pending -> partial -> paid
                 pending/partial -> overdue   (periodic overdue sweep)
                 overdue -> partial/paid      (payment)

    Loan:        pending -> active            (approval)
                 * -> completed               (paid >= total)
                 active -> defaulted          (overdue installments >= threshold)
                 pending/active -> cancelled  (no payments recorded)
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum

from .amortization import InstallmentFrequency, InstallmentStatus, ScheduleEntry
from .exceptions import InvalidStateError
from .money import ZERO, money_equal, round_money
from .storage import StorageInterface, StorageRecord

DEFAULT_OVERDUE_THRESHOLD = 3


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Created, awaiting approval
    ACTIVE = "active"          # Approved and disbursed
    COMPLETED = "completed"    # Fully paid
    DEFAULTED = "defaulted"    # Too many overdue installments
    CANCELLED = "cancelled"    # Cancelled before any payment


class PaymentMode(Enum):
    """How a collection was paid"""
    CASH = "cash"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    OTHER = "other"


PAYABLE_INSTALLMENT_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIAL,
    InstallmentStatus.OVERDUE,
)
CANCELLABLE_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.ACTIVE)


def _to_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _to_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Loan(StorageRecord):
    """Loan terms, running totals and lifecycle status"""
    owner_id: str
    borrower_id: str
    loan_number: str
    principal_amount: Decimal
    interest_rate: Decimal               # Annual flat rate in percent
    installment_count: int
    frequency: InstallmentFrequency
    start_date: date
    end_date: date
    interest_amount: Decimal
    total_amount: Decimal
    installment_amount: Decimal
    disbursement_date: Optional[date] = None
    paid_amount: Decimal = ZERO
    pending_amount: Optional[Decimal] = None
    paid_installments: int = 0
    status: LoanStatus = LoanStatus.PENDING
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if self.pending_amount is None:
            self.pending_amount = self.total_amount - self.paid_amount

    @property
    def is_closed(self) -> bool:
        return self.status in (LoanStatus.COMPLETED, LoanStatus.CANCELLED)

    def balances_consistent(self) -> bool:
        """paid + pending == total to the cent, and pending is never negative"""
        return (
            self.pending_amount >= ZERO
            and money_equal(self.paid_amount + self.pending_amount, self.total_amount)
        )

    def apply_payment(self, amount: Decimal, paid_installments: int) -> None:
        """Add a payment to the running totals"""
        self.paid_amount = round_money(self.paid_amount + amount)
        self.pending_amount = max(ZERO, round_money(self.total_amount - self.paid_amount))
        self.paid_installments = paid_installments
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for key in ('principal_amount', 'interest_rate', 'interest_amount', 'total_amount',
                    'installment_amount', 'paid_amount', 'pending_amount'):
            data[key] = Decimal(data[key])
        for key in ('start_date', 'end_date', 'disbursement_date'):
            data[key] = _to_date(data.get(key))
        data['completed_at'] = _to_datetime(data.get('completed_at'))
        data['frequency'] = InstallmentFrequency(data['frequency'])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    due_amount: Decimal
    principal_part: Decimal
    interest_part: Decimal
    paid_amount: Decimal = ZERO
    paid_date: Optional[date] = None
    days_overdue: int = 0
    late_fee: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING

    @staticmethod
    def record_id(loan_id: str, installment_number: int) -> str:
        return f"{loan_id}_{installment_number}"

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_INSTALLMENT_STATUSES

    @property
    def outstanding_amount(self) -> Decimal:
        return max(ZERO, self.due_amount - self.paid_amount)

    def apply_payment(self, amount: Decimal, payment_date: date, days_late: int, late_fee: Decimal) -> None:
        """Credit a payment and refresh lateness figures to payment time"""
        self.paid_amount = round_money(self.paid_amount + amount)
        self.paid_date = payment_date
        self.status = installment_status_after_payment(self.paid_amount, self.due_amount)
        self.days_overdue = days_late
        self.late_fee = late_fee
        self.updated_at = datetime.now(timezone.utc)

    @classmethod
    def from_schedule_entry(cls, loan_id: str, entry: ScheduleEntry, now: datetime) -> 'Installment':
        return cls(
            id=cls.record_id(loan_id, entry.installment_number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            due_amount=entry.due_amount,
            principal_part=entry.principal_part,
            interest_part=entry.interest_part,
            status=entry.status
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        data = dict(data)
        for key in ('due_amount', 'principal_part', 'interest_part', 'paid_amount', 'late_fee'):
            data[key] = Decimal(data[key])
        data['due_date'] = _to_date(data['due_date'])
        data['paid_date'] = _to_date(data.get('paid_date'))
        data['status'] = InstallmentStatus(data['status'])
        return super().from_dict(data)


@dataclass
class Collection(StorageRecord):
    """Immutable record of one cash event against a loan"""
    owner_id: str
    borrower_id: str
    loan_id: str
    receipt_number: str
    amount: Decimal
    principal_part: Decimal
    interest_part: Decimal
    late_fee: Decimal
    payment_date: date
    payment_mode: PaymentMode
    installment_number: int
    days_late: int = 0
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    collected_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collection':
        data = dict(data)
        for key in ('amount', 'principal_part', 'interest_part', 'late_fee'):
            data[key] = Decimal(data[key])
        data['payment_date'] = _to_date(data['payment_date'])
        data['payment_mode'] = PaymentMode(data['payment_mode'])
        return super().from_dict(data)


def installment_status_after_payment(paid_amount: Decimal, due_amount: Decimal) -> InstallmentStatus:
    """Status of an installment once a payment has been credited"""
    if paid_amount >= due_amount:
        return InstallmentStatus.PAID
    return InstallmentStatus.PARTIAL


def should_mark_overdue(installment: Installment, as_of: date) -> bool:
    """An unpaid installment whose due date has passed"""
    return (
        installment.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL)
        and installment.due_date < as_of
    )


def evaluate_loan_status(
    current: LoanStatus,
    paid_amount: Decimal,
    total_amount: Decimal,
    overdue_count: int,
    threshold: int = DEFAULT_OVERDUE_THRESHOLD
) -> LoanStatus:
    """
    Next loan status from aggregate figures

    Completion is checked first and wins over default. Only an active loan
    can default.
    """
    if current == LoanStatus.CANCELLED:
        return current
    if paid_amount >= total_amount:
        return LoanStatus.COMPLETED
    if current == LoanStatus.ACTIVE and overdue_count >= threshold:
        return LoanStatus.DEFAULTED
    return current


def ensure_cancellable(loan: Loan, collection_count: int) -> None:
    """
    Raises:
        InvalidStateError: Unless the loan is pending/active with nothing paid
    """
    if loan.status not in CANCELLABLE_LOAN_STATUSES:
        raise InvalidStateError(
            f"Cannot cancel loan {loan.loan_number}: status is {loan.status.value}, "
            f"only pending or active loans can be cancelled"
        )
    if loan.paid_amount > ZERO or collection_count > 0:
        raise InvalidStateError(
            f"Cannot cancel loan {loan.loan_number}: payments already recorded "
            f"(paid {loan.paid_amount})"
        )


class LoanLedger:
    """
    Persists the loan aggregate: loans, their installment schedules and
    collections
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.collections_table = "collections"

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def save_collection(self, collection: Collection) -> None:
        """Collections are append only"""
        if self.storage.exists(self.collections_table, collection.id):
            raise InvalidStateError(f"Collection {collection.id} already recorded")
        self.storage.save(self.collections_table, collection.id, collection.to_dict())

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_owner_loans(self, owner_id: str) -> List[Loan]:
        return [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"owner_id": owner_id})]

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Schedule ordered by installment number"""
        installments = [
            Installment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def get_installment(self, loan_id: str, installment_number: int) -> Optional[Installment]:
        data = self.storage.load(self.installments_table, Installment.record_id(loan_id, installment_number))
        if data:
            return Installment.from_dict(data)
        return None

    def next_payable_installment(self, loan_id: str) -> Optional[Installment]:
        """Lowest-numbered installment that is pending, partial or overdue"""
        for installment in self.get_installments(loan_id):
            if installment.is_payable:
                return installment
        return None

    def count_installments(self, loan_id: str, status: InstallmentStatus) -> int:
        return len(self.storage.find(self.installments_table, {"loan_id": loan_id, "status": status.value}))

    def get_collections(self, loan_id: str) -> List[Collection]:
        return [
            Collection.from_dict(data)
            for data in self.storage.find(self.collections_table, {"loan_id": loan_id})
        ]

    def get_borrower_collections(self, borrower_id: str) -> List[Collection]:
        return [
            Collection.from_dict(data)
            for data in self.storage.find(self.collections_table, {"borrower_id": borrower_id})
        ]

    def count_collections(self, loan_id: str) -> int:
        return len(self.storage.find(self.collections_table, {"loan_id": loan_id}))

    def find_collection_by_receipt(self, receipt_number: str) -> Optional[Collection]:
        found = self.storage.find(self.collections_table, {"receipt_number": receipt_number})
        if found:
            return Collection.from_dict(found[0])
        return None

    def loan_number_exists(self, loan_number: str) -> bool:
        return bool(self.storage.find(self.loans_table, {"loan_number": loan_number}))

    def receipt_number_exists(self, receipt_number: str) -> bool:
        return bool(self.storage.find(self.collections_table, {"receipt_number": receipt_number}))
