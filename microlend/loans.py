"""
Loan Lifecycle Module

Loan origination, approval, cancellation and the periodic overdue sweep.
A loan and its full installment schedule are always written together in
one atomic unit; every mutation of an existing loan holds that loan's
record lock.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import uuid

from .allocation import calculate_days_late, calculate_late_fee
from .amortization import (
    AmortizationPreview, InstallmentFrequency, InstallmentStatus,
    preview_amortization as build_preview
)
from .audit import AuditTrail, AuditEventType
from .borrowers import Borrower, BorrowerRegistry
from .config import get_config
from .exceptions import InvalidParametersError, InvalidStateError, NotFoundError
from .identifiers import generate_loan_number, generate_unique
from .ledger import (
    Installment, Loan, LoanLedger, LoanStatus,
    ensure_cancellable, evaluate_loan_status, should_mark_overdue
)
from .logging_config import get_logger, log_action
from .money import Numeric, ZERO
from .notifications import Notifier
from .storage import StorageInterface

# Installments a borrower is expected to pay next; overdue ones are chased separately
NEXT_DUE_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL)
# Disbursed loans that still expect collections
COLLECTIBLE_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DEFAULTED)


@dataclass
class LoanSummary:
    """Loan with its schedule and installment counts by status"""
    loan: Loan
    installments: List[Installment] = field(default_factory=list)
    paid_count: int = 0
    partial_count: int = 0
    overdue_count: int = 0
    pending_count: int = 0
    next_due: Optional[Installment] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_dict(),
            'installments': [i.to_dict() for i in self.installments],
            'paid_count': self.paid_count,
            'partial_count': self.partial_count,
            'overdue_count': self.overdue_count,
            'pending_count': self.pending_count,
            'next_due': self.next_due.to_dict() if self.next_due else None
        }


@dataclass
class DueInstallment:
    """An unpaid installment falling due on a given day, with its loan and borrower"""
    loan: Loan
    installment: Installment
    borrower: Optional[Borrower] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan.id,
            'loan_number': self.loan.loan_number,
            'borrower_name': self.borrower.name if self.borrower else None,
            'borrower_mobile': self.borrower.mobile if self.borrower else None,
            'installment_number': self.installment.installment_number,
            'due_amount': str(self.installment.due_amount),
            'outstanding_amount': str(self.installment.outstanding_amount),
            'installment_status': self.installment.status.value
        }


@dataclass
class OverdueLoan:
    """Overdue position of one loan"""
    loan: Loan
    overdue_count: int
    overdue_amount: Decimal    # Unpaid part of the overdue installments
    max_days_overdue: int
    borrower: Optional[Borrower] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan.id,
            'loan_number': self.loan.loan_number,
            'borrower_name': self.borrower.name if self.borrower else None,
            'borrower_mobile': self.borrower.mobile if self.borrower else None,
            'guarantor_mobile': self.borrower.guarantor_mobile if self.borrower else None,
            'overdue_count': self.overdue_count,
            'overdue_amount': str(self.overdue_amount),
            'max_days_overdue': self.max_days_overdue
        }


class LoanManager:
    """
    Manages loan lifecycle from creation through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        borrower_registry: BorrowerRegistry,
        notifier: Optional[Notifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        overdue_threshold: Optional[int] = None,
        max_identifier_attempts: Optional[int] = None
    ):
        app_config = get_config()

        self.storage = storage
        self.borrower_registry = borrower_registry
        self.notifier = notifier
        self.audit_trail = audit_trail if app_config.enable_audit_logging else None
        self.ledger = LoanLedger(storage)
        self.logger = get_logger("microlend.loans")

        self.overdue_threshold = (
            overdue_threshold if overdue_threshold is not None else app_config.default_overdue_threshold
        )
        self.max_identifier_attempts = max_identifier_attempts or app_config.identifier_max_attempts
        self.loan_number_prefix = app_config.loan_number_prefix
        self.max_installments = app_config.max_installments
        self.max_interest_rate = Decimal(app_config.max_interest_rate)

        self.loans_table = self.ledger.loans_table

    def preview_amortization(
        self,
        principal: Numeric,
        interest_rate: Numeric,
        installment_count: int,
        frequency=InstallmentFrequency.DAILY,
        start_date: Optional[date] = None
    ) -> AmortizationPreview:
        """Totals and schedule for the given terms, nothing persisted"""
        return build_preview(
            principal, interest_rate, installment_count,
            frequency=frequency,
            start_date=start_date,
            max_installments=self.max_installments,
            max_interest_rate=self.max_interest_rate
        )

    def create_loan(
        self,
        owner_id: str,
        borrower_id: str,
        principal: Numeric,
        interest_rate: Numeric,
        installment_count: int,
        frequency=InstallmentFrequency.DAILY,
        start_date: Optional[date] = None,
        disbursement_date: Optional[date] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Create a pending loan together with its installment schedule

        Args:
            owner_id: Lender creating the loan
            borrower_id: Borrower, must belong to the owner
            principal: Amount lent
            interest_rate: Annual flat rate in percent
            installment_count: Number of installments
            frequency: daily, weekly or monthly
            start_date: Due date of the first installment (defaults to today)
            disbursement_date: Optional, usually set on approval
            notes: Free text

        Returns:
            Created Loan in pending status

        Raises:
            NotFoundError: If the borrower is absent or owned by someone else
            InvalidParametersError: If the terms are invalid
            ConflictingIdentifierError: If no unique loan number could be drawn
        """
        borrower = self.borrower_registry.get_borrower(owner_id, borrower_id)
        preview = self.preview_amortization(principal, interest_rate, installment_count, frequency, start_date)

        now = datetime.now(timezone.utc)
        today = now.date()

        with self.storage.atomic():
            loan_number = generate_unique(
                lambda: generate_loan_number(today, prefix=self.loan_number_prefix),
                self.ledger.loan_number_exists,
                max_attempts=self.max_identifier_attempts,
                kind="loan number"
            )

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                borrower_id=borrower.id,
                loan_number=loan_number,
                principal_amount=preview.principal,
                interest_rate=preview.interest_rate,
                installment_count=preview.installment_count,
                frequency=preview.frequency,
                start_date=preview.start_date,
                end_date=preview.end_date,
                interest_amount=preview.interest_amount,
                total_amount=preview.total_amount,
                installment_amount=preview.installment_amount,
                disbursement_date=disbursement_date,
                notes=notes
            )
            self.ledger.save_loan(loan)

            for entry in preview.schedule:
                self.ledger.save_installment(Installment.from_schedule_entry(loan.id, entry, now))

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} created",
            user_id=owner_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"principal": str(loan.principal_amount), "total": str(loan.total_amount),
                   "installments": loan.installment_count}
        )
        self._audit(
            AuditEventType.LOAN_CREATED, loan,
            {
                "loan_number": loan.loan_number,
                "borrower_id": loan.borrower_id,
                "principal_amount": loan.principal_amount,
                "interest_rate": loan.interest_rate,
                "installment_count": loan.installment_count,
                "frequency": loan.frequency.value,
                "total_amount": loan.total_amount
            }
        )
        return loan

    def approve_loan(self, owner_id: str, loan_id: str, disbursement_date: Optional[date] = None) -> Loan:
        """
        Approve a pending loan and notify the borrower

        Raises:
            NotFoundError: If the loan is absent or not owned
            InvalidStateError: If the loan is not pending
        """
        with self.storage.record_lock(self.loans_table, loan_id):
            loan = self.get_loan(owner_id, loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(
                    f"Can only approve pending loans, loan {loan.loan_number} is {loan.status.value}"
                )

            loan.status = LoanStatus.ACTIVE
            loan.disbursement_date = disbursement_date or date.today()
            loan.updated_at = datetime.now(timezone.utc)
            with self.storage.atomic():
                self.ledger.save_loan(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} approved",
            user_id=owner_id, action="approve_loan", resource=f"loan:{loan.id}"
        )
        self._audit(
            AuditEventType.LOAN_APPROVED, loan,
            {"loan_number": loan.loan_number, "disbursement_date": loan.disbursement_date}
        )

        self._notify(loan, self.borrower_registry.find_borrower(loan.borrower_id), "notify_loan_approved",
                     lambda b: self.notifier.notify_loan_approved(b, loan.total_amount, loan.installment_count))
        return loan

    def cancel_loan(self, owner_id: str, loan_id: str) -> Loan:
        """
        Cancel a pending or active loan that has no payments

        Raises:
            NotFoundError: If the loan is absent or not owned
            InvalidStateError: If the loan is closed or has payments recorded
        """
        with self.storage.record_lock(self.loans_table, loan_id):
            loan = self.get_loan(owner_id, loan_id)
            ensure_cancellable(loan, self.ledger.count_collections(loan.id))

            loan.status = LoanStatus.CANCELLED
            loan.updated_at = datetime.now(timezone.utc)
            with self.storage.atomic():
                self.ledger.save_loan(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} cancelled",
            user_id=owner_id, action="cancel_loan", resource=f"loan:{loan.id}"
        )
        self._audit(AuditEventType.LOAN_CANCELLED, loan, {"loan_number": loan.loan_number})
        return loan

    def get_loan(self, owner_id: str, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: If absent or owned by someone else
        """
        loan = self.ledger.get_loan(loan_id)
        if not loan or loan.owner_id != owner_id:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_owner_loans(self, owner_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        loans = self.ledger.get_owner_loans(owner_id)
        if status is not None:
            loans = [loan for loan in loans if loan.status == status]
        return loans

    def get_installments(self, loan_id: str) -> List[Installment]:
        return self.ledger.get_installments(loan_id)

    def get_next_installment_due(self, loan_id: str) -> Optional[Installment]:
        """Lowest-numbered pending or partial installment; overdue ones are not "next due" """
        for installment in self.ledger.get_installments(loan_id):
            if installment.status in NEXT_DUE_STATUSES:
                return installment
        return None

    def get_upcoming_installments(self, loan_id: str, days: int = 7,
                                  as_of: Optional[date] = None) -> List[Installment]:
        """Pending installments due within ``days`` days of ``as_of`` (inclusive)"""
        if days < 0:
            raise InvalidParametersError("Look-ahead days cannot be negative")
        if as_of is None:
            as_of = date.today()
        until = as_of + timedelta(days=days)
        return [
            i for i in self.ledger.get_installments(loan_id)
            if i.status == InstallmentStatus.PENDING and as_of <= i.due_date <= until
        ]

    def get_loans_due_on(self, owner_id: str, on_date: Optional[date] = None) -> List[DueInstallment]:
        """
        Collection list for a day

        Pending or partial installments due on ``on_date`` across the
        owner's active and defaulted loans, ordered by borrower name.
        """
        if on_date is None:
            on_date = date.today()

        due = []
        borrowers = {}
        for loan in self.ledger.get_owner_loans(owner_id):
            if loan.status not in COLLECTIBLE_LOAN_STATUSES:
                continue
            for installment in self.ledger.get_installments(loan.id):
                if installment.due_date == on_date and installment.status in NEXT_DUE_STATUSES:
                    due.append(DueInstallment(loan, installment, self._borrower(loan, borrowers)))

        due.sort(key=lambda d: ((d.borrower.name if d.borrower else ""), d.loan.loan_number))
        return due

    def get_overdue_loans(self, owner_id: str) -> List[OverdueLoan]:
        """Loans with overdue installments, longest overdue first"""
        overdue_loans = []
        borrowers = {}
        for loan in self.ledger.get_owner_loans(owner_id):
            if loan.status == LoanStatus.CANCELLED:
                continue
            overdue = [
                i for i in self.ledger.get_installments(loan.id)
                if i.status == InstallmentStatus.OVERDUE
            ]
            if not overdue:
                continue
            overdue_loans.append(OverdueLoan(
                loan=loan,
                overdue_count=len(overdue),
                overdue_amount=sum((i.outstanding_amount for i in overdue), ZERO),
                max_days_overdue=max(i.days_overdue for i in overdue),
                borrower=self._borrower(loan, borrowers)
            ))

        overdue_loans.sort(key=lambda o: o.max_days_overdue, reverse=True)
        return overdue_loans

    def send_due_reminders(self, owner_id: str, on_date: Optional[date] = None) -> int:
        """
        Remind borrowers of installments due on ``on_date``

        Returns:
            Number of reminders handed to the notifier
        """
        sent = 0
        for entry in self.get_loans_due_on(owner_id, on_date):
            installment = entry.installment
            if self._notify(entry.loan, entry.borrower, "notify_payment_due",
                            lambda b: self.notifier.notify_payment_due(
                                b, installment.outstanding_amount, installment.due_date)):
                sent += 1
        return sent

    def send_overdue_notices(self, owner_id: str, late_fee_per_day: Numeric = ZERO) -> int:
        """
        Send an overdue notice per overdue loan

        The quoted late fee is what the longest-overdue installment would
        carry if paid today at ``late_fee_per_day``.

        Returns:
            Number of notices handed to the notifier
        """
        sent = 0
        for entry in self.get_overdue_loans(owner_id):
            late_fee = calculate_late_fee(entry.max_days_overdue, late_fee_per_day)
            if self._notify(entry.loan, entry.borrower, "notify_overdue",
                            lambda b: self.notifier.notify_overdue(
                                b, entry.max_days_overdue, entry.overdue_amount, late_fee)):
                sent += 1
        return sent

    def get_loan_summary(self, owner_id: str, loan_id: str) -> LoanSummary:
        """Loan, schedule and installment counts by status"""
        loan = self.get_loan(owner_id, loan_id)
        installments = self.ledger.get_installments(loan.id)

        counts = {status: 0 for status in InstallmentStatus}
        for installment in installments:
            counts[installment.status] += 1

        return LoanSummary(
            loan=loan,
            installments=installments,
            paid_count=counts[InstallmentStatus.PAID],
            partial_count=counts[InstallmentStatus.PARTIAL],
            overdue_count=counts[InstallmentStatus.OVERDUE],
            pending_count=counts[InstallmentStatus.PENDING],
            next_due=next((i for i in installments if i.status in NEXT_DUE_STATUSES), None)
        )

    def update_loan_status(self, loan_id: str) -> Loan:
        """
        Re-evaluate and persist the loan status from its current figures

        Completion is checked before default. A loan that defaults flips its
        borrower to the defaulter marker in the same atomic unit.
        """
        with self.storage.record_lock(self.loans_table, loan_id):
            loan = self.ledger.get_loan(loan_id)
            if not loan:
                raise NotFoundError(f"Loan {loan_id} not found")

            overdue_count = self.ledger.count_installments(loan.id, InstallmentStatus.OVERDUE)
            new_status = evaluate_loan_status(
                loan.status, loan.paid_amount, loan.total_amount, overdue_count, self.overdue_threshold
            )
            if new_status == loan.status:
                return loan

            previous_status = loan.status
            now = datetime.now(timezone.utc)
            loan.status = new_status
            loan.updated_at = now
            if new_status == LoanStatus.COMPLETED:
                loan.completed_at = now

            with self.storage.atomic():
                self.ledger.save_loan(loan)
                if new_status == LoanStatus.DEFAULTED:
                    self.borrower_registry.mark_defaulter(loan.borrower_id)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} is now {new_status.value}",
            user_id=loan.owner_id, action="update_loan_status", resource=f"loan:{loan.id}",
            extra={"previous_status": previous_status.value, "overdue_installments": overdue_count}
        )
        if new_status == LoanStatus.COMPLETED:
            self._audit(AuditEventType.LOAN_COMPLETED, loan, {"paid_amount": loan.paid_amount})
        elif new_status == LoanStatus.DEFAULTED:
            self._audit(AuditEventType.LOAN_DEFAULTED, loan, {"overdue_installments": overdue_count})
            self._audit_borrower_defaulted(loan)
        return loan

    def mark_overdue_installments(self, owner_id: str, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Periodic sweep: flag unpaid installments past their due date

        Pending and partial installments due before ``as_of`` become overdue;
        days overdue is refreshed on every overdue installment. Each touched
        loan is then re-evaluated, which is where defaults are detected.

        Returns:
            Counts of installments marked and the loan numbers that defaulted
        """
        if as_of is None:
            as_of = date.today()

        results = {"loans_processed": 0, "installments_marked": 0, "defaulted_loans": []}

        for loan in self.get_owner_loans(owner_id, LoanStatus.ACTIVE):
            with self.storage.record_lock(self.loans_table, loan.id):
                marked = 0
                now = datetime.now(timezone.utc)
                with self.storage.atomic():
                    for installment in self.ledger.get_installments(loan.id):
                        if should_mark_overdue(installment, as_of):
                            installment.status = InstallmentStatus.OVERDUE
                            marked += 1
                        elif installment.status != InstallmentStatus.OVERDUE:
                            continue
                        installment.days_overdue = calculate_days_late(as_of, installment.due_date)
                        installment.updated_at = now
                        self.ledger.save_installment(installment)

                updated = self.update_loan_status(loan.id)

            results["loans_processed"] += 1
            results["installments_marked"] += marked
            if updated.status == LoanStatus.DEFAULTED:
                results["defaulted_loans"].append(updated.loan_number)

            if marked:
                self._audit(
                    AuditEventType.INSTALLMENTS_MARKED_OVERDUE, loan,
                    {"installments_marked": marked, "as_of": as_of}
                )

        log_action(
            self.logger, "info", "Overdue sweep finished",
            user_id=owner_id, action="mark_overdue_installments", resource="loans",
            extra={"as_of": as_of.isoformat(), "installments_marked": results["installments_marked"],
                   "defaulted_loans": len(results["defaulted_loans"])}
        )
        return results

    def _borrower(self, loan: Loan, cache: Dict[str, Optional[Borrower]]) -> Optional[Borrower]:
        if loan.borrower_id not in cache:
            cache[loan.borrower_id] = self.borrower_registry.find_borrower(loan.borrower_id)
        return cache[loan.borrower_id]

    def _notify(self, loan: Loan, borrower: Optional[Borrower], action: str, send) -> bool:
        """Run one notifier call for a borrower; False when skipped or failed"""
        if not self.notifier or not borrower or not borrower.sms_enabled:
            return False
        try:
            send(borrower)
        except Exception as e:
            log_action(
                self.logger, "error", f"Borrower notification failed: {e}",
                user_id=loan.owner_id, action=action, resource=f"loan:{loan.id}"
            )
            return False
        return True

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: Dict[str, Any]) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=loan.owner_id
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Audit logging failed for {event_type.value}: {e}",
                user_id=loan.owner_id, action="audit", resource=f"loan:{loan.id}"
            )

    def _audit_borrower_defaulted(self, loan: Loan) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.BORROWER_MARKED_DEFAULTER,
                entity_type="borrower",
                entity_id=loan.borrower_id,
                metadata={"loan_id": loan.id, "loan_number": loan.loan_number},
                user_id=loan.owner_id
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Audit logging failed for borrower default: {e}",
                user_id=loan.owner_id, action="audit", resource=f"borrower:{loan.borrower_id}"
            )
