"""
Collections Module

Records borrower payments against a loan's installment schedule, issues
receipts and serves payment history.

A payment is written as one atomic unit: the Collection row, the credited
Installment and the Loan running totals. Loan status is re-evaluated right
after, still under the loan's record lock, so two concurrent payments can
never both read a stale pending amount.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .allocation import allocate_payment, calculate_days_late, calculate_late_fee, pending_split
from .amortization import InstallmentStatus
from .audit import AuditTrail, AuditEventType
from .borrowers import Borrower
from .config import get_config
from .exceptions import InvalidParametersError, InvalidStateError, NotFoundError
from .identifiers import generate_receipt_number, generate_unique
from .ledger import Collection, Installment, Loan, LoanLedger, LoanStatus, PaymentMode
from .loans import LoanManager
from .logging_config import get_logger, log_action
from .money import Numeric, ZERO, round_money
from .notifications import Notifier
from .owner_settings import OwnerSettingsStore
from .storage import StorageInterface


@dataclass
class PaymentReceipt:
    """Outcome of a recorded payment"""
    collection: Collection
    loan: Loan
    installment: Installment
    excess: Decimal = ZERO
    late_fee: Decimal = ZERO
    borrower: Optional[Borrower] = None

    @property
    def receipt_number(self) -> str:
        return self.collection.receipt_number

    @property
    def balance_due(self) -> Decimal:
        return self.loan.pending_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'receipt_number': self.collection.receipt_number,
            'payment_date': self.collection.payment_date.isoformat(),
            'amount': str(self.collection.amount),
            'principal_part': str(self.collection.principal_part),
            'interest_part': str(self.collection.interest_part),
            'late_fee': str(self.late_fee),
            'excess': str(self.excess),
            'payment_mode': self.collection.payment_mode.value,
            'transaction_id': self.collection.transaction_id,
            'installment_number': self.collection.installment_number,
            'loan': {
                'loan_number': self.loan.loan_number,
                'total_amount': str(self.loan.total_amount),
                'pending_amount': str(self.loan.pending_amount),
                'status': self.loan.status.value
            },
            'borrower': {
                'name': self.borrower.name,
                'mobile': self.borrower.mobile,
                'address': self.borrower.address
            } if self.borrower else None,
            'notes': self.collection.notes
        }


def parse_payment_mode(value) -> PaymentMode:
    if isinstance(value, PaymentMode):
        return value
    try:
        return PaymentMode(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMode)
        raise InvalidParametersError(f"Payment mode must be one of: {allowed}")


class CollectionRecorder:
    """
    Records payments and serves receipts
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        owner_settings: OwnerSettingsStore,
        notifier: Optional[Notifier] = None,
        audit_trail: Optional[AuditTrail] = None,
        max_identifier_attempts: Optional[int] = None
    ):
        app_config = get_config()

        self.storage = storage
        self.loan_manager = loan_manager
        self.owner_settings = owner_settings
        self.notifier = notifier
        self.audit_trail = audit_trail if app_config.enable_audit_logging else None
        self.ledger = LoanLedger(storage)
        self.logger = get_logger("microlend.collections")

        self.max_identifier_attempts = max_identifier_attempts or app_config.identifier_max_attempts
        self.receipt_number_prefix = app_config.receipt_number_prefix

    def record_payment(
        self,
        owner_id: str,
        loan_id: str,
        amount: Numeric,
        payment_date: date,
        payment_mode,
        installment_number: Optional[int] = None,
        transaction_id: Optional[str] = None,
        note: Optional[str] = None,
        collected_by: Optional[str] = None
    ) -> PaymentReceipt:
        """
        Record a payment against a loan

        The whole amount is credited to the target installment (the one given,
        or the earliest still payable). The late fee accrued on that
        installment is recorded alongside, not deducted from the amount.

        Args:
            owner_id: Lender receiving the payment
            loan_id: Loan being repaid
            amount: Amount paid, must not exceed the loan's pending amount
            payment_date: Date the money was received
            payment_mode: cash, upi, bank_transfer, cheque or other
            installment_number: Explicit installment to credit
            transaction_id: External reference, e.g. a UPI id
            note: Free text stored on the collection
            collected_by: Who took the payment (defaults to the owner)

        Returns:
            PaymentReceipt with the collection, updated loan and installment

        Raises:
            InvalidParametersError: Non-positive amount, amount above pending, bad mode
            NotFoundError: Loan not found or not owned, or no payable installment
            InvalidStateError: Loan completed or cancelled
        """
        try:
            amount = round_money(amount)
        except ValueError as e:
            raise InvalidParametersError(f"Invalid payment amount: {e}") from e
        if amount <= ZERO:
            raise InvalidParametersError(f"Payment amount must be greater than 0, got {amount}")
        payment_mode = parse_payment_mode(payment_mode)
        if isinstance(payment_date, str):
            try:
                payment_date = date.fromisoformat(payment_date)
            except ValueError as e:
                raise InvalidParametersError(f"Invalid payment date: {payment_date!r}") from e

        with self.storage.record_lock(self.ledger.loans_table, loan_id):
            loan = self.loan_manager.get_loan(owner_id, loan_id)

            if loan.status == LoanStatus.COMPLETED:
                raise InvalidStateError(f"Loan {loan.loan_number} is already fully paid")
            if loan.status == LoanStatus.CANCELLED:
                raise InvalidStateError(f"Cannot collect payment for cancelled loan {loan.loan_number}")
            if amount > loan.pending_amount:
                raise InvalidParametersError(
                    f"Payment amount Rs.{amount} exceeds pending amount (Rs.{loan.pending_amount})"
                )

            late_fee_per_day = self.owner_settings.get_late_fee_per_day(owner_id)
            installment = self._select_installment(loan, installment_number)

            days_late = calculate_days_late(payment_date, installment.due_date)
            late_fee = calculate_late_fee(days_late, late_fee_per_day)
            pending_principal, pending_interest = pending_split(
                installment.principal_part,
                installment.interest_part,
                installment.due_amount,
                installment.paid_amount
            )
            breakdown = allocate_payment(amount, pending_principal, pending_interest)

            now = datetime.now(timezone.utc)
            with self.storage.atomic():
                receipt_number = generate_unique(
                    lambda: generate_receipt_number(payment_date, prefix=self.receipt_number_prefix),
                    self.ledger.receipt_number_exists,
                    max_attempts=self.max_identifier_attempts,
                    kind="receipt number"
                )

                collection = Collection(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    owner_id=owner_id,
                    borrower_id=loan.borrower_id,
                    loan_id=loan.id,
                    receipt_number=receipt_number,
                    amount=amount,
                    principal_part=breakdown.principal,
                    interest_part=breakdown.interest,
                    late_fee=late_fee,
                    payment_date=payment_date,
                    payment_mode=payment_mode,
                    installment_number=installment.installment_number,
                    days_late=days_late,
                    transaction_id=transaction_id,
                    notes=note,
                    collected_by=collected_by or owner_id
                )
                self.ledger.save_collection(collection)

                installment.apply_payment(amount, payment_date, days_late, late_fee)
                self.ledger.save_installment(installment)

                paid_installments = self.ledger.count_installments(loan.id, InstallmentStatus.PAID)
                loan.apply_payment(amount, paid_installments)
                self.ledger.save_loan(loan)

            loan = self.loan_manager.update_loan_status(loan.id)

        borrower = self.loan_manager.borrower_registry.find_borrower(loan.borrower_id)
        receipt = PaymentReceipt(
            collection=collection,
            loan=loan,
            installment=installment,
            excess=breakdown.excess,
            late_fee=late_fee,
            borrower=borrower
        )

        log_action(
            self.logger, "info", f"Payment {receipt_number} recorded on loan {loan.loan_number}",
            user_id=owner_id, action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "amount": str(amount),
                "installment_number": installment.installment_number,
                "days_late": days_late,
                "late_fee": str(late_fee),
                "pending_amount": str(loan.pending_amount),
                "loan_status": loan.status.value
            }
        )

        if self.notifier and borrower and borrower.sms_enabled:
            try:
                self.notifier.notify_payment_confirmed(borrower, amount, loan.pending_amount)
            except Exception as e:
                log_action(
                    self.logger, "error", f"Payment confirmation failed: {e}",
                    user_id=owner_id, action="notify_payment_confirmed", resource=f"loan:{loan.id}"
                )

        if self.audit_trail:
            try:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_RECORDED,
                    entity_type="collection",
                    entity_id=collection.id,
                    metadata={
                        "loan_id": loan.id,
                        "receipt_number": receipt_number,
                        "amount": amount,
                        "principal_part": breakdown.principal,
                        "interest_part": breakdown.interest,
                        "late_fee": late_fee,
                        "installment_number": installment.installment_number
                    },
                    user_id=owner_id
                )
            except Exception as e:
                log_action(
                    self.logger, "error", f"Audit logging failed for payment {receipt_number}: {e}",
                    user_id=owner_id, action="audit", resource=f"collection:{collection.id}"
                )

        return receipt

    def _select_installment(self, loan: Loan, installment_number: Optional[int]) -> Installment:
        if installment_number is not None:
            installment = self.ledger.get_installment(loan.id, installment_number)
            if not installment:
                raise NotFoundError(f"Installment {installment_number} not found on loan {loan.loan_number}")
            return installment

        installment = self.ledger.next_payable_installment(loan.id)
        if not installment:
            raise NotFoundError(f"No pending installment found on loan {loan.loan_number}")
        return installment

    def get_loan_payment_history(self, owner_id: str, loan_id: str) -> Dict[str, Any]:
        """Collections on a loan, latest payment first, with the total paid"""
        loan = self.loan_manager.get_loan(owner_id, loan_id)
        collections = self.ledger.get_collections(loan.id)
        collections.sort(key=lambda c: (c.payment_date, c.created_at), reverse=True)

        return {
            "loan": loan,
            "collections": collections,
            "payment_count": len(collections),
            "total_paid": sum((c.amount for c in collections), ZERO),
            "total_late_fees": sum((c.late_fee for c in collections), ZERO)
        }

    def get_borrower_payment_history(self, owner_id: str, borrower_id: str) -> Dict[str, Any]:
        """
        Collections from one borrower across all their loans, latest first

        Raises:
            NotFoundError: If the borrower is absent or owned by someone else
        """
        borrower = self.loan_manager.borrower_registry.get_borrower(owner_id, borrower_id)
        collections = [c for c in self.ledger.get_borrower_collections(borrower.id) if c.owner_id == owner_id]
        collections.sort(key=lambda c: (c.payment_date, c.created_at), reverse=True)

        loan_numbers = {}
        for collection in collections:
            if collection.loan_id not in loan_numbers:
                loan = self.ledger.get_loan(collection.loan_id)
                loan_numbers[collection.loan_id] = loan.loan_number if loan else None

        return {
            "borrower": borrower,
            "collections": collections,
            "loan_numbers": loan_numbers,
            "payment_count": len(collections),
            "total_paid": sum((c.amount for c in collections), ZERO)
        }

    def get_receipt(self, owner_id: str, receipt_number: str) -> PaymentReceipt:
        """
        Rebuild the receipt of an earlier payment with current loan figures

        Raises:
            NotFoundError: If no collection has this number for the owner
        """
        collection = self.ledger.find_collection_by_receipt(receipt_number)
        if not collection or collection.owner_id != owner_id:
            raise NotFoundError(f"Receipt {receipt_number} not found")

        loan = self.loan_manager.get_loan(owner_id, collection.loan_id)
        installment = self.ledger.get_installment(loan.id, collection.installment_number)
        return PaymentReceipt(
            collection=collection,
            loan=loan,
            installment=installment,
            excess=collection.amount - collection.principal_part - collection.interest_part,
            late_fee=collection.late_fee,
            borrower=self.loan_manager.borrower_registry.find_borrower(collection.borrower_id)
        )

    def format_receipt_for_sms(self, receipt: PaymentReceipt) -> str:
        return (
            f"Receipt: {receipt.receipt_number}\n"
            f"Amount: Rs.{receipt.collection.amount}\n"
            f"Date: {receipt.collection.payment_date.isoformat()}\n"
            f"Loan: {receipt.loan.loan_number}\n"
            f"Balance: Rs.{receipt.balance_due}\n"
            f"Thank you!"
        )

    def format_receipt_for_print(self, receipt: PaymentReceipt, business_name: Optional[str] = None) -> str:
        """Plain-text receipt for a 48-column printer"""
        rule = "=" * 48
        section = "-" * 48
        collection = receipt.collection
        borrower = receipt.borrower

        lines = [
            rule,
            "PAYMENT RECEIPT".center(48).rstrip(),
            rule,
            "",
            f"Receipt No: {collection.receipt_number}",
            f"Date: {collection.payment_date.strftime('%d/%m/%Y')}",
            f"Time: {collection.created_at.strftime('%H:%M:%S')}",
            "",
        ]
        if business_name:
            lines += [business_name, ""]

        if borrower:
            lines += [
                section,
                "BORROWER DETAILS",
                section,
                f"Name: {borrower.name}",
                f"Mobile: {borrower.mobile}",
                f"Address: {borrower.address or 'N/A'}",
                "",
            ]

        lines += [
            section,
            "PAYMENT DETAILS",
            section,
            f"Loan Number: {receipt.loan.loan_number}",
            f"Installment #: {collection.installment_number}",
            f"Payment Mode: {collection.payment_mode.value.upper()}",
        ]
        if collection.transaction_id:
            lines.append(f"Transaction ID: {collection.transaction_id}")
        lines += [
            "",
            f"Amount Paid: Rs.{collection.amount:.2f}",
            f"  Principal: Rs.{collection.principal_part:.2f}",
            f"  Interest: Rs.{collection.interest_part:.2f}",
        ]
        if receipt.late_fee > ZERO:
            lines.append(f"  Late Fee: Rs.{receipt.late_fee:.2f}")

        lines += [
            "",
            section,
            "LOAN SUMMARY",
            section,
            f"Loan Total: Rs.{receipt.loan.total_amount:.2f}",
            f"Balance Due: Rs.{receipt.balance_due:.2f}",
        ]
        if collection.notes:
            lines += ["", f"Notes: {collection.notes}"]

        lines += [
            "",
            section,
            "Thank you for your payment!",
            section,
            "",
            "Signature: _____________________",
            "",
            rule,
        ]
        return "\n".join(lines)

    def get_owner_collections(self, owner_id: str, on_date: Optional[date] = None) -> List[Collection]:
        """All collections taken by an owner, optionally on one day"""
        filters = {"owner_id": owner_id}
        if on_date is not None:
            filters["payment_date"] = on_date.isoformat()
        return [Collection.from_dict(d) for d in self.storage.find(self.ledger.collections_table, filters)]
