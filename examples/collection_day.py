#!/usr/bin/env python3
"""
Example: A lender's collection day

Registers a borrower, creates and approves a daily loan, records a few
payments (one of them late), runs the overdue sweep and prints a receipt.
Uses the storage backend named by MICROLEND_DATABASE_URL.
"""

import os
import sys
from decimal import Decimal
from datetime import date, timedelta

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from microlend.config import get_config
from microlend.storage import create_storage
from microlend.audit import AuditTrail
from microlend.logging_config import setup_logging_from_config
from microlend.borrowers import BorrowerRegistry
from microlend.owner_settings import OwnerSettingsStore
from microlend.notifications import SMSNotifier, create_sms_provider
from microlend.loans import LoanManager
from microlend.collections import CollectionRecorder
from microlend.money import format_amount


def main():
    print("Micro-Lending Ledger - Collection Day Example")
    print("=" * 60)

    # 1. Configuration
    print("\n1. Configuration")
    config = get_config()
    setup_logging_from_config(config)
    print(f"   Database URL: {config.database_url}")
    print(f"   Default late fee per day: {config.default_late_fee_per_day}")

    # 2. Wiring
    print("\n2. Wiring components")
    storage = create_storage(config.database_url)
    audit_trail = AuditTrail(storage)
    borrowers = BorrowerRegistry(storage, audit_trail)
    settings = OwnerSettingsStore(storage, audit_trail=audit_trail)
    notifier = SMSNotifier(storage, create_sms_provider(config), enabled=config.sms_enabled)
    loans = LoanManager(storage, borrowers, notifier=notifier, audit_trail=audit_trail)
    recorder = CollectionRecorder(storage, loans, settings, notifier=notifier, audit_trail=audit_trail)

    owner_id = "owner-demo"
    start = date.today() - timedelta(days=5)

    try:
        # 3. Borrower and loan
        print("\n3. Creating loan")
        borrower = borrowers.find_by_mobile(owner_id, "9876543210")
        if borrower is None:
            borrower = borrowers.register_borrower(owner_id, "Ravi Kumar", "9876543210",
                                                   business_name="Tea stall")
        preview = loans.preview_amortization(Decimal('10000'), Decimal('10'), 100,
                                             frequency="daily", start_date=start)
        print(f"   Interest: {format_amount(preview.interest_amount)}")
        print(f"   Total: {format_amount(preview.total_amount)}")
        print(f"   Installment: {format_amount(preview.installment_amount)} "
              f"(last {format_amount(preview.schedule[-1].due_amount)})")

        loan = loans.create_loan(owner_id, borrower.id, Decimal('10000'), Decimal('10'), 100,
                                 frequency="daily", start_date=start)
        loan = loans.approve_loan(owner_id, loan.id, disbursement_date=start)
        print(f"   Loan {loan.loan_number} is {loan.status.value}")

        # 4. Payments
        print("\n4. Recording payments")
        for days, amount in ((0, "103.33"), (3, "150.00")):
            receipt = recorder.record_payment(owner_id, loan.id, Decimal(amount),
                                              start + timedelta(days=days), "cash")
            print(f"   {receipt.receipt_number}: {format_amount(receipt.collection.amount)} "
                  f"late fee {format_amount(receipt.late_fee)} excess {format_amount(receipt.excess)} "
                  f"balance {format_amount(receipt.balance_due)}")

        # 5. Overdue sweep
        print("\n5. Overdue sweep")
        results = loans.mark_overdue_installments(owner_id)
        print(f"   Installments marked overdue: {results['installments_marked']}")
        print(f"   Defaulted loans: {results['defaulted_loans'] or 'none'}")
        for entry in loans.get_overdue_loans(owner_id):
            print(f"   {entry.loan.loan_number}: {entry.overdue_count} overdue, "
                  f"{format_amount(entry.overdue_amount)} unpaid, {entry.max_days_overdue} days")
        late_fee = settings.get_late_fee_per_day(owner_id)
        print(f"   Overdue notices sent: {loans.send_overdue_notices(owner_id, late_fee)}")
        print(f"   Due today: {len(loans.get_loans_due_on(owner_id))}, "
              f"reminders sent: {loans.send_due_reminders(owner_id)}")

        # 6. Receipt
        print("\n6. Last receipt")
        print(recorder.format_receipt_for_print(receipt, business_name="Demo Finance"))

        integrity = audit_trail.verify_integrity()
        print(f"\nAudit chain valid: {integrity['valid']} ({integrity['total_events']} events)")
    finally:
        storage.close()


if __name__ == "__main__":
    main()
