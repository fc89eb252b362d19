"""
Payment Allocation Module

Late fee computation and interest-first allocation of a payment against
one installment's outstanding principal and interest. Pure functions.

The late fee is recorded alongside the split but never deducted from the
allocatable payment amount.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Tuple

from .exceptions import InvalidParametersError
from .money import Numeric, ZERO, round_money, to_decimal


@dataclass(frozen=True)
class PaymentBreakdown:
    """Result of allocating one payment"""
    principal: Decimal
    interest: Decimal
    excess: Decimal

    @property
    def allocated(self) -> Decimal:
        return self.principal + self.interest


def calculate_days_late(payment_date: date, due_date: date) -> int:
    """Whole days between due date and payment date, never negative"""
    return max(0, (payment_date - due_date).days)


def calculate_late_fee(days_late: int, late_fee_per_day: Numeric) -> Decimal:
    """Late fee accrued for the given lateness"""
    if days_late <= 0:
        return ZERO
    return round_money(Decimal(days_late) * to_decimal(late_fee_per_day))


def pending_split(
    principal_part: Decimal,
    interest_part: Decimal,
    due_amount: Decimal,
    paid_amount: Decimal
) -> Tuple[Decimal, Decimal]:
    """
    Outstanding principal and interest on an installment

    Each part is scaled by the unpaid fraction of the installment,
    clamped to [0, 1].
    """
    if due_amount <= ZERO:
        return ZERO, ZERO

    unpaid_fraction = Decimal('1') - (paid_amount / due_amount)
    unpaid_fraction = min(Decimal('1'), max(Decimal('0'), unpaid_fraction))

    pending_principal = round_money(max(ZERO, principal_part) * unpaid_fraction)
    pending_interest = round_money(max(ZERO, interest_part) * unpaid_fraction)
    return pending_principal, pending_interest


def allocate_payment(amount: Numeric, pending_principal: Numeric, pending_interest: Numeric) -> PaymentBreakdown:
    """
    Split a payment interest-first

    If the payment covers everything outstanding, both parts are paid in full
    and the remainder is excess. Otherwise interest is paid first and the
    rest goes to principal.

    Raises:
        InvalidParametersError: If the amount is not positive
    """
    amount = round_money(amount)
    pending_principal = max(ZERO, round_money(pending_principal))
    pending_interest = max(ZERO, round_money(pending_interest))

    if amount <= ZERO:
        raise InvalidParametersError(f"Payment amount must be greater than 0, got {amount}")

    total_pending = pending_principal + pending_interest
    if amount >= total_pending:
        return PaymentBreakdown(
            principal=pending_principal,
            interest=pending_interest,
            excess=amount - total_pending
        )

    interest_paid = min(amount, pending_interest)
    principal_paid = max(ZERO, amount - interest_paid)
    return PaymentBreakdown(principal=principal_paid, interest=interest_paid, excess=ZERO)
