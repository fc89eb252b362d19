"""
Amortization Module

Flat simple-interest amortization: converts principal, annual rate (%),
installment count and frequency into interest/total figures and an
installment schedule with due dates and principal/interest splits.
Pure functions, no I/O.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import calendar

from .exceptions import InvalidParametersError
from .money import CENT, Numeric, ZERO, round_money, to_decimal

MAX_INSTALLMENTS = 1000
MAX_INTEREST_RATE = Decimal('100')


class InstallmentFrequency(Enum):
    """How often installments fall due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "pending"      # Nothing paid yet
    PARTIAL = "partial"      # Paid below the due amount
    PAID = "paid"            # Paid in full
    OVERDUE = "overdue"      # Due date passed without full payment


@dataclass
class ScheduleEntry:
    """Single installment in an amortization schedule"""
    installment_number: int
    due_date: date
    due_amount: Decimal
    principal_part: Decimal
    interest_part: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'due_amount': str(self.due_amount),
            'principal_part': str(self.principal_part),
            'interest_part': str(self.interest_part),
            'status': self.status.value
        }


@dataclass
class AmortizationPreview:
    """Loan totals together with the generated schedule"""
    principal: Decimal
    interest_rate: Decimal
    installment_count: int
    frequency: InstallmentFrequency
    duration_months: int
    interest_amount: Decimal
    total_amount: Decimal
    installment_amount: Decimal
    start_date: date
    end_date: date
    schedule: List[ScheduleEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal),
            'interest_rate': str(self.interest_rate),
            'installment_count': self.installment_count,
            'frequency': self.frequency.value,
            'duration_months': self.duration_months,
            'interest_amount': str(self.interest_amount),
            'total_amount': str(self.total_amount),
            'installment_amount': str(self.installment_amount),
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'schedule': [entry.to_dict() for entry in self.schedule]
        }


def parse_frequency(value) -> InstallmentFrequency:
    """Accept an InstallmentFrequency or its string value"""
    if isinstance(value, InstallmentFrequency):
        return value
    try:
        return InstallmentFrequency(str(value).lower())
    except ValueError:
        allowed = ", ".join(f.value for f in InstallmentFrequency)
        raise InvalidParametersError(f"Installment frequency must be one of: {allowed}")


def validate_loan_parameters(
    principal,
    interest_rate,
    installment_count,
    max_installments: int = MAX_INSTALLMENTS,
    max_interest_rate: Decimal = MAX_INTEREST_RATE
) -> None:
    """
    Validate loan terms, collecting every violated rule

    Raises:
        InvalidParametersError: With one entry per violated rule in ``errors``
    """
    errors = []

    try:
        principal = to_decimal(principal)
        if principal <= ZERO:
            errors.append("Principal amount must be greater than 0")
    except ValueError:
        errors.append("Principal amount must be a decimal number")

    try:
        interest_rate = to_decimal(interest_rate)
        if interest_rate < 0 or interest_rate > max_interest_rate:
            errors.append(f"Interest rate must be between 0 and {max_interest_rate}")
    except ValueError:
        errors.append("Interest rate must be a decimal number")

    if isinstance(installment_count, bool) or not isinstance(installment_count, int):
        errors.append("Number of installments must be an integer")
    elif installment_count <= 0:
        errors.append("Number of installments must be greater than 0")
    elif installment_count > max_installments:
        errors.append(f"Number of installments cannot exceed {max_installments}")

    if errors:
        raise InvalidParametersError("Invalid loan parameters: " + "; ".join(errors), errors)


def calculate_duration_months(installment_count: int, frequency: InstallmentFrequency) -> int:
    """Loan duration in whole months used by the interest formula"""
    if frequency == InstallmentFrequency.DAILY:
        return -(-installment_count // 30)
    elif frequency == InstallmentFrequency.WEEKLY:
        return -(-installment_count // 4)
    return installment_count


def calculate_simple_interest(principal: Numeric, rate_percent: Numeric, duration_months: int) -> Decimal:
    """Flat interest: principal * rate * months / (100 * 12), rounded to 2 decimals"""
    principal = to_decimal(principal)
    rate_percent = to_decimal(rate_percent)
    return round_money(principal * rate_percent * Decimal(duration_months) / Decimal('1200'))


def split_amount(amount: Numeric, installment_count: int) -> Tuple[Decimal, Decimal]:
    """
    Split an amount into a nominal per-installment share and the final share

    The nominal share is the amount divided by the count, rounded half-up.
    When that rounding would make the first count-1 shares exceed the amount,
    the nominal share is truncated to the cent instead, so the final share
    (amount minus the others) is never negative.
    """
    amount = to_decimal(amount)
    previous = Decimal(installment_count - 1)
    nominal = round_money(amount / Decimal(installment_count))
    if nominal * previous > amount:
        nominal = (amount / Decimal(installment_count)).quantize(CENT, rounding=ROUND_DOWN)
    return nominal, amount - nominal * previous


def calculate_installment_amount(total_amount: Numeric, installment_count: int) -> Decimal:
    """Nominal per-installment amount"""
    return split_amount(total_amount, installment_count)[0]


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_due_date(start_date: date, installment_number: int, frequency: InstallmentFrequency) -> date:
    """Due date of installment N: start date advanced by N-1 periods"""
    periods = installment_number - 1
    if frequency == InstallmentFrequency.DAILY:
        return start_date + timedelta(days=periods)
    elif frequency == InstallmentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    elif frequency == InstallmentFrequency.MONTHLY:
        # Always offset from the start date so a 31st start keeps the 31st where it exists
        return add_months(start_date, periods)
    raise InvalidParametersError(f"Unsupported installment frequency: {frequency}")


def calculate_end_date(start_date: date, installment_count: int, frequency: InstallmentFrequency) -> date:
    """Due date of the final installment"""
    return calculate_due_date(start_date, installment_count, frequency)


def generate_schedule(
    principal: Decimal,
    interest_amount: Decimal,
    total_amount: Decimal,
    installment_count: int,
    start_date: date,
    frequency: InstallmentFrequency
) -> List[ScheduleEntry]:
    """
    Generate the installment schedule

    Every installment carries the nominal amounts except the last, which
    absorbs the rounding remainder so that the schedule sums exactly to the
    loan's total, principal and interest. See split_amount for how the
    nominal share is chosen.
    """
    due_amount, last_due = split_amount(total_amount, installment_count)
    principal_part, last_principal = split_amount(principal, installment_count)
    interest_part, last_interest = split_amount(interest_amount, installment_count)

    schedule = []
    for number in range(1, installment_count + 1):
        final = number == installment_count
        schedule.append(ScheduleEntry(
            installment_number=number,
            due_date=calculate_due_date(start_date, number, frequency),
            due_amount=last_due if final else due_amount,
            principal_part=last_principal if final else principal_part,
            interest_part=last_interest if final else interest_part
        ))

    return schedule


def preview_amortization(
    principal: Numeric,
    interest_rate: Numeric,
    installment_count: int,
    frequency=InstallmentFrequency.DAILY,
    start_date: Optional[date] = None,
    max_installments: int = MAX_INSTALLMENTS,
    max_interest_rate: Decimal = MAX_INTEREST_RATE
) -> AmortizationPreview:
    """
    Compute loan totals and the full schedule without persisting anything

    Args:
        principal: Amount lent
        interest_rate: Annual flat rate in percent, e.g. 10 for 10%
        installment_count: Number of installments (1..max_installments)
        frequency: daily, weekly or monthly
        start_date: Due date of the first installment (defaults to today)

    Returns:
        AmortizationPreview with totals and schedule
    """
    validate_loan_parameters(principal, interest_rate, installment_count, max_installments, max_interest_rate)
    frequency = parse_frequency(frequency)
    if start_date is None:
        start_date = date.today()

    principal = round_money(principal)
    interest_rate = to_decimal(interest_rate)

    duration_months = calculate_duration_months(installment_count, frequency)
    interest_amount = calculate_simple_interest(principal, interest_rate, duration_months)
    total_amount = principal + interest_amount
    installment_amount = calculate_installment_amount(total_amount, installment_count)

    schedule = generate_schedule(
        principal=principal,
        interest_amount=interest_amount,
        total_amount=total_amount,
        installment_count=installment_count,
        start_date=start_date,
        frequency=frequency
    )

    return AmortizationPreview(
        principal=principal,
        interest_rate=interest_rate,
        installment_count=installment_count,
        frequency=frequency,
        duration_months=duration_months,
        interest_amount=interest_amount,
        total_amount=total_amount,
        installment_amount=installment_amount,
        start_date=start_date,
        end_date=schedule[-1].due_date,
        schedule=schedule
    )
