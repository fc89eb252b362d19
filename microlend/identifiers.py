"""
Identifier Generation Module

Loan and receipt numbers: prefix + date stamp + random 4-digit suffix,
e.g. LOAN20240115-0042. Uniqueness is checked against storage with a
bounded number of retries.
"""

from datetime import date
from typing import Callable, Optional
import secrets

from .exceptions import ConflictingIdentifierError

DEFAULT_MAX_ATTEMPTS = 10


def format_identifier(prefix: str, on_date: date, suffix: int) -> str:
    return f"{prefix}{on_date.strftime('%Y%m%d')}-{suffix:04d}"


def generate_identifier(prefix: str, on_date: Optional[date] = None) -> str:
    """Generate one candidate identifier"""
    if on_date is None:
        on_date = date.today()
    return format_identifier(prefix, on_date, secrets.randbelow(10000))


def generate_loan_number(on_date: Optional[date] = None, prefix: str = "LOAN") -> str:
    return generate_identifier(prefix, on_date)


def generate_receipt_number(on_date: Optional[date] = None, prefix: str = "REC") -> str:
    return generate_identifier(prefix, on_date)


def generate_unique(
    generator: Callable[[], str],
    exists: Callable[[str], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    kind: str = "identifier"
) -> str:
    """
    Draw candidates until one is not already taken

    Args:
        generator: Produces a candidate identifier
        exists: Returns True when a candidate is already persisted
        max_attempts: Retry budget
        kind: Name used in the error message

    Raises:
        ConflictingIdentifierError: If every attempt collided
    """
    for _ in range(max_attempts):
        candidate = generator()
        if not exists(candidate):
            return candidate
    raise ConflictingIdentifierError(f"Failed to generate a unique {kind} after {max_attempts} attempts")
