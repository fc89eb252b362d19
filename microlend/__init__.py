"""
Micro-Lending Ledger

Installment loans with flat simple interest, amortization schedules,
payment collection with interest-first allocation, and Decimal precision
for every monetary figure.
"""

__version__ = "1.0.0"
