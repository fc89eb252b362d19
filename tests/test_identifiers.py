"""
Test suite for identifier generation
"""

import re
import pytest
from datetime import date

from microlend.exceptions import ConflictingIdentifierError
from microlend.identifiers import (
    format_identifier, generate_loan_number, generate_receipt_number, generate_unique
)


class TestIdentifierFormat:
    """Test identifier layout"""

    def test_format_pads_suffix(self):
        assert format_identifier("LOAN", date(2024, 1, 15), 42) == "LOAN20240115-0042"

    def test_loan_number(self):
        assert re.fullmatch(r"LOAN20240115-\d{4}", generate_loan_number(date(2024, 1, 15)))

    def test_receipt_number(self):
        assert re.fullmatch(r"REC20241231-\d{4}", generate_receipt_number(date(2024, 12, 31)))

    def test_custom_prefix(self):
        assert generate_receipt_number(date(2024, 1, 1), prefix="RCPT").startswith("RCPT20240101-")

    def test_defaults_to_today(self):
        assert date.today().strftime('%Y%m%d') in generate_loan_number()


class TestGenerateUnique:
    """Test bounded retry on collision"""

    def test_returns_first_free_candidate(self):
        candidates = iter(["A", "B", "C"])
        taken = {"A", "B"}

        assert generate_unique(lambda: next(candidates), taken.__contains__) == "C"

    def test_gives_up_after_budget(self):
        calls = []

        def generator():
            calls.append(1)
            return "SAME"

        with pytest.raises(ConflictingIdentifierError, match="receipt number"):
            generate_unique(generator, lambda _: True, max_attempts=10, kind="receipt number")

        assert len(calls) == 10
