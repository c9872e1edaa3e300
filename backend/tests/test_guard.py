"""Tests for the content and amount guard."""

from decimal import Decimal

import pytest

from app.guard import check_amount, check_job_content


class TestCheckJobContent:
    def test_approves_reasonable_job(self):
        result = check_job_content("Fix my fence", "Two panels blew down in last night's storm")
        assert result.approved
        assert result.reason is None
        assert result.to_dict() == {"approved": True}

    @pytest.mark.parametrize(
        "title,description",
        [("", "A long enough description here"), ("Fix fence", "   "), (None, None)],
    )
    def test_requires_title_and_description(self, title, description):
        result = check_job_content(title, description)
        assert not result.approved
        assert result.reason == "Title and description are required"

    def test_short_title(self):
        result = check_job_content("Fix", "A long enough description here")
        assert result.reason == "Title or description is too short"

    def test_short_description(self):
        result = check_job_content("Fix my fence", "Too short")
        assert result.reason == "Title or description is too short"

    def test_prohibited_terms_case_insensitive(self):
        result = check_job_content("Totally legit job", "Help me run a SCAM on my neighbours please")
        assert not result.approved
        assert result.reason == "Content contains prohibited terms"
        assert result.to_dict() == {"approved": False, "reason": "Content contains prohibited terms"}

    def test_whitespace_is_trimmed_before_length_check(self):
        result = check_job_content("   Fix   ", "A long enough description here")
        assert not result.approved


class TestCheckAmount:
    @pytest.mark.parametrize("amount", [Decimal("10"), Decimal("50.00"), Decimal("10000"), 25, "99.99"])
    def test_in_range(self, amount):
        assert check_amount(amount).approved

    def test_below_minimum(self):
        result = check_amount(Decimal("9.99"))
        assert result.reason == "Minimum payment amount is $10"

    def test_above_maximum(self):
        result = check_amount(Decimal("10000.01"))
        assert result.reason == "Maximum payment amount is $10,000"

    @pytest.mark.parametrize("amount", ["abc", None, "NaN"])
    def test_not_a_number(self, amount):
        result = check_amount(amount)
        assert result.reason == "Payment amount must be a number"

    def test_custom_bounds(self):
        assert not check_amount(Decimal("5"), minimum=Decimal("7.50")).approved
        assert check_amount(Decimal("5"), minimum=Decimal("1"), maximum=Decimal("6")).approved

    @pytest.mark.parametrize("amount", [Decimal("10.005"), "49.999", Decimal("0.001") + 20])
    def test_sub_cent_amounts_rejected(self, amount):
        result = check_amount(amount)
        assert result.reason == "Payment amount cannot include fractions of a cent"

    def test_trailing_zeros_are_whole_cents(self):
        assert check_amount(Decimal("10.500")).approved
