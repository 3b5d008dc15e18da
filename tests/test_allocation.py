"""
Test suite for the repayment allocator

The waterfall order penalty -> interest -> principal is business policy.
"""

import pytest
from decimal import Decimal

from microfinance_core.allocation import allocate_recovery, allocate_repayment
from microfinance_core.config import MicrofinanceConfig
from microfinance_core.errors import InvalidInputError


class TestWaterfall:
    """Test the allocation order"""

    def setup_method(self):
        self.config = MicrofinanceConfig()

    def test_partial_principal(self):
        """5000 against penalty 1000, interest 2000, principal 10000"""
        allocation = allocate_repayment("5000", "1000", "2000", "10000", self.config)

        assert allocation.penalty_paid == Decimal("1000")
        assert allocation.interest_paid == Decimal("2000")
        assert allocation.principal_paid == Decimal("2000")
        assert allocation.overpayment == Decimal("0")
        assert allocation.remaining_penalty == Decimal("0")
        assert allocation.remaining_interest == Decimal("0")
        assert allocation.remaining_principal == Decimal("8000")
        assert not allocation.is_fully_paid

    def test_penalty_only(self):
        allocation = allocate_repayment("600", "1000", "2000", "10000", self.config)
        assert allocation.penalty_paid == Decimal("600")
        assert allocation.interest_paid == Decimal("0")
        assert allocation.principal_paid == Decimal("0")
        assert allocation.remaining_penalty == Decimal("400")

    def test_interest_untouched_until_penalty_cleared(self):
        allocation = allocate_repayment("1000", "1000", "2000", "10000", self.config)
        assert allocation.penalty_paid == Decimal("1000")
        assert allocation.interest_paid == Decimal("0")

    def test_overpayment(self):
        allocation = allocate_repayment("15000.50", "1000", "2000", "10000", self.config)
        assert allocation.principal_paid == Decimal("10000")
        assert allocation.overpayment == Decimal("2000.50")
        assert allocation.is_fully_paid
        assert allocation.remaining_total == Decimal("0")

    def test_exact_payoff_is_fully_paid(self):
        allocation = allocate_repayment("13000", "1000", "2000", "10000", self.config)
        assert allocation.is_fully_paid
        assert allocation.overpayment == Decimal("0")

    def test_nothing_outstanding(self):
        """All of the payment becomes overpayment"""
        allocation = allocate_repayment("250", "0", "0", "0", self.config)
        assert allocation.overpayment == Decimal("250")
        assert allocation.allocated_total == Decimal("0")
        assert allocation.is_fully_paid

    def test_to_dict(self):
        data = allocate_repayment("5000", "1000", "2000", "10000", self.config).to_dict()
        assert data["penalty_paid"] == "1000"
        assert data["remaining_balances"] == {"penalty": "0", "interest": "0", "principal": "8000"}
        assert data["is_fully_paid"] is False


class TestAllocationProperties:
    """Properties that hold for any payment and outstanding balances"""

    @pytest.mark.parametrize("amount,penalty,interest,principal", [
        ("0.01", "0", "0", "100"),
        ("99.99", "10", "20", "30"),
        ("60", "10", "20", "30"),
        ("45.67", "0", "50", "1000"),
        ("1000000", "123.45", "678.90", "5000"),
        ("333.33", "100", "100", "100"),
    ])
    def test_components_sum_and_bounds(self, amount, penalty, interest, principal):
        allocation = allocate_repayment(amount, penalty, interest, principal, MicrofinanceConfig())

        total = (allocation.penalty_paid + allocation.interest_paid
                 + allocation.principal_paid + allocation.overpayment)
        assert total == Decimal(amount)
        assert allocation.penalty_paid <= Decimal(penalty)
        assert allocation.interest_paid <= Decimal(interest)
        assert allocation.principal_paid <= Decimal(principal)

        # Strict order: a later bucket is only touched once the earlier ones are cleared
        if allocation.interest_paid > 0:
            assert allocation.remaining_penalty == 0
        if allocation.principal_paid > 0:
            assert allocation.remaining_interest == 0
        if allocation.overpayment > 0:
            assert allocation.remaining_principal == 0


class TestRecoveryOrder:
    """Recoveries on written-off loans: principal -> interest -> penalty"""

    def test_principal_first(self):
        allocation = allocate_recovery("5000", "1000", "2000", "10000", MicrofinanceConfig())
        assert allocation.principal_paid == Decimal("5000")
        assert allocation.interest_paid == Decimal("0")
        assert allocation.penalty_paid == Decimal("0")
        assert allocation.remaining_principal == Decimal("5000")

    def test_penalty_last(self):
        allocation = allocate_recovery("12500", "1000", "2000", "10000", MicrofinanceConfig())
        assert allocation.principal_paid == Decimal("10000")
        assert allocation.interest_paid == Decimal("2000")
        assert allocation.penalty_paid == Decimal("500")
        assert allocation.remaining_penalty == Decimal("500")
        assert not allocation.is_fully_paid

    def test_excess(self):
        allocation = allocate_recovery("13100", "1000", "2000", "10000", MicrofinanceConfig())
        assert allocation.overpayment == Decimal("100")
        assert allocation.is_fully_paid

    def test_validation(self):
        with pytest.raises(InvalidInputError, match="greater than 0"):
            allocate_recovery("-5", "0", "0", "100", MicrofinanceConfig())


class TestAllocationValidation:
    """Invalid inputs"""

    def test_zero_payment(self):
        with pytest.raises(InvalidInputError, match="greater than 0"):
            allocate_repayment("0", "0", "0", "100", MicrofinanceConfig())

    def test_negative_balance(self):
        with pytest.raises(InvalidInputError, match="Outstanding interest cannot be negative"):
            allocate_repayment("10", "0", "-1", "100", MicrofinanceConfig())

    def test_float_payment(self):
        with pytest.raises(InvalidInputError):
            allocate_repayment(10.5, "0", "0", "100", MicrofinanceConfig())
