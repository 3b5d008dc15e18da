"""
Repayment Allocation Module

Splits a cash payment across outstanding penalty, interest and principal
using a strict waterfall: penalty first, then interest, then principal.
Recoveries on written-off loans run the other way round.
Anything left once principal is retired is reported as overpayment; what
happens to it (refund or credit) is decided by the caller.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from . import money
from .money import ZERO, DecimalLike
from .config import MicrofinanceConfig, get_config
from .errors import InvalidInputError, report_invariant_violation


@dataclass(frozen=True)
class RepaymentAllocation:
    """Result of applying one payment to a loan's outstanding balances"""
    payment_amount: Decimal
    penalty_paid: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    overpayment: Decimal
    remaining_penalty: Decimal
    remaining_interest: Decimal
    remaining_principal: Decimal
    is_fully_paid: bool

    @property
    def allocated_total(self) -> Decimal:
        """Amount applied to loan obligations, excluding overpayment"""
        return money.total([self.penalty_paid, self.interest_paid, self.principal_paid])

    @property
    def remaining_total(self) -> Decimal:
        return money.total([self.remaining_penalty, self.remaining_interest, self.remaining_principal])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_amount": str(self.payment_amount),
            "penalty_paid": str(self.penalty_paid),
            "interest_paid": str(self.interest_paid),
            "principal_paid": str(self.principal_paid),
            "overpayment": str(self.overpayment),
            "remaining_balances": {
                "penalty": str(self.remaining_penalty),
                "interest": str(self.remaining_interest),
                "principal": str(self.remaining_principal),
            },
            "is_fully_paid": self.is_fully_paid,
        }


def _parse_balances(amount, penalty_outstanding, interest_outstanding, principal_outstanding):
    amount = money.to_decimal(amount)
    balances = {
        "penalty": money.to_decimal(penalty_outstanding),
        "interest": money.to_decimal(interest_outstanding),
        "principal": money.to_decimal(principal_outstanding),
    }
    if amount <= ZERO:
        raise InvalidInputError("Payment amount must be greater than 0")
    for name, value in balances.items():
        if value < ZERO:
            raise InvalidInputError(f"Outstanding {name} cannot be negative")
    return amount, balances


def _allocate(amount: Decimal, balances: Dict[str, Decimal], order: Tuple[str, ...],
              config: MicrofinanceConfig) -> RepaymentAllocation:
    remaining = amount
    paid = {}
    for name in order:
        paid[name] = money.min_of(remaining, balances[name])
        remaining = money.sub(remaining, paid[name])

    allocation = RepaymentAllocation(
        payment_amount=amount,
        penalty_paid=paid["penalty"],
        interest_paid=paid["interest"],
        principal_paid=paid["principal"],
        overpayment=remaining,
        remaining_penalty=money.sub(balances["penalty"], paid["penalty"]),
        remaining_interest=money.sub(balances["interest"], paid["interest"]),
        remaining_principal=money.sub(balances["principal"], paid["principal"]),
        is_fully_paid=amount >= money.total(balances.values()),
    )

    if money.add(allocation.allocated_total, allocation.overpayment) != amount:
        report_invariant_violation(
            "Allocation components do not add up to the payment",
            config.strict_invariants, allocation=allocation.to_dict()
        )
    return allocation


def allocate_repayment(
    amount: DecimalLike,
    penalty_outstanding: DecimalLike,
    interest_outstanding: DecimalLike,
    principal_outstanding: DecimalLike,
    config: Optional[MicrofinanceConfig] = None
) -> RepaymentAllocation:
    """
    Apply a payment to penalty, then interest, then principal.

    The order is business policy: penalties and interest income are
    recognised before principal is reduced. Do not reorder.

    Raises:
        InvalidInputError: If amount is not positive or a balance is negative
    """
    amount, balances = _parse_balances(amount, penalty_outstanding, interest_outstanding,
                                       principal_outstanding)
    return _allocate(amount, balances, ("penalty", "interest", "principal"), config or get_config())


def allocate_recovery(
    amount: DecimalLike,
    penalty_unrecovered: DecimalLike,
    interest_unrecovered: DecimalLike,
    principal_unrecovered: DecimalLike,
    config: Optional[MicrofinanceConfig] = None
) -> RepaymentAllocation:
    """
    Apply a recovery on a written-off loan to principal, then interest,
    then penalty.

    The reverse of the repayment waterfall: recoveries restore the written
    off principal before any income is recognised.

    Raises:
        InvalidInputError: If amount is not positive or a balance is negative
    """
    amount, balances = _parse_balances(amount, penalty_unrecovered, interest_unrecovered,
                                       principal_unrecovered)
    return _allocate(amount, balances, ("principal", "interest", "penalty"), config or get_config())
