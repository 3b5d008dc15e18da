"""
Amortization Engine

Computes the monthly installment, total interest, total payable and the full
month-by-month schedule for a loan under flat or reducing-balance interest.
Pure functions: identical inputs always produce identical schedules.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import logging

from . import money
from .money import ZERO, CENT, DecimalLike
from .config import MicrofinanceConfig, get_config
from .errors import InvalidInputError, report_invariant_violation


logger = logging.getLogger(__name__)


class InterestType(Enum):
    """Interest regimes offered on loan products"""
    FLAT = "flat"            # Interest on original principal for the full term
    REDUCING = "reducing"    # Interest on the outstanding balance each period

    @classmethod
    def parse(cls, value) -> 'InterestType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown interest type '{value}', expected 'flat' or 'reducing'")


@dataclass(frozen=True)
class AmortizationScheduleEntry:
    """Single month in an amortization schedule"""
    month: int
    installment: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "installment": str(self.installment),
            "principal": str(self.principal),
            "interest": str(self.interest),
            "balance": str(self.balance),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AmortizationScheduleEntry':
        return cls(
            month=int(data["month"]),
            installment=money.to_decimal(data["installment"]),
            principal=money.to_decimal(data["principal"]),
            interest=money.to_decimal(data["interest"]),
            balance=money.to_decimal(data["balance"]),
        )


@dataclass(frozen=True)
class AmortizationResult:
    """Loan repayment summary, rounded to cents"""
    installment: Decimal
    total_interest: Decimal
    total_payable: Decimal
    schedule: List[AmortizationScheduleEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment": str(self.installment),
            "total_interest": str(self.total_interest),
            "total_payable": str(self.total_payable),
            "schedule": [entry.to_dict() for entry in self.schedule],
        }


def validate_loan_terms(
    principal: DecimalLike,
    rate: DecimalLike,
    term: int,
    config: Optional[MicrofinanceConfig] = None
) -> tuple:
    """
    Check principal, rate (percent per period) and term before any computation.

    Returns:
        (principal, rate) as Decimals

    Raises:
        InvalidInputError: For non-positive principal or term, negative rate,
            or values beyond the configured product limits
    """
    config = config or get_config()
    principal = money.to_decimal(principal)
    rate = money.to_decimal(rate)

    if isinstance(term, bool) or not isinstance(term, int):
        raise InvalidInputError(f"Loan term must be a whole number of months, got {term!r}")
    if principal <= ZERO:
        raise InvalidInputError("Amount must be greater than 0")
    if term <= 0:
        raise InvalidInputError("Loan term must be greater than 0")
    if rate < ZERO:
        raise InvalidInputError("Interest rate cannot be negative")
    if term > config.max_term_months:
        raise InvalidInputError(f"Loan term cannot exceed {config.max_term_months} months")
    if rate > money.to_decimal(config.max_interest_rate):
        raise InvalidInputError(f"Interest rate cannot exceed {config.max_interest_rate}%")

    return principal, rate


def annuity_installment(principal: Decimal, periodic_rate: Decimal, term: int) -> Decimal:
    """
    Equal installment for a reducing-balance loan, unrounded.

        payment = P * r * (1 + r)^n / ((1 + r)^n - 1)

    With a zero rate the payment simplifies to P / n.
    """
    if periodic_rate == ZERO:
        return money.div(principal, Decimal(term))
    factor = money.power(money.add(money.ONE, periodic_rate), term)
    numerator = money.mul(money.mul(principal, periodic_rate), factor)
    return money.div(numerator, money.sub(factor, money.ONE))


def compute_amortization(
    principal: DecimalLike,
    rate: DecimalLike,
    term: int,
    interest_type,
    config: Optional[MicrofinanceConfig] = None
) -> AmortizationResult:
    """
    Compute installment, totals and schedule for a loan.

    Args:
        principal: Amount disbursed
        rate: Interest rate in percent per period (5 means 5% per month)
        term: Number of monthly periods
        interest_type: InterestType or its wire name ("flat" / "reducing")

    Returns:
        AmortizationResult rounded to cents
    """
    config = config or get_config()
    interest_type = InterestType.parse(interest_type)
    principal, rate = validate_loan_terms(principal, rate, term, config)
    periodic_rate = money.percent_to_rate(rate)

    if interest_type == InterestType.FLAT:
        installment, total_interest, total_payable, rows = _flat_schedule(principal, periodic_rate, term)
    else:
        installment, total_interest, total_payable, rows = _reducing_schedule(principal, periodic_rate, term)

    schedule = [
        AmortizationScheduleEntry(
            month=month,
            installment=money.round_money(row_installment),
            principal=money.round_money(row_principal),
            interest=money.round_money(row_interest),
            balance=money.round_money(row_balance),
        )
        for month, row_installment, row_principal, row_interest, row_balance in rows
    ]

    result = AmortizationResult(
        installment=money.round_money(installment),
        total_interest=money.round_money(total_interest),
        total_payable=money.round_money(total_payable),
        schedule=schedule,
    )
    _verify_schedule(result, principal, term, config)
    return result


def _flat_schedule(principal: Decimal, periodic_rate: Decimal, term: int):
    n = Decimal(term)
    total_interest = money.mul(money.mul(principal, periodic_rate), n)
    total_payable = money.add(principal, total_interest)
    installment = money.div(total_payable, n)
    principal_component = money.div(principal, n)
    interest_component = money.div(total_interest, n)

    rows = []
    balance = total_payable
    for month in range(1, term + 1):
        balance = money.sub(balance, installment)
        rows.append((month, installment, principal_component, interest_component,
                     money.max_of(ZERO, balance)))

    return installment, total_interest, total_payable, rows


def _reducing_schedule(principal: Decimal, periodic_rate: Decimal, term: int):
    installment = annuity_installment(principal, periodic_rate, term)
    if periodic_rate == ZERO:
        total_payable = principal
        total_interest = ZERO
    else:
        total_payable = money.mul(installment, Decimal(term))
        total_interest = money.sub(total_payable, principal)

    rows = []
    balance = principal
    for month in range(1, term + 1):
        interest_component = money.mul(balance, periodic_rate)
        principal_component = money.sub(installment, interest_component)
        balance = money.max_of(ZERO, money.sub(balance, principal_component))
        rows.append((month, installment, principal_component, interest_component, balance))

    return installment, total_interest, total_payable, rows


def _verify_schedule(result: AmortizationResult, principal: Decimal, term: int,
                     config: MicrofinanceConfig) -> None:
    """Schedule must close at zero and its principal must add back to P"""
    tolerance = money.mul(CENT, Decimal(term))
    final_balance = result.schedule[-1].balance
    principal_sum = money.total(entry.principal for entry in result.schedule)

    if final_balance != ZERO:
        report_invariant_violation(
            f"Schedule does not close: final balance {final_balance}",
            config.strict_invariants, principal=str(principal), term=term
        )
    if abs(money.sub(principal_sum, principal)) > tolerance:
        report_invariant_violation(
            f"Schedule principal {principal_sum} does not reconcile to {principal}",
            config.strict_invariants, principal=str(principal), term=term
        )
