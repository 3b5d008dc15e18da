"""
Schedule Recalculation Module

Regenerates the remaining amortization schedule after the principal
outstanding changes outside the normal installment flow (a large extra
payment or a restructuring). Elapsed months are kept as they were; the
remaining months keep the existing installment and the term shrinks or
grows to fit the new balance.
"""

from decimal import Decimal
from typing import List, Optional, Sequence
import logging

from . import money
from .money import ZERO, DecimalLike
from .amortization import AmortizationScheduleEntry
from .config import MicrofinanceConfig, get_config
from .errors import InvalidInputError, report_invariant_violation


logger = logging.getLogger(__name__)

# Quotients this close to a whole month are treated as that month
_MONTH_PRECISION = Decimal('1e-12')


def remaining_months(balance: Decimal, periodic_rate: Decimal, installment: Decimal) -> int:
    """
    Months needed to retire balance with a fixed installment, rounded up.

        n = ln(I / (I - B*r)) / ln(1 + r)

    which is the annuity identity B = I * (1 - (1+r)^-n) / r solved for n.
    Rounding up means the last month carries a smaller installment.
    """
    interest = money.mul(balance, periodic_rate)
    if installment <= interest:
        raise InvalidInputError(
            f"Installment {money.round_money(installment)} does not cover monthly interest "
            f"{money.round_money(interest)}; the balance can never be retired"
        )
    ratio = money.div(installment, money.sub(installment, interest))
    months = money.div(money.ln(ratio), money.ln(money.add(money.ONE, periodic_rate)))
    return max(1, money.ceil_to_int(months.quantize(_MONTH_PRECISION)))


def recalculate_schedule(
    original_schedule: Sequence[AmortizationScheduleEntry],
    new_principal_outstanding: DecimalLike,
    rate: DecimalLike,
    original_term: int,
    elapsed_months: int = 0,
    config: Optional[MicrofinanceConfig] = None
) -> List[AmortizationScheduleEntry]:
    """
    Rebuild the schedule tail for a new principal outstanding.

    Args:
        original_schedule: Schedule currently in force
        new_principal_outstanding: Principal left after the out-of-band change
        rate: Interest rate in percent per period
        original_term: Term the original schedule was generated for
        elapsed_months: Months already elapsed; entries up to and including
            this month are returned unmodified

    Returns:
        Elapsed entries followed by the regenerated tail. The original schedule
        is returned unchanged when the rate or the new principal is zero.
    """
    config = config or get_config()
    new_principal_outstanding = money.to_decimal(new_principal_outstanding)
    rate = money.to_decimal(rate)

    if new_principal_outstanding < ZERO:
        raise InvalidInputError("Principal outstanding cannot be negative")
    if rate < ZERO:
        raise InvalidInputError("Interest rate cannot be negative")
    if original_term <= 0:
        raise InvalidInputError("Loan term must be greater than 0")
    if not original_schedule:
        raise InvalidInputError("Original schedule is empty")
    if elapsed_months < 0 or elapsed_months > original_term:
        raise InvalidInputError(f"Elapsed months must be between 0 and {original_term}")

    if rate == ZERO or new_principal_outstanding == ZERO:
        return list(original_schedule)

    preserved = [entry for entry in original_schedule if entry.month <= elapsed_months]
    installment = _current_installment(original_schedule, elapsed_months)
    periodic_rate = money.percent_to_rate(rate)
    months = remaining_months(new_principal_outstanding, periodic_rate, installment)

    tail = []
    balance = new_principal_outstanding
    for offset in range(1, months + 1):
        interest = money.mul(balance, periodic_rate)
        closing = offset == months or money.add(balance, interest) <= installment
        if closing:
            # Last payment retires exactly what is left
            principal = balance
            payment = money.add(balance, interest)
        else:
            principal = money.sub(installment, interest)
            payment = installment
        balance = money.sub(balance, principal)

        tail.append(AmortizationScheduleEntry(
            month=elapsed_months + offset,
            installment=money.round_money(payment),
            principal=money.round_money(principal),
            interest=money.round_money(interest),
            balance=money.round_money(balance),
        ))
        if closing:
            break

    if tail[-1].balance != ZERO:
        report_invariant_violation(
            f"Recalculated schedule does not close: final balance {tail[-1].balance}",
            config.strict_invariants, principal=str(new_principal_outstanding)
        )

    if elapsed_months + len(tail) > original_term:
        logger.info(
            "Recalculated schedule runs %d months past the original %d month term",
            elapsed_months + len(tail) - original_term, original_term
        )

    return preserved + tail


def _current_installment(schedule: Sequence[AmortizationScheduleEntry], elapsed_months: int) -> Decimal:
    for entry in schedule:
        if entry.month == elapsed_months + 1:
            return entry.installment
    return schedule[0].installment
