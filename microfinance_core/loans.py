"""
Loan Module

Connects the pure engines to the ledger: disbursement with its amortization
schedule and reference number, repayments split by the allocation waterfall,
extra payments that shorten the schedule, repayment reversals, write-offs
against the provision account and recoveries on written-off loans.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from . import money
from .money import ZERO, DecimalLike
from .amortization import AmortizationScheduleEntry, InterestType, compute_amortization
from .allocation import RepaymentAllocation, allocate_recovery, allocate_repayment
from .recalculation import recalculate_schedule
from .ledger import LedgerPoster, JournalReferenceType, PostingResult
from .references import ReferenceGenerator
from .repository import LedgerRepository
from .backdate import GovernanceApproval
from .audit import AuditTrail, AuditEventType
from .config import MicrofinanceConfig, get_config
from .errors import AccountNotFoundError, InvalidInputError


logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states handled by the engine"""
    ACTIVE = "active"             # Disbursed, balances outstanding
    COMPLETED = "completed"       # All balances retired
    WRITTEN_OFF = "written_off"   # Balances cleared, principal moved to provision


class RecoveryStatus(Enum):
    NONE = "none"
    PARTIAL = "partial"
    FULL = "full"


class RecoveryType(Enum):
    PAYMENT = "payment"
    COLLATERAL_SALE = "collateral_sale"
    INSURANCE = "insurance"
    OTHER = "other"

    @classmethod
    def parse(cls, value) -> 'RecoveryType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInputError(f"Unknown recovery type '{value}'")


@dataclass(frozen=True)
class RepaymentRecord:
    """One posted repayment and how it was split"""
    journal_entry_id: str
    payment_date: date
    penalty_paid: Decimal
    interest_paid: Decimal
    principal_paid: Decimal
    overpayment: Decimal
    reversed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "journal_entry_id": self.journal_entry_id,
            "payment_date": self.payment_date.isoformat(),
            "penalty_paid": str(self.penalty_paid),
            "interest_paid": str(self.interest_paid),
            "principal_paid": str(self.principal_paid),
            "overpayment": str(self.overpayment),
            "reversed": self.reversed,
        }


@dataclass(frozen=True)
class WriteOffRecord:
    """Balances cleared at write-off and what has been recovered since"""
    journal_entry_id: str
    reason: str
    principal_written_off: Decimal
    interest_written_off: Decimal
    penalty_written_off: Decimal
    principal_recovered: Decimal = ZERO
    interest_recovered: Decimal = ZERO
    penalty_recovered: Decimal = ZERO
    recovery_entry_ids: Tuple[str, ...] = ()

    @property
    def total_written_off(self) -> Decimal:
        return money.total([self.principal_written_off, self.interest_written_off,
                            self.penalty_written_off])

    @property
    def total_recovered(self) -> Decimal:
        return money.total([self.principal_recovered, self.interest_recovered,
                            self.penalty_recovered])

    @property
    def recovery_status(self) -> RecoveryStatus:
        if self.total_recovered == ZERO:
            return RecoveryStatus.NONE
        if self.total_recovered >= self.total_written_off:
            return RecoveryStatus.FULL
        return RecoveryStatus.PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "journal_entry_id": self.journal_entry_id,
            "reason": self.reason,
            "principal_written_off": str(self.principal_written_off),
            "interest_written_off": str(self.interest_written_off),
            "penalty_written_off": str(self.penalty_written_off),
            "principal_recovered": str(self.principal_recovered),
            "interest_recovered": str(self.interest_recovered),
            "penalty_recovered": str(self.penalty_recovered),
            "total_written_off": str(self.total_written_off),
            "total_recovered": str(self.total_recovered),
            "recovery_status": self.recovery_status.value,
            "recovery_entry_ids": list(self.recovery_entry_ids),
        }


@dataclass
class Loan:
    """Loan created at disbursement; balances change only through LoanService"""
    id: str
    reference_no: str
    borrower_id: str
    principal_amount: Decimal
    interest_rate: Decimal  # Percent per period
    term_months: int
    interest_type: InterestType
    disbursement_date: date
    principal_outstanding: Decimal
    interest_outstanding: Decimal
    penalty_outstanding: Decimal = ZERO
    status: LoanStatus = LoanStatus.ACTIVE
    schedule: List[AmortizationScheduleEntry] = field(default_factory=list)
    disbursement_entry_id: Optional[str] = None
    repayments: List[RepaymentRecord] = field(default_factory=list)
    write_off: Optional[WriteOffRecord] = None

    @property
    def total_outstanding(self) -> Decimal:
        return money.total([self.principal_outstanding, self.interest_outstanding,
                            self.penalty_outstanding])

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference_no": self.reference_no,
            "borrower_id": self.borrower_id,
            "principal_amount": str(self.principal_amount),
            "interest_rate": str(self.interest_rate),
            "term_months": self.term_months,
            "interest_type": self.interest_type.value,
            "disbursement_date": self.disbursement_date.isoformat(),
            "principal_outstanding": str(self.principal_outstanding),
            "interest_outstanding": str(self.interest_outstanding),
            "penalty_outstanding": str(self.penalty_outstanding),
            "status": self.status.value,
            "schedule": [entry.to_dict() for entry in self.schedule],
            "disbursement_entry_id": self.disbursement_entry_id,
            "repayments": [record.to_dict() for record in self.repayments],
            "write_off": self.write_off.to_dict() if self.write_off else None,
        }


@dataclass(frozen=True)
class RepaymentOutcome:
    loan: Loan
    allocation: RepaymentAllocation
    posting: PostingResult


class LoanService:
    """
    Posts loan events to the ledger using the configured system accounts
    """

    def __init__(
        self,
        poster: LedgerPoster,
        references: ReferenceGenerator,
        repository: Optional[LedgerRepository] = None,
        config: Optional[MicrofinanceConfig] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.poster = poster
        self.references = references
        self.repository = repository or poster.repository
        self.config = config or get_config()
        self.audit_trail = audit_trail

    def disburse_loan(
        self,
        borrower_id: str,
        principal: DecimalLike,
        rate: DecimalLike,
        term_months: int,
        interest_type,
        cash_account_id: str,
        user_id: str,
        disbursement_date: Optional[date] = None
    ) -> Loan:
        """
        Create an active loan and post the disbursement

        Debits the loan portfolio and credits the cash account the money
        leaves from.

        Raises:
            InvalidInputError: Invalid loan terms
            AccountNotFoundError: Cash account or portfolio account missing
        """
        amortization = compute_amortization(principal, rate, term_months, interest_type, self.config)
        principal = money.to_decimal(principal)
        portfolio = self._system_account(self.config.portfolio_account_code)
        reference_no = self.references.generate_reference()

        loan = Loan(
            id=str(uuid.uuid4()),
            reference_no=reference_no,
            borrower_id=borrower_id,
            principal_amount=principal,
            interest_rate=money.to_decimal(rate),
            term_months=term_months,
            interest_type=InterestType.parse(interest_type),
            disbursement_date=disbursement_date or self.poster.clock(),
            principal_outstanding=principal,
            interest_outstanding=amortization.total_interest,
            schedule=list(amortization.schedule),
        )

        posting = self.poster.post_journal_entry(
            reference_type=JournalReferenceType.DISBURSEMENT,
            reference_id=loan.id,
            description=f"Loan disbursement {reference_no}",
            lines=[
                {"account_id": portfolio, "debit": principal},
                {"account_id": cash_account_id, "credit": principal},
            ],
            user_id=user_id,
            entry_date=loan.disbursement_date,
        )
        loan.disbursement_entry_id = posting.id

        logger.info("Disbursed loan %s for %s", reference_no, money.format_money(principal))
        self._audit(AuditEventType.LOAN_DISBURSED, loan, user_id, {
            "principal": principal,
            "total_interest": amortization.total_interest,
            "installment": amortization.installment,
            "journal_entry_id": posting.id,
        })
        return loan

    def record_repayment(
        self,
        loan: Loan,
        amount: DecimalLike,
        cash_account_id: str,
        user_id: str,
        payment_date: Optional[date] = None
    ) -> RepaymentOutcome:
        """
        Split a payment with the allocation waterfall and post it

        Cash is debited with the whole amount; the portfolio is credited with
        principal, interest income with interest plus penalty, and any
        overpayment is held as a liability until refunded or credited.
        """
        self._require_active(loan)
        allocation = allocate_repayment(
            amount, loan.penalty_outstanding, loan.interest_outstanding,
            loan.principal_outstanding, self.config
        )

        lines = [{"account_id": cash_account_id, "debit": allocation.payment_amount}]
        if allocation.principal_paid > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.portfolio_account_code),
                "credit": allocation.principal_paid,
            })
        income = money.add(allocation.interest_paid, allocation.penalty_paid)
        if income > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.interest_income_account_code),
                "credit": income,
            })
        if allocation.overpayment > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.overpayment_account_code),
                "credit": allocation.overpayment,
            })

        posting = self.poster.post_journal_entry(
            reference_type=JournalReferenceType.REPAYMENT,
            reference_id=loan.id,
            description=f"Repayment from {loan.reference_no}",
            lines=lines,
            user_id=user_id,
            entry_date=payment_date,
        )

        updated = replace(
            loan,
            penalty_outstanding=allocation.remaining_penalty,
            interest_outstanding=allocation.remaining_interest,
            principal_outstanding=allocation.remaining_principal,
            repayments=loan.repayments + [RepaymentRecord(
                journal_entry_id=posting.id,
                payment_date=posting.date,
                penalty_paid=allocation.penalty_paid,
                interest_paid=allocation.interest_paid,
                principal_paid=allocation.principal_paid,
                overpayment=allocation.overpayment,
            )],
        )
        if updated.total_outstanding == ZERO:
            updated.status = LoanStatus.COMPLETED
            logger.info("Loan %s fully repaid", loan.reference_no)

        self._audit(AuditEventType.REPAYMENT_RECORDED, updated, user_id, {
            "journal_entry_id": posting.id,
            "allocation": allocation.to_dict(),
            "status": updated.status,
        })
        return RepaymentOutcome(loan=updated, allocation=allocation, posting=posting)

    def apply_extra_payment(
        self,
        loan: Loan,
        amount: DecimalLike,
        cash_account_id: str,
        user_id: str,
        elapsed_months: int,
        payment_date: Optional[date] = None
    ) -> RepaymentOutcome:
        """
        Record an out-of-schedule payment and regenerate the schedule tail

        Months up to elapsed_months keep their entries; the remaining
        months keep the current installment, so the term shortens.
        Interest outstanding becomes the interest of the new tail.
        """
        outcome = self.record_repayment(loan, amount, cash_account_id, user_id, payment_date)
        updated = outcome.loan
        if updated.status != LoanStatus.ACTIVE or updated.principal_outstanding == ZERO:
            return outcome

        schedule = recalculate_schedule(
            updated.schedule, updated.principal_outstanding, updated.interest_rate,
            updated.term_months, elapsed_months, self.config
        )
        tail_interest = money.total(entry.interest for entry in schedule if entry.month > elapsed_months)
        updated = replace(
            updated,
            schedule=schedule,
            interest_outstanding=money.min_of(updated.interest_outstanding, tail_interest),
        )

        self._audit(AuditEventType.SCHEDULE_RECALCULATED, updated, user_id, {
            "elapsed_months": elapsed_months,
            "remaining_months": len(schedule) - elapsed_months,
            "principal_outstanding": updated.principal_outstanding,
        })
        return RepaymentOutcome(loan=updated, allocation=outcome.allocation, posting=outcome.posting)

    def reverse_repayment(
        self,
        loan: Loan,
        journal_entry_id: str,
        user_id: str,
        reason: str
    ) -> Loan:
        """
        Reverse a posted repayment and put its amounts back on the loan

        The reversal entry mirrors every line of the repayment, overpayment
        included. The loan is active again even if the repayment completed
        it; the schedule is left as it is.

        Raises:
            InvalidInputError: Loan written off, repayment unknown or
                already reversed, or no reason
        """
        if loan.status == LoanStatus.WRITTEN_OFF:
            raise InvalidInputError(
                f"Loan {loan.reference_no} is written off; reverse its repayments before writing it off"
            )
        index = next(
            (i for i, record in enumerate(loan.repayments) if record.journal_entry_id == journal_entry_id),
            None
        )
        if index is None:
            raise InvalidInputError(f"Repayment {journal_entry_id} not found on loan {loan.reference_no}")
        record = loan.repayments[index]
        if record.reversed:
            raise InvalidInputError(f"Repayment {journal_entry_id} already reversed")

        posting = self.poster.reverse_journal_entry(journal_entry_id, user_id, reason)

        repayments = list(loan.repayments)
        repayments[index] = replace(record, reversed=True)
        updated = replace(
            loan,
            principal_outstanding=money.add(loan.principal_outstanding, record.principal_paid),
            interest_outstanding=money.add(loan.interest_outstanding, record.interest_paid),
            penalty_outstanding=money.add(loan.penalty_outstanding, record.penalty_paid),
            status=LoanStatus.ACTIVE,
            repayments=repayments,
        )

        logger.info("Repayment %s on loan %s reversed", journal_entry_id, loan.reference_no)
        self._audit(AuditEventType.REPAYMENT_REVERSED, updated, user_id, {
            "journal_entry_id": journal_entry_id,
            "reversal_entry_id": posting.id,
            "reason": reason,
            "principal": record.principal_paid,
            "interest": record.interest_paid,
            "penalty": record.penalty_paid,
        })
        return updated

    def write_off_loan(
        self,
        loan: Loan,
        user_id: str,
        reason: str,
        approval: Optional[GovernanceApproval] = None,
        entry_date: Optional[date] = None
    ) -> Loan:
        """
        Move the remaining principal from the portfolio to the provision account

        All outstanding balances are cleared on the loan and kept on its
        write-off record so later recoveries can be measured against them.
        Only principal is posted; interest and penalty were never booked
        as income.

        Raises:
            InvalidInputError: Loan not active, nothing to write off, or no reason
        """
        self._require_active(loan)
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required to write off a loan")
        if loan.principal_outstanding <= ZERO:
            raise InvalidInputError(f"Loan {loan.reference_no} has no principal to write off")

        amount = loan.principal_outstanding
        posting = self.poster.post_journal_entry(
            reference_type=JournalReferenceType.WRITE_OFF,
            reference_id=loan.id,
            description=f"Write-off of loan {loan.reference_no}: {reason.strip()}",
            lines=[
                {"account_id": self._system_account(self.config.provision_account_code), "debit": amount},
                {"account_id": self._system_account(self.config.portfolio_account_code), "credit": amount},
            ],
            user_id=user_id,
            entry_date=entry_date,
            approval=approval,
        )

        write_off = WriteOffRecord(
            journal_entry_id=posting.id,
            reason=reason.strip(),
            principal_written_off=loan.principal_outstanding,
            interest_written_off=loan.interest_outstanding,
            penalty_written_off=loan.penalty_outstanding,
        )
        updated = replace(
            loan,
            status=LoanStatus.WRITTEN_OFF,
            principal_outstanding=ZERO,
            interest_outstanding=ZERO,
            penalty_outstanding=ZERO,
            write_off=write_off,
        )
        logger.warning("Loan %s written off: %s", loan.reference_no, money.format_money(amount))
        self._audit(AuditEventType.LOAN_WRITTEN_OFF, updated, user_id, {
            "amount": amount,
            "principal": write_off.principal_written_off,
            "interest": write_off.interest_written_off,
            "penalty": write_off.penalty_written_off,
            "reason": reason,
            "journal_entry_id": posting.id,
        })
        return updated

    def record_recovery_payment(
        self,
        loan: Loan,
        amount: DecimalLike,
        cash_account_id: str,
        user_id: str,
        recovery_type=RecoveryType.PAYMENT,
        description: Optional[str] = None,
        payment_date: Optional[date] = None
    ) -> RepaymentOutcome:
        """
        Record money received on a written-off loan

        The amount is applied principal first, then interest, then penalty,
        against what was written off and not yet recovered. Cash is debited
        with the whole amount; recovered principal is credited back to the
        provision account that absorbed it, recovered interest and penalty
        to recovery income, and any excess is held as an overpayment.

        Raises:
            InvalidInputError: Loan not written off or already fully
                recovered, unknown recovery type, or amount not positive
        """
        if loan.status != LoanStatus.WRITTEN_OFF or loan.write_off is None:
            raise InvalidInputError(f"Loan {loan.reference_no} is {loan.status.value}, not written off")
        write_off = loan.write_off
        if write_off.recovery_status == RecoveryStatus.FULL:
            raise InvalidInputError(f"Loan {loan.reference_no} is already fully recovered")
        recovery_type = RecoveryType.parse(recovery_type)

        allocation = allocate_recovery(
            amount,
            money.sub(write_off.penalty_written_off, write_off.penalty_recovered),
            money.sub(write_off.interest_written_off, write_off.interest_recovered),
            money.sub(write_off.principal_written_off, write_off.principal_recovered),
            self.config
        )

        lines = [{"account_id": cash_account_id, "debit": allocation.payment_amount}]
        if allocation.principal_paid > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.provision_account_code),
                "credit": allocation.principal_paid,
            })
        income = money.add(allocation.interest_paid, allocation.penalty_paid)
        if income > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.recovery_income_account_code),
                "credit": income,
            })
        if allocation.overpayment > ZERO:
            lines.append({
                "account_id": self._system_account(self.config.overpayment_account_code),
                "credit": allocation.overpayment,
            })

        text = f"Recovery payment for written-off loan {loan.reference_no}"
        if description and description.strip():
            text = f"{text}: {description.strip()}"
        posting = self.poster.post_journal_entry(
            reference_type=JournalReferenceType.RECOVERY,
            reference_id=loan.id,
            description=text,
            lines=lines,
            user_id=user_id,
            entry_date=payment_date,
        )

        updated = replace(loan, write_off=replace(
            write_off,
            principal_recovered=money.add(write_off.principal_recovered, allocation.principal_paid),
            interest_recovered=money.add(write_off.interest_recovered, allocation.interest_paid),
            penalty_recovered=money.add(write_off.penalty_recovered, allocation.penalty_paid),
            recovery_entry_ids=write_off.recovery_entry_ids + (posting.id,),
        ))

        logger.info("Recovered %s on written-off loan %s (%s)",
                    money.format_money(allocation.payment_amount), loan.reference_no,
                    updated.write_off.recovery_status.value)
        self._audit(AuditEventType.LOAN_RECOVERY_RECORDED, updated, user_id, {
            "journal_entry_id": posting.id,
            "recovery_type": recovery_type,
            "allocation": allocation.to_dict(),
            "recovery_status": updated.write_off.recovery_status,
        })
        return RepaymentOutcome(loan=updated, allocation=allocation, posting=posting)

    def _system_account(self, code: str) -> str:
        account = self.repository.get_account_by_code(code)
        if not account:
            raise AccountNotFoundError(code)
        return account["id"]

    @staticmethod
    def _require_active(loan: Loan) -> None:
        if not loan.is_active:
            raise InvalidInputError(f"Loan {loan.reference_no} is {loan.status.value}, not active")

    def _audit(self, event_type: AuditEventType, loan: Loan, user_id: str, metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            metadata = dict(metadata, reference_no=loan.reference_no)
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=user_id
            )
