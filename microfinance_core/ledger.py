"""
Double-Entry Ledger Poster

Validates and atomically commits journal entries whose debits equal their
credits. Entries are immutable once posted; corrections are made by posting
a reversal entry with every line's debit and credit swapped. Backdate and
closed-period rules are checked inside the same repository transaction as
the insert.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from enum import Enum
import logging
import uuid

from . import money
from .money import ZERO
from .config import MicrofinanceConfig, get_config
from .repository import LedgerRepository, period_key
from .audit import AuditTrail, AuditEventType
from .backdate import GovernanceApproval, check_backdate_permission, redeem_approval, validate_approval
from .logging_config import log_action
from .errors import (
    AccountNotFoundError, ApprovalRequiredError, BackdateApprovalRequiredError,
    InvalidInputError, JournalEntryNotFoundError, PeriodClosedError,
    UnbalancedEntryError, report_invariant_violation
)


logger = logging.getLogger(__name__)


class JournalReferenceType(Enum):
    """What a journal entry records"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    INJECTION = "injection"
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"
    WRITE_OFF = "write_off"
    RECOVERY = "recovery"

    @classmethod
    def parse(cls, value) -> 'JournalReferenceType':
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "loan_disbursement":
            name = "disbursement"
        try:
            return cls(name)
        except ValueError:
            raise InvalidInputError(f"Unknown journal reference type '{value}'")


class JournalEntryState(Enum):
    """States of a journal entry"""
    DRAFT = "draft"          # Constructed, not yet checked
    VALIDATED = "validated"  # Lines well formed and balanced
    POSTED = "posted"        # Committed and immutable
    REVERSED = "reversed"    # Cancelled by a paired reversal entry


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    REVENUE = "revenue"       # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance


@dataclass
class Account:
    """Internal ledger account"""
    id: str
    code: Optional[str]
    name: str
    account_type: AccountType
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "account_type": self.account_type.value,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data["id"],
            code=data.get("code"),
            name=data["name"],
            account_type=AccountType(data["account_type"]),
            is_active=data.get("is_active", True),
        )


@dataclass(frozen=True)
class JournalLine:
    """
    Individual line in a journal entry
    Each line affects one account with either a debit or a credit
    """
    account_id: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO

    def __post_init__(self):
        object.__setattr__(self, 'debit', money.to_decimal(self.debit))
        object.__setattr__(self, 'credit', money.to_decimal(self.credit))

        if not self.account_id:
            raise InvalidInputError("Journal line must reference an account")
        if self.debit < ZERO or self.credit < ZERO:
            raise InvalidInputError("Journal line amounts cannot be negative")
        if self.debit == ZERO and self.credit == ZERO:
            raise InvalidInputError("Journal line must have either debit or credit amount")
        if self.debit != ZERO and self.credit != ZERO:
            raise InvalidInputError("Journal line cannot have both debit and credit amounts")

    @property
    def is_debit(self) -> bool:
        return self.debit != ZERO

    @property
    def amount(self) -> Decimal:
        return self.debit if self.is_debit else self.credit

    def swapped(self) -> 'JournalLine':
        """Same account, debit and credit exchanged"""
        return JournalLine(account_id=self.account_id, debit=self.credit, credit=self.debit)

    def to_dict(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "debit": str(self.debit), "credit": str(self.credit)}

    @classmethod
    def coerce(cls, line: Union['JournalLine', Dict[str, Any]]) -> 'JournalLine':
        """Accept JournalLine objects or {account_id, debit, credit} mappings"""
        if isinstance(line, cls):
            return line
        return cls(
            account_id=line.get("account_id"),
            debit=line.get("debit") or ZERO,
            credit=line.get("credit") or ZERO,
        )


@dataclass
class JournalEntry:
    """
    Double-entry journal entry with lines that must balance
    Immutable once posted
    """
    id: str
    reference_type: JournalReferenceType
    reference_id: Optional[str]
    description: str
    entry_date: date
    created_by: str
    lines: List[JournalLine]
    state: JournalEntryState = JournalEntryState.DRAFT
    created_at: Optional[datetime] = None
    reverses: Optional[str] = None
    reversed_by: Optional[str] = None
    approval: Optional[GovernanceApproval] = None

    @property
    def total_debits(self) -> Decimal:
        return money.total(line.debit for line in self.lines)

    @property
    def total_credits(self) -> Decimal:
        return money.total(line.credit for line in self.lines)

    def get_affected_accounts(self) -> List[str]:
        return sorted({line.account_id for line in self.lines})

    def validate(self) -> None:
        """
        Check the fundamental rule of double-entry bookkeeping and move to VALIDATED

        Raises:
            InvalidInputError: No lines or no description
            UnbalancedEntryError: Debits differ from credits
        """
        if self.state != JournalEntryState.DRAFT:
            raise InvalidInputError(f"Cannot validate journal entry in {self.state.value} state")
        if not self.lines:
            raise InvalidInputError("Journal entry must have at least one line")
        if not self.description or not self.description.strip():
            raise InvalidInputError("Journal entry requires a description")

        debits, credits = self.total_debits, self.total_credits
        if debits != credits:
            raise UnbalancedEntryError(debits, credits)
        self.state = JournalEntryState.VALIDATED

    def mark_posted(self) -> None:
        if self.state != JournalEntryState.VALIDATED:
            raise InvalidInputError(f"Cannot post journal entry in {self.state.value} state")
        self.state = JournalEntryState.POSTED

    def header_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference_type": self.reference_type.value,
            "reference_id": self.reference_id,
            "description": self.description,
            "entry_date": self.entry_date.isoformat(),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "state": self.state.value,
            "reverses": self.reverses,
            "reversed_by": self.reversed_by,
            "approved_by": self.approval.approver_id if self.approval else None,
            "approver_role": self.approval.approver_role if self.approval else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.header_dict()
        result["lines"] = [line.to_dict() for line in self.lines]
        result["total_debits"] = str(self.total_debits)
        result["total_credits"] = str(self.total_credits)
        return result

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> 'JournalEntry':
        approval = None
        if data.get("approved_by"):
            approval = GovernanceApproval(
                approver_id=data["approved_by"], approver_role=data.get("approver_role")
            )
        return cls(
            id=data["id"],
            reference_type=JournalReferenceType(data["reference_type"]),
            reference_id=data.get("reference_id"),
            description=data["description"],
            entry_date=date.fromisoformat(data["entry_date"]),
            created_by=data["created_by"],
            lines=[JournalLine.coerce(line) for line in data["lines"]],
            state=JournalEntryState(data["state"]),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
            reverses=data.get("reverses"),
            reversed_by=data.get("reversed_by"),
            approval=approval,
        )


@dataclass(frozen=True)
class PostingResult:
    """What the caller gets back from a successful posting"""
    id: str
    date: date
    debits: Decimal
    credits: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "debits": str(self.debits),
            "credits": str(self.credits),
        }


class LedgerPoster:
    """
    Posts balanced journal entries through the repository's atomic path
    """

    def __init__(
        self,
        repository: LedgerRepository,
        config: Optional[MicrofinanceConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], date]] = None
    ):
        self.repository = repository
        self.config = config or get_config()
        self.audit_trail = audit_trail
        self.clock = clock or date.today

    def post_journal_entry(
        self,
        reference_type,
        reference_id: Optional[str],
        description: str,
        lines: Iterable[Union[JournalLine, Dict[str, Any]]],
        user_id: str,
        entry_date: Optional[Union[date, str]] = None,
        approval: Optional[GovernanceApproval] = None
    ) -> PostingResult:
        """
        Validate and post a journal entry

        Args:
            reference_type: JournalReferenceType or its wire name
            reference_id: ID of the source record (repayment, loan, ...)
            description: Human-readable description
            lines: Journal lines; each has exactly one of debit/credit
            user_id: Creator of the entry
            entry_date: Accounting date, defaults to today
            approval: Governance approval waiving backdate and closed-period checks

        Returns:
            PostingResult with the new entry id, date and totals

        Raises:
            UnbalancedEntryError, FutureDatedEntryError, BackdateApprovalRequiredError,
            PeriodClosedError, AccountNotFoundError, InvalidInputError
        """
        entry = self.build_entry(reference_type, reference_id, description, lines, user_id,
                                 entry_date, approval)
        self._commit(entry)
        return PostingResult(entry.id, entry.entry_date, entry.total_debits, entry.total_credits)

    def build_entry(
        self,
        reference_type,
        reference_id: Optional[str],
        description: str,
        lines: Iterable[Union[JournalLine, Dict[str, Any]]],
        user_id: str,
        entry_date: Optional[Union[date, str]] = None,
        approval: Optional[GovernanceApproval] = None
    ) -> JournalEntry:
        """Construct a DRAFT entry from caller input"""
        if not user_id:
            raise InvalidInputError("Journal entry requires the creating user")
        if isinstance(entry_date, str):
            try:
                entry_date = date.fromisoformat(entry_date)
            except ValueError:
                raise InvalidInputError(f"Invalid entry date '{entry_date}'")

        return JournalEntry(
            id=str(uuid.uuid4()),
            reference_type=JournalReferenceType.parse(reference_type),
            reference_id=reference_id,
            description=description,
            entry_date=entry_date or self.clock(),
            created_by=user_id,
            lines=[JournalLine.coerce(line) for line in lines],
            approval=approval,
        )

    def reverse_journal_entry(self, original_entry_id: str, user_id: str, reason: str) -> PostingResult:
        """
        Reverse a posted journal entry by posting its mirror image

        Args:
            original_entry_id: Entry to reverse
            user_id: User requesting the reversal
            reason: Why the entry is being reversed

        Returns:
            PostingResult for the new reversal entry

        Raises:
            JournalEntryNotFoundError: If the original does not exist
            InvalidInputError: If the original is a reversal or already reversed
        """
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required to reverse a journal entry")

        original = self.get_journal_entry(original_entry_id)
        reversal = JournalEntry(
            id=str(uuid.uuid4()),
            reference_type=JournalReferenceType.REVERSAL,
            reference_id=original.id,
            description=f"REVERSAL of Entry #{original.id[:8]}: {reason.strip()}",
            entry_date=self.clock(),
            created_by=user_id,
            lines=[line.swapped() for line in original.lines],
            reverses=original.id,
        )

        def mark_original_reversed():
            # Re-read inside the transaction so two concurrent reversals cannot both win
            current = self.repository.find_journal_entry(original.id)
            state = JournalEntryState(current["state"])
            if current["reference_type"] == JournalReferenceType.REVERSAL.value:
                raise InvalidInputError(f"Journal entry {original.id} is itself a reversal")
            if state != JournalEntryState.POSTED:
                raise InvalidInputError(f"Can only reverse posted journal entries, {original.id} is {state.value}")
            self.repository.mark_journal_entry_reversed(original.id, reversal.id)

        for original_line, reversal_line in zip(original.lines, reversal.lines):
            if original_line.debit != reversal_line.credit or original_line.credit != reversal_line.debit:
                report_invariant_violation(
                    "Reversal line does not mirror the original",
                    self.config.strict_invariants, entry_id=original.id
                )

        def audit_reversal():
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.JOURNAL_ENTRY_REVERSED,
                    entity_type="journal_entry",
                    entity_id=original.id,
                    metadata={"reversing_entry_id": reversal.id, "reversal_reason": reason},
                    user_id=user_id
                )

        self._commit(reversal, before_insert=mark_original_reversed, after_insert=audit_reversal)
        logger.info("Journal entry %s reversed by %s", original.id, reversal.id)
        return PostingResult(reversal.id, reversal.entry_date, reversal.total_debits, reversal.total_credits)

    def get_journal_entry(self, entry_id: str) -> JournalEntry:
        record = self.repository.find_journal_entry(entry_id)
        if not record:
            raise JournalEntryNotFoundError(entry_id)
        return JournalEntry.from_record(record)

    def account_balance(self, account_id: str) -> Decimal:
        """
        Net debit balance of an account derived from posted lines.
        Reversed entries stay in the sum; their reversals cancel them.
        """
        if not self.repository.get_account(account_id):
            raise AccountNotFoundError(account_id)
        balance = ZERO
        for line in self.repository.posted_lines_for_account(account_id):
            balance = money.add(balance, money.sub(money.to_decimal(line["debit"]),
                                                   money.to_decimal(line["credit"])))
        return balance

    def trial_balance(self) -> Dict[str, Any]:
        """
        Debit and credit totals per account; the grand totals must match.
        """
        accounts = {}
        total_debits = ZERO
        total_credits = ZERO
        for account in self.repository.list_accounts():
            debits = ZERO
            credits = ZERO
            for line in self.repository.posted_lines_for_account(account["id"]):
                debits = money.add(debits, money.to_decimal(line["debit"]))
                credits = money.add(credits, money.to_decimal(line["credit"]))
            accounts[account["id"]] = {
                "code": account.get("code"),
                "debits": debits,
                "credits": credits,
                "balance": money.sub(debits, credits),
            }
            total_debits = money.add(total_debits, debits)
            total_credits = money.add(total_credits, credits)

        if total_debits != total_credits:
            report_invariant_violation(
                f"Trial balance out of balance: debits {total_debits}, credits {total_credits}",
                self.config.strict_invariants
            )
        return {"accounts": accounts, "total_debits": total_debits, "total_credits": total_credits}

    def _commit(
        self,
        entry: JournalEntry,
        before_insert: Optional[Callable[[], None]] = None,
        after_insert: Optional[Callable[[], None]] = None
    ) -> None:
        """
        DRAFT -> VALIDATED -> POSTED. Date, period and account checks, the
        insert and its audit events all run in one repository transaction.
        """
        try:
            entry.validate()
            if entry.approval:
                validate_approval(entry.approval, self.config)

            with self.repository.transaction():
                self._check_entry_date(entry)
                for account_id in entry.get_affected_accounts():
                    if not self.repository.get_account(account_id):
                        raise AccountNotFoundError(account_id)
                if before_insert:
                    before_insert()

                entry.created_at = datetime.now(timezone.utc)
                entry.mark_posted()
                self.repository.insert_journal_entry(
                    entry.header_dict(), [line.to_dict() for line in entry.lines]
                )
                self._audit_posted(entry)
                if after_insert:
                    after_insert()
        except ApprovalRequiredError as e:
            logger.warning("Journal entry rejected: %s", e)
            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.JOURNAL_ENTRY_REJECTED,
                    entity_type="journal_entry",
                    entity_id=entry.id,
                    metadata=e.to_dict(),
                    user_id=entry.created_by
                )
            raise
        except (InvalidInputError, UnbalancedEntryError, AccountNotFoundError) as e:
            logger.warning("Journal entry rejected: %s", e)
            raise

        log_action(
            logger, "info", f"Journal entry posted: {entry.reference_type.value}",
            user_id=entry.created_by, action="post_journal_entry",
            resource=f"journal_entry:{entry.id}",
            extra={
                "entry_date": entry.entry_date.isoformat(),
                "amount": money.format_money(entry.total_debits),
                "reference_id": entry.reference_id,
            }
        )

    def _audit_posted(self, entry: JournalEntry) -> None:
        if not self.audit_trail:
            return
        self.audit_trail.log_event(
            event_type=AuditEventType.JOURNAL_ENTRY_POSTED,
            entity_type="journal_entry",
            entity_id=entry.id,
            metadata={
                "reference_type": entry.reference_type.value,
                "reference_id": entry.reference_id,
                "entry_date": entry.entry_date,
                "debits": entry.total_debits,
                "credits": entry.total_credits,
                "accounts": entry.get_affected_accounts(),
                "approved_by": entry.approval.approver_id if entry.approval else None,
                "approval_id": entry.approval.approval_id if entry.approval else None,
            },
            user_id=entry.created_by
        )

    def _check_entry_date(self, entry: JournalEntry) -> None:
        check = check_backdate_permission(entry.entry_date, self.clock(),
                                          self.config.backdate_window_days)
        if entry.approval:
            # A filed request is single use and only covers its own date
            if entry.approval.approval_id:
                redeem_approval(self.repository, entry.approval, entry.entry_date, entry.id)
            return
        if check.requires_approval:
            raise BackdateApprovalRequiredError(
                entry.entry_date, check.days_backdated, check.window_days,
                self.config.approver_roles
            )
        if self.repository.is_period_closed(entry.entry_date):
            raise PeriodClosedError(period_key(entry.entry_date), self.config.approver_roles)
