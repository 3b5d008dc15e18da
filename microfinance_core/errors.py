"""
Error Taxonomy Module

Exceptions raised by the financial engine. Validation failures carry enough
detail for the caller to route an approval workflow or fix the request.
"""

import logging
from datetime import date
from typing import Any, List, Optional


logger = logging.getLogger(__name__)


class MicrofinanceError(Exception):
    """Base class for all engine errors"""

    code = "error"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class InvalidInputError(MicrofinanceError, ValueError):
    """Caller supplied values that violate the operation contract"""

    code = "invalid_input"


class FutureDatedEntryError(InvalidInputError):
    """Journal entries cannot be dated after today"""

    code = "future_dated_entry"


class UnbalancedEntryError(MicrofinanceError, ValueError):
    """Journal entry debits do not equal credits"""

    code = "unbalanced"

    def __init__(self, debits, credits):
        self.debits = debits
        self.credits = credits
        super().__init__(f"Journal not balanced: Debits {debits}, Credits {credits}")

    def to_dict(self) -> dict:
        result = super().to_dict()
        result.update({"debits": str(self.debits), "credits": str(self.credits)})
        return result


class ApprovalRequiredError(MicrofinanceError):
    """Posting needs governance approval from one of the approver roles"""

    code = "approval_required"

    def __init__(self, message: str, approver_roles: List[str]):
        self.approver_roles = list(approver_roles)
        super().__init__(message)

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["approver_roles"] = self.approver_roles
        return result


class PeriodClosedError(ApprovalRequiredError):
    """Entry date falls inside a closed financial period"""

    code = "period_closed"

    def __init__(self, period: str, approver_roles: List[str]):
        self.period = period
        super().__init__(f"Period {period} is closed", approver_roles)

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["period"] = self.period
        return result


class BackdateApprovalRequiredError(ApprovalRequiredError):
    """Entry is dated further back than the configured backdate window"""

    code = "backdate_approval_required"

    def __init__(self, entry_date: date, days_backdated: int, window_days: int,
                 approver_roles: List[str]):
        self.entry_date = entry_date
        self.days_backdated = days_backdated
        self.window_days = window_days
        super().__init__(
            f"Backdate approval required: entry dated {entry_date.isoformat()} is "
            f"{days_backdated} days old, beyond the {window_days} day window",
            approver_roles
        )

    def to_dict(self) -> dict:
        result = super().to_dict()
        result.update({
            "entry_date": self.entry_date.isoformat(),
            "days_backdated": self.days_backdated,
            "window_days": self.window_days,
        })
        return result


class AccountNotFoundError(MicrofinanceError, LookupError):
    """A journal line references an unknown account"""

    code = "account_not_found"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class JournalEntryNotFoundError(MicrofinanceError, LookupError):
    code = "journal_entry_not_found"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Journal entry {entry_id} not found")


class ReferenceCollisionError(MicrofinanceError):
    """Reference number already taken; transient once retries are exhausted"""

    code = "reference_collision"

    def __init__(self, reference: str, message: Optional[str] = None):
        self.reference = reference
        super().__init__(message or f"Reference {reference} already exists")


class StorageUnavailableError(MicrofinanceError):
    """Repository could not be reached or timed out"""

    code = "storage_unavailable"


class InvariantViolationError(MicrofinanceError, AssertionError):
    """Arithmetic invariant broken: a programming error, never a user error"""

    code = "invariant_violation"


def report_invariant_violation(message: str, strict: bool, **context: Any) -> None:
    """
    Surface a broken arithmetic invariant.

    In strict mode (non-production) the violation is fatal. Otherwise it is
    logged with its context for investigation and execution continues.
    """
    if strict:
        raise InvariantViolationError(message)
    logger.error("Invariant violation: %s", message, extra={"extra": context})
