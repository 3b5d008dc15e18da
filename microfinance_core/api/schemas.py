"""
Pydantic schemas for API requests and responses

Monetary amounts travel as decimal strings, never as JSON numbers.
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from ..amortization import AmortizationScheduleEntry


# Calculation schemas
class AmortizationRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    rate: str = Field(..., description="Interest rate in percent per period")
    term: int = Field(..., description="Number of monthly periods")
    interest_type: str = Field("reducing", description="flat or reducing")


class ScheduleEntryModel(BaseModel):
    month: int
    installment: str
    principal: str
    interest: str
    balance: str

    def to_entry(self) -> AmortizationScheduleEntry:
        return AmortizationScheduleEntry.from_dict({
            "month": self.month,
            "installment": self.installment,
            "principal": self.principal,
            "interest": self.interest,
            "balance": self.balance,
        })


class AllocationRequest(BaseModel):
    amount: str
    penalty_outstanding: str = "0"
    interest_outstanding: str = "0"
    principal_outstanding: str = "0"


class RecalculateScheduleRequest(BaseModel):
    original_schedule: List[ScheduleEntryModel]
    new_principal_outstanding: str
    rate: str
    original_term: int
    elapsed_months: int = 0


# Ledger schemas
class CreateAccountRequest(BaseModel):
    id: Optional[str] = None
    code: Optional[str] = None
    name: str
    account_type: str = Field(..., description="asset, liability, equity, revenue or expense")


class JournalLineModel(BaseModel):
    account_id: str
    debit: str = "0"
    credit: str = "0"


class ApprovalModel(BaseModel):
    approval_id: str = Field(..., description="Approved backdate request to apply")


class PostJournalEntryRequest(BaseModel):
    reference_type: str
    reference_id: Optional[str] = None
    description: str
    lines: List[JournalLineModel]
    user_id: str
    entry_date: Optional[str] = None  # ISO date string
    approval: Optional[ApprovalModel] = None


class ReverseJournalEntryRequest(BaseModel):
    user_id: str
    reason: str


class ClosePeriodRequest(BaseModel):
    month: str = Field(..., description="Year-month, YYYY-MM")
    closed_by: Optional[str] = None


# Backdate approval schemas
class BackdateApprovalRequestModel(BaseModel):
    transaction_type: str
    requested_date: str  # ISO date string
    user_id: str
    reason: str


class BackdateDecisionRequest(BaseModel):
    approver_id: str
    approver_role: str
    approve: bool
    rejection_reason: Optional[str] = None
