"""
Backdate Control Module

Decides whether a journal entry date is inside the backdate window, and runs
the approval workflow that lets an executive authorise an older entry or a
posting into a closed period.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from enum import Enum
import logging
import uuid

from .config import MicrofinanceConfig, get_config
from .errors import FutureDatedEntryError, InvalidInputError
from .repository import LedgerRepository
from .audit import AuditTrail, AuditEventType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernanceApproval:
    """Executive sign-off that waives the backdate and closed-period checks"""
    approver_id: str
    approver_role: str
    reason: Optional[str] = None
    approval_id: Optional[str] = None


@dataclass(frozen=True)
class BackdateCheck:
    days_backdated: int
    window_days: int
    requires_approval: bool


def check_backdate_permission(entry_date: date, today: date, window_days: int) -> BackdateCheck:
    """
    Classify an entry date against today.

    Raises:
        FutureDatedEntryError: Entries cannot be dated after today
    """
    days_diff = (today - entry_date).days
    if days_diff < 0:
        raise FutureDatedEntryError(
            f"Future dates are not allowed: {entry_date.isoformat()} is after {today.isoformat()}"
        )
    return BackdateCheck(
        days_backdated=days_diff,
        window_days=window_days,
        requires_approval=days_diff > window_days,
    )


def validate_approval(approval: GovernanceApproval, config: MicrofinanceConfig) -> None:
    if not approval.approver_id:
        raise InvalidInputError("Governance approval must name the approver")
    if approval.approver_role not in config.approver_roles:
        raise InvalidInputError(
            f"Role '{approval.approver_role}' cannot approve postings; "
            f"requires one of {', '.join(config.approver_roles)}"
        )


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    USED = "used"          # Consumed by exactly one journal entry


@dataclass
class BackdateApprovalRequest:
    """Request to post a transaction with an entry date outside the window"""
    id: str
    transaction_type: str
    requested_date: date
    days_backdated: int
    requested_by: str
    reason: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approver_role: Optional[str] = None
    rejection_reason: Optional[str] = None
    journal_entry_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_type": self.transaction_type,
            "requested_date": self.requested_date.isoformat(),
            "days_backdated": self.days_backdated,
            "requested_by": self.requested_by,
            "reason": self.reason,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "approver_role": self.approver_role,
            "rejection_reason": self.rejection_reason,
            "journal_entry_id": self.journal_entry_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackdateApprovalRequest':
        return cls(
            id=data["id"],
            transaction_type=data["transaction_type"],
            requested_date=date.fromisoformat(data["requested_date"]),
            days_backdated=int(data["days_backdated"]),
            requested_by=data["requested_by"],
            reason=data["reason"],
            status=ApprovalStatus(data["status"]),
            approved_by=data.get("approved_by"),
            approver_role=data.get("approver_role"),
            rejection_reason=data.get("rejection_reason"),
            journal_entry_id=data.get("journal_entry_id"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


def redeem_approval(
    repository: LedgerRepository,
    approval: GovernanceApproval,
    entry_date: date,
    journal_entry_id: str
) -> BackdateApprovalRequest:
    """
    Consume an approved backdate request for one journal entry.

    Must run inside the repository transaction that inserts the entry, so
    the request and the entry commit or roll back together.

    Raises:
        InvalidInputError: Unknown request, not approved, already used,
            signed by someone else, or dated differently from the entry
    """
    data = repository.load_backdate_approval(approval.approval_id)
    if not data:
        raise InvalidInputError(f"Approval request {approval.approval_id} not found")
    request = BackdateApprovalRequest.from_dict(data)

    if request.status == ApprovalStatus.USED:
        raise InvalidInputError(
            f"Approval request {request.id} was already used by journal entry {request.journal_entry_id}"
        )
    if request.status != ApprovalStatus.APPROVED:
        raise InvalidInputError(f"Approval request {request.id} is {request.status.value}, not approved")
    if approval.approver_id != request.approved_by:
        raise InvalidInputError(f"Approval request {request.id} was not approved by {approval.approver_id}")
    if entry_date != request.requested_date:
        raise InvalidInputError(
            f"Approval request {request.id} covers {request.requested_date.isoformat()}, "
            f"not {entry_date.isoformat()}"
        )

    request.status = ApprovalStatus.USED
    request.journal_entry_id = journal_entry_id
    request.updated_at = datetime.now(timezone.utc)
    repository.save_backdate_approval(request.to_dict())
    return request


class BackdateApprovalManager:
    """
    Pending/approved/rejected lifecycle for backdate requests
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

    def request_approval(
        self,
        transaction_type: str,
        requested_date: date,
        user_id: str,
        reason: str
    ) -> BackdateApprovalRequest:
        """
        File a pending request to post with requested_date

        Raises:
            FutureDatedEntryError: If requested_date is after today
            InvalidInputError: If the date is inside the window or no reason is given
        """
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required for backdate approval")

        check = check_backdate_permission(requested_date, self.clock(), self.config.backdate_window_days)
        if not check.requires_approval:
            raise InvalidInputError(
                f"{requested_date.isoformat()} is within the {check.window_days} day window; "
                f"no approval needed"
            )

        now = datetime.now(timezone.utc)
        request = BackdateApprovalRequest(
            id=str(uuid.uuid4()),
            transaction_type=transaction_type,
            requested_date=requested_date,
            days_backdated=check.days_backdated,
            requested_by=user_id,
            reason=reason.strip(),
            created_at=now,
            updated_at=now,
        )
        self.repository.save_backdate_approval(request.to_dict())
        logger.info(
            "Backdate approval requested for %s dated %s (%d days)",
            transaction_type, requested_date.isoformat(), check.days_backdated
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.BACKDATE_APPROVAL_REQUESTED,
                entity_type="backdate_approval",
                entity_id=request.id,
                metadata={
                    "transaction_type": transaction_type,
                    "requested_date": requested_date,
                    "days_backdated": check.days_backdated,
                    "approver_roles": self.config.approver_roles,
                },
                user_id=user_id
            )
        return request

    def process_approval(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: str,
        approve: bool,
        rejection_reason: Optional[str] = None
    ) -> BackdateApprovalRequest:
        """
        Approve or reject a pending request

        Raises:
            InvalidInputError: Unknown request, already processed, or the
                approver's role is not allowed to approve
        """
        request = self.get_request(approval_id)
        if request.status != ApprovalStatus.PENDING:
            raise InvalidInputError(f"Approval request {approval_id} already processed")
        validate_approval(GovernanceApproval(approver_id, approver_role), self.config)
        if approver_id == request.requested_by:
            raise InvalidInputError("Requester cannot approve their own backdate request")

        request.status = ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED
        request.approved_by = approver_id
        request.approver_role = approver_role
        request.rejection_reason = None if approve else (rejection_reason or "No reason provided")
        request.updated_at = datetime.now(timezone.utc)
        self.repository.save_backdate_approval(request.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=(AuditEventType.BACKDATE_APPROVAL_GRANTED if approve
                            else AuditEventType.BACKDATE_APPROVAL_REJECTED),
                entity_type="backdate_approval",
                entity_id=request.id,
                metadata={"approver_role": approver_role, "rejection_reason": request.rejection_reason},
                user_id=approver_id
            )
        return request

    def get_request(self, approval_id: str) -> BackdateApprovalRequest:
        data = self.repository.load_backdate_approval(approval_id)
        if not data:
            raise InvalidInputError(f"Approval request {approval_id} not found")
        return BackdateApprovalRequest.from_dict(data)

    def approval_for(self, approval_id: str) -> GovernanceApproval:
        """GovernanceApproval to pass to the ledger poster for an approved request"""
        request = self.get_request(approval_id)
        if request.status != ApprovalStatus.APPROVED:
            raise InvalidInputError(
                f"Approval request {approval_id} is {request.status.value}, not approved"
            )
        return GovernanceApproval(
            approver_id=request.approved_by,
            approver_role=request.approver_role,
            reason=request.reason,
            approval_id=request.id,
        )
