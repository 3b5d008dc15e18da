"""
Reference number and backdate approval endpoints
"""

from datetime import date

from fastapi import APIRouter, Depends, status

from .schemas import BackdateApprovalRequestModel, BackdateDecisionRequest
from .system import MicrofinanceSystem, get_system, http_error
from ..errors import InvalidInputError, MicrofinanceError


router = APIRouter()


@router.post("/references", status_code=status.HTTP_201_CREATED)
async def generate_reference(system: MicrofinanceSystem = Depends(get_system)):
    """Reserve the next loan reference number"""
    try:
        reference = system.references.generate_reference()
    except MicrofinanceError as e:
        raise http_error(e)

    return {"reference": reference, "degraded": system.references.is_degraded_reference(reference)}


@router.post("/backdate-approvals", status_code=status.HTTP_201_CREATED)
async def request_backdate_approval(
    request: BackdateApprovalRequestModel,
    system: MicrofinanceSystem = Depends(get_system)
):
    """File a request to post outside the backdate window"""
    try:
        try:
            requested_date = date.fromisoformat(request.requested_date)
        except ValueError:
            raise InvalidInputError(f"Invalid requested date '{request.requested_date}'")

        approval = system.approvals.request_approval(
            transaction_type=request.transaction_type,
            requested_date=requested_date,
            user_id=request.user_id,
            reason=request.reason
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return approval.to_dict()


@router.post("/backdate-approvals/{approval_id}/decision")
async def decide_backdate_approval(
    approval_id: str,
    request: BackdateDecisionRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Approve or reject a pending backdate request"""
    try:
        approval = system.approvals.process_approval(
            approval_id=approval_id,
            approver_id=request.approver_id,
            approver_role=request.approver_role,
            approve=request.approve,
            rejection_reason=request.rejection_reason
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return approval.to_dict()
