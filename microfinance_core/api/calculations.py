"""
Loan calculation endpoints: amortization, repayment allocation, recalculation
"""

from fastapi import APIRouter, Depends

from .schemas import AmortizationRequest, AllocationRequest, RecalculateScheduleRequest
from .system import MicrofinanceSystem, get_system, http_error
from ..amortization import compute_amortization
from ..allocation import allocate_repayment
from ..recalculation import recalculate_schedule
from ..errors import MicrofinanceError


router = APIRouter()


@router.post("/amortization")
async def amortization(
    request: AmortizationRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Installment, totals and schedule for a loan"""
    try:
        result = compute_amortization(
            principal=request.principal,
            rate=request.rate,
            term=request.term,
            interest_type=request.interest_type,
            config=system.config
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return result.to_dict()


@router.post("/allocations")
async def allocations(
    request: AllocationRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Split a payment across penalty, interest and principal"""
    try:
        allocation = allocate_repayment(
            request.amount,
            request.penalty_outstanding,
            request.interest_outstanding,
            request.principal_outstanding,
            config=system.config
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return allocation.to_dict()


@router.post("/schedules/recalculate")
async def recalculate(
    request: RecalculateScheduleRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Regenerate the schedule tail for a new principal outstanding"""
    try:
        schedule = recalculate_schedule(
            [entry.to_entry() for entry in request.original_schedule],
            request.new_principal_outstanding,
            request.rate,
            request.original_term,
            request.elapsed_months,
            config=system.config
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return {"months": len(schedule), "schedule": [entry.to_dict() for entry in schedule]}
