"""
Ledger endpoints: accounts, journal entries, reversals and period closing
"""

import re
import uuid

from fastapi import APIRouter, Depends, HTTPException, status

from .schemas import (
    ClosePeriodRequest, CreateAccountRequest, PostJournalEntryRequest,
    ReverseJournalEntryRequest
)
from .system import MicrofinanceSystem, get_system, http_error
from ..ledger import Account, AccountType
from ..errors import AccountNotFoundError, InvalidInputError, MicrofinanceError


router = APIRouter()

_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@router.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Register a ledger account"""
    try:
        account_type = AccountType(request.account_type.lower())
    except ValueError:
        raise http_error(InvalidInputError(f"Unknown account type '{request.account_type}'"))

    if request.code and system.repository.get_account_by_code(request.code):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT,
                            detail=f"Account code {request.code} already exists")

    account = Account(
        id=request.id or str(uuid.uuid4()),
        code=request.code,
        name=request.name,
        account_type=account_type,
    )
    system.repository.save_account(account.to_dict())
    return account.to_dict()


@router.get("/accounts/{account_id}/balance")
async def get_account_balance(
    account_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Net debit balance of an account"""
    try:
        balance = system.poster.account_balance(account_id)
    except AccountNotFoundError as e:
        raise http_error(e)

    return {"account_id": account_id, "balance": str(balance)}


@router.post("/journal-entries", status_code=status.HTTP_201_CREATED)
async def post_journal_entry(
    request: PostJournalEntryRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Validate and post a balanced journal entry"""
    try:
        approval = None
        if request.approval:
            # Only filed and approved requests; clients cannot assert a role themselves
            approval = system.approvals.approval_for(request.approval.approval_id)

        result = system.poster.post_journal_entry(
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            description=request.description,
            lines=[
                {"account_id": line.account_id, "debit": line.debit, "credit": line.credit}
                for line in request.lines
            ],
            user_id=request.user_id,
            entry_date=request.entry_date,
            approval=approval
        )
    except MicrofinanceError as e:
        raise http_error(e)

    return result.to_dict()


@router.get("/journal-entries/{entry_id}")
async def get_journal_entry(
    entry_id: str,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Get a journal entry with its lines"""
    try:
        entry = system.poster.get_journal_entry(entry_id)
    except MicrofinanceError as e:
        raise http_error(e)

    return entry.to_dict()


@router.post("/journal-entries/{entry_id}/reversal", status_code=status.HTTP_201_CREATED)
async def reverse_journal_entry(
    entry_id: str,
    request: ReverseJournalEntryRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Post the mirror image of an entry"""
    try:
        result = system.poster.reverse_journal_entry(entry_id, request.user_id, request.reason)
    except MicrofinanceError as e:
        raise http_error(e)

    return result.to_dict()


@router.post("/periods/close", status_code=status.HTTP_201_CREATED)
async def close_period(
    request: ClosePeriodRequest,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Close a financial month to new postings"""
    if not _MONTH.match(request.month):
        raise http_error(InvalidInputError(f"Invalid period '{request.month}', expected YYYY-MM"))

    system.repository.close_period(request.month, request.closed_by)
    return {"month": request.month, "closed": True}


@router.get("/trial-balance")
async def trial_balance(system: MicrofinanceSystem = Depends(get_system)):
    """Debit and credit totals per account"""
    try:
        report = system.poster.trial_balance()
    except MicrofinanceError as e:
        raise http_error(e)

    return {
        "accounts": {
            account_id: {
                "code": totals["code"],
                "debits": str(totals["debits"]),
                "credits": str(totals["credits"]),
                "balance": str(totals["balance"]),
            }
            for account_id, totals in report["accounts"].items()
        },
        "total_debits": str(report["total_debits"]),
        "total_credits": str(report["total_credits"]),
    }
