"""
Account API routes: balance, ledger history and sign-in.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.deps import SESSION_COOKIE, current_account, get_identity
from db import get_session
from domain.models import Account, LedgerEntry
from services import credits
from services.identity_merge import RequestIdentity, sign_in

router = APIRouter()

HISTORY_LIMIT = 20


class LedgerEntryResponse(BaseModel):
    id: int
    amount: int
    reason: str
    balance: int
    reference_id: Optional[str] = None
    created_at: str


class AccountResponse(BaseModel):
    id: str
    email: Optional[str] = None
    role: str
    credits: int
    is_anonymous: bool
    history: List[LedgerEntryResponse] = []


def _entry_to_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        amount=entry.amount,
        reason=entry.reason.value,
        balance=entry.balance,
        reference_id=entry.reference_id,
        created_at=entry.created_at.isoformat(),
    )


def account_to_response(session: Session, account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        role=account.role.value,
        credits=credits.get_balance(session, account.id),
        is_anonymous=account.email is None,
        history=[_entry_to_response(e) for e in credits.history(session, account.id, limit=HISTORY_LIMIT)],
    )


@router.get("", response_model=AccountResponse)
def get_account(
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
):
    """Balance, role and the most recent ledger entries."""
    return account_to_response(session, account)


@router.post("/sign-in", response_model=AccountResponse)
def sign_in_route(
    response: Response,
    identity: RequestIdentity = Depends(get_identity),
    session: Session = Depends(get_session),
):
    """
    Attach the authenticated email to an account, absorbing the anonymous
    session from the cookie. Safe to call repeatedly.
    """
    if not identity.email:
        raise HTTPException(status_code=401, detail="Sign-in requires an authenticated email")
    account = sign_in(session, identity.email, identity.session_key)
    # The anonymous account behind the cookie no longer exists
    response.delete_cookie(SESSION_COOKIE)
    return account_to_response(session, account)
