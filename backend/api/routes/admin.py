"""
Admin API routes.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from api.deps import require_admin
from api.routes.books import BookResponse, book_to_response
from db import get_session, unit_of_work
from domain.errors import ConcurrentLedgerUpdate, NotFoundError
from domain.models import Account, AccountRole, Book, BookStatus
from repositories import AccountsRepository, BooksRepository
from services import credits

router = APIRouter()
accounts_repo = AccountsRepository()
books_repo = BooksRepository()
logger = logging.getLogger(__name__)


class CreditAdjustment(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str
    amount: int


class RoleChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str
    role: AccountRole


class AdminAccountResponse(BaseModel):
    id: str
    email: Optional[str] = None
    role: str
    credits: int
    created_at: str


@router.post("/credits")
def adjust_credits(
    data: CreditAdjustment,
    admin: Account = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Add or remove credits. Removals stop at a zero balance."""
    if data.amount == 0:
        raise HTTPException(status_code=400, detail="amount must not be zero")
    try:
        balance = credits.admin_adjust(session, data.account_id, data.amount, admin.id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except ConcurrentLedgerUpdate:
        raise HTTPException(status_code=409, detail="Balance changed concurrently, try again")
    logger.info("Admin %s adjusted %s by %s", admin.id, data.account_id, data.amount)
    return {"account_id": data.account_id, "credits": balance}


@router.post("/role")
def change_role(
    data: RoleChange,
    admin: Account = Depends(require_admin),
    session: Session = Depends(get_session),
):
    with unit_of_work(session):
        account = accounts_repo.set_role(session, data.account_id, data.role)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    logger.info("Admin %s set role of %s to %s", admin.id, account.id, account.role.value)
    return {"account_id": account.id, "role": account.role.value}


@router.get("/accounts", response_model=List[AdminAccountResponse])
def list_accounts(
    limit: int = Query(100, ge=1, le=500),
    admin: Account = Depends(require_admin),
    session: Session = Depends(get_session),
):
    return [
        AdminAccountResponse(
            id=a.id,
            email=a.email,
            role=a.role.value,
            credits=a.credits,
            created_at=a.created_at.isoformat(),
        )
        for a in accounts_repo.list_accounts(session, limit=limit)
    ]


class AdminBookResponse(BookResponse):
    account_id: str
    owner_email: Optional[str] = None


def _admin_book(book: Book, owner: Optional[Account]) -> AdminBookResponse:
    return AdminBookResponse(
        **book_to_response(book).model_dump(),
        account_id=book.account_id,
        owner_email=owner.email if owner else None,
    )


@router.get("/books")
def list_books(
    book_id: Optional[str] = None,
    account_id: Optional[str] = None,
    status: Optional[BookStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: Account = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """
    Books of every account. With book_id, that one book; otherwise a list
    filtered by owner and/or status, newest first.
    """
    if book_id:
        book = books_repo.get_book(session, book_id)
        if not book:
            raise HTTPException(status_code=404, detail="Book not found")
        return {"book": _admin_book(book, accounts_repo.get(session, book.account_id))}

    books = books_repo.search_books(session, account_id=account_id, status=status, limit=limit)
    owners = {aid: accounts_repo.get(session, aid) for aid in {b.account_id for b in books}}
    return {"books": [_admin_book(b, owners[b.account_id]) for b in books]}
