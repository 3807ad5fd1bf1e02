"""
Identity resolution and anonymous-to-authenticated account merging.

An anonymous visitor is keyed by the `session_id` cookie. When they sign in,
everything the anonymous account owns (balance, ledger history, books and
payments) moves to the authenticated account and the anonymous account is
deleted, all in one transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import unit_of_work
from domain.models import Account, LedgerReason
from repositories import AccountsRepository, BooksRepository, PaymentsRepository
from repositories.models import AccountORM, LedgerEntryORM
from services.credits import apply_delta

logger = logging.getLogger(__name__)

accounts_repo = AccountsRepository()
books_repo = BooksRepository()
payments_repo = PaymentsRepository()


@dataclass
class RequestIdentity:
    """What the request tells us about the caller, before any lookup."""
    email: Optional[str] = None
    session_key: Optional[str] = None


@dataclass
class MergeResult:
    anonymous_id: str
    target_id: str
    credits_transferred: int
    books_moved: int
    payments_moved: int
    ledger_entries_moved: int


def resolve_account(session: Session, identity: RequestIdentity) -> Optional[str]:
    """
    Map a request identity to an account id. A verified email wins over the
    anonymous session cookie.
    """
    if identity.email:
        account = accounts_repo.get_by_email(session, identity.email)
        if account:
            return account.id
    if identity.session_key:
        account = accounts_repo.get_by_session_key(session, identity.session_key)
        if account:
            return account.id
    return None


def get_or_create_anonymous(session: Session, session_key: str) -> Account:
    account = accounts_repo.get_by_session_key(session, session_key)
    if account:
        return account
    with unit_of_work(session):
        account = accounts_repo.create(session, session_key=session_key)
    logger.info("Created anonymous account %s", account.id)
    return account


def _merge(session: Session, anonymous_id: str, target_id: str) -> Optional[MergeResult]:
    """Body of the merge; runs inside the caller's unit of work."""
    if anonymous_id == target_id:
        return None
    anonymous = (
        session.query(AccountORM)
        .filter(AccountORM.id == anonymous_id)
        .with_for_update()
        .one_or_none()
    )
    if anonymous is None:
        return None

    transferred = int(anonymous.credits)
    if transferred > 0:
        # Close the anonymous history at zero so the re-owned entries and the
        # incoming credit below add up to exactly `transferred`.
        apply_delta(session, anonymous_id, -transferred, LedgerReason.SESSION_MERGE, target_id)

    entries_moved = session.execute(
        update(LedgerEntryORM)
        .where(LedgerEntryORM.account_id == anonymous_id)
        .values(account_id=target_id)
        .execution_options(synchronize_session=False)
    ).rowcount
    books_moved = books_repo.reassign_owner(session, anonymous_id, target_id)
    payments_moved = payments_repo.reassign_owner(session, anonymous_id, target_id)

    if transferred > 0:
        apply_delta(session, target_id, transferred, LedgerReason.SESSION_MERGE, anonymous_id)

    session.expire_all()
    accounts_repo.delete(session, anonymous_id)
    return MergeResult(
        anonymous_id=anonymous_id,
        target_id=target_id,
        credits_transferred=transferred,
        books_moved=books_moved,
        payments_moved=payments_moved,
        ledger_entries_moved=entries_moved,
    )


def merge_anonymous_account(session: Session, anonymous_id: str, target_id: str) -> Optional[MergeResult]:
    """
    Fold the anonymous account into `target_id`.

    Returns None and changes nothing if the anonymous account is already gone
    (a replayed sign-in) or is the target itself.
    """
    with unit_of_work(session):
        result = _merge(session, anonymous_id, target_id)
    if result is None:
        logger.info("Merge of %s into %s skipped; nothing to merge", anonymous_id, target_id)
    else:
        logger.info(
            "Merged %s into %s: %s credits, %s books, %s payments",
            anonymous_id,
            target_id,
            result.credits_transferred,
            result.books_moved,
            result.payments_moved,
        )
    return result


def sign_in(session: Session, email: str, session_key: Optional[str] = None) -> Account:
    """
    Attach a verified email to an account and absorb the caller's anonymous
    session, if any.

    First-time sign-ups get a fresh account that receives the merge; returning
    users receive it on their existing account. Both paths end the same way.
    """
    account = accounts_repo.get_by_email(session, email)
    if account is None:
        try:
            with unit_of_work(session):
                account = accounts_repo.create(session, email=email)
        except IntegrityError:
            # A concurrent first sign-in for the same email created it first
            account = accounts_repo.get_by_email(session, email)
            if account is None:
                raise
            logger.info("Account for %s was created concurrently; using %s", email, account.id)
        else:
            logger.info("Created account %s for %s", account.id, account.email)

    if session_key:
        anonymous = accounts_repo.get_by_session_key(session, session_key)
        if anonymous is not None and anonymous.id != account.id:
            merge_anonymous_account(session, anonymous.id, account.id)

    return accounts_repo.get(session, account.id)
