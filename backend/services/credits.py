"""Credit ledger: materialized balance plus an append-only history."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from db import unit_of_work
from domain.errors import ConcurrentLedgerUpdate, NotFoundError
from domain.models import LedgerEntry, LedgerReason, OperationKind
from repositories.models import AccountORM, LedgerEntryORM

logger = logging.getLogger(__name__)

CREDIT_COSTS: Dict[OperationKind, int] = {
    OperationKind.BOOK_GENERATION: 5,
    OperationKind.PAGE_REGENERATION: 1,
}

_GRANT_REASONS = {
    LedgerReason.PURCHASE,
    LedgerReason.ADMIN_GRANT,
    LedgerReason.ADMIN_DEDUCT,
    LedgerReason.SESSION_MERGE,
}


def _entry_from_orm(orm: LedgerEntryORM) -> LedgerEntry:
    return LedgerEntry(
        id=orm.id,
        account_id=orm.account_id,
        amount=orm.amount,
        reason=LedgerReason(orm.reason),
        balance=orm.balance,
        reference_id=orm.reference_id,
        created_at=orm.created_at,
    )


def _read_balance(session: Session, account_id: str, for_update: bool = False) -> Optional[int]:
    query = session.query(AccountORM.credits).filter(AccountORM.id == account_id)
    if for_update:
        query = query.with_for_update()
    value = query.scalar()
    return None if value is None else int(value)


def _append_entry(
    session: Session,
    account_id: str,
    *,
    amount: int,
    reason: LedgerReason,
    balance: int,
    reference_id: Optional[str] = None,
) -> LedgerEntryORM:
    entry = LedgerEntryORM(
        account_id=account_id,
        amount=int(amount),
        reason=reason.value,
        reference_id=reference_id,
        balance=int(balance),
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    session.flush()
    return entry


def apply_delta(
    session: Session,
    account_id: str,
    amount: int,
    reason: LedgerReason,
    reference_id: Optional[str],
) -> int:
    """
    Add `amount` to the balance, clamped at zero, and log the applied delta.

    The write is a compare-and-swap on the balance that was read, so a
    concurrent writer makes this raise instead of silently losing an update.
    Does not commit.
    """
    current = _read_balance(session, account_id, for_update=True)
    if current is None:
        raise NotFoundError(f"Account {account_id} not found")

    new_balance = max(0, current + int(amount))
    result = session.execute(
        update(AccountORM)
        .where(AccountORM.id == account_id, AccountORM.credits == current)
        .values(credits=new_balance, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentLedgerUpdate(account_id)

    _append_entry(
        session,
        account_id,
        amount=new_balance - current,
        reason=reason,
        balance=new_balance,
        reference_id=reference_id,
    )
    return new_balance


def charge(session: Session, account_id: str, operation: OperationKind, reference_id: Optional[str] = None) -> bool:
    """Conditional debit for callers that own the transaction. Does not commit."""
    cost = CREDIT_COSTS[operation]
    result = session.execute(
        update(AccountORM)
        .where(AccountORM.id == account_id, AccountORM.credits >= cost)
        .values(credits=AccountORM.credits - cost, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    balance = _read_balance(session, account_id)
    _append_entry(
        session,
        account_id,
        amount=-cost,
        reason=LedgerReason(operation.value),
        balance=balance,
        reference_id=reference_id,
    )
    return True


def get_balance(session: Session, account_id: str) -> int:
    return _read_balance(session, account_id) or 0


def has_sufficient_balance(session: Session, account_id: str, operation: OperationKind) -> bool:
    balance = _read_balance(session, account_id)
    if balance is None:
        return False
    return balance >= CREDIT_COSTS[operation]


def consume(
    session: Session,
    account_id: str,
    operation: OperationKind,
    reference_id: Optional[str] = None,
) -> bool:
    """
    Charge the cost of `operation` to the account.

    Returns False, with nothing written, when the balance does not cover the
    cost. The balance check and the decrement are a single conditional
    UPDATE, so concurrent calls can never take the balance below zero.
    """
    with unit_of_work(session):
        charged = charge(session, account_id, operation, reference_id)
    if charged:
        logger.info("Charged %s credits to %s for %s (%s)", CREDIT_COSTS[operation], account_id, operation.value, reference_id)
    else:
        logger.info("Insufficient credits on %s for %s", account_id, operation.value)
    return charged


def grant(
    session: Session,
    account_id: str,
    amount: int,
    reference_id: Optional[str] = None,
    reason: LedgerReason = LedgerReason.PURCHASE,
) -> int:
    """
    Add (or, for admin deductions, remove) credits and return the new balance.

    Negative amounts are clamped so the balance stops at zero; the ledger
    records the delta that was actually applied.
    """
    if reason not in _GRANT_REASONS:
        raise ValueError(f"{reason.value} is not a grant reason")
    with unit_of_work(session):
        balance = apply_delta(session, account_id, amount, reason, reference_id)
    logger.info("Granted %s credits to %s (%s, ref=%s); balance=%s", amount, account_id, reason.value, reference_id, balance)
    return balance


def admin_adjust(session: Session, account_id: str, amount: int, admin_id: str) -> int:
    reason = LedgerReason.ADMIN_GRANT if amount > 0 else LedgerReason.ADMIN_DEDUCT
    return grant(session, account_id, amount, reference_id=admin_id, reason=reason)


def history(session: Session, account_id: str, limit: int = 20) -> List[LedgerEntry]:
    """Ledger entries for the account, most recent first."""
    rows = (
        session.query(LedgerEntryORM)
        .filter(LedgerEntryORM.account_id == account_id)
        .order_by(LedgerEntryORM.id.desc())
        .limit(max(int(limit), 0))
        .all()
    )
    return [_entry_from_orm(r) for r in rows]


def reconcile(session: Session, account_id: str) -> Tuple[int, int]:
    """Return (materialized balance, sum of ledger amounts) for auditing."""
    ledger_total = (
        session.query(func.coalesce(func.sum(LedgerEntryORM.amount), 0))
        .filter(LedgerEntryORM.account_id == account_id)
        .scalar()
    )
    return get_balance(session, account_id), int(ledger_total or 0)
