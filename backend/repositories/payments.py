"""
Payment repository backed by SQLAlchemy.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import update
from sqlalchemy.orm import Session

from domain.models import Payment, PaymentStatus
from repositories.models import PaymentORM


def _payment_from_orm(orm: PaymentORM) -> Payment:
    return Payment(
        id=orm.id,
        account_id=orm.account_id,
        reference=orm.reference,
        credits=orm.credits,
        amount_cents=orm.amount_cents,
        currency=orm.currency,
        status=PaymentStatus(orm.status),
        created_at=orm.created_at,
    )


class PaymentsRepository:
    """Payments keyed by the provider reference."""

    def get_by_reference(self, session: Session, reference: str, for_update: bool = False) -> Optional[Payment]:
        query = session.query(PaymentORM).filter(PaymentORM.reference == reference)
        if for_update:
            query = query.with_for_update()
        orm = query.one_or_none()
        return _payment_from_orm(orm) if orm else None

    def create(self, session: Session, payment: Payment) -> Payment:
        now = datetime.utcnow()
        orm = PaymentORM(
            id=payment.id,
            account_id=payment.account_id,
            reference=payment.reference,
            credits=payment.credits,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            status=payment.status.value,
            created_at=now,
            updated_at=now,
        )
        session.add(orm)
        session.flush()
        return _payment_from_orm(orm)

    def set_status(self, session: Session, payment_id: str, status: PaymentStatus) -> None:
        orm = session.get(PaymentORM, payment_id)
        if not orm:
            raise ValueError("Payment not found")
        orm.status = status.value
        orm.updated_at = datetime.utcnow()
        session.flush()

    def reassign_owner(self, session: Session, from_account_id: str, to_account_id: str) -> int:
        result = session.execute(
            update(PaymentORM)
            .where(PaymentORM.account_id == from_account_id)
            .values(account_id=to_account_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
