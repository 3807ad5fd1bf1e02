"""
Account repository backed by SQLAlchemy.

Methods only flush; the calling service owns the transaction.
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session

from domain.models import Account, AccountRole
from repositories.models import AccountORM


def _account_from_orm(orm: AccountORM) -> Account:
    return Account(
        id=orm.id,
        session_key=orm.session_key,
        email=orm.email,
        credits=orm.credits,
        role=AccountRole(orm.role),
        created_at=orm.created_at,
    )


class AccountsRepository:
    """Lookups and creation for accounts. Balance writes live in services.credits."""

    def get(self, session: Session, account_id: str) -> Optional[Account]:
        orm = session.get(AccountORM, account_id)
        if not orm:
            return None
        return _account_from_orm(orm)

    def get_by_session_key(self, session: Session, session_key: str) -> Optional[Account]:
        orm = session.query(AccountORM).filter(AccountORM.session_key == session_key).one_or_none()
        return _account_from_orm(orm) if orm else None

    def get_by_email(self, session: Session, email: str) -> Optional[Account]:
        orm = session.query(AccountORM).filter(AccountORM.email == email.strip().lower()).one_or_none()
        return _account_from_orm(orm) if orm else None

    def list_accounts(self, session: Session, limit: int = 100) -> List[Account]:
        rows = session.query(AccountORM).order_by(AccountORM.created_at.desc()).limit(limit).all()
        return [_account_from_orm(r) for r in rows]

    def create(
        self,
        session: Session,
        session_key: Optional[str] = None,
        email: Optional[str] = None,
        role: AccountRole = AccountRole.USER,
    ) -> Account:
        now = datetime.utcnow()
        orm = AccountORM(
            id=Account.generate_id(),
            session_key=session_key,
            email=email.strip().lower() if email else None,
            credits=0,
            role=role.value,
            created_at=now,
            updated_at=now,
        )
        session.add(orm)
        session.flush()
        return _account_from_orm(orm)

    def set_role(self, session: Session, account_id: str, role: AccountRole) -> Optional[Account]:
        orm = session.get(AccountORM, account_id)
        if not orm:
            return None
        orm.role = role.value
        orm.updated_at = datetime.utcnow()
        session.flush()
        return _account_from_orm(orm)

    def delete(self, session: Session, account_id: str) -> bool:
        orm = session.get(AccountORM, account_id)
        if not orm:
            return False
        session.delete(orm)
        session.flush()
        return True
