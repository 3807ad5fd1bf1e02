"""
SQLAlchemy ORM models for persistence.
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from db import Base


class AccountORM(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, index=True)
    session_key = Column(String, unique=True, nullable=True, index=True)
    email = Column(String, unique=True, nullable=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    role = Column(String, nullable=False, default="user")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LedgerEntryORM(Base):
    """Append-only; rows are only ever re-owned during a session merge."""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    reference_id = Column(String, nullable=True, index=True)
    balance = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class BookORM(Base):
    __tablename__ = "books"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    protagonist_name = Column(String, nullable=False)
    theme = Column(String, nullable=False)
    style = Column(String, nullable=False, default="cartoon")
    character_description = Column(Text, nullable=True)
    character_sheet = Column(Text, nullable=True)
    title = Column(String, nullable=True)
    status = Column(String, nullable=False, default="draft")
    content_version = Column(Integer, nullable=False, default=0)
    digital_pdf_path = Column(String, nullable=True)
    print_pdf_path = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    pages = relationship(
        "PageORM",
        back_populates="book",
        cascade="all, delete-orphan",
        order_by="PageORM.page_number",
    )


class PageORM(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("book_id", "page_number", name="uq_pages_book_number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    text = Column(Text, nullable=False, default="")
    image_url = Column(String, nullable=True)
    image_prompt = Column(Text, nullable=True)
    prompt_override = Column(Text, nullable=True)

    book = relationship("BookORM", back_populates="pages")


class PaymentORM(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    reference = Column(String, unique=True, nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="eur")
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
