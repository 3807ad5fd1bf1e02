"""
Book repository backed by SQLAlchemy.

Methods only flush; the calling service owns the transaction so that page
edits and PDF cache invalidation commit together.
"""
from datetime import datetime
from typing import List, Optional, Sequence
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from domain.models import Book, BookStatus, Page, PdfVariant
from repositories.models import BookORM, PageORM


def _page_from_orm(orm: PageORM) -> Page:
    return Page(
        page_number=orm.page_number,
        text=orm.text or "",
        image_url=orm.image_url,
        image_prompt=orm.image_prompt,
        prompt_override=orm.prompt_override,
    )


def _book_from_orm(orm: BookORM) -> Book:
    return Book(
        id=orm.id,
        account_id=orm.account_id,
        protagonist_name=orm.protagonist_name,
        theme=orm.theme,
        style=orm.style,
        character_description=orm.character_description,
        character_sheet=orm.character_sheet,
        title=orm.title,
        status=BookStatus(orm.status),
        pages=[_page_from_orm(p) for p in sorted(orm.pages, key=lambda p: p.page_number)],
        content_version=orm.content_version,
        digital_pdf_path=orm.digital_pdf_path,
        print_pdf_path=orm.print_pdf_path,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def _pdf_column(variant: PdfVariant):
    return BookORM.print_pdf_path if variant == PdfVariant.PRINT else BookORM.digital_pdf_path


class BooksRepository:
    """CRUD operations for books and their pages."""

    def list_books(self, session: Session, account_id: str) -> List[Book]:
        rows = (
            session.query(BookORM)
            .filter(BookORM.account_id == account_id)
            .order_by(BookORM.created_at.desc())
            .all()
        )
        return [_book_from_orm(b) for b in rows]

    def search_books(
        self,
        session: Session,
        account_id: Optional[str] = None,
        status: Optional[BookStatus] = None,
        limit: int = 100,
    ) -> List[Book]:
        """Books of every account, newest first, optionally filtered."""
        query = session.query(BookORM)
        if account_id:
            query = query.filter(BookORM.account_id == account_id)
        if status is not None:
            query = query.filter(BookORM.status == status.value)
        rows = query.order_by(BookORM.created_at.desc()).limit(limit).all()
        return [_book_from_orm(b) for b in rows]

    def get_book(self, session: Session, book_id: str, account_id: Optional[str] = None) -> Optional[Book]:
        """Fetch a book; when account_id is given the book must belong to it."""
        orm = session.get(BookORM, book_id)
        if not orm:
            return None
        if account_id is not None and orm.account_id != account_id:
            return None
        return _book_from_orm(orm)

    def list_book_ids_with_pdfs(self, session: Session) -> List[str]:
        rows = (
            session.query(BookORM.id)
            .filter(or_(BookORM.digital_pdf_path.isnot(None), BookORM.print_pdf_path.isnot(None)))
            .all()
        )
        return [r[0] for r in rows]

    def create_book(self, session: Session, book: Book) -> Book:
        now = datetime.utcnow()
        orm = BookORM(
            id=book.id,
            account_id=book.account_id,
            protagonist_name=book.protagonist_name,
            theme=book.theme,
            style=book.style,
            character_description=book.character_description,
            character_sheet=book.character_sheet,
            title=book.title,
            status=book.status.value,
            content_version=book.content_version,
            created_at=book.created_at or now,
            updated_at=book.updated_at or now,
        )
        session.add(orm)
        session.flush()
        return _book_from_orm(orm)

    def set_status(self, session: Session, book_id: str, status: BookStatus) -> None:
        orm = self._require(session, book_id)
        orm.status = status.value
        orm.updated_at = datetime.utcnow()
        session.flush()

    def claim_for_generation(
        self,
        session: Session,
        book_id: str,
        from_statuses: Sequence[BookStatus] = (BookStatus.DRAFT, BookStatus.ERROR),
    ) -> bool:
        """
        Move a book in one of `from_statuses` to `generating`. Returns False if
        another request got there first or the book is in any other state.
        """
        result = session.execute(
            update(BookORM)
            .where(
                BookORM.id == book_id,
                BookORM.status.in_([s.value for s in from_statuses]),
            )
            .values(status=BookStatus.GENERATING.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        session.expire_all()
        return result.rowcount == 1

    def set_title(self, session: Session, book_id: str, title: str) -> None:
        orm = self._require(session, book_id)
        orm.title = title
        orm.updated_at = datetime.utcnow()
        session.flush()

    def set_character(
        self,
        session: Session,
        book_id: str,
        character_description: Optional[str] = None,
        character_sheet: Optional[str] = None,
    ) -> None:
        """Set whichever of the two character fields is given."""
        orm = self._require(session, book_id)
        if character_description is not None:
            orm.character_description = character_description
        if character_sheet is not None:
            orm.character_sheet = character_sheet
        orm.updated_at = datetime.utcnow()
        session.flush()

    def replace_pages(self, session: Session, book_id: str, pages: List[Page]) -> None:
        orm = self._require(session, book_id)
        orm.pages.clear()
        session.flush()
        for page in pages:
            orm.pages.append(PageORM(
                page_number=page.page_number,
                text=page.text,
                image_url=page.image_url,
                image_prompt=page.image_prompt,
                prompt_override=page.prompt_override,
            ))
        orm.updated_at = datetime.utcnow()
        session.flush()

    def update_page(self, session: Session, book_id: str, page_number: int, **fields) -> bool:
        """Update columns of one page. Returns False if the page does not exist."""
        orm = (
            session.query(PageORM)
            .filter(PageORM.book_id == book_id, PageORM.page_number == page_number)
            .one_or_none()
        )
        if not orm:
            return False
        for key, value in fields.items():
            setattr(orm, key, value)
        session.flush()
        return True

    def invalidate_pdf_cache(self, session: Session, book_id: str) -> None:
        """Drop both cached PDF pointers and bump the content version."""
        session.execute(
            update(BookORM)
            .where(BookORM.id == book_id)
            .values(
                digital_pdf_path=None,
                print_pdf_path=None,
                content_version=BookORM.content_version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        session.expire_all()

    def set_pdf_path(
        self,
        session: Session,
        book_id: str,
        variant: PdfVariant,
        path: str,
        content_version: int,
    ) -> bool:
        """
        Record a rendered PDF only if the book has not changed since the render
        started. Returns False when a concurrent edit moved the version on.
        """
        result = session.execute(
            update(BookORM)
            .where(BookORM.id == book_id, BookORM.content_version == content_version)
            .values({_pdf_column(variant): path})
            .execution_options(synchronize_session=False)
        )
        session.expire_all()
        return result.rowcount == 1

    def reassign_owner(self, session: Session, from_account_id: str, to_account_id: str) -> int:
        result = session.execute(
            update(BookORM)
            .where(BookORM.account_id == from_account_id)
            .values(account_id=to_account_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def delete_book(self, session: Session, book_id: str) -> None:
        orm = session.get(BookORM, book_id)
        if orm:
            session.delete(orm)
            session.flush()

    def _require(self, session: Session, book_id: str) -> BookORM:
        orm = session.get(BookORM, book_id)
        if not orm:
            raise ValueError("Book not found")
        return orm
