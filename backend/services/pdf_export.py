"""
PDF export with a per-book cache.

A rendered PDF is stored under a name that includes the book's content
version, and the book row only points at it if the version did not move
while rendering. Edits clear the pointers in their own transaction.
"""
import logging
import re
import unicodedata
from typing import Optional

from sqlalchemy.orm import Session

from db import unit_of_work
from domain.errors import BookStateError, NotFoundError
from domain.models import Book, BookStatus, PdfVariant, Theme
from repositories import BooksRepository
from services.image_store import ImageStore
from services.render_pdf import render_book_to_pdf
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)

books_repo = BooksRepository()


def download_filename(book: Book, variant: PdfVariant) -> str:
    """e.g. "Ana-Maria-book-print.pdf" for protagonist "Ana María!"."""
    ascii_name = unicodedata.normalize("NFKD", book.protagonist_name).encode("ascii", "ignore").decode("ascii")
    safe_name = re.sub(r"[^A-Za-z0-9\s]", "", ascii_name)
    safe_name = re.sub(r"\s+", "-", safe_name.strip()) or "picture"
    suffix = "-print" if PdfVariant(variant) == PdfVariant.PRINT else ""
    return f"{safe_name}-book{suffix}.pdf"


def _prune_superseded(session: Session, storage: FileStorage, book_id: str) -> None:
    """Delete rendered files of older content versions, keeping what the book points at."""
    book = books_repo.get_book(session, book_id)
    if book is None:
        return
    current = [p for p in (book.digital_pdf_path, book.print_pdf_path) if p]
    removed = storage.delete_exports(book_id, keep=current)
    if removed:
        logger.info("Removed %s superseded PDF(s) of book %s", removed, book_id)


def get_or_render_pdf(
    session: Session,
    account_id: str,
    book_id: str,
    variant: PdfVariant,
    storage: FileStorage,
    image_store: ImageStore,
    theme: Optional[Theme] = None,
) -> bytes:
    """
    Return the cached PDF for the book's current content, rendering and
    caching it first if needed.

    Raises:
        NotFoundError: The caller does not own the book
        BookStateError: The book is not completed
    """
    variant = PdfVariant(variant)
    book = books_repo.get_book(session, book_id, account_id=account_id)
    if not book:
        raise NotFoundError("Book not found")
    if book.status != BookStatus.COMPLETED:
        raise BookStateError("The book must be completed before it can be downloaded")

    cached_path = book.cached_pdf_path(variant)
    if cached_path:
        data = storage.read_pdf(cached_path)
        if data:
            logger.info("Serving cached %s PDF for book %s", variant.value, book_id)
            return data
        logger.warning("Cached PDF %s for book %s is missing; rendering again", cached_path, book_id)

    version = book.content_version
    logger.info("Rendering %s PDF for book %s (version %s)", variant.value, book_id, version)
    data = render_book_to_pdf(book, variant, image_store.fetch_bytes, theme)
    path = storage.save_pdf(book_id, variant, version, data)

    with unit_of_work(session):
        stored = books_repo.set_pdf_path(session, book_id, variant, path, version)
    if not stored:
        # The book changed mid-render; serve what we rendered but do not cache it
        logger.info("Book %s changed while rendering version %s; PDF not cached", book_id, version)
        storage.delete_pdf(path)
    else:
        _prune_superseded(session, storage, book_id)
    return data


def clear_pdf_cache(session: Session, storage: FileStorage, book_id: Optional[str] = None) -> int:
    """Drop cached PDFs for one book, or for every book. Returns the number of books touched."""
    if book_id:
        book_ids = [book_id]
    else:
        book_ids = books_repo.list_book_ids_with_pdfs(session)
    with unit_of_work(session):
        for bid in book_ids:
            books_repo.invalidate_pdf_cache(session, bid)
    for bid in book_ids:
        storage.delete_exports(bid)
    logger.info("Cleared PDF cache for %s book(s)", len(book_ids))
    return len(book_ids)
