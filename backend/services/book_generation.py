"""
Book lifecycle: drafts, story and illustration generation, page regeneration
and edits.

A book is generated either in one paid step (`generate_book`) or in two:
`generate_story` writes the text for free and leaves a reviewable draft, then
`generate_images` charges for the illustrations.

Generation collaborators are passed in by the caller so tests can use fakes.
Every mutation of page content or title drops the cached PDFs in the same
transaction.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from db import unit_of_work
from domain.errors import BookStateError, NotFoundError, PhotoRejected
from domain.models import Book, BookStatus, OperationKind, Page, StoryDraft
from repositories import BooksRepository
from services import credits
from services.generation import StoryGenerator
from services.image_store import ImageStore
from settings import settings
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)

books_repo = BooksRepository()

# A finished book may still have pages whose illustration failed
ILLUSTRATABLE_STATUSES = (BookStatus.DRAFT, BookStatus.ERROR, BookStatus.COMPLETED)

PHOTO_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


@dataclass
class GenerationResult:
    """Outcome of a paid operation. `book` is None when credits were short."""
    book: Optional[Book] = None
    needs_credits: bool = False


@dataclass
class StoryResult:
    book: Book
    already_generated: bool = False


def page_reference(book_id: str, page_number: int) -> str:
    return f"{book_id}-page-{page_number}"


def get_owned_book(session: Session, account_id: str, book_id: str) -> Book:
    book = books_repo.get_book(session, book_id, account_id=account_id)
    if not book:
        raise NotFoundError("Book not found")
    return book


def create_draft(
    session: Session,
    account_id: str,
    protagonist_name: str,
    theme: str,
    style: str = "cartoon",
    character_description: Optional[str] = None,
) -> Book:
    book = Book(
        id=Book.generate_id(),
        account_id=account_id,
        protagonist_name=protagonist_name.strip(),
        theme=theme.strip(),
        style=style,
        character_description=character_description,
    )
    with unit_of_work(session):
        created = books_repo.create_book(session, book)
    logger.info("Created draft book %s for %s", created.id, account_id)
    return created


def _illustrate(
    book_id: str,
    page_number: int,
    prompt: Optional[str],
    generator: StoryGenerator,
    image_store: ImageStore,
) -> Optional[str]:
    """Generate and persist one illustration. Failures leave the page without an image."""
    if not prompt:
        return None
    try:
        temporary_url = generator.generate_illustration(prompt)
        return image_store.store(temporary_url, book_id, page_number)
    except Exception:
        logger.exception("Image generation failed for book %s page %s", book_id, page_number)
        return None


def _final_status(pages: List[Page]) -> BookStatus:
    # A book with no illustration at all is not worth presenting as finished
    if any(p.image_url for p in pages):
        return BookStatus.COMPLETED
    return BookStatus.ERROR


def _write_narrative(
    session: Session,
    book: Book,
    generator: StoryGenerator,
) -> StoryDraft:
    """Run the text model for a claimed book; a failure moves the book to error."""
    try:
        return generator.generate_narrative(
            book.protagonist_name,
            book.theme,
            book.character_description,
            style=book.style,
        )
    except Exception:
        logger.exception("Narrative generation failed for book %s", book.id)
        with unit_of_work(session):
            books_repo.set_status(session, book.id, BookStatus.ERROR)
        raise


def _store_story(session: Session, book_id: str, draft: StoryDraft, pages: List[Page], status: BookStatus) -> None:
    with unit_of_work(session):
        if draft.title:
            books_repo.set_title(session, book_id, draft.title)
        if draft.character_sheet:
            books_repo.set_character(session, book_id, character_sheet=draft.character_sheet)
        books_repo.replace_pages(session, book_id, pages)
        books_repo.set_status(session, book_id, status)
        books_repo.invalidate_pdf_cache(session, book_id)


def _charge_and_claim(
    session: Session,
    account_id: str,
    book_id: str,
    from_statuses: Sequence[BookStatus] = (BookStatus.DRAFT, BookStatus.ERROR),
) -> bool:
    """
    Take the book generation price and move the book to `generating` in one
    transaction. Returns False when the balance is short.
    """
    with unit_of_work(session):
        charged = credits.charge(session, account_id, OperationKind.BOOK_GENERATION, book_id)
        # Raising here rolls the charge back
        if charged and not books_repo.claim_for_generation(session, book_id, from_statuses):
            raise BookStateError("Book is already being generated")
    if not charged:
        logger.info("Generation of %s refused: insufficient credits on %s", book_id, account_id)
        return False
    logger.info("Charged %s credits to %s for book %s", credits.CREDIT_COSTS[OperationKind.BOOK_GENERATION], account_id, book_id)
    return True


def generate_book(
    session: Session,
    account_id: str,
    book_id: str,
    generator: StoryGenerator,
    image_store: ImageStore,
) -> GenerationResult:
    """
    Charge for and generate the full book in one go: a new story, then one
    illustration per page.

    Raises:
        NotFoundError: The caller does not own the book
        BookStateError: The book is generating or already generated
    """
    book = get_owned_book(session, account_id, book_id)
    if book.status == BookStatus.GENERATING:
        raise BookStateError("Book is already being generated")
    if book.status == BookStatus.COMPLETED and book.pages:
        raise BookStateError("Book was already generated; regenerate single pages instead")
    if book.pages:
        # The story was written for free already; keep its (possibly edited) text
        return generate_images(session, account_id, book_id, generator, image_store)

    if not _charge_and_claim(session, account_id, book_id):
        return GenerationResult(needs_credits=True)

    draft = _write_narrative(session, book, generator)
    pages = [
        Page(
            page_number=draft_page.number,
            text=draft_page.text,
            image_prompt=draft_page.image_prompt,
            image_url=_illustrate(book_id, draft_page.number, draft_page.image_prompt, generator, image_store),
        )
        for draft_page in draft.pages
    ]
    status = _final_status(pages)
    missing = sum(1 for p in pages if not p.image_url)
    if missing:
        logger.warning("Book %s finished with %s of %s pages missing an image", book_id, missing, len(pages))

    _store_story(session, book_id, draft, pages, status)
    logger.info("Generated book %s with status %s", book_id, status.value)
    return GenerationResult(book=books_repo.get_book(session, book_id))


def generate_story(
    session: Session,
    account_id: str,
    book_id: str,
    generator: StoryGenerator,
) -> StoryResult:
    """
    Write the story of a draft for free and leave it as a draft whose pages
    can be reviewed and edited before paying for the illustrations.

    A book that already has pages is returned unchanged.
    """
    book = get_owned_book(session, account_id, book_id)
    if book.pages:
        return StoryResult(book=book, already_generated=True)
    if book.status == BookStatus.GENERATING:
        raise BookStateError("Book is already being generated")

    with unit_of_work(session):
        if not books_repo.claim_for_generation(session, book_id):
            raise BookStateError("Book is already being generated")

    draft = _write_narrative(session, book, generator)
    pages = [
        Page(page_number=p.number, text=p.text, image_prompt=p.image_prompt)
        for p in draft.pages
    ]
    _store_story(session, book_id, draft, pages, BookStatus.DRAFT)
    logger.info("Wrote story for book %s (%s pages, no images yet)", book_id, len(pages))
    return StoryResult(book=books_repo.get_book(session, book_id))


def generate_images(
    session: Session,
    account_id: str,
    book_id: str,
    generator: StoryGenerator,
    image_store: ImageStore,
) -> GenerationResult:
    """
    Charge for and illustrate every page of a written story that has no
    image yet. Pages keep their (possibly edited) text and prompts.

    Raises:
        NotFoundError: The caller does not own the book
        BookStateError: No story yet, nothing left to illustrate, or busy
    """
    book = get_owned_book(session, account_id, book_id)
    if not book.pages:
        raise BookStateError("The book has no story yet; write the story first")
    pending = [p for p in book.pages if not p.image_url]
    if not pending:
        raise BookStateError("Every page already has an illustration")
    if book.status == BookStatus.GENERATING:
        raise BookStateError("Book is already being generated")

    if not _charge_and_claim(session, account_id, book_id, ILLUSTRATABLE_STATUSES):
        return GenerationResult(needs_credits=True)

    try:
        for page in pending:
            page.image_url = _illustrate(book_id, page.page_number, page.image_prompt, generator, image_store)
            if page.image_url:
                with unit_of_work(session):
                    books_repo.update_page(session, book_id, page.page_number, image_url=page.image_url)
    except Exception:
        logger.exception("Illustrating book %s failed", book_id)
        with unit_of_work(session):
            books_repo.set_status(session, book_id, BookStatus.ERROR)
        raise

    status = _final_status(book.pages)
    missing = sum(1 for p in book.pages if not p.image_url)
    if missing:
        logger.warning("Book %s finished with %s of %s pages missing an image", book_id, missing, len(book.pages))
    with unit_of_work(session):
        books_repo.set_status(session, book_id, status)
        books_repo.invalidate_pdf_cache(session, book_id)
    logger.info("Illustrated %s page(s) of book %s; status %s", len(pending) - missing, book_id, status.value)
    return GenerationResult(book=books_repo.get_book(session, book_id))


def describe_protagonist(
    session: Session,
    account_id: str,
    book_id: str,
    photo: bytes,
    content_type: str,
    generator: StoryGenerator,
) -> Book:
    """
    Fill the book's character description from a photo of the child. Only
    useful before the story is written, since the story fixes the look.

    Raises:
        PhotoRejected: The photo has an unsupported type or size
    """
    if content_type not in PHOTO_CONTENT_TYPES:
        raise PhotoRejected("Unsupported photo type; use JPG, PNG, WebP or GIF")
    if not photo:
        raise PhotoRejected("The photo is empty")
    if len(photo) > settings.MAX_PHOTO_BYTES:
        raise PhotoRejected("The photo is too large")
    book = get_owned_book(session, account_id, book_id)
    if book.pages or book.status != BookStatus.DRAFT:
        raise BookStateError("The story is already written; the photo can only be used on a new draft")

    description = generator.describe_photo(photo, content_type)
    with unit_of_work(session):
        books_repo.set_character(session, book_id, character_description=description)
    logger.info("Described protagonist of book %s from a photo", book_id)
    return books_repo.get_book(session, book_id)


def regenerate_page(
    session: Session,
    account_id: str,
    book_id: str,
    page_number: int,
    generator: StoryGenerator,
    image_store: ImageStore,
    custom_prompt: Optional[str] = None,
    regenerate_text: bool = True,
    regenerate_image: bool = True,
) -> GenerationResult:
    """Charge for and redo the text and/or illustration of one page."""
    book = get_owned_book(session, account_id, book_id)
    if book.status == BookStatus.GENERATING:
        raise BookStateError("Book is still being generated")
    page = book.get_page(page_number)
    if page is None:
        raise NotFoundError("Page not found")

    if not credits.consume(session, account_id, OperationKind.PAGE_REGENERATION, page_reference(book_id, page_number)):
        return GenerationResult(needs_credits=True)

    updates: Dict[str, Optional[str]] = {}
    if regenerate_text:
        result = generator.regenerate_page_text(
            book.protagonist_name,
            book.theme,
            page_number,
            page.text,
            custom_prompt,
            style=book.style,
            character_sheet=book.character_sheet,
        )
        updates["text"] = result.text
        updates["image_prompt"] = result.image_prompt
        if custom_prompt:
            updates["prompt_override"] = custom_prompt

    if regenerate_image:
        prompt = updates.get("image_prompt") or page.image_prompt
        if prompt:
            temporary_url = generator.generate_illustration(prompt)
            updates["image_url"] = image_store.store(temporary_url, book_id, page_number)

    with unit_of_work(session):
        if updates:
            books_repo.update_page(session, book_id, page_number, **updates)
        books_repo.invalidate_pdf_cache(session, book_id)
    if page.image_url and updates.get("image_url") not in (None, page.image_url):
        image_store.discard(page.image_url)
    logger.info("Regenerated page %s of book %s (%s)", page_number, book_id, ", ".join(sorted(updates)) or "nothing")
    return GenerationResult(book=books_repo.get_book(session, book_id))


def edit_book(
    session: Session,
    account_id: str,
    book_id: str,
    title: Optional[str] = None,
    page_texts: Optional[Dict[int, str]] = None,
) -> Book:
    """
    Update the title and/or page texts. The PDF cache is dropped in the same
    transaction, so no reader can see new text next to an old PDF.
    """
    book = get_owned_book(session, account_id, book_id)
    if book.status == BookStatus.GENERATING:
        raise BookStateError("Book is still being generated")
    page_texts = page_texts or {}
    for page_number in page_texts:
        if book.get_page(page_number) is None:
            raise NotFoundError(f"Page {page_number} not found")

    if title is None and not page_texts:
        return book

    with unit_of_work(session):
        if title is not None:
            books_repo.set_title(session, book_id, title.strip())
        for page_number, text in page_texts.items():
            books_repo.update_page(session, book_id, page_number, text=text)
        books_repo.invalidate_pdf_cache(session, book_id)
    logger.info("Edited book %s (title=%s, pages=%s)", book_id, title is not None, sorted(page_texts))
    return books_repo.get_book(session, book_id)


def delete_book(session: Session, account_id: str, book_id: str, storage: FileStorage) -> None:
    get_owned_book(session, account_id, book_id)
    with unit_of_work(session):
        books_repo.delete_book(session, book_id)
    storage.delete_book_files(book_id)
    logger.info("Deleted book %s", book_id)
