"""
Books API routes.
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from api.deps import current_account, current_or_new_account, get_storage
from db import get_session
from domain.errors import BookStateError, NotFoundError
from domain.models import Account, Book
from repositories import BooksRepository
from services import book_generation
from storage.file_storage import FileStorage

router = APIRouter()
books_repo = BooksRepository()
logger = logging.getLogger(__name__)


class BookCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    protagonist_name: str = Field(min_length=1, max_length=80)
    theme: str = Field(min_length=1, max_length=500)
    style: str = "cartoon"
    character_description: Optional[str] = Field(default=None, max_length=2000)


class BookUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, max_length=200)
    # page number -> new text
    pages: Dict[int, str] = Field(default_factory=dict)


class PageResponse(BaseModel):
    page_number: int
    text: str
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    prompt_override: Optional[str] = None


class BookResponse(BaseModel):
    id: str
    title: str
    protagonist_name: str
    theme: str
    style: str
    character_description: Optional[str] = None
    status: str
    created_at: str
    updated_at: str
    pages: List[PageResponse] = []


def book_to_response(book: Book) -> BookResponse:
    """Convert domain Book to API response."""
    return BookResponse(
        id=book.id,
        title=book.display_title,
        protagonist_name=book.protagonist_name,
        theme=book.theme,
        style=book.style,
        character_description=book.character_description,
        status=book.status.value,
        created_at=book.created_at.isoformat(),
        updated_at=book.updated_at.isoformat(),
        pages=[
            PageResponse(
                page_number=p.page_number,
                text=p.text,
                image_url=p.image_url,
                image_prompt=p.image_prompt,
                prompt_override=p.prompt_override,
            )
            for p in book.pages
        ],
    )


@router.get("", response_model=List[BookResponse])
def list_books(
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
):
    """List the caller's books, newest first."""
    return [book_to_response(b) for b in books_repo.list_books(session, account.id)]


@router.post("", response_model=BookResponse)
def create_book(
    data: BookCreate,
    account: Account = Depends(current_or_new_account),
    session: Session = Depends(get_session),
):
    """Create a draft book. First-time visitors get an anonymous session."""
    book = book_generation.create_draft(
        session,
        account.id,
        protagonist_name=data.protagonist_name,
        theme=data.theme,
        style=data.style,
        character_description=data.character_description,
    )
    return book_to_response(book)


@router.get("/{book_id}", response_model=BookResponse)
def get_book(
    book_id: str,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
):
    """Get a book with its pages."""
    book = books_repo.get_book(session, book_id, account_id=account.id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book_to_response(book)


@router.patch("/{book_id}", response_model=BookResponse)
def update_book(
    book_id: str,
    data: BookUpdate,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
):
    """Edit the title and/or page texts. Cached PDFs are dropped."""
    try:
        book = book_generation.edit_book(session, account.id, book_id, title=data.title, page_texts=data.pages)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except BookStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return book_to_response(book)


@router.delete("/{book_id}")
def delete_book(
    book_id: str,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    storage: FileStorage = Depends(get_storage),
):
    """Delete a book with its images and cached PDFs."""
    try:
        book_generation.delete_book(session, account.id, book_id, storage)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Book not found")
    return {"success": True}
