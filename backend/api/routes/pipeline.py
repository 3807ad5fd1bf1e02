"""
Pipeline API routes.

Handles story and illustration generation, photo analysis, page regeneration
and PDF output.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from api.deps import current_account, get_generator, get_image_store, get_storage
from api.routes.books import book_to_response
from db import get_session
from domain.errors import BookStateError, ConcurrentLedgerUpdate, NotFoundError, PhotoRejected
from domain.models import Account, PdfVariant
from services import book_generation, pdf_export
from services.generation import StoryGenerator
from services.image_store import ImageStore
from storage.file_storage import FileStorage

router = APIRouter()
logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again"


class RegenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    custom_prompt: Optional[str] = Field(default=None, max_length=1000)
    regenerate_text: bool = True
    regenerate_image: bool = True


def _needs_credits() -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"detail": "Not enough credits. Buy a pack to continue.", "needs_credits": True},
    )


def _run_book_operation(operation, *args, **kwargs):
    """Call a book operation and map domain errors to HTTP."""
    try:
        return operation(*args, **kwargs)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (BookStateError, PhotoRejected) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ConcurrentLedgerUpdate:
        raise HTTPException(status_code=409, detail="Your balance changed, please try again")
    except Exception:
        logger.exception("[pipeline] %s failed", operation.__name__)
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)


@router.post("/generate")
def generate_book(
    book_id: str,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    generator: StoryGenerator = Depends(get_generator),
    image_store: ImageStore = Depends(get_image_store),
):
    """
    Generate the whole book: narrative, then one illustration per page.

    Costs 5 credits; answers 402 with needs_credits when the balance is short.
    """
    result = _run_book_operation(book_generation.generate_book, session, account.id, book_id, generator, image_store)
    if result.needs_credits:
        return _needs_credits()
    return {"book": book_to_response(result.book).model_dump(), "message": "Book generated"}


@router.post("/generate-story")
def generate_story(
    book_id: str,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    generator: StoryGenerator = Depends(get_generator),
):
    """
    Write the story for free. The book stays a draft whose texts can be
    edited before paying for the illustrations.
    """
    result = _run_book_operation(book_generation.generate_story, session, account.id, book_id, generator)
    if result.already_generated:
        message = "Story already written"
    else:
        message = "Story written; edit the pages, then generate the illustrations"
    return {
        "book": book_to_response(result.book).model_dump(),
        "message": message,
        "already_generated": result.already_generated,
    }


@router.post("/generate-images")
def generate_images(
    book_id: str,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    generator: StoryGenerator = Depends(get_generator),
    image_store: ImageStore = Depends(get_image_store),
):
    """Illustrate every page still missing an image. Costs 5 credits."""
    result = _run_book_operation(book_generation.generate_images, session, account.id, book_id, generator, image_store)
    if result.needs_credits:
        return _needs_credits()
    return {"book": book_to_response(result.book).model_dump(), "message": "Illustrations generated"}


@router.post("/analyze-photo")
async def analyze_photo(
    book_id: str,
    photo: UploadFile = File(...),
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    generator: StoryGenerator = Depends(get_generator),
):
    """Describe the child in an uploaded photo and use it for the book's protagonist."""
    data = await photo.read()
    book = _run_book_operation(
        book_generation.describe_protagonist,
        session,
        account.id,
        book_id,
        data,
        photo.content_type or "",
        generator,
    )
    return {"character_description": book.character_description, "book": book_to_response(book).model_dump()}


@router.post("/pages/{page_number}/regenerate")
def regenerate_page(
    book_id: str,
    page_number: int,
    data: RegenerateRequest,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    generator: StoryGenerator = Depends(get_generator),
    image_store: ImageStore = Depends(get_image_store),
):
    """Regenerate the text and/or illustration of one page for 1 credit."""
    result = _run_book_operation(
        book_generation.regenerate_page,
        session,
        account.id,
        book_id,
        page_number,
        generator,
        image_store,
        custom_prompt=data.custom_prompt,
        regenerate_text=data.regenerate_text,
        regenerate_image=data.regenerate_image,
    )
    if result.needs_credits:
        return _needs_credits()
    page = result.book.get_page(page_number)
    return {
        "page": {
            "page_number": page.page_number,
            "text": page.text,
            "image_url": page.image_url,
            "image_prompt": page.image_prompt,
            "prompt_override": page.prompt_override,
        },
        "message": "Page regenerated",
    }


@router.get("/pdf")
def download_pdf(
    book_id: str,
    variant: PdfVariant = PdfVariant.DIGITAL,
    account: Account = Depends(current_account),
    session: Session = Depends(get_session),
    storage: FileStorage = Depends(get_storage),
    image_store: ImageStore = Depends(get_image_store),
):
    """Download the book as a PDF, rendering it on first request."""
    try:
        data = pdf_export.get_or_render_pdf(session, account.id, book_id, variant, storage, image_store)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Book not found")
    except BookStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("[pipeline] PDF export failed for book %s", book_id)
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    book = book_generation.get_owned_book(session, account.id, book_id)
    filename = pdf_export.download_filename(book, variant)
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
