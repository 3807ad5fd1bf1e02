"""
PDF rendering service.

Draws the page plans from the layout engine onto a reportlab canvas and
returns the document bytes. Output is written with reportlab's invariant
mode so the same book and images always produce byte-identical PDFs.
"""
import io
import logging
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError
from reportlab.lib.colors import HexColor
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from domain.models import Book, PagePlan, PdfVariant, TextPlacement, Theme
from services.layout_engine import build_page_plans, fit_image

logger = logging.getLogger(__name__)

# Accepted illustration formats
SUPPORTED_IMAGE_FORMATS = {"PNG", "JPEG"}

ImageFetcher = Callable[[str], Optional[bytes]]


def decode_image(data: bytes) -> Optional[Image.Image]:
    """
    Decode PNG or JPEG bytes. Returns None for anything else or for corrupt
    data; the caller renders the page without its illustration.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("[render_pdf] Could not decode image: %s", exc)
        return None
    if image.format not in SUPPORTED_IMAGE_FORMATS:
        logger.warning("[render_pdf] Unsupported image format %s", image.format)
        return None
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return image


def _load_page_image(plan: PagePlan, fetch_image: ImageFetcher) -> Optional[Image.Image]:
    if not plan.image_url:
        return None
    try:
        data = fetch_image(plan.image_url)
    except Exception:
        logger.warning("[render_pdf] Fetch failed for page %s image %s", plan.page_number, plan.image_url, exc_info=True)
        return None
    if not data:
        logger.warning("[render_pdf] No image data for page %s (%s)", plan.page_number, plan.image_url)
        return None
    image = decode_image(data)
    if image is None:
        logger.warning("[render_pdf] Skipping image on page %s", plan.page_number)
    return image


def _draw_text(c: canvas.Canvas, placement: TextPlacement) -> None:
    c.setFillColor(HexColor(placement.color))
    c.setFont(placement.font_name, placement.font_size)
    c.drawString(placement.x, placement.y, placement.text)


def _draw_page(c: canvas.Canvas, plan: PagePlan, fetch_image: ImageFetcher) -> None:
    c.setPageSize((plan.width, plan.height))

    # Background covers the full canvas, bleed included
    c.setFillColor(HexColor(plan.background_color))
    c.rect(0, 0, plan.width, plan.height, stroke=0, fill=1)

    image = _load_page_image(plan, fetch_image)
    if image is not None:
        box = fit_image(image.width, image.height, plan.image_area)
        c.drawImage(ImageReader(image), box.x, box.y, width=box.width, height=box.height)

    for placement in plan.texts:
        _draw_text(c, placement)
    if plan.page_label is not None:
        _draw_text(c, plan.page_label)


def render_book_to_pdf(
    book: Book,
    variant: PdfVariant,
    fetch_image: ImageFetcher,
    theme: Optional[Theme] = None,
) -> bytes:
    """
    Render a book to PDF bytes.

    Args:
        book: The book to render, with its pages
        variant: digital or print geometry
        fetch_image: Returns the bytes behind an image address, or None
        theme: Fonts and colors; defaults to the standard theme

    Returns:
        The PDF document
    """
    plans = build_page_plans(book, variant, theme)
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, invariant=1, pageCompression=1)
    c.setTitle(book.display_title)
    c.setAuthor("PictureBook Studio")

    for plan in plans:
        logger.debug("[render_pdf] Rendering page %s variant=%s", plan.page_number, variant)
        _draw_page(c, plan, fetch_image)
        c.showPage()

    c.save()
    return buffer.getvalue()
