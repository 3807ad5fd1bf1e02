"""
Layout engine service.

Computes the draw plan of each page for a PDF variant: where the illustration
goes, and where every wrapped line of text sits. Uses a registry pattern keyed
by page kind (cover vs body) so new page treatments can be added easily.

Coordinates are PDF points with the origin at the bottom-left corner.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from reportlab.pdfbase import pdfmetrics

from domain.models import Book, Page, PageGeometry, PagePlan, PdfVariant, Rect, TextPlacement, Theme
from services.text_wrap import StandardFont, wrap_text

logger = logging.getLogger(__name__)


GEOMETRIES: Dict[PdfVariant, PageGeometry] = {
    # 8in square, no bleed
    PdfVariant.DIGITAL: PageGeometry(
        variant=PdfVariant.DIGITAL,
        size=576.0,
        bleed=0.0,
        margin=20.0,
        image_fraction=0.70,
        background_color="#f2ede6",
    ),
    # 8.5in square including a 0.25in bleed on every side
    PdfVariant.PRINT: PageGeometry(
        variant=PdfVariant.PRINT,
        size=612.0,
        bleed=18.0,
        margin=25.0,
        image_fraction=0.68,
        background_color="#ffffff",
    ),
}

# Space between the image area and the first line of text
TEXT_GAP = 10.0
# Extra space between the cover subtitle and the body text, as a share of body size
BLOCK_GAP_RATIO = 0.5
FONT_STEP = 1.0


def get_geometry(variant: PdfVariant) -> PageGeometry:
    return GEOMETRIES[PdfVariant(variant)]


def fit_image(image_width: float, image_height: float, area: Rect) -> Rect:
    """
    Largest rectangle with the image's aspect ratio that fits inside `area`,
    centered on the free axis. The image is letterboxed, never cropped.
    """
    if image_width <= 0 or image_height <= 0:
        raise ValueError("Image dimensions must be positive")
    image_aspect = image_width / image_height
    area_aspect = area.width / area.height
    if image_aspect > area_aspect:
        # Relatively wider: full width, centered vertically
        width = area.width
        height = width / image_aspect
        return Rect(area.x, area.y + (area.height - height) / 2, width, height)
    height = area.height
    width = height * image_aspect
    return Rect(area.x + (area.width - width) / 2, area.y, width, height)


@dataclass
class TextBlock:
    """Consecutive lines sharing one font, size and color."""
    lines: List[str]
    font_name: str
    font_size: float
    color: str
    gap_before: float = 0.0


@dataclass
class TextRegion:
    x: float
    width: float
    top: float
    bottom: float


def image_area(geometry: PageGeometry) -> Rect:
    content = geometry.content_box
    height = content.height * geometry.image_fraction
    return Rect(content.x, content.top - height, content.width, height)


def text_region(geometry: PageGeometry, theme: Theme) -> TextRegion:
    content = geometry.content_box
    footer = theme.label_size * theme.line_height
    return TextRegion(
        x=content.x,
        width=content.width,
        top=image_area(geometry).y - TEXT_GAP,
        bottom=content.y + footer,
    )


def _stack_height(blocks: List[TextBlock], line_height: float) -> float:
    """Distance from the region top to the lowest descender, stacking as _place_blocks does."""
    cursor = 0.0
    lowest = 0.0
    for block in blocks:
        if not block.lines:
            continue
        cursor += block.gap_before
        descent = -pdfmetrics.getDescent(block.font_name, block.font_size)
        for _ in block.lines:
            lowest = cursor + block.font_size + descent
            cursor += block.font_size * line_height
    return lowest


def _blocks_fit(blocks: List[TextBlock], region: TextRegion, line_height: float) -> bool:
    return _stack_height(blocks, line_height) <= region.top - region.bottom


def _place_blocks(blocks: List[TextBlock], region: TextRegion, line_height: float, page_number: int) -> List[TextPlacement]:
    """Stack blocks top-down, centering each line; drop lines that would spill out."""
    placements: List[TextPlacement] = []
    cursor = region.top
    dropped = 0
    for block in blocks:
        font = StandardFont(block.font_name)
        if block.lines:
            cursor -= block.gap_before
        for line in block.lines:
            size = block.font_size
            width = font.width_of(line, size)
            if width > region.width:
                # Single word wider than the region: shrink just this line
                size = size * region.width / width
                width = font.width_of(line, size)
            baseline = cursor - block.font_size
            descent = -pdfmetrics.getDescent(block.font_name, size)
            cursor -= block.font_size * line_height
            if baseline - descent < region.bottom:
                dropped += 1
                continue
            placements.append(TextPlacement(
                text=line,
                x=region.x + (region.width - width) / 2,
                y=baseline,
                font_name=block.font_name,
                font_size=size,
                color=block.color,
            ))
    if dropped:
        logger.warning("Page %s: %s line(s) did not fit the text area and were dropped", page_number, dropped)
    return placements


def _fit_body(
    header: List[TextBlock],
    text: str,
    region: TextRegion,
    theme: Theme,
    gap_before: float = 0.0,
) -> List[TextBlock]:
    """Step the body size down until header + body fit, stopping at the theme minimum."""
    font = StandardFont(theme.body_font)
    size = theme.body_size
    while True:
        body = TextBlock(
            lines=wrap_text(text, font, size, region.width),
            font_name=theme.body_font,
            font_size=size,
            color=theme.text_color,
            gap_before=gap_before if header else 0.0,
        )
        blocks = header + [body]
        if _blocks_fit(blocks, region, theme.line_height) or size - FONT_STEP < theme.min_body_size:
            return blocks
        size -= FONT_STEP


def page_label(page: Page, geometry: PageGeometry, theme: Theme) -> TextPlacement:
    """Page number in the bottom-right corner of the content box."""
    content = geometry.content_box
    label = str(page.page_number)
    width = StandardFont(theme.body_font).width_of(label, theme.label_size)
    descent = -pdfmetrics.getDescent(theme.body_font, theme.label_size)
    return TextPlacement(
        text=label,
        x=content.right - width,
        y=content.y + descent,
        font_name=theme.body_font,
        font_size=theme.label_size,
        color=theme.label_color,
    )


# Type alias for layout functions
LayoutFunction = Callable[[Book, Page, PageGeometry, Theme], PagePlan]


# Registry of layout functions by page kind
_layout_registry: Dict[str, LayoutFunction] = {}


def register_layout(kind: str):
    """Decorator to register a layout function for a page kind."""
    def decorator(func: LayoutFunction) -> LayoutFunction:
        _layout_registry[kind] = func
        return func
    return decorator


def page_kind(page: Page) -> str:
    return "cover" if page.is_cover else "body"


def compute_page_plan(book: Book, page: Page, geometry: PageGeometry, theme: Optional[Theme] = None) -> PagePlan:
    """
    Compute the draw plan for one page.

    Raises:
        ValueError: If no layout is registered for the page kind
    """
    kind = page_kind(page)
    layout_func = _layout_registry.get(kind)
    if not layout_func:
        raise ValueError(f"No layout registered for page kind: {kind}")
    return layout_func(book, page, geometry, theme or Theme())


def build_page_plans(book: Book, variant: PdfVariant, theme: Optional[Theme] = None) -> List[PagePlan]:
    """Plans for every page of the book, in page order."""
    geometry = get_geometry(variant)
    theme = theme or Theme()
    pages = sorted(book.pages, key=lambda p: p.page_number)
    return [compute_page_plan(book, page, geometry, theme) for page in pages]


# ============================================
# Layout implementations
# ============================================

@register_layout("cover")
def layout_cover(book: Book, page: Page, geometry: PageGeometry, theme: Theme) -> PagePlan:
    """
    Cover page.

    Structure:
    - Illustration in the top area
    - Title (bold, accent color) and "A story of <name>" subtitle
    - Body text below
    """
    region = text_region(geometry, theme)
    title_font = StandardFont(theme.title_font)
    subtitle_font = StandardFont(theme.body_font)
    header = [
        TextBlock(
            lines=wrap_text(book.display_title, title_font, theme.title_size, region.width),
            font_name=theme.title_font,
            font_size=theme.title_size,
            color=theme.accent_color,
        ),
        TextBlock(
            lines=wrap_text(f"A story of {book.protagonist_name}", subtitle_font, theme.subtitle_size, region.width),
            font_name=theme.body_font,
            font_size=theme.subtitle_size,
            color=theme.muted_color,
        ),
    ]
    blocks = _fit_body(header, page.text, region, theme, gap_before=theme.body_size * BLOCK_GAP_RATIO)
    return PagePlan(
        page_number=page.page_number,
        width=geometry.size,
        height=geometry.size,
        background_color=geometry.background_color,
        image_area=image_area(geometry),
        image_url=page.image_url,
        texts=_place_blocks(blocks, region, theme.line_height, page.page_number),
        page_label=page_label(page, geometry, theme),
    )


@register_layout("body")
def layout_body(book: Book, page: Page, geometry: PageGeometry, theme: Theme) -> PagePlan:
    """Interior page: illustration on top, centered body text below."""
    region = text_region(geometry, theme)
    blocks = _fit_body([], page.text, region, theme)
    return PagePlan(
        page_number=page.page_number,
        width=geometry.size,
        height=geometry.size,
        background_color=geometry.background_color,
        image_area=image_area(geometry),
        image_url=page.image_url,
        texts=_place_blocks(blocks, region, theme.line_height, page.page_number),
        page_label=page_label(page, geometry, theme),
    )
