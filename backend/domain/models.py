"""
Core domain models for the picture book generator.
These are framework-agnostic and can be used across all services.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple
import uuid


class AccountRole(str, Enum):
    """Role of an account."""
    USER = "user"
    ADMIN = "admin"


class LedgerReason(str, Enum):
    """Why a ledger entry was written."""
    PURCHASE = "purchase"
    BOOK_GENERATION = "book_generation"
    PAGE_REGENERATION = "page_regeneration"
    ADMIN_GRANT = "admin_grant"
    ADMIN_DEDUCT = "admin_deduct"
    SESSION_MERGE = "session_merge"


class OperationKind(str, Enum):
    """Billable operations. Values double as the ledger reason code."""
    BOOK_GENERATION = "book_generation"
    PAGE_REGENERATION = "page_regeneration"


class BookStatus(str, Enum):
    """Lifecycle of a book."""
    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PdfVariant(str, Enum):
    """Output geometries for the exported PDF."""
    DIGITAL = "digital"
    PRINT = "print"


@dataclass
class Account:
    """
    Either an anonymous session (identified by session_key) or an
    authenticated identity (identified by email).
    """
    id: str
    session_key: Optional[str] = None
    email: Optional[str] = None
    credits: int = 0
    role: AccountRole = AccountRole.USER
    created_at: datetime = field(default_factory=datetime.utcnow)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN


@dataclass
class LedgerEntry:
    """An immutable record of one balance change."""
    id: int
    account_id: str
    amount: int
    reason: LedgerReason
    balance: int
    reference_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Page:
    """
    A page of a picture book.

    Page 1 is the cover: it gets the title block on top of the body text.
    """
    page_number: int
    text: str = ""
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    prompt_override: Optional[str] = None

    @property
    def is_cover(self) -> bool:
        return self.page_number == 1


@dataclass
class Book:
    """A generated (or draft) picture book owned by one account."""
    id: str
    account_id: str
    protagonist_name: str
    theme: str
    style: str = "cartoon"
    character_description: Optional[str] = None
    # Fixed look of the protagonist, prefixed to every illustration prompt
    character_sheet: Optional[str] = None
    title: Optional[str] = None
    status: BookStatus = BookStatus.DRAFT
    pages: List[Page] = field(default_factory=list)
    content_version: int = 0
    digital_pdf_path: Optional[str] = None
    print_pdf_path: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    @property
    def display_title(self) -> str:
        return self.title or f"The adventure of {self.protagonist_name}"

    def get_page(self, page_number: int) -> Optional[Page]:
        for page in self.pages:
            if page.page_number == page_number:
                return page
        return None

    def cached_pdf_path(self, variant: PdfVariant) -> Optional[str]:
        if variant == PdfVariant.PRINT:
            return self.print_pdf_path
        return self.digital_pdf_path


@dataclass
class Payment:
    """A purchase of credits; `reference` is the provider's idempotency key."""
    id: str
    account_id: str
    reference: str
    credits: int
    amount_cents: int = 0
    currency: str = "eur"
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=datetime.utcnow)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())


# Generation collaborator output

@dataclass
class DraftPage:
    """One page of a freshly generated narrative."""
    number: int
    text: str
    image_prompt: str


@dataclass
class StoryDraft:
    title: str
    pages: List[DraftPage] = field(default_factory=list)
    character_sheet: str = ""


# Page composition

@dataclass(frozen=True)
class PageGeometry:
    """
    Fixed geometry for one PDF variant, in PDF points.

    Content lives inside the canvas shrunk by `bleed` and then by `margin`.
    """
    variant: PdfVariant
    size: float
    bleed: float
    margin: float
    image_fraction: float
    background_color: str

    @property
    def content_box(self) -> "Rect":
        inset = self.bleed + self.margin
        return Rect(inset, inset, self.size - 2 * inset, self.size - 2 * inset)

    @property
    def safe_box(self) -> "Rect":
        return Rect(self.bleed, self.bleed, self.size - 2 * self.bleed, self.size - 2 * self.bleed)


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle; (x, y) is the bottom-left corner."""
    x: float
    y: float
    width: float
    height: float

    @property
    def top(self) -> float:
        return self.y + self.height

    @property
    def right(self) -> float:
        return self.x + self.width

    def contains(self, other: "Rect", tolerance: float = 1e-6) -> bool:
        return (
            other.x >= self.x - tolerance
            and other.y >= self.y - tolerance
            and other.right <= self.right + tolerance
            and other.top <= self.top + tolerance
        )


@dataclass
class TextPlacement:
    """A single line of text anchored at its baseline."""
    text: str
    x: float
    y: float
    font_name: str
    font_size: float
    color: str


@dataclass
class PagePlan:
    """The draw instructions for one page of the PDF."""
    page_number: int
    width: float
    height: float
    background_color: str
    image_area: Rect
    image_url: Optional[str] = None
    texts: List[TextPlacement] = field(default_factory=list)
    page_label: Optional[TextPlacement] = None


@dataclass
class Theme:
    """
    Colors and fonts for the exported book.
    """
    name: str = "default"
    text_color: str = "#2b2b2b"
    accent_color: str = "#c2410c"
    muted_color: str = "#78716c"
    label_color: str = "#a8a29e"
    body_font: str = "Helvetica"
    title_font: str = "Helvetica-Bold"
    body_size: float = 14.0
    min_body_size: float = 9.0
    title_size: float = 22.0
    subtitle_size: float = 14.0
    label_size: float = 10.0
    line_height: float = 1.6


# Credit packs offered for purchase: key -> (credits, price in cents)
CREDIT_PACKS: Dict[str, Tuple[int, int]] = {
    "small": (5, 499),
    "medium": (15, 1299),
    "large": (30, 2299),
}
