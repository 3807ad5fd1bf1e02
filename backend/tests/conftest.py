import io
import sys
from pathlib import Path

# Ensure the backend package root is on sys.path for direct pytest runs
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import Base, unit_of_work
from domain.models import AccountRole, Book, BookStatus, DraftPage, Page, StoryDraft
from repositories import AccountsRepository, BooksRepository
from repositories import models  # noqa: F401  Ensures models are registered
from services import credits


def image_bytes(width: int = 64, height: int = 48, fmt: str = "PNG", color=(200, 120, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


class FakeStoryGenerator:
    """In-memory StoryGenerator. Prompts listed in `failing_prompts` make illustration fail."""

    def __init__(self, page_count: int = 12):
        self.page_count = page_count
        self.failing_prompts = set()
        self.fail_narrative = False
        self.calls = []

    def generate_narrative(self, protagonist_name, theme, character_description=None, style="cartoon"):
        self.calls.append(("narrative", protagonist_name, theme))
        if self.fail_narrative:
            raise RuntimeError("text model unavailable")
        return StoryDraft(
            title=f"{protagonist_name} and {theme}",
            character_sheet=f"{protagonist_name}, freckles and a green scarf",
            pages=[
                DraftPage(number=n, text=f"Page {n}: {protagonist_name} goes on.", image_prompt=f"prompt {n}")
                for n in range(1, self.page_count + 1)
            ],
        )

    def regenerate_page_text(self, protagonist_name, theme, page_number, current_text, custom_prompt=None, style="cartoon",
                             character_sheet=None):
        self.calls.append(("page", page_number, custom_prompt, character_sheet))
        return DraftPage(number=page_number, text=f"Fresh page {page_number}", image_prompt=f"fresh prompt {page_number}")

    def generate_illustration(self, prompt):
        self.calls.append(("image", prompt))
        if prompt in self.failing_prompts:
            raise RuntimeError(f"image model refused {prompt}")
        return "https://images.example/" + prompt.replace(" ", "-") + ".png"

    def describe_photo(self, data, content_type):
        self.calls.append(("photo", len(data), content_type))
        return "curly red hair, brown eyes and round glasses"


class FakeImageStore:
    """
    ImageStore keeping bytes in a dict keyed by address. Like the real store,
    every stored image gets a fresh address: page-{n}-{k}.png for the k-th
    image of page n.
    """

    def __init__(self):
        self.images = {}
        self.discarded = []
        self._stored = {}

    def store(self, temporary_url, book_id, page_number):
        k = self._stored.get((book_id, page_number), 0) + 1
        self._stored[(book_id, page_number)] = k
        address = f"/media/books/{book_id}/images/page-{page_number}-{k}.png"
        self.images[address] = image_bytes(80 + page_number, 60)
        return address

    def fetch_bytes(self, address):
        return self.images.get(address)

    def discard(self, address):
        self.discarded.append(address)
        self.images.pop(address, None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def make_account(session):
    repo = AccountsRepository()

    def _make(credits_amount: int = 0, email=None, session_key=None, role=AccountRole.USER):
        with unit_of_work(session):
            account = repo.create(session, session_key=session_key, email=email, role=role)
        if credits_amount:
            credits.grant(session, account.id, credits_amount, reference_id="seed")
        return repo.get(session, account.id)

    return _make


@pytest.fixture
def fake_generator():
    return FakeStoryGenerator()


@pytest.fixture
def fake_image_store():
    return FakeImageStore()


@pytest.fixture
def make_book(session, fake_image_store):
    """Persist a book with `page_count` pages, illustrated unless with_images is False."""
    repo = BooksRepository()

    def _make(account_id: str, page_count: int = 3, status=BookStatus.COMPLETED, with_images=True, name="Ana",
              character_sheet=None):
        book = Book(
            id=Book.generate_id(),
            account_id=account_id,
            protagonist_name=name,
            theme="the sea",
            character_sheet=character_sheet,
        )
        pages = []
        for n in range(1, page_count + 1):
            url = fake_image_store.store("https://tmp.example/x.png", book.id, n) if with_images else None
            pages.append(Page(page_number=n, text=f"{name} sails on page {n}.", image_url=url, image_prompt=f"prompt {n}"))
        with unit_of_work(session):
            repo.create_book(session, book)
            repo.replace_pages(session, book.id, pages)
            repo.set_status(session, book.id, status)
            repo.set_title(session, book.id, f"{name} and the sea")
        return repo.get_book(session, book.id)

    return _make
