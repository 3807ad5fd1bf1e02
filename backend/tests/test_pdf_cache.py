import pytest

from domain.errors import BookStateError, NotFoundError
from domain.models import Book, BookStatus, PdfVariant
from repositories import BooksRepository
from services import pdf_export
from services.book_generation import edit_book
from services.pdf_export import clear_pdf_cache, download_filename, get_or_render_pdf
from storage.file_storage import FileStorage

books_repo = BooksRepository()


@pytest.fixture
def storage(tmp_path):
    return FileStorage(str(tmp_path / "media"), str(tmp_path / "exports"))


@pytest.fixture
def renders(monkeypatch):
    """Records (content_version, variant) for every real render."""
    calls = []
    real_render = pdf_export.render_book_to_pdf

    def counting_render(book, variant, fetch_image, theme=None):
        calls.append((book.content_version, variant))
        return real_render(book, variant, fetch_image, theme)

    monkeypatch.setattr(pdf_export, "render_book_to_pdf", counting_render)
    return calls


@pytest.fixture
def owner(make_account):
    return make_account()


def test_second_download_is_served_from_cache(session, owner, make_book, storage, fake_image_store, renders):
    book = make_book(owner.id)

    first = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    second = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    assert first.startswith(b"%PDF")
    assert second == first
    assert renders == [(0, PdfVariant.DIGITAL)]
    cached = books_repo.get_book(session, book.id)
    assert cached.digital_pdf_path == f"books/{book.id}/book-digital-v0.pdf"
    assert cached.print_pdf_path is None
    assert storage.read_pdf(cached.digital_pdf_path) == first


def test_variants_are_cached_separately(session, owner, make_book, storage, fake_image_store, renders):
    book = make_book(owner.id)

    digital = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    printed = get_or_render_pdf(session, owner.id, book.id, PdfVariant.PRINT, storage, fake_image_store)

    assert digital != printed
    assert renders == [(0, PdfVariant.DIGITAL), (0, PdfVariant.PRINT)]
    cached = books_repo.get_book(session, book.id)
    assert cached.print_pdf_path.endswith("book-print-v0.pdf")


def test_edit_invalidates_both_variants(session, owner, make_book, storage, fake_image_store, renders):
    book = make_book(owner.id)
    old = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.PRINT, storage, fake_image_store)

    edited = edit_book(session, owner.id, book.id, page_texts={2: "Ana meets a whale."})

    assert edited.content_version == 1
    assert edited.digital_pdf_path is None
    assert edited.print_pdf_path is None

    new = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    assert new != old
    assert renders[-1] == (1, PdfVariant.DIGITAL)
    assert books_repo.get_book(session, book.id).digital_pdf_path.endswith("book-digital-v1.pdf")


def test_render_overtaken_by_an_edit_is_served_but_not_cached(
    session, owner, make_book, storage, fake_image_store, monkeypatch
):
    book = make_book(owner.id)

    def render_while_editing(rendered_book, variant, fetch_image, theme=None):
        # A concurrent edit lands while this render is in progress
        edit_book(session, owner.id, book.id, title="A brand new title")
        return b"%PDF-stale"

    monkeypatch.setattr(pdf_export, "render_book_to_pdf", render_while_editing)
    data = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    assert data == b"%PDF-stale"
    after = books_repo.get_book(session, book.id)
    assert after.content_version == 1
    assert after.digital_pdf_path is None
    assert not storage.get_export_absolute_path(storage.get_pdf_path(book.id, PdfVariant.DIGITAL, 0)).exists()


def test_missing_cached_file_is_rendered_again(session, owner, make_book, storage, fake_image_store, renders):
    book = make_book(owner.id)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    storage.delete_pdf(books_repo.get_book(session, book.id).digital_pdf_path)

    data = get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    assert data.startswith(b"%PDF")
    assert len(renders) == 2



def test_exports_are_kept_out_of_the_media_root(session, owner, make_book, storage, fake_image_store):
    book = make_book(owner.id)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    path = storage.get_export_absolute_path(books_repo.get_book(session, book.id).digital_pdf_path)
    assert path.exists()
    assert storage.media_root.resolve() not in path.parents
    assert list(storage.media_root.rglob("*.pdf")) == []


def test_render_after_an_edit_removes_the_old_version(session, owner, make_book, storage, fake_image_store):
    book = make_book(owner.id)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)
    old_path = storage.get_export_absolute_path(books_repo.get_book(session, book.id).digital_pdf_path)

    edit_book(session, owner.id, book.id, title="A brand new title")
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    assert not old_path.exists()
    names = sorted(p.name for p in storage.get_book_exports_dir(book.id).glob("*.pdf"))
    assert names == ["book-digital-v1.pdf"]


def test_render_keeps_the_cached_other_variant(session, owner, make_book, storage, fake_image_store):
    book = make_book(owner.id)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.PRINT, storage, fake_image_store)
    get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)

    cached = books_repo.get_book(session, book.id)
    assert storage.read_pdf(cached.print_pdf_path).startswith(b"%PDF")
    assert storage.read_pdf(cached.digital_pdf_path).startswith(b"%PDF")


@pytest.mark.parametrize("status", [BookStatus.DRAFT, BookStatus.GENERATING, BookStatus.ERROR])
def test_only_completed_books_can_be_downloaded(session, owner, make_book, storage, fake_image_store, status):
    book = make_book(owner.id, status=status)
    with pytest.raises(BookStateError):
        get_or_render_pdf(session, owner.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)


def test_other_accounts_cannot_download(session, owner, make_account, make_book, storage, fake_image_store):
    book = make_book(owner.id)
    stranger = make_account()
    with pytest.raises(NotFoundError):
        get_or_render_pdf(session, stranger.id, book.id, PdfVariant.DIGITAL, storage, fake_image_store)


def test_clear_pdf_cache(session, owner, make_book, storage, fake_image_store):
    cached = make_book(owner.id)
    untouched = make_book(owner.id)
    get_or_render_pdf(session, owner.id, cached.id, PdfVariant.PRINT, storage, fake_image_store)

    assert clear_pdf_cache(session, storage) == 1

    after = books_repo.get_book(session, cached.id)
    assert after.print_pdf_path is None
    assert after.content_version == 1
    assert books_repo.get_book(session, untouched.id).content_version == 0
    assert list(storage.get_book_exports_dir(cached.id).glob("*.pdf")) == []


@pytest.mark.parametrize(
    "name,variant,expected",
    [
        ("Ana", PdfVariant.DIGITAL, "Ana-book.pdf"),
        ("Ana María!", PdfVariant.PRINT, "Ana-Maria-book-print.pdf"),
        ("  Pip   the Fox ", PdfVariant.DIGITAL, "Pip-the-Fox-book.pdf"),
        ("???", PdfVariant.DIGITAL, "picture-book.pdf"),
    ],
)
def test_download_filename(name, variant, expected):
    book = Book(id="b", account_id="a", protagonist_name=name, theme="t")
    assert download_filename(book, variant) == expected
