import re

import pytest

from domain.models import Book, Page, PdfVariant
from services.render_pdf import decode_image, render_book_to_pdf
from conftest import image_bytes

MEDIA_BOX = re.compile(rb"/MediaBox\s*\[\s*0 0 (\d+(?:\.\d+)?) (\d+(?:\.\d+)?)\s*\]")


def _book(page_count=3, with_images=True):
    pages = [
        Page(
            page_number=n,
            text=f"Pip the fox finds shell number {n} on the beach.",
            image_url=f"/media/books/b/images/page-{n}.png" if with_images else None,
        )
        for n in range(1, page_count + 1)
    ]
    return Book(id="b", account_id="a", protagonist_name="Pip", theme="the beach", title="Pip and the Shells", pages=pages)


def _fetch_from(images):
    return lambda address: images.get(address)


def _page_count(pdf):
    return len(re.findall(rb"/Type /Page[^s]", pdf))


@pytest.fixture
def images():
    return {f"/media/books/b/images/page-{n}.png": image_bytes(120, 90 + n) for n in range(1, 4)}


@pytest.mark.parametrize("variant,side", [(PdfVariant.DIGITAL, 576), (PdfVariant.PRINT, 612)])
def test_renders_one_square_page_per_book_page(images, variant, side):
    pdf = render_book_to_pdf(_book(), variant, _fetch_from(images))

    assert pdf.startswith(b"%PDF")
    assert _page_count(pdf) == 3
    boxes = MEDIA_BOX.findall(pdf)
    assert len(boxes) == 3
    assert {(float(w), float(h)) for w, h in boxes} == {(side, side)}
    assert b"/Subtype /Image" in pdf


def test_rendering_is_deterministic(images):
    first = render_book_to_pdf(_book(), PdfVariant.PRINT, _fetch_from(images))
    second = render_book_to_pdf(_book(), PdfVariant.PRINT, _fetch_from(images))
    assert first == second


def test_variants_differ(images):
    digital = render_book_to_pdf(_book(), PdfVariant.DIGITAL, _fetch_from(images))
    printed = render_book_to_pdf(_book(), PdfVariant.PRINT, _fetch_from(images))
    assert digital != printed


def test_undecodable_images_render_like_missing_ones():
    without = render_book_to_pdf(_book(with_images=False), PdfVariant.DIGITAL, _fetch_from({}))
    garbage = {f"/media/books/b/images/page-{n}.png": b"not an image" for n in range(1, 4)}

    assert render_book_to_pdf(_book(), PdfVariant.DIGITAL, _fetch_from(garbage)) == without
    assert render_book_to_pdf(_book(), PdfVariant.DIGITAL, _fetch_from({})) == without
    assert b"/Subtype /Image" not in without


def test_unsupported_format_is_skipped():
    gifs = {f"/media/books/b/images/page-{n}.png": image_bytes(fmt="GIF") for n in range(1, 4)}
    without = render_book_to_pdf(_book(with_images=False), PdfVariant.DIGITAL, _fetch_from({}))
    assert render_book_to_pdf(_book(), PdfVariant.DIGITAL, _fetch_from(gifs)) == without


def test_failing_fetch_still_renders(images):
    def flaky(address):
        if address.endswith("page-2.png"):
            raise ConnectionError("image host down")
        return images.get(address)

    pdf = render_book_to_pdf(_book(), PdfVariant.DIGITAL, flaky)
    assert _page_count(pdf) == 3


def test_decode_image():
    jpeg = decode_image(image_bytes(30, 20, fmt="JPEG"))
    assert jpeg is not None
    assert jpeg.size == (30, 20)

    assert decode_image(image_bytes(fmt="GIF")) is None
    assert decode_image(b"") is None
