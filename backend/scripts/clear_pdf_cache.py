"""Drop cached PDFs so the next download renders them again.

Usage:
    python -m scripts.clear_pdf_cache              # every book
    python -m scripts.clear_pdf_cache --book-id <id>

Useful after changing fonts, colors or page geometry.
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from db import SessionLocal, init_db
from services.pdf_export import clear_pdf_cache
from settings import settings
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser = argparse.ArgumentParser(description="Clear cached book PDFs.")
    parser.add_argument("--book-id", default=None, help="Only clear this book.")
    parser.add_argument("--media-root", default=settings.MEDIA_ROOT)
    parser.add_argument("--exports-root", default=settings.EXPORTS_ROOT)
    args = parser.parse_args(argv)

    init_db()
    storage = FileStorage(args.media_root, args.exports_root)
    with SessionLocal() as session:
        count = clear_pdf_cache(session, storage, book_id=args.book_id)
    logger.info("Cleared cached PDFs for %s book(s)", count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
