"""
File storage abstraction.

Provides a simple interface for storing and retrieving book files.
Currently uses local filesystem, can be extended to S3 or other backends.
"""
import hashlib
import shutil
from pathlib import Path
from typing import Iterable, Optional

from domain.models import PdfVariant


def _resolve(root: Path, relative_path: str) -> Path:
    """Join a relative path onto root, refusing paths that escape it."""
    root = root.resolve()
    path = (root / relative_path).resolve()
    if root != path and root not in path.parents:
        raise ValueError(f"Path escapes storage root: {relative_path}")
    return path


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Write then rename so readers never see a half-written file
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    tmp.replace(path)


class FileStorage:
    """
    Local file storage implementation.

    Files are organized as:
    - {media_root}/books/{book_id}/images/  - Page illustrations, served publicly under /media
    - {exports_root}/books/{book_id}/       - Rendered PDFs, one per variant and content version

    Exports live outside the media root so they are only reachable through
    the owner-checked download route.
    """

    def __init__(self, media_root: str = "media", exports_root: Optional[str] = None):
        self.media_root = Path(media_root)
        self.media_root.mkdir(parents=True, exist_ok=True)
        if exports_root is None:
            self.exports_root = self.media_root.parent / "exports"
        else:
            self.exports_root = Path(exports_root)
        self.exports_root.mkdir(parents=True, exist_ok=True)

    def get_book_images_dir(self, book_id: str) -> Path:
        """Get the images directory for a book."""
        path = self.media_root / "books" / book_id / "images"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_book_exports_dir(self, book_id: str) -> Path:
        """Get the exports directory for a book."""
        path = self.exports_root / "books" / book_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def save_image(self, book_id: str, page_number: int, data: bytes, ext: str = ".png") -> str:
        """
        Save a page illustration under a content-addressed name, so a new
        image for the same page always gets a new URL.

        Returns:
            Path relative to the media root
        """
        digest = hashlib.sha256(data).hexdigest()[:12]
        file_path = self.get_book_images_dir(book_id) / f"page-{page_number}-{digest}{ext}"
        _write_atomic(file_path, data)
        return file_path.relative_to(self.media_root).as_posix()

    def get_pdf_path(self, book_id: str, variant: PdfVariant, content_version: int) -> str:
        """
        Get the path for a rendered PDF, relative to the exports root.

        The content version is part of the name so a render of an older
        revision never overwrites the file a newer pointer refers to.
        """
        exports_dir = self.get_book_exports_dir(book_id)
        name = f"book-{PdfVariant(variant).value}-v{content_version}.pdf"
        return (exports_dir / name).relative_to(self.exports_root).as_posix()

    def save_pdf(self, book_id: str, variant: PdfVariant, content_version: int, data: bytes) -> str:
        relative_path = self.get_pdf_path(book_id, variant, content_version)
        _write_atomic(self.get_export_absolute_path(relative_path), data)
        return relative_path

    def read_pdf(self, relative_path: str) -> Optional[bytes]:
        path = self.get_export_absolute_path(relative_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    def delete_pdf(self, relative_path: str) -> bool:
        path = self.get_export_absolute_path(relative_path)
        if path.exists():
            path.unlink()
            return True
        return False

    def delete_exports(self, book_id: str, keep: Iterable[str] = ()) -> int:
        """
        Delete the rendered PDFs of a book, except the relative paths in
        `keep`. Returns the number removed.
        """
        exports_dir = self.exports_root / "books" / book_id
        if not exports_dir.exists():
            return 0
        kept = {self.get_export_absolute_path(p) for p in keep}
        removed = 0
        for pdf in exports_dir.glob("*.pdf"):
            if pdf.resolve() in kept:
                continue
            pdf.unlink()
            removed += 1
        return removed

    def read_bytes(self, relative_path: str) -> Optional[bytes]:
        """Read a stored media file. Returns None if it does not exist."""
        path = self.get_absolute_path(relative_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    def get_absolute_path(self, relative_path: str) -> Path:
        """Convert a path relative to the media root to absolute."""
        return _resolve(self.media_root, relative_path)

    def get_export_absolute_path(self, relative_path: str) -> Path:
        """Convert a path relative to the exports root to absolute."""
        return _resolve(self.exports_root, relative_path)

    def delete_file(self, relative_path: str) -> bool:
        """Delete a media file. Returns True if deleted."""
        path = self.get_absolute_path(relative_path)
        if path.exists():
            path.unlink()
            return True
        return False

    def delete_book_files(self, book_id: str) -> bool:
        """Delete all files for a book."""
        removed = False
        for book_dir in (self.media_root / "books" / book_id, self.exports_root / "books" / book_id):
            if book_dir.exists():
                shutil.rmtree(book_dir)
                removed = True
        return removed
