"""
Persistence for page illustrations.

Generated images come back as short-lived provider URLs, so they are
downloaded right away and served from local media storage afterwards.
"""
import logging
from typing import Optional, Protocol

import requests

from settings import settings
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/media/"

_session = requests.Session()


class ImageStore(Protocol):
    def store(self, temporary_url: str, book_id: str, page_number: int) -> str:
        """Persist the image and return its durable address."""
        ...

    def fetch_bytes(self, address: str) -> Optional[bytes]:
        """Bytes behind an address, or None when they cannot be read."""
        ...

    def discard(self, address: str) -> None:
        """Remove a stored image that no page refers to any more."""
        ...


def _extension_for(content_type: Optional[str]) -> str:
    if content_type and "jpeg" in content_type:
        return ".jpg"
    return ".png"


class LocalImageStore:
    """ImageStore writing into media/books/{book_id}/images/."""

    def __init__(self, storage: FileStorage, timeout: Optional[float] = None):
        self.storage = storage
        self.timeout = timeout or settings.IMAGE_FETCH_TIMEOUT_SECONDS

    def _download(self, url: str) -> Optional[requests.Response]:
        try:
            resp = _session.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Image fetch failed for %s: %s", url, exc)
            return None
        return resp

    def store(self, temporary_url: str, book_id: str, page_number: int) -> str:
        """
        Download and save the image. If the download fails the temporary URL
        is returned as-is; it keeps working until the provider expires it.
        """
        resp = self._download(temporary_url)
        if resp is None:
            return temporary_url
        relative_path = self.storage.save_image(
            book_id,
            page_number,
            resp.content,
            ext=_extension_for(resp.headers.get("Content-Type")),
        )
        logger.info("Stored image for book %s page %s at %s", book_id, page_number, relative_path)
        return MEDIA_URL_PREFIX + relative_path

    def fetch_bytes(self, address: str) -> Optional[bytes]:
        if not address:
            return None
        if address.startswith(MEDIA_URL_PREFIX):
            try:
                return self.storage.read_bytes(address[len(MEDIA_URL_PREFIX):])
            except ValueError as exc:
                logger.warning("Refusing image address %s: %s", address, exc)
                return None
        if address.startswith(("http://", "https://")):
            resp = self._download(address)
            return resp.content if resp is not None else None
        logger.warning("Unrecognised image address %s", address)
        return None

    def discard(self, address: str) -> None:
        # Provider URLs expire on their own
        if not address or not address.startswith(MEDIA_URL_PREFIX):
            return
        try:
            removed = self.storage.delete_file(address[len(MEDIA_URL_PREFIX):])
        except ValueError as exc:
            logger.warning("Refusing image address %s: %s", address, exc)
            return
        if removed:
            logger.info("Discarded superseded image %s", address)
