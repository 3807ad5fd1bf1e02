import os
from pathlib import Path

# Basic settings helper to read environment configuration.

BACKEND_ROOT = Path(__file__).resolve().parent


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _as_int(val: str | None, default: int) -> int:
    if val is None or not val.strip():
        return default
    return int(val)


class Settings:
    def __init__(self) -> None:
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{BACKEND_ROOT / 'app.db'}")
        self.MEDIA_ROOT: str = os.getenv("MEDIA_ROOT", "media")
        self.EXPORTS_ROOT: str = os.getenv("EXPORTS_ROOT", "exports")
        self.OPENAI_VISION_MODEL: str = os.getenv("OPENAI_VISION_MODEL", "gpt-4o")
        self.MAX_PHOTO_BYTES: int = _as_int(os.getenv("MAX_PHOTO_BYTES"), 10 * 1024 * 1024)
        self.OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
        self.OPENAI_TEXT_MODEL: str = os.getenv("OPENAI_TEXT_MODEL", "gpt-4o-mini")
        self.OPENAI_IMAGE_MODEL: str = os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3")
        self.PAYMENT_WEBHOOK_SECRET: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
        self.IMAGE_FETCH_TIMEOUT_SECONDS: int = _as_int(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS"), 30)
        self.SESSION_COOKIE_SECURE: bool = _as_bool(os.getenv("SESSION_COOKIE_SECURE"), False)
        self.STORY_PAGE_COUNT: int = _as_int(os.getenv("STORY_PAGE_COUNT"), 12)


settings = Settings()
