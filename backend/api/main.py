"""
FastAPI application entry point.

Run with: uvicorn api.main:app --reload
"""
import logging
from email.utils import formatdate
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

# Load environment variables from backend/.env (optional) before other imports that read env
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(env_path)

from api.routes import account, admin, books, payments, pipeline
from db import init_db
from services.generation import OpenAIStoryGenerator
from services.image_store import LocalImageStore
from settings import settings
from storage.file_storage import FileStorage

logger = logging.getLogger(__name__)


def create_app(storage: FileStorage = None, generator=None, image_store=None) -> FastAPI:
    """
    Build the application. Collaborators default to the real implementations;
    tests pass fakes.
    """
    app = FastAPI(
        title="PictureBook Studio API",
        description="API for generating personalized illustrated children's books",
        version="0.1.0",
    )

    storage = storage or FileStorage(settings.MEDIA_ROOT, settings.EXPORTS_ROOT)
    app.state.storage = storage
    app.state.generator = generator or OpenAIStoryGenerator()
    app.state.image_store = image_store or LocalImageStore(storage)

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure properly for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Only illustrations live under the media root; PDFs go through /books/{id}/pdf
    media_path = storage.media_root
    app.mount("/media", StaticFiles(directory=str(media_path)), name="media")

    # Include routers
    app.include_router(books.router, prefix="/books", tags=["books"])
    app.include_router(pipeline.router, prefix="/books/{book_id}", tags=["pipeline"])
    app.include_router(account.router, prefix="/account", tags=["account"])
    app.include_router(payments.router, prefix="/payments", tags=["payments"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])

    @app.middleware("http")
    async def media_cache_middleware(request: Request, call_next):
        """Add caching headers for media static responses.

        Illustration names carry a digest of their bytes, so a file never
        changes under the same name and can be cached for a week.
        """
        response = await call_next(request)
        path = request.url.path
        if path.startswith("/media/") and response.status_code == 200:
            file_path = media_path.joinpath(path[len("/media/"):])
            if file_path.is_file():
                stat = file_path.stat()
                response.headers["Cache-Control"] = "public, max-age=604800, immutable"
                response.headers.setdefault("Last-Modified", formatdate(stat.st_mtime, usegmt=True))
                response.headers.setdefault("ETag", f'W/"{stat.st_mtime:.0f}-{stat.st_size}"')
        return response

    @app.on_event("startup")
    def startup_event():
        """Initialize database tables on startup."""
        init_db()
        logger.info("PictureBook Studio API started (media root %s)", media_path)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "PictureBook Studio API"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
