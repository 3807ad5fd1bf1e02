"""
Shared FastAPI dependencies: database session, caller identity and the
generation/storage collaborators attached to the app at startup.
"""
import uuid
from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from db import get_session
from domain.models import Account
from repositories import AccountsRepository
from services.generation import StoryGenerator
from services.identity_merge import RequestIdentity, get_or_create_anonymous, resolve_account, sign_in
from services.image_store import ImageStore
from settings import settings
from storage.file_storage import FileStorage

SESSION_COOKIE = "session_id"
EMAIL_HEADER = "X-Authenticated-Email"
# One year
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 365

accounts_repo = AccountsRepository()


def get_identity(request: Request) -> RequestIdentity:
    email = (request.headers.get(EMAIL_HEADER) or "").strip().lower() or None
    return RequestIdentity(email=email, session_key=request.cookies.get(SESSION_COOKIE))


def get_generator(request: Request) -> StoryGenerator:
    return request.app.state.generator


def get_image_store(request: Request) -> ImageStore:
    return request.app.state.image_store


def get_storage(request: Request) -> FileStorage:
    return request.app.state.storage


def set_session_cookie(response: Response, session_key: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_key,
        max_age=SESSION_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.SESSION_COOKIE_SECURE,
    )


def current_account(
    session: Session = Depends(get_session),
    identity: RequestIdentity = Depends(get_identity),
) -> Account:
    """
    The caller's account; 401 when the request carries no known identity.

    An authenticated caller still holding an anonymous cookie gets that
    session merged in on the way; sign_in is a no-op once it has been.
    """
    if identity.email:
        return sign_in(session, identity.email, identity.session_key)
    account_id = resolve_account(session, identity)
    if account_id is None:
        raise HTTPException(status_code=401, detail="Not authorized")
    return accounts_repo.get(session, account_id)


def current_or_new_account(
    response: Response,
    session: Session = Depends(get_session),
    identity: RequestIdentity = Depends(get_identity),
) -> Account:
    """Like current_account, but starts an anonymous session for first-time visitors."""
    if identity.email:
        return sign_in(session, identity.email, identity.session_key)
    account_id = resolve_account(session, identity)
    if account_id is not None:
        return accounts_repo.get(session, account_id)
    session_key = identity.session_key or str(uuid.uuid4())
    account = get_or_create_anonymous(session, session_key)
    set_session_cookie(response, session_key)
    return account


def require_admin(account: Account = Depends(current_account)) -> Account:
    if not account.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return account
