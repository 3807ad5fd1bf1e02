"""
Payments API routes: credit packs, checkout and signed payment events.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from api.deps import current_or_new_account
from db import get_session
from domain.errors import ConcurrentLedgerUpdate, NotFoundError
from domain.models import Account
from services import payments

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Payment-Signature"


class PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["payment_succeeded", "payment_failed"]
    payment_reference: str = Field(min_length=1)
    account_id: Optional[str] = None
    credits: Optional[int] = Field(default=None, gt=0)
    amount_cents: int = 0
    currency: str = payments.PACK_CURRENCY


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pack: str


@router.get("/packs")
async def list_packs():
    """Credit packs available for purchase."""
    return {"packs": payments.list_packs()}


@router.post("/checkout")
def start_checkout(
    data: CheckoutRequest,
    account: Account = Depends(current_or_new_account),
    session: Session = Depends(get_session),
):
    """
    Start buying a credit pack. The returned payment_reference goes to the
    payment provider, whose completion event must carry it back.
    """
    try:
        payment = payments.start_checkout(session, account.id, data.pack)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "payment_reference": payment.reference,
        "pack": data.pack,
        "credits": payment.credits,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
    }


@router.post("/events")
async def payment_event(request: Request, session: Session = Depends(get_session)):
    """
    Receive a verified payment event from the provider.

    The body is signed with HMAC-SHA256 using the shared webhook secret.
    Replays of an already processed payment are acknowledged and ignored.
    """
    raw = await request.body()
    if not payments.verify_event_signature(raw, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected payment event with a bad signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = PaymentEvent.model_validate_json(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))

    if event.type == "payment_failed":
        payments.handle_payment_failed(session, event.payment_reference)
        return {"received": True}

    try:
        granted = payments.handle_payment_succeeded(
            session,
            event.account_id,
            event.credits,
            event.payment_reference,
            amount_cents=event.amount_cents,
            currency=event.currency,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        # A reference with no checkout behind it must name the account and credits
        raise HTTPException(status_code=422, detail=str(exc))
    except ConcurrentLedgerUpdate:
        # The provider retries on non-2xx
        raise HTTPException(status_code=409, detail="Balance changed concurrently, retry")
    return {"received": True, "granted": granted}
