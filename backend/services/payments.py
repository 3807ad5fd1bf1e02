"""
Credit purchases.

A purchase starts with `start_checkout`, which records a pending payment for
a credit pack. The provider's signed event then completes it: this module
verifies the signature and turns the completed payment into a ledger grant,
exactly once per payment reference. Credits and price of a checkout come from
the pack, never from the event.
"""
import hashlib
import hmac
import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import unit_of_work
from domain.errors import NotFoundError
from domain.models import CREDIT_PACKS, LedgerReason, Payment, PaymentStatus
from repositories import AccountsRepository, PaymentsRepository
from services.credits import apply_delta
from settings import settings

logger = logging.getLogger(__name__)

accounts_repo = AccountsRepository()
payments_repo = PaymentsRepository()

PACK_CURRENCY = "eur"


def list_packs() -> List[Dict[str, object]]:
    return [
        {"key": key, "credits": credits, "amount_cents": price, "currency": PACK_CURRENCY}
        for key, (credits, price) in CREDIT_PACKS.items()
    ]


def start_checkout(session: Session, account_id: str, pack_key: str) -> Payment:
    """
    Record a pending payment for a credit pack. Its reference is what the
    provider must echo back in the completion event.

    Raises:
        ValueError: Unknown pack
        NotFoundError: Unknown account
    """
    if pack_key not in CREDIT_PACKS:
        raise ValueError(f"Unknown credit pack: {pack_key}")
    pack_credits, price = CREDIT_PACKS[pack_key]
    with unit_of_work(session):
        if accounts_repo.get(session, account_id) is None:
            raise NotFoundError(f"Account {account_id} not found")
        payment = payments_repo.create(session, Payment(
            id=Payment.generate_id(),
            account_id=account_id,
            reference=f"chk_{uuid.uuid4().hex}",
            credits=pack_credits,
            amount_cents=price,
            currency=PACK_CURRENCY,
            status=PaymentStatus.PENDING,
        ))
    logger.info("Checkout %s started for %s: pack %s", payment.reference, account_id, pack_key)
    return payment


def sign_payload(raw: bytes, secret: Optional[str] = None) -> str:
    secret = settings.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def verify_event_signature(raw: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded. An unset secret rejects everything."""
    secret = settings.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(raw, secret), signature.strip().lower())


def _complete_payment(
    session: Session,
    account_id: Optional[str],
    credits: Optional[int],
    reference: str,
    amount_cents: int,
    currency: str,
) -> Optional[int]:
    payment = payments_repo.get_by_reference(session, reference, for_update=True)
    if payment is not None and payment.status == PaymentStatus.COMPLETED:
        return None
    if payment is None:
        # No checkout on record: the event itself must say who gets what
        if not account_id or not credits:
            raise ValueError(f"Unknown payment {reference} needs account_id and credits")
        if accounts_repo.get(session, account_id) is None:
            raise NotFoundError(f"Account {account_id} not found")
        payment = payments_repo.create(session, Payment(
            id=Payment.generate_id(),
            account_id=account_id,
            reference=reference,
            credits=credits,
            amount_cents=amount_cents,
            currency=currency,
            status=PaymentStatus.COMPLETED,
        ))
    else:
        payments_repo.set_status(session, payment.id, PaymentStatus.COMPLETED)
    # A pending payment may have been re-owned by a session merge since checkout
    return apply_delta(session, payment.account_id, payment.credits, LedgerReason.PURCHASE, payment.id)


def handle_payment_succeeded(
    session: Session,
    account_id: Optional[str],
    credits: Optional[int],
    payment_reference: str,
    amount_cents: int = 0,
    currency: str = PACK_CURRENCY,
) -> bool:
    """
    Grant the purchased credits. Returns False when the reference was
    already processed; replays are harmless.

    A payment started with `start_checkout` grants its pack and goes to the
    payment's current owner; `account_id` and `credits` are only used for a
    reference with no checkout on record.
    """
    if credits is not None and credits <= 0:
        raise ValueError("credits must be positive")
    try:
        with unit_of_work(session):
            balance = _complete_payment(session, account_id, credits, payment_reference, amount_cents, currency)
    except IntegrityError:
        # A concurrent delivery of the same event inserted the payment first
        logger.info("Payment %s already recorded by a concurrent delivery", payment_reference)
        return False
    if balance is None:
        logger.info("Payment %s already processed; skipping", payment_reference)
        return False
    logger.info("Payment %s completed; balance=%s", payment_reference, balance)
    return True


def handle_payment_failed(session: Session, payment_reference: str) -> bool:
    with unit_of_work(session):
        payment = payments_repo.get_by_reference(session, payment_reference, for_update=True)
        if payment is None or payment.status == PaymentStatus.COMPLETED:
            updated = False
        else:
            payments_repo.set_status(session, payment.id, PaymentStatus.FAILED)
            updated = True
    logger.info("Payment %s failed (recorded=%s)", payment_reference, updated)
    return updated
