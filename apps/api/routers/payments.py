"""
Payments API Router

Stripe webhook, checkout finalize, one-time link checkout and the gated
download endpoint.
"""

from __future__ import annotations

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from core.auth import CurrentUser, get_optional_user
from core.config import settings
from core.database import get_db
from core.deps import get_notifier, get_optional_stripe_service, get_storage, get_stripe_service
from core.exceptions import (
    BadRequestError,
    ConfigurationError,
    ForbiddenError,
    GoneError,
    NotFoundError,
    PaymentRequiredError,
    UnauthorizedError,
)
from core.logging import log_context
from core.timeutil import utcnow
from schemas import (
    CheckoutRequest,
    CheckoutResponse,
    DownloadRequest,
    DownloadResponse,
    FileInfoResponse,
    FinalizeRequest,
)
from services.entitlements import GateOutcome, gate_download, get_link
from services.expiry_sweeper import is_expired
from services.notifications import Notifier
from services.object_storage import ObjectStorageError, StorageService
from services.reconciler import (
    BypassForbiddenError,
    BypassUnauthorizedError,
    InvalidSessionError,
    LinkGoneError,
    LinkNotFoundError,
    finalize_checkout,
    process_stripe_event,
)
from services.signed_access import issue_signed_url
from services.stripe_service import StripeService, link_price_for_days

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    svc: StripeService = Depends(get_stripe_service),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Stripe webhook endpoint.

    Verifies the signature, then processes the event idempotently. A 500 makes
    Stripe redeliver; data problems that a retry cannot fix are acknowledged.
    """
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    payload = await request.body()
    try:
        event = svc.construct_event(payload=payload, sig_header=sig)
    except ConfigurationError as e:
        logger.error(f"Webhook rejected: {e}")
        raise HTTPException(status_code=500, detail="Webhook not configured")
    except Exception:
        # Signature verification errors should return 400 so Stripe can retry appropriately.
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        return process_stripe_event(db, event=event, stripe=svc, notifier=notifier)
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")


@router.post("/mark-paid")
def mark_paid(
    body: Optional[FinalizeRequest] = Body(default=None),
    session_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    svc: Optional[StripeService] = Depends(get_optional_stripe_service),
    notifier: Notifier = Depends(get_notifier),
    caller: Optional[CurrentUser] = Depends(get_optional_user),
):
    """
    Finalize a checkout the client just returned from.

    The session is re-fetched from Stripe; nothing the client sends besides
    the id is trusted.
    """
    sid = (body.session_id if body and body.session_id else session_id) or ""
    if sid.strip().startswith("cs_") and svc is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured")

    try:
        return finalize_checkout(db, sid, stripe=svc, notifier=notifier, caller=caller)
    except InvalidSessionError as e:
        raise BadRequestError(str(e))
    except LinkNotFoundError as e:
        raise NotFoundError("Link", str(e))
    except LinkGoneError:
        raise GoneError("Link deleted")
    except BypassUnauthorizedError as e:
        raise UnauthorizedError(str(e))
    except BypassForbiddenError as e:
        raise ForbiddenError(str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe lookup failed for {sid}: {e}")
        raise HTTPException(status_code=500, detail="Failed to verify checkout session")


@router.post("/checkout", response_model=CheckoutResponse)
def create_link_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    svc: StripeService = Depends(get_stripe_service),
):
    """Create a one-time Checkout Session unlocking a single link."""
    code = request.code.strip().upper()
    link = get_link(db, code)
    if link is None:
        raise NotFoundError("Link", code)
    if link.deleted_at is not None or is_expired(link, utcnow()):
        raise GoneError("Link expired")
    if link.paid:
        raise BadRequestError("Link already paid")

    days, amount = link_price_for_days(request.days if request.days is not None else link.days)
    try:
        url = svc.create_link_checkout_session(code=code, days=days, amount_cents=amount)
    except stripe.StripeError as e:
        logger.error(f"Checkout session failed for {code}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create checkout session")
    return CheckoutResponse(url=url, amount=amount, days=days)


@router.get("/file-info", response_model=FileInfoResponse)
def file_info(
    code: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """
    Public details of a link before payment: size, price and expiry.

    Read-only. An expired link is reported with `expired=true` and is not
    cleaned up here; that happens on the next download attempt.
    """
    code = (code or "").strip().upper()
    if not code:
        raise BadRequestError("Missing code")
    link = get_link(db, code)
    if link is None:
        raise NotFoundError("Link", code)
    if link.deleted_at is not None:
        raise GoneError("Link deleted")

    days, price_cents = link_price_for_days(link.days)
    return FileInfoResponse(
        code=link.code,
        file_bytes=link.file_bytes,
        days=days,
        price_cents=price_cents,
        paid=bool(link.paid),
        expires_at=link.expires_at,
        expired=is_expired(link, utcnow()),
    )


def _download(code: Optional[str], db: Session, storage: StorageService) -> DownloadResponse:
    code = (code or "").strip().upper()
    if not code:
        raise BadRequestError("Missing code")
    with log_context(code=code):
        return _gate_and_sign(code, db, storage)


def _gate_and_sign(code: str, db: Session, storage: StorageService) -> DownloadResponse:
    decision = gate_download(db, code, storage)
    if decision.outcome == GateOutcome.NOT_FOUND:
        raise NotFoundError("Link", code)
    if decision.outcome == GateOutcome.GONE:
        raise GoneError("Link expired" if decision.reason == "expired" else "Link deleted")
    if decision.outcome == GateOutcome.PAYMENT_REQUIRED:
        raise PaymentRequiredError()

    try:
        access = issue_signed_url(storage, decision.link, ttl_s=settings.SIGNED_URL_TTL_S)
    except ObjectStorageError as e:
        logger.error(f"Signed URL failed for {code}: {e}")
        raise HTTPException(status_code=500, detail="Could not create download URL")
    return DownloadResponse(code=access.code, url=access.url, expires_in=access.expires_in)


@router.get("/download", response_model=DownloadResponse)
def download_get(
    code: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    return _download(code, db, storage)


@router.post("/download", response_model=DownloadResponse)
def download_post(
    request: DownloadRequest,
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    return _download(request.code, db, storage)
