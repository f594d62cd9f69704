"""
Pro subscription API Router

Hosted checkout and billing portal for the Pro plan, a pull-resync for the
caller's own subscription, and a status read.
"""

from __future__ import annotations

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from core.auth import CurrentUser, get_current_user
from core.database import get_db
from core.deps import get_stripe_service
from core.exceptions import BadRequestError, ConfigurationError, ServiceUnavailableError
from models import PLAN_FREE
from schemas import ProStatusResponse
from services.entitlements import ensure_subscription_row, get_subscription
from services.reconciler import sync_user_subscription
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pro", tags=["pro"])


@router.post("/checkout")
def pro_checkout(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    svc: StripeService = Depends(get_stripe_service),
):
    """
    Create a subscription Checkout Session for the caller.

    The stored Stripe customer is verified first and replaced if it no longer
    exists upstream.
    """
    row = ensure_subscription_row(db, user_id=user.id, email=user.email)
    if row.is_pro_active:
        raise BadRequestError("Already on Pro")

    try:
        customer_id = svc.ensure_customer(row, email=user.email)
        db.commit()
        url = svc.create_pro_checkout_session(user_id=user.id, email=user.email, customer_id=customer_id)
    except ConfigurationError as e:
        raise ServiceUnavailableError(str(e))
    except stripe.StripeError as e:
        logger.error(f"Pro checkout failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create checkout session")
    return {"url": url}


@router.post("/portal")
def pro_portal(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    svc: StripeService = Depends(get_stripe_service),
):
    """
    Create a Stripe Customer Portal Session. Returns a hosted URL.

    Users without a billing account are sent to the pricing page instead.
    """
    row = get_subscription(db, user.id)
    if row is None or not row.stripe_customer_id:
        return {"url": f"{svc.cfg.site_url}/pricing", "reason": "no_customer"}

    try:
        customer_id = svc.ensure_customer(row, email=user.email)
        db.commit()
        url = svc.create_portal_session(customer_id=customer_id)
    except stripe.StripeError as e:
        logger.error(f"Portal session failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create portal session")
    return {"url": url}


@router.post("/sync")
def pro_sync(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    svc: StripeService = Depends(get_stripe_service),
):
    """Re-read the caller's subscription from Stripe."""
    try:
        return sync_user_subscription(db, svc, user.id)
    except stripe.StripeError as e:
        logger.error(f"Subscription sync failed for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to sync subscription")


@router.get("/status", response_model=ProStatusResponse)
def pro_status(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    row = get_subscription(db, user.id)
    if row is None:
        return ProStatusResponse(user_id=user.id, plan=PLAN_FREE, status="none", is_pro=False)
    return ProStatusResponse(
        user_id=user.id,
        plan=row.plan,
        status=row.status,
        is_pro=row.is_pro_active,
        current_period_end=row.current_period_end,
        cancel_at_period_end=bool(row.cancel_at_period_end),
    )
