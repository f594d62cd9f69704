"""
Payment reconciliation: turn Stripe events and checkout confirmations into
entitlement changes.

Two entry points:
- `process_stripe_event`: verified webhook events. Claimed in the idempotency
  ledger first, then applied; ledger row and mutation commit together.
- `finalize_checkout`: the client comes back from hosted checkout with a
  session id. The session is fetched from Stripe, never trusted from the client.

Notifications are collected while handling and dispatched after commit.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.auth import CurrentUser
from core.logging import log_context
from core.timeutil import as_utc, utcnow
from models import PLAN_PRO, STATUS_ACTIVE, STATUS_CANCELED, Subscription
from services.email_service import (
    KIND_ADMIN_PAYMENT,
    KIND_LINK_PAID,
    KIND_PRO_ACTIVATED,
    KIND_PRO_CANCELED,
    KIND_PRO_CANCEL_SCHEDULED,
    KIND_PRO_REACTIVATED,
)
from services.entitlements import (
    PaidTransition,
    ensure_subscription_row,
    get_link,
    get_subscription,
    mark_link_paid,
    user_has_active_pro,
)
from services.event_ledger import record_event
from services.notifications import Notification, Notifier
from services.stripe_events import (
    AsyncPaymentResult,
    IgnoredEvent,
    InvoicePaid,
    LinkCheckoutCompleted,
    ProCheckoutCompleted,
    SubscriptionDeleted,
    SubscriptionUpdated,
    WebhookEvent,
    decode_event,
    is_subscription_checkout,
)
from services.stripe_service import (
    StripeService,
    SubscriptionSnapshot,
    field,
    metadata_value,
    plan_for_status,
    snapshot_subscription,
    str_field,
)

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PREFIX = "cs_"
PRO_BYPASS_PREFIX = "pro_"
PAID_PAYMENT_STATUSES = ("paid", "no_payment_required")


class EventDataError(ValueError):
    """The event is well-signed but its data cannot be applied; retrying will not help."""


class FinalizeError(Exception):
    """Base for finalize failures the router maps to a 4xx."""


class InvalidSessionError(FinalizeError, ValueError):
    """Malformed finalize request or a session missing required metadata."""


class LinkNotFoundError(FinalizeError, LookupError):
    pass


class LinkGoneError(FinalizeError):
    """The link was deleted; it can no longer become paid."""


class BypassUnauthorizedError(FinalizeError, PermissionError):
    """Pro bypass attempted without a user token."""


class BypassForbiddenError(FinalizeError, PermissionError):
    """Pro bypass attempted by someone other than an active-Pro owner."""


def _iso(dt) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


# --- Shared mutations ---

def resolve_link_code(stripe: StripeService, *, code: Optional[str], payment_intent_id: Optional[str]) -> Optional[str]:
    """Session metadata first; PaymentIntent metadata when propagation lagged."""
    if code:
        return code
    if not payment_intent_id:
        return None
    pi = stripe.retrieve_payment_intent(payment_intent_id)
    return metadata_value(pi, "code")


def _link_paid_notifications(db: Session, notifier: Notifier, *, code: str, session_id: Optional[str],
                             payer_email: Optional[str], via: str) -> list[Notification]:
    out: list[Notification] = []
    link = get_link(db, code)
    if payer_email:
        out.append(Notification(
            kind=KIND_LINK_PAID,
            to_email=payer_email,
            context={
                "code": code,
                "download_url": notifier.download_url(code),
                "expires_at": _iso(link.expires_at) if link else None,
            },
        ))
    if notifier.admin_email:
        out.append(Notification(
            kind=KIND_ADMIN_PAYMENT,
            to_email=notifier.admin_email,
            context={"code": code, "via": via, "session_id": session_id},
        ))
    return out


def _apply_snapshot(row: Subscription, snap: SubscriptionSnapshot) -> None:
    row.status = snap.status
    row.plan = plan_for_status(snap.status)
    row.stripe_subscription_id = snap.subscription_id
    if snap.customer_id:
        row.stripe_customer_id = snap.customer_id
    if snap.price_id:
        row.stripe_price_id = snap.price_id
    row.current_period_end = snap.current_period_end
    row.cancel_at_period_end = snap.cancel_at_period_end
    row.updated_at = utcnow()


@dataclass(frozen=True)
class ProActivation:
    subscription: Subscription
    newly_active: bool


def activate_pro(
    db: Session,
    stripe: StripeService,
    *,
    user_id: str,
    email: Optional[str],
    customer_id: Optional[str],
    subscription_id: Optional[str],
) -> ProActivation:
    """
    Upsert the user's row as active Pro after a subscription checkout.

    Period end and cancellation schedule come from the live subscription, not
    from the checkout session.
    """
    row = ensure_subscription_row(db, user_id=user_id, email=email)
    was_active = row.is_pro_active

    current_period_end = None
    cancel_at_period_end = False
    price_id = None
    if subscription_id:
        snap = snapshot_subscription(subscription_id, stripe.retrieve_subscription(subscription_id))
        current_period_end = snap.current_period_end
        cancel_at_period_end = snap.cancel_at_period_end
        price_id = snap.price_id

    row.plan = PLAN_PRO
    row.status = STATUS_ACTIVE
    if customer_id:
        row.stripe_customer_id = customer_id
    if subscription_id:
        row.stripe_subscription_id = subscription_id
    if price_id:
        row.stripe_price_id = price_id
    row.current_period_end = current_period_end
    row.cancel_at_period_end = cancel_at_period_end
    row.updated_at = utcnow()
    db.add(row)
    db.flush()
    return ProActivation(subscription=row, newly_active=not was_active)


def _welcome(notifier: Notifier, activation: ProActivation) -> list[Notification]:
    row = activation.subscription
    if not activation.newly_active or not row.email:
        return []
    return [Notification(
        kind=KIND_PRO_ACTIVATED,
        to_email=row.email,
        context={"user_id": row.user_id, "current_period_end": _iso(row.current_period_end)},
    )]


@dataclass(frozen=True)
class SubscriptionSync:
    subscription: Subscription
    snapshot: SubscriptionSnapshot
    previous_status: Optional[str]
    previous_cancel_at_period_end: bool

    def as_dict(self) -> dict:
        row = self.subscription
        return {
            "user_id": row.user_id,
            "plan": row.plan,
            "status": row.status,
            "stripe_status": self.snapshot.stripe_status,
            "current_period_end": _iso(row.current_period_end),
            "cancel_at_period_end": bool(row.cancel_at_period_end),
            "stripe_customer_id": row.stripe_customer_id,
            "stripe_subscription_id": row.stripe_subscription_id,
        }


def sync_subscription_by_id(db: Session, stripe: StripeService, subscription_id: str) -> Optional[SubscriptionSync]:
    """
    Re-read a subscription from Stripe and mirror it onto its row.

    Returns None when no row matches. Rows are found by subscription id; the
    customer id is only used for a row not yet bound to any subscription, so an
    event for an older subscription of the same customer never overwrites the
    row tracking the current one.
    """
    row = db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription_id).first()
    snap = snapshot_subscription(subscription_id, stripe.retrieve_subscription(subscription_id))

    if row is None and snap.customer_id:
        row = db.query(Subscription).filter(Subscription.stripe_customer_id == snap.customer_id).first()
        bound_to = (row.stripe_subscription_id or "").strip() if row else ""
        if bound_to and bound_to != subscription_id:
            logger.info(
                f"Ignoring {subscription_id}: customer {snap.customer_id} is tracked on {bound_to}",
                extra={"extra_fields": {"subscription_id": subscription_id, "customer_id": snap.customer_id}},
            )
            return None
    if row is None:
        logger.info(f"No subscription row for {subscription_id}; skipping sync")
        return None

    previous_status = row.status
    previous_cancel = bool(row.cancel_at_period_end)
    _apply_snapshot(row, snap)
    db.add(row)
    db.flush()
    return SubscriptionSync(
        subscription=row,
        snapshot=snap,
        previous_status=previous_status,
        previous_cancel_at_period_end=previous_cancel,
    )


def sync_user_subscription(db: Session, stripe: StripeService, user_id: str) -> dict:
    """Client-triggered pull of the caller's own subscription."""
    row = get_subscription(db, user_id)
    sub_id = (row.stripe_subscription_id or "").strip() if row else ""
    if not sub_id:
        return {"ok": True, "synced": False, "message": "No stripe_subscription_id found. Nothing to sync."}

    result = sync_subscription_by_id(db, stripe, sub_id)
    db.commit()
    if result is None:
        return {"ok": True, "synced": False}
    return {"ok": True, "synced": True, **result.as_dict()}


# --- Webhook dispatch ---

def _handle_link_checkout(db: Session, stripe: StripeService, notifier: Notifier,
                          ev: LinkCheckoutCompleted, out: list[Notification]) -> dict:
    code = resolve_link_code(stripe, code=ev.code, payment_intent_id=ev.payment_intent_id)
    if not code:
        raise EventDataError("Missing code in session metadata")

    if ev.payment_status and ev.payment_status not in PAID_PAYMENT_STATUSES:
        logger.warning(f"checkout.session.completed for {code} with payment_status={ev.payment_status}")

    transition = mark_link_paid(db, code, session_id=ev.session_id)
    if transition == PaidTransition.NOT_FOUND:
        raise EventDataError(f"Link not found: {code}")
    if transition == PaidTransition.DELETED:
        logger.warning(f"Payment for deleted link {code} ignored (session {ev.session_id})")
    if transition == PaidTransition.TRANSITIONED:
        out.extend(_link_paid_notifications(
            db, notifier, code=code, session_id=ev.session_id, payer_email=ev.customer_email, via="webhook",
        ))
    return {"handled": "link_paid", "code": code, "transition": transition.value}


def _handle_pro_checkout(db: Session, stripe: StripeService, notifier: Notifier,
                         ev: ProCheckoutCompleted, out: list[Notification]) -> dict:
    if not ev.user_id:
        raise EventDataError("Missing user_id in session metadata")
    activation = activate_pro(
        db, stripe,
        user_id=ev.user_id,
        email=ev.email,
        customer_id=ev.customer_id,
        subscription_id=ev.subscription_id,
    )
    out.extend(_welcome(notifier, activation))
    return {"handled": "pro_activated", "user_id": ev.user_id}


def _transition_notifications(sync: SubscriptionSync) -> list[Notification]:
    """Compare the stored cancellation flag with the new one."""
    row = sync.subscription
    if not row.email:
        return []
    now_cancel = bool(row.cancel_at_period_end)
    if now_cancel == sync.previous_cancel_at_period_end or row.status != STATUS_ACTIVE:
        return []
    kind = KIND_PRO_CANCEL_SCHEDULED if now_cancel else KIND_PRO_REACTIVATED
    return [Notification(
        kind=kind,
        to_email=row.email,
        context={"user_id": row.user_id, "current_period_end": _iso(row.current_period_end)},
    )]


def _dispatch(db: Session, stripe: StripeService, notifier: Notifier,
              ev: WebhookEvent, out: list[Notification]) -> dict:
    if isinstance(ev, LinkCheckoutCompleted):
        return _handle_link_checkout(db, stripe, notifier, ev, out)

    if isinstance(ev, ProCheckoutCompleted):
        return _handle_pro_checkout(db, stripe, notifier, ev, out)

    if isinstance(ev, InvoicePaid):
        # Renewals are silent; the activation e-mail comes from checkout.
        if not ev.subscription_id:
            return {"handled": "invoice_paid", "synced": False}
        sync = sync_subscription_by_id(db, stripe, ev.subscription_id)
        return {"handled": "invoice_paid", "synced": sync is not None}

    if isinstance(ev, SubscriptionUpdated):
        if not ev.subscription_id:
            raise EventDataError("Missing subscription id")
        sync = sync_subscription_by_id(db, stripe, ev.subscription_id)
        if sync is None:
            return {"handled": "subscription_updated", "synced": False}
        out.extend(_transition_notifications(sync))
        return {"handled": "subscription_updated", "synced": True, "status": sync.subscription.status}

    if isinstance(ev, SubscriptionDeleted):
        if not ev.subscription_id:
            raise EventDataError("Missing subscription id")
        sync = sync_subscription_by_id(db, stripe, ev.subscription_id)
        if sync is None:
            return {"handled": "subscription_deleted", "synced": False}
        row = sync.subscription
        if row.email and row.status == STATUS_CANCELED:
            out.append(Notification(kind=KIND_PRO_CANCELED, to_email=row.email, context={"user_id": row.user_id}))
        return {"handled": "subscription_deleted", "synced": True, "status": row.status}

    if isinstance(ev, AsyncPaymentResult):
        log = logger.info if ev.succeeded else logger.warning
        log(f"{ev.event_type} for session {ev.session_id}")
        return {"handled": "async_payment_logged"}

    if isinstance(ev, IgnoredEvent):
        return {"handled": False}

    raise TypeError(f"Unhandled event variant: {type(ev).__name__}")


def process_stripe_event(db: Session, *, event: Any, stripe: StripeService, notifier: Notifier) -> dict[str, Any]:
    """
    Idempotently apply one verified Stripe event.

    Duplicate ids short-circuit. Data errors are logged and acknowledged with
    the event kept as processed. Anything else rolls back the ledger row too
    and propagates, so Stripe redelivers.
    """
    ev = decode_event(event)
    if not ev.event_id:
        return {"received": True, "processed": False, "reason": "missing_event_id"}
    with log_context(event_id=ev.event_id, event_type=ev.event_type):
        return _process_decoded(db, ev, event, stripe=stripe, notifier=notifier)


def _process_decoded(db: Session, ev: WebhookEvent, event: Any, *, stripe: StripeService,
                     notifier: Notifier) -> dict[str, Any]:
    stripe_created = field(event, "created")
    claimed = record_event(
        db,
        event_id=ev.event_id,
        event_type=ev.event_type,
        stripe_created=int(stripe_created) if stripe_created else None,
    )
    if not claimed:
        logger.info(f"Duplicate Stripe event {ev.event_id} ({ev.event_type})")
        return {"received": True, "duplicate": True, "event_id": ev.event_id}

    notifications: list[Notification] = []
    try:
        outcome = _dispatch(db, stripe, notifier, ev, notifications)
    except EventDataError as e:
        db.commit()
        logger.warning(
            f"Stripe event {ev.event_id} acknowledged without changes: {e}",
            extra={"extra_fields": {"event_id": ev.event_id, "event_type": ev.event_type}},
        )
        return {"received": True, "event_id": ev.event_id, "ignored": str(e)}
    except Exception:
        db.rollback()
        raise

    db.commit()
    logger.info(
        f"Stripe event {ev.event_id} processed",
        extra={"extra_fields": {"event_id": ev.event_id, "event_type": ev.event_type, **outcome}},
    )
    notifier.dispatch_all(notifications)
    return {"received": True, "event_id": ev.event_id, **outcome}


# --- Synchronous finalize ---

def _finalize_pro_bypass(db: Session, sid: str, *, notifier: Notifier, caller: Optional[CurrentUser]) -> dict:
    code = sid[len(PRO_BYPASS_PREFIX):].strip()
    if not code:
        raise InvalidSessionError("Missing code")
    if caller is None:
        raise BypassUnauthorizedError("Pro unlock requires a signed-in owner")

    link = get_link(db, code)
    if link is None:
        raise LinkNotFoundError(code)
    if link.created_by_user_id != caller.id or not user_has_active_pro(db, caller.id):
        raise BypassForbiddenError("Only the link owner with an active Pro plan can unlock it")

    transition = mark_link_paid(db, code, session_id=sid)
    if transition == PaidTransition.DELETED:
        raise LinkGoneError(code)
    db.commit()

    if transition == PaidTransition.TRANSITIONED:
        notifier.dispatch_all(_link_paid_notifications(
            db, notifier, code=code, session_id=sid, payer_email=None, via="pro_bypass",
        ))
    return {"ok": True, "paid": True, "code": code}


def finalize_checkout(
    db: Session,
    session_id: Optional[str],
    *,
    stripe: Optional[StripeService],
    notifier: Notifier,
    caller: Optional[CurrentUser] = None,
) -> dict[str, Any]:
    sid = (session_id or "").strip()
    with log_context(session_id=sid or None):
        return _finalize(db, sid, stripe=stripe, notifier=notifier, caller=caller)


def _finalize(db: Session, sid: str, *, stripe: Optional[StripeService], notifier: Notifier,
              caller: Optional[CurrentUser]) -> dict[str, Any]:
    if not sid:
        raise InvalidSessionError("Missing session_id")
    if not sid.startswith((CHECKOUT_SESSION_PREFIX, PRO_BYPASS_PREFIX)):
        raise InvalidSessionError("Invalid session_id. Expected Checkout Session (cs_) or pro_*")

    if sid.startswith(PRO_BYPASS_PREFIX):
        return _finalize_pro_bypass(db, sid, notifier=notifier, caller=caller)

    if stripe is None:
        raise RuntimeError("Stripe client required for checkout sessions")

    session = stripe.retrieve_checkout_session(sid)
    payment_status = str_field(session, "payment_status")
    if payment_status not in PAID_PAYMENT_STATUSES:
        return {"ok": True, "paid": False, "payment_status": payment_status}

    if is_subscription_checkout(session):
        user_id = metadata_value(session, "user_id")
        if not user_id:
            raise InvalidSessionError("Missing user_id in session metadata")
        details = field(session, "customer_details") or {}
        activation = activate_pro(
            db, stripe,
            user_id=user_id,
            email=metadata_value(session, "email") or str_field(details, "email"),
            customer_id=str_field(session, "customer"),
            subscription_id=str_field(session, "subscription"),
        )
        db.commit()
        notifier.dispatch_all(_welcome(notifier, activation))
        row = activation.subscription
        return {
            "ok": True,
            "paid": True,
            "pro": True,
            "stripe_subscription_id": row.stripe_subscription_id,
            "stripe_customer_id": row.stripe_customer_id,
            "current_period_end": _iso(row.current_period_end),
            "cancel_at_period_end": bool(row.cancel_at_period_end),
        }

    code = resolve_link_code(
        stripe, code=metadata_value(session, "code"), payment_intent_id=str_field(session, "payment_intent"),
    )
    if not code:
        raise InvalidSessionError("Missing code in session metadata")

    transition = mark_link_paid(db, code, session_id=sid)
    if transition == PaidTransition.NOT_FOUND:
        raise LinkNotFoundError(code)
    if transition == PaidTransition.DELETED:
        raise LinkGoneError(code)
    db.commit()

    if transition == PaidTransition.TRANSITIONED:
        details = field(session, "customer_details") or {}
        notifier.dispatch_all(_link_paid_notifications(
            db, notifier,
            code=code,
            session_id=sid,
            payer_email=str_field(details, "email") or str_field(session, "customer_email"),
            via="finalize",
        ))
    return {"ok": True, "paid": True, "code": code}
