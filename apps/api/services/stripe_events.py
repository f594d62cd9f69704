"""
Typed view of the Stripe webhook events we act on.

A verified `stripe.Event` is decoded exactly once, here, into one of a closed
set of variants. Each variant carries only the fields its handler reads;
unknown types become `IgnoredEvent` instead of flowing on as loose dicts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from services.stripe_service import field, metadata_value, str_field


CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"


@dataclass(frozen=True)
class LinkCheckoutCompleted:
    """One-time checkout for a single link."""

    event_id: str
    event_type: str
    session_id: str
    code: Optional[str]
    payment_intent_id: Optional[str]
    payment_status: Optional[str]
    customer_email: Optional[str]


@dataclass(frozen=True)
class ProCheckoutCompleted:
    """Subscription checkout that should activate Pro."""

    event_id: str
    event_type: str
    session_id: str
    user_id: Optional[str]
    email: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    event_type: str
    invoice_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    event_type: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    event_type: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class AsyncPaymentResult:
    """Delayed payment methods; logged only."""

    event_id: str
    event_type: str
    session_id: Optional[str]
    succeeded: bool


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[
    LinkCheckoutCompleted,
    ProCheckoutCompleted,
    InvoicePaid,
    SubscriptionUpdated,
    SubscriptionDeleted,
    AsyncPaymentResult,
    IgnoredEvent,
]


def event_object(event: Any) -> Any:
    data = field(event, "data") or {}
    return field(data, "object") or {}


def is_subscription_checkout(session: Any) -> bool:
    """
    A checkout is a subscription checkout when Stripe says so, when it already
    carries a subscription id, or when we stamped a user_id into its metadata.
    """
    if field(session, "mode") == "subscription":
        return True
    if str_field(session, "subscription"):
        return True
    return metadata_value(session, "user_id") is not None


def checkout_customer_email(session: Any) -> Optional[str]:
    details = field(session, "customer_details") or {}
    return str_field(details, "email") or str_field(session, "customer_email")


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """
    Older API versions put the subscription on the invoice; newer ones nest
    it under parent.subscription_details.
    """
    sub_id = str_field(invoice, "subscription")
    if sub_id:
        return sub_id
    parent = field(invoice, "parent") or {}
    details = field(parent, "subscription_details") or {}
    return str_field(details, "subscription")


def decode_event(event: Any) -> WebhookEvent:
    event_id = str(field(event, "id") or "")
    event_type = str(field(event, "type") or "")
    obj = event_object(event)

    if event_type == CHECKOUT_COMPLETED:
        session_id = str(field(obj, "id") or "")
        if is_subscription_checkout(obj):
            return ProCheckoutCompleted(
                event_id=event_id,
                event_type=event_type,
                session_id=session_id,
                user_id=metadata_value(obj, "user_id"),
                email=metadata_value(obj, "email") or checkout_customer_email(obj),
                customer_id=str_field(obj, "customer"),
                subscription_id=str_field(obj, "subscription"),
            )
        return LinkCheckoutCompleted(
            event_id=event_id,
            event_type=event_type,
            session_id=session_id,
            code=metadata_value(obj, "code"),
            payment_intent_id=str_field(obj, "payment_intent"),
            payment_status=str_field(obj, "payment_status"),
            customer_email=checkout_customer_email(obj),
        )

    if event_type == INVOICE_PAID:
        return InvoicePaid(
            event_id=event_id,
            event_type=event_type,
            invoice_id=str_field(obj, "id"),
            subscription_id=invoice_subscription_id(obj),
        )

    if event_type == SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(event_id=event_id, event_type=event_type, subscription_id=str_field(obj, "id"))

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(event_id=event_id, event_type=event_type, subscription_id=str_field(obj, "id"))

    if event_type in (ASYNC_PAYMENT_SUCCEEDED, ASYNC_PAYMENT_FAILED):
        return AsyncPaymentResult(
            event_id=event_id,
            event_type=event_type,
            session_id=str_field(obj, "id"),
            succeeded=event_type == ASYNC_PAYMENT_SUCCEEDED,
        )

    return IgnoredEvent(event_id=event_id, event_type=event_type)
