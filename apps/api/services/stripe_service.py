from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Optional

import stripe

from core.config import settings
from core.exceptions import ConfigurationError
from core.timeutil import from_unix
from models import (
    PLAN_FREE,
    PLAN_PRO,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_UNKNOWN,
    Subscription,
)

logger = logging.getLogger(__name__)

# One-time link prices in cents, keyed by link duration in days.
LINK_PRICES_CENTS = {1: 100, 3: 200, 7: 300, 14: 500, 30: 800}
DEFAULT_LINK_DAYS = 14


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: Optional[str]
    pro_price_id: Optional[str]
    portal_config_id: Optional[str]
    currency: str
    site_url: str
    timeout_s: int
    max_network_retries: int


def _get_stripe_config() -> StripeConfig:
    """
    Load Stripe config from environment via Settings.

    Fail closed: if configuration is missing, billing endpoints should not proceed.
    """
    secret_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not secret_key:
        raise ConfigurationError("Stripe not configured (missing: STRIPE_SECRET_KEY)")

    webhook_secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    pro_price_id = (settings.STRIPE_PRO_PRICE_ID or "").strip()
    portal_config_id = (settings.STRIPE_BILLING_PORTAL_CONFIG_ID or "").strip()

    return StripeConfig(
        secret_key=secret_key,
        webhook_secret=webhook_secret or None,
        pro_price_id=pro_price_id or None,
        portal_config_id=portal_config_id or None,
        currency=settings.STRIPE_CURRENCY,
        site_url=settings.WEB_APP_BASE_URL.rstrip("/"),
        timeout_s=settings.STRIPE_TIMEOUT_S,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
    )


def link_price_for_days(days: Any) -> tuple[int, int]:
    """Normalize a requested duration and return (days, price in cents)."""
    try:
        d = int(days)
    except (TypeError, ValueError):
        d = DEFAULT_LINK_DAYS
    if d not in LINK_PRICES_CENTS:
        d = DEFAULT_LINK_DAYS
    return d, LINK_PRICES_CENTS[d]


def derive_subscription_status(stripe_status: Optional[str]) -> str:
    """
    Map Stripe subscription status -> stored status.

    Unrecognized values pass through verbatim so support can see them.
    """
    s = (stripe_status or "").strip().lower()
    if not s:
        return STATUS_UNKNOWN
    if s in ("active", "trialing"):
        return STATUS_ACTIVE
    if s == "canceled":
        return STATUS_CANCELED
    if s in ("incomplete", "incomplete_expired"):
        return STATUS_INCOMPLETE
    if s in ("past_due", "unpaid"):
        return STATUS_PAST_DUE
    return s


def plan_for_status(status: Optional[str]) -> str:
    """Pro only while active (a scheduled cancellation keeps it active until period end)."""
    return PLAN_PRO if status == STATUS_ACTIVE else PLAN_FREE


def field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, a plain dict, or a test double."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def str_field(obj: Any, name: str) -> Optional[str]:
    v = field(obj, name)
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def metadata_value(obj: Any, key: str) -> Optional[str]:
    meta = field(obj, "metadata") or {}
    v = field(meta, key)
    if v is None:
        return None
    v = str(v).strip()
    return v or None


def is_deleted_object(obj: Any) -> bool:
    return bool(field(obj, "deleted", False))


def _extract_current_period_end_ts(obj: Any) -> Optional[int]:
    """
    Stripe API compatibility:
    - Older API versions: `subscription.current_period_end` (top-level)
    - Newer API versions: billing period fields live on `subscription.items.data[*].current_period_end`
    """
    ts = field(obj, "current_period_end")
    if ts is not None:
        try:
            return int(ts)
        except (TypeError, ValueError):
            pass

    items = obj.get("items") if isinstance(obj, dict) else None
    data = field(items, "data") or []
    ends: list[int] = []
    for it in data:
        it_end = field(it, "current_period_end")
        if it_end is None:
            continue
        try:
            ends.append(int(it_end))
        except (TypeError, ValueError):
            continue
    return max(ends) if ends else None


def _extract_cancel_at_ts(obj: Any) -> Optional[int]:
    v = field(obj, "cancel_at")
    try:
        v = int(v) if v is not None else None
    except (TypeError, ValueError):
        return None
    return v if v and v > 0 else None


def _derive_cancel_at_period_end(obj: Any) -> bool:
    # Legacy boolean, still present in some versions/paths
    flag = field(obj, "cancel_at_period_end", False)
    if isinstance(flag, str):
        flag = flag.lower() == "true"
    if bool(flag):
        return True
    # Newer Stripe API uses `cancel_at` timestamps for scheduled cancellation.
    return _extract_cancel_at_ts(obj) is not None


def _extract_price_id(obj: Any) -> Optional[str]:
    items = obj.get("items") if isinstance(obj, dict) else None
    data = field(items, "data") or []
    first = data[0] if data else None
    return str_field(field(first, "price"), "id")


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields we mirror from a live Stripe subscription."""

    subscription_id: str
    stripe_status: str
    status: str
    plan: str
    customer_id: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool


def snapshot_subscription(subscription_id: str, sub: Any) -> SubscriptionSnapshot:
    if is_deleted_object(sub):
        return SubscriptionSnapshot(
            subscription_id=subscription_id,
            stripe_status="canceled",
            status=STATUS_CANCELED,
            plan=PLAN_FREE,
            customer_id=None,
            price_id=None,
            current_period_end=None,
            cancel_at_period_end=True,
        )

    stripe_status = str(field(sub, "status") or "unknown")
    status = derive_subscription_status(stripe_status)

    period_end_ts = _extract_current_period_end_ts(sub)
    if period_end_ts is None:
        # Some objects omit period fields but include the cancellation timestamp.
        period_end_ts = _extract_cancel_at_ts(sub)

    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        stripe_status=stripe_status,
        status=status,
        plan=plan_for_status(status),
        customer_id=str_field(sub, "customer"),
        price_id=_extract_price_id(sub),
        current_period_end=from_unix(period_end_ts),
        cancel_at_period_end=_derive_cancel_at_period_end(sub),
    )


def _is_missing_customer_error(exc: Exception) -> bool:
    if getattr(exc, "code", None) == "resource_missing":
        return True
    return "no such customer" in str(exc).lower()


class StripeService:
    """
    Thin wrapper around an explicitly constructed `stripe.StripeClient`.

    Nothing here touches module-level `stripe.api_key`; every call goes through
    the client this instance owns.
    """

    def __init__(self, cfg: Optional[StripeConfig] = None, client: Any = None) -> None:
        self.cfg = cfg or _get_stripe_config()
        self.client = client or stripe.StripeClient(
            self.cfg.secret_key,
            max_network_retries=self.cfg.max_network_retries,
            http_client=stripe.RequestsClient(timeout=self.cfg.timeout_s),
        )

    # --- Webhooks ---

    def construct_event(self, *, payload: bytes, sig_header: str):
        if not self.cfg.webhook_secret:
            raise ConfigurationError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self.cfg.webhook_secret,
        )

    # --- Reads (authoritative fetches) ---

    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self.client.checkout.sessions.retrieve(session_id)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return self.client.payment_intents.retrieve(payment_intent_id)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self.client.subscriptions.retrieve(subscription_id)

    # --- Checkout / portal ---

    def create_link_checkout_session(self, *, code: str, days: int, amount_cents: int) -> str:
        """One-time payment that unlocks a single link."""
        meta = {"code": code, "days": str(days)}
        session = self.client.checkout.sessions.create(
            params={
                "mode": "payment",
                # Helpful for searching in Stripe dashboard
                "client_reference_id": code,
                "line_items": [
                    {
                        "price_data": {
                            "currency": self.cfg.currency,
                            "product_data": {
                                "name": f"FilePay link ({days} day{'' if days == 1 else 's'})",
                                "description": f"Unlock download for code: {code}",
                            },
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                "metadata": meta,
                # Also on the PaymentIntent: finalize falls back to it when
                # session metadata has not propagated.
                "payment_intent_data": {"metadata": meta},
                "success_url": f"{self.cfg.site_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
                "cancel_url": f"{self.cfg.site_url}/?canceled=1",
            }
        )
        return str(field(session, "url"))

    def create_pro_checkout_session(self, *, user_id: str, email: Optional[str], customer_id: str) -> str:
        if not self.cfg.pro_price_id:
            raise ConfigurationError("Stripe not configured (missing: STRIPE_PRO_PRICE_ID)")
        session = self.client.checkout.sessions.create(
            params={
                "mode": "subscription",
                "line_items": [{"price": self.cfg.pro_price_id, "quantity": 1}],
                "customer": customer_id,
                "client_reference_id": user_id,
                # The reconciler requires metadata.user_id on subscription checkouts.
                "metadata": {"user_id": user_id, "plan": PLAN_PRO, "email": email or ""},
                "success_url": f"{self.cfg.site_url}/pricing?success=1&session_id={{CHECKOUT_SESSION_ID}}",
                "cancel_url": f"{self.cfg.site_url}/pricing?canceled=1",
                "allow_promotion_codes": True,
            }
        )
        return str(field(session, "url"))

    def create_portal_session(self, *, customer_id: str) -> str:
        params: dict[str, Any] = {
            "customer": customer_id,
            "return_url": f"{self.cfg.site_url}/billing",
        }
        if self.cfg.portal_config_id:
            params["configuration"] = self.cfg.portal_config_id
        sess = self.client.billing_portal.sessions.create(params=params)
        return str(field(sess, "url"))

    # --- Customers ---

    def ensure_customer(self, sub_row: Subscription, *, email: Optional[str]) -> str:
        """
        Return a customer id that resolves upstream, creating one when needed.

        A stored id whose customer was deleted (or never existed in this Stripe
        account) is replaced. The caller commits `sub_row`.
        """
        existing = (sub_row.stripe_customer_id or "").strip()
        if existing:
            try:
                customer = self.client.customers.retrieve(existing)
                if not is_deleted_object(customer):
                    return existing
                logger.warning(f"Stripe customer {existing} is deleted; creating a new one for user {sub_row.user_id}")
            except stripe.InvalidRequestError as e:
                if not _is_missing_customer_error(e):
                    raise
                logger.warning(f"Stripe customer {existing} not found; creating a new one for user {sub_row.user_id}")

        params: dict[str, Any] = {"metadata": {"user_id": sub_row.user_id}}
        if email:
            params["email"] = email
        customer = self.client.customers.create(params=params)
        customer_id = str(field(customer, "id"))
        sub_row.stripe_customer_id = customer_id
        if email and not sub_row.email:
            sub_row.email = email
        return customer_id
