"""
Finalize (`/api/mark-paid`): the client returns from hosted checkout and the
session is confirmed against Stripe before anything is unlocked.
"""
from datetime import timedelta

from models import FileLink, StripeEvent, Subscription
from services.reconciler import finalize_checkout
from tests.stripe_fakes import signed_webhook, stripe_event

MARK_PAID = "/api/mark-paid"


def _link(db, code):
    db.expire_all()
    return db.query(FileLink).filter(FileLink.code == code).one()


def test_paid_checkout_session_unlocks_link(client, db_session, make_link, fake_stripe, sender):
    make_link("AB12CD34")
    fake_stripe.add_checkout_session(
        "cs_test_1", metadata={"code": "AB12CD34"}, customer_details={"email": "payer@example.com"}
    )

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_1"})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "paid": True, "code": "AB12CD34"}
    link = _link(db_session, "AB12CD34")
    assert link.paid is True
    assert link.paid_session_id == "cs_test_1"
    assert sender.kinds() == ["link_paid", "admin_payment"]
    # Finalize does not touch the webhook ledger.
    assert db_session.query(StripeEvent).count() == 0


def test_refinalize_keeps_paid_at_and_does_not_notify_twice(client, db_session, make_link, fake_stripe, sender):
    make_link("AB12CD34")
    fake_stripe.add_checkout_session("cs_test_1", metadata={"code": "AB12CD34"})

    client.post(MARK_PAID, json={"session_id": "cs_test_1"})
    first_paid_at = _link(db_session, "AB12CD34").paid_at
    resp = client.post(MARK_PAID, json={"session_id": "cs_test_1"})

    assert resp.status_code == 200
    assert resp.json()["paid"] is True
    assert _link(db_session, "AB12CD34").paid_at == first_paid_at
    assert sender.kinds() == ["admin_payment"]


def test_session_id_accepted_as_query_parameter(client, db_session, make_link, fake_stripe):
    make_link("AB12CD34")
    fake_stripe.add_checkout_session("cs_test_q", metadata={"code": "AB12CD34"})

    resp = client.post(f"{MARK_PAID}?session_id=cs_test_q")

    assert resp.status_code == 200
    assert _link(db_session, "AB12CD34").paid is True


def test_unpaid_session_changes_nothing(client, db_session, make_link, fake_stripe):
    make_link("AB12CD34")
    fake_stripe.add_checkout_session("cs_test_open", payment_status="unpaid", metadata={"code": "AB12CD34"})

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_open"})

    assert resp.status_code == 200
    assert resp.json()["paid"] is False
    assert _link(db_session, "AB12CD34").paid is False


def test_no_payment_required_counts_as_paid(client, db_session, make_link, fake_stripe):
    make_link("AB12CD34")
    fake_stripe.add_checkout_session(
        "cs_test_free", payment_status="no_payment_required", metadata={"code": "AB12CD34"}
    )

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_free"})

    assert resp.json()["paid"] is True


def test_code_falls_back_to_payment_intent(client, db_session, make_link, fake_stripe):
    make_link("QW34ER56")
    fake_stripe.add_payment_intent("pi_9", {"code": "QW34ER56"})
    fake_stripe.add_checkout_session("cs_test_pi", metadata={}, payment_intent="pi_9")

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_pi"})

    assert resp.status_code == 200
    assert resp.json()["code"] == "QW34ER56"


def test_missing_code_anywhere_is_400(client, fake_stripe):
    fake_stripe.add_checkout_session("cs_test_none", metadata={})

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_none"})

    assert resp.status_code == 400


def test_unknown_link_is_404_and_deleted_link_is_410(client, make_link, fake_stripe):
    fake_stripe.add_checkout_session("cs_test_unknown", metadata={"code": "MISSING2"})
    assert client.post(MARK_PAID, json={"session_id": "cs_test_unknown"}).status_code == 404

    make_link("GONE2345", deleted=True, expires_in=timedelta(days=-1))
    fake_stripe.add_checkout_session("cs_test_gone", metadata={"code": "GONE2345"})
    assert client.post(MARK_PAID, json={"session_id": "cs_test_gone"}).status_code == 410


def test_rejects_missing_or_foreign_session_ids(client, fake_stripe):
    assert client.post(MARK_PAID, json={}).status_code == 400
    assert client.post(MARK_PAID, json={"session_id": "pi_123"}).status_code == 400
    assert fake_stripe.calls == []


def test_subscription_session_activates_pro(client, db_session, fake_stripe, sender):
    fake_stripe.add_subscription("sub_7", customer="cus_7", cancel_at_period_end=True)
    fake_stripe.add_checkout_session(
        "cs_test_pro",
        mode="subscription",
        customer="cus_7",
        subscription="sub_7",
        metadata={"user_id": "user-7", "email": "u7@example.com"},
    )

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_pro"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["pro"] is True
    assert body["stripe_subscription_id"] == "sub_7"
    assert body["cancel_at_period_end"] is True
    db_session.expire_all()
    sub = db_session.query(Subscription).filter(Subscription.user_id == "user-7").one()
    assert (sub.plan, sub.status) == ("pro", "active")
    assert sender.kinds() == ["pro_activated"]


def test_subscription_session_without_user_id_is_400(client, fake_stripe):
    fake_stripe.add_checkout_session("cs_test_pro2", mode="subscription", subscription="sub_8", metadata={})

    resp = client.post(MARK_PAID, json={"session_id": "cs_test_pro2"})

    assert resp.status_code == 400


# --- pro_ bypass ---

def test_pro_bypass_by_owner_with_active_pro(client, db_session, make_link, make_pro, auth, fake_stripe):
    make_pro("owner-1")
    make_link("AB12CD34", created_by_user_id="owner-1")

    resp = client.post(MARK_PAID, json={"session_id": "pro_AB12CD34"}, headers=auth("owner-1"))

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "paid": True, "code": "AB12CD34"}
    assert _link(db_session, "AB12CD34").paid is True
    assert fake_stripe.calls == []


def test_pro_bypass_requires_a_signed_in_user(client, db_session, make_link, make_pro):
    make_pro("owner-1")
    make_link("AB12CD34", created_by_user_id="owner-1")

    resp = client.post(MARK_PAID, json={"session_id": "pro_AB12CD34"})

    assert resp.status_code == 401
    assert _link(db_session, "AB12CD34").paid is False


def test_pro_bypass_rejects_other_users_and_lapsed_plans(client, db_session, make_link, make_pro, auth):
    make_pro("owner-1", status="canceled", plan="free")
    make_pro("someone-else")
    make_link("AB12CD34", created_by_user_id="owner-1")

    assert client.post(MARK_PAID, json={"session_id": "pro_AB12CD34"}, headers=auth("someone-else")).status_code == 403
    assert client.post(MARK_PAID, json={"session_id": "pro_AB12CD34"}, headers=auth("owner-1")).status_code == 403
    assert _link(db_session, "AB12CD34").paid is False


def test_pro_bypass_unknown_code_is_404(client, auth, make_pro):
    make_pro("owner-1")
    resp = client.post(MARK_PAID, json={"session_id": "pro_NOPE2345"}, headers=auth("owner-1"))
    assert resp.status_code == 404


def test_finalize_service_never_calls_stripe_for_bypass(db_session, make_link, make_pro, notifier):
    from core.auth import CurrentUser

    make_pro("owner-1")
    make_link("AB12CD34", created_by_user_id="owner-1")

    result = finalize_checkout(
        db_session, "pro_AB12CD34", stripe=None, notifier=notifier, caller=CurrentUser(id="owner-1")
    )

    assert result["paid"] is True


def test_finalize_then_webhook_for_same_session_pays_once(client, db_session, make_link, fake_stripe, sender):
    make_link("AB12CD34")
    session = fake_stripe.add_checkout_session(
        "cs_X", metadata={"code": "AB12CD34"}, customer_details={"email": "payer@example.com"}
    )

    assert client.post(MARK_PAID, json={"session_id": "cs_X"}).status_code == 200
    paid_at = _link(db_session, "AB12CD34").paid_at

    body, headers = signed_webhook(stripe_event("evt_same_session", "checkout.session.completed", dict(session)))
    resp = client.post("/api/stripe/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["transition"] == "already_paid"
    assert _link(db_session, "AB12CD34").paid_at == paid_at
    assert sender.kinds().count("link_paid") == 1
