"""
Stripe webhook: signature verification, idempotency ledger and the
per-event entitlement changes.
"""
from datetime import timedelta

import stripe

from core.timeutil import as_utc, from_unix
from models import FileLink, StripeEvent, Subscription
from tests.stripe_fakes import signed_webhook, stripe_event

WEBHOOK = "/api/stripe/webhook"


def _link(db, code):
    db.expire_all()
    return db.query(FileLink).filter(FileLink.code == code).one()


def _sub(db, user_id):
    db.expire_all()
    return db.query(Subscription).filter(Subscription.user_id == user_id).one()


def _post(client, event):
    body, headers = signed_webhook(event)
    return client.post(WEBHOOK, content=body, headers=headers)


def _link_checkout(event_id="evt_link_1", *, code="AB12CD34", **obj_fields):
    obj = {
        "id": "cs_test_link_1",
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": None,
        "metadata": {"code": code} if code else {},
        "customer_details": {"email": "payer@example.com"},
    }
    obj.update(obj_fields)
    return stripe_event(event_id, "checkout.session.completed", obj)


def test_webhook_requires_signature_header(client):
    resp = client.post(WEBHOOK, content=b"{}")
    assert resp.status_code == 400


def test_webhook_rejects_bad_signature(client, db_session, make_link):
    make_link("AB12CD34")
    body, headers = signed_webhook(_link_checkout(), secret="whsec_wrong")
    resp = client.post(WEBHOOK, content=body, headers=headers)

    assert resp.status_code == 400
    assert _link(db_session, "AB12CD34").paid is False
    assert db_session.query(StripeEvent).count() == 0


def test_link_checkout_marks_paid_once_and_redelivery_is_duplicate(client, db_session, make_link, sender):
    make_link("AB12CD34")

    resp = _post(client, _link_checkout())
    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert body["transition"] == "transitioned"

    link = _link(db_session, "AB12CD34")
    assert link.paid is True
    assert link.paid_session_id == "cs_test_link_1"
    first_paid_at = link.paid_at
    assert sender.kinds() == ["link_paid", "admin_payment"]
    assert sender.sent[0][1] == "payer@example.com"
    assert sender.sent[0][2]["download_url"] == "https://filepay.test/dl/AB12CD34"

    again = _post(client, _link_checkout())
    assert again.status_code == 200
    assert again.json()["duplicate"] is True

    link = _link(db_session, "AB12CD34")
    assert link.paid_at == first_paid_at
    assert db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_link_1").count() == 1
    assert len(sender.sent) == 2


def test_second_event_for_paid_link_does_not_notify_again(client, db_session, make_link, sender):
    make_link("AB12CD34")
    _post(client, _link_checkout("evt_a"))
    resp = _post(client, _link_checkout("evt_b"))

    assert resp.status_code == 200
    assert resp.json()["transition"] == "already_paid"
    assert len(sender.sent) == 2


def test_link_code_falls_back_to_payment_intent_metadata(client, db_session, make_link, fake_stripe):
    make_link("ZZ99YY88")
    fake_stripe.add_payment_intent("pi_1", {"code": "ZZ99YY88"})

    resp = _post(client, _link_checkout(code=None, payment_intent="pi_1"))

    assert resp.status_code == 200
    assert _link(db_session, "ZZ99YY88").paid is True
    assert fake_stripe.calls_of("payment_intent", "retrieve") == [("payment_intent", "retrieve", "pi_1")]


def test_missing_code_is_acknowledged_and_recorded(client, db_session):
    resp = _post(client, _link_checkout("evt_nocode", code=None))

    assert resp.status_code == 200
    assert "Missing code" in resp.json()["ignored"]
    assert db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_nocode").count() == 1

    again = _post(client, _link_checkout("evt_nocode", code=None))
    assert again.json()["duplicate"] is True


def test_unknown_link_is_acknowledged(client, db_session):
    resp = _post(client, _link_checkout("evt_unknown", code="NOPE2345"))

    assert resp.status_code == 200
    assert "NOPE2345" in resp.json()["ignored"]


def test_payment_for_deleted_link_changes_nothing(client, db_session, make_link, sender):
    make_link("DEAD2345", deleted=True, expires_in=timedelta(days=-1))

    resp = _post(client, _link_checkout(code="DEAD2345"))

    assert resp.status_code == 200
    assert resp.json()["transition"] == "deleted"
    assert _link(db_session, "DEAD2345").paid is False
    assert sender.sent == []


def _pro_checkout(event_id="evt_pro_1", *, user_id="user-1", subscription="sub_1"):
    metadata = {"plan": "pro", "email": "pro@example.com"}
    if user_id:
        metadata["user_id"] = user_id
    return stripe_event(event_id, "checkout.session.completed", {
        "id": "cs_test_pro_1",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "paid",
        "customer": "cus_1",
        "subscription": subscription,
        "metadata": metadata,
    })


def test_pro_checkout_activates_subscription(client, db_session, fake_stripe, sender):
    fake_stripe.add_subscription("sub_1", customer="cus_1", current_period_end=1893456000)

    resp = _post(client, _pro_checkout())

    assert resp.status_code == 200
    assert resp.json()["handled"] == "pro_activated"
    sub = _sub(db_session, "user-1")
    assert sub.plan == "pro"
    assert sub.status == "active"
    assert sub.stripe_customer_id == "cus_1"
    assert sub.stripe_subscription_id == "sub_1"
    assert sub.stripe_price_id == "price_pro_monthly"
    assert as_utc(sub.current_period_end) == from_unix(1893456000)
    assert sub.cancel_at_period_end is False
    assert sender.kinds() == ["pro_activated"]
    assert sender.sent[0][1] == "pro@example.com"


def test_pro_checkout_without_user_id_is_ignored(client, db_session):
    resp = _post(client, _pro_checkout(user_id=None))

    assert resp.status_code == 200
    assert "user_id" in resp.json()["ignored"]
    assert db_session.query(Subscription).count() == 0


def test_transient_stripe_failure_rolls_back_ledger(client, db_session, fake_stripe):
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    fake_stripe.fail_with = stripe.APIConnectionError("network down")

    resp = _post(client, _pro_checkout("evt_retry"))
    assert resp.status_code == 500
    assert db_session.query(StripeEvent).count() == 0
    assert db_session.query(Subscription).count() == 0

    fake_stripe.fail_with = None
    retry = _post(client, _pro_checkout("evt_retry"))
    assert retry.status_code == 200
    assert retry.json().get("duplicate") is None
    assert _sub(db_session, "user-1").plan == "pro"


def test_invoice_paid_resyncs_from_nested_subscription_details(client, db_session, fake_stripe, make_pro, sender):
    make_pro("user-2", status="past_due", plan="free", stripe_subscription_id="sub_2", stripe_customer_id="cus_2")
    fake_stripe.add_subscription("sub_2", customer="cus_2", status="active")

    event = stripe_event("evt_inv_1", "invoice.paid", {
        "id": "in_1",
        "object": "invoice",
        "parent": {"subscription_details": {"subscription": "sub_2"}},
    })
    resp = _post(client, event)

    assert resp.status_code == 200
    assert resp.json()["synced"] is True
    sub = _sub(db_session, "user-2")
    assert (sub.plan, sub.status) == ("pro", "active")
    assert sender.sent == []


def test_subscription_update_emails_on_cancel_flag_changes(client, db_session, fake_stripe, make_pro, sender):
    make_pro("user-3", email="u3@example.com", stripe_subscription_id="sub_3", stripe_customer_id="cus_3")

    fake_stripe.add_subscription("sub_3", customer="cus_3", cancel_at_period_end=True)
    resp = _post(client, stripe_event("evt_upd_1", "customer.subscription.updated", {"id": "sub_3"}))
    assert resp.status_code == 200
    sub = _sub(db_session, "user-3")
    assert sub.cancel_at_period_end is True
    assert sub.plan == "pro"
    assert sender.kinds() == ["pro_cancel_scheduled"]

    # Same state again: no e-mail.
    _post(client, stripe_event("evt_upd_2", "customer.subscription.updated", {"id": "sub_3"}))
    assert sender.kinds() == ["pro_cancel_scheduled"]

    fake_stripe.add_subscription("sub_3", customer="cus_3", cancel_at_period_end=False)
    _post(client, stripe_event("evt_upd_3", "customer.subscription.updated", {"id": "sub_3"}))
    assert sender.kinds() == ["pro_cancel_scheduled", "pro_reactivated"]
    assert _sub(db_session, "user-3").cancel_at_period_end is False


def test_cancel_at_timestamp_counts_as_scheduled_cancellation(client, db_session, fake_stripe, make_pro):
    make_pro("user-4", stripe_subscription_id="sub_4", stripe_customer_id="cus_4")
    fake_stripe.add_subscription("sub_4", customer="cus_4", cancel_at=1893456000, current_period_end=None)

    _post(client, stripe_event("evt_upd_4", "customer.subscription.updated", {"id": "sub_4"}))

    sub = _sub(db_session, "user-4")
    assert sub.cancel_at_period_end is True
    assert sub.current_period_end is not None


def test_subscription_found_by_customer_when_id_unknown(client, db_session, fake_stripe, make_pro):
    make_pro("user-5", status="incomplete", plan="free", stripe_customer_id="cus_5")
    fake_stripe.add_subscription("sub_new", customer="cus_5", status="trialing")

    _post(client, stripe_event("evt_upd_5", "customer.subscription.updated", {"id": "sub_new"}))

    sub = _sub(db_session, "user-5")
    assert sub.stripe_subscription_id == "sub_new"
    assert (sub.plan, sub.status) == ("pro", "active")


def test_event_for_older_subscription_leaves_current_one_alone(client, db_session, fake_stripe, make_pro, sender):
    make_pro("user-p", email="up@example.com", stripe_subscription_id="sub_new", stripe_customer_id="cus_p")
    fake_stripe.add_subscription("sub_new", customer="cus_p")
    fake_stripe.add_subscription("sub_old", customer="cus_p", status="canceled")

    resp = _post(client, stripe_event("evt_del_old", "customer.subscription.deleted", {"id": "sub_old"}))

    assert resp.status_code == 200
    sub = _sub(db_session, "user-p")
    assert (sub.plan, sub.status, sub.stripe_subscription_id) == ("pro", "active", "sub_new")
    assert sender.sent == []


def test_subscription_deleted_cancels_and_notifies(client, db_session, fake_stripe, make_pro, sender):
    make_pro("user-6", email="u6@example.com", stripe_subscription_id="sub_6", stripe_customer_id="cus_6")
    fake_stripe.add_subscription("sub_6", customer="cus_6", deleted=True)

    resp = _post(client, stripe_event("evt_del_1", "customer.subscription.deleted", {"id": "sub_6"}))

    assert resp.status_code == 200
    sub = _sub(db_session, "user-6")
    assert (sub.plan, sub.status) == ("free", "canceled")
    assert sub.cancel_at_period_end is True
    assert sub.current_period_end is None
    assert sender.kinds() == ["pro_canceled"]


def test_subscription_event_without_matching_row_is_skipped(client, db_session, fake_stripe):
    fake_stripe.add_subscription("sub_x", customer="cus_x")

    resp = _post(client, stripe_event("evt_upd_x", "customer.subscription.updated", {"id": "sub_x"}))

    assert resp.status_code == 200
    assert resp.json()["synced"] is False
    assert db_session.query(StripeEvent).count() == 1


def test_async_payment_events_are_logged_only(client, db_session, make_link):
    make_link("AB12CD34")
    event = stripe_event("evt_async", "checkout.session.async_payment_succeeded", {
        "id": "cs_async", "object": "checkout.session", "metadata": {"code": "AB12CD34"},
    })

    resp = _post(client, event)

    assert resp.status_code == 200
    assert resp.json()["handled"] == "async_payment_logged"
    assert _link(db_session, "AB12CD34").paid is False


def test_unhandled_event_type_is_acknowledged(client, db_session):
    resp = _post(client, stripe_event("evt_other", "customer.created", {"id": "cus_9"}))

    assert resp.status_code == 200
    assert resp.json()["handled"] is False
    assert db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_other").count() == 1


def test_notification_failure_does_not_change_response(client, db_session, make_link, sender):
    make_link("AB12CD34")
    sender.fail = True

    resp = _post(client, _link_checkout())

    assert resp.status_code == 200
    assert _link(db_session, "AB12CD34").paid is True
