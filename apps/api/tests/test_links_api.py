"""
Link issuance, content-policy flagging, one-time checkout and listing.
"""
from datetime import timedelta

from core.timeutil import as_utc, utcnow
from models import FileLink
from services.links import CODE_ALPHABET, CODE_LENGTH, content_policy_flag, make_code


def test_codes_use_unambiguous_alphabet():
    for _ in range(50):
        code = make_code()
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)
    assert not set("01IO") & set(CODE_ALPHABET)


def test_content_policy_flags_blocked_extensions():
    assert content_policy_flag("uploads/x/setup.EXE") == "blocked_extension:.exe"
    assert content_policy_flag("uploads/x/report.pdf") is None
    assert content_policy_flag("") is None


def test_create_link_anonymous(client, db_session):
    resp = client.post("/api/create-link", json={"file_path": "uploads/a/report.pdf", "days": 7, "file_bytes": 5000})

    assert resp.status_code == 201
    body = resp.json()
    assert body["days"] == 7
    assert body["price_cents"] == 300
    assert body["paid"] is False
    assert body["flagged"] is False

    link = db_session.query(FileLink).filter(FileLink.code == body["code"]).one()
    assert link.created_by_user_id is None
    remaining = as_utc(link.expires_at) - utcnow()
    assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)


def test_create_link_unknown_days_falls_back_to_14(client):
    body = client.post("/api/create-link", json={"file_path": "uploads/a/x.zip", "days": 5}).json()
    assert (body["days"], body["price_cents"]) == (14, 500)


def test_create_link_records_creator_and_flags(client, db_session, auth):
    resp = client.post("/api/create-link", json={"file_path": "uploads/a/tool.exe"}, headers=auth("creator-1"))

    body = resp.json()
    assert body["flagged"] is True
    link = db_session.query(FileLink).filter(FileLink.code == body["code"]).one()
    assert link.created_by_user_id == "creator-1"
    assert link.flag_reason == "blocked_extension:.exe"


def test_my_links_lists_only_own_links(client, make_link, auth):
    make_link("MINE2345", created_by_user_id="creator-1")
    make_link("THEM2345", created_by_user_id="creator-2")

    resp = client.get("/api/my-links", headers=auth("creator-1"))

    assert resp.status_code == 200
    assert [link["code"] for link in resp.json()["links"]] == ["MINE2345"]
    assert client.get("/api/my-links").status_code == 401


def test_link_checkout_prices_by_duration(client, make_link, fake_stripe):
    make_link("AB12CD34", days=30)

    resp = client.post("/api/checkout", json={"code": "AB12CD34"})

    assert resp.status_code == 200
    body = resp.json()
    assert (body["amount"], body["days"]) == (800, 30)
    assert body["url"].startswith("https://stripe.test/")
    params = fake_stripe.calls_of("checkout_session", "create")[0][2]
    assert params["mode"] == "payment"
    assert params["metadata"] == {"code": "AB12CD34", "days": "30"}
    assert params["payment_intent_data"]["metadata"]["code"] == "AB12CD34"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 800


def test_link_checkout_rejects_paid_expired_and_unknown(client, make_link):
    make_link("PAID2345", paid=True)
    make_link("OLDD2345", expires_in=timedelta(days=-1))

    assert client.post("/api/checkout", json={"code": "PAID2345"}).status_code == 400
    assert client.post("/api/checkout", json={"code": "OLDD2345"}).status_code == 410
    assert client.post("/api/checkout", json={"code": "NOPE2345"}).status_code == 404
