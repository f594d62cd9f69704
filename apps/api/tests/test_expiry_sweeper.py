"""
Bulk expiry cleanup: safe mode vs. wide mode, dry runs, per-item failure
isolation and the storage-first ordering of hard deletes.
"""
from datetime import timedelta

from core.timeutil import utcnow
from models import FileLink
from services.expiry_sweeper import (
    clamp_limit,
    expire_link,
    hard_delete,
    preview_expired,
    soft_delete,
    sweep_expired,
)


def _codes(db):
    db.expire_all()
    return sorted(c for (c,) in db.query(FileLink.code).all())


def test_clamp_limit_bounds():
    assert clamp_limit(None) == 200
    assert clamp_limit("abc") == 200
    assert clamp_limit(0) == 200
    assert clamp_limit(-5) == 200
    assert clamp_limit(1) == 1
    assert clamp_limit(10_000) == 500


def test_safe_mode_only_touches_soft_deleted_links(db_session, make_link, storage):
    make_link("SOFT2345", expires_in=timedelta(days=-1), deleted=True)
    make_link("EXPD2345", expires_in=timedelta(days=-1))
    make_link("LIVE2345")

    result = sweep_expired(db_session, storage)

    assert result.mode == "expired_soft_deleted_only"
    assert (result.found, result.deleted_from_storage, result.deleted_rows, result.failed) == (1, 1, 1, 0)
    assert result.soft_deleted == 0
    assert _codes(db_session) == ["EXPD2345", "LIVE2345"]
    assert storage.deleted == ["uploads/SOFT2345/file.pdf"]


def test_wide_mode_soft_deletes_then_removes(db_session, make_link, storage):
    make_link("EXPA2345", expires_in=timedelta(days=-2), file_bytes=1000)
    make_link("EXPB2345", expires_in=timedelta(days=-1), file_bytes=2000, deleted=True)
    make_link("LIVE2345")

    result = sweep_expired(db_session, storage, include_not_marked=True)

    assert result.mode == "expired_any"
    assert result.found == 2
    assert result.total_bytes_found == 3000
    assert result.soft_deleted == 1
    assert result.deleted_from_storage == 2
    assert result.deleted_rows == 2
    assert _codes(db_session) == ["LIVE2345"]


def test_second_run_finds_nothing(db_session, make_link, storage):
    make_link("EXPA2345", expires_in=timedelta(days=-1))
    sweep_expired(db_session, storage, include_not_marked=True)

    again = sweep_expired(db_session, storage, include_not_marked=True)

    assert (again.found, again.deleted_rows, again.failed) == (0, 0, 0)


def test_storage_failure_keeps_row_and_other_items_proceed(db_session, make_link, storage):
    bad = make_link("BADD2345", expires_in=timedelta(days=-2))
    make_link("GOOD2345", expires_in=timedelta(days=-1))
    storage.failing.add(bad.file_path)

    result = sweep_expired(db_session, storage, include_not_marked=True)

    assert result.failed == 1
    assert result.deleted_rows == 1
    assert _codes(db_session) == ["BADD2345"]
    db_session.expire_all()
    row = db_session.query(FileLink).filter(FileLink.code == "BADD2345").one()
    assert row.deleted_at is not None
    assert row.storage_deleted is False


def test_missing_object_counts_as_deleted(db_session, make_link, storage):
    make_link("GONE2345", expires_in=timedelta(days=-1), deleted=True, in_bucket=False)

    result = sweep_expired(db_session, storage)

    assert result.deleted_from_storage == 1
    assert result.deleted_rows == 1


def test_already_storage_deleted_rows_skip_storage_call(db_session, make_link, storage):
    make_link("DONE2345", expires_in=timedelta(days=-1), deleted=True, storage_deleted=True)

    result = sweep_expired(db_session, storage)

    assert result.deleted_from_storage == 0
    assert result.deleted_rows == 1
    assert storage.deleted == []


def test_dry_run_reports_without_mutation(db_session, make_link, storage):
    make_link("EXPA2345", expires_in=timedelta(days=-1))
    make_link("SOFT2345", expires_in=timedelta(days=-1), deleted=True)

    result = sweep_expired(db_session, storage, include_not_marked=True, dry_run=True)

    assert result.dry_run is True
    assert (result.found, result.soft_deleted, result.deleted_rows) == (2, 1, 2)
    assert _codes(db_session) == ["EXPA2345", "SOFT2345"]
    assert storage.deleted == []


def test_limit_caps_batch_in_expiry_order(db_session, make_link, storage):
    for i, code in enumerate(["OLDA2345", "OLDB2345", "OLDC2345"]):
        make_link(code, expires_in=timedelta(days=-(10 - i)), deleted=True)

    result = sweep_expired(db_session, storage, limit=2)

    assert result.found == 2
    assert _codes(db_session) == ["OLDC2345"]


def test_hard_delete_requires_storage_deleted(db_session, make_link):
    make_link("KEEP2345", expires_in=timedelta(days=-1), deleted=True)

    assert hard_delete(db_session, "KEEP2345") is False
    db_session.commit()
    assert _codes(db_session) == ["KEEP2345"]


def test_soft_delete_has_exactly_one_winner(db_session, make_link):
    make_link("RACE2345", expires_in=timedelta(days=-1))
    now = utcnow()

    first = soft_delete(db_session, "RACE2345", reason="expired_access", now=now)
    second = soft_delete(db_session, "RACE2345", reason="expired_cleanup", now=now)
    db_session.commit()

    assert (first, second) == (True, False)
    db_session.expire_all()
    assert db_session.query(FileLink).filter(FileLink.code == "RACE2345").one().deleted_reason == "expired_access"


def test_expire_link_ignores_live_links(db_session, make_link, storage):
    link = make_link("LIVE2345")

    result = expire_link(db_session, link, storage)

    assert result.expired is False
    assert storage.deleted == []


def test_preview_counts_and_samples(db_session, make_link):
    make_link("EXPA2345", expires_in=timedelta(days=-2), file_bytes=1024)
    make_link("SOFT2345", expires_in=timedelta(days=-1), file_bytes=1024, deleted=True, storage_deleted=True)

    preview = preview_expired(db_session, include_not_marked=True).as_dict()

    assert preview["found"] == 2
    assert preview["total_bytes_found"] == 2048
    assert preview["total_bytes_found_human"] == "2.00 KB"
    assert preview["not_marked"] == 1
    assert preview["already_storage_deleted"] == 1
    assert [s["code"] for s in preview["sample"]] == ["EXPA2345", "SOFT2345"]
    assert _codes(db_session) == ["EXPA2345", "SOFT2345"]


def test_default_preview_counts_only_soft_deleted(db_session, make_link):
    for code, size in (("SDA12345", 100), ("SDB12345", 200), ("SDC12345", 300)):
        make_link(code, expires_in=timedelta(days=-1), file_bytes=size, deleted=True)
    make_link("UNMA2345", expires_in=timedelta(days=-1), file_bytes=5000)
    make_link("UNMB2345", expires_in=timedelta(days=-2), file_bytes=7000)

    preview = preview_expired(db_session).as_dict()

    assert preview["mode"] == "expired_soft_deleted_only"
    assert preview["found"] == 3
    assert preview["total_bytes_found"] == 600
    assert preview["not_marked"] == 0
