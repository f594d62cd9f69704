"""
Expiry sweeper: reclaim storage and rows of expired links.

Two entry points share the same lifecycle rules
(active -> soft-deleted -> hard-deleted), each transition written as a
conditional update so concurrent sweepers cannot double-process a row:

- `expire_link`: lazy, single link, called by the download gate. Soft delete
  plus best-effort object removal. Never hard-deletes.
- `sweep_expired`: bulk, admin-triggered. Soft delete (wider mode only),
  object removal, then a hard delete guarded by storage_deleted = true.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.logging import log_context
from core.timeutil import as_utc, utcnow
from models import DELETED_REASON_EXPIRED_ACCESS, DELETED_REASON_EXPIRED_CLEANUP, FileLink
from services.email_service import bytes_to_human
from services.object_storage import ObjectStorageError, StorageService, remove_object

logger = logging.getLogger(__name__)

MAX_SWEEP_LIMIT = 500
DEFAULT_SWEEP_LIMIT = 200
PREVIEW_SAMPLE_SIZE = 20


def is_expired(link: FileLink, now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(link.expires_at)
    if expires_at is None:
        return False
    return expires_at <= (now or utcnow())


def clamp_limit(raw: Any) -> int:
    try:
        n = int(raw)
    except (TypeError, ValueError):
        n = 0
    if n <= 0:
        n = DEFAULT_SWEEP_LIMIT
    return min(max(n, 1), MAX_SWEEP_LIMIT)


def soft_delete(db: Session, code: str, *, reason: str, now: datetime) -> bool:
    """Mark the link deleted. True only for the caller that made the transition."""
    updated = (
        db.query(FileLink)
        .filter(FileLink.code == code, FileLink.deleted_at.is_(None))
        .update({FileLink.deleted_at: now, FileLink.deleted_reason: reason}, synchronize_session=False)
    )
    return updated == 1


def mark_storage_deleted(db: Session, code: str) -> None:
    db.query(FileLink).filter(FileLink.code == code).update(
        {FileLink.storage_deleted: True}, synchronize_session=False
    )


def hard_delete(db: Session, code: str) -> bool:
    """Remove the row, re-checking storage_deleted at delete time."""
    deleted = (
        db.query(FileLink)
        .filter(FileLink.code == code, FileLink.storage_deleted.is_(True))
        .delete(synchronize_session=False)
    )
    return deleted == 1


# --- Lazy, single-item ---

@dataclass(frozen=True)
class LazyExpiryResult:
    expired: bool
    just_marked: bool = False
    storage_deleted: bool = False


def expire_link(db: Session, link: FileLink, storage: StorageService, now: Optional[datetime] = None) -> LazyExpiryResult:
    """
    Soft-delete an expired link on first access and try to drop its object.

    Commits its own writes: the caller is about to answer 410, and that
    answer must not roll the soft delete back.
    """
    now = now or utcnow()
    if not is_expired(link, now):
        return LazyExpiryResult(expired=False)

    just_marked = soft_delete(db, link.code, reason=DELETED_REASON_EXPIRED_ACCESS, now=now)
    db.commit()
    if not just_marked:
        # Another request already expired it and owns the storage cleanup.
        return LazyExpiryResult(expired=True)

    logger.info(
        f"Lazy-expired link {link.code}",
        extra={"extra_fields": {"code": link.code, "expires_at": str(link.expires_at)}},
    )

    storage_deleted = False
    try:
        remove_object(storage, link.file_path)
        mark_storage_deleted(db, link.code)
        db.commit()
        storage_deleted = True
    except ObjectStorageError as e:
        logger.warning(f"Best-effort storage delete failed for {link.code}: {e}")
    except Exception as e:
        db.rollback()
        logger.warning(f"Could not record storage deletion for {link.code}: {e}")

    return LazyExpiryResult(expired=True, just_marked=True, storage_deleted=storage_deleted)


# --- Bulk, admin-triggered ---

def _candidate_query(db: Session, *, include_not_marked: bool, now: datetime):
    q = db.query(FileLink).filter(FileLink.expires_at <= now)
    if not include_not_marked:
        # Safe mode: only links something already soft-deleted.
        q = q.filter(FileLink.deleted_at.isnot(None))
    return q.order_by(FileLink.expires_at.asc())


def _mode(include_not_marked: bool) -> str:
    return "expired_any" if include_not_marked else "expired_soft_deleted_only"


@dataclass
class CleanupPreview:
    found: int
    total_bytes_found: int
    already_storage_deleted: int
    not_marked: int
    mode: str
    limit: int
    sample: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "ok": True,
            "found": self.found,
            "total_bytes_found": self.total_bytes_found,
            "total_bytes_found_human": bytes_to_human(self.total_bytes_found),
            "already_storage_deleted": self.already_storage_deleted,
            "not_marked": self.not_marked,
            "mode": self.mode,
            "limit": self.limit,
            "sample": self.sample,
        }


def preview_expired(
    db: Session,
    *,
    limit: int = DEFAULT_SWEEP_LIMIT,
    include_not_marked: bool = False,
    now: Optional[datetime] = None,
) -> CleanupPreview:
    """Read-only view of what `sweep_expired` would pick up."""
    now = now or utcnow()
    limit = clamp_limit(limit)
    rows = _candidate_query(db, include_not_marked=include_not_marked, now=now).limit(limit).all()
    return CleanupPreview(
        found=len(rows),
        total_bytes_found=sum(int(r.file_bytes or 0) for r in rows),
        already_storage_deleted=sum(1 for r in rows if r.storage_deleted),
        not_marked=sum(1 for r in rows if r.deleted_at is None),
        mode=_mode(include_not_marked),
        limit=limit,
        sample=[
            {
                "code": r.code,
                "file_bytes": r.file_bytes,
                "expires_at": as_utc(r.expires_at).isoformat() if r.expires_at else None,
                "deleted_at": as_utc(r.deleted_at).isoformat() if r.deleted_at else None,
                "storage_deleted": bool(r.storage_deleted),
                "paid": bool(r.paid),
            }
            for r in rows[:PREVIEW_SAMPLE_SIZE]
        ],
    )


@dataclass
class CleanupResult:
    dry_run: bool
    mode: str
    limit: int
    found: int = 0
    total_bytes_found: int = 0
    soft_deleted: int = 0
    deleted_from_storage: int = 0
    deleted_rows: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "ok": True,
            "dry_run": self.dry_run,
            "found": self.found,
            "total_bytes_found": self.total_bytes_found,
            "total_bytes_found_human": bytes_to_human(self.total_bytes_found),
            "soft_deleted": self.soft_deleted,
            "deleted_from_storage": self.deleted_from_storage,
            "deleted_rows": self.deleted_rows,
            "failed": self.failed,
            "mode": self.mode,
            "limit": self.limit,
        }


def _sweep_one(db: Session, storage: StorageService, row: dict, result: CleanupResult, now: datetime) -> None:
    code = row["code"]
    file_path = row["file_path"]

    if row["deleted_at"] is None:
        if not result.dry_run:
            soft_delete(db, code, reason=DELETED_REASON_EXPIRED_CLEANUP, now=now)
            db.commit()
        result.soft_deleted += 1

    if not row["storage_deleted"]:
        if not result.dry_run:
            try:
                remove_object(storage, file_path)
            except ObjectStorageError as e:
                logger.warning(f"Cleanup: storage delete failed for {code}: {e}")
                result.failed += 1
                return
            mark_storage_deleted(db, code)
            db.commit()
        result.deleted_from_storage += 1

    if result.dry_run:
        result.deleted_rows += 1
        return

    if hard_delete(db, code):
        result.deleted_rows += 1
    db.commit()


def sweep_expired(
    db: Session,
    storage: StorageService,
    *,
    limit: int = DEFAULT_SWEEP_LIMIT,
    include_not_marked: bool = False,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> CleanupResult:
    """
    Run the bulk cleanup. Per-item failures are counted and skipped; the
    batch itself only raises if the candidate query fails.
    """
    now = now or utcnow()
    limit = clamp_limit(limit)
    result = CleanupResult(dry_run=dry_run, mode=_mode(include_not_marked), limit=limit)

    # Snapshot plain values up front; each item commits independently.
    rows = [
        {
            "code": (r.code or "").strip(),
            "file_path": (r.file_path or "").strip(),
            "file_bytes": int(r.file_bytes or 0),
            "deleted_at": r.deleted_at,
            "storage_deleted": bool(r.storage_deleted),
        }
        for r in _candidate_query(db, include_not_marked=include_not_marked, now=now).limit(limit).all()
    ]
    result.found = len(rows)
    result.total_bytes_found = sum(r["file_bytes"] for r in rows)

    for row in rows:
        if not row["code"] or not row["file_path"]:
            result.failed += 1
            continue
        try:
            with log_context(code=row["code"], sweep_mode=result.mode):
                _sweep_one(db, storage, row, result, now)
        except Exception as e:
            db.rollback()
            result.failed += 1
            logger.warning(f"Cleanup: failed on {row['code']}: {e}")

    logger.info(
        "Expired-link cleanup finished",
        extra={"extra_fields": result.as_dict()},
    )
    return result
