"""
Admin API Router

Expired-link cleanup. Authorized by a static purge token or a signed,
time-boxed action token (the one mailed in the daily storage report).
"""

from html import escape
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from core.database import get_db
from core.deps import get_storage
from core.exceptions import UnauthorizedError
from services.admin_action import admin_credentials_configured, is_authorized_admin_token
from services.expiry_sweeper import DEFAULT_SWEEP_LIMIT, preview_expired, sweep_expired
from services.object_storage import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _request_token(request: Request, form_token: Optional[str] = None) -> Optional[str]:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return (
        request.headers.get("x-admin-token")
        or request.query_params.get("token")
        or form_token
    )


def require_admin_token(request: Request, token: Optional[str] = Form(default=None)) -> str:
    """Dependency: 500 if no admin credential is configured, 401 for a bad token."""
    if not admin_credentials_configured():
        logger.error("Admin cleanup called but no ADMIN_PURGE_TOKEN/ADMIN_ACTION_SECRET is configured")
        raise HTTPException(status_code=500, detail="Admin credentials not configured")
    presented = _request_token(request, token)
    if not is_authorized_admin_token(presented):
        raise UnauthorizedError("Invalid admin token")
    return presented


def _wants_html(request: Request) -> bool:
    return "text/html" in (request.headers.get("accept") or "")


def _preview_page(preview: dict, token: str) -> str:
    rows = "".join(
        f"<tr><td>{escape(s['code'])}</td><td>{s['file_bytes'] or 0}</td>"
        f"<td>{escape(s['expires_at'] or '-')}</td><td>{'yes' if s['deleted_at'] else 'no'}</td></tr>"
        for s in preview["sample"]
    )
    return (
        "<html><body><h2>Expired links pending delete</h2>"
        f"<p>Found {preview['found']} links ({escape(preview['total_bytes_found_human'])}), "
        f"{preview['not_marked']} not yet soft-deleted.</p>"
        "<table><tr><th>Code</th><th>Bytes</th><th>Expired</th><th>Soft-deleted</th></tr>"
        f"{rows}</table>"
        "<form method=\"post\" action=\"/api/admin/cleanup-expired?include_not_marked=true\">"
        f"<input type=\"hidden\" name=\"token\" value=\"{escape(token)}\"/>"
        "<button type=\"submit\">Delete all expired</button></form>"
        "</body></html>"
    )


@router.get("/cleanup-expired")
def cleanup_preview(
    request: Request,
    limit: int = Query(default=DEFAULT_SWEEP_LIMIT),
    include_not_marked: bool = Query(default=False),
    db: Session = Depends(get_db),
    token: str = Depends(require_admin_token),
):
    """Read-only preview of what a cleanup run would pick up."""
    preview = preview_expired(db, limit=limit, include_not_marked=include_not_marked).as_dict()
    if _wants_html(request):
        return HTMLResponse(_preview_page(preview, token))
    return preview


@router.post("/cleanup-expired")
def cleanup_execute(
    limit: int = Query(default=DEFAULT_SWEEP_LIMIT),
    include_not_marked: bool = Query(default=False),
    dry_run: bool = Query(default=False),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    token: str = Depends(require_admin_token),
):
    """
    Delete expired links: storage object first, then the row.

    Default mode only touches links that are already soft-deleted;
    include_not_marked=true widens it to every expired link.
    """
    result = sweep_expired(
        db,
        storage,
        limit=limit,
        include_not_marked=include_not_marked,
        dry_run=dry_run,
    )
    return result.as_dict()
