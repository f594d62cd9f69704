"""
Signed admin action tokens.

The daily storage report links straight to the cleanup endpoint, so the link
itself must carry the authorization: a short-lived, single-purpose token
signed with ADMIN_ACTION_SECRET. A static ADMIN_PURGE_TOKEN is accepted too,
for operators calling the endpoint by hand.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import ConfigurationError

ACTION_PURGE_EXPIRED = "purge_expired"


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


def _sign(payload_b64: str, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(mac)


def _now_ts() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def create_action_token(
    action: str,
    *,
    secret: Optional[str] = None,
    ttl_s: Optional[int] = None,
    now_ts: Optional[int] = None,
) -> str:
    """Mint `payload.signature` for a single admin action."""
    key = secret if secret is not None else settings.ADMIN_ACTION_SECRET
    if not key:
        raise ConfigurationError("ADMIN_ACTION_SECRET is not configured")
    ttl = int(ttl_s if ttl_s is not None else settings.ADMIN_ACTION_TTL_S)
    payload = {
        "action": action,
        "exp": (now_ts if now_ts is not None else _now_ts()) + ttl,
        "nonce": secrets.token_hex(8),
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _b64url_encode(raw)
    return f"{payload_b64}.{_sign(payload_b64, key)}"


def verify_action_token(
    token: str,
    *,
    action: str,
    secret: Optional[str] = None,
    now_ts: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """
    Check signature, action and expiry. Returns the payload if valid, else None.
    """
    key = secret if secret is not None else settings.ADMIN_ACTION_SECRET
    if not key or not token or "." not in token:
        return None
    payload_b64, sig = token.split(".", 1)
    if not payload_b64 or not sig:
        return None
    if not hmac.compare_digest(sig, _sign(payload_b64, key)):
        return None
    try:
        payload = json.loads(_b64url_decode(payload_b64))
        exp = int(payload.get("exp"))
    except (ValueError, TypeError, AttributeError):
        return None

    if payload.get("action") != action:
        return None
    if exp <= (now_ts if now_ts is not None else _now_ts()):
        return None
    return payload


def admin_credentials_configured() -> bool:
    return bool(settings.ADMIN_PURGE_TOKEN or settings.ADMIN_ACTION_SECRET)


def is_authorized_admin_token(token: Optional[str], *, action: str = ACTION_PURGE_EXPIRED) -> bool:
    """Static purge token (constant-time compare) or a valid signed action token."""
    token = (token or "").strip()
    if not token:
        return False
    static = settings.ADMIN_PURGE_TOKEN
    if static and hmac.compare_digest(token.encode("utf-8"), static.encode("utf-8")):
        return True
    return verify_action_token(token, action=action) is not None


def build_action_url(action: str = ACTION_PURGE_EXPIRED) -> str:
    """Link for the storage report e-mail; GET on it renders the preview page."""
    token = create_action_token(action)
    base = settings.WEB_APP_BASE_URL.rstrip("/")
    return f"{base}/api/admin/cleanup-expired?token={token}"
