"""
Signed download URLs.

Only called after the entitlement gate allowed the code; no checks here.
"""

from __future__ import annotations

from dataclasses import dataclass

from models import FileLink
from services.object_storage import StorageService


@dataclass(frozen=True)
class SignedAccess:
    code: str
    url: str
    expires_in: int


def issue_signed_url(storage: StorageService, link: FileLink, *, ttl_s: int) -> SignedAccess:
    """Raises ObjectStorageError if the store cannot mint a URL; callers do not retry."""
    url = storage.create_signed_url(link.file_path, ttl_s)
    return SignedAccess(code=link.code, url=url, expires_in=int(ttl_s))
