from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Optional, List


class LinkCreate(BaseModel):
    file_path: str = Field(..., min_length=1, max_length=1024, description="Object key inside the storage bucket")
    days: Optional[int] = Field(default=None, description="Access window; unknown values fall back to 14")
    file_bytes: Optional[int] = Field(default=None, ge=0)


class LinkResponse(BaseModel):
    id: UUID
    code: str
    file_path: str
    file_bytes: Optional[int] = None
    days: int
    paid: bool
    paid_at: Optional[datetime] = None
    expires_at: datetime
    deleted_at: Optional[datetime] = None
    flagged: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LinkCreateResponse(LinkResponse):
    price_cents: int


class MyLinksResponse(BaseModel):
    links: List[LinkResponse]


class CheckoutRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    days: Optional[int] = None


class CheckoutResponse(BaseModel):
    url: str
    amount: int
    days: int


class FinalizeRequest(BaseModel):
    session_id: Optional[str] = None


class FileInfoResponse(BaseModel):
    code: str
    file_bytes: Optional[int] = None
    days: int
    price_cents: int
    paid: bool
    expires_at: datetime
    expired: bool


class DownloadRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class DownloadResponse(BaseModel):
    ok: bool = True
    code: str
    url: str
    expires_in: int


class ProStatusResponse(BaseModel):
    user_id: str
    plan: str
    status: str
    is_pro: bool
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
