"""
Links API Router

Registers uploaded objects as payable links and lists a user's own links.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from core.auth import CurrentUser, get_current_user, get_optional_user
from core.database import get_db
from schemas import LinkCreate, LinkCreateResponse, LinkResponse, MyLinksResponse
from services.links import CodeGenerationError, create_link, list_user_links
from services.stripe_service import link_price_for_days

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["links"])


@router.post("/create-link", response_model=LinkCreateResponse, status_code=status.HTTP_201_CREATED)
def create_link_endpoint(
    request: LinkCreate,
    db: Session = Depends(get_db),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    """
    Register an uploaded file under a new code.

    Anonymous uploads are allowed; a signed-in creator is recorded so Pro
    creators' links are downloadable without payment.
    """
    try:
        link = create_link(
            db,
            file_path=request.file_path.strip(),
            days=request.days,
            file_bytes=request.file_bytes,
            created_by_user_id=user.id if user else None,
        )
    except CodeGenerationError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Could not allocate a link code")

    _, price_cents = link_price_for_days(link.days)
    return LinkCreateResponse(**LinkResponse.model_validate(link).model_dump(), price_cents=price_cents)


@router.get("/my-links", response_model=MyLinksResponse)
def my_links(
    limit: int = Query(default=100, ge=1, le=100),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    links = list_user_links(db, user.id, limit=limit)
    return MyLinksResponse(links=[LinkResponse.model_validate(link) for link in links])
