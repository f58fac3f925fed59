"""Notifications API endpoints."""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from pydantic import BaseModel
from uuid import UUID

from core.models import Notification
from ..deps import Services, get_current_user, get_services
from ..errors import http_error

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"]
)


class MarkReadRequest(BaseModel):
    """Notification ids to mark read; all unread ones when omitted."""
    ids: Optional[List[UUID]] = None


@router.get("", response_model=List[Notification])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Get the caller's notifications, newest first."""
    try:
        return await services.emitter.list_notifications(
            user, unread_only=unread_only, limit=limit, offset=offset
        )
    except Exception as e:
        raise http_error(e)


@router.post("/read")
async def mark_read(
    body: MarkReadRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Mark notifications as read."""
    try:
        marked = await services.emitter.mark_read(user, body.ids)
        return {"marked": marked}
    except Exception as e:
        raise http_error(e)
