"""Chat API endpoints."""

from fastapi import APIRouter, Depends, Query, status
from typing import Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from core.models import ChatMessage
from ..deps import Services, get_current_user, get_services
from ..errors import http_error

router = APIRouter(
    prefix="/chat",
    tags=["Chat"]
)


class PostMessageRequest(BaseModel):
    body: str = Field(..., min_length=1)


@router.get("/unread", response_model=Dict[str, int])
async def unread_counts(
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Unread message count per conversation for the caller."""
    try:
        return await services.unread.counts(user)
    except Exception as e:
        raise http_error(e)


@router.get("/conversations/{conversation}/messages", response_model=List[ChatMessage])
async def list_messages(
    conversation: str,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[datetime] = None,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Messages of a conversation visible to the caller, oldest first."""
    try:
        return await services.chat.list_messages(conversation, user, limit=limit, before=before)
    except Exception as e:
        raise http_error(e)


@router.post(
    "/conversations/{conversation}/messages",
    response_model=ChatMessage,
    status_code=status.HTTP_201_CREATED
)
async def post_message(
    conversation: str,
    body: PostMessageRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Post a message to a conversation."""
    try:
        return await services.chat.post_message(conversation, user, body.body)
    except Exception as e:
        raise http_error(e)


@router.post("/conversations/{conversation}/read")
async def mark_read(
    conversation: str,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Mark a conversation read for the caller only."""
    try:
        read_at = await services.chat.mark_read(conversation, user)
        return {"conversation": conversation, "read_at": read_at.isoformat()}
    except Exception as e:
        raise http_error(e)
