"""Trade proposal API endpoints."""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional, Union
from pydantic import BaseModel, Field
from uuid import UUID
import logging

from core.models import (
    FinalizationResult,
    FinalizationState,
    HistoryRecord,
    Proposal,
    ProposalAction,
    ProposalDetail,
)
from trades import BoxView, ItemLedger
from ..deps import Services, get_current_user, get_services
from ..errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/trades/proposals",
    tags=["Trades"]
)


class ItemLine(BaseModel):
    """One sticker line of a proposal."""
    sticker_id: int
    quantity: int = Field(..., gt=0)


class CreateProposalRequest(BaseModel):
    """Request model for creating a trade proposal."""
    to_user: str
    offer: List[ItemLine] = []
    request: List[ItemLine] = []
    message: Optional[str] = None
    collection_id: Optional[int] = None


class RespondRequest(BaseModel):
    action: ProposalAction


@router.post("", response_model=Proposal, status_code=status.HTTP_201_CREATED)
async def create_proposal(
    body: CreateProposalRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Propose a sticker exchange to another user."""
    try:
        ledger = ItemLedger.from_bundles(
            offer=[line.model_dump() for line in body.offer],
            request=[line.model_dump() for line in body.request]
        )
        return await services.proposals.create_proposal(
            from_user=user,
            to_user=body.to_user,
            items=ledger,
            message=body.message,
            collection_id=body.collection_id
        )
    except Exception as e:
        raise http_error(e)


@router.get("", response_model=Union[List[Proposal], List[HistoryRecord]])
async def list_proposals(
    box: str = Query("inbox", pattern="^(inbox|outbox|history)$"),
    view: BoxView = BoxView.ACTIVE,
    limit: Optional[int] = Query(None, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """List the caller's inbox, outbox or trade history."""
    try:
        if box == "history":
            return await services.boxes.history(user, limit=limit, offset=offset)
        fetch = getattr(services.boxes, box)
        return await fetch(user, view=view, limit=limit, offset=offset)
    except Exception as e:
        raise http_error(e)


@router.get("/{proposal_id}", response_model=ProposalDetail)
async def get_proposal(
    proposal_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Get a proposal with its items and finalization state."""
    try:
        return await services.proposals.get_proposal_detail(proposal_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/{proposal_id}/respond", response_model=Proposal)
async def respond(
    proposal_id: UUID,
    body: RespondRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Accept, reject or cancel a pending proposal."""
    try:
        return await services.proposals.respond(proposal_id, user, body.action)
    except Exception as e:
        raise http_error(e)


@router.post("/{proposal_id}/finalize", response_model=FinalizationResult)
async def request_finalization(
    proposal_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Declare an accepted trade done; completes it if the other side already did."""
    try:
        return await services.proposals.request_finalization(proposal_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/{proposal_id}/reject-finalization", response_model=FinalizationState)
async def reject_finalization(
    proposal_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Decline the other party's finalization request."""
    try:
        return await services.proposals.reject_finalization(proposal_id, user)
    except Exception as e:
        raise http_error(e)


@router.get("/{proposal_id}/finalization", response_model=FinalizationState)
async def get_finalization(
    proposal_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Current finalization state of a trade."""
    try:
        return await services.proposals.get_finalization_state(proposal_id, user)
    except Exception as e:
        raise http_error(e)
