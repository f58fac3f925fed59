"""Listings API endpoints."""

from fastapi import APIRouter, Depends, status
from typing import List, Optional
from pydantic import BaseModel, Field
from uuid import UUID

from core.models import FinalizationState, Listing, ListingCompletion, ListingTransaction
from ..deps import Services, get_current_user, get_services
from ..errors import http_error

router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)


class CreateListingRequest(BaseModel):
    """Request model for creating a listing."""
    title: str = Field(..., min_length=1, max_length=200)
    collection_id: Optional[int] = None


class ReserveRequest(BaseModel):
    """Request model for reserving a listing."""
    buyer_id: str
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.post("", response_model=Listing, status_code=status.HTTP_201_CREATED)
async def create_listing(
    body: CreateListingRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Create a new listing owned by the caller."""
    try:
        return await services.reservations.create_listing(user, body.title, body.collection_id)
    except Exception as e:
        raise http_error(e)


@router.get("/{listing_id}", response_model=Listing)
async def get_listing(
    listing_id: UUID,
    services: Services = Depends(get_services)
):
    """Get listing details by ID."""
    try:
        return await services.reservations.get_listing(listing_id)
    except Exception as e:
        raise http_error(e)


@router.delete("/{listing_id}", response_model=Listing)
async def remove_listing(
    listing_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Withdraw an active listing."""
    try:
        return await services.reservations.remove_listing(listing_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/{listing_id}/reserve", response_model=ListingTransaction, status_code=status.HTTP_201_CREATED)
async def reserve(
    listing_id: UUID,
    body: ReserveRequest,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Reserve the listing for a buyer who has contacted the seller."""
    try:
        return await services.reservations.reserve(listing_id, user, body.buyer_id, body.note)
    except Exception as e:
        raise http_error(e)


@router.get("/{listing_id}/candidates", response_model=List[str])
async def list_candidates(
    listing_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Users who messaged the seller about the listing; only the seller may ask."""
    try:
        return await services.reservations.list_candidates(listing_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/{listing_id}/unreserve", response_model=Listing)
async def unreserve(
    listing_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Release the current reservation."""
    try:
        return await services.reservations.unreserve(listing_id, user)
    except Exception as e:
        raise http_error(e)


@router.get("/{listing_id}/transaction", response_model=ListingTransaction)
async def get_listing_transaction(
    listing_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """The listing's current (or latest) transaction, for its two parties."""
    try:
        return await services.reservations.get_listing_transaction(listing_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/transactions/{transaction_id}/mark-complete", response_model=ListingCompletion)
async def mark_complete(
    transaction_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Seller declares the sale done."""
    try:
        return await services.reservations.mark_complete(transaction_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/transactions/{transaction_id}/confirm", response_model=ListingCompletion)
async def confirm_receipt(
    transaction_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Buyer confirms receipt and completes the sale."""
    try:
        return await services.reservations.confirm_receipt(transaction_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/transactions/{transaction_id}/reject-completion", response_model=ListingCompletion)
async def reject_completion(
    transaction_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Buyer disputes the seller's completion claim."""
    try:
        return await services.reservations.reject_completion(transaction_id, user)
    except Exception as e:
        raise http_error(e)


@router.post("/transactions/{transaction_id}/cancel", response_model=ListingTransaction)
async def cancel_transaction(
    transaction_id: UUID,
    body: Optional[CancelRequest] = None,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Either party abandons a reserved sale."""
    try:
        reason = body.reason if body else None
        return await services.reservations.cancel_transaction(transaction_id, user, reason)
    except Exception as e:
        raise http_error(e)


@router.get("/transactions/{transaction_id}/completion", response_model=FinalizationState)
async def get_completion_state(
    transaction_id: UUID,
    user: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Current completion handshake state of a sale."""
    try:
        return await services.reservations.get_completion_state(transaction_id, user)
    except Exception as e:
        raise http_error(e)
