"""State-transition events emitted by the engines.

Events are collected while a unit of work runs and handed to the notification
collaborator only after the unit commits, so a rolled-back transition never
produces a notification.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import TransactionKind

PROPOSAL_ACCEPTED = 'proposal.accepted'
PROPOSAL_REJECTED = 'proposal.rejected'
PROPOSAL_CANCELLED = 'proposal.cancelled'
FINALIZATION_REQUESTED = 'finalization.requested'
FINALIZATION_COMPLETED = 'finalization.completed'
FINALIZATION_REJECTED = 'finalization.rejected'
LISTING_RESERVED = 'listing.reserved'
LISTING_UNRESERVED = 'listing.unreserved'
LISTING_COMPLETED = 'listing.completed'

EVENT_NAMES = {
    PROPOSAL_ACCEPTED,
    PROPOSAL_REJECTED,
    PROPOSAL_CANCELLED,
    FINALIZATION_REQUESTED,
    FINALIZATION_COMPLETED,
    FINALIZATION_REJECTED,
    LISTING_RESERVED,
    LISTING_UNRESERVED,
    LISTING_COMPLETED,
}


class Event(BaseModel):
    name: str
    transaction_kind: TransactionKind
    transaction_id: UUID
    actor: str
    state: str
    participants: List[str]
    listing_id: Optional[UUID] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def recipients(self) -> List[str]:
        """Parties to inform: everyone involved except the actor."""
        return [p for p in self.participants if p != self.actor]

    @property
    def conversation(self) -> str:
        """Conversation key scoped to the two involved parties."""
        if self.transaction_kind == TransactionKind.TRADE:
            return f"trade:{self.transaction_id}"
        buyer = self.participants[1]
        return f"listing:{self.listing_id}:{buyer}"


class EventBuffer:
    """Collects events during a unit of work."""

    def __init__(self):
        self.events: List[Event] = []

    def add(self, name: str, **fields) -> Event:
        event = Event(name=name, **fields)
        self.events.append(event)
        return event

    def __iter__(self):
        return iter(self.events)

    def __len__(self):
        return len(self.events)
