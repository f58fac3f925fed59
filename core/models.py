from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    # Set only by the external expiry scheduler
    EXPIRED = "expired"


class ProposalAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"


class ItemDirection(str, Enum):
    OFFER = "offer"
    REQUEST = "request"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    RESERVED = "reserved"
    COMPLETED = "completed"
    SOLD = "sold"
    REMOVED = "removed"


class TransactionStatus(str, Enum):
    RESERVED = "reserved"
    PENDING_COMPLETION = "pending_completion"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionKind(str, Enum):
    TRADE = "trade"
    LISTING = "listing"


class FinalizationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FinalizationOutcome(str, Enum):
    """Result of a request_finalization call."""
    PENDING = "pending"
    ALREADY_REQUESTED = "already_requested"
    COMPLETED = "completed"


class HandshakeState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"


class HistoryOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_PROPOSAL_STATUSES = {
    ProposalStatus.REJECTED,
    ProposalStatus.CANCELLED,
    ProposalStatus.EXPIRED,
}

ACTIVE_TRANSACTION_STATUSES = {
    TransactionStatus.RESERVED,
    TransactionStatus.PENDING_COMPLETION,
}


class ProposalItem(BaseModel):
    sticker_id: int
    direction: ItemDirection
    quantity: int


class Proposal(BaseModel):
    id: UUID
    collection_id: Optional[int] = None
    from_user: str
    to_user: str
    status: ProposalStatus
    message: Optional[str] = None
    version: int = 1
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ProposalDetail(BaseModel):
    proposal: Proposal
    items: List[ProposalItem]
    finalization: "FinalizationState"


class Listing(BaseModel):
    id: UUID
    seller_id: str
    title: str
    collection_id: Optional[int] = None
    status: ListingStatus
    version: int = 1
    created_at: datetime
    updated_at: datetime


class ListingTransaction(BaseModel):
    id: UUID
    listing_id: UUID
    seller_id: str
    buyer_id: str
    status: TransactionStatus
    note: Optional[str] = None
    reserved_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 1
    archived_at: Optional[datetime] = None
    updated_at: datetime


class Finalization(BaseModel):
    id: UUID
    transaction_kind: TransactionKind
    transaction_id: UUID
    user_id: str
    status: FinalizationStatus
    finalized_at: datetime
    rejected_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None


class FinalizationState(BaseModel):
    """Authoritative handshake posture returned to callers for reconciliation."""
    transaction_kind: TransactionKind
    transaction_id: UUID
    state: HandshakeState
    requester: Optional[str] = None
    requested_at: Optional[datetime] = None


class FinalizationResult(BaseModel):
    transaction_kind: TransactionKind
    transaction_id: UUID
    outcome: FinalizationOutcome
    requester: str
    finalization: FinalizationState


class ListingCompletion(BaseModel):
    """Outcome of a completion step on a listing sale, with the transaction after it."""
    outcome: Optional[FinalizationOutcome] = None
    transaction: ListingTransaction
    finalization: FinalizationState


class HistoryRecord(BaseModel):
    id: UUID
    transaction_kind: TransactionKind
    transaction_id: UUID
    outcome: HistoryOutcome
    participants: List[str]
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class Notification(BaseModel):
    id: UUID
    user_id: str
    kind: str
    actor_id: Optional[str] = None
    trade_id: Optional[UUID] = None
    listing_id: Optional[UUID] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    read_at: Optional[datetime] = None


class ChatMessage(BaseModel):
    id: UUID
    conversation: str
    sender_id: Optional[str] = None
    body: str
    is_system: bool = False
    visible_to: List[str] = Field(default_factory=list)
    created_at: datetime


ProposalDetail.model_rebuild()
