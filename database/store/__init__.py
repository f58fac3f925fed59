"""Settlement store interface.

A store hands out units of work. A unit is one atomic read-check-write: it is
opened with the row that serializes the operation (a proposal, a listing) and
every read and write made through it commits or rolls back together.

    async with store.unit(('proposals', proposal_id)) as unit:
        proposal = await unit.get_proposal(proposal_id)
        ...
        await unit.update_proposal(proposal, status=ProposalStatus.ACCEPTED)

Two backends implement the interface: PostgresStore (asyncpg, row locks and
version compare-and-swap) and MemoryStore (per-row asyncio locks and an undo
journal). Row updates take the model as last read and fail with ConflictError
if its version moved in between.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from core.events import EventBuffer
from core.models import (
    ChatMessage,
    Finalization,
    HistoryRecord,
    Listing,
    ListingTransaction,
    Notification,
    Proposal,
    ProposalItem,
    ProposalStatus,
    TransactionKind,
)

LockTarget = Tuple[str, UUID]

# Tables whose rows may serialize a unit of work
LOCKABLE_TABLES = ('proposals', 'listings', 'listing_transactions')


class Unit:
    """One atomic unit of work against the store.

    Collaborator lookups (sticker counts, listing participants, ignore lists)
    go through the unit too, so an operation never needs a second connection
    while it holds a row lock.
    """

    def __init__(self):
        self.events = EventBuffer()

    # Collaborators
    async def owned_quantity(self, user_id: str, sticker_id: int) -> int:
        raise NotImplementedError

    async def is_blocked(self, user_id: str, other_user_id: str) -> bool:
        """True if user_id ignores other_user_id."""
        raise NotImplementedError

    async def is_participant(self, listing_id: UUID, user_id: str) -> bool:
        """True if user_id has messaged the seller about the listing."""
        raise NotImplementedError

    async def add_participant(self, listing_id: UUID, user_id: str) -> None:
        raise NotImplementedError

    async def list_participants(self, listing_id: UUID) -> List[str]:
        """Users who messaged the seller about the listing, earliest first."""
        raise NotImplementedError

    # Proposals
    async def insert_proposal(
        self,
        *,
        from_user: str,
        to_user: str,
        items: List[ProposalItem],
        collection_id: Optional[int] = None,
        message: Optional[str] = None
    ) -> Proposal:
        raise NotImplementedError

    async def get_proposal(self, proposal_id: UUID) -> Optional[Proposal]:
        raise NotImplementedError

    async def get_proposal_items(self, proposal_id: UUID) -> List[ProposalItem]:
        raise NotImplementedError

    async def update_proposal(self, proposal: Proposal, **changes: Any) -> Proposal:
        raise NotImplementedError

    async def list_proposals(
        self,
        *,
        from_user: Optional[str] = None,
        to_user: Optional[str] = None,
        statuses: Optional[Iterable[ProposalStatus]] = None,
        archived: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Proposal]:
        raise NotImplementedError

    # Listings
    async def insert_listing(
        self, *, seller_id: str, title: str, collection_id: Optional[int] = None
    ) -> Listing:
        raise NotImplementedError

    async def get_listing(self, listing_id: UUID) -> Optional[Listing]:
        raise NotImplementedError

    async def update_listing(self, listing: Listing, **changes: Any) -> Listing:
        raise NotImplementedError

    async def insert_listing_transaction(
        self, *, listing_id: UUID, seller_id: str, buyer_id: str, note: Optional[str] = None
    ) -> ListingTransaction:
        raise NotImplementedError

    async def get_listing_transaction(self, transaction_id: UUID) -> Optional[ListingTransaction]:
        raise NotImplementedError

    async def get_active_listing_transaction(self, listing_id: UUID) -> Optional[ListingTransaction]:
        raise NotImplementedError

    async def get_latest_listing_transaction(self, listing_id: UUID) -> Optional[ListingTransaction]:
        raise NotImplementedError

    async def update_listing_transaction(
        self, transaction: ListingTransaction, **changes: Any
    ) -> ListingTransaction:
        raise NotImplementedError

    # Finalizations
    async def get_active_finalization(
        self, kind: TransactionKind, transaction_id: UUID
    ) -> Optional[Finalization]:
        raise NotImplementedError

    async def insert_finalization(
        self, kind: TransactionKind, transaction_id: UUID, user_id: str
    ) -> Finalization:
        raise NotImplementedError

    async def update_finalization(self, finalization: Finalization, **changes: Any) -> Finalization:
        raise NotImplementedError

    async def list_finalizations(
        self, kind: TransactionKind, transaction_id: UUID
    ) -> List[Finalization]:
        raise NotImplementedError

    # History
    async def insert_history(
        self,
        *,
        kind: TransactionKind,
        transaction_id: UUID,
        outcome: str,
        participants: List[str],
        completed_at: Optional[datetime] = None,
        cancelled_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> HistoryRecord:
        raise NotImplementedError

    async def get_history(self, kind: TransactionKind, transaction_id: UUID) -> Optional[HistoryRecord]:
        raise NotImplementedError

    async def list_history(
        self,
        *,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[HistoryRecord]:
        raise NotImplementedError

    # Notifications
    async def insert_notification(
        self,
        *,
        user_id: str,
        kind: str,
        actor_id: Optional[str] = None,
        trade_id: Optional[UUID] = None,
        listing_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Notification:
        raise NotImplementedError

    async def list_notifications(
        self, user_id: str, *, unread_only: bool = False, limit: int = 50, offset: int = 0
    ) -> List[Notification]:
        raise NotImplementedError

    async def mark_notifications_read(
        self, user_id: str, notification_ids: Optional[List[UUID]] = None
    ) -> int:
        raise NotImplementedError

    # Chat
    async def insert_message(
        self,
        *,
        conversation: str,
        body: str,
        visible_to: List[str],
        sender_id: Optional[str] = None,
        is_system: bool = False
    ) -> ChatMessage:
        raise NotImplementedError

    async def list_messages(
        self, conversation: str, viewer: str, *, limit: int = 50, before: Optional[datetime] = None
    ) -> List[ChatMessage]:
        raise NotImplementedError

    async def list_conversations(self, user_id: str) -> List[str]:
        raise NotImplementedError

    async def set_read_marker(self, conversation: str, user_id: str, read_at: datetime) -> None:
        raise NotImplementedError

    async def count_unread(self, user_id: str, conversations: List[str]) -> Dict[str, int]:
        raise NotImplementedError


class Store:
    """Factory for units of work over one backend."""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout

    @asynccontextmanager
    async def unit(self, lock: Optional[LockTarget] = None) -> AsyncIterator[Unit]:
        """Open a unit of work, serialized on `lock` when given."""
        raise NotImplementedError
        yield  # pragma: no cover

    async def close(self) -> None:
        pass


__all__ = [
    'Store', 'Unit', 'LockTarget', 'LOCKABLE_TABLES',
]
