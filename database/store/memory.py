"""In-process settlement store.

Rows live in dicts keyed by id. A unit of work serializes on one asyncio.Lock
per locked row; waiting longer than lock_timeout raises ConflictError. Every
write records how to undo itself so a unit that raises leaves no trace.
"""
import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from core.errors import ConflictError
from core.models import (
    ACTIVE_TRANSACTION_STATUSES,
    ChatMessage,
    Finalization,
    FinalizationStatus,
    HistoryRecord,
    Listing,
    ListingStatus,
    ListingTransaction,
    Notification,
    Proposal,
    ProposalItem,
    ProposalStatus,
    TransactionKind,
    TransactionStatus,
)
from . import LockTarget, LOCKABLE_TABLES, Store, Unit

logger = logging.getLogger(__name__)

_MISSING = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _newest_first(rows: List[Any]) -> List[Any]:
    """Sort by created_at descending; rows created in the same instant keep reverse insertion order."""
    return sorted(reversed(rows), key=lambda r: r.created_at, reverse=True)


class MemoryInventory:
    """Sticker ownership counts."""

    def __init__(self):
        self.counts: Dict[Tuple[str, int], int] = {}

    def set_quantity(self, user_id: str, sticker_id: int, count: int) -> None:
        self.counts[(user_id, sticker_id)] = count

    def owned_quantity(self, user_id: str, sticker_id: int) -> int:
        return self.counts.get((user_id, sticker_id), 0)


class MemoryParticipantRegistry:
    """Users who messaged the seller, per listing, in first-contact order."""

    def __init__(self):
        self.participants: Dict[UUID, List[str]] = defaultdict(list)

    def add_participant(self, listing_id: UUID, user_id: str) -> bool:
        """Record user_id; False if it was already known."""
        known = self.participants[listing_id]
        if user_id in known:
            return False
        known.append(user_id)
        return True

    def remove_participant(self, listing_id: UUID, user_id: str) -> None:
        known = self.participants.get(listing_id, [])
        if user_id in known:
            known.remove(user_id)

    def is_participant(self, listing_id: UUID, user_id: str) -> bool:
        return user_id in self.participants.get(listing_id, [])

    def list_participants(self, listing_id: UUID) -> List[str]:
        return list(self.participants.get(listing_id, []))


class MemoryBlockList:
    def __init__(self):
        self.ignored: Set[Tuple[str, str]] = set()

    def block(self, user_id: str, other_user_id: str) -> None:
        self.ignored.add((user_id, other_user_id))

    def is_blocked(self, user_id: str, other_user_id: str) -> bool:
        return (user_id, other_user_id) in self.ignored


class MemoryUnit(Unit):
    """Unit of work over MemoryStore tables with an undo journal."""

    def __init__(self, store: 'MemoryStore'):
        super().__init__()
        self.store = store
        self._journal: List[Callable[[], None]] = []

    def _put(self, table: Dict, key: Any, value: Any) -> None:
        previous = table.get(key, _MISSING)

        def undo():
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous

        self._journal.append(undo)
        table[key] = value

    def rollback(self) -> None:
        while self._journal:
            self._journal.pop()()

    def _cas(self, table: Dict[UUID, Any], current: Any, changes: Dict[str, Any], touch: str) -> Any:
        stored = table.get(current.id)
        if stored is None or stored.version != current.version:
            raise ConflictError(f"{type(current).__name__} {current.id} was modified concurrently")
        changes = dict(changes)
        changes['version'] = stored.version + 1
        changes[touch] = _now()
        updated = stored.model_copy(update=changes)
        self._put(table, current.id, updated)
        return updated

    # Collaborators
    async def owned_quantity(self, user_id, sticker_id):
        return self.store.inventory.owned_quantity(user_id, sticker_id)

    async def is_blocked(self, user_id, other_user_id):
        return self.store.blocks.is_blocked(user_id, other_user_id)

    async def is_participant(self, listing_id, user_id):
        return self.store.participants.is_participant(listing_id, user_id)

    async def add_participant(self, listing_id, user_id):
        registry = self.store.participants
        if registry.add_participant(listing_id, user_id):
            self._journal.append(lambda: registry.remove_participant(listing_id, user_id))

    async def list_participants(self, listing_id):
        return self.store.participants.list_participants(listing_id)

    # Proposals
    async def insert_proposal(self, *, from_user, to_user, items, collection_id=None, message=None):
        now = _now()
        proposal = Proposal(
            id=uuid.uuid4(),
            collection_id=collection_id,
            from_user=from_user,
            to_user=to_user,
            status=ProposalStatus.PENDING,
            message=message,
            created_at=now,
            updated_at=now,
        )
        self._put(self.store.proposals, proposal.id, proposal)
        self._put(self.store.proposal_items, proposal.id, [i.model_copy() for i in items])
        return proposal

    async def get_proposal(self, proposal_id):
        return self.store.proposals.get(proposal_id)

    async def get_proposal_items(self, proposal_id):
        return [i.model_copy() for i in self.store.proposal_items.get(proposal_id, [])]

    async def update_proposal(self, proposal, **changes):
        return self._cas(self.store.proposals, proposal, changes, 'updated_at')

    async def list_proposals(self, *, from_user=None, to_user=None, statuses=None,
                             archived=None, limit=20, offset=0):
        wanted = set(statuses) if statuses is not None else None
        rows = [
            p for p in self.store.proposals.values()
            if (from_user is None or p.from_user == from_user)
            and (to_user is None or p.to_user == to_user)
            and (wanted is None or p.status in wanted)
            and (archived is None or (p.archived_at is not None) == archived)
        ]
        rows = _newest_first(rows)
        return rows[offset:offset + limit]

    # Listings
    async def insert_listing(self, *, seller_id, title, collection_id=None):
        now = _now()
        listing = Listing(
            id=uuid.uuid4(),
            seller_id=seller_id,
            title=title,
            collection_id=collection_id,
            status=ListingStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self._put(self.store.listings, listing.id, listing)
        return listing

    async def get_listing(self, listing_id):
        return self.store.listings.get(listing_id)

    async def update_listing(self, listing, **changes):
        return self._cas(self.store.listings, listing, changes, 'updated_at')

    async def insert_listing_transaction(self, *, listing_id, seller_id, buyer_id, note=None):
        if await self.get_active_listing_transaction(listing_id) is not None:
            raise ConflictError(f"Listing {listing_id} already has an active transaction")
        now = _now()
        transaction = ListingTransaction(
            id=uuid.uuid4(),
            listing_id=listing_id,
            seller_id=seller_id,
            buyer_id=buyer_id,
            status=TransactionStatus.RESERVED,
            note=note,
            reserved_at=now,
            updated_at=now,
        )
        self._put(self.store.listing_transactions, transaction.id, transaction)
        return transaction

    async def get_listing_transaction(self, transaction_id):
        return self.store.listing_transactions.get(transaction_id)

    async def get_active_listing_transaction(self, listing_id):
        for transaction in self.store.listing_transactions.values():
            if transaction.listing_id == listing_id and transaction.status in ACTIVE_TRANSACTION_STATUSES:
                return transaction
        return None

    async def get_latest_listing_transaction(self, listing_id):
        rows = [t for t in self.store.listing_transactions.values() if t.listing_id == listing_id]
        return max(reversed(rows), key=lambda t: t.reserved_at, default=None)

    async def update_listing_transaction(self, transaction, **changes):
        return self._cas(self.store.listing_transactions, transaction, changes, 'updated_at')

    # Finalizations
    async def get_active_finalization(self, kind, transaction_id):
        active = [
            f for f in self.store.finalizations.values()
            if f.transaction_kind == kind and f.transaction_id == transaction_id
            and f.status in (FinalizationStatus.PENDING, FinalizationStatus.ACCEPTED)
        ]
        return min(active, key=lambda f: f.finalized_at, default=None)

    async def insert_finalization(self, kind, transaction_id, user_id):
        if await self.get_active_finalization(kind, transaction_id) is not None:
            raise ConflictError(f"Finalization already active for {kind.value} {transaction_id}")
        finalization = Finalization(
            id=uuid.uuid4(),
            transaction_kind=kind,
            transaction_id=transaction_id,
            user_id=user_id,
            status=FinalizationStatus.PENDING,
            finalized_at=_now(),
        )
        self._put(self.store.finalizations, finalization.id, finalization)
        return finalization

    async def update_finalization(self, finalization, **changes):
        stored = self.store.finalizations.get(finalization.id)
        if stored is None or stored.status != finalization.status:
            raise ConflictError(f"Finalization {finalization.id} was modified concurrently")
        updated = stored.model_copy(update=changes)
        self._put(self.store.finalizations, finalization.id, updated)
        return updated

    async def list_finalizations(self, kind, transaction_id):
        rows = [
            f for f in self.store.finalizations.values()
            if f.transaction_kind == kind and f.transaction_id == transaction_id
        ]
        return sorted(rows, key=lambda f: f.finalized_at)

    # History
    async def insert_history(self, *, kind, transaction_id, outcome, participants,
                             completed_at=None, cancelled_at=None, metadata=None):
        key = (kind, transaction_id)
        if key in self.store.history:
            raise ConflictError(f"{kind.value} {transaction_id} is already archived")
        record = HistoryRecord(
            id=uuid.uuid4(),
            transaction_kind=kind,
            transaction_id=transaction_id,
            outcome=outcome,
            participants=list(participants),
            completed_at=completed_at,
            cancelled_at=cancelled_at,
            metadata=dict(metadata or {}),
            created_at=_now(),
        )
        self._put(self.store.history, key, record)
        return record

    async def get_history(self, kind, transaction_id):
        return self.store.history.get((kind, transaction_id))

    async def list_history(self, *, user_id, kind=None, limit=20, offset=0):
        rows = [
            r for r in self.store.history.values()
            if user_id in r.participants and (kind is None or r.transaction_kind == kind)
        ]
        rows = _newest_first(rows)
        return rows[offset:offset + limit]

    # Notifications
    async def insert_notification(self, *, user_id, kind, actor_id=None, trade_id=None,
                                  listing_id=None, payload=None):
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            kind=kind,
            actor_id=actor_id,
            trade_id=trade_id,
            listing_id=listing_id,
            payload=dict(payload or {}),
            created_at=_now(),
        )
        self._put(self.store.notifications, notification.id, notification)
        return notification

    async def list_notifications(self, user_id, *, unread_only=False, limit=50, offset=0):
        rows = [
            n for n in self.store.notifications.values()
            if n.user_id == user_id and (not unread_only or n.read_at is None)
        ]
        rows = _newest_first(rows)
        return rows[offset:offset + limit]

    async def mark_notifications_read(self, user_id, notification_ids=None):
        wanted = set(notification_ids) if notification_ids is not None else None
        now = _now()
        marked = 0
        for notification in list(self.store.notifications.values()):
            if notification.user_id != user_id or notification.read_at is not None:
                continue
            if wanted is not None and notification.id not in wanted:
                continue
            self._put(self.store.notifications, notification.id,
                      notification.model_copy(update={'read_at': now}))
            marked += 1
        return marked

    # Chat
    async def insert_message(self, *, conversation, body, visible_to, sender_id=None, is_system=False):
        message = ChatMessage(
            id=uuid.uuid4(),
            conversation=conversation,
            sender_id=sender_id,
            body=body,
            is_system=is_system,
            visible_to=list(visible_to),
            created_at=_now(),
        )
        self._put(self.store.messages, message.id, message)
        return message

    async def list_messages(self, conversation, viewer, *, limit=50, before=None):
        rows = [
            m for m in self.store.messages.values()
            if m.conversation == conversation and viewer in m.visible_to
            and (before is None or m.created_at < before)
        ]
        rows = _newest_first(rows)
        return rows[:limit]

    async def list_conversations(self, user_id):
        return sorted({m.conversation for m in self.store.messages.values() if user_id in m.visible_to})

    async def set_read_marker(self, conversation, user_id, read_at):
        self._put(self.store.read_markers, (conversation, user_id), read_at)

    async def count_unread(self, user_id, conversations):
        counts = {c: 0 for c in conversations}
        for message in self.store.messages.values():
            if message.conversation not in counts or user_id not in message.visible_to:
                continue
            if message.sender_id == user_id:
                continue
            marker = self.store.read_markers.get((message.conversation, user_id))
            if marker is None or message.created_at > marker:
                counts[message.conversation] += 1
        return counts


class MemoryStore(Store):
    """Settlement store kept in process memory."""

    def __init__(self, lock_timeout: float = 5.0):
        super().__init__(lock_timeout=lock_timeout)
        self.proposals: Dict[UUID, Proposal] = {}
        self.proposal_items: Dict[UUID, List[ProposalItem]] = {}
        self.listings: Dict[UUID, Listing] = {}
        self.listing_transactions: Dict[UUID, ListingTransaction] = {}
        self.finalizations: Dict[UUID, Finalization] = {}
        self.history: Dict[Tuple[TransactionKind, UUID], HistoryRecord] = {}
        self.notifications: Dict[UUID, Notification] = {}
        self.messages: Dict[UUID, ChatMessage] = {}
        self.read_markers: Dict[Tuple[str, str], datetime] = {}
        self.inventory = MemoryInventory()
        self.participants = MemoryParticipantRegistry()
        self.blocks = MemoryBlockList()
        # Entries vanish once no unit holds or awaits the lock
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, lock: LockTarget) -> asyncio.Lock:
        table, _ = lock
        if table not in LOCKABLE_TABLES:
            raise ValueError(f"Cannot lock rows of {table}")
        row_lock = self._locks.get(lock)
        if row_lock is None:
            row_lock = self._locks[lock] = asyncio.Lock()
        return row_lock

    @asynccontextmanager
    async def unit(self, lock: Optional[LockTarget] = None) -> AsyncIterator[MemoryUnit]:
        row_lock = self._lock_for(lock) if lock else None
        if row_lock is not None:
            try:
                await asyncio.wait_for(row_lock.acquire(), timeout=self.lock_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for lock on {lock[0]} {lock[1]}")
                raise ConflictError(f"{lock[0]} {lock[1]} is busy, refetch and try again")

        unit = MemoryUnit(self)
        try:
            yield unit
        except BaseException:
            unit.rollback()
            raise
        finally:
            if row_lock is not None:
                row_lock.release()
