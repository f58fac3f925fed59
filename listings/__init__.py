"""Listings module for managing marketplace listings and their sales.

This module handles:
- Listing creation, lookup and removal
- Reserving a listing for one buyer who has messaged the seller
- Unreserving and cancelling a reservation
- The sale completion handshake (seller marks complete, buyer confirms)

Every operation serializes on the listing row; a listing has at most one
active transaction at any time.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from core.errors import (
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
)
from core.events import LISTING_RESERVED, LISTING_UNRESERVED
from core.models import (
    FinalizationState,
    HistoryOutcome,
    Listing,
    ListingCompletion,
    ListingStatus,
    ListingTransaction,
    TransactionKind,
    TransactionStatus,
)
from database import get_store
from database.store import Store, Unit
from finalization import FinalizationCoordinator
from history import HistoryArchiver
from .subject import ListingSubject

logger = logging.getLogger(__name__)


class ReservationManager:
    """Manages listings and the reservation-to-sale lifecycle."""

    def __init__(
        self,
        store: Optional[Store] = None,
        coordinator: Optional[FinalizationCoordinator] = None,
        archiver: Optional[HistoryArchiver] = None,
        emitter=None
    ) -> None:
        """Initialize reservation manager.

        Args:
            store: Optional settlement store. If not provided, will get from database module.
            coordinator: Shared finalization coordinator; a private one is built if omitted
            archiver: History archiver; built on the same store if omitted
            emitter: Optional notification emitter receiving committed events
        """
        self.store = store
        self.emitter = emitter
        self.archiver = archiver or HistoryArchiver(store)
        self.coordinator = coordinator or FinalizationCoordinator(store, emitter)
        self.subject = ListingSubject(self.archiver)
        self.coordinator.register(self.subject)

    async def ensure_store(self):
        """Ensure we have a settlement store."""
        if not self.store:
            self.store = await get_store()

    async def emit(self, events) -> None:
        if self.emitter and len(events):
            await self.emitter.emit(events)

    async def create_listing(
        self,
        seller_id: str,
        title: str,
        collection_id: Optional[int] = None
    ) -> Listing:
        """Create a new active listing."""
        await self.ensure_store()
        if not title or not title.strip():
            raise ValueError("Listing title cannot be empty")

        async with self.store.unit() as unit:
            listing = await unit.insert_listing(
                seller_id=seller_id,
                title=title.strip(),
                collection_id=collection_id
            )
        logger.info(f"Created listing {listing.id} for seller {seller_id}")
        return listing

    async def get_listing(self, listing_id: UUID) -> Listing:
        """Get a listing by ID.

        Raises:
            NotFoundError: If listing doesn't exist
        """
        await self.ensure_store()
        async with self.store.unit() as unit:
            return await self._load_listing(unit, listing_id)

    async def remove_listing(self, listing_id: UUID, seller_id: str) -> Listing:
        """Withdraw an active listing from the marketplace.

        Raises:
            NotFoundError: If listing doesn't exist
            ForbiddenError: If caller is not the seller
            InvalidStateTransitionError: If the listing is not active
        """
        await self.ensure_store()
        async with self.store.unit(('listings', listing_id)) as unit:
            listing = await self._load_listing(unit, listing_id)
            self._require_seller(listing, seller_id)
            if listing.status != ListingStatus.ACTIVE:
                raise InvalidStateTransitionError(
                    f"Cannot remove a listing that is {listing.status.value}",
                    current=listing.status.value
                )
            listing = await unit.update_listing(listing, status=ListingStatus.REMOVED)

        logger.info(f"Removed listing {listing_id}")
        return listing

    async def reserve(
        self,
        listing_id: UUID,
        seller_id: str,
        buyer_id: str,
        note: Optional[str] = None
    ) -> ListingTransaction:
        """Reserve a listing for one buyer.

        Args:
            listing_id: Listing to reserve
            seller_id: Acting user, must be the seller
            buyer_id: A user who has messaged the seller about this listing
            note: Optional note kept with the reservation

        Returns:
            The new reserved transaction

        Raises:
            NotFoundError: If listing doesn't exist
            ForbiddenError: If caller is not the seller or buyer is not eligible
            InvalidStateTransitionError: If the listing is not active
        """
        await self.ensure_store()

        async with self.store.unit(('listings', listing_id)) as unit:
            listing = await self._load_listing(unit, listing_id)
            self._require_seller(listing, seller_id)

            if buyer_id == listing.seller_id:
                raise ForbiddenError("A seller cannot reserve their own listing")
            if not await unit.is_participant(listing_id, buyer_id):
                raise ForbiddenError(f"{buyer_id} has not contacted the seller about this listing")

            if listing.status != ListingStatus.ACTIVE:
                raise InvalidStateTransitionError(
                    f"Listing {listing_id} is {listing.status.value}",
                    current=listing.status.value
                )

            transaction = await unit.insert_listing_transaction(
                listing_id=listing_id,
                seller_id=listing.seller_id,
                buyer_id=buyer_id,
                note=note
            )
            await unit.update_listing(listing, status=ListingStatus.RESERVED)
            self._add_event(unit, LISTING_RESERVED, transaction, seller_id, TransactionStatus.RESERVED)

        await self.emit(unit.events)
        logger.info(f"Reserved listing {listing_id} for {buyer_id}")
        return transaction

    async def unreserve(self, listing_id: UUID, seller_id: str) -> Listing:
        """Release the reservation and reopen the listing to every candidate.

        Only allowed before the completion handshake has started.

        Raises:
            NotFoundError: If listing doesn't exist
            ForbiddenError: If caller is not the seller
            InvalidStateTransitionError: If there is no reservation to release
        """
        await self.ensure_store()

        async with self.store.unit(('listings', listing_id)) as unit:
            listing = await self._load_listing(unit, listing_id)
            self._require_seller(listing, seller_id)

            transaction = await unit.get_active_listing_transaction(listing_id)
            if not transaction or transaction.status != TransactionStatus.RESERVED:
                current = transaction.status.value if transaction else listing.status.value
                raise InvalidStateTransitionError(
                    f"Listing {listing_id} has no reservation to release",
                    current=current
                )

            listing = await self._release(unit, listing, transaction, seller_id, 'unreserved')

        await self.emit(unit.events)
        logger.info(f"Unreserved listing {listing_id}")
        return listing

    async def cancel_transaction(
        self,
        transaction_id: UUID,
        actor: str,
        reason: Optional[str] = None
    ) -> ListingTransaction:
        """Abandon a reserved sale; either party may cancel.

        Raises:
            NotFoundError: If the transaction doesn't exist
            ForbiddenError: If caller is not the seller or the buyer
            InvalidStateTransitionError: If the transaction is not reserved
        """
        await self.ensure_store()
        lock = await self.subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            transaction = await self.subject.load(unit, transaction_id)
            if actor not in (transaction.seller_id, transaction.buyer_id):
                raise ForbiddenError(f"{actor} is not a party to transaction {transaction_id}")
            if transaction.status != TransactionStatus.RESERVED:
                raise InvalidStateTransitionError(
                    f"Cannot cancel a transaction that is {transaction.status.value}",
                    current=transaction.status.value
                )

            listing = await self._load_listing(unit, transaction.listing_id)
            await self._release(unit, listing, transaction, actor, reason or 'cancelled')
            transaction = await unit.get_listing_transaction(transaction_id)

        await self.emit(unit.events)
        logger.info(f"{actor} cancelled listing transaction {transaction_id}")
        return transaction

    async def mark_complete(self, transaction_id: UUID, seller_id: str) -> ListingCompletion:
        """Seller declares the sale done; moves the transaction to pending_completion.

        Repeating the call while pending returns already_requested.

        Raises:
            NotFoundError: If the transaction doesn't exist
            ForbiddenError: If caller is not the seller
            InvalidStateTransitionError: If the transaction is not reserved
        """
        await self.ensure_store()
        lock = await self.subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            transaction = await self.subject.load(unit, transaction_id)
            if seller_id != transaction.seller_id:
                raise ForbiddenError("Only the seller can mark a sale complete")
            result = await self.coordinator.request_in_unit(unit, self.subject, transaction, seller_id)
            completion = await self._completion(unit, transaction_id, result.outcome, result.finalization)

        await self.emit(unit.events)
        return completion

    async def confirm_receipt(self, transaction_id: UUID, buyer_id: str) -> ListingCompletion:
        """Buyer confirms the sale; completes the transaction and the listing.

        Raises:
            NotFoundError: If the transaction doesn't exist
            ForbiddenError: If caller is not the buyer
            InvalidStateTransitionError: If the seller has not marked it complete
        """
        await self.ensure_store()
        lock = await self.subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            transaction = await self.subject.load(unit, transaction_id)
            if buyer_id != transaction.buyer_id:
                raise ForbiddenError("Only the buyer can confirm receipt")
            if transaction.status != TransactionStatus.PENDING_COMPLETION:
                raise InvalidStateTransitionError(
                    f"Cannot confirm a transaction that is {transaction.status.value}",
                    current=transaction.status.value
                )
            result = await self.coordinator.request_in_unit(unit, self.subject, transaction, buyer_id)
            completion = await self._completion(unit, transaction_id, result.outcome, result.finalization)

        await self.emit(unit.events)
        logger.info(f"Listing transaction {transaction_id} completed")
        return completion

    async def reject_completion(self, transaction_id: UUID, buyer_id: str) -> ListingCompletion:
        """Buyer disputes the seller's completion claim; back to reserved.

        Raises:
            NotFoundError: If the transaction doesn't exist
            ForbiddenError: If caller is not the buyer
            InvalidStateTransitionError: If nothing is pending
        """
        await self.ensure_store()
        lock = await self.subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            transaction = await self.subject.load(unit, transaction_id)
            if buyer_id != transaction.buyer_id:
                raise ForbiddenError("Only the buyer can reject a completion")
            state = await self.coordinator.reject_in_unit(unit, self.subject, transaction, buyer_id)
            completion = await self._completion(unit, transaction_id, None, state)

        await self.emit(unit.events)
        return completion

    async def get_listing_transaction(self, listing_id: UUID, viewer: str) -> ListingTransaction:
        """Active transaction of a listing, else the most recent one.

        Raises:
            NotFoundError: If there is none, or viewer is not one of its parties
        """
        await self.ensure_store()
        async with self.store.unit() as unit:
            transaction = await unit.get_active_listing_transaction(listing_id)
            if not transaction:
                transaction = await unit.get_latest_listing_transaction(listing_id)
        if not transaction or viewer not in (transaction.seller_id, transaction.buyer_id):
            raise NotFoundError(f"No transaction for listing {listing_id}")
        return transaction

    async def list_candidates(self, listing_id: UUID, seller_id: str) -> List[str]:
        """Buyers the seller may reserve for: everyone who messaged about the listing.

        Raises:
            NotFoundError: If listing doesn't exist
            ForbiddenError: If caller is not the seller
        """
        await self.ensure_store()
        async with self.store.unit() as unit:
            listing = await self._load_listing(unit, listing_id)
            self._require_seller(listing, seller_id)
            participants = await unit.list_participants(listing_id)
        return [p for p in participants if p != listing.seller_id]

    async def get_completion_state(self, transaction_id: UUID, viewer: str) -> FinalizationState:
        return await self.coordinator.get_state(TransactionKind.LISTING, transaction_id, viewer)

    async def _load_listing(self, unit: Unit, listing_id: UUID) -> Listing:
        listing = await unit.get_listing(listing_id)
        if not listing:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    def _require_seller(self, listing: Listing, actor: str) -> None:
        if actor != listing.seller_id:
            raise ForbiddenError("Only the seller can manage this listing")

    async def _release(
        self,
        unit: Unit,
        listing: Listing,
        transaction: ListingTransaction,
        actor: str,
        reason: str
    ) -> Listing:
        """Cancel a reserved transaction, archive it and reopen the listing."""
        transaction = await unit.update_listing_transaction(
            transaction,
            status=TransactionStatus.CANCELLED,
            cancelled_at=datetime.now(timezone.utc),
            cancellation_reason=reason
        )
        listing = await unit.update_listing(listing, status=ListingStatus.ACTIVE)
        await self.archiver.archive(
            unit,
            transaction,
            HistoryOutcome.CANCELLED,
            metadata={'listing_id': str(listing.id), 'reason': reason, 'actor': actor}
        )
        self._add_event(
            unit, LISTING_UNRESERVED, transaction, actor, TransactionStatus.CANCELLED,
            payload={'reason': reason}
        )
        return listing

    async def _completion(self, unit: Unit, transaction_id: UUID, outcome, state) -> ListingCompletion:
        transaction = await unit.get_listing_transaction(transaction_id)
        return ListingCompletion(outcome=outcome, transaction=transaction, finalization=state)

    def _add_event(self, unit, name, transaction, actor, status, payload=None):
        unit.events.add(
            name,
            transaction_kind=TransactionKind.LISTING,
            transaction_id=transaction.id,
            actor=actor,
            state=status.value,
            participants=[transaction.seller_id, transaction.buyer_id],
            listing_id=transaction.listing_id,
            payload=payload or {}
        )


__all__ = ['ReservationManager', 'ListingSubject']
