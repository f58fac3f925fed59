"""Finalization subject for listing sales.

Only the seller opens the handshake (mark complete); the buyer confirms
receipt or rejects. The listing row serializes every step, so the lock
target is looked up from the transaction first.
"""
from datetime import datetime, timezone
from uuid import UUID

from core.errors import NotFoundError
from core.events import LISTING_COMPLETED
from core.models import HistoryOutcome, ListingStatus, TransactionKind, TransactionStatus
from finalization import FinalizationSubject


class ListingSubject(FinalizationSubject):
    kind = TransactionKind.LISTING
    symmetric = False

    def __init__(self, archiver):
        self.archiver = archiver

    async def lock_target(self, store, transaction_id: UUID):
        async with store.unit() as unit:
            transaction = await self.load(unit, transaction_id)
        return ('listings', transaction.listing_id)

    async def load(self, unit, transaction_id: UUID):
        transaction = await unit.get_listing_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Listing transaction {transaction_id} not found")
        return transaction

    def participants(self, transaction):
        return [transaction.seller_id, transaction.buyer_id]

    def initiators(self, transaction):
        return [transaction.seller_id]

    def is_finalizable(self, transaction):
        return transaction.status == TransactionStatus.RESERVED and transaction.archived_at is None

    def event_fields(self, transaction):
        return {'listing_id': transaction.listing_id}

    async def on_requested(self, unit, transaction, actor):
        await unit.update_listing_transaction(
            transaction, status=TransactionStatus.PENDING_COMPLETION
        )

    async def on_completed(self, unit, transaction, actor, finalization):
        transaction = await unit.get_listing_transaction(transaction.id)
        transaction = await unit.update_listing_transaction(
            transaction,
            status=TransactionStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc)
        )

        listing = await unit.get_listing(transaction.listing_id)
        await unit.update_listing(listing, status=ListingStatus.COMPLETED)

        await self.archiver.archive(
            unit,
            transaction,
            HistoryOutcome.COMPLETED,
            metadata={
                'listing_id': str(transaction.listing_id),
                'finalization_id': str(finalization.id),
                'note': transaction.note,
            }
        )

        unit.events.add(
            LISTING_COMPLETED,
            transaction_kind=self.kind,
            transaction_id=transaction.id,
            actor=actor,
            state=TransactionStatus.COMPLETED.value,
            participants=self.participants(transaction),
            listing_id=transaction.listing_id
        )

    async def on_rejected(self, unit, transaction, actor):
        transaction = await unit.get_listing_transaction(transaction.id)
        await unit.update_listing_transaction(transaction, status=TransactionStatus.RESERVED)
