"""History module for archiving terminal transaction outcomes.

Every proposal or listing transaction that reaches a terminal state gets
exactly one immutable history record. The record is written in the same
unit of work as the terminal transition, and the live row is stamped with
archived_at so nothing mutates it afterwards.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from core.errors import ConflictError, NotFoundError
from core.models import (
    HistoryOutcome,
    HistoryRecord,
    ListingTransaction,
    Proposal,
    TransactionKind,
)
from database import get_store
from database.store import Store, Unit

logger = logging.getLogger(__name__)

LiveRow = Union[Proposal, ListingTransaction]


def participants_of(row: LiveRow) -> List[str]:
    """The two parties of a live row, initiator first."""
    if isinstance(row, Proposal):
        return [row.from_user, row.to_user]
    return [row.seller_id, row.buyer_id]


def kind_of(row: LiveRow) -> TransactionKind:
    if isinstance(row, Proposal):
        return TransactionKind.TRADE
    return TransactionKind.LISTING


class HistoryArchiver:
    """Writes and reads append-only history records."""

    def __init__(self, store: Optional[Store] = None) -> None:
        """Initialize history archiver.

        Args:
            store: Optional settlement store. If not provided, will get from database module.
        """
        self.store = store

    async def ensure_store(self):
        """Ensure we have a settlement store."""
        if not self.store:
            self.store = await get_store()

    async def archive(
        self,
        unit: Unit,
        row: LiveRow,
        outcome: HistoryOutcome,
        metadata: Optional[Dict[str, Any]] = None
    ) -> HistoryRecord:
        """Archive a terminal proposal or listing transaction.

        Must be called inside the unit that performed the terminal transition.

        Args:
            unit: Open unit of work holding the transaction's lock
            row: Live row as last read or written in this unit
            outcome: completed or cancelled
            metadata: Extra facts to keep (final status, reason, ...)

        Returns:
            The new history record

        Raises:
            ConflictError: If the transaction was already archived
        """
        kind = kind_of(row)
        if row.archived_at is not None:
            raise ConflictError(f"{kind.value} {row.id} is already archived")

        now = datetime.now(timezone.utc)
        participants = participants_of(row)
        details = {
            'participants': participants,
            'final_status': row.status.value,
        }
        details.update(metadata or {})

        record = await unit.insert_history(
            kind=kind,
            transaction_id=row.id,
            outcome=outcome,
            participants=participants,
            completed_at=now if outcome == HistoryOutcome.COMPLETED else None,
            cancelled_at=now if outcome == HistoryOutcome.CANCELLED else None,
            metadata=details
        )

        if kind == TransactionKind.TRADE:
            await unit.update_proposal(row, archived_at=now)
        else:
            await unit.update_listing_transaction(row, archived_at=now)

        logger.info(f"Archived {kind.value} {row.id} as {outcome.value}")
        return record

    async def get_record(
        self,
        kind: TransactionKind,
        transaction_id: UUID,
        viewer: Optional[str] = None
    ) -> HistoryRecord:
        """Get the history record of one transaction.

        Raises:
            NotFoundError: If there is no record, or viewer is not a participant
        """
        await self.ensure_store()
        async with self.store.unit() as unit:
            record = await unit.get_history(kind, transaction_id)
        if not record or (viewer is not None and viewer not in record.participants):
            raise NotFoundError(f"No history for {kind.value} {transaction_id}")
        return record

    async def list_for_user(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[HistoryRecord]:
        """List history records the user took part in, newest first."""
        await self.ensure_store()
        async with self.store.unit() as unit:
            return await unit.list_history(user_id=user_id, kind=kind, limit=limit, offset=offset)


__all__ = ['HistoryArchiver', 'participants_of', 'kind_of']
