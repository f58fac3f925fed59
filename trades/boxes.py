"""Proposal boxes: inbox, outbox and history views over stored proposals.

Read-only projections; nothing here changes state.
"""
from enum import Enum
from typing import List, Optional

from core.models import HistoryRecord, Proposal, ProposalStatus, TransactionKind
from database import get_store
from database.store import Store


class BoxView(str, Enum):
    ACTIVE = "active"
    REJECTED = "rejected"


VIEW_FILTERS = {
    # Live proposals, not yet finalized
    BoxView.ACTIVE: {
        'statuses': [ProposalStatus.PENDING, ProposalStatus.ACCEPTED],
        'archived': False,
    },
    BoxView.REJECTED: {
        'statuses': [ProposalStatus.REJECTED, ProposalStatus.CANCELLED, ProposalStatus.EXPIRED],
        'archived': None,
    },
}


class ProposalBoxes:
    """Query layer for a user's proposal boxes."""

    def __init__(self, store: Optional[Store] = None, page_size: int = 20) -> None:
        self.store = store
        self.page_size = page_size

    async def ensure_store(self):
        if not self.store:
            self.store = await get_store()

    async def inbox(
        self,
        user_id: str,
        view: BoxView = BoxView.ACTIVE,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Proposal]:
        """Proposals received by user_id, newest first."""
        return await self._box(dict(to_user=user_id), view, limit, offset)

    async def outbox(
        self,
        user_id: str,
        view: BoxView = BoxView.ACTIVE,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Proposal]:
        """Proposals sent by user_id, newest first."""
        return await self._box(dict(from_user=user_id), view, limit, offset)

    async def history(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[HistoryRecord]:
        """Archived trades user_id took part in, newest first."""
        await self.ensure_store()
        async with self.store.unit() as unit:
            return await unit.list_history(
                user_id=user_id,
                kind=TransactionKind.TRADE,
                limit=limit or self.page_size,
                offset=offset
            )

    async def _box(self, party: dict, view: BoxView, limit: Optional[int], offset: int) -> List[Proposal]:
        await self.ensure_store()
        filters = VIEW_FILTERS[BoxView(view)]
        async with self.store.unit() as unit:
            return await unit.list_proposals(
                limit=limit or self.page_size,
                offset=offset,
                **party,
                **filters
            )
