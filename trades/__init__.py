"""Trades module for managing sticker trade proposals.

This module handles proposal creation, responses and finalization.
It ensures proposers own what they offer, re-validates both sides'
holdings at accept time and archives every terminal outcome.
"""
import logging
from typing import Iterable, Optional, Union
from uuid import UUID

from core.errors import (
    ForbiddenError,
    InsufficientQuantityError,
    InvalidProposalError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleOfferError,
)
from core.events import PROPOSAL_ACCEPTED, PROPOSAL_CANCELLED, PROPOSAL_REJECTED
from core.models import (
    FinalizationResult,
    FinalizationState,
    HistoryOutcome,
    Proposal,
    ProposalAction,
    ProposalDetail,
    ProposalItem,
    ProposalStatus,
    TransactionKind,
)
from database import get_store
from database.store import Store, Unit
from finalization import FinalizationCoordinator
from history import HistoryArchiver
from .boxes import BoxView, ProposalBoxes
from .ledger import ItemLedger
from .subject import TradeSubject

logger = logging.getLogger(__name__)

# Status and event produced by each response
RESPONSES = {
    ProposalAction.ACCEPT: (ProposalStatus.ACCEPTED, PROPOSAL_ACCEPTED),
    ProposalAction.REJECT: (ProposalStatus.REJECTED, PROPOSAL_REJECTED),
    ProposalAction.CANCEL: (ProposalStatus.CANCELLED, PROPOSAL_CANCELLED),
}


class ProposalManager:
    """Manages trade proposals and their state transitions."""

    def __init__(
        self,
        store: Optional[Store] = None,
        coordinator: Optional[FinalizationCoordinator] = None,
        archiver: Optional[HistoryArchiver] = None,
        emitter=None
    ) -> None:
        """Initialize proposal manager.

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
        self.coordinator.register(TradeSubject(self.archiver))

    async def ensure_store(self):
        """Ensure we have a settlement store."""
        if not self.store:
            self.store = await get_store()

    async def emit(self, events) -> None:
        if self.emitter and len(events):
            await self.emitter.emit(events)

    async def create_proposal(
        self,
        from_user: str,
        to_user: str,
        items: Union[ItemLedger, Iterable[ProposalItem]],
        message: Optional[str] = None,
        collection_id: Optional[int] = None
    ) -> Proposal:
        """Create a new pending trade proposal.

        Args:
            from_user: Proposer
            to_user: Recipient
            items: Offer and request lines
            message: Optional note to the recipient
            collection_id: Optional collection the stickers belong to

        Returns:
            The pending proposal

        Raises:
            InvalidProposalError: If the parties or the items are invalid
            InsufficientQuantityError: If from_user does not own an offered quantity
            ForbiddenError: If either party ignores the other
        """
        await self.ensure_store()

        if from_user == to_user:
            raise InvalidProposalError("Cannot propose a trade to yourself")

        ledger = items if isinstance(items, ItemLedger) else ItemLedger(items)

        async with self.store.unit() as unit:
            if await unit.is_blocked(from_user, to_user) or await unit.is_blocked(to_user, from_user):
                raise ForbiddenError(f"{from_user} cannot propose a trade to {to_user}")

            for sticker_id, quantity in ledger.offered_quantities().items():
                available = await unit.owned_quantity(from_user, sticker_id)
                if available < quantity:
                    raise InsufficientQuantityError(sticker_id, available, quantity)

            proposal = await unit.insert_proposal(
                from_user=from_user,
                to_user=to_user,
                items=ledger.items,
                collection_id=collection_id,
                message=message
            )

        logger.info(
            f"Created proposal {proposal.id} from {from_user} to {to_user} "
            f"with {len(ledger)} items"
        )
        return proposal

    async def respond(
        self,
        proposal_id: UUID,
        actor: str,
        action: ProposalAction
    ) -> Proposal:
        """Accept, reject or cancel a pending proposal.

        accept and reject belong to the recipient, cancel to the proposer.

        Returns:
            The proposal in its new status

        Raises:
            NotFoundError: If the proposal does not exist
            ForbiddenError: If actor does not hold the role the action needs
            InvalidStateTransitionError: If the proposal is no longer pending
            StaleOfferError: On accept, if either side no longer holds its items
        """
        await self.ensure_store()
        action = ProposalAction(action)

        async with self.store.unit(('proposals', proposal_id)) as unit:
            proposal = await unit.get_proposal(proposal_id)
            if not proposal:
                raise NotFoundError(f"Proposal {proposal_id} not found")

            if action == ProposalAction.CANCEL:
                if actor != proposal.from_user:
                    raise ForbiddenError("Only the proposer can cancel a proposal")
            elif actor != proposal.to_user:
                raise ForbiddenError(f"Only the recipient can {action.value} a proposal")

            if proposal.status != ProposalStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Cannot {action.value} a proposal that is {proposal.status.value}",
                    current=proposal.status.value
                )

            if action == ProposalAction.ACCEPT:
                items = await unit.get_proposal_items(proposal_id)
                await self._check_holdings(unit, proposal, ItemLedger(items))

            status, event = RESPONSES[action]
            proposal = await unit.update_proposal(proposal, status=status)

            if action != ProposalAction.ACCEPT:
                await self.archiver.archive(
                    unit,
                    proposal,
                    HistoryOutcome.CANCELLED,
                    metadata={'action': action.value, 'actor': actor}
                )

            unit.events.add(
                event,
                transaction_kind=TransactionKind.TRADE,
                transaction_id=proposal.id,
                actor=actor,
                state=status.value,
                participants=[proposal.from_user, proposal.to_user]
            )

        await self.emit(unit.events)
        logger.info(f"{actor} moved proposal {proposal_id} to {status.value}")
        return await self._reload(proposal_id)

    async def _check_holdings(self, unit: Unit, proposal: Proposal, ledger: ItemLedger) -> None:
        """Raise StaleOfferError if either side can no longer deliver."""
        shortfalls = []
        sides = (
            (proposal.from_user, ledger.offered_quantities()),
            (proposal.to_user, ledger.requested_quantities()),
        )
        for user_id, quantities in sides:
            for sticker_id, required in quantities.items():
                available = await unit.owned_quantity(user_id, sticker_id)
                if available < required:
                    shortfalls.append({
                        'user_id': user_id,
                        'sticker_id': sticker_id,
                        'available': available,
                        'required': required,
                    })
        if shortfalls:
            logger.warning(f"Stale offer on proposal {proposal.id}: {shortfalls}")
            raise StaleOfferError(shortfalls)

    async def _reload(self, proposal_id: UUID) -> Proposal:
        async with self.store.unit() as unit:
            return await unit.get_proposal(proposal_id)

    async def get_proposal(self, proposal_id: UUID, viewer: str) -> Proposal:
        """Get a proposal visible to viewer.

        Raises:
            NotFoundError: If it does not exist or viewer is not one of its parties
        """
        await self.ensure_store()
        async with self.store.unit() as unit:
            proposal = await unit.get_proposal(proposal_id)
        if not proposal or viewer not in (proposal.from_user, proposal.to_user):
            raise NotFoundError(f"Proposal {proposal_id} not found")
        return proposal

    async def get_proposal_detail(self, proposal_id: UUID, viewer: str) -> ProposalDetail:
        """Get a proposal with its items and finalization state."""
        proposal = await self.get_proposal(proposal_id, viewer)
        async with self.store.unit() as unit:
            items = await unit.get_proposal_items(proposal_id)
            state = await self.coordinator.state_in_unit(unit, TransactionKind.TRADE, proposal_id)
        return ProposalDetail(proposal=proposal, items=items, finalization=state)

    async def request_finalization(self, proposal_id: UUID, actor: str) -> FinalizationResult:
        """Declare an accepted trade done; see FinalizationCoordinator."""
        return await self.coordinator.request_finalization(
            TransactionKind.TRADE, proposal_id, actor
        )

    async def reject_finalization(self, proposal_id: UUID, actor: str) -> FinalizationState:
        """Decline the other party's finalization request."""
        return await self.coordinator.reject_finalization(
            TransactionKind.TRADE, proposal_id, actor
        )

    async def get_finalization_state(self, proposal_id: UUID, viewer: str) -> FinalizationState:
        return await self.coordinator.get_state(TransactionKind.TRADE, proposal_id, viewer)


__all__ = [
    'ProposalManager',
    'ProposalBoxes',
    'BoxView',
    'ItemLedger',
    'TradeSubject',
]
