"""Finalization subject for accepted trade proposals."""
from uuid import UUID

from core.errors import NotFoundError
from core.models import HistoryOutcome, ProposalStatus, TransactionKind
from finalization import FinalizationSubject


class TradeSubject(FinalizationSubject):
    """Either party of an accepted, unarchived proposal may start finalizing."""

    kind = TransactionKind.TRADE
    symmetric = True

    def __init__(self, archiver):
        self.archiver = archiver

    async def lock_target(self, store, transaction_id: UUID):
        return ('proposals', transaction_id)

    async def load(self, unit, transaction_id: UUID):
        proposal = await unit.get_proposal(transaction_id)
        if not proposal:
            raise NotFoundError(f"Proposal {transaction_id} not found")
        return proposal

    def participants(self, proposal):
        return [proposal.from_user, proposal.to_user]

    def is_finalizable(self, proposal):
        return proposal.status == ProposalStatus.ACCEPTED and proposal.archived_at is None

    async def on_completed(self, unit, proposal, actor, finalization):
        # Proposal stays accepted; the history record is the completion
        await self.archiver.archive(
            unit,
            proposal,
            HistoryOutcome.COMPLETED,
            metadata={
                'finalization_id': str(finalization.id),
                'requested_by': finalization.user_id,
                'confirmed_by': actor,
            }
        )
