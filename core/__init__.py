"""Shared types for the settlement engines.

This package holds:
- pydantic models and status enums for proposals, listings and handshakes
- the error taxonomy returned by every engine operation
- the state-transition event vocabulary
"""

from .errors import (
    SettlementError,
    NotFoundError,
    ForbiddenError,
    InvalidStateTransitionError,
    InvalidProposalError,
    InsufficientQuantityError,
    StaleOfferError,
    ConflictError,
)
from .events import Event, EventBuffer
from .models import (
    ProposalStatus,
    ProposalAction,
    ItemDirection,
    ListingStatus,
    TransactionStatus,
    TransactionKind,
    FinalizationStatus,
    FinalizationOutcome,
    HandshakeState,
    HistoryOutcome,
    Proposal,
    ProposalItem,
    ProposalDetail,
    Listing,
    ListingTransaction,
    Finalization,
    FinalizationState,
    FinalizationResult,
    ListingCompletion,
    HistoryRecord,
    Notification,
    ChatMessage,
)

__all__ = [
    'SettlementError',
    'NotFoundError',
    'ForbiddenError',
    'InvalidStateTransitionError',
    'InvalidProposalError',
    'InsufficientQuantityError',
    'StaleOfferError',
    'ConflictError',
    'Event',
    'EventBuffer',
    'ProposalStatus',
    'ProposalAction',
    'ItemDirection',
    'ListingStatus',
    'TransactionStatus',
    'TransactionKind',
    'FinalizationStatus',
    'FinalizationOutcome',
    'HandshakeState',
    'HistoryOutcome',
    'Proposal',
    'ProposalItem',
    'ProposalDetail',
    'Listing',
    'ListingTransaction',
    'Finalization',
    'FinalizationState',
    'FinalizationResult',
    'ListingCompletion',
    'HistoryRecord',
    'Notification',
    'ChatMessage',
]
