"""Error taxonomy shared by the settlement engines.

Every error raised by an engine operation derives from SettlementError so the
API layer can map it to a response in one place. ConflictError is kept apart
from the business-rule errors: it means the caller lost a concurrency race and
should refetch state instead of resubmitting the same mutation.
"""
from typing import Dict, List, Optional


class SettlementError(Exception):
    """Base exception for settlement operations."""
    code = 'settlement_error'


class NotFoundError(SettlementError):
    """Raised when a proposal, listing or transaction id is unknown."""
    code = 'not_found'


class ForbiddenError(SettlementError):
    """Raised when the actor lacks the role required for the action."""
    code = 'forbidden'


class InvalidStateTransitionError(SettlementError):
    """Raised when an action is not legal from the current status."""
    code = 'invalid_state'

    def __init__(self, message: str, current: Optional[str] = None):
        self.current = current
        super().__init__(message)


class InvalidProposalError(SettlementError):
    """Raised when a proposal or its item ledger is malformed."""
    code = 'invalid_proposal'


class InsufficientQuantityError(InvalidProposalError):
    """Raised when the proposer does not own enough of an offered item."""
    code = 'insufficient_quantity'

    def __init__(self, sticker_id: int, available: int, requested: int):
        self.sticker_id = sticker_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient quantity for sticker {sticker_id}: "
            f"available {available}, requested {requested}"
        )


class StaleOfferError(SettlementError):
    """Raised at accept time when holdings changed since the proposal was made."""
    code = 'stale_offer'

    def __init__(self, shortfalls: List[Dict[str, object]]):
        self.shortfalls = shortfalls
        details = ', '.join(
            f"{s['user_id']} holds {s['available']} of sticker {s['sticker_id']} "
            f"(needs {s['required']})"
            for s in shortfalls
        )
        super().__init__(f"Offer is no longer valid: {details}")


class ConflictError(SettlementError):
    """Raised when a concurrent writer won the race for the same row."""
    code = 'conflict'


__all__ = [
    'SettlementError',
    'NotFoundError',
    'ForbiddenError',
    'InvalidStateTransitionError',
    'InvalidProposalError',
    'InsufficientQuantityError',
    'StaleOfferError',
    'ConflictError',
]
