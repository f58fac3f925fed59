"""Translate settlement errors into HTTP responses."""
import logging

from fastapi import HTTPException, status

from core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidProposalError,
    InvalidStateTransitionError,
    NotFoundError,
    SettlementError,
    StaleOfferError,
)
from database.exceptions import DatabaseError

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    StaleOfferError: status.HTTP_409_CONFLICT,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidProposalError: status.HTTP_400_BAD_REQUEST,
}


def http_error(e: Exception) -> HTTPException:
    """Build the HTTPException for an error raised by an engine call."""
    if isinstance(e, SettlementError):
        code = next(
            (c for cls, c in STATUS_CODES.items() if isinstance(e, cls)),
            status.HTTP_400_BAD_REQUEST
        )
        detail = {'code': e.code, 'message': str(e)}
        if isinstance(e, InvalidStateTransitionError) and e.current:
            detail['current'] = e.current
        if isinstance(e, StaleOfferError):
            detail['shortfalls'] = e.shortfalls
        if isinstance(e, ConflictError):
            # Caller should reload state rather than resubmit
            detail['retry'] = 'refetch'
        return HTTPException(status_code=code, detail=detail)

    if isinstance(e, ValueError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={'code': 'invalid_request', 'message': str(e)}
        )

    if isinstance(e, DatabaseError):
        logger.error(f"Database error: {e}")
    else:
        logger.exception(f"Unexpected error: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={'code': 'internal_error', 'message': 'Internal server error'}
    )
