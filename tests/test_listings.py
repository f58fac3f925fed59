"""Tests for listing reservations and the sale completion handshake."""

import uuid

import pytest

from chat import listing_conversation
from conftest import ALICE, BOB, CAROL, DAVE
from core.errors import ForbiddenError, InvalidStateTransitionError, NotFoundError
from core.models import (
    FinalizationOutcome,
    HandshakeState,
    HistoryOutcome,
    ListingStatus,
    TransactionKind,
    TransactionStatus,
)


@pytest.mark.asyncio
async def test_create_listing(services):
    listing = await services.reservations.create_listing(ALICE, "  Holo sticker  ", collection_id=3)

    assert listing.status == ListingStatus.ACTIVE
    assert listing.title == "Holo sticker"
    assert listing.collection_id == 3
    assert (await services.reservations.get_listing(listing.id)).id == listing.id


@pytest.mark.asyncio
async def test_create_listing_requires_title(services):
    with pytest.raises(ValueError):
        await services.reservations.create_listing(ALICE, "   ")


@pytest.mark.asyncio
async def test_unknown_listing(services):
    with pytest.raises(NotFoundError):
        await services.reservations.get_listing(uuid.uuid4())


@pytest.mark.asyncio
async def test_reserve_is_exclusive(services, listing):
    """One buyer at a time; the listing reopens to everyone once released."""
    reservations = services.reservations

    transaction = await reservations.reserve(listing.id, ALICE, BOB, note="Pickup Friday")
    assert transaction.status == TransactionStatus.RESERVED
    assert transaction.buyer_id == BOB
    assert transaction.note == "Pickup Friday"
    assert (await reservations.get_listing(listing.id)).status == ListingStatus.RESERVED

    with pytest.raises(InvalidStateTransitionError) as exc:
        await reservations.reserve(listing.id, ALICE, CAROL)
    assert exc.value.current == "reserved"

    reopened = await reservations.unreserve(listing.id, ALICE)
    assert reopened.status == ListingStatus.ACTIVE

    transaction = await reservations.reserve(listing.id, ALICE, CAROL)
    assert transaction.buyer_id == CAROL


@pytest.mark.asyncio
async def test_reserve_requires_seller(services, listing):
    with pytest.raises(ForbiddenError):
        await services.reservations.reserve(listing.id, BOB, CAROL)


@pytest.mark.asyncio
async def test_reserve_requires_participant(services, listing):
    with pytest.raises(ForbiddenError):
        await services.reservations.reserve(listing.id, ALICE, "eve")


@pytest.mark.asyncio
async def test_seller_cannot_reserve_for_self(services, listing, store):
    store.participants.add_participant(listing.id, ALICE)

    with pytest.raises(ForbiddenError):
        await services.reservations.reserve(listing.id, ALICE, ALICE)


@pytest.mark.asyncio
async def test_buyer_message_makes_candidate(services):
    reservations = services.reservations
    listing = await reservations.create_listing(ALICE, "Holo sticker 12")

    with pytest.raises(ForbiddenError):
        await reservations.reserve(listing.id, ALICE, BOB)

    await services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "Still available?")
    await services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "I can pick it up today")
    # The seller writing first does not make Carol a candidate
    await services.chat.post_message(listing_conversation(listing.id, CAROL), ALICE, "Interested?")

    assert await reservations.list_candidates(listing.id, ALICE) == [BOB]
    with pytest.raises(ForbiddenError):
        await reservations.reserve(listing.id, ALICE, CAROL)

    transaction = await reservations.reserve(listing.id, ALICE, BOB)
    assert transaction.buyer_id == BOB
    assert transaction.status == TransactionStatus.RESERVED


@pytest.mark.asyncio
async def test_list_candidates(services, listing):
    assert await services.reservations.list_candidates(listing.id, ALICE) == [BOB, CAROL, DAVE]

    with pytest.raises(ForbiddenError):
        await services.reservations.list_candidates(listing.id, BOB)
    with pytest.raises(NotFoundError):
        await services.reservations.list_candidates(uuid.uuid4(), ALICE)


@pytest.mark.asyncio
async def test_unreserve_archives_cancelled(services, store, reserved):
    await services.reservations.unreserve(reserved.listing_id, ALICE)

    record = await services.archiver.get_record(TransactionKind.LISTING, reserved.id)
    assert record.outcome == HistoryOutcome.CANCELLED
    assert record.participants == [ALICE, BOB]
    assert record.metadata['reason'] == "unreserved"
    assert record.cancelled_at is not None

    transaction = store.listing_transactions[reserved.id]
    assert transaction.status == TransactionStatus.CANCELLED
    assert transaction.archived_at is not None


@pytest.mark.asyncio
async def test_unreserve_without_reservation(services, listing):
    with pytest.raises(InvalidStateTransitionError) as exc:
        await services.reservations.unreserve(listing.id, ALICE)
    assert exc.value.current == "active"


@pytest.mark.asyncio
async def test_sale_completion(services, store, reserved):
    reservations = services.reservations

    marked = await reservations.mark_complete(reserved.id, ALICE)
    assert marked.outcome == FinalizationOutcome.PENDING
    assert marked.transaction.status == TransactionStatus.PENDING_COMPLETION
    assert marked.finalization.state == HandshakeState.PENDING
    assert marked.finalization.requester == ALICE

    confirmed = await reservations.confirm_receipt(reserved.id, BOB)
    assert confirmed.outcome == FinalizationOutcome.COMPLETED
    assert confirmed.transaction.status == TransactionStatus.COMPLETED
    assert confirmed.transaction.completed_at is not None
    assert confirmed.finalization.state == HandshakeState.COMPLETED

    listing = await reservations.get_listing(reserved.listing_id)
    assert listing.status == ListingStatus.COMPLETED

    record = await services.archiver.get_record(TransactionKind.LISTING, reserved.id, viewer=BOB)
    assert record.outcome == HistoryOutcome.COMPLETED
    assert record.metadata['note'] == "Pickup Friday"


@pytest.mark.asyncio
async def test_mark_complete_twice(services, store, reserved):
    await services.reservations.mark_complete(reserved.id, ALICE)
    again = await services.reservations.mark_complete(reserved.id, ALICE)

    assert again.outcome == FinalizationOutcome.ALREADY_REQUESTED
    assert again.transaction.status == TransactionStatus.PENDING_COMPLETION
    assert store.history == {}


@pytest.mark.asyncio
async def test_only_seller_marks_complete(services, reserved):
    with pytest.raises(ForbiddenError):
        await services.reservations.mark_complete(reserved.id, BOB)


@pytest.mark.asyncio
async def test_only_buyer_confirms(services, reserved):
    await services.reservations.mark_complete(reserved.id, ALICE)

    with pytest.raises(ForbiddenError):
        await services.reservations.confirm_receipt(reserved.id, ALICE)
    with pytest.raises(ForbiddenError):
        await services.reservations.confirm_receipt(reserved.id, CAROL)


@pytest.mark.asyncio
async def test_confirm_before_mark_complete(services, reserved):
    with pytest.raises(InvalidStateTransitionError) as exc:
        await services.reservations.confirm_receipt(reserved.id, BOB)
    assert exc.value.current == "reserved"


@pytest.mark.asyncio
async def test_confirm_after_completion(services, reserved):
    await services.reservations.mark_complete(reserved.id, ALICE)
    await services.reservations.confirm_receipt(reserved.id, BOB)

    with pytest.raises(InvalidStateTransitionError) as exc:
        await services.reservations.confirm_receipt(reserved.id, BOB)
    assert exc.value.current == "completed"


@pytest.mark.asyncio
async def test_reject_completion_returns_to_reserved(services, reserved):
    reservations = services.reservations
    await reservations.mark_complete(reserved.id, ALICE)

    rejected = await reservations.reject_completion(reserved.id, BOB)
    assert rejected.outcome is None
    assert rejected.transaction.status == TransactionStatus.RESERVED
    assert rejected.finalization.state == HandshakeState.NONE

    marked = await reservations.mark_complete(reserved.id, ALICE)
    assert marked.outcome == FinalizationOutcome.PENDING


@pytest.mark.asyncio
async def test_reject_completion_needs_pending(services, reserved):
    with pytest.raises(InvalidStateTransitionError):
        await services.reservations.reject_completion(reserved.id, BOB)


@pytest.mark.asyncio
async def test_seller_cannot_reject_completion(services, reserved):
    await services.reservations.mark_complete(reserved.id, ALICE)

    with pytest.raises(ForbiddenError):
        await services.reservations.reject_completion(reserved.id, ALICE)


@pytest.mark.asyncio
async def test_no_release_during_pending_completion(services, reserved):
    await services.reservations.mark_complete(reserved.id, ALICE)

    with pytest.raises(InvalidStateTransitionError) as exc:
        await services.reservations.unreserve(reserved.listing_id, ALICE)
    assert exc.value.current == "pending_completion"

    with pytest.raises(InvalidStateTransitionError):
        await services.reservations.cancel_transaction(reserved.id, BOB)


@pytest.mark.asyncio
async def test_buyer_cancels_reservation(services, reserved):
    cancelled = await services.reservations.cancel_transaction(reserved.id, BOB, reason="Changed my mind")

    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.cancellation_reason == "Changed my mind"
    assert (await services.reservations.get_listing(reserved.listing_id)).status == ListingStatus.ACTIVE

    record = await services.archiver.get_record(TransactionKind.LISTING, reserved.id)
    assert record.metadata['actor'] == BOB


@pytest.mark.asyncio
async def test_outsider_cannot_cancel(services, reserved):
    with pytest.raises(ForbiddenError):
        await services.reservations.cancel_transaction(reserved.id, CAROL)


@pytest.mark.asyncio
async def test_remove_listing(services, listing):
    removed = await services.reservations.remove_listing(listing.id, ALICE)
    assert removed.status == ListingStatus.REMOVED

    with pytest.raises(InvalidStateTransitionError):
        await services.reservations.reserve(listing.id, ALICE, BOB)


@pytest.mark.asyncio
async def test_remove_reserved_listing(services, reserved):
    with pytest.raises(InvalidStateTransitionError):
        await services.reservations.remove_listing(reserved.listing_id, ALICE)


@pytest.mark.asyncio
async def test_remove_requires_seller(services, listing):
    with pytest.raises(ForbiddenError):
        await services.reservations.remove_listing(listing.id, BOB)


@pytest.mark.asyncio
async def test_listing_transaction_visibility(services, reserved):
    reservations = services.reservations

    for viewer in (ALICE, BOB):
        transaction = await reservations.get_listing_transaction(reserved.listing_id, viewer)
        assert transaction.id == reserved.id

    with pytest.raises(NotFoundError):
        await reservations.get_listing_transaction(reserved.listing_id, CAROL)


@pytest.mark.asyncio
async def test_latest_transaction_after_release(services, reserved):
    """A reopened listing still shows its last sale attempt to those involved."""
    await services.reservations.unreserve(reserved.listing_id, ALICE)

    transaction = await services.reservations.get_listing_transaction(reserved.listing_id, BOB)
    assert transaction.id == reserved.id
    assert transaction.status == TransactionStatus.CANCELLED

    with pytest.raises(NotFoundError):
        await services.reservations.get_listing_transaction(reserved.listing_id, DAVE)


@pytest.mark.asyncio
async def test_completion_state_hidden_from_outsiders(services, reserved):
    state = await services.reservations.get_completion_state(reserved.id, BOB)
    assert state.state == HandshakeState.NONE

    with pytest.raises(NotFoundError):
        await services.reservations.get_completion_state(reserved.id, CAROL)
