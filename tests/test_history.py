"""Tests for the append-only history archive."""

import uuid

import pytest

from conftest import ALICE, BOB, CAROL
from core.errors import ConflictError, NotFoundError
from core.models import HistoryOutcome, ProposalAction, TransactionKind
from history import kind_of, participants_of


@pytest.mark.asyncio
async def test_archive_stamps_live_row(services, store, proposal):
    async with store.unit(('proposals', proposal.id)) as unit:
        record = await services.archiver.archive(
            unit, proposal, HistoryOutcome.CANCELLED, metadata={'reason': 'test'}
        )

    assert record.transaction_kind == TransactionKind.TRADE
    assert record.participants == [ALICE, BOB]
    assert record.metadata == {
        'participants': [ALICE, BOB],
        'final_status': 'pending',
        'reason': 'test',
    }
    assert record.cancelled_at is not None
    assert record.completed_at is None
    assert store.proposals[proposal.id].archived_at is not None


@pytest.mark.asyncio
async def test_archive_twice_conflicts(services, store, proposal):
    async with store.unit(('proposals', proposal.id)) as unit:
        await services.archiver.archive(unit, proposal, HistoryOutcome.CANCELLED)

    # Replaying the stale row and the fresh row both fail
    async with store.unit(('proposals', proposal.id)) as unit:
        with pytest.raises(ConflictError):
            await services.archiver.archive(unit, proposal, HistoryOutcome.COMPLETED)
        fresh = await unit.get_proposal(proposal.id)
        with pytest.raises(ConflictError):
            await services.archiver.archive(unit, fresh, HistoryOutcome.COMPLETED)

    assert len(store.history) == 1


@pytest.mark.asyncio
async def test_get_record(services, proposal):
    await services.proposals.respond(proposal.id, BOB, ProposalAction.REJECT)

    record = await services.archiver.get_record(TransactionKind.TRADE, proposal.id, viewer=ALICE)
    assert record.outcome == HistoryOutcome.CANCELLED
    assert record.metadata['final_status'] == 'rejected'

    with pytest.raises(NotFoundError):
        await services.archiver.get_record(TransactionKind.TRADE, proposal.id, viewer=CAROL)
    with pytest.raises(NotFoundError):
        await services.archiver.get_record(TransactionKind.TRADE, uuid.uuid4())


@pytest.mark.asyncio
async def test_list_for_user(services, store, accepted_trade, reserved):
    await services.proposals.request_finalization(accepted_trade.id, ALICE)
    await services.proposals.request_finalization(accepted_trade.id, BOB)
    await services.reservations.unreserve(reserved.listing_id, ALICE)

    records = await services.archiver.list_for_user(BOB)
    assert [r.transaction_kind for r in records] == [TransactionKind.LISTING, TransactionKind.TRADE]

    trades = await services.archiver.list_for_user(BOB, kind=TransactionKind.TRADE)
    assert [r.transaction_id for r in trades] == [accepted_trade.id]

    assert len(await services.archiver.list_for_user(ALICE, limit=1)) == 1
    assert await services.archiver.list_for_user(CAROL) == []


@pytest.mark.asyncio
async def test_row_helpers(proposal, reserved):
    assert participants_of(proposal) == [ALICE, BOB]
    assert kind_of(proposal) == TransactionKind.TRADE
    assert participants_of(reserved) == [ALICE, BOB]
    assert kind_of(reserved) == TransactionKind.LISTING
