"""Tests for trade proposals."""

import uuid

import pytest

from conftest import ALICE, BOB, CAROL, OFFERED_STICKER, REQUESTED_STICKER, TRADE_ITEMS
from core.errors import (
    ForbiddenError,
    InsufficientQuantityError,
    InvalidProposalError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleOfferError,
)
from core.models import (
    FinalizationOutcome,
    HandshakeState,
    HistoryOutcome,
    ItemDirection,
    ProposalAction,
    ProposalItem,
    ProposalStatus,
    TransactionKind,
)
from trades import BoxView


@pytest.mark.asyncio
async def test_create_proposal(services, proposal):
    """A new proposal is pending and keeps its items."""
    assert proposal.status == ProposalStatus.PENDING
    assert proposal.from_user == ALICE
    assert proposal.to_user == BOB
    assert proposal.message == "Swap?"

    detail = await services.proposals.get_proposal_detail(proposal.id, BOB)
    assert {(i.sticker_id, i.direction.value, i.quantity) for i in detail.items} == {
        (OFFERED_STICKER, "offer", 1),
        (REQUESTED_STICKER, "request", 2),
    }
    assert detail.finalization.state == HandshakeState.NONE


@pytest.mark.asyncio
async def test_create_proposal_to_self(services):
    with pytest.raises(InvalidProposalError):
        await services.proposals.create_proposal(ALICE, ALICE, TRADE_ITEMS)


@pytest.mark.asyncio
async def test_create_proposal_insufficient_quantity(services, store):
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 0)

    with pytest.raises(InsufficientQuantityError) as exc:
        await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)

    assert exc.value.sticker_id == OFFERED_STICKER
    assert exc.value.available == 0
    assert exc.value.requested == 1
    assert store.proposals == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("blocker, blocked", [(ALICE, BOB), (BOB, ALICE)])
async def test_create_proposal_blocked_either_way(services, store, blocker, blocked):
    store.blocks.block(blocker, blocked)

    with pytest.raises(ForbiddenError):
        await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)


@pytest.mark.asyncio
async def test_accept(services, proposal, store):
    accepted = await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)

    assert accepted.status == ProposalStatus.ACCEPTED
    assert accepted.archived_at is None
    # Accepting is not a terminal outcome
    assert store.history == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("actor, action, status", [
    (BOB, ProposalAction.REJECT, ProposalStatus.REJECTED),
    (ALICE, ProposalAction.CANCEL, ProposalStatus.CANCELLED),
])
async def test_reject_and_cancel_archive(services, proposal, store, actor, action, status):
    result = await services.proposals.respond(proposal.id, actor, action)

    assert result.status == status
    assert result.archived_at is not None

    record = await services.archiver.get_record(TransactionKind.TRADE, proposal.id)
    assert record.outcome == HistoryOutcome.CANCELLED
    assert record.participants == [ALICE, BOB]
    assert record.metadata["final_status"] == status.value
    assert record.cancelled_at is not None


@pytest.mark.asyncio
async def test_unknown_proposal(services):
    with pytest.raises(NotFoundError):
        await services.proposals.respond(uuid.uuid4(), BOB, ProposalAction.ACCEPT)


async def _proposal_in_status(services, status):
    proposal = await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    if status == ProposalStatus.ACCEPTED:
        await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)
    elif status == ProposalStatus.REJECTED:
        await services.proposals.respond(proposal.id, BOB, ProposalAction.REJECT)
    elif status == ProposalStatus.CANCELLED:
        await services.proposals.respond(proposal.id, ALICE, ProposalAction.CANCEL)
    return proposal


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [
    ProposalStatus.PENDING,
    ProposalStatus.ACCEPTED,
    ProposalStatus.REJECTED,
    ProposalStatus.CANCELLED,
])
async def test_roles_enforced_in_every_status(services, status):
    """The proposer never accepts or rejects; the recipient never cancels."""
    proposal = await _proposal_in_status(services, status)

    for actor, action in [
        (ALICE, ProposalAction.ACCEPT),
        (ALICE, ProposalAction.REJECT),
        (BOB, ProposalAction.CANCEL),
        (CAROL, ProposalAction.ACCEPT),
    ]:
        with pytest.raises(ForbiddenError):
            await services.proposals.respond(proposal.id, actor, action)

    current = await services.proposals.get_proposal(proposal.id, ALICE)
    assert current.status == status


@pytest.mark.asyncio
async def test_respond_only_from_pending(services, accepted_trade):
    with pytest.raises(InvalidStateTransitionError) as exc:
        await services.proposals.respond(accepted_trade.id, BOB, ProposalAction.REJECT)
    assert exc.value.current == "accepted"

    with pytest.raises(InvalidStateTransitionError):
        await services.proposals.respond(accepted_trade.id, ALICE, ProposalAction.CANCEL)


@pytest.mark.asyncio
async def test_stale_offer_on_accept(services, proposal, store):
    """Holdings that shrank after creation block accept and leave the proposal pending."""
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 0)

    with pytest.raises(StaleOfferError) as exc:
        await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)

    assert exc.value.shortfalls == [{
        "user_id": ALICE,
        "sticker_id": OFFERED_STICKER,
        "available": 0,
        "required": 1,
    }]
    current = await services.proposals.get_proposal(proposal.id, BOB)
    assert current.status == ProposalStatus.PENDING

    # Restocking makes the same proposal acceptable again
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 1)
    accepted = await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)
    assert accepted.status == ProposalStatus.ACCEPTED


@pytest.mark.asyncio
async def test_stale_offer_on_requested_side(services, proposal, store):
    store.inventory.set_quantity(BOB, REQUESTED_STICKER, 1)

    with pytest.raises(StaleOfferError) as exc:
        await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)

    assert exc.value.shortfalls[0]["user_id"] == BOB
    assert exc.value.shortfalls[0]["required"] == 2


@pytest.mark.asyncio
async def test_proposal_hidden_from_outsiders(services, proposal):
    with pytest.raises(NotFoundError):
        await services.proposals.get_proposal(proposal.id, CAROL)
    with pytest.raises(NotFoundError):
        await services.proposals.get_proposal_detail(proposal.id, CAROL)


@pytest.mark.asyncio
async def test_full_trade_lifecycle(services, store, proposal):
    """create, accept, both sides finalize; exactly one completed record."""
    accepted = await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)
    assert accepted.status == ProposalStatus.ACCEPTED

    first = await services.proposals.request_finalization(proposal.id, ALICE)
    assert first.outcome == FinalizationOutcome.PENDING
    assert first.finalization.state == HandshakeState.PENDING
    assert first.finalization.requester == ALICE

    second = await services.proposals.request_finalization(proposal.id, BOB)
    assert second.outcome == FinalizationOutcome.COMPLETED
    assert second.requester == ALICE
    assert second.finalization.state == HandshakeState.COMPLETED

    completed = [r for r in store.history.values() if r.outcome == HistoryOutcome.COMPLETED]
    assert len(completed) == 1
    assert completed[0].transaction_id == proposal.id
    assert completed[0].metadata["confirmed_by"] == BOB

    # The proposal stays accepted but is now archived
    final = await services.proposals.get_proposal(proposal.id, ALICE)
    assert final.status == ProposalStatus.ACCEPTED
    assert final.archived_at is not None

    for actor in (ALICE, BOB):
        with pytest.raises(InvalidStateTransitionError):
            await services.proposals.request_finalization(proposal.id, actor)
    assert len(store.history) == 1


@pytest.mark.asyncio
async def test_rejection_reopens(services, store, accepted_trade):
    """A rejected request returns the handshake to none; either side may ask again."""
    await services.proposals.request_finalization(accepted_trade.id, ALICE)

    state = await services.proposals.reject_finalization(accepted_trade.id, BOB)
    assert state.state == HandshakeState.NONE

    current = await services.proposals.get_proposal(accepted_trade.id, ALICE)
    assert current.status == ProposalStatus.ACCEPTED

    again = await services.proposals.request_finalization(accepted_trade.id, ALICE)
    assert again.outcome == FinalizationOutcome.PENDING

    # The rejected attempt is kept for audit
    statuses = sorted(f.status.value for f in store.finalizations.values())
    assert statuses == ["pending", "rejected"]


@pytest.mark.asyncio
async def test_finalize_requires_accepted(services, proposal):
    with pytest.raises(InvalidStateTransitionError):
        await services.proposals.request_finalization(proposal.id, ALICE)


@pytest.mark.asyncio
async def test_finalize_rejected_proposal(services, proposal):
    await services.proposals.respond(proposal.id, BOB, ProposalAction.REJECT)
    with pytest.raises(InvalidStateTransitionError):
        await services.proposals.request_finalization(proposal.id, BOB)


@pytest.mark.asyncio
async def test_outsider_cannot_finalize(services, accepted_trade):
    with pytest.raises(ForbiddenError):
        await services.proposals.request_finalization(accepted_trade.id, CAROL)


@pytest.mark.asyncio
async def test_proposal_boxes(services, store):
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 5)
    store.inventory.set_quantity(CAROL, 9, 1)

    pending = await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    rejected = await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    await services.proposals.respond(rejected.id, BOB, "reject")
    incoming = await services.proposals.create_proposal(
        CAROL, ALICE, [ProposalItem(sticker_id=9, direction=ItemDirection.OFFER, quantity=1)]
    )

    outbox = await services.boxes.outbox(ALICE)
    assert [p.id for p in outbox] == [pending.id]

    outbox_rejected = await services.boxes.outbox(ALICE, view=BoxView.REJECTED)
    assert [p.id for p in outbox_rejected] == [rejected.id]

    inbox = await services.boxes.inbox(ALICE)
    assert [p.id for p in inbox] == [incoming.id]

    bob_inbox = await services.boxes.inbox(BOB)
    assert [p.id for p in bob_inbox] == [pending.id]

    history = await services.boxes.history(BOB)
    assert [r.transaction_id for r in history] == [rejected.id]
    assert await services.boxes.history(CAROL) == []


@pytest.mark.asyncio
async def test_completed_trade_leaves_active_box(services, accepted_trade):
    assert [p.id for p in await services.boxes.inbox(BOB)] == [accepted_trade.id]

    await services.proposals.request_finalization(accepted_trade.id, BOB)
    await services.proposals.request_finalization(accepted_trade.id, ALICE)

    assert await services.boxes.inbox(BOB) == []
    history = await services.boxes.history(ALICE)
    assert history[0].outcome == HistoryOutcome.COMPLETED


@pytest.mark.asyncio
async def test_box_pagination(services, store):
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 10)
    created = [await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS) for _ in range(3)]

    first_page = await services.boxes.outbox(ALICE, limit=2)
    second_page = await services.boxes.outbox(ALICE, limit=2, offset=2)

    assert len(first_page) == 2
    assert len(second_page) == 1
    assert {p.id for p in first_page + second_page} == {p.id for p in created}
