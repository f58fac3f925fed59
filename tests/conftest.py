"""Shared fixtures: an in-memory store and the engines wired onto it."""

import pytest_asyncio

from api.deps import build_services
from core.models import ItemDirection, ProposalAction, ProposalItem
from database import MemoryStore

ALICE = "alice"
BOB = "bob"
CAROL = "carol"
DAVE = "dave"

# Alice offers sticker 1 x1 and asks Bob for sticker 2 x2
OFFERED_STICKER = 1
REQUESTED_STICKER = 2
TRADE_ITEMS = [
    ProposalItem(sticker_id=OFFERED_STICKER, direction=ItemDirection.OFFER, quantity=1),
    ProposalItem(sticker_id=REQUESTED_STICKER, direction=ItemDirection.REQUEST, quantity=2),
]


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory store with both sides of the sample trade in stock."""
    store = MemoryStore(lock_timeout=1.0)
    store.inventory.set_quantity(ALICE, OFFERED_STICKER, 1)
    store.inventory.set_quantity(BOB, REQUESTED_STICKER, 2)
    return store


@pytest_asyncio.fixture
async def services(store):
    return build_services(store)


@pytest_asyncio.fixture
async def proposal(services):
    """Pending proposal from Alice to Bob."""
    return await services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS, message="Swap?")


@pytest_asyncio.fixture
async def accepted_trade(services, proposal):
    """Proposal accepted by Bob, ready for finalization."""
    return await services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)


@pytest_asyncio.fixture
async def listing(services, store):
    """Active listing by Alice with Bob, Carol and Dave as interested buyers."""
    listing = await services.reservations.create_listing(ALICE, "Shiny sticker 7")
    for buyer in (BOB, CAROL, DAVE):
        store.participants.add_participant(listing.id, buyer)
    return listing


@pytest_asyncio.fixture
async def reserved(services, listing):
    """Listing reserved for Bob."""
    return await services.reservations.reserve(listing.id, ALICE, BOB, note="Pickup Friday")
