"""Settlement flows against a real PostgreSQL or CockroachDB database.

Skipped unless SETTLEMENT_TEST_DB_URL points at a disposable database; every
test drops and recreates the schema.
"""

import asyncio
import os

import pytest
import pytest_asyncio

from api.deps import build_services
from chat import listing_conversation
from conftest import ALICE, BOB, CAROL, OFFERED_STICKER, REQUESTED_STICKER, TRADE_ITEMS
from core.errors import ConflictError, InvalidStateTransitionError
from core.models import FinalizationOutcome, ListingStatus, ProposalAction, TransactionKind
from database import close, init_db
from database.store.postgres import PostgresStore

DB_URL = os.environ.get("SETTLEMENT_TEST_DB_URL")

pytestmark = pytest.mark.skipif(not DB_URL, reason="SETTLEMENT_TEST_DB_URL not set")


@pytest_asyncio.fixture
async def pg_store():
    pool = await init_db(DB_URL, force_recreate=True)
    async with pool.acquire() as conn:
        await conn.executemany(
            'INSERT INTO user_stickers (user_id, sticker_id, count) VALUES ($1, $2, $3)',
            [(ALICE, OFFERED_STICKER, 10), (BOB, REQUESTED_STICKER, 20)]
        )
    yield PostgresStore(pool, lock_timeout=2.0)
    await close()


@pytest_asyncio.fixture
async def pg_services(pg_store):
    return build_services(pg_store)


async def add_participant(store, listing_id, user_id):
    async with store.pool.acquire() as conn:
        await conn.execute(
            'INSERT INTO listing_participants (listing_id, user_id) VALUES ($1, $2)',
            listing_id, user_id
        )


@pytest.mark.asyncio
async def test_concurrent_finalization(pg_services, pg_store):
    proposal = await pg_services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    await pg_services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)

    results = await asyncio.gather(
        pg_services.proposals.request_finalization(proposal.id, ALICE),
        pg_services.proposals.request_finalization(proposal.id, BOB),
    )

    assert sorted(r.outcome.value for r in results) == ["completed", "pending"]
    record = await pg_services.archiver.get_record(TransactionKind.TRADE, proposal.id)
    assert record.participants == [ALICE, BOB]


@pytest.mark.asyncio
async def test_requester_double_call(pg_services):
    proposal = await pg_services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    await pg_services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)

    results = await asyncio.gather(*(
        pg_services.proposals.request_finalization(proposal.id, ALICE) for _ in range(2)
    ))

    assert sorted(r.outcome.value for r in results) == ["already_requested", "pending"]


@pytest.mark.asyncio
async def test_reservation_exclusive(pg_services, pg_store):
    reservations = pg_services.reservations
    listing = await reservations.create_listing(ALICE, "Shiny sticker 7")
    await add_participant(pg_store, listing.id, BOB)
    await add_participant(pg_store, listing.id, CAROL)

    results = await asyncio.gather(
        reservations.reserve(listing.id, ALICE, BOB),
        reservations.reserve(listing.id, ALICE, CAROL),
        return_exceptions=True
    )

    reserved = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(reserved) == 1
    assert isinstance(failed[0], (InvalidStateTransitionError, ConflictError))
    assert (await reservations.get_listing(listing.id)).status == ListingStatus.RESERVED


@pytest.mark.asyncio
async def test_sale_completion(pg_services, pg_store):
    reservations = pg_services.reservations
    listing = await reservations.create_listing(ALICE, "Foil")
    await add_participant(pg_store, listing.id, BOB)
    transaction = await reservations.reserve(listing.id, ALICE, BOB)

    await reservations.mark_complete(transaction.id, ALICE)
    completion = await reservations.confirm_receipt(transaction.id, BOB)

    assert completion.outcome == FinalizationOutcome.COMPLETED
    assert (await reservations.get_listing(listing.id)).status == ListingStatus.COMPLETED


@pytest.mark.asyncio
async def test_busy_row_reports_conflict(pg_services, pg_store):
    proposal = await pg_services.proposals.create_proposal(ALICE, BOB, TRADE_ITEMS)
    pg_store.lock_timeout = 0.2

    async with pg_store.unit(('proposals', proposal.id)):
        with pytest.raises(ConflictError):
            await pg_services.proposals.respond(proposal.id, BOB, ProposalAction.ACCEPT)


@pytest.mark.asyncio
async def test_buyer_message_makes_candidate(pg_services):
    reservations = pg_services.reservations
    listing = await reservations.create_listing(ALICE, "Holo 12")

    await pg_services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "Still available?")
    await pg_services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "Still?")

    assert await reservations.list_candidates(listing.id, ALICE) == [BOB]
    transaction = await reservations.reserve(listing.id, ALICE, BOB)
    assert transaction.buyer_id == BOB


@pytest.mark.asyncio
async def test_more_reservations_than_pool_connections(pg_services):
    """Eligibility checks run on the unit's connection, so the pool never runs dry."""
    reservations = pg_services.reservations
    listings = [await reservations.create_listing(ALICE, f"Sticker {i}") for i in range(30)]
    for listing in listings:
        await pg_services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "Mine?")

    results = await asyncio.wait_for(
        asyncio.gather(*(reservations.reserve(listing.id, ALICE, BOB) for listing in listings)),
        timeout=30
    )

    assert len(results) == 30
