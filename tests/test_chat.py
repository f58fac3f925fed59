"""Tests for two-party conversations and unread counts."""

import asyncio
import uuid

import pytest

from chat import KeyedCache, listing_conversation, parse_conversation, trade_conversation
from chat import MAX_MESSAGE_LENGTH
from conftest import ALICE, BOB, CAROL
from core.errors import ForbiddenError, NotFoundError
from database.store.memory import MemoryUnit


def test_parse_conversation():
    proposal_id = uuid.uuid4()
    listing_id = uuid.uuid4()

    assert parse_conversation(trade_conversation(proposal_id)) == ('trade', proposal_id, None)
    assert parse_conversation(listing_conversation(listing_id, BOB)) == ('listing', listing_id, BOB)


@pytest.mark.parametrize("key", [
    "trade",
    "trade:not-a-uuid",
    f"listing:{uuid.uuid4()}",
    f"listing:{uuid.uuid4()}:",
    f"auction:{uuid.uuid4()}",
])
def test_parse_malformed_conversation(key):
    with pytest.raises(NotFoundError):
        parse_conversation(key)


@pytest.mark.asyncio
async def test_post_and_list(services, proposal):
    conversation = trade_conversation(proposal.id)

    await services.chat.post_message(conversation, ALICE, "Hi Bob")
    await services.chat.post_message(conversation, BOB, "  Hi Alice  ")

    messages = await services.chat.list_messages(conversation, BOB)
    assert [(m.sender_id, m.body) for m in messages] == [(ALICE, "Hi Bob"), (BOB, "Hi Alice")]
    assert not messages[0].is_system


@pytest.mark.asyncio
async def test_outsider_cannot_post_or_read(services, proposal):
    conversation = trade_conversation(proposal.id)

    with pytest.raises(ForbiddenError):
        await services.chat.post_message(conversation, CAROL, "Let me in")
    with pytest.raises(ForbiddenError):
        await services.chat.list_messages(conversation, CAROL)


@pytest.mark.asyncio
async def test_unknown_conversation(services):
    with pytest.raises(NotFoundError):
        await services.chat.post_message(trade_conversation(uuid.uuid4()), ALICE, "Hello?")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "   ", "x" * (MAX_MESSAGE_LENGTH + 1)])
async def test_invalid_body(services, proposal, body):
    with pytest.raises(ValueError):
        await services.chat.post_message(trade_conversation(proposal.id), ALICE, body)


@pytest.mark.asyncio
async def test_listing_conversation_per_buyer(services, listing):
    bob_conversation = listing_conversation(listing.id, BOB)
    await services.chat.post_message(bob_conversation, BOB, "Still available?")

    messages = await services.chat.list_messages(bob_conversation, ALICE)
    assert [m.body for m in messages] == ["Still available?"]

    with pytest.raises(ForbiddenError):
        await services.chat.list_messages(bob_conversation, CAROL)

    with pytest.raises(NotFoundError):
        await services.chat.list_messages(listing_conversation(listing.id, ALICE), ALICE)


@pytest.mark.asyncio
async def test_mark_read_is_unilateral(services, proposal):
    conversation = trade_conversation(proposal.id)
    unread = services.unread

    await services.chat.post_message(conversation, ALICE, "One")
    await services.chat.post_message(conversation, ALICE, "Two")

    assert await unread.counts(BOB) == {conversation: 2}
    # Own messages never count as unread
    assert await unread.counts(ALICE) == {conversation: 0}

    await services.chat.post_message(conversation, BOB, "Three")
    await services.chat.mark_read(conversation, BOB)
    assert await unread.total(BOB) == 0
    assert await unread.total(ALICE) == 1

    await asyncio.sleep(0.001)
    await services.chat.post_message(conversation, ALICE, "Four")
    assert await unread.counts(BOB, [conversation, "trade:other"]) == {conversation: 1, "trade:other": 0}


@pytest.mark.asyncio
async def test_system_messages_count_for_both(services, accepted_trade):
    conversation = trade_conversation(accepted_trade.id)

    assert await services.unread.counts(ALICE) == {conversation: 1}
    assert await services.unread.counts(BOB) == {conversation: 1}


@pytest.mark.asyncio
async def test_unread_counts_are_cached_until_invalidated(services, store, proposal):
    conversation = trade_conversation(proposal.id)
    unread = services.unread

    assert await unread.counts(BOB) == {}
    assert BOB in unread.cache

    await services.chat.post_message(conversation, ALICE, "Ping")
    assert BOB not in unread.cache
    assert await unread.counts(BOB) == {conversation: 1}


def test_keyed_cache():
    cache = KeyedCache()
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.get("a") == 1
    assert "b" in cache
    assert len(cache) == 2

    cache.invalidate("a")
    cache.invalidate("missing")
    assert cache.get("a") is None

    cache.clear()
    assert len(cache) == 0


def test_keyed_cache_ttl(monkeypatch):
    now = [100.0]
    monkeypatch.setattr("chat.cache.time.monotonic", lambda: now[0])

    cache = KeyedCache(ttl=5)
    cache.set("a", 1)
    now[0] = 104.0
    assert cache.get("a") == 1

    now[0] = 105.0
    assert cache.get("a") is None
    assert "a" not in cache


@pytest.mark.asyncio
async def test_keyed_cache_get_or_load():
    cache = KeyedCache()
    calls = []

    async def loader():
        calls.append(1)
        return {"x": 1}

    assert await cache.get_or_load("k", loader) == {"x": 1}
    assert await cache.get_or_load("k", loader) == {"x": 1}
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_keyed_cache_drops_load_invalidated_midway():
    cache = KeyedCache()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_loader():
        started.set()
        await release.wait()
        return "stale"

    async def fresh_loader():
        return "fresh"

    task = asyncio.create_task(cache.get_or_load("u", slow_loader))
    await started.wait()
    cache.invalidate("u")
    release.set()

    # The caller still gets its answer, but it is not kept
    assert await task == "stale"
    assert "u" not in cache
    assert await cache.get_or_load("u", fresh_loader) == "fresh"
    assert cache.get("u") == "fresh"


@pytest.mark.asyncio
async def test_keyed_cache_drops_load_cleared_midway():
    cache = KeyedCache()
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_loader():
        started.set()
        await release.wait()
        return 1

    task = asyncio.create_task(cache.get_or_load("u", slow_loader))
    await started.wait()
    cache.clear()
    release.set()

    assert await task == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_unread_counts_not_stale_after_concurrent_post(services, proposal, monkeypatch):
    conversation = trade_conversation(proposal.id)
    unread = services.unread
    loading = asyncio.Event()
    release = asyncio.Event()
    load = unread._load

    async def paused_load(user_id):
        counts = await load(user_id)
        loading.set()
        await release.wait()
        return counts

    monkeypatch.setattr(unread, "_load", paused_load)
    task = asyncio.create_task(unread.counts(BOB))
    await loading.wait()
    await services.chat.post_message(conversation, ALICE, "Ping")
    release.set()

    assert await task == {}
    assert await unread.counts(BOB) == {conversation: 1}


@pytest.mark.asyncio
async def test_failed_post_forgets_candidate(services, store, monkeypatch):
    listing = await services.reservations.create_listing(ALICE, "Foil 3")

    async def broken_insert(self, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(MemoryUnit, "insert_message", broken_insert)
    with pytest.raises(RuntimeError):
        await services.chat.post_message(listing_conversation(listing.id, BOB), BOB, "Mine?")

    assert not store.participants.is_participant(listing.id, BOB)
