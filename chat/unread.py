"""Unread message counts per conversation.

Counts derive from each user's own read marker, so reading a conversation
never changes what the other party sees as unread.
"""
import logging
from typing import Dict, Iterable, Optional

from database import get_store
from database.store import Store
from .cache import KeyedCache

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Memoized unread counts, invalidated when a user's conversations change."""

    def __init__(self, store: Optional[Store] = None, cache: Optional[KeyedCache] = None) -> None:
        self.store = store
        self.cache: KeyedCache[Dict[str, int]] = cache if cache is not None else KeyedCache()

    async def ensure_store(self):
        if not self.store:
            self.store = await get_store()

    async def counts(self, user_id: str, conversations: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """Unread counts for user_id, for every conversation or the given ones."""
        all_counts = await self.cache.get_or_load(user_id, lambda: self._load(user_id))
        if conversations is None:
            return dict(all_counts)
        return {c: all_counts.get(c, 0) for c in conversations}

    async def total(self, user_id: str) -> int:
        return sum((await self.counts(user_id)).values())

    def invalidate(self, *user_ids: str) -> None:
        for user_id in user_ids:
            self.cache.invalidate(user_id)

    async def _load(self, user_id: str) -> Dict[str, int]:
        await self.ensure_store()
        async with self.store.unit() as unit:
            conversations = await unit.list_conversations(user_id)
            counts = await unit.count_unread(user_id, conversations) if conversations else {}
        logger.debug(f"Loaded unread counts for {user_id} across {len(counts)} conversations")
        return counts
