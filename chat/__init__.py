"""Chat module for the two-party conversations around trades and sales.

Conversation keys:
    trade:<proposal_id>                 proposer and recipient
    listing:<listing_id>:<buyer_id>     seller and one interested buyer

A listing has one conversation per interested buyer, so system messages
about one buyer's reservation never reach the others.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from core.errors import ForbiddenError, NotFoundError
from core.models import ChatMessage
from database import get_store
from database.store import Store, Unit
from .cache import KeyedCache
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def trade_conversation(proposal_id: UUID) -> str:
    return f"trade:{proposal_id}"


def listing_conversation(listing_id: UUID, buyer_id: str) -> str:
    return f"listing:{listing_id}:{buyer_id}"


def parse_conversation(conversation: str) -> Tuple[str, UUID, Optional[str]]:
    """Split a conversation key into (kind, id, buyer_id).

    Raises:
        NotFoundError: If the key is malformed
    """
    parts = conversation.split(':', 2)
    try:
        if parts[0] == 'trade' and len(parts) == 2:
            return 'trade', UUID(parts[1]), None
        if parts[0] == 'listing' and len(parts) == 3 and parts[2]:
            return 'listing', UUID(parts[1]), parts[2]
    except ValueError:
        pass
    raise NotFoundError(f"Unknown conversation {conversation}")


class ChatService:
    """Posts and reads messages in two-party conversations."""

    def __init__(self, store: Optional[Store] = None, unread: Optional[UnreadTracker] = None) -> None:
        self.store = store
        self.unread = unread or UnreadTracker(store)

    async def ensure_store(self):
        if not self.store:
            self.store = await get_store()

    async def parties(self, unit: Unit, conversation: str) -> List[str]:
        """The two users of a conversation.

        Raises:
            NotFoundError: If the trade or listing does not exist
        """
        kind, subject_id, buyer_id = parse_conversation(conversation)
        if kind == 'trade':
            proposal = await unit.get_proposal(subject_id)
            if not proposal:
                raise NotFoundError(f"Unknown conversation {conversation}")
            return [proposal.from_user, proposal.to_user]

        listing = await unit.get_listing(subject_id)
        if not listing or listing.seller_id == buyer_id:
            raise NotFoundError(f"Unknown conversation {conversation}")
        return [listing.seller_id, buyer_id]

    async def post_message(self, conversation: str, sender_id: str, body: str) -> ChatMessage:
        """Post a user message visible to both parties.

        Raises:
            NotFoundError: If the conversation does not exist
            ForbiddenError: If sender is not one of its parties
            ValueError: If the body is empty or too long
        """
        await self.ensure_store()
        body = (body or '').strip()
        if not body:
            raise ValueError("Message body cannot be empty")
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message body exceeds {MAX_MESSAGE_LENGTH} characters")

        async with self.store.unit() as unit:
            parties = await self.parties(unit, conversation)
            if sender_id not in parties:
                raise ForbiddenError(f"{sender_id} is not part of {conversation}")
            kind, subject_id, buyer_id = parse_conversation(conversation)
            if kind == 'listing' and sender_id == buyer_id:
                # Writing to the seller makes the buyer a reservation candidate
                await unit.add_participant(subject_id, buyer_id)
            message = await unit.insert_message(
                conversation=conversation,
                sender_id=sender_id,
                body=body,
                visible_to=parties
            )

        self.unread.invalidate(*parties)
        return message

    async def post_system_message(self, conversation: str, body: str, visible_to: List[str]) -> ChatMessage:
        """Insert a system message visible only to the given users."""
        await self.ensure_store()
        async with self.store.unit() as unit:
            message = await unit.insert_message(
                conversation=conversation,
                body=body,
                visible_to=visible_to,
                is_system=True
            )
        self.unread.invalidate(*visible_to)
        return message

    async def list_messages(
        self,
        conversation: str,
        viewer: str,
        limit: int = 50,
        before: Optional[datetime] = None
    ) -> List[ChatMessage]:
        """Messages visible to viewer, oldest first."""
        await self.ensure_store()
        async with self.store.unit() as unit:
            parties = await self.parties(unit, conversation)
            if viewer not in parties:
                raise ForbiddenError(f"{viewer} is not part of {conversation}")
            messages = await unit.list_messages(conversation, viewer, limit=limit, before=before)
        return list(reversed(messages))

    async def mark_read(self, conversation: str, user_id: str) -> datetime:
        """Move user_id's read marker to now; the other party is unaffected."""
        await self.ensure_store()
        read_at = datetime.now(timezone.utc)
        async with self.store.unit() as unit:
            parties = await self.parties(unit, conversation)
            if user_id not in parties:
                raise ForbiddenError(f"{user_id} is not part of {conversation}")
            await unit.set_read_marker(conversation, user_id, read_at)
        self.unread.invalidate(user_id)
        return read_at


__all__ = [
    'ChatService',
    'UnreadTracker',
    'KeyedCache',
    'trade_conversation',
    'listing_conversation',
    'parse_conversation',
]
