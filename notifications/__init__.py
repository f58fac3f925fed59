"""Notifications module turning committed state transitions into user notices.

For every event the emitter:
- stores one notification per counterpart
- posts a system message into the two parties' conversation
- pushes the notification to live listeners (the websocket stream)

Delivery runs after the transition committed. A delivery failure is logged
and never undoes the transition.
"""
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from chat import ChatService
from core.events import (
    Event,
    FINALIZATION_COMPLETED,
    FINALIZATION_REJECTED,
    FINALIZATION_REQUESTED,
    LISTING_COMPLETED,
    LISTING_RESERVED,
    LISTING_UNRESERVED,
    PROPOSAL_ACCEPTED,
    PROPOSAL_CANCELLED,
    PROPOSAL_REJECTED,
)
from core.models import Notification, TransactionKind
from database import get_store
from database.store import Store

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict], Awaitable[None]]

# Notification kind and system message per event
TEMPLATES: Dict[str, Dict[str, str]] = {
    PROPOSAL_ACCEPTED: {
        'kind': 'proposal_accepted',
        'message': '{actor} accepted the trade proposal',
    },
    PROPOSAL_REJECTED: {
        'kind': 'proposal_rejected',
        'message': '{actor} rejected the trade proposal',
    },
    PROPOSAL_CANCELLED: {
        'kind': 'proposal_cancelled',
        'message': '{actor} cancelled the trade proposal',
    },
    FINALIZATION_REQUESTED: {
        'kind': 'finalization_requested',
        'message': '{actor} requested to finalize',
    },
    FINALIZATION_COMPLETED: {
        'kind': 'finalization_completed',
        'message': '{actor} confirmed; the exchange is complete',
    },
    FINALIZATION_REJECTED: {
        'kind': 'finalization_rejected',
        'message': '{actor} rejected the finalization request',
    },
    LISTING_RESERVED: {
        'kind': 'listing_reserved',
        'message': '{actor} reserved the listing for you',
    },
    LISTING_UNRESERVED: {
        'kind': 'listing_unreserved',
        'message': '{actor} released the reservation',
    },
    LISTING_COMPLETED: {
        'kind': 'listing_completed',
        'message': 'The sale is complete',
    },
}


class NotificationEmitter:
    """Delivers events to notifications, chat and live listeners."""

    def __init__(self, store: Optional[Store] = None, chat: Optional[ChatService] = None) -> None:
        self.store = store
        self.chat = chat or ChatService(store)
        self.listeners: List[Listener] = []

    async def ensure_store(self):
        if not self.store:
            self.store = await get_store()

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def emit(self, events: Iterable[Event]) -> None:
        """Deliver each event; failures are logged per event."""
        for event in events:
            try:
                await self.deliver(event)
            except Exception:
                logger.exception(f"Failed to deliver {event.name} for {event.transaction_id}")

    async def deliver(self, event: Event) -> List[Notification]:
        template = TEMPLATES.get(event.name)
        if not template:
            logger.warning(f"No notification template for event {event.name}")
            return []

        await self.ensure_store()
        trade_id: Optional[UUID] = None
        if event.transaction_kind == TransactionKind.TRADE:
            trade_id = event.transaction_id

        payload = {
            'event': event.name,
            'transaction_kind': event.transaction_kind.value,
            'transaction_id': str(event.transaction_id),
            'state': event.state,
        }
        payload.update(event.payload)

        notifications = []
        async with self.store.unit() as unit:
            for recipient in event.recipients:
                notifications.append(await unit.insert_notification(
                    user_id=recipient,
                    kind=template['kind'],
                    actor_id=event.actor,
                    trade_id=trade_id,
                    listing_id=event.listing_id,
                    payload=payload
                ))

        await self.chat.post_system_message(
            event.conversation,
            template['message'].format(actor=event.actor),
            visible_to=event.participants
        )

        for notification in notifications:
            await self._push(notification)

        logger.debug(f"Delivered {event.name} to {', '.join(event.recipients)}")
        return notifications

    async def _push(self, notification: Notification) -> None:
        message = {
            'type': 'notification',
            'data': notification.model_dump(mode='json'),
        }
        for listener in list(self.listeners):
            try:
                await listener(notification.user_id, message)
            except Exception:
                logger.exception(f"Notification listener failed for {notification.user_id}")

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Notification]:
        await self.ensure_store()
        async with self.store.unit() as unit:
            return await unit.list_notifications(
                user_id, unread_only=unread_only, limit=limit, offset=offset
            )

    async def mark_read(self, user_id: str, notification_ids: Optional[List[UUID]] = None) -> int:
        """Mark the user's notifications read; all of them when no ids are given."""
        await self.ensure_store()
        async with self.store.unit() as unit:
            return await unit.mark_notifications_read(user_id, notification_ids)


__all__ = ['NotificationEmitter', 'TEMPLATES']
