"""PostgreSQL / CockroachDB settlement store on asyncpg.

A unit of work is one database transaction. When a lock target is given the
first statement is SELECT ... FOR UPDATE on that row, bounded by a local
lock_timeout. Statements run at READ COMMITTED, so once the lock is granted
the unit sees everything the previous holder committed. Row updates are
compare-and-swap on the version column; partial unique indexes back up the
one-active-row invariants. Lost races surface as ConflictError.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg
from asyncpg.exceptions import (
    DeadlockDetectedError,
    LockNotAvailableError,
    PostgresError,
    SerializationError,
    UniqueViolationError,
)
from asyncpg.pool import Pool

from core.errors import ConflictError
from core.models import (
    ChatMessage,
    Finalization,
    FinalizationStatus,
    HistoryRecord,
    Listing,
    ListingTransaction,
    Notification,
    Proposal,
    ProposalItem,
)
from ..exceptions import DatabaseError
from . import LockTarget, LOCKABLE_TABLES, Store, Unit

logger = logging.getLogger(__name__)

# Errors that mean another writer got there first
CONFLICT_ERRORS = (
    UniqueViolationError,
    SerializationError,
    DeadlockDetectedError,
    LockNotAvailableError,
)

# Columns engines may change through update_* calls
MUTABLE_COLUMNS = {
    'proposals': {'status', 'archived_at'},
    'listings': {'status', 'title'},
    'listing_transactions': {
        'status', 'completed_at', 'cancelled_at', 'cancellation_reason', 'archived_at'
    },
    'finalizations': {'status', 'rejected_at', 'accepted_by', 'accepted_at'},
}


def _value(value: Any) -> Any:
    """Enums are stored by value."""
    return getattr(value, 'value', value)


def _set_clause(table: str, changes: Dict[str, Any], start: int = 1):
    unknown = set(changes) - MUTABLE_COLUMNS[table]
    if unknown:
        raise ValueError(f"Cannot update {', '.join(sorted(unknown))} on {table}")
    assignments = []
    params = []
    for offset, (column, value) in enumerate(changes.items()):
        assignments.append(f"{column} = ${start + offset}")
        params.append(_value(value))
    return assignments, params


class PostgresUnit(Unit):
    """Unit of work bound to one connection inside one transaction."""

    def __init__(self, conn: asyncpg.Connection):
        super().__init__()
        self.conn = conn

    # Collaborators
    async def owned_quantity(self, user_id, sticker_id):
        count = await self.conn.fetchval(
            'SELECT count FROM user_stickers WHERE user_id = $1 AND sticker_id = $2',
            user_id, sticker_id
        )
        return int(count or 0)

    async def is_blocked(self, user_id, other_user_id):
        return await self.conn.fetchval(
            '''
            SELECT EXISTS(
                SELECT 1 FROM ignored_users
                WHERE user_id = $1 AND ignored_user_id = $2
            )
            ''',
            user_id, other_user_id
        )

    async def is_participant(self, listing_id, user_id):
        return await self.conn.fetchval(
            '''
            SELECT EXISTS(
                SELECT 1 FROM listing_participants
                WHERE listing_id = $1 AND user_id = $2
            )
            ''',
            listing_id, user_id
        )

    async def add_participant(self, listing_id, user_id):
        await self.conn.execute(
            '''
            INSERT INTO listing_participants (listing_id, user_id)
            VALUES ($1, $2)
            ON CONFLICT (listing_id, user_id) DO NOTHING
            ''',
            listing_id, user_id
        )

    async def list_participants(self, listing_id):
        rows = await self.conn.fetch(
            '''
            SELECT user_id FROM listing_participants
            WHERE listing_id = $1
            ORDER BY created_at, user_id
            ''',
            listing_id
        )
        return [r['user_id'] for r in rows]

    async def _update_versioned(self, table: str, model: Any, changes: Dict[str, Any], touch: str):
        assignments, params = _set_clause(table, changes)
        n = len(params)
        row = await self.conn.fetchrow(
            f'''
            UPDATE {table}
            SET {', '.join(assignments + [f'{touch} = now()', 'version = version + 1'])}
            WHERE id = ${n + 1} AND version = ${n + 2}
            RETURNING *
            ''',
            *params, model.id, model.version
        )
        if row is None:
            raise ConflictError(f"{type(model).__name__} {model.id} was modified concurrently")
        return type(model)(**dict(row))

    # Proposals
    async def insert_proposal(self, *, from_user, to_user, items, collection_id=None, message=None):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO proposals (collection_id, from_user, to_user, message)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            ''',
            collection_id, from_user, to_user, message
        )
        await self.conn.executemany(
            '''
            INSERT INTO proposal_items (proposal_id, sticker_id, direction, quantity)
            VALUES ($1, $2, $3, $4)
            ''',
            [(row['id'], i.sticker_id, _value(i.direction), i.quantity) for i in items]
        )
        return Proposal(**dict(row))

    async def get_proposal(self, proposal_id):
        row = await self.conn.fetchrow('SELECT * FROM proposals WHERE id = $1', proposal_id)
        return Proposal(**dict(row)) if row else None

    async def get_proposal_items(self, proposal_id):
        rows = await self.conn.fetch(
            '''
            SELECT sticker_id, direction, quantity
            FROM proposal_items
            WHERE proposal_id = $1
            ORDER BY direction, sticker_id
            ''',
            proposal_id
        )
        return [ProposalItem(**dict(r)) for r in rows]

    async def update_proposal(self, proposal, **changes):
        return await self._update_versioned('proposals', proposal, changes, 'updated_at')

    async def list_proposals(self, *, from_user=None, to_user=None, statuses=None,
                             archived=None, limit=20, offset=0):
        query = "SELECT * FROM proposals WHERE 1=1"
        params: List[Any] = []

        if from_user is not None:
            params.append(from_user)
            query += f" AND from_user = ${len(params)}"
        if to_user is not None:
            params.append(to_user)
            query += f" AND to_user = ${len(params)}"
        if statuses is not None:
            params.append([_value(s) for s in statuses])
            query += f" AND status = ANY(${len(params)})"
        if archived is not None:
            query += " AND archived_at IS NOT NULL" if archived else " AND archived_at IS NULL"

        params.extend([limit, offset])
        query += f" ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}"

        rows = await self.conn.fetch(query, *params)
        return [Proposal(**dict(r)) for r in rows]

    # Listings
    async def insert_listing(self, *, seller_id, title, collection_id=None):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO listings (seller_id, title, collection_id)
            VALUES ($1, $2, $3)
            RETURNING *
            ''',
            seller_id, title, collection_id
        )
        return Listing(**dict(row))

    async def get_listing(self, listing_id):
        row = await self.conn.fetchrow('SELECT * FROM listings WHERE id = $1', listing_id)
        return Listing(**dict(row)) if row else None

    async def update_listing(self, listing, **changes):
        return await self._update_versioned('listings', listing, changes, 'updated_at')

    async def insert_listing_transaction(self, *, listing_id, seller_id, buyer_id, note=None):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO listing_transactions (listing_id, seller_id, buyer_id, note)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            ''',
            listing_id, seller_id, buyer_id, note
        )
        return ListingTransaction(**dict(row))

    async def get_listing_transaction(self, transaction_id):
        row = await self.conn.fetchrow(
            'SELECT * FROM listing_transactions WHERE id = $1', transaction_id
        )
        return ListingTransaction(**dict(row)) if row else None

    async def get_active_listing_transaction(self, listing_id):
        row = await self.conn.fetchrow(
            '''
            SELECT * FROM listing_transactions
            WHERE listing_id = $1 AND status IN ('reserved', 'pending_completion')
            ''',
            listing_id
        )
        return ListingTransaction(**dict(row)) if row else None

    async def get_latest_listing_transaction(self, listing_id):
        row = await self.conn.fetchrow(
            '''
            SELECT * FROM listing_transactions
            WHERE listing_id = $1
            ORDER BY reserved_at DESC
            LIMIT 1
            ''',
            listing_id
        )
        return ListingTransaction(**dict(row)) if row else None

    async def update_listing_transaction(self, transaction, **changes):
        return await self._update_versioned('listing_transactions', transaction, changes, 'updated_at')

    # Finalizations
    async def get_active_finalization(self, kind, transaction_id):
        row = await self.conn.fetchrow(
            '''
            SELECT * FROM finalizations
            WHERE transaction_kind = $1 AND transaction_id = $2
            AND status IN ('pending', 'accepted')
            ORDER BY finalized_at
            LIMIT 1
            ''',
            _value(kind), transaction_id
        )
        return Finalization(**dict(row)) if row else None

    async def insert_finalization(self, kind, transaction_id, user_id):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO finalizations (transaction_kind, transaction_id, user_id, status)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            ''',
            _value(kind), transaction_id, user_id, FinalizationStatus.PENDING.value
        )
        return Finalization(**dict(row))

    async def update_finalization(self, finalization, **changes):
        assignments, params = _set_clause('finalizations', changes)
        n = len(params)
        row = await self.conn.fetchrow(
            f'''
            UPDATE finalizations
            SET {', '.join(assignments)}
            WHERE id = ${n + 1} AND status = ${n + 2}
            RETURNING *
            ''',
            *params, finalization.id, _value(finalization.status)
        )
        if row is None:
            raise ConflictError(f"Finalization {finalization.id} was modified concurrently")
        return Finalization(**dict(row))

    async def list_finalizations(self, kind, transaction_id):
        rows = await self.conn.fetch(
            '''
            SELECT * FROM finalizations
            WHERE transaction_kind = $1 AND transaction_id = $2
            ORDER BY finalized_at
            ''',
            _value(kind), transaction_id
        )
        return [Finalization(**dict(r)) for r in rows]

    # History
    async def insert_history(self, *, kind, transaction_id, outcome, participants,
                             completed_at=None, cancelled_at=None, metadata=None):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO history_records (
                transaction_kind, transaction_id, outcome, participants,
                completed_at, cancelled_at, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            ''',
            _value(kind), transaction_id, _value(outcome), list(participants),
            completed_at, cancelled_at, metadata or {}
        )
        return HistoryRecord(**dict(row))

    async def get_history(self, kind, transaction_id):
        row = await self.conn.fetchrow(
            'SELECT * FROM history_records WHERE transaction_kind = $1 AND transaction_id = $2',
            _value(kind), transaction_id
        )
        return HistoryRecord(**dict(row)) if row else None

    async def list_history(self, *, user_id, kind=None, limit=20, offset=0):
        query = "SELECT * FROM history_records WHERE $1 = ANY(participants)"
        params: List[Any] = [user_id]
        if kind is not None:
            params.append(_value(kind))
            query += f" AND transaction_kind = ${len(params)}"
        params.extend([limit, offset])
        query += f" ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        rows = await self.conn.fetch(query, *params)
        return [HistoryRecord(**dict(r)) for r in rows]

    # Notifications
    async def insert_notification(self, *, user_id, kind, actor_id=None, trade_id=None,
                                  listing_id=None, payload=None):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO notifications (user_id, kind, actor_id, trade_id, listing_id, payload)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            ''',
            user_id, kind, actor_id, trade_id, listing_id, payload or {}
        )
        return Notification(**dict(row))

    async def list_notifications(self, user_id, *, unread_only=False, limit=50, offset=0):
        query = "SELECT * FROM notifications WHERE user_id = $1"
        if unread_only:
            query += " AND read_at IS NULL"
        query += " ORDER BY created_at DESC LIMIT $2 OFFSET $3"
        rows = await self.conn.fetch(query, user_id, limit, offset)
        return [Notification(**dict(r)) for r in rows]

    async def mark_notifications_read(self, user_id, notification_ids=None):
        if notification_ids is None:
            result = await self.conn.execute(
                'UPDATE notifications SET read_at = now() WHERE user_id = $1 AND read_at IS NULL',
                user_id
            )
        else:
            result = await self.conn.execute(
                '''
                UPDATE notifications SET read_at = now()
                WHERE user_id = $1 AND read_at IS NULL AND id = ANY($2)
                ''',
                user_id, list(notification_ids)
            )
        return int(result.split()[-1])

    # Chat
    async def insert_message(self, *, conversation, body, visible_to, sender_id=None, is_system=False):
        row = await self.conn.fetchrow(
            '''
            INSERT INTO chat_messages (conversation, sender_id, body, is_system, visible_to)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            ''',
            conversation, sender_id, body, is_system, list(visible_to)
        )
        return ChatMessage(**dict(row))

    async def list_messages(self, conversation, viewer, *, limit=50, before=None):
        query = '''
            SELECT * FROM chat_messages
            WHERE conversation = $1 AND $2 = ANY(visible_to)
        '''
        params: List[Any] = [conversation, viewer]
        if before is not None:
            params.append(before)
            query += f" AND created_at < ${len(params)}"
        params.append(limit)
        query += f" ORDER BY created_at DESC LIMIT ${len(params)}"
        rows = await self.conn.fetch(query, *params)
        return [ChatMessage(**dict(r)) for r in rows]

    async def list_conversations(self, user_id):
        rows = await self.conn.fetch(
            '''
            SELECT DISTINCT conversation FROM chat_messages
            WHERE $1 = ANY(visible_to)
            ORDER BY conversation
            ''',
            user_id
        )
        return [r['conversation'] for r in rows]

    async def set_read_marker(self, conversation, user_id, read_at):
        await self.conn.execute(
            '''
            INSERT INTO chat_read_markers (conversation, user_id, last_read_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (conversation, user_id) DO UPDATE
            SET last_read_at = GREATEST(chat_read_markers.last_read_at, EXCLUDED.last_read_at)
            ''',
            conversation, user_id, read_at
        )

    async def count_unread(self, user_id, conversations):
        rows = await self.conn.fetch(
            '''
            SELECT m.conversation, COUNT(*) AS unread
            FROM chat_messages m
            LEFT JOIN chat_read_markers r
                ON r.conversation = m.conversation AND r.user_id = $1
            WHERE m.conversation = ANY($2)
            AND $1 = ANY(m.visible_to)
            AND (m.sender_id IS NULL OR m.sender_id <> $1)
            AND (r.last_read_at IS NULL OR m.created_at > r.last_read_at)
            GROUP BY m.conversation
            ''',
            user_id, list(conversations)
        )
        counts = {c: 0 for c in conversations}
        counts.update({r['conversation']: r['unread'] for r in rows})
        return counts


class PostgresStore(Store):
    """Settlement store backed by an asyncpg pool."""

    def __init__(self, pool: Pool, lock_timeout: float = 5.0):
        super().__init__(lock_timeout=lock_timeout)
        self.pool = pool

    @asynccontextmanager
    async def unit(self, lock: Optional[LockTarget] = None) -> AsyncIterator[PostgresUnit]:
        if lock and lock[0] not in LOCKABLE_TABLES:
            raise ValueError(f"Cannot lock rows of {lock[0]}")

        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction(isolation='read_committed'):
                    if lock:
                        table, row_id = lock
                        await conn.execute(
                            f"SET LOCAL lock_timeout = '{int(self.lock_timeout * 1000)}ms'"
                        )
                        await conn.execute(
                            f'SELECT id FROM {table} WHERE id = $1 FOR UPDATE',
                            row_id
                        )
                    yield PostgresUnit(conn)
            except CONFLICT_ERRORS as e:
                logger.warning(f"Concurrent write detected: {e}")
                raise ConflictError(f"Lost a concurrent update, refetch and try again: {e}")
            except PostgresError as e:
                logger.error(f"Database error in unit of work: {e}")
                raise DatabaseError(f"Database operation failed: {e}")

    async def close(self) -> None:
        await self.pool.close()
