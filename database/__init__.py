"""Database module for managing the settlement store.

This module handles:
- PostgreSQL/CockroachDB connection pool initialization
- Schema management
- Selecting the store backend (postgres or in-memory) from settings
- Connection and store lifecycle
"""

import json
import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager
from .store import Store, Unit
from .store.memory import MemoryStore
from .store.postgres import PostgresStore

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_store: Optional[Store] = None

# sslmode values that require an encrypted connection
_SSL_MODES = ('require', 'verify-ca', 'verify-full')


def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for managed database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context


def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }
    sslmode = params.get('sslmode', ['disable'])[0]
    if sslmode in _SSL_MODES:
        kwargs['ssl'] = _get_ssl_context()
    else:
        kwargs['ssl'] = False
    return kwargs


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Register JSON codecs so JSONB columns round-trip as Python objects."""
    for type_name in ('json', 'jsonb'):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog'
        )


@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database named in the URL if it doesn't exist.

    Args:
        db_url: Database connection URL
    """
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/') or 'defaultdb'
    base_url = parsed._replace(path='/defaultdb' if parsed.port == 26257 else '/postgres').geturl()

    conn = await asyncpg.connect(base_url, **_get_connection_kwargs(base_url))
    try:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
            db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            logger.info(f"Created database {db_name}")
    finally:
        await conn.close()


@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> asyncpg.Pool:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables

    Returns:
        The connection pool

    Raises:
        ValueError: If database URL is not provided
        DatabaseError: If initialization fails after retries
    """
    global _pool

    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    try:
        await create_database_if_not_exists(url)

        _pool = await asyncpg.create_pool(
            url,
            min_size=2,
            max_size=20,
            max_inactive_connection_lifetime=300.0,
            command_timeout=60.0,
            init=_init_connection,
            **_get_connection_kwargs(url)
        )

        schema_manager = SchemaManager(_pool)
        await schema_manager.initialize(force_recreate=force_recreate)
        return _pool

    except (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError):
        raise
    except DatabaseSchemaError:
        raise
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise DatabaseError(f"Database initialization failed: {e}")


async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool


async def get_store() -> Store:
    """Get the configured settlement store, creating it on first use."""
    global _store

    if _store is None:
        from config import settings_conf

        lock_timeout = settings_conf['lock_timeout']
        if settings_conf['store_backend'] == 'memory':
            logger.info("Using in-memory settlement store")
            _store = MemoryStore(lock_timeout=lock_timeout)
        else:
            pool = await get_pool()
            _store = PostgresStore(pool, lock_timeout=lock_timeout)
    return _store


def set_store(store: Optional[Store]) -> None:
    """Install a store explicitly (used by the API factory and tests)."""
    global _store
    _store = store


async def close() -> None:
    """Close the database connection pool and forget the store."""
    global _pool, _store

    _store = None
    if _pool:
        await _pool.close()
        _pool = None


# Export public interface
__all__ = [
    'init_db', 'get_pool', 'get_store', 'set_store', 'close',
    'Store', 'Unit', 'MemoryStore', 'PostgresStore',
    'DatabaseError', 'DatabaseSchemaError',
]
