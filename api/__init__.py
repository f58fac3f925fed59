"""REST API module for the settlement service.

This module provides HTTP endpoints for:
- Creating and answering trade proposals, and finalizing accepted trades
- Listing reservations and the sale completion handshake
- Notifications and two-party chat with unread counts
- Real-time notifications via WebSocket
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings_conf
from database import close as db_close, get_store
from database.store import Store
from .deps import Services, build_services, get_current_user, get_services
from .websockets import ConnectionManager

logger = logging.getLogger(__name__)


def create_app(store: Optional[Store] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        store: Settlement store to serve. If not provided, the configured
            store is opened on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Initializing API...")
        owned = store is None
        active_store = store or await get_store()

        services = build_services(active_store, page_size=settings_conf['history_page_size'])
        services.emitter.add_listener(app.state.connections.broadcast_to_user)
        app.state.services = services

        yield

        logger.info("Shutting down API...")
        services.emitter.remove_listener(app.state.connections.broadcast_to_user)
        app.state.services = None
        if owned:
            await db_close()

    app = FastAPI(
        title="Settlement API",
        description="Trade proposals, listing sales and their two-party finalization",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = None
    app.state.connections = ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {
            "name": "Settlement API",
            "version": "1.0.0",
            "status": "running" if app.state.services else "starting"
        }

    from .trades import router as trades_router
    from .listings import router as listings_router
    from .notifications import router as notifications_router
    from .chat import router as chat_router
    from .websockets import router as websocket_router

    app.include_router(trades_router)
    app.include_router(listings_router)
    app.include_router(notifications_router)
    app.include_router(chat_router)
    app.include_router(websocket_router)

    return app


app = create_app()

__all__ = ['app', 'create_app', 'Services', 'build_services', 'get_current_user', 'get_services']
