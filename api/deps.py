"""Shared FastAPI dependencies: the acting user and the service graph."""
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status

from chat import ChatService, UnreadTracker
from database.store import Store
from finalization import FinalizationCoordinator
from history import HistoryArchiver
from listings import ReservationManager
from notifications import NotificationEmitter
from trades import ProposalBoxes, ProposalManager


@dataclass
class Services:
    """Engines and collaborators wired onto one store."""
    store: Store
    archiver: HistoryArchiver
    coordinator: FinalizationCoordinator
    unread: UnreadTracker
    chat: ChatService
    emitter: NotificationEmitter
    proposals: ProposalManager
    reservations: ReservationManager
    boxes: ProposalBoxes


def build_services(store: Store, page_size: int = 20) -> Services:
    """Wire every engine onto store, sharing one coordinator and emitter."""
    archiver = HistoryArchiver(store)
    unread = UnreadTracker(store)
    chat = ChatService(store, unread)
    emitter = NotificationEmitter(store, chat)
    coordinator = FinalizationCoordinator(store, emitter)
    return Services(
        store=store,
        archiver=archiver,
        coordinator=coordinator,
        unread=unread,
        chat=chat,
        emitter=emitter,
        proposals=ProposalManager(store, coordinator, archiver, emitter),
        reservations=ReservationManager(store, coordinator, archiver, emitter),
        boxes=ProposalBoxes(store, page_size=page_size),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, 'services', None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return services


async def get_current_user(x_user_id: str = Header(None)) -> str:
    """FastAPI dependency for the acting user.

    The upstream gateway authenticates the caller and forwards the user id
    in the X-User-Id header.

    Raises:
        HTTPException: If the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )
    return x_user_id.strip()
