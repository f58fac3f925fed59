"""Finalization module for the two-party completion handshake.

Trades and listing sales close the same way: one party declares the
transaction done, the other party confirms or rejects. The coordinator
implements that handshake once, parameterized by a subject adapter per
transaction kind:

    none --request(A)--> pending(A) --request(B)--> completed
                             |
                             +--reject(B)--> none

The requester calling again while pending gets already_requested; it never
completes a handshake on its own. Every step runs as one atomic
read-check-write inside a store unit locked on the subject's row, so when
both parties request at once one of them creates the pending row and the
other observes it and completes.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from core.errors import ForbiddenError, InvalidStateTransitionError, NotFoundError
from core.events import (
    FINALIZATION_COMPLETED,
    FINALIZATION_REJECTED,
    FINALIZATION_REQUESTED,
)
from core.models import (
    Finalization,
    FinalizationOutcome,
    FinalizationResult,
    FinalizationState,
    FinalizationStatus,
    HandshakeState,
    TransactionKind,
)
from database import get_store
from database.store import LockTarget, Store, Unit

logger = logging.getLogger(__name__)


class FinalizationSubject(ABC):
    """Adapter describing one kind of transaction to the coordinator.

    Subclasses load the live row, name its two participants and run their
    side effects inside the coordinator's unit of work.
    """

    kind: TransactionKind
    # False when only initiators() may open a handshake
    symmetric: bool = True

    @abstractmethod
    async def lock_target(self, store: Store, transaction_id: UUID) -> LockTarget:
        """Row whose lock serializes every handshake step."""
        pass

    @abstractmethod
    async def load(self, unit: Unit, transaction_id: UUID) -> Any:
        """Load the live row or raise NotFoundError."""
        pass

    @abstractmethod
    def participants(self, row: Any) -> List[str]:
        """The two parties of row."""
        pass

    def initiators(self, row: Any) -> List[str]:
        return self.participants(row)

    @abstractmethod
    def is_finalizable(self, row: Any) -> bool:
        """Whether a fresh handshake may be opened on row."""
        pass

    def event_fields(self, row: Any) -> Dict[str, Any]:
        return {}

    async def on_requested(self, unit: Unit, row: Any, actor: str) -> None:
        pass

    async def on_completed(self, unit: Unit, row: Any, actor: str, finalization: Finalization) -> None:
        pass

    async def on_rejected(self, unit: Unit, row: Any, actor: str) -> None:
        pass


def handshake_state(
    kind: TransactionKind,
    transaction_id: UUID,
    active: Optional[Finalization]
) -> FinalizationState:
    """Project the active finalization row onto the handshake state."""
    if active is None:
        return FinalizationState(
            transaction_kind=kind,
            transaction_id=transaction_id,
            state=HandshakeState.NONE
        )
    state = HandshakeState.PENDING
    if active.status == FinalizationStatus.ACCEPTED:
        state = HandshakeState.COMPLETED
    return FinalizationState(
        transaction_kind=kind,
        transaction_id=transaction_id,
        state=state,
        requester=active.user_id,
        requested_at=active.finalized_at
    )


class FinalizationCoordinator:
    """Runs the completion handshake for registered subjects."""

    def __init__(self, store: Optional[Store] = None, emitter=None) -> None:
        """Initialize finalization coordinator.

        Args:
            store: Optional settlement store. If not provided, will get from database module.
            emitter: Optional notification emitter receiving committed events
        """
        self.store = store
        self.emitter = emitter
        self._subjects: Dict[TransactionKind, FinalizationSubject] = {}

    async def ensure_store(self):
        """Ensure we have a settlement store."""
        if not self.store:
            self.store = await get_store()

    def register(self, subject: FinalizationSubject) -> None:
        self._subjects[subject.kind] = subject

    def subject(self, kind: TransactionKind) -> FinalizationSubject:
        try:
            return self._subjects[TransactionKind(kind)]
        except KeyError:
            raise ValueError(f"No finalization subject registered for {kind}")

    async def emit(self, events) -> None:
        if self.emitter and len(events):
            await self.emitter.emit(events)

    async def request_finalization(
        self,
        kind: TransactionKind,
        transaction_id: UUID,
        actor: str
    ) -> FinalizationResult:
        """Declare a transaction done on behalf of actor.

        Returns:
            pending when actor opened the handshake, already_requested when
            actor had already opened it, completed when actor confirmed the
            other party's request

        Raises:
            NotFoundError: If the transaction does not exist
            ForbiddenError: If actor is not allowed to finalize it
            InvalidStateTransitionError: If the transaction cannot be finalized
            ConflictError: If a concurrent writer won the race
        """
        await self.ensure_store()
        subject = self.subject(kind)
        lock = await subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            row = await subject.load(unit, transaction_id)
            result = await self.request_in_unit(unit, subject, row, actor)

        await self.emit(unit.events)
        return result

    async def request_in_unit(
        self,
        unit: Unit,
        subject: FinalizationSubject,
        row: Any,
        actor: str
    ) -> FinalizationResult:
        """Handshake request step for callers already holding the subject's unit."""
        participants = subject.participants(row)
        if actor not in participants:
            raise ForbiddenError(f"{actor} is not a party to {subject.kind.value} {row.id}")

        active = await unit.get_active_finalization(subject.kind, row.id)

        if active is not None and active.status == FinalizationStatus.ACCEPTED:
            raise InvalidStateTransitionError(
                f"{subject.kind.value} {row.id} is already finalized",
                current=HandshakeState.COMPLETED.value
            )

        if active is None:
            if not subject.symmetric and actor not in subject.initiators(row):
                raise ForbiddenError(
                    f"Only {', '.join(subject.initiators(row))} may start finalizing "
                    f"{subject.kind.value} {row.id}"
                )
            if not subject.is_finalizable(row):
                raise InvalidStateTransitionError(
                    f"{subject.kind.value} {row.id} cannot be finalized from {row.status.value}",
                    current=row.status.value
                )
            active = await unit.insert_finalization(subject.kind, row.id, actor)
            await subject.on_requested(unit, row, actor)
            self._add_event(unit, subject, row, FINALIZATION_REQUESTED, actor, HandshakeState.PENDING)
            outcome = FinalizationOutcome.PENDING
            logger.info(f"{actor} requested finalization of {subject.kind.value} {row.id}")

        elif active.user_id == actor:
            outcome = FinalizationOutcome.ALREADY_REQUESTED
            logger.debug(f"{actor} re-requested finalization of {subject.kind.value} {row.id}")

        else:
            active = await unit.update_finalization(
                active,
                status=FinalizationStatus.ACCEPTED,
                accepted_by=actor,
                accepted_at=datetime.now(timezone.utc)
            )
            await subject.on_completed(unit, row, actor, active)
            self._add_event(unit, subject, row, FINALIZATION_COMPLETED, actor, HandshakeState.COMPLETED)
            outcome = FinalizationOutcome.COMPLETED
            logger.info(
                f"{actor} confirmed {active.user_id}'s finalization of "
                f"{subject.kind.value} {row.id}"
            )

        return FinalizationResult(
            transaction_kind=subject.kind,
            transaction_id=row.id,
            outcome=outcome,
            requester=active.user_id,
            finalization=handshake_state(subject.kind, row.id, active)
        )

    async def reject_finalization(
        self,
        kind: TransactionKind,
        transaction_id: UUID,
        actor: str
    ) -> FinalizationState:
        """Decline the other party's pending finalization.

        The rejected row is kept for audit and the transaction returns to its
        pre-handshake posture, so either party may request again.

        Raises:
            NotFoundError: If the transaction does not exist
            ForbiddenError: If actor is not a party, or is the requester
            InvalidStateTransitionError: If nothing is pending
        """
        await self.ensure_store()
        subject = self.subject(kind)
        lock = await subject.lock_target(self.store, transaction_id)

        async with self.store.unit(lock) as unit:
            row = await subject.load(unit, transaction_id)
            state = await self.reject_in_unit(unit, subject, row, actor)

        await self.emit(unit.events)
        return state

    async def reject_in_unit(
        self,
        unit: Unit,
        subject: FinalizationSubject,
        row: Any,
        actor: str
    ) -> FinalizationState:
        if actor not in subject.participants(row):
            raise ForbiddenError(f"{actor} is not a party to {subject.kind.value} {row.id}")

        active = await unit.get_active_finalization(subject.kind, row.id)
        if active is None or active.status != FinalizationStatus.PENDING:
            current = handshake_state(subject.kind, row.id, active).state
            raise InvalidStateTransitionError(
                f"No pending finalization to reject for {subject.kind.value} {row.id}",
                current=current.value
            )
        if active.user_id == actor:
            raise ForbiddenError("The requester cannot reject their own finalization request")

        await unit.update_finalization(
            active,
            status=FinalizationStatus.REJECTED,
            rejected_at=datetime.now(timezone.utc)
        )
        await subject.on_rejected(unit, row, actor)
        self._add_event(unit, subject, row, FINALIZATION_REJECTED, actor, HandshakeState.NONE)
        logger.info(f"{actor} rejected finalization of {subject.kind.value} {row.id}")

        return handshake_state(subject.kind, row.id, None)

    async def get_state(
        self,
        kind: TransactionKind,
        transaction_id: UUID,
        viewer: str
    ) -> FinalizationState:
        """Current handshake state, visible to the two parties only."""
        await self.ensure_store()
        subject = self.subject(kind)
        async with self.store.unit() as unit:
            try:
                row = await subject.load(unit, transaction_id)
            except NotFoundError:
                row = None
            if row is None or viewer not in subject.participants(row):
                raise NotFoundError(f"{subject.kind.value} {transaction_id} not found")
            return await self.state_in_unit(unit, subject.kind, transaction_id)

    async def state_in_unit(
        self,
        unit: Unit,
        kind: TransactionKind,
        transaction_id: UUID
    ) -> FinalizationState:
        active = await unit.get_active_finalization(kind, transaction_id)
        return handshake_state(kind, transaction_id, active)

    def _add_event(
        self,
        unit: Unit,
        subject: FinalizationSubject,
        row: Any,
        name: str,
        actor: str,
        state: HandshakeState
    ) -> None:
        unit.events.add(
            name,
            transaction_kind=subject.kind,
            transaction_id=row.id,
            actor=actor,
            state=state.value,
            participants=subject.participants(row),
            **subject.event_fields(row)
        )


__all__ = [
    'FinalizationCoordinator',
    'FinalizationSubject',
    'handshake_state',
]
