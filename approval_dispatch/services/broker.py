"""
SqlQueueBroker -- database-backed durable queue (outbox table).

Contract:
    ``publish`` stores a QueuedEvent exactly once per ``event_id``.
    ``claim_due`` hands ready (or lease-expired) events to one worker at a
    time; the worker then reports back with ``mark_delivered``,
    ``reschedule`` or ``dead_letter``.

Architecture: approval_dispatch/services.  The only module that touches
    the queue tables.

Invariants enforced:
    - Idempotent publish: a duplicate ``event_id`` is accepted and ignored.
    - Exclusive claim: a conditional UPDATE on ``claim_count`` means two
      workers can never both claim the same row version.  On PostgreSQL the
      scan additionally uses ``FOR UPDATE SKIP LOCKED``.
    - Lease expiry: an in-flight row whose worker died becomes claimable
      again once ``lease_expires_at`` passes (at-least-once delivery).
    - Claim order: priority desc, then created_at, then producer sequence.

Failure modes:
    - DownstreamUnavailableError wraps every database error so the
      dispatcher can fall back to its local log.
    - NotFoundError from ``requeue_dead_letter`` for an unknown event.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import DownstreamUnavailableError, NotFoundError
from approval_kernel.logging_config import get_logger
from approval_dispatch.domain.types import DeadLetter, DeliveryStatus, QueuedEvent
from approval_dispatch.models.queue import DeadLetterModel, QueuedEventModel

logger = get_logger("dispatch.broker")


class SqlQueueBroker:
    """Durable queue on the engine's own database."""

    component = "queue_broker"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            raise DownstreamUnavailableError(self.component, f"{operation}: {exc}") from exc
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def publish(self, event: QueuedEvent) -> bool:
        """Store ``event``.  Returns False when it was already stored."""
        with self._session("publish") as session:
            exists = session.scalar(
                select(QueuedEventModel.id).where(QueuedEventModel.event_id == event.event_id)
            )
            if exists is not None:
                return False
            session.add(QueuedEventModel.from_dto(event))
            try:
                session.commit()
            except IntegrityError:
                # Concurrent publish of the same event id won
                session.rollback()
                return False
        return True

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def claim_due(
        self,
        now: datetime | None = None,
        limit: int = 50,
        lease: timedelta = timedelta(seconds=60),
    ) -> list[QueuedEvent]:
        now = now or self._clock.now()
        stmt = (
            select(QueuedEventModel)
            .where(
                or_(
                    and_(
                        QueuedEventModel.status == DeliveryStatus.READY.value,
                        QueuedEventModel.not_before <= now,
                    ),
                    and_(
                        QueuedEventModel.status == DeliveryStatus.IN_FLIGHT.value,
                        QueuedEventModel.lease_expires_at <= now,
                    ),
                )
            )
            .order_by(
                QueuedEventModel.priority.desc(),
                QueuedEventModel.created_at.asc(),
                QueuedEventModel.sequence.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claimed: list[QueuedEvent] = []
        with self._session("claim_due") as session:
            rows = [(m.id, m.claim_count, m.to_dto()) for m in session.scalars(stmt)]
            for row_id, claim_count, dto in rows:
                result = session.execute(
                    update(QueuedEventModel)
                    .where(
                        QueuedEventModel.id == row_id,
                        QueuedEventModel.claim_count == claim_count,
                    )
                    .values(
                        status=DeliveryStatus.IN_FLIGHT.value,
                        claim_count=claim_count + 1,
                        lease_expires_at=now + lease,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(dto)
            session.commit()
        return claimed

    def mark_delivered(self, event_id: str, now: datetime | None = None) -> None:
        now = now or self._clock.now()
        with self._session("mark_delivered") as session:
            session.execute(
                update(QueuedEventModel)
                .where(QueuedEventModel.event_id == event_id)
                .values(
                    status=DeliveryStatus.DELIVERED.value,
                    delivered_at=now,
                    lease_expires_at=None,
                )
            )
            session.commit()

    def reschedule(
        self, event_id: str, attempt: int, not_before: datetime, error: str,
    ) -> None:
        with self._session("reschedule") as session:
            session.execute(
                update(QueuedEventModel)
                .where(QueuedEventModel.event_id == event_id)
                .values(
                    status=DeliveryStatus.READY.value,
                    attempt=attempt,
                    not_before=not_before,
                    last_error=error,
                    lease_expires_at=None,
                )
            )
            session.commit()

    def dead_letter(
        self, event: QueuedEvent, attempts: int, error: str, now: datetime | None = None,
    ) -> DeadLetter:
        now = now or self._clock.now()
        with self._session("dead_letter") as session:
            session.execute(
                update(QueuedEventModel)
                .where(QueuedEventModel.event_id == event.event_id)
                .values(
                    status=DeliveryStatus.DEAD_LETTERED.value,
                    attempt=attempts,
                    last_error=error,
                    lease_expires_at=None,
                )
            )
            model = DeadLetterModel(
                event_id=event.event_id,
                topic=event.topic,
                payload=dict(event.payload),
                ordering_key=event.ordering_key,
                priority=event.priority,
                sequence=event.sequence,
                attempts=attempts,
                last_error=error,
                event_created_at=event.created_at,
                dead_lettered_at=now,
            )
            session.add(model)
            session.flush()
            dto = model.to_dto()
            session.commit()
        return dto

    def requeue_dead_letter(self, event_id: str, now: datetime | None = None) -> QueuedEvent:
        """Put a dead-lettered event back on the queue with its attempt reset."""
        now = now or self._clock.now()
        with self._session("requeue_dead_letter") as session:
            letter = session.scalars(
                select(DeadLetterModel)
                .where(
                    DeadLetterModel.event_id == event_id,
                    DeadLetterModel.requeued_at.is_(None),
                )
                .order_by(DeadLetterModel.dead_lettered_at.desc())
            ).first()
            if letter is None:
                raise NotFoundError("DeadLetter", event_id)
            letter.requeued_at = now

            row = session.scalars(
                select(QueuedEventModel).where(QueuedEventModel.event_id == event_id)
            ).first()
            if row is None:
                row = QueuedEventModel.from_dto(letter.to_dto().event)
                session.add(row)
            row.status = DeliveryStatus.READY.value
            row.attempt = 0
            row.not_before = now
            row.last_error = None
            row.lease_expires_at = None
            session.flush()
            dto = row.to_dto()
            session.commit()
        return dto

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def status_of(self, event_id: str) -> DeliveryStatus | None:
        with self._session("status_of") as session:
            status = session.scalar(
                select(QueuedEventModel.status).where(QueuedEventModel.event_id == event_id)
            )
        return DeliveryStatus(status) if status is not None else None

    def get(self, event_id: str) -> QueuedEvent | None:
        with self._session("get") as session:
            row = session.scalars(
                select(QueuedEventModel).where(QueuedEventModel.event_id == event_id)
            ).first()
            return row.to_dto() if row is not None else None

    def list_dead_letters(self, include_requeued: bool = False) -> list[DeadLetter]:
        stmt = select(DeadLetterModel).order_by(DeadLetterModel.dead_lettered_at)
        if not include_requeued:
            stmt = stmt.where(DeadLetterModel.requeued_at.is_(None))
        with self._session("list_dead_letters") as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def count_by_status(self) -> dict[str, int]:
        with self._session("count_by_status") as session:
            rows = session.execute(
                select(QueuedEventModel.status, func.count()).group_by(QueuedEventModel.status)
            ).all()
        return {status: count for status, count in rows}
