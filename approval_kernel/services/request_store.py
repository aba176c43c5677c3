"""
ApprovalRequestStore -- optimistic, per-request serialized persistence.

Responsibility:
    The only write path to ``approval_requests``.  Every mutation runs as a
    read-modify-write in a fresh session and commits under the version
    check, retrying a bounded number of times when another writer won.

Architecture position:
    Kernel > Services -- imperative shell around the ORM models.

Invariants enforced:
    - Per-request serialization: each committed change increments
      ``version`` with ``WHERE version = :loaded`` so two concurrent
      read-modify-writes can never both succeed against the same version.
    - No lost updates: a losing writer re-runs its mutator on a fresh load,
      so its change is re-applied on top of the winner's.
    - Bounded: at most ``max_attempts`` tries and ``timeout_seconds`` of
      wall time per operation.

Failure modes:
    - NotFoundError if the request does not exist.
    - ConcurrentModificationError once retries are exhausted.
    - DuplicateRequestError when an insert collides on the open fingerprint.
    - Any error raised by the mutator propagates after rollback.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.approval import (
    OPEN_APPROVAL_STATUSES,
    ApprovalRequest,
    ApprovalStatus,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import (
    ConcurrentModificationError,
    DuplicateRequestError,
    NotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.approval import ApprovalRequestModel

logger = get_logger("services.request_store")

T = TypeVar("T")

# Lock contention on SQLite surfaces as OperationalError("database is locked")
_RETRYABLE = (StaleDataError, IntegrityError, OperationalError)


@dataclass(frozen=True)
class MutationResult(Generic[T]):
    request: ApprovalRequest
    value: T
    changed: bool
    attempts: int


class ApprovalRequestStore:
    """
    Optimistic read-modify-write access to approval requests.

    Contract:
        ``mutate(request_id, fn)`` calls ``fn(model, session)`` on a freshly
        loaded model.  ``fn`` may be called more than once and must derive
        everything it writes from the model it is given.  When ``fn``
        changes nothing the commit is a no-op and ``version`` is unchanged.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        max_attempts: int = 5,
        timeout_seconds: float = 5.0,
        retry_delay_seconds: float = 0.005,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts
        self._timeout_seconds = timeout_seconds
        self._retry_delay_seconds = retry_delay_seconds

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, request_id: UUID) -> ApprovalRequest:
        with self._session_factory() as session:
            return self._load(session, request_id).to_dto()

    def find_open_by_fingerprint(self, fingerprint: str) -> ApprovalRequest | None:
        with self._session_factory() as session:
            model = session.scalars(
                select(ApprovalRequestModel).where(
                    ApprovalRequestModel.open_fingerprint == fingerprint
                )
            ).first()
            return model.to_dto() if model is not None else None

    def find_breached(
        self,
        now: datetime,
        statuses: frozenset[ApprovalStatus] = OPEN_APPROVAL_STATUSES,
        limit: int | None = None,
    ) -> list[ApprovalRequest]:
        """Requests in ``statuses`` whose deadline is at or before ``now``.

        Ordered by priority (highest first), then earliest deadline.
        """
        stmt = (
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.status.in_([s.value for s in statuses]),
                ApprovalRequestModel.deadline_at <= now,
            )
            .order_by(
                ApprovalRequestModel.priority.desc(),
                ApprovalRequestModel.deadline_at.asc(),
                ApprovalRequestModel.created_at.asc(),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [m.to_dto() for m in session.scalars(stmt)]

    def find_approaching_deadline(
        self, now: datetime, window: timedelta,
    ) -> list[ApprovalRequest]:
        """Open requests due within ``window`` not yet reminded for that deadline."""
        stmt = (
            select(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.status.in_([s.value for s in OPEN_APPROVAL_STATUSES]),
                ApprovalRequestModel.deadline_at > now,
                ApprovalRequestModel.deadline_at <= now + window,
            )
            .order_by(
                ApprovalRequestModel.priority.desc(),
                ApprovalRequestModel.deadline_at.asc(),
            )
        )
        with self._session_factory() as session:
            return [
                m.to_dto()
                for m in session.scalars(stmt)
                if m.reminded_for_deadline != m.deadline_at
            ]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, model: ApprovalRequestModel) -> ApprovalRequest:
        """Persist a new request; the open-fingerprint constraint arbitrates races."""
        session = self._session_factory()
        try:
            session.add(model)
            session.flush()
            dto = model.to_dto()
            session.commit()
            return dto
        except IntegrityError as exc:
            session.rollback()
            existing = self.find_open_by_fingerprint(model.fingerprint)
            if existing is not None:
                raise DuplicateRequestError(
                    existing_request_id=str(existing.request_id),
                    action_type=existing.action_type.value,
                    requester_id=existing.requester_id,
                ) from exc
            raise
        finally:
            session.close()

    def mutate(
        self,
        request_id: UUID,
        fn: Callable[[ApprovalRequestModel, Session], T],
    ) -> MutationResult[T]:
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            session = self._session_factory()
            try:
                model = self._load(session, request_id)
                value = fn(model, session)
                changed = bool(session.new or session.dirty or session.deleted)
                if changed:
                    model.version = model.version + 1
                    model.updated_at = self._clock.now()
                    session.flush()
                dto = model.to_dto()
                session.commit()
                if attempt > 1:
                    logger.info(
                        "approval_request_write_retried",
                        extra={"request_id": str(request_id), "attempts": attempt},
                    )
                return MutationResult(request=dto, value=value, changed=changed, attempts=attempt)
            except _RETRYABLE as exc:
                session.rollback()
                elapsed = time.monotonic() - started
                if attempt >= self._max_attempts or elapsed >= self._timeout_seconds:
                    logger.warning(
                        "approval_request_write_conflict_exhausted",
                        extra={
                            "request_id": str(request_id),
                            "attempts": attempt,
                            "elapsed_seconds": round(elapsed, 3),
                            "error": type(exc).__name__,
                        },
                    )
                    raise ConcurrentModificationError(
                        "ApprovalRequest", str(request_id), attempt,
                    ) from exc
                logger.debug(
                    "approval_request_write_conflict",
                    extra={"request_id": str(request_id), "attempt": attempt},
                )
                time.sleep(self._retry_delay_seconds * attempt)
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    @staticmethod
    def _load(session: Session, request_id: UUID | str) -> ApprovalRequestModel:
        try:
            key = request_id if isinstance(request_id, UUID) else UUID(str(request_id))
        except ValueError:
            raise NotFoundError("ApprovalRequest", str(request_id)) from None
        model = session.get(ApprovalRequestModel, key)
        if model is None:
            raise NotFoundError("ApprovalRequest", str(request_id))
        return model
