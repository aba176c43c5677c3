"""
Module: approval_kernel.models.delegation
Responsibility: ORM persistence for approver-to-approver delegations.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - from_approver_id <> to_approver_id (check constraint).
    - valid_from < valid_until (check constraint).
    - Rows are revoked (``revoked_at``), never deleted.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base

if TYPE_CHECKING:
    from approval_kernel.domain.approval import Delegation


class DelegationModel(Base):
    __tablename__ = "delegations"

    __table_args__ = (
        CheckConstraint(
            "from_approver_id <> to_approver_id",
            name="ck_delegations_distinct_parties",
        ),
        CheckConstraint("valid_from < valid_until", name="ck_delegations_window"),
        Index("ix_delegations_to_window", "to_approver_id", "valid_from", "valid_until"),
        Index("ix_delegations_from", "from_approver_id"),
    )

    from_approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    to_approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(nullable=False)
    valid_until: Mapped[datetime] = mapped_column(nullable=False)
    max_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    scope: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Delegation {self.from_approver_id} -> {self.to_approver_id} "
            f"[{self.valid_from}, {self.valid_until}]>"
        )

    def to_dto(self) -> Delegation:
        from approval_kernel.domain.approval import Delegation as DelegationDTO

        return DelegationDTO(
            delegation_id=self.id,
            from_approver_id=self.from_approver_id,
            to_approver_id=self.to_approver_id,
            valid_from=self.valid_from,
            valid_until=self.valid_until,
            max_value=self.max_value,
            scope=self.scope,
            created_by=self.created_by,
            created_at=self.created_at,
            revoked_at=self.revoked_at,
        )

    @classmethod
    def from_dto(cls, dto: Delegation) -> DelegationModel:
        return cls(
            id=dto.delegation_id,
            from_approver_id=dto.from_approver_id,
            to_approver_id=dto.to_approver_id,
            valid_from=dto.valid_from,
            valid_until=dto.valid_until,
            max_value=dto.max_value,
            scope=dto.scope,
            created_by=dto.created_by,
            created_at=dto.created_at,
            revoked_at=dto.revoked_at,
        )
