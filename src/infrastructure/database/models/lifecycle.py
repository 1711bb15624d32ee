# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Operation ledger tables.

- lifecycle_operations: one row per operation id (the idempotency key)
- lifecycle_operation_steps: ordered steps of each operation
- lifecycle_operation_events: append-only audit trail of transitions

Rows are never deleted. State changes are conditional UPDATEs so two
runners racing on the same operation cannot both win a transition.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.infrastructure.database.models.base import Base, TimestampMixin
from src.utils.datetime import utc_now


class LifecycleOperationRecord(Base, TimestampMixin):
    """Ledger entry of a provisioning or retirement."""

    __tablename__ = "lifecycle_operations"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    target_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    steps: Mapped[list["LifecycleStepRecord"]] = relationship(
        back_populates="operation",
        order_by="LifecycleStepRecord.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_lifecycle_operations_status_created", "status", "created_at"),
        Index("ix_lifecycle_operations_target", "target_account_id"),
    )


class LifecycleStepRecord(Base):
    """One step of a ledger entry."""

    __tablename__ = "lifecycle_operation_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("lifecycle_operations.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    operation: Mapped[LifecycleOperationRecord] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("operation_id", "name", name="uq_lifecycle_step_name"),
    )


class LifecycleEventRecord(Base):
    """Audit trail row. Append-only."""

    __tablename__ = "lifecycle_operation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("lifecycle_operations.id"),
        nullable=False,
        index=True,
    )
    event: Mapped[str] = mapped_column(String(40), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
