# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Operation ledger for student lifecycle operations.

The ledger is the durable record of every provisioning and retirement,
keyed by operation id (the idempotency key). It is the only shared
mutable state of the service: every transition is a conditional UPDATE
whose row count decides which caller won, so two runners racing on the
same operation id can never both believe they performed a transition.

Status transitions:

    pending ──complete──▶ completed
    pending ──fail──────▶ failed ──reopen (retryable only)──▶ pending
    pending ──mark_needs_compensation──▶ needs_compensation ──fail──▶ failed
    failed (retryable) ──flag_orphaned_identity──▶ needs_compensation

A runner claims an entry for a lease and renews it before each external
call. Transitions that carry an ``owner`` only apply while that runner
still holds the claim; otherwise they raise ClaimLostError and write
nothing.

Every transition appends a row to the audit trail. Nothing is deleted.

Example:
    >>> ledger = OperationLedger(database)
    >>> operation = await ledger.begin("S1", OperationKind.RETIRE, RETIRE_STEPS)
    >>> await ledger.mark_step_done("S1", "fees")
    True
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.domains.lifecycle.errors import (
    AlreadyTerminalError,
    ClaimLostError,
    DuplicateOperationError,
    InvalidTransitionError,
    OperationNotFoundError,
)
from src.domains.lifecycle.types import (
    FailureReason,
    LifecycleEvent,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    ProvisionStep,
    StepState,
    StepStatus,
)
from src.infrastructure.database.connection import LedgerDatabase
from src.infrastructure.database.models import (
    LifecycleEventRecord,
    LifecycleOperationRecord,
    LifecycleStepRecord,
)
from src.utils.datetime import ensure_utc, seconds_from_now, utc_now

logger = logging.getLogger(__name__)

_NON_TERMINAL = (OperationStatus.PENDING.value, OperationStatus.NEEDS_COMPENSATION.value)
_IDENTITY_ABSENT = "identity_absent"


class OperationLedger:
    """Durable, race-safe record of lifecycle operations.

    Attributes:
        _db: Ledger database handle.
        _clock: Source of the current UTC time.
    """

    def __init__(
        self,
        database: LedgerDatabase,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the ledger.

        Args:
            database: Initialized ledger database handle.
            clock: Returns the current UTC time; injectable for tests.
        """
        self._db = database
        self._clock = clock

    # =========================================================================
    # Creation and lookup
    # =========================================================================

    async def begin(
        self,
        operation_id: str,
        kind: OperationKind,
        steps: Sequence[str],
        payload: dict[str, Any] | None = None,
        target_account_id: str | None = None,
    ) -> LifecycleOperation:
        """Create a pending entry, or return the existing one.

        Re-beginning an operation id of the same kind returns the stored
        entry unchanged so the caller can resume it.

        Args:
            operation_id: Idempotency key.
            kind: Provision or Retire.
            steps: Step names in execution order.
            payload: Request fields to record with the entry.
            target_account_id: Account id if already known (Retire).

        Returns:
            The new or existing entry.

        Raises:
            DuplicateOperationError: If the id exists with another kind.
        """
        now = self._clock()

        async with self._db.session() as session:
            session.add(
                LifecycleOperationRecord(
                    id=operation_id,
                    kind=kind.value,
                    status=OperationStatus.PENDING.value,
                    target_account_id=target_account_id,
                    payload=dict(payload or {}),
                    attempt_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                existing = await self._load(session, operation_id)
                if existing is None:
                    # The competing insert was rolled back
                    raise DuplicateOperationError(
                        f"Operation {operation_id} is being created concurrently",
                        operation_id=operation_id,
                    )
                if existing.kind != kind.value:
                    raise DuplicateOperationError(
                        f"Operation {operation_id} already exists as {existing.kind}",
                        operation_id=operation_id,
                    )
                logger.debug("Ledger entry %s already exists, resuming", operation_id)
                return self._to_domain(existing)

            session.add_all(
                LifecycleStepRecord(
                    operation_id=operation_id,
                    position=position,
                    name=name,
                    status=StepStatus.PENDING.value,
                    updated_at=now,
                )
                for position, name in enumerate(steps)
            )
            self._record(session, operation_id, "begun", kind.value, now)
            await session.flush()

            record = await self._load(session, operation_id)

        logger.info("Ledger entry begun: %s (%s)", operation_id, kind.value)
        return self._to_domain(record)

    async def get(self, operation_id: str) -> LifecycleOperation:
        """Get the current entry.

        Raises:
            OperationNotFoundError: If no entry exists.
        """
        async with self._db.session() as session:
            record = await self._load(session, operation_id)
            if record is None:
                raise OperationNotFoundError(operation_id)
            return self._to_domain(record)

    async def events(self, operation_id: str) -> list[LifecycleEvent]:
        """Get the audit trail of an entry, oldest first.

        Raises:
            OperationNotFoundError: If no entry exists.
        """
        async with self._db.session() as session:
            await self._require(session, operation_id)
            result = await session.execute(
                select(LifecycleEventRecord)
                .where(LifecycleEventRecord.operation_id == operation_id)
                .order_by(LifecycleEventRecord.id)
            )
            return [
                LifecycleEvent(
                    operation_id=row.operation_id,
                    event=row.event,
                    detail=row.detail,
                    occurred_at=ensure_utc(row.occurred_at),
                )
                for row in result.scalars().all()
            ]

    # =========================================================================
    # Runner ownership
    # =========================================================================

    async def claim(
        self,
        operation_id: str,
        owner: str,
        lease_seconds: float,
        statuses: Sequence[OperationStatus] = (OperationStatus.PENDING,),
    ) -> LifecycleOperation | None:
        """Atomically take ownership of an entry.

        Succeeds only if the entry is in one of ``statuses`` and nobody
        else holds an unexpired lease on it. Each successful claim counts
        as one attempt.

        Returns:
            The claimed entry, or None if another runner owns it or the
            status does not allow running it.

        Raises:
            OperationNotFoundError: If no entry exists.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status.in_([s.value for s in statuses]),
                    or_(
                        LifecycleOperationRecord.claimed_by.is_(None),
                        LifecycleOperationRecord.claim_expires_at < now,
                    ),
                )
                .values(
                    claimed_by=owner,
                    claim_expires_at=seconds_from_now(lease_seconds, now),
                    attempt_count=LifecycleOperationRecord.attempt_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await self._require(session, operation_id)
                return None

            self._record(session, operation_id, "claimed", owner, now)
            record = await self._load(session, operation_id)
            return self._to_domain(record)

    async def release(self, operation_id: str, owner: str) -> bool:
        """Give up ownership of an entry.

        Returns:
            True if ``owner`` held the claim.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.claimed_by == owner,
                )
                .values(claimed_by=None, claim_expires_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._record(session, operation_id, "released", owner, now)
                return True
            return False

    async def renew(self, operation_id: str, owner: str, lease_seconds: float) -> None:
        """Extend the lease of a claim before the next external call.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(*self._owned(operation_id, owner))
                .values(claim_expires_at=seconds_from_now(lease_seconds, now), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._require(session, operation_id)
                raise ClaimLostError(operation_id, owner)

    # =========================================================================
    # Step transitions
    # =========================================================================

    async def mark_step_done(
        self,
        operation_id: str,
        step_name: str,
        target_account_id: str | None = None,
        owner: str | None = None,
    ) -> bool:
        """Mark a step as done. Idempotent.

        Args:
            operation_id: Ledger entry.
            step_name: Step to mark.
            target_account_id: Records the account id on the entry, used
                when the identity step of a Provision completes.
            owner: Runner that must hold the claim for the write to happen.

        Returns:
            True if this call performed the transition, False if the step
            was already done.

        Raises:
            OperationNotFoundError: If no entry exists.
            InvalidTransitionError: If the entry has no such step.
            ClaimLostError: If ``owner`` no longer holds the claim.
        """
        now = self._clock()

        async with self._db.session() as session:
            record = await self._require(session, operation_id)
            if step_name not in {step.name for step in record.steps}:
                raise InvalidTransitionError(operation_id, record.status, f"mark unknown step {step_name!r} done on")
            await self._guard_owner(session, operation_id, owner, now)

            result = await session.execute(
                update(LifecycleStepRecord)
                .where(
                    LifecycleStepRecord.operation_id == operation_id,
                    LifecycleStepRecord.name == step_name,
                    LifecycleStepRecord.status != StepStatus.DONE.value,
                )
                .values(status=StepStatus.DONE.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            values: dict[str, Any] = {"updated_at": now}
            if target_account_id is not None:
                values["target_account_id"] = target_account_id
            await session.execute(
                update(LifecycleOperationRecord)
                .where(LifecycleOperationRecord.id == operation_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self._record(session, operation_id, "step_done", step_name, now)

        logger.debug("Ledger step done: %s/%s", operation_id, step_name)
        return True

    async def mark_step_failed(
        self,
        operation_id: str,
        step_name: str,
        detail: str | None = None,
        owner: str | None = None,
    ) -> None:
        """Mark a step as failed. A step that is already done stays done.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
        """
        now = self._clock()

        async with self._db.session() as session:
            await self._require(session, operation_id)
            await self._guard_owner(session, operation_id, owner, now)
            await session.execute(
                update(LifecycleStepRecord)
                .where(
                    LifecycleStepRecord.operation_id == operation_id,
                    LifecycleStepRecord.name == step_name,
                    LifecycleStepRecord.status != StepStatus.DONE.value,
                )
                .values(status=StepStatus.FAILED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self._record(session, operation_id, "step_failed", _join(step_name, detail), now)

    # =========================================================================
    # Entry transitions
    # =========================================================================

    async def complete(self, operation_id: str, owner: str | None = None) -> LifecycleOperation:
        """Transition a pending entry to completed.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
            AlreadyTerminalError: If the entry is already terminal.
            InvalidTransitionError: If the entry awaits compensation.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status == OperationStatus.PENDING.value,
                    *self._owner_clause(owner),
                )
                .values(
                    status=OperationStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_for_status(session, operation_id, "complete", owner)

            self._record(session, operation_id, "completed", None, now)
            record = await self._load(session, operation_id)

        logger.info("Ledger entry completed: %s", operation_id)
        return self._to_domain(record)

    async def fail(
        self,
        operation_id: str,
        reason: str,
        step: str | None = None,
        detail: str | None = None,
        retryable: bool = False,
        owner: str | None = None,
    ) -> LifecycleOperation:
        """Transition a non-terminal entry to failed.

        Args:
            operation_id: Ledger entry.
            reason: Failure reason (see FailureReason).
            step: Step that caused the failure.
            detail: Provider message or other context.
            retryable: Whether resubmission may reopen the entry.
            owner: Runner that must hold the claim for the write to happen.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
            AlreadyTerminalError: If the entry is already terminal.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status.in_(_NON_TERMINAL),
                    *self._owner_clause(owner),
                )
                .values(
                    status=OperationStatus.FAILED.value,
                    failure_reason=reason,
                    failure_detail=detail,
                    failed_step=step,
                    retryable=retryable,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_for_status(session, operation_id, "fail", owner)

            self._record(session, operation_id, "failed", _join(reason, detail), now)
            record = await self._load(session, operation_id)

        logger.info("Ledger entry failed: %s (%s)", operation_id, reason)
        return self._to_domain(record)

    async def mark_needs_compensation(
        self,
        operation_id: str,
        reason: str,
        step: str | None = None,
        detail: str | None = None,
        owner: str | None = None,
    ) -> LifecycleOperation:
        """Record that a compensating action is about to be attempted.

        Written before the compensating call so that a crash during
        compensation leaves a discoverable entry behind.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
            AlreadyTerminalError: If the entry is already terminal.
            InvalidTransitionError: If the entry is not pending.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status == OperationStatus.PENDING.value,
                    *self._owner_clause(owner),
                )
                .values(
                    status=OperationStatus.NEEDS_COMPENSATION.value,
                    failure_reason=reason,
                    failure_detail=detail,
                    failed_step=step,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_for_status(session, operation_id, "mark needs compensation on", owner)

            self._record(session, operation_id, "needs_compensation", _join(reason, detail), now)
            record = await self._load(session, operation_id)

        return self._to_domain(record)

    async def escalate(
        self,
        operation_id: str,
        reason: str,
        detail: str | None = None,
        owner: str | None = None,
    ) -> LifecycleOperation:
        """Record that compensation failed. The entry stays in needs_compensation.

        Raises:
            OperationNotFoundError: If no entry exists.
            ClaimLostError: If ``owner`` no longer holds the claim.
            AlreadyTerminalError: If the entry is already terminal.
            InvalidTransitionError: If the entry is not awaiting compensation.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status == OperationStatus.NEEDS_COMPENSATION.value,
                    *self._owner_clause(owner),
                )
                .values(failure_reason=reason, failure_detail=detail, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_for_status(session, operation_id, "escalate", owner)

            self._record(session, operation_id, "escalated", _join(reason, detail), now)
            record = await self._load(session, operation_id)

        return self._to_domain(record)

    async def reopen(self, operation_id: str) -> LifecycleOperation:
        """Move a retryable failed entry back to pending.

        Steps that are done stay done, failed steps become pending again.
        Reopening a pending entry is a no-op.

        Raises:
            OperationNotFoundError: If no entry exists.
            AlreadyTerminalError: If the entry completed.
            InvalidTransitionError: If the failure is not retryable or the
                entry awaits compensation.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status == OperationStatus.FAILED.value,
                    LifecycleOperationRecord.retryable.is_(True),
                )
                .values(
                    status=OperationStatus.PENDING.value,
                    failure_reason=None,
                    failure_detail=None,
                    failed_step=None,
                    retryable=False,
                    completed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                record = await self._require(session, operation_id)
                if record.status == OperationStatus.PENDING.value:
                    return self._to_domain(record)
                if record.status == OperationStatus.COMPLETED.value:
                    raise AlreadyTerminalError(operation_id, record.status)
                raise InvalidTransitionError(operation_id, record.status, "reopen")

            await session.execute(
                update(LifecycleStepRecord)
                .where(
                    LifecycleStepRecord.operation_id == operation_id,
                    LifecycleStepRecord.status == StepStatus.FAILED.value,
                )
                .values(status=StepStatus.PENDING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self._record(session, operation_id, "reopened", None, now)
            record = await self._load(session, operation_id)

        logger.info("Ledger entry reopened: %s", operation_id)
        return self._to_domain(record)

    async def flag_orphaned_identity(
        self,
        operation_id: str,
        account_id: str,
        detail: str | None = None,
    ) -> LifecycleOperation | None:
        """Move a retryable failed Provision to needs_compensation.

        Used when the identity call of a failed Provision turns out to
        have landed after all, leaving an account nobody will remove.

        Returns:
            The flagged entry, or None if it is no longer a retryable
            failure (for example because a resubmission reopened it).

        Raises:
            OperationNotFoundError: If no entry exists.
        """
        now = self._clock()

        async with self._db.session() as session:
            result = await session.execute(
                update(LifecycleOperationRecord)
                .where(
                    LifecycleOperationRecord.id == operation_id,
                    LifecycleOperationRecord.status == OperationStatus.FAILED.value,
                    LifecycleOperationRecord.retryable.is_(True),
                )
                .values(
                    status=OperationStatus.NEEDS_COMPENSATION.value,
                    target_account_id=account_id,
                    failure_reason=FailureReason.IDENTITY_ORPHANED.value,
                    failure_detail=detail,
                    retryable=False,
                    completed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._require(session, operation_id)
                return None

            self._record(
                session,
                operation_id,
                "needs_compensation",
                _join(FailureReason.IDENTITY_ORPHANED.value, detail),
                now,
            )
            record = await self._load(session, operation_id)

        logger.warning("Ledger entry %s left identity %s behind", operation_id, account_id)
        return self._to_domain(record)

    async def confirm_identity_absent(self, operation_id: str) -> None:
        """Record that the failed identity call of an entry left no account.

        Raises:
            OperationNotFoundError: If no entry exists.
        """
        async with self._db.session() as session:
            await self._require(session, operation_id)
            self._record(session, operation_id, _IDENTITY_ABSENT, None, self._clock())

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_operations(
        self,
        kind: OperationKind | None = None,
        status: OperationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[LifecycleOperation], int]:
        """List entries, newest first.

        Returns:
            Tuple of (entries, total matching count).
        """
        filters = []
        if kind is not None:
            filters.append(LifecycleOperationRecord.kind == kind.value)
        if status is not None:
            filters.append(LifecycleOperationRecord.status == status.value)

        async with self._db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(LifecycleOperationRecord).where(*filters)
            )
            result = await session.execute(
                select(LifecycleOperationRecord)
                .options(selectinload(LifecycleOperationRecord.steps))
                .where(*filters)
                .order_by(LifecycleOperationRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [self._to_domain(r) for r in result.scalars().all()], int(total or 0)

    async def list_needing_attention(self) -> list[LifecycleOperation]:
        """Entries waiting for compensation, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(LifecycleOperationRecord)
                .options(selectinload(LifecycleOperationRecord.steps))
                .where(LifecycleOperationRecord.status == OperationStatus.NEEDS_COMPENSATION.value)
                .order_by(LifecycleOperationRecord.created_at)
            )
            return [self._to_domain(r) for r in result.scalars().all()]

    async def list_stale(self, created_before: datetime) -> list[LifecycleOperation]:
        """Non-terminal entries created before the cutoff, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(LifecycleOperationRecord)
                .options(selectinload(LifecycleOperationRecord.steps))
                .where(
                    LifecycleOperationRecord.status.in_(_NON_TERMINAL),
                    LifecycleOperationRecord.created_at < created_before,
                )
                .order_by(LifecycleOperationRecord.created_at)
            )
            return [self._to_domain(r) for r in result.scalars().all()]

    async def list_unconfirmed_identity_failures(
        self,
        failed_before: datetime,
    ) -> list[LifecycleOperation]:
        """Retryable identity failures whose account was never checked for.

        A Provision that failed on an unavailable identity provider may
        still have created the account. Entries are listed until
        confirm_identity_absent() is recorded after their latest failure.
        """
        checked = (
            select(LifecycleEventRecord.id)
            .where(
                LifecycleEventRecord.operation_id == LifecycleOperationRecord.id,
                LifecycleEventRecord.event == _IDENTITY_ABSENT,
                LifecycleEventRecord.occurred_at >= LifecycleOperationRecord.completed_at,
            )
            .exists()
        )

        async with self._db.session() as session:
            result = await session.execute(
                select(LifecycleOperationRecord)
                .options(selectinload(LifecycleOperationRecord.steps))
                .where(
                    LifecycleOperationRecord.kind == OperationKind.PROVISION.value,
                    LifecycleOperationRecord.status == OperationStatus.FAILED.value,
                    LifecycleOperationRecord.retryable.is_(True),
                    LifecycleOperationRecord.failed_step == ProvisionStep.IDENTITY.value,
                    LifecycleOperationRecord.completed_at < failed_before,
                    ~checked,
                )
                .order_by(LifecycleOperationRecord.completed_at)
            )
            return [self._to_domain(r) for r in result.scalars().all()]

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load(self, session: AsyncSession, operation_id: str) -> LifecycleOperationRecord | None:
        result = await session.execute(
            select(LifecycleOperationRecord)
            .options(selectinload(LifecycleOperationRecord.steps))
            .where(LifecycleOperationRecord.id == operation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, session: AsyncSession, operation_id: str) -> LifecycleOperationRecord:
        record = await self._load(session, operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id)
        return record

    @staticmethod
    def _owner_clause(owner: str | None) -> list[Any]:
        if owner is None:
            return []
        return [LifecycleOperationRecord.claimed_by == owner]

    @classmethod
    def _owned(cls, operation_id: str, owner: str) -> list[Any]:
        return [LifecycleOperationRecord.id == operation_id, *cls._owner_clause(owner)]

    async def _guard_owner(
        self,
        session: AsyncSession,
        operation_id: str,
        owner: str | None,
        now: datetime,
    ) -> None:
        """Lock the entry row for ``owner`` inside the current transaction."""
        if owner is None:
            return
        result = await session.execute(
            update(LifecycleOperationRecord)
            .where(*self._owned(operation_id, owner))
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Runner %s lost its claim on %s", owner, operation_id)
            raise ClaimLostError(operation_id, owner)

    async def _raise_for_status(
        self,
        session: AsyncSession,
        operation_id: str,
        transition: str,
        owner: str | None = None,
    ) -> None:
        """Explain why a conditional transition matched no row."""
        record = await self._require(session, operation_id)
        if owner is not None and record.claimed_by != owner:
            logger.warning("Runner %s lost its claim on %s", owner, operation_id)
            raise ClaimLostError(operation_id, owner)
        if OperationStatus(record.status).is_terminal:
            logger.error(
                "Ledger entry %s is already %s, refusing to %s it",
                operation_id,
                record.status,
                transition,
            )
            raise AlreadyTerminalError(operation_id, record.status)
        raise InvalidTransitionError(operation_id, record.status, transition)

    @staticmethod
    def _record(
        session: AsyncSession,
        operation_id: str,
        event: str,
        detail: str | None,
        occurred_at: datetime,
    ) -> None:
        session.add(
            LifecycleEventRecord(
                operation_id=operation_id,
                event=event,
                detail=detail,
                occurred_at=occurred_at,
            )
        )

    @staticmethod
    def _to_domain(record: LifecycleOperationRecord) -> LifecycleOperation:
        return LifecycleOperation(
            operation_id=record.id,
            kind=OperationKind(record.kind),
            status=OperationStatus(record.status),
            steps=tuple(
                StepState(
                    name=step.name,
                    status=StepStatus(step.status),
                    position=step.position,
                    updated_at=ensure_utc(step.updated_at),
                )
                for step in sorted(record.steps, key=lambda s: s.position)
            ),
            target_account_id=record.target_account_id,
            payload=dict(record.payload or {}),
            failure_reason=record.failure_reason,
            failed_step=record.failed_step,
            retryable=record.retryable,
            attempt_count=record.attempt_count,
            claimed_by=record.claimed_by,
            claim_expires_at=ensure_utc(record.claim_expires_at),
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
            completed_at=ensure_utc(record.completed_at),
        )


def _join(head: str, detail: str | None) -> str:
    return f"{head}: {detail}" if detail else head
