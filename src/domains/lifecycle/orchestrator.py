# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Lifecycle orchestrator for student identities.

Provisioning and retiring a student writes to two independently failing
stores, the identity provider and the document store, with no shared
transaction. The orchestrator makes those writes safe by convention:

1. Requests pass the validation gate before anything is written.
2. A ledger entry is written before the first external call.
3. Steps run strictly in order, each marked done in the ledger before
   the next one starts.
4. A Provision whose profile write fails deletes the identity it just
   created. If that cleanup fails too, the entry stays in
   needs_compensation and is surfaced to operators.
5. A Retire deletes dependents first (fees, results, profile, identity)
   and is never rolled back: callers resubmit until it completes.

The provisioning flow:
    Start → IdentityCreated → ProfileCreated
                 └─ profile failed → NeedsCompensation → IdentityDeleted

The retirement flow:
    Start → FeesDeleted → ResultsDeleted → ProfileDeleted → IdentityDeleted

Example:
    >>> orchestrator = LifecycleOrchestrator(ledger, identity_store, document_store)
    >>> outcome = await orchestrator.provision_student(request)
    >>> await orchestrator.retire_student(outcome.account_id)
"""

from collections.abc import Callable
from typing import Any
from uuid import uuid4

from src.domains.lifecycle.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    ClaimLostError,
    CompensationFailedError,
    DocumentNotFoundError,
    DuplicateOperationError,
    IdentityCreationFailedError,
    InvalidTransitionError,
    LifecycleError,
    ProfileCreationCompensatedError,
    RetireStepFailedError,
    StoreError,
    StoreUnavailableError,
)
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.ports import DocumentStore, IdentityStore
from src.domains.lifecycle.retry import StepRunner
from src.domains.lifecycle.types import (
    PROVISION_STEPS,
    RETIRE_STEPS,
    STUDENT_ID_FIELD,
    Collections,
    FailureReason,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    ProvisionCommand,
    ProvisionOutcome,
    ProvisionStep,
    RetireOutcome,
    RetireStep,
)
from src.domains.lifecycle.validation import (
    validate_provision_request,
    validate_retire_request,
)
from src.models.lifecycle import ProvisionStudentRequest, RetireStudentRequest
from src.utils.datetime import format_iso
from src.utils.logging import bind_context, clear_context, get_logger

logger = get_logger(__name__)


def _new_id() -> str:
    return uuid4().hex


class LifecycleOrchestrator:
    """Sequences multi-store writes for provisioning and retirement.

    Holds no shared mutable state of its own; the ledger is the single
    point of coordination, so any number of orchestrators may run
    against the same ledger.

    Attributes:
        _ledger: Operation ledger.
        _identity: Identity provider adapter.
        _documents: Document store adapter.
        _runner: Retry/timeout policy for external calls.
        _claim_lease_seconds: Lease taken on an entry while running it.
    """

    def __init__(
        self,
        ledger: OperationLedger,
        identity_store: IdentityStore,
        document_store: DocumentStore,
        step_runner: StepRunner | None = None,
        claim_lease_seconds: float = 120,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            ledger: Operation ledger.
            identity_store: Identity provider adapter.
            document_store: Document store adapter.
            step_runner: Retry/timeout policy, defaults to RetryPolicy().
            claim_lease_seconds: Lease taken on an entry while running it.
            id_factory: Generates operation ids, account ids and runner ids.
        """
        self._ledger = ledger
        self._identity = identity_store
        self._documents = document_store
        self._runner = step_runner or StepRunner()
        self._claim_lease_seconds = claim_lease_seconds
        self._new_id = id_factory

    # =========================================================================
    # Provision
    # =========================================================================

    async def provision_student(self, request: ProvisionStudentRequest) -> ProvisionOutcome:
        """Create the identity account, then the profile document.

        Resubmitting with the same ``request_id`` returns the stored
        result if the operation completed and resumes it otherwise.

        Args:
            request: Provisioning request.

        Returns:
            ProvisionOutcome with the new account id.

        Raises:
            InvalidInputError: Request rejected; nothing was written.
            IdentityCreationFailedError: Account not created.
            ProfileCreationCompensatedError: Profile not written, account removed.
            CompensationFailedError: Profile not written, account left behind.
            DuplicateOperationError: Another runner owns the operation, or the
                request id belongs to a different request.
        """
        command = validate_provision_request(request)
        operation_id = command.request_id or self._new_id()

        operation = await self._ledger.begin(
            operation_id,
            OperationKind.PROVISION,
            PROVISION_STEPS,
            payload={**command.ledger_payload(), "proposed_account_id": self._new_id()},
        )
        if operation.payload.get("email") != command.email:
            raise DuplicateOperationError(
                f"Request id {operation_id} was already used for another student",
                operation_id=operation_id,
            )

        bind_context(operation_id=operation_id, kind=OperationKind.PROVISION.value)
        try:
            if operation.status == OperationStatus.FAILED and operation.retryable:
                operation = await self._ledger.reopen(operation_id)
            if operation.status != OperationStatus.PENDING:
                return self._provision_result(operation)

            owner = self._new_id()
            claimed = await self._ledger.claim(operation_id, owner, self._claim_lease_seconds)
            if claimed is None:
                current = await self._ledger.get(operation_id)
                if current.status == OperationStatus.PENDING:
                    raise DuplicateOperationError(
                        f"Provisioning {operation_id} is already running",
                        operation_id=operation_id,
                    )
                return self._provision_result(current)

            try:
                return await self._run_provision(claimed, command, owner)
            except ClaimLostError as e:
                raise self._taken_over(operation_id, e) from e
            finally:
                await self._ledger.release(operation_id, owner)
        finally:
            clear_context()

    async def _run_provision(
        self,
        operation: LifecycleOperation,
        command: ProvisionCommand,
        owner: str,
    ) -> ProvisionOutcome:
        operation_id = operation.operation_id
        account_id = operation.target_account_id

        if not operation.is_step_done(ProvisionStep.IDENTITY.value) or account_id is None:
            await self._renew(operation_id, owner)
            account_id = await self._create_identity(operation, command, owner)
            await self._ledger.mark_step_done(
                operation_id,
                ProvisionStep.IDENTITY.value,
                target_account_id=account_id,
                owner=owner,
            )
            logger.info("identity_created", account_id=account_id)

        if not operation.is_step_done(ProvisionStep.PROFILE.value):
            await self._renew(operation_id, owner)
            await self._create_profile(operation, account_id, owner)
            await self._ledger.mark_step_done(operation_id, ProvisionStep.PROFILE.value, owner=owner)

        await self._ledger.complete(operation_id, owner=owner)
        logger.info("student_provisioned", account_id=account_id, attempt=operation.attempt_count)

        return ProvisionOutcome(
            account_id=account_id,
            operation_id=operation_id,
            resumed=operation.attempt_count > 1,
        )

    async def _create_identity(
        self,
        operation: LifecycleOperation,
        command: ProvisionCommand,
        owner: str,
    ) -> str:
        """Create the account under the id reserved in the ledger.

        Any attempt that may follow a lost response (a retry, or a
        resumed operation) first checks whether the account exists.
        """
        operation_id = operation.operation_id
        proposed_id = operation.proposed_account_id
        resumed = operation.attempt_count > 1

        async def attempt(number: int) -> str:
            if proposed_id and (resumed or number > 1):
                existing = await self._identity.get_account(proposed_id)
                if existing is not None:
                    logger.info("identity_adopted", account_id=existing.account_id, attempt=number)
                    return existing.account_id
            return await self._identity.create_account(
                command.email,
                command.password,
                command.display_name,
                account_id=proposed_id,
            )

        try:
            return await self._runner.run(ProvisionStep.IDENTITY.value, attempt)
        except StoreUnavailableError as e:
            adopted = await self._lookup_identity(proposed_id)
            if adopted is not None:
                logger.info("identity_adopted", account_id=adopted, attempt="final_lookup")
                return adopted
            await self._fail_identity(operation_id, e, retryable=True, owner=owner)
            raise IdentityCreationFailedError(
                f"Identity provider unavailable: {e}",
                operation_id=operation_id,
                retryable=True,
            ) from e
        except StoreError as e:
            await self._fail_identity(operation_id, e, retryable=False, owner=owner)
            raise IdentityCreationFailedError(
                f"Could not create account for {command.email}: {e}",
                operation_id=operation_id,
                already_exists=isinstance(e, AccountAlreadyExistsError),
            ) from e

    async def _lookup_identity(self, account_id: str | None) -> str | None:
        """Single check whether a timed-out create actually landed."""
        if not account_id:
            return None
        try:
            existing = await self._runner.run(
                "identity_lookup",
                lambda number: self._identity.get_account(account_id),
            )
        except StoreError as e:
            logger.warning("identity_lookup_failed", account_id=account_id, error=str(e))
            return None
        return existing.account_id if existing is not None else None

    async def _fail_identity(
        self,
        operation_id: str,
        error: StoreError,
        retryable: bool,
        owner: str,
    ) -> None:
        await self._ledger.mark_step_failed(
            operation_id, ProvisionStep.IDENTITY.value, str(error), owner=owner
        )
        await self._ledger.fail(
            operation_id,
            FailureReason.IDENTITY_CREATION_FAILED.value,
            step=ProvisionStep.IDENTITY.value,
            detail=str(error),
            retryable=retryable,
            owner=owner,
        )
        logger.warning("identity_creation_failed", error=str(error), retryable=retryable)

    async def _create_profile(
        self,
        operation: LifecycleOperation,
        account_id: str,
        owner: str,
    ) -> None:
        """Write the profile document, compensating on failure.

        The document is written with set semantics, so a retry after a
        lost response overwrites instead of duplicating.
        """
        operation_id = operation.operation_id
        fields = self._profile_fields(operation, account_id)

        try:
            await self._runner.run(
                ProvisionStep.PROFILE.value,
                lambda number: self._documents.put_document(Collections.STUDENTS, account_id, fields),
            )
        except StoreError as e:
            await self._ledger.mark_step_failed(
                operation_id, ProvisionStep.PROFILE.value, str(e), owner=owner
            )
            await self._ledger.mark_needs_compensation(
                operation_id,
                FailureReason.PROFILE_CREATION_FAILED.value,
                step=ProvisionStep.PROFILE.value,
                detail=str(e),
                owner=owner,
            )
            logger.warning("profile_creation_failed", account_id=account_id, error=str(e))

            await self._renew(operation_id, owner)
            await self._compensate_identity(operation_id, account_id, cause=str(e), owner=owner)
            raise ProfileCreationCompensatedError(
                f"Profile could not be saved ({e}); the new account was removed",
                operation_id=operation_id,
            ) from e

    @staticmethod
    def _profile_fields(operation: LifecycleOperation, account_id: str) -> dict[str, Any]:
        payload = operation.payload
        first_name = payload.get("first_name", "")
        last_name = payload.get("last_name", "")
        return {
            "id": account_id,
            "firstName": first_name,
            "lastName": last_name,
            "displayName": f"{first_name} {last_name}".strip(),
            "email": payload.get("email"),
            "classId": payload.get("class_id"),
            "createdAt": format_iso(operation.created_at),
        }

    async def _compensate_identity(
        self,
        operation_id: str,
        account_id: str,
        cause: str,
        owner: str,
        reason: FailureReason = FailureReason.PROFILE_COMPENSATED,
        step: str | None = ProvisionStep.PROFILE.value,
    ) -> None:
        """Delete the identity of a Provision that must not keep it.

        On success the entry fails with ``reason``. On failure the entry
        stays in needs_compensation and CompensationFailedError is raised.
        """

        async def attempt(number: int) -> None:
            try:
                await self._identity.delete_account(account_id)
            except AccountNotFoundError:
                logger.info("compensation_account_already_gone", account_id=account_id)

        try:
            await self._runner.run("compensate_identity", attempt)
        except StoreError as e:
            await self._ledger.escalate(
                operation_id,
                FailureReason.COMPENSATION_FAILED.value,
                detail=f"{cause}; compensation: {e}",
                owner=owner,
            )
            logger.error(
                "compensation_failed",
                account_id=account_id,
                cause=cause,
                error=str(e),
                needs_attention=True,
            )
            raise CompensationFailedError(
                f"Account {account_id} could not be removed; operator attention required",
                operation_id=operation_id,
            ) from e

        await self._ledger.fail(
            operation_id,
            reason.value,
            step=step,
            detail=cause,
            owner=owner,
        )
        logger.info("compensation_succeeded", account_id=account_id)

    def _provision_result(self, operation: LifecycleOperation) -> ProvisionOutcome:
        """Replay the outcome of a Provision that is no longer pending."""
        if operation.status == OperationStatus.COMPLETED and operation.target_account_id:
            return ProvisionOutcome(
                account_id=operation.target_account_id,
                operation_id=operation.operation_id,
                resumed=True,
            )
        raise self._failure_error(operation)

    @staticmethod
    def _failure_error(operation: LifecycleOperation) -> LifecycleError:
        operation_id = operation.operation_id
        detail = operation.failure_reason or "unknown failure"

        if operation.status == OperationStatus.NEEDS_COMPENSATION:
            return CompensationFailedError(
                f"Operation {operation_id} is awaiting compensation ({detail})",
                operation_id=operation_id,
            )
        if operation.failure_reason == FailureReason.PROFILE_COMPENSATED.value:
            return ProfileCreationCompensatedError(
                f"Operation {operation_id} already failed and was compensated",
                operation_id=operation_id,
            )
        return IdentityCreationFailedError(
            f"Operation {operation_id} already failed: {detail}",
            operation_id=operation_id,
        )

    # =========================================================================
    # Remediation
    # =========================================================================

    async def retry_compensation(self, operation_id: str) -> LifecycleOperation:
        """Re-attempt identity deletion for an entry awaiting compensation.

        Returns:
            The entry, now failed as compensated.

        Raises:
            OperationNotFoundError: No such entry.
            InvalidTransitionError: The entry is not awaiting compensation.
            DuplicateOperationError: Another runner owns the entry.
            CompensationFailedError: Deletion failed again.
        """
        operation = await self._ledger.get(operation_id)
        if operation.status != OperationStatus.NEEDS_COMPENSATION:
            raise InvalidTransitionError(operation_id, operation.status.value, "compensate")

        account_id = operation.target_account_id or operation.proposed_account_id
        bind_context(operation_id=operation_id, kind=operation.kind.value)
        try:
            owner = self._new_id()
            claimed = await self._ledger.claim(
                operation_id,
                owner,
                self._claim_lease_seconds,
                statuses=(OperationStatus.NEEDS_COMPENSATION,),
            )
            if claimed is None:
                raise DuplicateOperationError(
                    f"Operation {operation_id} is already being remediated",
                    operation_id=operation_id,
                )
            reason = FailureReason.PROFILE_COMPENSATED
            if operation.failed_step == ProvisionStep.IDENTITY.value:
                reason = FailureReason.IDENTITY_COMPENSATED
            try:
                if account_id:
                    await self._compensate_identity(
                        operation_id,
                        account_id,
                        cause=operation.failure_reason or "manual remediation",
                        owner=owner,
                        reason=reason,
                        step=operation.failed_step,
                    )
                else:
                    # No identity was ever reserved, nothing to remove
                    await self._ledger.fail(
                        operation_id,
                        reason.value,
                        step=operation.failed_step,
                        detail="no account to remove",
                        owner=owner,
                    )
            except ClaimLostError as e:
                raise self._taken_over(operation_id, e) from e
            finally:
                await self._ledger.release(operation_id, owner)
        finally:
            clear_context()

        return await self._ledger.get(operation_id)

    # =========================================================================
    # Retire
    # =========================================================================

    async def retire_student(self, account_id: str, operation_id: str | None = None) -> RetireOutcome:
        """Delete a student's fees, results, profile and identity account.

        The operation id defaults to the account id. Resubmitting the same
        operation id resumes after the last completed step; resubmitting a
        completed one performs no deletions.

        Args:
            account_id: Account to retire.
            operation_id: Idempotency key, defaults to ``account_id``.

        Returns:
            RetireOutcome with per-step deletion counts.

        Raises:
            InvalidInputError: Account id empty; nothing was written.
            RetireStepFailedError: A step failed; resubmit to continue.
            DuplicateOperationError: Another runner owns the operation, or the
                operation id belongs to another student or operation kind.
        """
        command = validate_retire_request(
            RetireStudentRequest(account_id=account_id, operation_id=operation_id)
        )
        operation_id = command.operation_id

        operation = await self._ledger.begin(
            operation_id,
            OperationKind.RETIRE,
            RETIRE_STEPS,
            payload={"account_id": command.account_id},
            target_account_id=command.account_id,
        )
        if operation.target_account_id != command.account_id:
            raise DuplicateOperationError(
                f"Operation {operation_id} retires another student",
                operation_id=operation_id,
            )

        bind_context(operation_id=operation_id, kind=OperationKind.RETIRE.value)
        try:
            if operation.status == OperationStatus.COMPLETED:
                logger.info("student_already_retired", account_id=command.account_id)
                return RetireOutcome(
                    account_id=command.account_id,
                    operation_id=operation_id,
                    already_retired=True,
                )
            if operation.status == OperationStatus.FAILED:
                operation = await self._ledger.reopen(operation_id)

            owner = self._new_id()
            claimed = await self._ledger.claim(operation_id, owner, self._claim_lease_seconds)
            if claimed is None:
                current = await self._ledger.get(operation_id)
                if current.status == OperationStatus.COMPLETED:
                    return RetireOutcome(
                        account_id=command.account_id,
                        operation_id=operation_id,
                        already_retired=True,
                    )
                raise DuplicateOperationError(
                    f"Retirement {operation_id} is already running",
                    operation_id=operation_id,
                )

            try:
                return await self._run_retire(claimed, command.account_id, owner)
            except ClaimLostError as e:
                raise self._taken_over(operation_id, e) from e
            finally:
                await self._ledger.release(operation_id, owner)
        finally:
            clear_context()

    async def _run_retire(
        self,
        operation: LifecycleOperation,
        account_id: str,
        owner: str,
    ) -> RetireOutcome:
        operation_id = operation.operation_id
        deleted: dict[str, int] = {}

        for step in RetireStep:
            if operation.is_step_done(step.value):
                continue

            await self._renew(operation_id, owner)
            try:
                deleted[step.value] = await self._runner.run(
                    step.value,
                    lambda number, step=step: self._retire_step(step, account_id),
                )
            except StoreError as e:
                await self._ledger.mark_step_failed(operation_id, step.value, str(e), owner=owner)
                await self._ledger.fail(
                    operation_id,
                    FailureReason.RETIRE_STEP_FAILED.value,
                    step=step.value,
                    detail=str(e),
                    retryable=True,
                    owner=owner,
                )
                logger.warning("retire_step_failed", step=step.value, error=str(e))
                raise RetireStepFailedError(
                    step.value,
                    f"Retiring {account_id} stopped at step {step.value}: {e}",
                    operation_id=operation_id,
                ) from e

            await self._ledger.mark_step_done(operation_id, step.value, owner=owner)
            logger.debug("retire_step_done", step=step.value, deleted=deleted[step.value])

        await self._ledger.complete(operation_id, owner=owner)
        logger.info("student_retired", account_id=account_id, deleted=deleted)

        return RetireOutcome(account_id=account_id, operation_id=operation_id, deleted=deleted)

    async def _retire_step(self, step: RetireStep, account_id: str) -> int:
        """Run one deletion. Finding nothing to delete counts as success."""
        if step == RetireStep.FEES:
            return await self._documents.delete_where(Collections.FEES, STUDENT_ID_FIELD, account_id)
        if step == RetireStep.RESULTS:
            return await self._documents.delete_where(
                Collections.ACADEMIC_RESULTS, STUDENT_ID_FIELD, account_id
            )
        if step == RetireStep.PROFILE:
            try:
                await self._documents.delete_document(Collections.STUDENTS, account_id)
            except DocumentNotFoundError:
                return 0
            return 1
        try:
            await self._identity.delete_account(account_id)
        except AccountNotFoundError:
            return 0
        return 1

    # =========================================================================
    # Claims
    # =========================================================================

    async def _renew(self, operation_id: str, owner: str) -> None:
        """Extend the claim before the next external call.

        Raises:
            ClaimLostError: The lease already ran out and another runner
                took the entry.
        """
        await self._ledger.renew(operation_id, owner, self._claim_lease_seconds)

    @staticmethod
    def _taken_over(operation_id: str, error: ClaimLostError) -> DuplicateOperationError:
        logger.warning("claim_lost", owner=error.owner)
        return DuplicateOperationError(
            f"Operation {operation_id} was taken over by another runner",
            operation_id=operation_id,
        )
