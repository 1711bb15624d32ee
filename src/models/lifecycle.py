# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pydantic schemas for the student lifecycle API.

Field contents are deliberately loose on the request side: email syntax,
password strength and name checks belong to the validation gate, which
reports them as InvalidInput with per-field problems.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.domains.lifecycle.types import (
    LifecycleEvent,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    StepStatus,
)


class ProvisionStudentRequest(BaseModel):
    """Request to provision a new student."""

    email: str = Field(default="", description="Login email of the student")
    password: str = Field(default="", description="Initial password, at least 6 characters")
    first_name: str = Field(default="", description="Given name")
    last_name: str = Field(default="", description="Family name")
    class_id: str | None = Field(default=None, description="Class the student belongs to")
    request_id: str | None = Field(
        default=None,
        max_length=128,
        description="Idempotency key; resubmit with the same value to resume",
    )


class RetireStudentRequest(BaseModel):
    """Request to retire a student."""

    account_id: str = Field(default="", description="Account to retire")
    operation_id: str | None = Field(
        default=None,
        max_length=128,
        description="Idempotency key; defaults to the account id",
    )


class ProvisionStudentResponse(BaseModel):
    """Result of a successful provisioning."""

    account_id: str
    operation_id: str
    resumed: bool = False


class RetireStudentResponse(BaseModel):
    """Result of a successful retirement."""

    ok: bool = True
    account_id: str
    operation_id: str
    already_retired: bool = False
    deleted: dict[str, int] = Field(default_factory=dict)


class LifecycleStepResponse(BaseModel):
    """One step of a ledger entry."""

    name: str
    status: StepStatus
    updated_at: datetime | None = None


class LifecycleEventResponse(BaseModel):
    """One row of a ledger entry's audit trail."""

    event: str
    detail: str | None = None
    occurred_at: datetime | None = None

    @classmethod
    def from_domain(cls, event: LifecycleEvent) -> "LifecycleEventResponse":
        return cls(event=event.event, detail=event.detail, occurred_at=event.occurred_at)


class LifecycleOperationResponse(BaseModel):
    """A ledger entry as seen by the admin console."""

    model_config = ConfigDict(use_enum_values=True)

    operation_id: str
    kind: OperationKind
    status: OperationStatus
    target_account_id: str | None = None
    steps: list[LifecycleStepResponse] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    failure_reason: str | None = None
    failed_step: str | None = None
    retryable: bool = False
    needs_attention: bool = False
    attempt_count: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    events: list[LifecycleEventResponse] | None = None

    @classmethod
    def from_domain(
        cls,
        operation: LifecycleOperation,
        events: list[LifecycleEvent] | None = None,
    ) -> "LifecycleOperationResponse":
        return cls(
            operation_id=operation.operation_id,
            kind=operation.kind,
            status=operation.status,
            target_account_id=operation.target_account_id,
            steps=[
                LifecycleStepResponse(name=s.name, status=s.status, updated_at=s.updated_at)
                for s in operation.steps
            ],
            payload=operation.payload,
            failure_reason=operation.failure_reason,
            failed_step=operation.failed_step,
            retryable=operation.retryable,
            needs_attention=operation.status == OperationStatus.NEEDS_COMPENSATION,
            attempt_count=operation.attempt_count,
            created_at=operation.created_at,
            updated_at=operation.updated_at,
            completed_at=operation.completed_at,
            events=[LifecycleEventResponse.from_domain(e) for e in events] if events is not None else None,
        )


class LifecycleOperationListResponse(BaseModel):
    """A page of ledger entries."""

    items: list[LifecycleOperationResponse]
    total: int


class AttentionReportResponse(BaseModel):
    """Ledger entries an operator should look at."""

    needs_attention: list[LifecycleOperationResponse] = Field(default_factory=list)
    stale: list[LifecycleOperationResponse] = Field(default_factory=list)
    scanned_at: datetime


class LifecycleErrorResponse(BaseModel):
    """Error payload returned for failed lifecycle requests."""

    error_kind: str
    message: str
    operation_id: str | None = None
    needs_attention: bool = False
    retryable: bool = False
    step: str | None = None
    problems: dict[str, str] | None = None
