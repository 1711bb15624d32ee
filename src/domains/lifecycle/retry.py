# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Bounded retry with backoff for external store calls.

Every call to the identity provider or the document store goes through
StepRunner.run(): each attempt gets its own timeout, a timeout counts as
StoreUnavailableError, and only StoreUnavailableError is retried. Other
store errors (already exists, not found, ...) are answers, not outages,
and propagate on the first attempt.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.domains.lifecycle.errors import StoreUnavailableError

if TYPE_CHECKING:
    from src.core.config.settings import LifecycleSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and timeout limits for one step.

    Attributes:
        max_attempts: Attempts before giving up, including the first.
        timeout_seconds: Per-attempt timeout.
        backoff_initial_seconds: Delay before the second attempt.
        backoff_max_seconds: Upper bound on the delay.
    """

    max_attempts: int = 3
    timeout_seconds: float = 10.0
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: "LifecycleSettings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            timeout_seconds=settings.step_timeout_seconds,
            backoff_initial_seconds=settings.backoff_initial_seconds,
            backoff_max_seconds=settings.backoff_max_seconds,
        )


class StepRunner:
    """Runs external calls under a RetryPolicy."""

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy or RetryPolicy()

    async def run(
        self,
        step_name: str,
        call: Callable[[int], Awaitable[T]],
    ) -> T:
        """Run ``call`` until it succeeds or the policy is exhausted.

        Args:
            step_name: Used in log messages.
            call: Receives the 1-based attempt number, so callers can
                check for the effect of a lost earlier attempt before
                repeating a non-idempotent write.

        Returns:
            Whatever ``call`` returned.

        Raises:
            StoreUnavailableError: If every attempt was unavailable or
                timed out.
            StoreError: Any other store error, raised immediately.
        """
        policy = self.policy

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.backoff_initial_seconds,
                max=policy.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(StoreUnavailableError),
            before_sleep=lambda state: _log_retry(step_name, state),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                try:
                    return await asyncio.wait_for(call(number), timeout=policy.timeout_seconds)
                except asyncio.TimeoutError as e:
                    raise StoreUnavailableError(
                        f"{step_name} timed out after {policy.timeout_seconds}s"
                    ) from e

        # AsyncRetrying with reraise=True never falls through
        raise StoreUnavailableError(f"{step_name} exhausted its retries")


def _log_retry(step_name: str, state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Step %s attempt %d failed (%s), retrying in %.2fs",
        step_name,
        state.attempt_number,
        error,
        state.next_action.sleep if state.next_action else 0.0,
    )
