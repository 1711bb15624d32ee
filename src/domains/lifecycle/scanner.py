# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Periodic scan of the operation ledger for entries needing an operator.

Two kinds of entries are reported:

- needs attention: a Provision whose compensation failed, leaving an
  identity account without a profile.
- stale: any non-terminal entry older than the staleness threshold,
  typically a runner that crashed mid-operation.

Before reporting, the scan looks up the reserved account of every
Provision that failed on an unavailable identity provider. A create
that landed after its timeout leaves an account with no profile; such
entries are moved to needs_compensation so they are reported with the
rest. Remediation goes through LifecycleOrchestrator.retry_compensation()
or a resubmission.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from src.domains.lifecycle.errors import StoreError
from src.domains.lifecycle.ledger import OperationLedger
from src.domains.lifecycle.ports import IdentityStore
from src.domains.lifecycle.types import LifecycleOperation
from src.utils.datetime import minutes_ago, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanReport:
    """Result of one ledger scan."""

    needs_attention: list[LifecycleOperation] = field(default_factory=list)
    stale: list[LifecycleOperation] = field(default_factory=list)
    scanned_at: datetime | None = None

    @property
    def is_clean(self) -> bool:
        return not self.needs_attention and not self.stale


class LedgerScanner:
    """Finds ledger entries that will not resolve on their own."""

    def __init__(
        self,
        ledger: OperationLedger,
        stale_after_minutes: int = 30,
        clock: Callable[[], datetime] = utc_now,
        identity_store: IdentityStore | None = None,
    ) -> None:
        self._ledger = ledger
        self._stale_after_minutes = stale_after_minutes
        self._clock = clock
        self._identity = identity_store

    async def scan(self) -> ScanReport:
        """Scan the ledger once.

        Every entry found is logged, needs-attention entries at ERROR so
        they reach alerting.

        Returns:
            ScanReport listing both kinds of entries, oldest first.
        """
        now = self._clock()
        cutoff = minutes_ago(self._stale_after_minutes, now)
        if self._identity is not None:
            await self._check_failed_identities(cutoff)

        needs_attention = await self._ledger.list_needing_attention()
        attention_ids = {op.operation_id for op in needs_attention}

        stale = [
            op
            for op in await self._ledger.list_stale(cutoff)
            if op.operation_id not in attention_ids
        ]

        for op in needs_attention:
            logger.error(
                "Lifecycle operation %s needs attention: %s (account %s)",
                op.operation_id,
                op.failure_reason,
                op.target_account_id or op.proposed_account_id,
            )
        for op in stale:
            logger.warning(
                "Lifecycle operation %s (%s) is stale: pending since %s, %d attempt(s)",
                op.operation_id,
                op.kind.value,
                op.created_at.isoformat() if op.created_at else "unknown",
                op.attempt_count,
            )

        if needs_attention or stale:
            logger.info(
                "Ledger scan found %d needing attention, %d stale",
                len(needs_attention),
                len(stale),
            )
        else:
            logger.debug("Ledger scan clean")

        return ScanReport(needs_attention=needs_attention, stale=stale, scanned_at=now)

    async def _check_failed_identities(self, failed_before: datetime) -> None:
        """Flag failed Provisions whose account was created anyway."""
        for op in await self._ledger.list_unconfirmed_identity_failures(failed_before):
            account_id = op.proposed_account_id
            if not account_id:
                await self._ledger.confirm_identity_absent(op.operation_id)
                continue

            try:
                existing = await self._identity.get_account(account_id)
            except StoreError as e:
                logger.warning(
                    "Could not look up account %s of failed operation %s: %s",
                    account_id,
                    op.operation_id,
                    e,
                )
                continue

            if existing is None:
                await self._ledger.confirm_identity_absent(op.operation_id)
                continue

            await self._ledger.flag_orphaned_identity(
                op.operation_id,
                account_id,
                detail=f"account {account_id} exists after a failed create",
            )
