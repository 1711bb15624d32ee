# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the background job scheduler."""

from unittest.mock import AsyncMock

import pytest

from src.infrastructure.background.scheduler import JobScheduler


class TestJobScheduler:
    """Tests for JobScheduler."""

    def test_rejects_non_positive_interval(self) -> None:
        """Test a job needs a positive interval."""
        with pytest.raises(ValueError):
            JobScheduler().add_interval_job(name="Never", func=AsyncMock())

    @pytest.mark.asyncio
    async def test_jobs_added_before_start_are_scheduled(self) -> None:
        """Test start() registers jobs added earlier."""
        scheduler = JobScheduler()
        job = scheduler.add_interval_job(name="Ledger Scan", func=AsyncMock(), minutes=15)

        await scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler._scheduler.get_job(job.id) is not None
        finally:
            await scheduler.stop()

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_failing_run_is_counted(self) -> None:
        """Test a job error is recorded and does not propagate."""
        scheduler = JobScheduler()
        func = AsyncMock(side_effect=RuntimeError("ledger down"))
        job = scheduler.add_interval_job(name="Ledger Scan", func=func, seconds=30)

        await scheduler._execute_job(job.id)

        func.assert_awaited_once()
        assert job.run_count == 1
        assert job.error_count == 1
        assert scheduler.get_stats()["total_errors"] == 1
