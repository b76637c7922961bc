"""
Unit tests for the update scheduler

Tests verify:
- One cycle runs check → orphan cleanup → optional apply → auto-update
- auto_apply gates the apply step
- Manual checks never raise
- The background loop backs off after errors and stops on cancel
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config.settings import UpdaterConfig
from docker_monitor.periodic_jobs import UpdateJobsManager
from updates.errors import DaemonError
from updates.types import CheckResult, RunResult


def _checker(results=None):
    checker = MagicMock()
    checker.check_all_images = AsyncMock(return_value=results if results is not None else {
        "nginx:1.25": CheckResult(has_update=True),
        "redis:7": CheckResult(),
        "bad": CheckResult.failure("Invalid image reference format"),
    })
    checker.record_store.cleanup_orphaned_records = AsyncMock(return_value=2)
    return checker


def _applier():
    applier = MagicMock()
    applier.apply_pending = AsyncMock(return_value=RunResult(checked=1, updated=1))
    return applier


@pytest.fixture
def checker():
    return _checker()


@pytest.fixture
def applier():
    return _applier()


@pytest.mark.asyncio
async def test_run_once_without_auto_apply(checker, applier):
    jobs = UpdateJobsManager(checker, applier, config=UpdaterConfig(auto_apply=False))

    stats = await jobs.run_once()

    assert stats == {'checked': 3, 'updates_found': 1, 'errors': 1, 'orphans_deleted': 2}
    applier.apply_pending.assert_not_awaited()
    assert jobs.last_update_check is not None


@pytest.mark.asyncio
async def test_run_once_with_auto_apply(checker, applier):
    jobs = UpdateJobsManager(checker, applier, config=UpdaterConfig(auto_apply=True))

    stats = await jobs.run_once()

    applier.apply_pending.assert_awaited_once_with(dry_run=False)
    assert stats['apply']['updated'] == 1
    assert stats['apply']['error'] is None


@pytest.mark.asyncio
async def test_run_once_runs_auto_updater(checker, applier):
    auto_updater = MagicMock()
    auto_updater.check_and_update_containers = AsyncMock(return_value=RunResult(updated=2))
    auto_updater.check_and_update_stacks = AsyncMock(return_value=RunResult(updated=1))
    jobs = UpdateJobsManager(checker, applier, auto_updater, UpdaterConfig())

    stats = await jobs.run_once()

    assert stats['auto_update'] == {'containers_updated': 2, 'stacks_updated': 1}


@pytest.mark.asyncio
async def test_run_once_propagates_daemon_errors(checker, applier):
    checker.check_all_images.side_effect = DaemonError("failed to list Docker images: down")
    jobs = UpdateJobsManager(checker, applier, config=UpdaterConfig())

    with pytest.raises(DaemonError):
        await jobs.run_once()
    checker.record_store.cleanup_orphaned_records.assert_not_awaited()


@pytest.mark.asyncio
async def test_check_now(checker, applier):
    jobs = UpdateJobsManager(checker, applier, config=UpdaterConfig())
    assert await jobs.check_now() == {'checked': 3, 'updates_found': 1, 'errors': 1}


@pytest.mark.asyncio
async def test_check_now_swallows_errors(checker, applier):
    checker.check_all_images.side_effect = DaemonError("down")
    jobs = UpdateJobsManager(checker, applier, config=UpdaterConfig())

    assert await jobs.check_now() == {"checked": 0, "updates_found": 0, "errors": 1}
    assert jobs.last_update_check is None


@pytest.mark.asyncio
async def test_run_forever_backs_off_after_error(checker, applier):
    """A failed cycle sleeps error_retry_seconds; a good one sleeps check_interval_seconds"""
    checker.check_all_images.side_effect = [DaemonError("down"), {}]
    config = UpdaterConfig(check_interval_seconds=3600, error_retry_seconds=300)
    jobs = UpdateJobsManager(checker, applier, config=config)

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise asyncio.CancelledError()

    with patch('docker_monitor.periodic_jobs.asyncio.sleep', side_effect=fake_sleep):
        with pytest.raises(asyncio.CancelledError):
            await jobs.run_forever()

    assert sleeps == [300, 3600]
