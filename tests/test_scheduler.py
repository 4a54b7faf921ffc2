"""
test_scheduler.py — Tests for APScheduler background jobs

Covers: configure_scheduler registration (enabled/disabled) and the job
functions (_job_procurement_cycle, _job_auto_reorder,
_job_negotiation_expiry) against a mocked orchestrator.

settings is imported inside configure_scheduler via `from .config import
settings`, so we patch supplybot.config.settings.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from supplybot.models import Organization
from supplybot.scheduler import (
    _job_auto_reorder,
    _job_negotiation_expiry,
    _job_procurement_cycle,
    configure_scheduler,
    scheduler,
)

# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _clear_scheduler_jobs():
    """Remove all jobs before/after each test to prevent leakage."""
    scheduler.remove_all_jobs()
    yield
    scheduler.remove_all_jobs()


@pytest.fixture()
def orchestrator(session_factory):
    orch = MagicMock()
    orch.session_factory = session_factory
    orch.run_procurement_cycle = AsyncMock(return_value=[1, 2, 3, 4])
    orch.auto_reorder = AsyncMock(return_value=[])
    orch.queue_task = MagicMock(return_value=1)
    return orch


@pytest.fixture()
def two_orgs(db_session):
    orgs = [Organization(name="Acme Fabrication"), Organization(name="Birch Joinery")]
    db_session.add_all(orgs)
    db_session.commit()
    return orgs


def _mock_settings(**overrides):
    """Build a mock settings object with defaults for scheduler tests."""
    defaults = dict(
        scheduler_enabled=True,
        procurement_cycle_interval_min=60,
        auto_reorder_interval_min=240,
        negotiation_expiry_interval_min=30,
    )
    defaults.update(overrides)
    mock = MagicMock()
    for k, v in defaults.items():
        setattr(mock, k, v)
    return mock


# ── configure_scheduler() ──────────────────────────────────────────────


def test_configure_scheduler_registers_jobs(orchestrator):
    with patch("supplybot.config.settings", _mock_settings()):
        configure_scheduler(orchestrator)

    jobs = {j.id: j for j in scheduler.get_jobs()}
    assert set(jobs) == {"procurement_cycle", "auto_reorder", "negotiation_expiry"}
    assert jobs["procurement_cycle"].trigger.interval.total_seconds() == 3600
    assert jobs["auto_reorder"].trigger.interval.total_seconds() == 240 * 60
    assert jobs["negotiation_expiry"].args == (orchestrator,)


def test_configure_scheduler_disabled(orchestrator):
    with patch("supplybot.config.settings", _mock_settings(scheduler_enabled=False)):
        configure_scheduler(orchestrator)

    assert scheduler.get_jobs() == []


def test_configure_scheduler_is_idempotent(orchestrator):
    with patch("supplybot.config.settings", _mock_settings()):
        configure_scheduler(orchestrator)
        configure_scheduler(orchestrator)

    assert len(scheduler.get_jobs()) == 3


def test_reconfigure_picks_up_new_interval(orchestrator):
    with patch("supplybot.config.settings", _mock_settings()):
        configure_scheduler(orchestrator)
    with patch("supplybot.config.settings", _mock_settings(procurement_cycle_interval_min=15)):
        configure_scheduler(orchestrator)

    [job] = [j for j in scheduler.get_jobs() if j.id == "procurement_cycle"]
    assert job.trigger.interval.total_seconds() == 15 * 60


# ── Job functions ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_procurement_cycle_runs_per_organization(orchestrator, two_orgs):
    await _job_procurement_cycle(orchestrator)

    called = [c.args[0] for c in orchestrator.run_procurement_cycle.await_args_list]
    assert called == [o.id for o in two_orgs]


@pytest.mark.asyncio
async def test_procurement_cycle_failure_does_not_stop_others(orchestrator, two_orgs):
    orchestrator.run_procurement_cycle.side_effect = [RuntimeError("db gone"), [5, 6, 7, 8]]

    await _job_procurement_cycle(orchestrator)

    assert orchestrator.run_procurement_cycle.await_count == 2


@pytest.mark.asyncio
async def test_auto_reorder_runs_per_organization(orchestrator, two_orgs):
    await _job_auto_reorder(orchestrator)

    called = [c.args[0] for c in orchestrator.auto_reorder.await_args_list]
    assert called == [o.id for o in two_orgs]


@pytest.mark.asyncio
async def test_no_organizations_no_work(orchestrator):
    await _job_procurement_cycle(orchestrator)
    await _job_auto_reorder(orchestrator)

    orchestrator.run_procurement_cycle.assert_not_awaited()
    orchestrator.auto_reorder.assert_not_awaited()


@pytest.mark.asyncio
async def test_negotiation_expiry_queues_sweep(orchestrator):
    await _job_negotiation_expiry(orchestrator)

    orchestrator.queue_task.assert_called_once()
    agent_type, task_type, payload = orchestrator.queue_task.call_args.args
    assert (agent_type.value, task_type.value, payload) == ("diplomat", "expire_negotiations", {})
    assert orchestrator.queue_task.call_args.kwargs == {"priority": 4}


@pytest.mark.asyncio
async def test_negotiation_expiry_swallows_queue_errors(orchestrator):
    orchestrator.queue_task.side_effect = ValueError("queue unavailable")

    await _job_negotiation_expiry(orchestrator)
