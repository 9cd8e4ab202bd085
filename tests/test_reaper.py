"""Tests for the stale reaper."""
import pytest

from argus.models import AgentKind, AgentStatus
from argus.reaper import StaleReaper


@pytest.fixture
def reaper(cfg):
    return StaleReaper(cfg)


@pytest.fixture
def pid(store):
    return store.upsert_project("/p/app", "app")


def test_recent_agents_are_left_alone(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {"kind": AgentKind.PRIMARY})
    clock.advance(60)
    assert reaper.sweep(store) == set()
    assert store.get_agent(pid, "s1").status == AgentStatus.WORKING


def test_quiet_working_agent_goes_idle(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {"activity": "Editing app.py"})
    clock.advance(121)
    assert reaper.sweep(store) == {pid}
    agent = store.get_agent(pid, "s1")
    assert agent.status == AgentStatus.IDLE
    assert agent.activity is None


def test_idle_demotion_does_not_refresh_activity_time(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {})
    started = clock.now
    clock.advance(121)
    reaper.sweep(store)
    assert store.get_agent(pid, "s1").last_activity_at == started


def test_stale_agent_is_removed(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {})
    clock.advance(601)
    assert reaper.sweep(store) == {pid}
    assert store.get_agent(pid, "s1") is None
    # The project outlives its agents
    assert store.get_project(pid) is not None


def test_blocked_agent_gets_longer_grace(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {"status": AgentStatus.BLOCKED, "question": "Ship it?"})
    clock.advance(601)
    reaper.sweep(store)
    assert store.get_agent(pid, "s1").status == AgentStatus.BLOCKED

    clock.advance(3000)
    reaper.sweep(store)
    assert store.get_agent(pid, "s1") is None


def test_rate_limit_expires(store, reaper, pid, clock):
    store.upsert_agent(pid, "s1", {"status": AgentStatus.RATE_LIMITED,
                                   "rate_limit_reset_at": clock.now + 30_000})
    clock.advance(10)
    reaper.sweep(store)
    assert store.get_agent(pid, "s1").status == AgentStatus.RATE_LIMITED

    clock.advance(25)
    assert reaper.sweep(store) == {pid}
    agent = store.get_agent(pid, "s1")
    assert agent.status == AgentStatus.WORKING
    assert agent.rate_limit_reset_at is None


def test_empty_project_removed_after_grace(store, reaper, pid, clock):
    clock.advance(1000)
    assert reaper.sweep(store) == set()
    assert store.get_project(pid) is not None

    clock.advance(900)
    assert reaper.sweep(store) == {pid}
    assert store.get_project(pid) is None
    assert pid not in store.snapshot().projects


def test_sweep_derives_cleanly_after_project_removal(store, reaper, pid, clock):
    clock.advance(1801)
    for touched in reaper.sweep(store):
        assert store.derive_status(touched) is None
