"""Tests for the entity store: identity, partial updates and status derivation."""
import itertools

import pytest

from argus.models import AgentKind, AgentStatus, ProjectStatus, SignalSource
from argus.store import EntityStore


def test_upsert_project_normalizes_path(store):
    pid = store.upsert_project("/p/a/", "a")
    assert store.upsert_project("/p/a", "a") == pid
    assert store.upsert_project("/p/./a", None) == pid
    assert store.project_ids() == [pid]
    assert store.get_project(pid).path == "/p/a"


def test_upsert_project_rejects_empty_path(store):
    assert store.upsert_project("", "x") is None
    assert store.upsert_project("   ", "x") is None
    assert store.project_ids() == []


def test_project_name_defaults_to_last_component(store):
    pid = store.upsert_project("/home/dev/widgets", None)
    assert store.get_project(pid).name == "widgets"


def test_upsert_agent_partial_update_leaves_other_fields(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"kind": AgentKind.PRIMARY, "task": "Fix the login bug"})
    store.upsert_agent(pid, "s1", {"activity": "Editing auth.py"})

    agent = store.get_agent(pid, "s1")
    assert agent.task == "Fix the login bug"
    assert agent.activity == "Editing auth.py"
    assert agent.kind == AgentKind.PRIMARY
    assert agent.status == AgentStatus.WORKING


def test_upsert_agent_none_clears_field(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"question": "Proceed?"})
    store.upsert_agent(pid, "s1", {"question": None})
    assert store.get_agent(pid, "s1").question is None


def test_upsert_agent_unknown_project_is_noop(store):
    assert store.upsert_agent("missing", "s1", {"task": "x"}) is None
    assert store.project_ids() == []


def test_upsert_agent_rejects_unknown_fields(store):
    pid = store.upsert_project("/p/a", "a")
    with pytest.raises(ValueError):
        store.upsert_agent(pid, "s1", {"colour": "blue"})


def test_returned_agents_are_copies(store):
    pid = store.upsert_project("/p/a", "a")
    agent = store.upsert_agent(pid, "s1", {"modes": {"planning": True}})
    agent.status = AgentStatus.BLOCKED
    agent.modes["planning"] = False

    live = store.get_agent(pid, "s1")
    assert live.status == AgentStatus.WORKING
    assert live.modes == {"planning": True}


def test_remove_unknown_agent_is_noop(store):
    pid = store.upsert_project("/p/a", "a")
    assert store.remove_agent(pid, "ghost") is False
    assert store.remove_agent("nope", "ghost") is False


def test_derive_status_empty_project_is_idle(store):
    pid = store.upsert_project("/p/a", "a")
    assert store.derive_status(pid) == ProjectStatus.IDLE


def test_derive_status_unknown_project(store):
    assert store.derive_status("nope") is None


@pytest.mark.parametrize("statuses,expected", [
    ([AgentStatus.WORKING, AgentStatus.BLOCKED], ProjectStatus.BLOCKED),
    ([AgentStatus.SERVER_RUNNING, AgentStatus.RATE_LIMITED], ProjectStatus.RATE_LIMITED),
    ([AgentStatus.WORKING, AgentStatus.SERVER_RUNNING], ProjectStatus.SERVER_RUNNING),
    ([AgentStatus.IDLE, AgentStatus.WORKING], ProjectStatus.WORKING),
    ([AgentStatus.IDLE, AgentStatus.COMPLETE], ProjectStatus.IDLE),
])
def test_derive_status_precedence(store, statuses, expected):
    pid = store.upsert_project("/p/a", "a")
    for i, status in enumerate(statuses):
        store.upsert_agent(pid, f"a{i}", {"status": status})
    assert store.derive_status(pid) == expected


def test_derive_status_matches_highest_precedence_for_all_combinations(clock):
    order = [AgentStatus.BLOCKED, AgentStatus.RATE_LIMITED, AgentStatus.SERVER_RUNNING,
             AgentStatus.WORKING]
    for combo in itertools.product(list(AgentStatus), repeat=3):
        store = EntityStore(clock=clock)
        pid = store.upsert_project("/p/a", "a")
        for i, status in enumerate(combo):
            store.upsert_agent(pid, f"a{i}", {"status": status})
        expected = next((ProjectStatus(s.value) for s in order if s in combo), ProjectStatus.IDLE)
        assert store.derive_status(pid) == expected


def test_blocked_since_set_and_cleared(store, clock):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"status": AgentStatus.WORKING})
    store.derive_status(pid)
    assert store.get_project(pid).blocked_since is None

    clock.advance(10)
    store.upsert_agent(pid, "s1", {"status": AgentStatus.BLOCKED, "question": "Proceed?"})
    store.derive_status(pid)
    blocked_at = clock.now
    assert store.get_project(pid).blocked_since == blocked_at

    # Staying blocked keeps the first timestamp
    clock.advance(30)
    store.upsert_agent(pid, "s2", {"status": AgentStatus.BLOCKED})
    store.derive_status(pid)
    assert store.get_project(pid).blocked_since == blocked_at

    store.upsert_agent(pid, "s1", {"status": AgentStatus.WORKING})
    store.upsert_agent(pid, "s2", {"status": AgentStatus.WORKING})
    store.derive_status(pid)
    project = store.get_project(pid)
    assert project.status == ProjectStatus.WORKING
    assert project.blocked_since is None


def test_leaving_special_status_clears_source(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"status": AgentStatus.RATE_LIMITED,
                                   "blocked_source": SignalSource.TRANSCRIPT,
                                   "rate_limit_reset_at": 123})
    store.upsert_agent(pid, "s1", {"status": AgentStatus.WORKING})
    agent = store.get_agent(pid, "s1")
    assert agent.blocked_source is None
    assert agent.rate_limit_reset_at is None


def test_working_time_accumulates(store, clock):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"status": AgentStatus.WORKING})
    clock.advance(5)
    store.upsert_agent(pid, "s1", {"status": AgentStatus.BLOCKED})
    clock.advance(100)
    store.upsert_agent(pid, "s1", {"status": AgentStatus.WORKING})
    clock.advance(2)

    assert store.get_agent(pid, "s1").working_time == 5000
    payload = store.snapshot().projects[pid]["agents"]["s1"]
    assert payload["workingTime"] == 7000


def test_record_completion_moves_agent_to_history(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "sub-1", {"kind": AgentKind.DELEGATED, "name": "explorer",
                                      "task": "Map the codebase"})
    item = store.record_completion(pid, "sub-1")

    assert item.agent_name == "explorer"
    assert item.task == "Map the codebase"
    assert item.project_name == "a"
    assert store.get_agent(pid, "sub-1") is None
    assert store.completed_work() == [item]


def test_record_completion_is_bounded(store):
    pid = store.upsert_project("/p/a", "a")
    for i in range(8):
        store.upsert_agent(pid, f"sub-{i}", {"name": f"worker-{i}"})
        store.record_completion(pid, f"sub-{i}")

    names = [item.agent_name for item in store.completed_work()]
    assert names == ["worker-7", "worker-6", "worker-5", "worker-4", "worker-3"]


def test_record_completion_unknown_agent(store):
    pid = store.upsert_project("/p/a", "a")
    assert store.record_completion(pid, "ghost") is None
    assert store.completed_work() == []


def test_completed_work_item_is_immutable(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "sub-1", {"name": "explorer"})
    item = store.record_completion(pid, "sub-1")
    with pytest.raises(Exception):
        item.task = "changed"


def test_snapshot_drops_dangling_parent(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"kind": AgentKind.PRIMARY})
    store.upsert_agent(pid, "sub-1", {"kind": AgentKind.DELEGATED, "parent_id": "s1"})
    store.upsert_agent(pid, "sub-2", {"kind": AgentKind.DELEGATED, "parent_id": "gone"})

    agents = store.snapshot().projects[pid]["agents"]
    assert agents["sub-1"]["parentId"] == "s1"
    assert agents["sub-2"]["parentId"] is None


def test_snapshot_is_detached_from_live_state(store):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"task": "first"})
    snapshot = store.snapshot()
    store.upsert_agent(pid, "s1", {"task": "changed"})

    assert snapshot.projects[pid]["agents"]["s1"]["task"] == "first"
    payload = snapshot.payload()
    payload["projects"][pid]["agents"]["s1"]["task"] = "scribbled"
    assert snapshot.payload()["projects"][pid]["agents"]["s1"]["task"] == "first"


def test_snapshot_message_shape(store, clock):
    pid = store.upsert_project("/p/a", "a")
    store.upsert_agent(pid, "s1", {"status": AgentStatus.BLOCKED})
    store.upsert_agent(pid, "s2", {})
    store.derive_status(pid)
    message = store.snapshot().message()

    assert message["type"] == "state_update"
    payload = message["payload"]
    assert set(payload) == {"projects", "completedWork", "lastUpdated"}
    assert payload["lastUpdated"] == clock.now
    project = payload["projects"][pid]
    assert project["status"] == "blocked"
    assert project["blockedAgentCount"] == 1
    assert project["workingAgentCount"] == 1
