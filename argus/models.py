"""
Entity records owned by the store: projects, agents and completed work.

Serialization to the outbound JSON shape (camelCase keys, epoch-millisecond
times) lives here so every consumer sees the same wire format.
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class AgentKind(str, Enum):
    PRIMARY = "primary"
    DELEGATED = "delegated"
    BACKGROUND = "background"


class AgentStatus(str, Enum):
    WORKING = "working"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    SERVER_RUNNING = "server_running"
    IDLE = "idle"
    COMPLETE = "complete"


class ProjectStatus(str, Enum):
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    SERVER_RUNNING = "server_running"
    WORKING = "working"
    IDLE = "idle"


# Highest precedence first; an empty agent set derives to IDLE.
STATUS_PRECEDENCE = (
    (AgentStatus.BLOCKED, ProjectStatus.BLOCKED),
    (AgentStatus.RATE_LIMITED, ProjectStatus.RATE_LIMITED),
    (AgentStatus.SERVER_RUNNING, ProjectStatus.SERVER_RUNNING),
    (AgentStatus.WORKING, ProjectStatus.WORKING),
)

# Agent states that only exist while something outside the agent holds it up
SPECIAL_STATUSES = frozenset({
    AgentStatus.BLOCKED,
    AgentStatus.RATE_LIMITED,
    AgentStatus.SERVER_RUNNING,
})


class SignalSource(str, Enum):
    """Which signal put an agent into its current special state."""
    EVENT = "event"
    TRANSCRIPT = "transcript"


@dataclass
class Agent:
    """A single primary session, delegated subagent or background process."""
    id: str
    kind: AgentKind
    status: AgentStatus
    spawned_at: int
    last_activity_at: int
    name: Optional[str] = None
    question: Optional[str] = None
    task: Optional[str] = None
    activity: Optional[str] = None
    working_time: int = 0
    working_since: Optional[int] = None  # set while status is WORKING
    parent_id: Optional[str] = None
    modes: Optional[Dict[str, Any]] = None
    delegating_to: Optional[str] = None
    blocked_source: Optional[SignalSource] = None
    rate_limit_reset_at: Optional[int] = None
    server_port: Optional[int] = None
    transcript_path: Optional[str] = None
    unblocked_at: Optional[int] = None  # last explicit agent_unblocked, epoch ms

    def to_dict(self, known_ids, now: int) -> dict:
        working_time = self.working_time
        if self.working_since is not None:
            working_time += max(0, now - self.working_since)
        return {
            "id": self.id,
            "name": self.name,
            "type": self.kind.value,
            "parentId": self.parent_id if self.parent_id in known_ids else None,
            "status": self.status.value,
            "task": self.task,
            "currentActivity": self.activity,
            "question": self.question,
            "spawnedAt": self.spawned_at,
            "lastActivityAt": self.last_activity_at,
            "workingTime": working_time,
            "modes": copy.deepcopy(self.modes),
            "delegatingTo": self.delegating_to,
            "blockedSource": self.blocked_source.value if self.blocked_source else None,
            "rateLimitResetAt": self.rate_limit_reset_at,
            "serverPort": self.server_port,
        }


@dataclass
class Project:
    """A workspace, identified by its normalized path."""
    id: str
    path: str
    name: str
    last_activity_at: int
    status: ProjectStatus = ProjectStatus.IDLE
    blocked_since: Optional[int] = None
    last_user_message: Optional[str] = None
    agents: Dict[str, Agent] = field(default_factory=dict)

    def to_dict(self, now: int) -> dict:
        known_ids = set(self.agents)
        agents = {aid: a.to_dict(known_ids, now) for aid, a in self.agents.items()}
        return {
            "id": self.id,
            "path": self.path,
            "name": self.name,
            "status": self.status.value,
            "lastActivityAt": self.last_activity_at,
            "blockedSince": self.blocked_since,
            "lastUserMessage": self.last_user_message,
            "agents": agents,
            "blockedAgentCount": sum(1 for a in self.agents.values() if a.status == AgentStatus.BLOCKED),
            "workingAgentCount": sum(1 for a in self.agents.values() if a.status == AgentStatus.WORKING),
        }


@dataclass(frozen=True)
class CompletedWorkItem:
    """Immutable record of a finished agent, kept for the completed-work inbox."""
    id: str
    agent_name: str
    task: Optional[str]
    completed_at: int
    project_id: str
    project_name: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agentName": self.agent_name,
            "task": self.task,
            "completedAt": self.completed_at,
            "projectId": self.project_id,
            "projectName": self.project_name,
        }


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of the whole entity graph. Shares nothing with the store."""
    projects: Dict[str, dict]
    completed_work: tuple
    last_updated: int

    def payload(self) -> dict:
        """A fresh, independently mutable JSON payload."""
        return {
            "projects": copy.deepcopy(self.projects),
            "completedWork": [copy.deepcopy(item) for item in self.completed_work],
            "lastUpdated": self.last_updated,
        }

    def message(self) -> dict:
        return {"type": "state_update", "payload": self.payload()}
