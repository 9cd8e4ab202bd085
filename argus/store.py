"""
In-memory entity store: Project -> {Agent}.

Owns identity, partial-update merge and status derivation. No I/O, no locking:
every call is expected to come through the engine's serialization point, and
callers only ever receive copies of live records.
"""
import dataclasses
import logging
from collections import deque
from typing import Callable, Dict, List, Optional

from argus.models import (
    Agent,
    AgentKind,
    AgentStatus,
    CompletedWorkItem,
    Project,
    ProjectStatus,
    SPECIAL_STATUSES,
    STATUS_PRECEDENCE,
    Snapshot,
)
from argus.utils import normalize_path, now_ms, project_id, project_name_from_path

logger = logging.getLogger(__name__)

DEFAULT_COMPLETED_WORK_LIMIT = 50

_AGENT_FIELDS = frozenset(f.name for f in dataclasses.fields(Agent)) - {"id", "working_since"}


class EntityStore:
    """Canonical, deduplicated graph of projects and their agents."""

    def __init__(self, completed_work_limit: int = DEFAULT_COMPLETED_WORK_LIMIT,
                 clock: Callable[[], int] = now_ms):
        self._projects: Dict[str, Project] = {}
        self._completed: deque = deque(maxlen=max(1, completed_work_limit))
        self.clock = clock

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def upsert_project(self, path: str, name: Optional[str] = None) -> Optional[str]:
        """Return the id of the project at path, creating it on first sight."""
        normalized = normalize_path(path)
        if normalized is None:
            return None
        pid = project_id(normalized)
        project = self._projects.get(pid)
        if project is None:
            project = Project(
                id=pid,
                path=normalized,
                name=name or project_name_from_path(normalized),
                last_activity_at=self.clock(),
            )
            self._projects[pid] = project
            logger.info(f"Project created: {project.name} ({pid})")
        elif name and project.name != name:
            project.name = name
        return pid

    def find_project(self, path: str) -> Optional[str]:
        normalized = normalize_path(path)
        if normalized is None:
            return None
        pid = project_id(normalized)
        return pid if pid in self._projects else None

    def remove_project(self, pid: str) -> bool:
        project = self._projects.pop(pid, None)
        if project is None:
            return False
        logger.info(f"Project removed: {project.name} ({pid})")
        return True

    def project_ids(self) -> List[str]:
        return list(self._projects)

    def get_project(self, pid: str) -> Optional[Project]:
        """A detached copy of the project, agents included."""
        project = self._projects.get(pid)
        return copy_project(project) if project else None

    def set_last_user_message(self, pid: str, message: Optional[str]) -> bool:
        project = self._projects.get(pid)
        if project is None or project.last_user_message == message:
            return False
        project.last_user_message = message
        return True

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def agent_ids(self, pid: str) -> List[str]:
        project = self._projects.get(pid)
        return list(project.agents) if project else []

    def get_agent(self, pid: str, agent_id: str) -> Optional[Agent]:
        project = self._projects.get(pid)
        if project is None or agent_id not in project.agents:
            return None
        return copy_agent(project.agents[agent_id])

    def upsert_agent(self, pid: str, agent_id: str, fields: dict, touch: bool = True) -> Optional[Agent]:
        """
        Merge fields into an existing agent, or create it.

        Only the keys present in fields are applied; a key mapped to None
        clears that attribute. With touch, last_activity_at moves to now
        unless fields set it. Unknown project ids are a no-op.
        """
        project = self._projects.get(pid)
        if project is None:
            logger.debug(f"upsert_agent: unknown project {pid}, dropping update for {agent_id}")
            return None
        unknown = set(fields) - _AGENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown agent fields: {sorted(unknown)}")

        now = self.clock()
        agent = project.agents.get(agent_id)
        if agent is None:
            agent = Agent(
                id=agent_id,
                kind=fields.get("kind") or AgentKind.PRIMARY,
                status=AgentStatus.IDLE,
                spawned_at=fields.get("spawned_at") or now,
                last_activity_at=now,
            )
            project.agents[agent_id] = agent
            self._set_status(agent, fields.get("status") or AgentStatus.WORKING, now)

        for key, value in fields.items():
            if key == "status":
                if value is not None:
                    self._set_status(agent, value, now)
            elif key in ("kind", "spawned_at") and value is None:
                continue
            else:
                setattr(agent, key, value)

        if touch and "last_activity_at" not in fields:
            agent.last_activity_at = now
        project.last_activity_at = max(project.last_activity_at, agent.last_activity_at)
        return copy_agent(agent)

    def touch_agent(self, pid: str, agent_id: str, at: Optional[int] = None) -> bool:
        """Refresh last-activity time only; never changes status."""
        project = self._projects.get(pid)
        agent = project.agents.get(agent_id) if project else None
        if agent is None:
            return False
        at = at if at is not None else self.clock()
        agent.last_activity_at = max(agent.last_activity_at, at)
        project.last_activity_at = max(project.last_activity_at, agent.last_activity_at)
        return True

    def remove_agent(self, pid: str, agent_id: str) -> bool:
        project = self._projects.get(pid)
        if project is None or project.agents.pop(agent_id, None) is None:
            logger.debug(f"remove_agent: {agent_id} not found in {pid}")
            return False
        return True

    def _set_status(self, agent: Agent, status: AgentStatus, now: int):
        status = AgentStatus(status)
        if status == agent.status:
            return
        if agent.working_since is not None:
            agent.working_time += max(0, now - agent.working_since)
            agent.working_since = None
        if status == AgentStatus.WORKING:
            agent.working_since = now
        if status not in SPECIAL_STATUSES:
            agent.blocked_source = None
        if status != AgentStatus.RATE_LIMITED:
            agent.rate_limit_reset_at = None
        if status != AgentStatus.SERVER_RUNNING:
            agent.server_port = None
        agent.status = status

    # ------------------------------------------------------------------
    # Derivation and history
    # ------------------------------------------------------------------

    def derive_status(self, pid: str) -> Optional[ProjectStatus]:
        """
        Recompute a project's status from its agents.

        Precedence is blocked > rate_limited > server_running > working > idle.
        blocked_since is stamped on the transition into blocked and cleared on
        the transition out, in this same call.
        """
        project = self._projects.get(pid)
        if project is None:
            return None
        present = {a.status for a in project.agents.values()}
        status = ProjectStatus.IDLE
        for agent_status, project_status in STATUS_PRECEDENCE:
            if agent_status in present:
                status = project_status
                break

        if status == ProjectStatus.BLOCKED:
            if project.status != ProjectStatus.BLOCKED or project.blocked_since is None:
                project.blocked_since = self.clock()
        else:
            project.blocked_since = None
        project.status = status
        return status

    def record_completion(self, pid: str, agent_id: str) -> Optional[CompletedWorkItem]:
        """Move a finished agent into the bounded completed-work list."""
        project = self._projects.get(pid)
        agent = project.agents.get(agent_id) if project else None
        if agent is None:
            logger.debug(f"record_completion: {agent_id} not found in {pid}")
            return None
        now = self.clock()
        item = CompletedWorkItem(
            id=f"{pid}-{agent_id}-{now}",
            agent_name=agent.name or agent.kind.value,
            task=agent.task or agent.activity,
            completed_at=now,
            project_id=pid,
            project_name=project.name,
        )
        # Newest first; deque maxlen evicts the oldest from the right.
        self._completed.appendleft(item)
        del project.agents[agent_id]
        project.last_activity_at = max(project.last_activity_at, now)
        return item

    def completed_work(self) -> List[CompletedWorkItem]:
        return list(self._completed)

    def snapshot(self) -> Snapshot:
        now = self.clock()
        return Snapshot(
            projects={pid: p.to_dict(now) for pid, p in self._projects.items()},
            completed_work=tuple(item.to_dict() for item in self._completed),
            last_updated=now,
        )


def copy_agent(agent: Agent) -> Agent:
    modes = dict(agent.modes) if agent.modes is not None else None
    return dataclasses.replace(agent, modes=modes)


def copy_project(project: Project) -> Project:
    agents = {aid: copy_agent(a) for aid, a in project.agents.items()}
    return dataclasses.replace(project, agents=agents)
