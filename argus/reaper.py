"""
Stale entity reaper.

Agents that stop showing activity are demoted and then removed quickly.
Projects are removed only after they have been empty for much longer, so a
session restart does not make a project card flicker out of existence.
"""
import logging
from typing import Set

from argus.config import Config
from argus.models import AgentStatus
from argus.store import EntityStore

logger = logging.getLogger(__name__)


class StaleReaper:
    """Periodic sweep over the store; thresholds are in seconds."""

    def __init__(self, cfg: Config):
        self.agent_idle_after_ms = int(cfg.AGENT_IDLE_AFTER * 1000)
        self.agent_stale_after_ms = int(cfg.AGENT_STALE_AFTER * 1000)
        self.blocked_stale_after_ms = int(cfg.BLOCKED_STALE_AFTER * 1000)
        self.project_stale_after_ms = int(cfg.PROJECT_STALE_AFTER * 1000)

    def sweep(self, store: EntityStore) -> Set[str]:
        """Demote, prune and collect. Returns the ids of projects that changed."""
        now = store.clock()
        touched = set()
        for pid in store.project_ids():
            for agent_id in store.agent_ids(pid):
                if self._sweep_agent(store, pid, agent_id, now):
                    touched.add(pid)

            if store.agent_ids(pid):
                continue
            project = store.get_project(pid)
            if now - project.last_activity_at > self.project_stale_after_ms:
                store.remove_project(pid)
                touched.add(pid)
        return touched

    def _sweep_agent(self, store: EntityStore, pid: str, agent_id: str, now: int) -> bool:
        agent = store.get_agent(pid, agent_id)
        quiet_for = now - agent.last_activity_at
        limit = self.blocked_stale_after_ms if agent.status == AgentStatus.BLOCKED else self.agent_stale_after_ms

        if quiet_for > limit:
            logger.info(f"Reaping stale agent {agent_id[:12]} in {pid} "
                        f"(quiet {quiet_for // 1000}s, {agent.status.value})")
            store.remove_agent(pid, agent_id)
            return True

        if (agent.status == AgentStatus.RATE_LIMITED and agent.rate_limit_reset_at is not None
                and now >= agent.rate_limit_reset_at):
            store.upsert_agent(pid, agent_id, {"status": AgentStatus.WORKING}, touch=False)
            return True

        if agent.status == AgentStatus.WORKING and quiet_for > self.agent_idle_after_ms:
            store.upsert_agent(pid, agent_id, {"status": AgentStatus.IDLE, "activity": None}, touch=False)
            return True
        return False
