"""
Push event handling.

The instrumentation hook POSTs loosely-typed JSON. parse_event() turns it into
one of a closed set of event variants and Ingestor.apply() maps each variant
onto store mutations. Unknown event kinds degrade to Activity.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Union

from argus.errors import EventValidationError
from argus.models import AgentKind, AgentStatus, SPECIAL_STATUSES, SignalSource
from argus.store import EntityStore
from argus.utils import sanitize_text

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 200


@dataclass(frozen=True)
class EventBase:
    session_id: str
    project_path: str
    project_name: Optional[str] = None
    timestamp: Optional[int] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_type: Optional[str] = None
    parent_agent_id: Optional[str] = None
    task: Optional[str] = None
    modes: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionStart(EventBase):
    pass


@dataclass(frozen=True)
class SessionEnd(EventBase):
    pass


@dataclass(frozen=True)
class AgentSpawn(EventBase):
    pass


@dataclass(frozen=True)
class AgentBlocked(EventBase):
    question: Optional[str] = None


@dataclass(frozen=True)
class AgentUnblocked(EventBase):
    pass


@dataclass(frozen=True)
class AgentComplete(EventBase):
    pass


@dataclass(frozen=True)
class Activity(EventBase):
    kind: str = "activity"  # the type the producer actually sent


Event = Union[SessionStart, SessionEnd, AgentSpawn, AgentBlocked, AgentUnblocked, AgentComplete, Activity]

EVENT_TYPES = {
    "session_start": SessionStart,
    "session_end": SessionEnd,
    "agent_spawn": AgentSpawn,
    "agent_blocked": AgentBlocked,
    "agent_unblocked": AgentUnblocked,
    "agent_complete": AgentComplete,
    "activity": Activity,
}


def _ident(value, name: str, required: bool = False) -> Optional[str]:
    if value is None or value == "":
        if required:
            raise EventValidationError(f"Missing {name}")
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise EventValidationError(f"{name} must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise EventValidationError(f"{name} is too long")
    return value.strip()


def parse_event(payload) -> Event:
    """
    Validate an inbound JSON object and build the matching event variant.

    Raises EventValidationError for payloads that are not objects or that
    lack a session id or a project path.
    """
    if not isinstance(payload, dict):
        raise EventValidationError("Event payload must be a JSON object")

    raw_type = payload.get("type")
    kind = raw_type.strip().lower().replace("-", "_") if isinstance(raw_type, str) else ""

    session_id = _ident(payload.get("sessionId"), "sessionId", required=True)
    project_path = payload.get("projectPath")
    if not isinstance(project_path, str) or not project_path.strip():
        raise EventValidationError("Missing projectPath")

    timestamp = payload.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = None

    modes = payload.get("modes")
    metadata = payload.get("metadata")
    common = dict(
        session_id=session_id,
        project_path=project_path.strip(),
        project_name=sanitize_text(payload.get("projectName"), MAX_ID_LENGTH),
        timestamp=int(timestamp) if timestamp is not None else None,
        agent_id=_ident(payload.get("agentId"), "agentId"),
        agent_name=sanitize_text(payload.get("agentName"), MAX_ID_LENGTH),
        agent_type=sanitize_text(payload.get("agentType"), MAX_ID_LENGTH),
        parent_agent_id=_ident(payload.get("parentAgentId"), "parentAgentId"),
        task=sanitize_text(payload.get("task")),
        modes=dict(modes) if isinstance(modes, dict) else None,
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )

    cls = EVENT_TYPES.get(kind)
    if cls is AgentBlocked:
        return AgentBlocked(question=sanitize_text(payload.get("question")), **common)
    if cls is None or cls is Activity:
        return Activity(kind=kind or "activity", **common)
    return cls(**common)


class Ingestor:
    """Applies push events to the entity store."""

    def apply(self, store: EntityStore, event: Event) -> Set[str]:
        """Apply one event. Returns the ids of the projects it touched."""
        name = event.project_name
        if isinstance(event, SessionStart):
            pid = store.upsert_project(event.project_path, name)
            if pid is None:
                return set()
            fields = {"kind": AgentKind.PRIMARY, "status": AgentStatus.WORKING,
                      "name": event.agent_name or "main", "question": None}
            if event.task:
                fields["task"] = event.task
            if event.modes is not None:
                fields["modes"] = event.modes
            store.upsert_agent(pid, event.session_id, fields)
            return {pid}

        if isinstance(event, SessionEnd):
            pid = store.find_project(event.project_path)
            if pid is None or not store.remove_agent(pid, event.session_id):
                logger.info(f"session_end for unknown session {event.session_id[:8]}, ignoring")
                return set()
            return {pid}

        if isinstance(event, AgentComplete):
            return self._complete(store, event)

        # Remaining kinds auto-register the session when the hook was installed
        # after it started.
        pid = store.upsert_project(event.project_path, name)
        if pid is None:
            return set()
        self._ensure_session(store, pid, event)

        if isinstance(event, AgentSpawn):
            agent_id = event.agent_id or f"sub-{store.clock()}"
            kind = AgentKind.BACKGROUND if event.agent_type == "background" else AgentKind.DELEGATED
            fields = {
                "kind": kind,
                "status": AgentStatus.WORKING,
                "name": event.agent_name,
                "parent_id": event.parent_agent_id or event.session_id,
            }
            if event.task:
                fields["task"] = event.task
            store.upsert_agent(pid, agent_id, fields)
            return {pid}

        target = event.agent_id or event.session_id
        if isinstance(event, AgentBlocked):
            if store.get_agent(pid, target) is None:
                logger.info(f"agent_blocked for unknown agent {target}, ignoring")
                return {pid}
            store.upsert_agent(pid, target, {
                "status": AgentStatus.BLOCKED,
                "question": event.question,
                "blocked_source": SignalSource.EVENT,
            })
            return {pid}

        if isinstance(event, AgentUnblocked):
            agent = store.get_agent(pid, target)
            if agent is None:
                return {pid}
            # Transcripts written before this moment cannot re-block the agent.
            unblocked_at = max(event.timestamp or 0, store.clock())
            if agent.status in SPECIAL_STATUSES:
                store.upsert_agent(pid, target, {"status": AgentStatus.WORKING, "question": None,
                                                 "unblocked_at": unblocked_at})
            else:
                store.upsert_agent(pid, target, {"unblocked_at": unblocked_at})
            return {pid}

        return self._activity(store, pid, event)

    def _ensure_session(self, store: EntityStore, pid: str, event: Event):
        if store.get_agent(pid, event.session_id) is None:
            logger.info(f"Auto-registering session {event.session_id[:8]} in {pid}")
            store.upsert_agent(pid, event.session_id, {
                "kind": AgentKind.PRIMARY,
                "status": AgentStatus.WORKING,
                "name": "main",
            })

    def _activity(self, store: EntityStore, pid: str, event: Activity) -> Set[str]:
        target = event.agent_id or event.session_id
        if store.get_agent(pid, target) is None:
            target = event.session_id
        fields = {}
        if event.task:
            fields["activity"] = event.task
        if event.modes is not None:
            fields["modes"] = event.modes
        if "delegatingTo" in event.metadata:
            fields["delegating_to"] = sanitize_text(event.metadata.get("delegatingTo"), MAX_ID_LENGTH)
        if fields:
            store.upsert_agent(pid, target, fields)
        else:
            store.touch_agent(pid, target)

        finished = event.metadata.get("backgroundTaskComplete")
        if isinstance(finished, str):
            agent = store.get_agent(pid, finished)
            if agent is not None and agent.kind == AgentKind.BACKGROUND:
                store.record_completion(pid, finished)
        return {pid}

    def _complete(self, store: EntityStore, event: AgentComplete) -> Set[str]:
        pid = store.find_project(event.project_path)
        if pid is None:
            logger.info(f"agent_complete for unknown project {event.project_path}, ignoring")
            return set()

        target = None
        if event.agent_id and store.get_agent(pid, event.agent_id) is not None:
            target = event.agent_id
        elif event.agent_name:
            latest = None
            for agent_id in store.agent_ids(pid):
                agent = store.get_agent(pid, agent_id)
                if (agent.kind != AgentKind.PRIMARY and agent.name == event.agent_name
                        and agent.status == AgentStatus.WORKING
                        and (latest is None or agent.spawned_at >= latest.spawned_at)):
                    latest = agent
            target = latest.id if latest else None
        elif not event.agent_id:
            target = event.session_id

        if target is None or store.get_agent(pid, target) is None:
            logger.info(f"agent_complete matched no agent in {pid}, ignoring")
            return set()
        if event.task:
            store.upsert_agent(pid, target, {"task": event.task})
        store.record_completion(pid, target)
        return {pid}
