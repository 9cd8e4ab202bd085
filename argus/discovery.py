"""
Session discovery from transcript files.

Catches sessions the hook never announced and refreshes question/blocked
state for the ones it did. Scanning reads files and runs in a worker thread;
reconciling touches the store and runs under the engine's lock.

Layout: <root>/<one directory per project>/<session id>.jsonl. The project
path always comes from the transcript's declared cwd, never from the
directory name (the name encoding cannot tell "/" from "-").
"""
import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from argus import transcript
from argus.config import Config
from argus.models import AgentKind, AgentStatus, SPECIAL_STATUSES, SignalSource
from argus.store import EntityStore
from argus.transcript import TranscriptInfo

logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"
ARCHIVE_MARKERS = (".deleted", ".archived")


def is_archived(path: Path) -> bool:
    name = path.name.lower()
    return any(marker in name for marker in ARCHIVE_MARKERS)


class DiscoveryPoller:
    """Finds recently active transcripts and folds them into the store."""

    def __init__(self, cfg: Config, parser: Callable[..., TranscriptInfo] = transcript.parse):
        self.roots: List[Path] = list(cfg.TRANSCRIPT_ROOTS)
        self.recent_window = cfg.RECENT_WINDOW
        self.head_bytes = cfg.TRANSCRIPT_HEAD_BYTES
        self.tail_bytes = cfg.TRANSCRIPT_TAIL_BYTES
        self.task_limit = cfg.TASK_TEXT_LIMIT
        self.parser = parser

    def active_transcripts(self, now: Optional[float] = None) -> List[Path]:
        """Transcripts modified within the recency window, archived ones excluded."""
        now = now if now is not None else time.time()
        found = []
        for root in self.roots:
            try:
                project_dirs = [d for d in root.iterdir() if d.is_dir()]
            except OSError as e:
                logger.debug(f"Transcript root {root} unavailable: {e}")
                continue
            for project_dir in project_dirs:
                try:
                    candidates = list(project_dir.iterdir())
                except OSError:
                    continue
                for path in candidates:
                    if path.suffix != TRANSCRIPT_SUFFIX or is_archived(path):
                        continue
                    try:
                        if not path.is_file() or now - path.stat().st_mtime > self.recent_window:
                            continue
                    except OSError:
                        continue
                    found.append(path)
        return found

    def scan(self) -> List[TranscriptInfo]:
        """Read and parse every active transcript. Safe to run off the event loop."""
        findings = []
        for path in self.active_transcripts():
            info = self.parser(path, self.head_bytes, self.tail_bytes, self.task_limit)
            if info.workspace_path:
                findings.append(info)
            else:
                logger.debug(f"No declared cwd in {path.name} yet, skipping")
        return findings

    def reconcile(self, store: EntityStore, findings: Iterable[TranscriptInfo]) -> Set[str]:
        """Merge scan results into the store. Returns the ids of projects that changed."""
        touched = set()
        for info in findings:
            existing = store.find_project(info.workspace_path) if info.workspace_path else None
            before = store.get_project(existing) if existing else None
            try:
                pid = self._reconcile_one(store, info)
            except Exception as e:
                logger.error(f"Failed to reconcile transcript {info.path}: {e}")
                continue
            if pid and store.get_project(pid) != before:
                touched.add(pid)
        return touched

    def _reconcile_one(self, store: EntityStore, info: TranscriptInfo) -> Optional[str]:
        if not info.workspace_path or not info.session_id:
            return None
        # An existing project keeps whatever display name events gave it.
        pid = store.find_project(info.workspace_path) or store.upsert_project(info.workspace_path)
        if pid is None:
            return None
        session_id = info.session_id
        seen_at = info.modified_at or store.clock()

        agent = store.get_agent(pid, session_id)
        if agent is None:
            logger.info(f"Discovered session {session_id[:8]} in {info.workspace_path}")
            agent = store.upsert_agent(pid, session_id, {
                "kind": AgentKind.PRIMARY,
                "status": AgentStatus.WORKING,
                "name": "main",
                "task": info.first_user_task,
                "activity": info.recent_activity,
                "transcript_path": info.path,
                "last_activity_at": seen_at,
            })
            fresh = True
        else:
            fresh = seen_at > agent.last_activity_at
            fields = {}
            if info.first_user_task and not agent.task:
                fields["task"] = info.first_user_task
            if info.recent_activity and info.recent_activity != agent.activity:
                fields["activity"] = info.recent_activity
            if info.path and agent.transcript_path != info.path:
                fields["transcript_path"] = info.path
            if fields:
                store.upsert_agent(pid, session_id, fields, touch=False)
            store.touch_agent(pid, session_id, seen_at)

        if info.last_user_message:
            store.set_last_user_message(pid, info.last_user_message)

        self._reconcile_status(store, pid, session_id, info, fresh)
        return pid

    def _reconcile_status(self, store: EntityStore, pid: str, session_id: str,
                          info: TranscriptInfo, fresh: bool):
        agent = store.get_agent(pid, session_id)

        # Nothing on disk is newer than an explicit unblock event.
        if (agent.unblocked_at is not None and info.modified_at is not None
                and info.modified_at <= agent.unblocked_at):
            return

        if info.pending_question:
            if agent.status != AgentStatus.BLOCKED:
                store.upsert_agent(pid, session_id, {
                    "status": AgentStatus.BLOCKED,
                    "question": info.pending_question,
                    "blocked_source": SignalSource.TRANSCRIPT,
                }, touch=False)
            elif not agent.question or (agent.blocked_source == SignalSource.TRANSCRIPT
                                        and agent.question != info.pending_question):
                store.upsert_agent(pid, session_id, {"question": info.pending_question}, touch=False)
            return

        # Push-event blocked state is authoritative; the poll only clears what it inferred.
        if agent.status == AgentStatus.BLOCKED and agent.blocked_source == SignalSource.EVENT:
            return

        if info.rate_limit:
            store.upsert_agent(pid, session_id, {
                "status": AgentStatus.RATE_LIMITED,
                "question": None,
                "blocked_source": SignalSource.TRANSCRIPT,
                "rate_limit_reset_at": info.rate_limit.reset_at,
            }, touch=False)
        elif info.server:
            store.upsert_agent(pid, session_id, {
                "status": AgentStatus.SERVER_RUNNING,
                "question": None,
                "blocked_source": SignalSource.TRANSCRIPT,
                "server_port": info.server.port,
            }, touch=False)
        elif agent.status in SPECIAL_STATUSES or (agent.status == AgentStatus.IDLE and fresh):
            store.upsert_agent(pid, session_id, {"status": AgentStatus.WORKING, "question": None},
                               touch=False)
