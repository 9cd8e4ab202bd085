"""
Reconciliation engine.

The single owner of the entity store. Push events, discovery polls and reaper
sweeps are three producers feeding one serialization point, apply(): inside
its lock a mutation runs, every touched project has its status re-derived, and
a snapshot is taken and published before the next mutation may start.
"""
import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from argus.config import Config
from argus.discovery import DiscoveryPoller
from argus.events import Event, Ingestor
from argus.models import Snapshot
from argus.publisher import SnapshotPublisher
from argus.reaper import StaleReaper
from argus.store import EntityStore
from argus.utils import now_ms

logger = logging.getLogger(__name__)

Mutation = Callable[[EntityStore], Optional[Iterable[str]]]


class Engine:
    """Serializes every store mutation and publishes the result."""

    def __init__(self, cfg: Config, clock: Callable[[], int] = now_ms,
                 poller: Optional[DiscoveryPoller] = None):
        self.config = cfg
        self.store = EntityStore(completed_work_limit=cfg.COMPLETED_WORK_LIMIT, clock=clock)
        self.publisher = SnapshotPublisher(queue_size=cfg.SUBSCRIBER_QUEUE_SIZE)
        self.ingestor = Ingestor()
        self.poller = poller or DiscoveryPoller(cfg)
        self.reaper = StaleReaper(cfg)
        self.started_at = time.monotonic()
        self._lock = asyncio.Lock()
        self.publisher.latest = self.store.snapshot()

    async def apply(self, mutation: Mutation, reason: str = "mutation") -> bool:
        """
        Run one mutation under the lock, then re-derive and publish.

        Returns True if anything changed. Exceptions raised by the mutation are
        logged and swallowed so no producer can take the service down; any
        writes it made before failing are still derived and published.
        """
        async with self._lock:
            try:
                touched = set(mutation(self.store) or ())
            except Exception as e:
                logger.error(f"{reason} failed: {e}")
                self._recover()
                return False
            if not touched:
                return False
            for pid in touched:
                self.store.derive_status(pid)
            self.publisher.publish(self.store.snapshot())
            logger.debug(f"{reason}: published snapshot for {len(touched)} project(s)")
            return True

    def _recover(self):
        for pid in self.store.project_ids():
            self.store.derive_status(pid)
        snapshot = self.store.snapshot()
        latest = self.publisher.latest
        if (latest is None or snapshot.projects != latest.projects
                or snapshot.completed_work != latest.completed_work):
            self.publisher.publish(snapshot)

    async def ingest(self, event: Event) -> bool:
        logger.info(f"[EVENT] {type(event).__name__} | session={event.session_id[:8]} "
                    f"| agent={event.agent_id or 'n/a'} | name={event.agent_name or 'n/a'}")
        return await self.apply(lambda store: self.ingestor.apply(store, event), "ingest")

    async def poll(self) -> bool:
        """One discovery tick: read transcripts off-loop, reconcile under the lock."""
        try:
            findings = await asyncio.to_thread(self.poller.scan)
        except Exception as e:
            logger.error(f"Transcript scan failed: {e}")
            return False
        return await self.apply(lambda store: self.poller.reconcile(store, findings), "poll")

    async def reap(self) -> bool:
        return await self.apply(self.reaper.sweep, "reap")

    def snapshot(self) -> Snapshot:
        """Latest published snapshot; never a view into live state."""
        return self.publisher.latest

    def uptime(self) -> float:
        return time.monotonic() - self.started_at


async def run_periodically(name: str, interval: float, tick: Callable[[], "asyncio.Future"]):
    """
    Run tick forever, sleeping a full interval after each run finishes.

    A tick that outlasts the interval delays the next one instead of queueing
    behind it.
    """
    while True:
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{name} tick failed: {e}")
        await asyncio.sleep(interval)
