"""Tick loop admitting due website checks with bounded concurrency."""

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from typing import Optional

from site_monitor.core import CrawlSession, PersistenceError, Repository, Website, utcnow
from site_monitor.use_cases import Clock, CrawlOrchestrator, due_websites

logger = logging.getLogger(__name__)


class Scheduler:
    """Admit due websites to the orchestrator, at most K at a time.

    The running CrawlSession is the in-flight marker: it is created at
    admission, before the worker task starts, so a website with a running
    session is never admitted twice.
    """

    def __init__(
        self,
        repository: Repository,
        orchestrator: CrawlOrchestrator,
        max_concurrent_checks: int = 5,
        tick_seconds: float = 30.0,
        check_timeout: float = 300.0,
        stale_grace: float = 600.0,
        clock: Clock = utcnow,
    ) -> None:
        if max_concurrent_checks < 1:
            raise ValueError("max_concurrent_checks must be at least 1")
        self.repository = repository
        self.orchestrator = orchestrator
        self.max_concurrent_checks = max_concurrent_checks
        self.tick_seconds = tick_seconds
        self.check_timeout = check_timeout
        self.stale_grace = stale_grace
        self.clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def due_websites(self, now: Optional[datetime] = None) -> list[Website]:
        return due_websites(self.repository, now or self.clock())

    def reap_stale_sessions(self, now: Optional[datetime] = None) -> list[CrawlSession]:
        """Fail running sessions no live worker owns that outlived the deadline.

        These are left behind by a crashed or killed process.
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.check_timeout + self.stale_grace)
        reaped = []

        for session in self.repository.list_running_sessions():
            if session.website_id in self._tasks or session.started_at > cutoff:
                continue
            session.fail(now, f"stale running session (started {session.started_at.isoformat()})")
            self.repository.update_session(session)
            reaped.append(session)
            logger.warning("Reaped stale session %s of website %s", session.id, session.website_id)

        return reaped

    def tick(self) -> list[str]:
        """Admit due websites without waiting for their checks.

        Must be called from a running event loop. Returns admitted website ids.
        """
        now = self.clock()
        self.reap_stale_sessions(now)

        admitted = []
        for website in self.due_websites(now):
            if len(self._tasks) >= self.max_concurrent_checks:
                logger.debug("All %d check slots busy, deferring the rest", self.max_concurrent_checks)
                break
            if website.id in self._tasks:
                continue
            if self.repository.running_session(website.id) is not None:
                logger.debug("Website %s already has a running check", website.id)
                continue

            session = self.orchestrator.start_session(website)
            task = asyncio.create_task(
                self.orchestrator.execute(website, session),
                name=f"check-{website.id}",
            )
            self._tasks[website.id] = task
            task.add_done_callback(functools.partial(self._on_done, website.id))
            admitted.append(website.id)

        if admitted:
            logger.info("Admitted %d checks (%d in flight)", len(admitted), len(self._tasks))
        return admitted

    def _on_done(self, website_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(website_id, None)
        if task.cancelled():
            logger.warning("Check of website %s was cancelled", website_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("Check of website %s crashed", website_id, exc_info=error)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick until ``stop_event`` is set, then wait for in-flight checks."""
        stop_event = stop_event or asyncio.Event()
        logger.info(
            "Scheduler started (tick %.0fs, max %d concurrent checks)",
            self.tick_seconds, self.max_concurrent_checks,
        )

        while not stop_event.is_set():
            try:
                self.tick()
            except PersistenceError as e:
                logger.critical("Store unavailable, skipping tick: %s", e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopping, waiting for %d checks", len(self._tasks))
        await self.drain()

    async def drain(self) -> None:
        """Wait for all in-flight checks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
