"""
APScheduler wiring.

One global cron job fires a tick. A tick loads every source, groups them by
type and runs one asyncio task per type; sources of the same type run one
after another and share that type's rate limiter. At most one tick is in
flight at a time. The scheduler is started/stopped as part of the FastAPI
lifespan.

CLI usage (run one tick over every source, then exit):
    python -m collector.scheduler --run-now
"""

import asyncio
import sys
import threading
import time
from collections.abc import Callable
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from collector.config import Settings, cron_trigger, settings
from collector.errors import (
    ConfigInvalidError,
    SchedulerOverlapError,
    SchedulerStopTimeout,
    SourceNotFoundError,
    StoreError,
)
from collector.fetchers.base import Fetcher
from collector.fetchers.factory import build_fetcher
from collector.models import EPOCH, FetchResult, ScheduleEntry, Source, SourceStatus, utc_now
from collector.ratelimit import RateLimitRegistry, TokenBucket
from collector.store import Store
from collector.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

FetcherFactory = Callable[[Source, Settings, TokenBucket], Fetcher]


class CrawlScheduler:
    """
    Lifecycle: created -> started -> stopping -> stopped.

    `run_now()` works in the created state too, which is what the CLI uses.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        registry: RateLimitRegistry,
        fetcher_factory: FetcherFactory = build_fetcher,
    ):
        self.settings = settings
        self.store = store
        self.registry = registry
        self._build_fetcher = fetcher_factory
        self._trigger = cron_trigger(settings.cron_expr)
        self._scheduler: AsyncIOScheduler | None = None

        self._guard = threading.Lock()
        self._running = False
        self._tick_task: asyncio.Task | None = None
        self._source_tasks: set[asyncio.Task] = set()
        self.state = "created"

    @property
    def is_running(self) -> bool:
        """True while a tick is in flight."""
        return self._running

    @property
    def next_run_time(self):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job("crawl_tick")
        return job.next_run_time if job else None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Register the cron job; must be called with a running event loop."""
        if self.state != "created":
            raise RuntimeError(f"cannot start scheduler in state {self.state!r}")

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._on_cron,
            self._trigger,
            id="crawl_tick",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self.state = "started"
        logger.info(
            "scheduler_started",
            cron_expr=self.settings.cron_expr,
            next_run=str(self.next_run_time),
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop firing, cancel in-flight work and wait for it to unwind.

        Cancelled sources are put back to idle by their own cleanup. Raises
        SchedulerStopTimeout if that cleanup outlives `timeout`.
        """
        if self.state in ("stopping", "stopped"):
            return
        timeout = self.settings.stop_timeout_seconds if timeout is None else timeout
        self.state = "stopping"

        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        pending = {
            task
            for task in (self._tick_task, *self._source_tasks)
            if task is not None and not task.done()
        }
        for task in pending:
            task.cancel()

        try:
            if pending:
                _, still_pending = await asyncio.wait(pending, timeout=timeout)
                if still_pending:
                    raise SchedulerStopTimeout(
                        f"{len(still_pending)} task(s) still running after {timeout}s"
                    )
        finally:
            self.state = "stopped"
            logger.info("scheduler_stopped", cancelled_tasks=len(pending))

    # ------------------------------------------------------------------ #
    # Triggers
    # ------------------------------------------------------------------ #

    async def _on_cron(self) -> None:
        try:
            self._launch_tick()
        except SchedulerOverlapError:
            logger.warning("tick_skipped_overlap")

    def run_now(self) -> asyncio.Task:
        """Start a tick immediately; the returned task can be awaited."""
        if self.state in ("stopping", "stopped"):
            raise RuntimeError(f"cannot run in state {self.state!r}")
        task = self._launch_tick()
        logger.info("tick_requested")
        return task

    async def run_single_source(self, source_id: str) -> asyncio.Task:
        """Run one source outside the cron cadence, unless it is already running."""
        if self.state in ("stopping", "stopped"):
            raise RuntimeError(f"cannot run in state {self.state!r}")

        source = await asyncio.to_thread(self.store.get_source, source_id)
        if source is None:
            raise SourceNotFoundError(f"source {source_id} not found")

        claimed = await asyncio.to_thread(self.store.claim_source, source_id)
        if not claimed:
            raise SchedulerOverlapError(f"source {source_id} is already running")

        task = asyncio.get_running_loop().create_task(self._run_source(source, claimed=True))
        self._source_tasks.add(task)
        task.add_done_callback(self._source_tasks.discard)
        logger.info("source_run_requested", source_id=source_id, source_type=source.type)
        return task

    def _launch_tick(self) -> asyncio.Task:
        with self._guard:
            if self._running:
                raise SchedulerOverlapError("a crawl is already running")
            self._running = True

        task = asyncio.get_running_loop().create_task(self._tick())
        self._tick_task = task
        task.add_done_callback(self._tick_finished)
        return task

    def _tick_finished(self, task: asyncio.Task) -> None:
        with self._guard:
            self._running = False
            if self._tick_task is task:
                self._tick_task = None

    # ------------------------------------------------------------------ #
    # Schedule
    # ------------------------------------------------------------------ #

    def get_schedule(self) -> ScheduleEntry:
        last_run_at = self.store.last_run_at()
        reference = last_run_at or utc_now()
        # the trigger's next fire time is inclusive; nudge past `reference`
        next_run = self._trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))
        return ScheduleEntry(next_run=next_run, last_run_at=last_run_at)

    # ------------------------------------------------------------------ #
    # Tick
    # ------------------------------------------------------------------ #

    async def _tick(self) -> dict:
        start = time.monotonic()
        summary = {"sources": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        logger.info("tick_started")

        try:
            sources = await asyncio.to_thread(self.store.list_all_sources)
            summary["sources"] = len(sources)

            groups: dict[str, list[Source]] = {}
            for source in sources:
                groups.setdefault(source.type, []).append(source)

            results = await asyncio.gather(
                *(self._run_type(source_type, group) for source_type, group in groups.items()),
                return_exceptions=True,
            )
            for source_type, outcome in zip(groups, results):
                if isinstance(outcome, BaseException):
                    logger.error("source_type_failed", source_type=source_type, error=repr(outcome))
                    summary["failed"] += len(groups[source_type])
                    continue
                summary["succeeded"] += outcome.count(True)
                summary["failed"] += outcome.count(False)
                summary["skipped"] += outcome.count(None)

        except asyncio.CancelledError:
            logger.info("tick_cancelled", **summary)
            raise
        except Exception:
            logger.exception("tick_failed")
            return summary

        logger.info(
            "tick_completed",
            duration_ms=int((time.monotonic() - start) * 1000),
            **summary,
        )
        return summary

    async def _run_type(self, source_type: str, sources: list[Source]) -> list[bool | None]:
        return [await self._run_source(source) for source in sources]

    async def _run_source(self, source: Source, claimed: bool = False) -> bool | None:
        """
        Fetch and persist one source.

        Returns True on success and False on failure. Returns None without
        touching the row when another run already holds the source.
        """
        log = logger.bind(source_id=source.id, source_type=source.type)
        start = time.monotonic()

        if not claimed:
            try:
                claimed = await asyncio.to_thread(self.store.claim_source, source.id)
            except StoreError as exc:
                log.error("source_claim_failed", error=str(exc))
                await self._record_error(source, str(exc))
                return False
            if not claimed:
                log.warning("source_skipped_busy")
                return None

        try:
            try:
                result = await self._fetch(source)
            except TimeoutError:
                message = f"fetch timed out after {self.settings.source_timeout_seconds}s"
                log.warning("source_fetch_timeout", timeout=self.settings.source_timeout_seconds)
                await self._record_error(source, message)
                return False
            except Exception as exc:
                log.warning("source_fetch_failed", error=str(exc), error_type=type(exc).__name__)
                await self._record_error(source, str(exc))
                return False

            try:
                articles, comments = await asyncio.to_thread(self._persist, result)
            except StoreError as exc:
                log.error("source_store_failed", error=str(exc))
                await self._record_error(source, str(exc))
                return False

            try:
                await asyncio.to_thread(self.store.record_success, source.id, utc_now())
            except StoreError as exc:
                log.error("source_success_not_recorded", error=str(exc))
                await self._record_error(source, str(exc))
                return False

            log.info(
                "source_completed",
                articles=articles,
                comments=comments,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            return True

        except asyncio.CancelledError:
            log.info("source_cancelled")
            raise
        finally:
            await self._set_idle(source)

    async def _fetch(self, source: Source) -> FetchResult:
        if source.type not in self.registry:
            raise ConfigInvalidError(f"unsupported source type: {source.type}")

        fetcher = self._build_fetcher(source, self.settings, self.registry.get(source.type))
        fetcher.validate()

        since = source.last_success_at or EPOCH
        async with asyncio.timeout(self.settings.source_timeout_seconds):
            return await fetcher.fetch(since)

    def _persist(self, result: FetchResult) -> tuple[int, int]:
        with self.store.begin_write() as tx:
            articles = tx.upsert_articles(result.articles)
            comments = tx.upsert_comments(result.comments)
        return articles, comments

    async def _record_error(self, source: Source, message: str) -> None:
        try:
            await asyncio.to_thread(self.store.record_error, source.id, utc_now(), message)
        except StoreError:
            logger.exception("source_error_not_recorded", source_id=source.id)

    async def _set_idle(self, source: Source) -> None:
        # shielded so a second cancellation cannot leave the row stuck in running
        try:
            await asyncio.shield(
                asyncio.to_thread(self.store.update_source_status, source.id, SourceStatus.IDLE)
            )
        except StoreError:
            logger.exception("source_status_reset_failed", source_id=source.id)


# --------------------------------------------------------------------------- #
# CLI entry point: python -m collector.scheduler --run-now
# --------------------------------------------------------------------------- #

async def _run_now() -> None:
    setup_logging()
    store = Store(settings.db_path)
    store.init_schema()
    reset = store.reset_running_sources()
    if reset:
        logger.warning("stale_running_sources_reset", count=reset)
    registry = RateLimitRegistry.from_settings(settings)
    scheduler = CrawlScheduler(settings, store, registry)
    try:
        summary = await scheduler.run_now()
        logger.info("run_now_result", **summary)
    finally:
        store.close()


if __name__ == "__main__":
    if "--run-now" in sys.argv:
        asyncio.run(_run_now())
    else:
        print("Usage: python -m collector.scheduler --run-now")
        sys.exit(1)
