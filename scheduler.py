#!/usr/bin/env python3
"""
Interval scheduler for feed synchronization.

The poll cadence is the smallest ``poll_interval_minutes`` across the
configured feeds (one hour when none is set). ``FeedScheduler`` reloads the
feed list before every cycle, sleeps for that interval and invokes the
synchronizer, holding a run lock so overlapping triggers are skipped.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from config import config, get_logger
from feed_types import FeedConfig
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")

DEFAULT_INTERVAL = timedelta(hours=1)
ERROR_BACKOFF_SECONDS = 60


def min_interval(feed_configs: Iterable[FeedConfig]) -> timedelta:
    """Return the smallest positive poll interval across the feeds.

    Entries without a URL are ignored. Defaults to one hour when no feed has a
    positive interval.
    """
    minutes = [
        feed.poll_interval_minutes
        for feed in feed_configs
        if feed.url and isinstance(feed.poll_interval_minutes, int) and feed.poll_interval_minutes > 0
    ]
    if not minutes:
        return DEFAULT_INTERVAL
    return timedelta(minutes=min(minutes))


class FeedScheduler:
    """Runs the synchronizer every ``min_interval`` with at most one run at a time."""

    def __init__(self, runner: Callable[[List[FeedConfig]], Awaitable[Any]], config_path: Optional[str] = None):
        """Initialize scheduler.

        Args:
            runner: Coroutine function called with the freshly loaded feed list,
                    typically ``FeedSynchronizer.run``
            config_path: Path to feeds.yaml (default: config.FEEDS_CONFIG_PATH)
        """
        self.runner = runner
        self.config_path = config_path or config.FEEDS_CONFIG_PATH
        self._run_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self.runs_completed = 0
        self.runs_failed = 0
        self.runs_skipped = 0
        self.last_run_started: Optional[datetime] = None
        self.last_run_finished: Optional[datetime] = None
        self.last_result: Any = None
        self.next_run_time: Optional[datetime] = None

    def load_feeds(self) -> List[FeedConfig]:
        return config.list_feeds(self.config_path)

    def current_interval(self, feeds: Optional[List[FeedConfig]] = None) -> timedelta:
        return min_interval(self.load_feeds() if feeds is None else feeds)

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @trace_span("scheduler.run", tracer_name="scheduler")
    async def run_once(self, feeds: Optional[List[FeedConfig]] = None) -> Any:
        """Trigger one synchronization run.

        Returns the runner's result, or None when the run was skipped because
        another one is in progress, or failed.
        """
        if self._run_lock.locked():
            self.runs_skipped += 1
            logger.warning("Previous sync run still in progress, skipping this trigger")
            return None

        async with self._run_lock:
            if feeds is None:
                feeds = self.load_feeds()
            self.last_run_started = datetime.now(timezone.utc)
            logger.info(f"Starting scheduled sync of {len(feeds)} feeds")
            try:
                result = await self.runner(feeds)
            except Exception as e:
                self.runs_failed += 1
                logger.error(f"Scheduled sync run failed: {e}")
                return None
            finally:
                self.last_run_finished = datetime.now(timezone.utc)

            self.runs_completed += 1
            self.last_result = result
            duration = (self.last_run_finished - self.last_run_started).total_seconds()
            logger.info(f"Scheduled sync run completed in {duration:.1f}s")
            return result

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until stop() is called. Returns True if stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False

    def stop(self) -> None:
        self._stop.set()

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_forever(self, run_immediately: Optional[bool] = None, max_runs: Optional[int] = None) -> None:
        """Run the synchronizer on the computed cadence until stopped or cancelled.

        Args:
            run_immediately: Run once before the first sleep
                             (default: config.SCHEDULER_RUN_IMMEDIATELY)
            max_runs: Stop after this many triggers (default: run forever)
        """
        if run_immediately is None:
            run_immediately = config.SCHEDULER_RUN_IMMEDIATELY

        triggers = 0
        skip_wait = run_immediately
        logger.info("Starting scheduler loop")

        while not self._stop.is_set():
            if max_runs is not None and triggers >= max_runs:
                break
            try:
                feeds = self.load_feeds()
                if not skip_wait:
                    interval = min_interval(feeds)
                    self.next_run_time = datetime.now(timezone.utc) + interval
                    logger.info(
                        f"Sleeping {interval.total_seconds() / 60:.1f} minutes until next run at "
                        f"{self.next_run_time.isoformat()}"
                    )
                    if await self._wait(interval.total_seconds()):
                        break
                    # Feeds may have changed while sleeping
                    feeds = self.load_feeds()
                skip_wait = False

                triggers += 1
                await self.run_once(feeds)
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled - shutting down")
                raise
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                if await self._wait(ERROR_BACKOFF_SECONDS):
                    break

        self.next_run_time = None
        logger.info("Scheduler loop stopped")

    def get_schedule_status(self) -> Dict[str, Any]:
        """Get current schedule status information."""
        now = datetime.now(timezone.utc)
        feeds = self.load_feeds()
        interval = min_interval(feeds)
        seconds_until = (self.next_run_time - now).total_seconds() if self.next_run_time else None

        return {
            'current_time': now.isoformat(),
            'feeds_count': len([f for f in feeds if f.url]),
            'interval_minutes': interval.total_seconds() / 60,
            'feed_intervals': {f.label: f.poll_interval_minutes for f in feeds if f.url},
            'next_run_time': self.next_run_time.isoformat() if self.next_run_time else None,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
            'running': self.running,
            'runs_completed': self.runs_completed,
            'runs_failed': self.runs_failed,
            'runs_skipped': self.runs_skipped,
            'last_run_started': self.last_run_started.isoformat() if self.last_run_started else None,
            'last_run_finished': self.last_run_finished.isoformat() if self.last_run_finished else None,
        }

    def print_schedule_status(self) -> None:
        """Print formatted schedule status."""
        status = self.get_schedule_status()

        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"📡 Configured feeds: {status['feeds_count']}")
        print(f"🔁 Poll interval: {status['interval_minutes']:g} minutes")
        for label, minutes in sorted(status['feed_intervals'].items()):
            print(f"   - {label}: every {minutes} minutes")
        if status['next_run_time']:
            print(f"⏭️ Next run: {status['next_run_time']} ({status['minutes_until_next_run']:.1f} minutes)")
        if status['last_run_finished']:
            print(f"✅ Last run finished: {status['last_run_finished']}")


def create_scheduler(runner: Callable[[List[FeedConfig]], Awaitable[Any]],
                     config_path: Optional[str] = None) -> FeedScheduler:
    """Create a FeedScheduler instance."""
    return FeedScheduler(runner, config_path)
