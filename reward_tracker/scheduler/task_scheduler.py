"""
Task scheduler for the periodic reward tracking jobs.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from reward_tracker.core.exceptions import SchedulerError

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_daily_run(now: datetime, utc_hour: int) -> datetime:
    """First ``utc_hour``:00 UTC strictly after ``now``."""
    candidate = now.replace(hour=utc_hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class ScheduledTask:
    """Represents a scheduled task, run every ``interval_seconds`` or daily at ``utc_hour``."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: Optional[int] = None,
        utc_hour: Optional[int] = None,
        enabled: bool = True,
        run_immediately: bool = False,
        clock: Callable[[], datetime] = _utcnow
    ):
        if (interval_seconds is None) == (utc_hour is None):
            raise SchedulerError(
                f"Task {name} needs exactly one of interval_seconds or utc_hour",
                {"task": name}
            )

        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.utc_hour = utc_hour
        self.enabled = enabled
        self.clock = clock
        self.last_run = None
        self.run_count = 0
        self.skip_count = 0
        self.error_count = 0
        self.last_error = None
        self._lock = asyncio.Lock()

        self.next_run = self.clock()
        if not run_immediately:
            self.schedule_next_run()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def should_run(self) -> bool:
        """Check if task should run now."""
        return self.enabled and not self.is_running and self.clock() >= self.next_run

    def schedule_next_run(self):
        """Schedule the next run."""
        now = self.clock()
        if self.utc_hour is not None:
            self.next_run = next_daily_run(now, self.utc_hour)
        else:
            self.next_run = now + timedelta(seconds=self.interval_seconds)

    async def run(self) -> bool:
        """
        Execute the task unless a previous run is still in progress.

        Returns:
            False if the run was skipped because of an overlapping run
        """
        if self._lock.locked():
            self.skip_count += 1
            logger.warning("Task still running, skipping", task=self.name)
            return False

        async with self._lock:
            try:
                logger.debug("Running scheduled task", task=self.name)

                start_time = self.clock()
                await self.func()
                duration = (self.clock() - start_time).total_seconds()

                self.last_run = start_time
                self.run_count += 1
                self.schedule_next_run()

                logger.info(
                    "Task completed",
                    task=self.name,
                    duration=duration,
                    run_count=self.run_count,
                    next_run=self.next_run.isoformat()
                )
                return True

            except Exception as e:
                self.error_count += 1
                self.last_error = str(e)
                self.schedule_next_run()  # Still schedule next run

                logger.error(
                    "Task failed",
                    task=self.name,
                    error=str(e),
                    error_count=self.error_count
                )
                raise


class TaskScheduler:
    """Manages scheduled background tasks."""

    def __init__(self, loop_interval: int = 10):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = loop_interval
        self._in_flight: Set[asyncio.Task] = set()

    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: Optional[int] = None,
        utc_hour: Optional[int] = None,
        enabled: bool = True,
        run_immediately: bool = False
    ) -> ScheduledTask:
        """Register a new scheduled task."""
        task = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            utc_hour=utc_hour,
            enabled=enabled,
            run_immediately=run_immediately
        )

        self.tasks[name] = task
        logger.info(
            "Registered task",
            task=name,
            interval_seconds=interval_seconds,
            utc_hour=utc_hour,
            next_run=task.next_run.isoformat()
        )
        return task

    async def start(self):
        """Start the task scheduler."""
        logger.info("Starting task scheduler", tasks=list(self.tasks))
        self.running = True

        while self.running:
            try:
                self._launch_pending_tasks()
                await asyncio.sleep(self.loop_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        logger.info("Task scheduler stopped")

    async def stop(self, wait: bool = True):
        """Stop launching tasks and, if ``wait``, let running ones finish."""
        logger.info("Stopping task scheduler", in_flight=len(self._in_flight))
        self.running = False

        if wait and self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def run_task(self, name: str) -> bool:
        """Run a registered task now, outside its schedule."""
        if name not in self.tasks:
            raise SchedulerError(f"Unknown task: {name}", {"task": name})
        return await self.tasks[name].run()

    def _launch_pending_tasks(self):
        """Start every due task in the background."""
        for task in self.tasks.values():
            if not task.should_run():
                continue

            running = asyncio.create_task(self._run_logged(task), name=task.name)
            self._in_flight.add(running)
            running.add_done_callback(self._in_flight.discard)

    async def _run_logged(self, task: ScheduledTask):
        try:
            await task.run()
        except Exception as e:
            logger.error("Task failed", task=task.name, error=str(e))

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        enabled_tasks = sum(1 for task in self.tasks.values() if task.enabled)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "running": task.is_running,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat(),
                "run_count": task.run_count,
                "skip_count": task.skip_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < total_tasks * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": enabled_tasks,
            "tasks_with_errors": tasks_with_errors,
            "tasks": task_statuses
        }
