"""Service for running periodic background tasks."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

RETRY_DELAY = 60.0


class TaskScheduler:
    """Runs named coroutines on fixed intervals."""

    def __init__(self, retry_delay: float = RETRY_DELAY):
        """Initialize the scheduler."""
        self.tasks: Dict[str, asyncio.Task] = {}
        self.running = False
        self.retry_delay = retry_delay

    async def start(self) -> None:
        """Start the scheduler."""
        if self.running:
            return
        self.running = True
        logger.info("Starting task scheduler...")

    async def stop(self) -> None:
        """Stop the scheduler and cancel every task."""
        if not self.running:
            return

        self.running = False
        logger.info("Stopping task scheduler...")

        for task in self.tasks.values():
            task.cancel()

        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()

    def schedule_task(
        self,
        name: str,
        coro: Callable[..., Awaitable[Any]],
        interval: float,
        *args: Any,
        delay: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        """Schedule a new task.

        The task first runs after ``delay`` seconds (immediately when None)
        and then every ``interval`` seconds. Errors are logged and the task
        retries after ``retry_delay``.
        """
        if not self.running:
            raise ValueError("Scheduler is not running")
        if name in self.tasks:
            logger.warning("Task %s already exists", name)
            return

        async def run_task() -> None:
            if delay:
                await asyncio.sleep(delay)
            while self.running:
                try:
                    await coro(*args, **kwargs)
                    await asyncio.sleep(interval)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error("Error in task %s: %s", name, str(e))
                    await asyncio.sleep(self.retry_delay)

        self.tasks[name] = asyncio.create_task(run_task(), name=name)
        logger.info("Scheduled task: %s (every %.0fs)", name, interval)

    def cancel_task(self, name: str) -> None:
        """Cancel a scheduled task."""
        if name not in self.tasks:
            logger.warning("Task %s does not exist", name)
            return

        self.tasks[name].cancel()
        del self.tasks[name]
        logger.info("Cancelled task: %s", name)
