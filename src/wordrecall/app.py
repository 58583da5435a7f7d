"""Main application class."""
import asyncio
import logging
import signal
from typing import Optional

from sqlalchemy.orm import Session

from wordrecall.config import REVIEW_INTERVAL, settings
from wordrecall.models.base import SessionLocal, init_db
from wordrecall.monitoring import start_monitoring
from wordrecall.services.deck_service import DeckEngine
from wordrecall.services.progress_store import SqlProgressStore, migrate_legacy_collections
from wordrecall.services.remote_store import RemoteStoreError, SupabaseRemoteStore
from wordrecall.services.review_scheduler import EbbinghausScheduler
from wordrecall.services.session_coordinator import SessionCoordinator
from wordrecall.services.sync_service import SyncReconciler
from wordrecall.services.task_scheduler import TaskScheduler
from wordrecall.services.word_history import StoreWordHistoryProvider


class WordRecallApp:
    """Wires the review engine together and runs its background tasks."""

    def __init__(self):
        """Initialize the application."""
        self.db: Optional[Session] = None
        self.coordinator: Optional[SessionCoordinator] = None
        self.tasks: Optional[TaskScheduler] = None
        self.remote: Optional[SupabaseRemoteStore] = None
        self.running = False
        self.logger = logging.getLogger(__name__)

    async def _connect_remote(self) -> Optional[SupabaseRemoteStore]:
        """Create and sign in the cloud store; local-only mode on failure."""
        if not settings.sync.enabled:
            return None
        try:
            remote = SupabaseRemoteStore(settings.sync.supabase_url, settings.sync.supabase_key)
            if settings.sync.email and settings.sync.password:
                await asyncio.to_thread(remote.sign_in, settings.sync.email, settings.sync.password)
            else:
                self.logger.info("No cloud credentials configured, sync will report not logged in")
            return remote
        except (RemoteStoreError, ValueError) as e:
            self.logger.warning("Cloud sync unavailable, running local-only: %s", str(e))
            return None

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        try:
            init_db()
            self.db = SessionLocal()
            store = SqlProgressStore(self.db)
            migrate_legacy_collections(store)
            self.logger.info("Database initialized")

            history = StoreWordHistoryProvider(store)
            scheduler = EbbinghausScheduler(store)
            engine = DeckEngine(store, scheduler, history)

            self.remote = await self._connect_remote()
            sync = SyncReconciler(store, scheduler, history, self.remote, enabled=settings.sync.enabled)

            self.coordinator = SessionCoordinator(engine, scheduler, history, sync)
            status = await self.coordinator.start()
            self.logger.info("Session started: %s", status.message)

            self.tasks = TaskScheduler()
            await self.tasks.start()
            review_seconds = REVIEW_INTERVAL.total_seconds()
            self.tasks.schedule_task(
                "background_review",
                self.coordinator.trigger_background_review,
                review_seconds,
                delay=review_seconds,
            )
            if settings.sync.enabled:
                self.tasks.schedule_task(
                    "cloud_sync",
                    self.coordinator.run_sync,
                    settings.sync.interval_seconds,
                )
            self.logger.info("Task scheduler started")

            if settings.monitoring.enabled:
                start_monitoring(settings.monitoring.port)
                self.logger.info("Metrics exported on port %d", settings.monitoring.port)

            self.running = True

        except Exception as e:
            self.logger.error("Failed to start application: %s", str(e))
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the application."""
        if not self.running and self.db is None:
            return

        try:
            if self.tasks:
                await self.tasks.stop()
                self.tasks = None
                self.logger.info("Task scheduler stopped")

            if self.coordinator:
                await self.coordinator.stop()
                self.coordinator = None
                self.logger.info("Session saved")

            if self.remote:
                await asyncio.to_thread(self.remote.sign_out)
                self.remote = None

            if self.db:
                self.db.close()
                self.db = None
                self.logger.info("Database session closed")

        finally:
            self.running = False

    def run(self) -> None:
        """Run the application until interrupted."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        def signal_handler(signum: int) -> None:
            print()  # Print a newline to ensure log messages start on a new line
            self.logger.info("Received signal %d. Shutting down...", signum)
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        try:
            loop.run_until_complete(self.start())
            loop.run_until_complete(stop_event.wait())
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            loop.run_until_complete(self.stop())
            loop.close()


def main() -> None:
    """Main entry point."""
    app = WordRecallApp()
    app.run()


if __name__ == "__main__":
    main()
