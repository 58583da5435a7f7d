"""Coordinates the drilling session, the review scheduler and cloud sync."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

from wordrecall.config import settings
from wordrecall.models.progress import CardView
from wordrecall.services.deck_service import DeckEngine
from wordrecall.services.remote_store import IMMERSIVE_REVIEW, WORDS
from wordrecall.services.review_scheduler import EbbinghausScheduler
from wordrecall.services.sync_service import SyncReconciler, SyncReport, SyncStatus
from wordrecall.services.word_history import StoreWordHistoryProvider

logger = logging.getLogger(__name__)

NOTHING_TO_REVIEW = "Nothing to review"


class MutationQueue:
    """Runs submitted callables one at a time on a single worker task."""

    def __init__(self):
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="mutation-queue")

    async def stop(self) -> None:
        """Finish queued mutations, then stop the worker."""
        if not self.running:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None

    async def submit(self, func: Callable[..., Any], *args: Any) -> Any:
        """Queue ``func(*args)`` and wait for its result."""
        if not self.running:
            raise ValueError("Mutation queue is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((func, args, future))
        return await future

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    break
                func, args, future = item
                if future.cancelled():
                    continue
                try:
                    future.set_result(func(*args))
                except Exception as e:
                    future.set_exception(e)
            finally:
                self._queue.task_done()


@dataclass
class SessionStatus:
    """Summary of the drilling session for display."""
    remaining: int
    completed: int
    progress_score: float
    current_card: Optional[CardView]
    total_words_in_history: int
    message: str


class SessionCoordinator:
    """Single entry point for everything that mutates learning state.

    Deck mutations, lookups and usage events are serialized through one
    :class:`MutationQueue`. The session snapshot is written after a short
    quiet period and flushed on stop.
    """

    def __init__(
        self,
        engine: DeckEngine,
        scheduler: EbbinghausScheduler,
        history: StoreWordHistoryProvider,
        sync: Optional[SyncReconciler] = None,
        persist_delay: Optional[float] = None,
        review_every_cards: Optional[int] = None,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.history = history
        self.sync = sync
        self.persist_delay = (
            settings.session.persist_delay_seconds if persist_delay is None else persist_delay
        )
        self.review_every_cards = (
            settings.session.review_every_cards if review_every_cards is None else review_every_cards
        )
        self.queue = MutationQueue()
        self._persist_handle: Optional[asyncio.TimerHandle] = None
        self._background: Set[asyncio.Task] = set()
        self._dirty = False
        self._answers_since_review = 0

        self.history.on_second_lookup = self.scheduler.add_pending
        if self.sync is not None:
            self.history.on_blacklist = self._blacklist_remote
            self.history.on_delete = self._delete_remote
            self.scheduler.on_remove = self._remove_review_remote

    # Lifecycle

    async def start(self) -> SessionStatus:
        """Start the queue and resume or create the session."""
        await self.queue.start()
        await self.queue.submit(self._start)
        return self.status()

    def _start(self) -> None:
        self.engine.start()
        self._mark_dirty()

    async def stop(self) -> None:
        """Flush pending writes and stop the queue."""
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None
        if self.sync is not None:
            self.sync.cancel()
        if self.queue.running:
            await self.queue.submit(self._flush)
            await self.queue.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # Persistence

    def _flush(self) -> None:
        if self._dirty:
            self.engine.save_session()
            self._dirty = False
            logger.debug("Session snapshot saved")

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self.persist_delay <= 0:
            self._flush()
            return
        if self._persist_handle is not None:
            self._persist_handle.cancel()
        loop = asyncio.get_running_loop()
        self._persist_handle = loop.call_later(self.persist_delay, self._persist_later)

    def _persist_later(self) -> None:
        self._persist_handle = None
        if self.queue.running:
            self._spawn(self.queue.submit(self._flush))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Cloud side effects

    def _blacklist_remote(self, word: str) -> None:
        if self.sync is not None and self.sync.is_available:
            self._spawn(asyncio.to_thread(self.sync.blacklist, word))

    def _delete_remote(self, word: str) -> None:
        if self.sync is not None and self.sync.is_available:
            self._spawn(asyncio.to_thread(self.sync.delete_remote, WORDS, word))

    def _remove_review_remote(self, word: str) -> None:
        if self.sync is not None and self.sync.is_available:
            self._spawn(asyncio.to_thread(self.sync.delete_remote, IMMERSIVE_REVIEW, word))

    # Deck mutations

    def _answer(self, remembered: bool) -> CardView:
        card = self.engine.answer_card(remembered)
        self._answers_since_review += 1
        if self.review_every_cards and self._answers_since_review >= self.review_every_cards:
            self._answers_since_review = 0
            self.engine.trigger_background_review()
        self._mark_dirty()
        return card

    async def answer(self, remembered: bool) -> SessionStatus:
        """Answer the current card."""
        await self.queue.submit(self._answer, remembered)
        return self.status()

    def _delete(self, word: Optional[str]) -> Optional[CardView]:
        card = self.engine.delete_card(word)
        if card is not None:
            self._mark_dirty()
        return card

    async def delete(self, word: Optional[str] = None) -> SessionStatus:
        """Delete a card (the current one by default) and its word."""
        await self.queue.submit(self._delete, word)
        return self.status()

    def _background_review(self) -> bool:
        changed = self.engine.trigger_background_review()
        self._mark_dirty()
        return changed

    async def trigger_background_review(self) -> bool:
        return await self.queue.submit(self._background_review)

    def _continue(self) -> None:
        self.engine.new_session()
        self._answers_since_review = 0
        self._mark_dirty()

    async def continue_session(self) -> SessionStatus:
        """Start a fresh deck."""
        await self.queue.submit(self._continue)
        return self.status()

    # Word events

    async def record_lookup(self, word: str, context: str = "") -> Optional[int]:
        return await self.queue.submit(self.history.record_lookup, word, context)

    async def record_usage_from_text(self, response_text: str, is_enabled: bool = True) -> List[str]:
        return await self.queue.submit(self.scheduler.record_usage_from_text, response_text, is_enabled)

    async def toggle_word(self, word: str) -> bool:
        return await self.queue.submit(self.scheduler.toggle_word, word)

    async def undo_today(self) -> List[str]:
        return await self.queue.submit(self.scheduler.undo_today)

    async def force_all_due(self) -> int:
        return await self.queue.submit(self.scheduler.force_all_due)

    # Sync

    async def run_sync(self) -> SyncReport:
        """Run a cloud sync pass alongside the session."""
        if self.sync is None:
            return SyncReport(SyncStatus.DISABLED)
        return await self.sync.sync_all_async(self.queue.submit)

    def status(self) -> SessionStatus:
        session = self.engine.session
        remaining = len(session.deck)
        return SessionStatus(
            remaining=remaining,
            completed=session.words_completed,
            progress_score=session.progress_score,
            current_card=session.current_card,
            total_words_in_history=session.total_words_in_history,
            message=f"{remaining} cards left" if remaining else NOTHING_TO_REVIEW,
        )
