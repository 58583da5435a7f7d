"""Service for incremental cloud sync of learning progress."""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from wordrecall.config import CURSOR_PRECISION_PAD, SYNC_BATCH_SIZE
from wordrecall.models.progress import (
    FlashcardProgress,
    SyncCursor,
    WordHistoryEntry,
    WordProgressRecord,
    WordState,
    from_millis,
    to_iso,
    to_millis,
)
from wordrecall.monitoring import sync_chunk_errors, sync_records
from wordrecall.services.progress_store import META, ProgressStore, cursor_key
from wordrecall.services.remote_store import (
    FLASHCARD_PROGRESS,
    IMMERSIVE_REVIEW,
    RESOURCES,
    WORDS,
    RemoteStore,
    RemoteStoreError,
    chunked,
    parse_remote_timestamp,
)
from wordrecall.services.review_scheduler import EbbinghausScheduler
from wordrecall.services.word_history import StoreWordHistoryProvider

logger = logging.getLogger(__name__)

PAD_MS = int(CURSOR_PRECISION_PAD.total_seconds() * 1000)


class SyncStatus(Enum):
    """Outcome of a sync pass."""
    OK = "ok"
    NOT_LOGGED_IN = "not_logged_in"
    DISABLED = "disabled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SyncCancelled(Exception):
    """Raised between chunks once a sync pass was cancelled."""


@dataclass
class ResourceSyncResult:
    """Counts for one resource in one sync pass."""
    resource: str
    pulled: int = 0
    applied: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None


@dataclass
class SyncReport:
    status: SyncStatus
    resources: Dict[str, ResourceSyncResult] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.status is SyncStatus.NOT_LOGGED_IN:
            return "Not logged in"
        if self.status is SyncStatus.DISABLED:
            return "Sync skipped"
        synced = sum(r.synced for r in self.resources.values())
        skipped = sum(r.skipped for r in self.resources.values())
        return f"Sync {self.status.value}: {synced} uploaded, {skipped} up to date"


# Push comparators: True if the local row is strictly ahead of the remote one

def words_ahead(local: Dict[str, Any], remote: Optional[Dict[str, Any]]) -> bool:
    return remote is None or local["count"] > (remote.get("count") or 0)


def flashcard_ahead(local: Dict[str, Any], remote: Optional[Dict[str, Any]]) -> bool:
    if remote is None:
        return True
    return (
        local["review_count"] > (remote.get("review_count") or 0)
        or local["mastery_level"] > (remote.get("mastery_level") or 0)
    )


def review_ahead(local: Dict[str, Any], remote: Optional[Dict[str, Any]]) -> bool:
    if remote is None:
        return True
    local_rank = WordState(local["status"]).rank
    remote_rank = WordState(remote.get("status") or "pending").rank
    if local_rank != remote_rank:
        return local_rank > remote_rank
    return local["stage"] > (remote.get("stage") or 0)


COMPARATORS: Dict[str, Callable[[Dict[str, Any], Optional[Dict[str, Any]]], bool]] = {
    WORDS: words_ahead,
    FLASHCARD_PROGRESS: flashcard_ahead,
    IMMERSIVE_REVIEW: review_ahead,
}


class SyncReconciler:
    """Pulls and pushes per-resource deltas between the local store and a remote.

    Conflicts are resolved with a one-way ratchet: a record only moves
    forward by its domain comparator, never back.
    """

    def __init__(
        self,
        store: ProgressStore,
        scheduler: EbbinghausScheduler,
        history: StoreWordHistoryProvider,
        remote: Optional[RemoteStore] = None,
        enabled: bool = True,
        batch_size: int = SYNC_BATCH_SIZE,
    ):
        self.store = store
        self.scheduler = scheduler
        self.history = history
        self.remote = remote
        self.enabled = enabled
        self.batch_size = batch_size
        self._cancelled = threading.Event()
        self._locks = {resource: threading.Lock() for resource in RESOURCES}

    @property
    def is_available(self) -> bool:
        return self.enabled and self.remote is not None and self.remote.is_authenticated

    def cancel(self) -> None:
        """Stop the running pass at the next chunk boundary."""
        self._cancelled.set()
        logger.info("Sync cancellation requested")

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise SyncCancelled()

    # Cursors

    def load_cursor(self, resource: str) -> SyncCursor:
        data = self.store.get(META, cursor_key(resource)) or {}
        return SyncCursor(resource, int(data.get("last_synced_ms") or 0))

    def save_cursor(self, cursor: SyncCursor) -> None:
        self.store.put(
            META,
            {"resource": cursor.resource, "last_synced_ms": cursor.last_synced_ms},
            key=cursor_key(cursor.resource),
        )

    # Pull

    def pull_incremental(self, resource: str, cursor: SyncCursor) -> Tuple[List[Dict[str, Any]], SyncCursor]:
        """Fetch remote rows changed after the cursor.

        The returned cursor is one precision pad past the newest row, so the
        boundary row is not fetched again.
        """
        rows = self.remote.fetch_changed(resource, from_millis(cursor.last_synced_ms))
        newest = cursor.last_synced_ms
        for row in rows:
            updated_at = parse_remote_timestamp(row.get("updated_at"))
            if updated_at is not None:
                newest = max(newest, to_millis(updated_at) + PAD_MS)
        return rows, cursor.advanced_to(newest)

    def _apply(self, resource: str, rows: List[Dict[str, Any]]) -> int:
        """Merge pulled rows into local state and return how many changed it."""
        if not rows:
            return 0
        if resource == WORDS:
            entries = {
                row["word"]: WordHistoryEntry(
                    count=int(row.get("count") or 0),
                    contexts=list(row.get("contexts") or []),
                    lookups=[
                        ts for ts in (parse_remote_timestamp(v) for v in row.get("lookups") or []) if ts
                    ],
                )
                for row in rows
            }
            merged, added = self.history.merge_cloud_data(entries)
            return merged + added
        if resource == FLASHCARD_PROGRESS:
            applied, _ = self.scheduler.merge_flashcard_progress(
                FlashcardProgress(
                    word=row["word"],
                    mastery_level=int(row.get("mastery_level") or 0),
                    easiness_factor=float(row.get("easiness_factor") or 2.5),
                    review_count=int(row.get("review_count") or 0),
                    last_reviewed_at=parse_remote_timestamp(row.get("last_reviewed_at")),
                    next_review_at=parse_remote_timestamp(row.get("next_review_at")),
                )
                for row in rows
            )
            return applied
        applied, _ = self.scheduler.merge_remote(self._review_record(row) for row in rows)
        return applied

    def _review_record(self, row: Dict[str, Any]) -> WordProgressRecord:
        state = WordState(row.get("status") or "pending")
        now = self.scheduler.now()
        next_review_at = parse_remote_timestamp(row.get("next_review_at"))
        if next_review_at is None and state is WordState.REVIEWING:
            # A reviewing word without a date is due right away
            next_review_at = now
        return WordProgressRecord(
            word=row["word"],
            state=state,
            stage=int(row.get("stage") or 0),
            added_at=parse_remote_timestamp(row.get("added_at")) or now,
            last_used_at=parse_remote_timestamp(row.get("last_used_at")),
            next_review_at=next_review_at,
            mastered_at=parse_remote_timestamp(row.get("mastered_at")),
        )

    # Push

    def local_rows(self, resource: str) -> List[Dict[str, Any]]:
        """Snapshot local state as remote rows."""
        if resource == WORDS:
            return [
                {
                    "word": word,
                    "count": entry.count,
                    "contexts": list(entry.contexts),
                    "lookups": [to_iso(ts) for ts in entry.lookups],
                }
                for word, entry in self.history.get_word_history().items()
            ]
        if resource == FLASHCARD_PROGRESS:
            return [
                {
                    "word": p.word,
                    "mastery_level": p.mastery_level,
                    "easiness_factor": p.easiness_factor,
                    "review_count": p.review_count,
                    "last_reviewed_at": to_iso(p.last_reviewed_at),
                    "next_review_at": to_iso(p.next_review_at),
                }
                for p in self.scheduler.flashcard_progress.values()
            ]
        rows = []
        for r in self.scheduler.records.values():
            row = {"word": r.word, "status": r.state.value, "stage": r.stage}
            for name, value in (
                ("added_at", r.added_at),
                ("next_review_at", r.next_review_at),
                ("last_used_at", r.last_used_at),
                ("mastered_at", r.mastered_at),
            ):
                if value is not None:
                    row[name] = to_iso(value)
            rows.append(row)
        return rows

    def push_incremental(self, resource: str, rows: List[Dict[str, Any]]) -> Tuple[int, int, int]:
        """Upload the rows that are ahead of their remote counterparts.

        Returns ``(synced, skipped, failed)``. A failed chunk is logged and
        the remaining chunks still run.
        """
        ahead = COMPARATORS[resource]
        to_push: List[Dict[str, Any]] = []
        skipped = failed = 0

        for batch in chunked(rows, self.batch_size):
            self._check_cancelled()
            try:
                remote = self.remote.fetch_comparison(resource, [row["word"] for row in batch])
            except RemoteStoreError as e:
                logger.error("Comparison fetch failed for %s: %s", resource, str(e))
                sync_chunk_errors.labels(resource=resource).inc()
                failed += len(batch)
                continue
            for row in batch:
                if ahead(row, remote.get(row["word"])):
                    to_push.append(row)
                else:
                    skipped += 1

        synced = 0
        for batch in chunked(to_push, self.batch_size):
            self._check_cancelled()
            try:
                self.remote.upsert(resource, batch)
                synced += len(batch)
            except RemoteStoreError as e:
                logger.error("Batch upsert failed for %s: %s", resource, str(e))
                sync_chunk_errors.labels(resource=resource).inc()
                failed += len(batch)

        sync_records.labels(resource=resource, outcome="synced").inc(synced)
        sync_records.labels(resource=resource, outcome="skipped").inc(skipped)
        sync_records.labels(resource=resource, outcome="failed").inc(failed)
        logger.info("Pushed %s: %d synced, %d skipped, %d failed", resource, synced, skipped, failed)
        return synced, skipped, failed

    # Passes

    def _apply_pulled(self, resource: str, rows: List[Dict[str, Any]], cursor: SyncCursor) -> int:
        applied = self._apply(resource, rows)
        self.save_cursor(cursor)
        return applied

    def sync_resource(self, resource: str) -> ResourceSyncResult:
        """Pull, merge and push one resource."""
        result = ResourceSyncResult(resource)
        with self._locks[resource]:
            cursor = self.load_cursor(resource)
            rows, new_cursor = self.pull_incremental(resource, cursor)
            result.pulled = len(rows)
            result.applied = self._apply_pulled(resource, rows, new_cursor)
            self._check_cancelled()
            result.synced, result.skipped, result.failed = self.push_incremental(
                resource, self.local_rows(resource)
            )
        return result

    @staticmethod
    async def _acquire(lock: threading.Lock) -> None:
        """Wait for ``lock`` in a worker thread.

        If the waiting task is cancelled, the lock is released as soon as the
        worker thread gets it.
        """
        acquiring = asyncio.ensure_future(asyncio.to_thread(lock.acquire))
        try:
            await asyncio.shield(acquiring)
        except asyncio.CancelledError:
            def release(future: "asyncio.Future[bool]") -> None:
                if not future.cancelled() and future.exception() is None and future.result():
                    lock.release()

            acquiring.add_done_callback(release)
            raise

    async def sync_resource_async(
        self,
        resource: str,
        run_local: Callable[[Callable[[], Any]], Awaitable[Any]],
    ) -> ResourceSyncResult:
        """Async variant of :meth:`sync_resource`.

        Remote requests run in a worker thread; reads and writes of local
        state go through ``run_local`` so they are serialized with the
        caller's other mutations.
        """
        result = ResourceSyncResult(resource)
        lock = self._locks[resource]
        await self._acquire(lock)
        try:
            cursor = await run_local(lambda: self.load_cursor(resource))
            rows, new_cursor = await asyncio.to_thread(self.pull_incremental, resource, cursor)
            result.pulled = len(rows)
            result.applied = await run_local(lambda: self._apply_pulled(resource, rows, new_cursor))
            self._check_cancelled()
            snapshot = await run_local(lambda: self.local_rows(resource))
            result.synced, result.skipped, result.failed = await asyncio.to_thread(
                self.push_incremental, resource, snapshot
            )
        finally:
            lock.release()
        return result

    def _precheck(self) -> Optional[SyncReport]:
        if not self.enabled:
            return SyncReport(SyncStatus.DISABLED)
        if self.remote is None or not self.remote.is_authenticated:
            logger.info("Cloud sync skipped: not logged in")
            return SyncReport(SyncStatus.NOT_LOGGED_IN)
        self._cancelled.clear()
        return None

    def _record_failure(self, report: SyncReport, resource: str, error: Exception) -> None:
        logger.error("Sync of %s failed: %s", resource, str(error))
        report.resources[resource] = ResourceSyncResult(resource, error=str(error))
        report.status = SyncStatus.FAILED

    def sync_all(self) -> SyncReport:
        """Run one full sync pass over every resource."""
        report = self._precheck()
        if report is not None:
            return report

        report = SyncReport(SyncStatus.OK)
        for resource in RESOURCES:
            try:
                report.resources[resource] = self.sync_resource(resource)
            except SyncCancelled:
                logger.info("Sync cancelled during %s", resource)
                report.status = SyncStatus.CANCELLED
                break
            except RemoteStoreError as e:
                self._record_failure(report, resource, e)
        logger.info(report.message)
        return report

    async def sync_all_async(
        self,
        run_local: Callable[[Callable[[], Any]], Awaitable[Any]],
    ) -> SyncReport:
        """Run one full sync pass without blocking the event loop."""
        report = self._precheck()
        if report is not None:
            return report

        report = SyncReport(SyncStatus.OK)
        for resource in RESOURCES:
            try:
                report.resources[resource] = await self.sync_resource_async(resource, run_local)
            except SyncCancelled:
                logger.info("Sync cancelled during %s", resource)
                report.status = SyncStatus.CANCELLED
                break
            except RemoteStoreError as e:
                self._record_failure(report, resource, e)
        logger.info(report.message)
        return report

    # Terminal operations

    def delete_remote(self, resource: str, word: str) -> bool:
        if not self.is_available:
            return False
        try:
            self.remote.delete(resource, word)
            return True
        except RemoteStoreError as e:
            logger.error("Cloud delete of %r failed: %s", word, str(e))
            return False

    def blacklist(self, word: str) -> bool:
        if not self.is_available:
            return False
        try:
            self.remote.blacklist(word)
            logger.info("Word %r blacklisted in cloud", word)
            return True
        except RemoteStoreError as e:
            logger.error("Cloud blacklist of %r failed: %s", word, str(e))
            return False
