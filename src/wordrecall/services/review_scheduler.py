"""Service for long-term spaced-repetition review of words."""
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from wordrecall.config import (
    DEFAULT_EASINESS_FACTOR,
    EBBINGHAUS_INTERVALS,
    MASTERY_LEVEL_INTERVALS,
    MAX_DAILY_REVIEW_WORDS,
    MAX_MASTERY_LEVEL,
    MIN_EASINESS_FACTOR,
)
from wordrecall.models.progress import (
    FlashcardProgress,
    WordProgressRecord,
    WordState,
    normalize_word,
    localnow,
)
from wordrecall.monitoring import words_advanced
from wordrecall.services.progress_store import (
    CURRENT_KEY,
    FLASHCARD_PROGRESS,
    REVIEW_SESSION,
    WORD_PROGRESS,
    ProgressStore,
)

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
ONE_MS = timedelta(milliseconds=1)
WORDS_PLACEHOLDER = "%words%"


def calculate_sm2(remembered: bool, easiness: float, level: int) -> Tuple[float, int]:
    """Return the new easiness factor and mastery level after one answer."""
    quality = 1 if remembered else 0
    easiness = easiness + (0.1 - (1 - quality) * (0.08 + (1 - quality) * 0.02))
    easiness = max(MIN_EASINESS_FACTOR, min(DEFAULT_EASINESS_FACTOR, easiness))
    if remembered:
        level = min(MAX_MASTERY_LEVEL, level + 1)
    else:
        level = max(0, level - 1)
    return easiness, level


class EbbinghausScheduler:
    """Moves words through pending, reviewing and mastered states.

    Records live in the ``word-progress`` collection of the store and are
    cached in memory after the first read. Every change is written through
    immediately.
    """

    def __init__(
        self,
        store: ProgressStore,
        now: Callable[[], datetime] = localnow,
        on_remove: Optional[Callable[[str], None]] = None,
    ):
        """Initialize the scheduler with a progress store and a clock.

        ``on_remove`` is called with each word taken out of review.
        """
        self.store = store
        self.now = now
        self.on_remove = on_remove
        self._records: Optional[Dict[str, WordProgressRecord]] = None
        self._flashcard: Optional[Dict[str, FlashcardProgress]] = None

    # Storage helpers

    @property
    def records(self) -> Dict[str, WordProgressRecord]:
        if self._records is None:
            self._records = {}
            for data in self.store.get_all(WORD_PROGRESS):
                record = WordProgressRecord.from_data(data)
                self._records[record.word] = record
            logger.debug("Loaded %d review records", len(self._records))
        return self._records

    @property
    def flashcard_progress(self) -> Dict[str, FlashcardProgress]:
        if self._flashcard is None:
            self._flashcard = {}
            for data in self.store.get_all(FLASHCARD_PROGRESS):
                progress = FlashcardProgress.from_data(data)
                self._flashcard[progress.word] = progress
        return self._flashcard

    def reload(self) -> None:
        """Drop cached records so the next access reads the store again."""
        self._records = None
        self._flashcard = None

    def _touch(self, record, now: datetime) -> None:
        previous = record.updated_at
        if previous is not None and previous >= now:
            now = previous + timedelta(microseconds=1)
        record.updated_at = now

    def _save(self, record: WordProgressRecord) -> None:
        self._touch(record, self.now())
        self.records[record.word] = record
        self.store.put(WORD_PROGRESS, record.to_data())

    def _drop(self, word: str) -> None:
        self.records.pop(word, None)
        self.store.delete(WORD_PROGRESS, word)

    def _notify_removed(self, word: str) -> None:
        if self.on_remove is None:
            return
        try:
            self.on_remove(word)
        except Exception as e:
            logger.error("Review removal callback failed for %r: %s", word, str(e))

    def today_start(self) -> datetime:
        """Return midnight of the current day in the clock's timezone."""
        return self.now().replace(hour=0, minute=0, second=0, microsecond=0)

    def _load_session(self) -> Optional[List[str]]:
        data = self.store.get(REVIEW_SESSION, CURRENT_KEY)
        if not data or data.get("day") != self.today_start().date().isoformat():
            return None
        return list(data.get("words") or [])

    def _save_session(self, words: List[str]) -> None:
        self.store.put(
            REVIEW_SESSION,
            {"day": self.today_start().date().isoformat(), "words": words},
            key=CURRENT_KEY,
        )

    # Queries

    def get_record(self, word: str) -> Optional[WordProgressRecord]:
        return self.records.get(normalize_word(word))

    def is_word_in_review(self, word: str) -> bool:
        return normalize_word(word) in self.records

    def get_stats(self) -> Dict[str, int]:
        stats = {state.value: 0 for state in WordState}
        for record in self.records.values():
            stats[record.state.value] += 1
        return stats

    def get_words_due_today(self) -> List[str]:
        """Return words due for review today.

        Pending words qualify once they were added before today; reviewing
        words qualify when their next review falls before tomorrow's
        midnight. The result is truncated to the daily cap in record order.
        """
        midnight = self.today_start()
        pending = [
            r.word for r in self.records.values()
            if r.state is WordState.PENDING and r.added_at < midnight
        ]
        reviewing = [
            r.word for r in self.records.values()
            if r.state is WordState.REVIEWING
            and r.next_review_at is not None
            and r.next_review_at <= midnight + ONE_DAY
        ]
        return (pending + reviewing)[:MAX_DAILY_REVIEW_WORDS]

    def build_session_word_list(self) -> List[str]:
        """Return today's target list, building it on the first call of the day."""
        words = self._load_session()
        if words is not None:
            return [w for w in (normalize_word(w) for w in words) if w]

        words = [w for w in (normalize_word(w) for w in self.get_words_due_today()) if w]
        self._save_session(words)
        logger.info("Built review session with %d words", len(words))
        return words

    def generate_review_prompt(self, template: str, is_enabled: bool = True) -> str:
        """Substitute today's target words into a prompt template."""
        if not is_enabled:
            return ""
        words = self.build_session_word_list()
        if not words:
            return ""
        return template.replace(WORDS_PLACEHOLDER, ", ".join(words))

    # Transitions

    def _advance(self, word: str) -> Optional[WordProgressRecord]:
        """Apply one "used" transition to a word."""
        record = self.records.get(word)
        if record is None:
            return None
        now = self.now()

        if record.state is WordState.PENDING:
            record.state = WordState.REVIEWING
            record.stage = 0
            record.last_used_at = now
            record.next_review_at = now + timedelta(days=EBBINGHAUS_INTERVALS[0])
            self._save(record)
            words_advanced.labels(state=WordState.REVIEWING.value).inc()
            logger.info(
                "Word moved to reviewing: %s, next review in %d day(s)",
                word,
                EBBINGHAUS_INTERVALS[0],
            )
        elif record.state is WordState.REVIEWING:
            record.last_used_at = now
            if record.stage + 1 >= len(EBBINGHAUS_INTERVALS):
                record.state = WordState.MASTERED
                record.stage = len(EBBINGHAUS_INTERVALS)
                record.mastered_at = now
                record.next_review_at = None
                self._save(record)
                words_advanced.labels(state=WordState.MASTERED.value).inc()
                logger.info("Word mastered: %s", word)
            else:
                record.stage += 1
                interval = EBBINGHAUS_INTERVALS[record.stage]
                record.next_review_at = now + timedelta(days=interval)
                self._save(record)
                words_advanced.labels(state=WordState.REVIEWING.value).inc()
                logger.info(
                    "Word advanced to stage %d: %s, next review in %d day(s)",
                    record.stage,
                    word,
                    interval,
                )
        return record

    def record_usage_from_text(self, response_text: str, is_enabled: bool = True) -> List[str]:
        """Advance every target word used in ``response_text``.

        Matching is case-insensitive on whole words. Returns the used words;
        the rest stay in today's target list.
        """
        if not is_enabled or not response_text:
            return []
        words = self.build_session_word_list()
        if not words:
            return []

        used: List[str] = []
        remaining: List[str] = []
        for word in words:
            pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
            if pattern.search(response_text):
                used.append(word)
            else:
                remaining.append(word)

        for word in used:
            self._advance(word)

        if used:
            self._save_session(remaining)
            logger.info("Used words: %s; %d remaining", ", ".join(used), len(remaining))
        return used

    def record_usage(self, word: str, remembered: bool, context: str = "") -> FlashcardProgress:
        """Record one flashcard answer for a word.

        Always updates the word's flashcard mastery. A remembered word that
        is on today's target list also advances its review state.
        """
        key = normalize_word(word)
        now = self.now()

        progress = self.flashcard_progress.get(key) or FlashcardProgress(
            word=key,
            next_review_at=now,
            context=context,
        )
        if context and context.strip():
            progress.context = context.strip()

        progress.easiness_factor, progress.mastery_level = calculate_sm2(
            remembered, progress.easiness_factor, progress.mastery_level
        )
        progress.review_count += 1
        progress.last_reviewed_at = now
        progress.next_review_at = now + timedelta(days=MASTERY_LEVEL_INTERVALS[progress.mastery_level])
        self._touch(progress, now)
        self.flashcard_progress[key] = progress
        self.store.put(FLASHCARD_PROGRESS, progress.to_data())

        if remembered:
            words = self.build_session_word_list()
            if key in words:
                self._advance(key)
                self._save_session([w for w in words if w != key])
        return progress

    def undo_today(self) -> List[str]:
        """Undo progress made today and put the words back on today's list."""
        today = self.today_start()
        reset: List[str] = []

        for record in list(self.records.values()):
            if record.state is WordState.REVIEWING:
                if record.last_used_at is None or record.last_used_at < today:
                    continue
                if record.stage - 1 < 0:
                    record.state = WordState.PENDING
                    record.stage = 0
                    record.added_at = today - ONE_MS
                    record.next_review_at = None
                    record.last_used_at = None
                else:
                    record.stage -= 1
                    record.next_review_at = today
                    record.last_used_at = today - ONE_MS
                self._save(record)
                reset.append(record.word)
            elif record.state is WordState.MASTERED:
                if record.mastered_at is None or record.mastered_at < today:
                    continue
                record.state = WordState.REVIEWING
                record.stage = len(EBBINGHAUS_INTERVALS) - 1
                record.mastered_at = None
                record.next_review_at = today
                record.last_used_at = today - ONE_MS
                self._save(record)
                reset.append(record.word)

        words = self.build_session_word_list()
        for word in reset:
            if word not in words:
                words.append(word)
        self._save_session(words)
        logger.info("Reset today's session: %d words reset, %d in session", len(reset), len(words))
        return reset

    def force_all_due(self) -> int:
        """Put every pending and reviewing word on today's list."""
        words = [
            r.word for r in self.records.values()
            if r.state in (WordState.PENDING, WordState.REVIEWING)
        ]
        self._save_session(words)
        logger.info("Forced %d words into today's review", len(words))
        return len(words)

    # Membership

    def add_pending(self, word: str, is_enabled: bool = True) -> bool:
        """Queue a word for review unless it is already tracked."""
        key = normalize_word(word)
        if not is_enabled or not key or key in self.records:
            return False
        self._save(WordProgressRecord.pending(key, self.now()))
        logger.info("Word added to pending review: %s", key)
        return True

    def remove_word(self, word: str) -> bool:
        key = normalize_word(word)
        record = self.records.get(key)
        if record is None:
            return False
        self._drop(key)
        logger.info("Removed %r from %s", key, record.state.value)
        self._notify_removed(key)
        return True

    def toggle_word(self, word: str) -> bool:
        """Remove a tracked word, or queue an untracked one.

        Returns True if the word is tracked after the call.
        """
        if self.remove_word(word):
            return False
        return self.add_pending(word)

    def clear_all(self) -> None:
        words = list(self.records)
        self.store.clear(WORD_PROGRESS)
        self.store.clear(REVIEW_SESSION)
        self._records = {}
        logger.info("Cleared all review data")
        for word in words:
            self._notify_removed(word)

    # Merging

    def merge_remote(self, remote: Iterable[WordProgressRecord]) -> Tuple[int, int]:
        """Adopt remote records that are strictly ahead of the local ones.

        Returns ``(applied, skipped)``.
        """
        applied = skipped = 0
        for record in remote:
            local = self.records.get(record.word)
            if local is not None and not record.is_ahead_of(local):
                skipped += 1
                continue
            if local is not None and local.updated_at is not None:
                record.updated_at = local.updated_at
            self._save(record)
            applied += 1
        return applied, skipped

    def merge_flashcard_progress(self, remote: Iterable[FlashcardProgress]) -> Tuple[int, int]:
        applied = skipped = 0
        for progress in remote:
            local = self.flashcard_progress.get(progress.word)
            if local is not None and not progress.is_ahead_of(local):
                skipped += 1
                continue
            if local is not None and not progress.context:
                progress.context = local.context
            self._touch(progress, self.now())
            self.flashcard_progress[progress.word] = progress
            self.store.put(FLASHCARD_PROGRESS, progress.to_data())
            applied += 1
        return applied, skipped
