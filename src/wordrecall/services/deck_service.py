"""Service for building and rotating the flashcard deck of a drilling session."""
import logging
import math
import random
from datetime import datetime
from typing import Callable, Dict, List, Optional

from wordrecall.config import DECK_SIZE, MASTERY_THRESHOLD, NEW_WORD_RATIO, SCORE_STEP
from wordrecall.models.progress import (
    CardView,
    FlashcardSession,
    WordHistoryEntry,
    WordProgressRecord,
    WordState,
    utcnow,
)
from wordrecall.monitoring import cards_answered, deck_size, words_completed
from wordrecall.services.progress_store import CURRENT_KEY, FLASHCARD_SESSION, ProgressStore
from wordrecall.services.review_scheduler import EbbinghausScheduler
from wordrecall.services.word_history import WordHistoryProvider

logger = logging.getLogger(__name__)


class DeckEngine:
    """Owns the deck and counters of the single active drilling session."""

    def __init__(
        self,
        store: ProgressStore,
        scheduler: EbbinghausScheduler,
        history: WordHistoryProvider,
        now: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the engine with its collaborators."""
        self.store = store
        self.scheduler = scheduler
        self.history = history
        self.now = now
        self.rng = rng or random.Random()
        self.session = FlashcardSession()

    @property
    def remaining(self) -> int:
        return len(self.session.deck)

    @property
    def completed(self) -> int:
        return self.session.words_completed

    def _load_history(self) -> Dict[str, WordHistoryEntry]:
        try:
            return self.history.get_word_history()
        except Exception as e:
            logger.error("Word history unavailable, deck will be empty: %s", str(e))
            return {}

    def generate_deck(
        self,
        all_progress: Optional[Dict[str, WordProgressRecord]] = None,
        history: Optional[Dict[str, WordHistoryEntry]] = None,
    ) -> List[CardView]:
        """Select up to ``DECK_SIZE`` cards from the looked-up words.

        With review progress available, new (pending or untracked) and due
        words are mixed at ``NEW_WORD_RATIO``, and a short pool is topped up
        from the other one. Without progress the deck is a uniform sample.
        """
        if history is None:
            history = self._load_history()
        candidates = [
            CardView(word=word, context=entry.last_context)
            for word, entry in history.items()
            if entry.count >= 1
        ]
        if not candidates:
            return []

        if not all_progress:
            deck = self.rng.sample(candidates, min(DECK_SIZE, len(candidates)))
            logger.info("Generated deck of %d cards without review progress", len(deck))
            return deck

        now = self.now()
        new_cards: List[CardView] = []
        review_cards: List[CardView] = []
        for card in candidates:
            record = all_progress.get(card.word)
            if record is None or record.state is WordState.PENDING:
                new_cards.append(card)
            elif (
                record.state is WordState.REVIEWING
                and record.next_review_at is not None
                and record.next_review_at <= now
            ):
                review_cards.append(card)

        self.rng.shuffle(new_cards)
        self.rng.shuffle(review_cards)

        target_new = math.ceil(DECK_SIZE * NEW_WORD_RATIO)
        target_review = DECK_SIZE - target_new
        selected_new = new_cards[:target_new]
        selected_review = review_cards[:target_review]

        shortfall = DECK_SIZE - len(selected_new) - len(selected_review)
        if shortfall > 0:
            if len(selected_new) < target_new:
                selected_review += review_cards[len(selected_review):len(selected_review) + shortfall]
            else:
                selected_new += new_cards[len(selected_new):len(selected_new) + shortfall]

        deck = selected_new + selected_review
        self.rng.shuffle(deck)
        logger.info(
            "Generated deck: %d new, %d review",
            len(selected_new),
            len(selected_review),
        )
        return deck

    def new_session(self) -> FlashcardSession:
        """Replace the session with a freshly generated deck."""
        history = self._load_history()
        deck = self.generate_deck(self.scheduler.records, history)
        self.session = FlashcardSession(
            deck=deck,
            last_review_time=self.now(),
            total_words_in_history=len(history),
        )
        deck_size.set(len(deck))
        return self.session

    def start(self) -> FlashcardSession:
        """Resume the saved session if it has cards, otherwise start a new one."""
        data = self.store.get(FLASHCARD_SESSION, CURRENT_KEY)
        if data and data.get("deck"):
            self.session = FlashcardSession.from_data(data)
            logger.info(
                "Restored session: %d cards, index %d",
                len(self.session.deck),
                self.session.current_index,
            )
            deck_size.set(len(self.session.deck))
            return self.session
        return self.new_session()

    def save_session(self) -> None:
        """Persist the session snapshot; an empty deck removes it."""
        if not self.session.deck:
            self.store.delete(FLASHCARD_SESSION, CURRENT_KEY)
            return
        self.store.put(FLASHCARD_SESSION, self.session.to_data(), key=CURRENT_KEY)

    def restore(self, data: Dict) -> FlashcardSession:
        self.session = FlashcardSession.from_data(data)
        return self.session

    def _fix_index(self, moved_last: bool) -> None:
        session = self.session
        if moved_last or session.current_index >= len(session.deck):
            session.current_index = 0

    def answer_card(self, remembered: bool) -> CardView:
        """Apply an answer to the current card and return it."""
        session = self.session
        if not session.deck:
            raise ValueError("Cannot answer a card: the deck is empty")

        index = session.current_index
        was_last = index == len(session.deck) - 1
        card = session.deck.pop(index)

        if remembered:
            card.correct_count += 1
            session.progress_score += SCORE_STEP
            if card.correct_count >= MASTERY_THRESHOLD:
                session.words_completed += 1
                words_completed.inc()
                logger.info("Card completed: %s", card.word)
            else:
                session.deck.append(card)
        else:
            if card.correct_count > 0:
                session.progress_score = max(0.0, session.progress_score - SCORE_STEP)
            card.correct_count = 0
            session.deck.append(card)

        self._fix_index(was_last)
        cards_answered.labels(result="remembered" if remembered else "forgot").inc()
        deck_size.set(len(session.deck))

        self.scheduler.record_usage(card.word, remembered, card.context)
        return card

    def delete_card(self, word: Optional[str] = None) -> Optional[CardView]:
        """Remove a card (the current one by default) and delete the word for good."""
        session = self.session
        if not session.deck:
            return None

        if word is None:
            index = session.current_index
        else:
            index = next((i for i, c in enumerate(session.deck) if c.word == word), -1)
            if index < 0:
                return None

        card = session.deck.pop(index)
        if card.correct_count > 0:
            session.progress_score = max(0.0, session.progress_score - card.correct_count * SCORE_STEP)
        if index < session.current_index:
            session.current_index -= 1
        self._fix_index(False)
        deck_size.set(len(session.deck))

        try:
            self.history.delete_word_permanently(card.word)
        except Exception as e:
            logger.error("Failed to delete word %r from history: %s", card.word, str(e))
        return card

    def trigger_background_review(self) -> bool:
        """Move the last card so that it comes up next.

        The card currently shown keeps its position. Returns True if the deck
        was changed.
        """
        session = self.session
        session.last_review_time = self.now()
        if len(session.deck) <= 1:
            return False
        card = session.deck.pop()
        position = min(session.current_index + 1, len(session.deck))
        session.deck.insert(position, card)
        logger.debug("Background review inserted %s at %d", card.word, position)
        return True
